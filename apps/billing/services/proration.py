"""Plan pricing: volume discounts and partial-period amounts for mid-cycle additions."""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping, Optional, Protocol, TypeVar

from django.utils import timezone

from apps.billing import models
from apps.billing.services.errors import InvalidQuantity, PlanNotFound

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ANNUAL_PRICE_MULTIPLIER = Decimal("10")
HUNDRED = Decimal("100")
DAYS_PER_YEAR = Decimal("365")

_DateT = TypeVar("_DateT", date, datetime)


class PricedPlan(Protocol):
    id: Any
    name: str
    price: Decimal


@dataclass(frozen=True)
class CartItem:
    plan_id: int
    quantity: int


@dataclass(frozen=True)
class ProrationLine:
    plan_id: int
    plan_name: str
    quantity: int
    base_price: Decimal
    full_price: Decimal
    prorata: Decimal
    total_prorata: Decimal
    total_recurring: Decimal

    def as_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "plan_name": self.plan_name,
            "quantity": self.quantity,
            "base_price": str(self.base_price),
            "full_price": str(self.full_price),
            "prorata": str(self.prorata),
            "total_prorata": str(self.total_prorata),
            "total_recurring": str(self.total_recurring),
        }


@dataclass(frozen=True)
class ProrationResult:
    is_annual: bool
    factor: Decimal
    lines: list[ProrationLine] = field(default_factory=list)
    total_prorata: Decimal = Decimal("0.00")
    total_recurring_increase: Decimal = Decimal("0.00")

    def as_dict(self) -> dict[str, Any]:
        return {
            "is_annual": self.is_annual,
            "factor": str(self.factor),
            "lines": [line.as_dict() for line in self.lines],
            "total_prorata": str(self.total_prorata),
            "total_recurring_increase": str(self.total_recurring_increase),
        }


def round_money(value: Decimal) -> Decimal:
    """Round to cents, halves away from zero."""

    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def full_price(price: Decimal, *, is_annual: bool) -> Decimal:
    """Recurring price per unit: annual billing charges ten monthly prices."""

    price = Decimal(price)
    return price * ANNUAL_PRICE_MULTIPLIER if is_annual else price


def volume_discount_percent(rules: Any, item_count: int) -> Decimal:
    """Best percentage among ``rules`` whose minimum item count the cart reaches.

    Rules are stored as ``[{"qtd": "3", "percent": "10"}, ...]``. Entries that
    cannot be read are logged and skipped.
    """

    best = Decimal("0")
    for rule in rules or []:
        try:
            minimum = int(rule["qtd"])
            percent = Decimal(str(rule["percent"]))
        except (KeyError, TypeError, ValueError, ArithmeticError):
            logger.warning("Ignoring malformed discount rule %r", rule)
            continue
        if item_count >= minimum and percent > best:
            best = percent
    return min(best, HUNDRED)


def apply_discount(price: Decimal, percent: Decimal) -> tuple[Decimal, Decimal]:
    """Return ``(discounted_price, discount)`` for one unit, both in cents."""

    discount = round_money(Decimal(price) * percent / HUNDRED)
    return round_money(Decimal(price) - discount), discount


def proration_factor(
    *,
    is_annual: bool,
    renew_date: Optional[datetime],
    now: Optional[datetime] = None,
) -> Decimal:
    """Share of the current billing period still ahead of ``now``.

    Annual: whole days until renewal over 365, or 1 once renewal has passed.
    Monthly: days left in the local calendar month (today included) over its
    length.
    """

    now = now or timezone.now()
    if is_annual:
        if renew_date is None or renew_date <= now:
            return Decimal("1")
        whole_days = int((renew_date - now).total_seconds() / 3600 / 24)
        return Decimal(whole_days) / DAYS_PER_YEAR

    today = timezone.localdate(now)
    days_in_month = calendar.monthrange(today.year, today.month)[1]
    remaining = days_in_month - today.day + 1
    return Decimal(remaining) / Decimal(days_in_month)


def add_months(moment: _DateT, months: int) -> _DateT:
    """Shift by calendar months, clamping the day to the target month's length."""

    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def load_catalog(plan_ids: Iterable[int]) -> dict[int, models.Plan]:
    return {
        plan.id: plan
        for plan in models.Plan.objects.filter(id__in=list(plan_ids), is_active=True)
    }


def calculate_proration(
    cart: Iterable[CartItem],
    *,
    is_annual: bool,
    renew_date: Optional[datetime],
    now: Optional[datetime] = None,
    catalog: Optional[Mapping[int, PricedPlan]] = None,
) -> ProrationResult:
    """Price a cart against the remaining part of the account's billing cycle."""

    items = list(cart)
    for item in items:
        if item.quantity <= 0:
            raise InvalidQuantity(item.plan_id)

    if catalog is None:
        catalog = load_catalog(item.plan_id for item in items)

    factor = proration_factor(is_annual=is_annual, renew_date=renew_date, now=now)

    lines: list[ProrationLine] = []
    for item in items:
        plan = catalog.get(item.plan_id)
        if plan is None:
            raise PlanNotFound(item.plan_id)

        base_price = round_money(plan.price)
        unit_full = round_money(full_price(base_price, is_annual=is_annual))
        unit_prorata = round_money(unit_full * factor)
        lines.append(
            ProrationLine(
                plan_id=item.plan_id,
                plan_name=plan.name,
                quantity=item.quantity,
                base_price=base_price,
                full_price=unit_full,
                prorata=unit_prorata,
                total_prorata=round_money(unit_full * factor * item.quantity),
                total_recurring=round_money(unit_full * item.quantity),
            )
        )

    return ProrationResult(
        is_annual=is_annual,
        factor=factor,
        lines=lines,
        total_prorata=round_money(sum((line.total_prorata for line in lines), Decimal("0"))),
        total_recurring_increase=round_money(
            sum((line.total_recurring for line in lines), Decimal("0"))
        ),
    )


__all__ = [
    "CartItem",
    "ProrationLine",
    "ProrationResult",
    "add_months",
    "apply_discount",
    "calculate_proration",
    "full_price",
    "load_catalog",
    "proration_factor",
    "round_money",
    "volume_discount_percent",
]
