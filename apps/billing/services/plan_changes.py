"""Adding plans to an existing account mid-cycle."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError, transaction
from django.utils import timezone

from apps.billing import models
from apps.billing.services import notifications
from apps.billing.services.checkout import require_gateway
from apps.billing.services.errors import (
    GatewayError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from apps.billing.services.gateway import CustomerProfile, PaymentGateway
from apps.billing.services.proration import (
    CartItem,
    ProrationResult,
    add_months,
    calculate_proration,
)
from apps.core.posthog import capture_event

logger = logging.getLogger(__name__)

ADD_PLANS_CONTEXT = "ADD_PLANS"
PLACEHOLDER_OWNER = "none"
TRIAL_MESSAGE = (
    "Plans added during the trial period are included in your next bill "
    "with no immediate charge."
)

_CVV = re.compile(r"^\d{3,4}$")


@dataclass(frozen=True)
class PlanAdditionOutcome:
    transaction_id: str
    charged: Decimal
    total_price: Decimal
    is_trial: bool
    proration: ProrationResult

    def as_dict(self) -> dict[str, Any]:
        payload = {
            "transaction_id": self.transaction_id,
            "charged": str(self.charged),
            "total_price": str(self.total_price),
            "is_trial": self.is_trial,
            "proration": self.proration.as_dict(),
        }
        if self.is_trial:
            payload["message"] = TRIAL_MESSAGE
        return payload


def get_account(reference: Any) -> models.Account:
    try:
        account = models.Account.objects.filter(reference=reference).first()
    except DjangoValidationError:
        account = None
    if account is None:
        raise NotFoundError("Account not found")
    return account


def account_is_annual(account: models.Account) -> bool:
    """Cadence follows the purchased line items, falling back to the account flag."""

    items = account.purchased_plans or []
    if items:
        return any(int(item.get("annually", 0)) == 1 for item in items)
    return account.is_annually


def preview_plan_addition(
    account_reference: Any,
    cart: Iterable[CartItem],
    *,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    account = get_account(account_reference)
    result = calculate_proration(
        cart,
        is_annual=account_is_annual(account),
        renew_date=account.renew_date,
        now=now,
    )
    payload = result.as_dict()
    payload.update(
        {
            "is_trial": account.is_trial,
            "amount_due_now": "0.00" if account.is_trial else str(result.total_prorata),
            "current_total_price": str(account.total_price),
            "new_total_price": str(account.total_price + result.total_recurring_increase),
        }
    )
    if account.is_trial:
        payload["message"] = TRIAL_MESSAGE
    return payload


def _added_line_items(result: ProrationResult) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for line in result.lines:
        for _ in range(line.quantity):
            items.append(
                {
                    "plan_id": line.plan_id,
                    "plan_name": line.plan_name,
                    "annually": 1 if result.is_annual else 0,
                    "username": PLACEHOLDER_OWNER,
                    "email": PLACEHOLDER_OWNER,
                    "is_master": 0,
                }
            )
    return items


def add_plans(
    account_reference: Any,
    cart: Iterable[CartItem],
    cvv: Optional[str] = None,
    *,
    gateway: Optional[PaymentGateway] = None,
    now: Optional[datetime] = None,
) -> PlanAdditionOutcome:
    """Charge the prorated amount for new plans and fold them into the subscription."""

    items = list(cart)
    if not items:
        raise ValidationError("Cart is empty")

    account = get_account(account_reference)
    if not account.is_trial and not _CVV.match(cvv or ""):
        raise ValidationError("Valid CVV is required")

    now = now or timezone.now()
    is_annual = account_is_annual(account)
    result = calculate_proration(items, is_annual=is_annual, renew_date=account.renew_date, now=now)

    charged = Decimal("0.00")
    if account.is_trial:
        transaction_id = f"TRIAL-ADD-{int(time.time())}"
        logger.info("Trial account %s adding plans without charge", account.reference)
    else:
        if result.total_prorata <= 0:
            raise ValidationError("No charges calculated")
        mapping = models.CustomerProfileMapping.objects.filter(account=account).first()
        if mapping is None:
            raise NotFoundError("Customer profile not found")
        transaction_id = require_gateway(gateway).charge_customer_profile(
            profile=CustomerProfile(mapping.customer_profile_id, mapping.payment_profile_id),
            amount=result.total_prorata,
            description=f"Prorated charge for {len(result.lines)} added plan(s)",
            card_code=cvv or "",
        )
        charged = result.total_prorata

    added = _added_line_items(result)
    try:
        with transaction.atomic():
            account = models.Account.objects.select_for_update().get(pk=account.pk)
            account.purchased_plans = list(account.purchased_plans or []) + added
            account.total_price = account.total_price + result.total_recurring_increase
            account.simultaneous_users = account.simultaneous_users + len(added)
            account.save(
                update_fields=["purchased_plans", "total_price", "simultaneous_users", "updated_at"]
            )

            models.Transaction.objects.create(
                account=account,
                checkout_id=ADD_PLANS_CONTEXT,
                amount=charged,
                status=models.TransactionStatus.CAPTURED,
                gateway_transaction_id=transaction_id,
            )
            if charged > 0:
                models.Invoice.objects.create(
                    account=account,
                    total=charged,
                    due_date=now,
                    is_paid=True,
                )

            upcoming = (
                account.invoices.filter(is_paid=False, due_date__gt=now).order_by("due_date").first()
            )
            if upcoming is not None:
                upcoming.total = upcoming.total + result.total_recurring_increase
                upcoming.save(update_fields=["total"])
            else:
                models.Invoice.objects.create(
                    account=account,
                    total=account.total_price,
                    due_date=add_months(now, 12 if is_annual else 1),
                    is_paid=False,
                )
    except DatabaseError as exc:
        logger.error(
            "Reconciliation needed: plan charge %s (%s) for account %s could not be saved: %s",
            transaction_id,
            charged,
            account.reference,
            exc,
        )
        raise PersistenceError(
            "Payment was processed but the plans could not be saved",
            context={"account": str(account.reference), "transaction_id": transaction_id},
        ) from exc

    if not account.is_trial:
        _sync_subscription_amount(account, gateway)

    notifications.queue_email(
        notifications.plans_added_message(account, added=added, charged=charged)
    )
    capture_event(
        account.email,
        "plans_added",
        {
            "plans": len(added),
            "charged": str(charged),
            "total_price": str(account.total_price),
            "is_trial": account.is_trial,
        },
    )
    return PlanAdditionOutcome(
        transaction_id=transaction_id,
        charged=charged,
        total_price=account.total_price,
        is_trial=account.is_trial,
        proration=result,
    )


def _sync_subscription_amount(account: models.Account, gateway: Optional[PaymentGateway] = None) -> None:
    subscription = models.Subscription.objects.filter(account=account).first()
    if (
        subscription is None
        or not subscription.external_subscription_id
        or subscription.status != models.SubscriptionStatus.ACTIVE
    ):
        return
    try:
        require_gateway(gateway).update_subscription_amount(
            subscription.external_subscription_id,
            account.total_price,
        )
    except GatewayError as exc:
        logger.warning(
            "Subscription %s amount not updated to %s: %s",
            subscription.external_subscription_id,
            account.total_price,
            exc.detail,
        )


__all__ = [
    "ADD_PLANS_CONTEXT",
    "PlanAdditionOutcome",
    "account_is_annual",
    "add_plans",
    "get_account",
    "preview_plan_addition",
]
