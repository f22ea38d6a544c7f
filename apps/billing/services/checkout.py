"""Checkout orchestration: from a validated card to a recurring subscription.

``process_checkout`` charges each checkout at most once. It checks the
datastore for an earlier success, then holds a lease for the whole gateway
sequence so concurrent submissions of the same checkout cannot interleave.
Gateway side effects are never reversed when local persistence fails; the
failure is logged with the gateway ids so it can be reconciled.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from apps.billing import models
from apps.billing.services import jobs, locks, notifications
from apps.billing.services.cards import CardData, store_temporary_card, validate_card
from apps.billing.services.errors import (
    BillingError,
    ConflictError,
    GatewayDeclined,
    GatewayNotConfigured,
    InvalidQuantity,
    NotFoundError,
    PersistenceError,
    PlanNotFound,
    ValidationError,
)
from apps.billing.services.gateway import (
    VALIDATION_AMOUNT,
    AuthorizationResult,
    BillingInfo,
    CustomerProfile,
    PaymentGateway,
    SubscriptionSchedule,
    get_payment_gateway,
)
from apps.billing.services.proration import (
    CartItem,
    add_months,
    apply_discount,
    full_price,
    load_catalog,
    round_money,
    volume_discount_percent,
)
from apps.core.posthog import capture_event

logger = logging.getLogger(__name__)

FLOW_IMMEDIATE = "immediate"
FLOW_DEFERRED = "deferred"
CHECKOUT_FLOWS = (FLOW_IMMEDIATE, FLOW_DEFERRED)

STATUS_SUCCESS = "success"
STATUS_ALREADY_PROCESSED = "already_processed"
NOT_STARTED = "not_started"


@dataclass(frozen=True)
class CheckoutOutcome:
    status: str
    checkout_id: str
    request_id: str = ""
    transaction_id: str = ""
    account_reference: Optional[str] = None
    subscription_status: str = ""
    flow: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "checkout_id": self.checkout_id,
            "request_id": self.request_id,
            "transaction_id": self.transaction_id,
            "account_reference": self.account_reference,
            "subscription_status": self.subscription_status,
            "flow": self.flow,
        }


def generate_checkout_id() -> str:
    return str(uuid.uuid4())


def resolve_flow(flow: Optional[str] = None) -> str:
    flow = flow or getattr(settings, "BILLING_CHECKOUT_FLOW", FLOW_DEFERRED)
    if flow not in CHECKOUT_FLOWS:
        raise ValueError(f"Unknown checkout flow: {flow}")
    return flow


def require_gateway(gateway: Optional[PaymentGateway] = None) -> PaymentGateway:
    gateway = gateway or get_payment_gateway()
    if gateway is None:
        raise GatewayNotConfigured("Payment gateway is not configured")
    return gateway


def billing_from_checkout(checkout: models.CheckoutRecord) -> BillingInfo:
    return BillingInfo.from_full_name(
        checkout.name,
        email=checkout.email,
        phone_number=checkout.phone_number,
        street=checkout.street,
        city=checkout.city,
        state=checkout.state,
        zip_code=checkout.zip_code,
    )


def _cart_item(entry: Mapping[str, Any]) -> CartItem:
    try:
        return CartItem(plan_id=int(entry["plan_id"]), quantity=int(entry.get("quantity", 1)))
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"Malformed plan entry in checkout: {entry!r}") from exc


def build_line_items(
    checkout: models.CheckoutRecord,
    *,
    catalog: Optional[Mapping[int, Any]] = None,
) -> tuple[list[dict[str, Any]], Decimal]:
    """Expand the checkout's plans into line items and price the recurring total.

    Names and prices come from the plan catalog, not from the stored cart.
    Volume discounts are picked by the item count of the whole cart. The
    first line item belongs to the purchaser (the master user).
    """

    entries = list(checkout.plans or [])
    if not entries:
        raise ValidationError("Checkout has no plans")
    cart = [_cart_item(entry) for entry in entries]
    for item in cart:
        if item.quantity <= 0:
            raise InvalidQuantity(item.plan_id)
    if catalog is None:
        catalog = load_catalog(item.plan_id for item in cart)
    item_count = sum(item.quantity for item in cart)

    is_annual = checkout.is_annual
    items: list[dict[str, Any]] = []
    total = Decimal("0")
    for entry, item in zip(entries, cart):
        plan = catalog.get(item.plan_id)
        if plan is None:
            raise PlanNotFound(item.plan_id)
        unit_full = round_money(full_price(plan.price, is_annual=is_annual))
        percent = volume_discount_percent(getattr(plan, "discount_rules", None), item_count)
        unit_price, _ = apply_discount(unit_full, percent)
        total += unit_price * item.quantity
        for _ in range(item.quantity):
            is_master = not items
            items.append(
                {
                    "plan_id": item.plan_id,
                    "plan_name": plan.name,
                    "annually": 1 if is_annual else 0,
                    "username": checkout.username if is_master else entry.get("username") or "none",
                    "email": checkout.email if is_master else entry.get("email") or "none",
                    "is_master": 1 if is_master else 0,
                }
            )
    return items, round_money(total)


def is_checkout_processed(checkout_id: str) -> bool:
    has_live_transaction = models.Transaction.objects.filter(
        checkout_id=checkout_id,
        status__in=[models.TransactionStatus.AUTHORIZED, models.TransactionStatus.CAPTURED],
    ).exists()
    if has_live_transaction:
        return True
    return models.CheckoutRecord.objects.filter(
        checkout_id=checkout_id,
        status=models.CheckoutStatus.PROCESSED,
    ).exists()


def _record_result(
    request_id: str,
    checkout_id: str,
    status: str,
    *,
    transaction_id: str = "",
    error_message: str = "",
) -> None:
    if not request_id:
        return
    models.PaymentResult.objects.update_or_create(
        request_id=request_id,
        defaults={
            "checkout_id": checkout_id,
            "status": status,
            "transaction_id": transaction_id,
            "error_message": error_message,
        },
    )


def persist_checkout(
    checkout: models.CheckoutRecord,
    card: CardData,
    *,
    transaction_id: str,
    transaction_status: str,
    subscription_status: str,
    external_subscription_id: Optional[str] = None,
    profile: Optional[CustomerProfile] = None,
    keep_card: bool = False,
    priced: Optional[tuple[list[dict[str, Any]], Decimal]] = None,
    now: Optional[datetime] = None,
) -> models.Account:
    """Write every local record for a successful checkout in one transaction."""

    now = now or timezone.now()
    renew_date = add_months(now, 1)
    line_items, total = priced or build_line_items(checkout)
    billing = billing_from_checkout(checkout)

    try:
        with transaction.atomic():
            account = models.Account.objects.create(
                checkout=checkout,
                first_name=billing.first_name,
                last_name=billing.last_name,
                email=checkout.email,
                username=checkout.username,
                phone_number=checkout.phone_number,
                street=checkout.street,
                city=checkout.city,
                state=checkout.state,
                zip_code=checkout.zip_code,
                additional_info=checkout.additional_info,
                total_price=total,
                is_annually=checkout.is_annual,
                is_trial=True,
                renew_date=renew_date,
                purchased_plans=line_items,
                simultaneous_users=len(line_items),
                card_last_four=card.last_four,
                card_expiry=card.expiry,
            )
            if profile is not None:
                models.CustomerProfileMapping.objects.create(
                    account=account,
                    customer_profile_id=profile.customer_profile_id,
                    payment_profile_id=profile.payment_profile_id,
                )
            models.Invoice.objects.create(
                account=account,
                is_trial=True,
                total=Decimal("0.00"),
                due_date=now,
                is_paid=True,
            )
            models.Invoice.objects.create(
                account=account,
                is_trial=False,
                total=total,
                due_date=renew_date,
                is_paid=False,
            )
            models.Transaction.objects.create(
                account=account,
                checkout_id=checkout.checkout_id,
                amount=VALIDATION_AMOUNT,
                status=transaction_status,
                gateway_transaction_id=transaction_id,
            )
            models.Subscription.objects.create(
                account=account,
                external_subscription_id=external_subscription_id,
                status=subscription_status,
                next_billing_date=renew_date,
            )
            if keep_card:
                store_temporary_card(checkout.checkout_id, card)
            checkout.advance_status(models.CheckoutStatus.PROCESSED)
    except DatabaseError as exc:
        logger.error(
            "Reconciliation needed: checkout %s succeeded at the gateway "
            "(transaction=%s, subscription=%s, profile=%s) but could not be saved: %s",
            checkout.checkout_id,
            transaction_id,
            external_subscription_id,
            profile.customer_profile_id if profile else None,
            exc,
        )
        raise PersistenceError(
            "Payment was processed but the account could not be saved",
            context={
                "checkout_id": checkout.checkout_id,
                "transaction_id": transaction_id,
                "subscription_id": external_subscription_id,
            },
        ) from exc

    logger.info(
        "Created account %s for checkout %s (%s line items, total %s)",
        account.reference,
        checkout.checkout_id,
        len(line_items),
        total,
    )
    return account


def process_checkout(
    *,
    checkout_id: str,
    card: CardData,
    request_id: str = "",
    flow: Optional[str] = None,
    gateway: Optional[PaymentGateway] = None,
) -> CheckoutOutcome:
    """Validate, authorize and set up recurring billing for one checkout."""

    if is_checkout_processed(checkout_id):
        logger.info("Checkout %s already processed; skipping gateway", checkout_id)
        return CheckoutOutcome(
            status=STATUS_ALREADY_PROCESSED,
            checkout_id=checkout_id,
            request_id=request_id,
        )

    if not locks.acquire(checkout_id):
        raise ConflictError("This checkout is already being processed")

    try:
        return _process_locked(
            checkout_id=checkout_id,
            card=card,
            request_id=request_id,
            flow=resolve_flow(flow),
            gateway=gateway,
        )
    finally:
        locks.release(checkout_id)


def _process_locked(
    *,
    checkout_id: str,
    card: CardData,
    request_id: str,
    flow: str,
    gateway: Optional[PaymentGateway],
) -> CheckoutOutcome:
    checkout = models.CheckoutRecord.objects.filter(checkout_id=checkout_id).first()
    if checkout is None:
        raise NotFoundError("Checkout not found")

    if checkout.status == models.CheckoutStatus.PROCESSED:
        return CheckoutOutcome(
            status=STATUS_ALREADY_PROCESSED,
            checkout_id=checkout_id,
            request_id=request_id,
        )

    _record_result(request_id, checkout_id, models.PaymentResultStatus.PENDING)
    checkout.advance_status(models.CheckoutStatus.PROCESSING)

    try:
        validate_card(card)
        priced = build_line_items(checkout)
        gateway = require_gateway(gateway)
        billing = billing_from_checkout(checkout)

        authorization = gateway.authorize(
            amount=VALIDATION_AMOUNT,
            card=card,
            billing=billing,
            reference=checkout_id,
        )
        if not authorization.approved:
            capture_event(
                checkout.email,
                "checkout_declined",
                {"checkout_id": checkout_id, "reason": authorization.message},
            )
            raise GatewayDeclined(
                authorization.message,
                transaction_id=authorization.transaction_id or None,
            )

        if flow == FLOW_IMMEDIATE:
            account = _complete_immediately(checkout, card, billing, authorization, gateway, priced)
        else:
            account = _complete_deferred(checkout, card, authorization, priced)
    except BillingError as exc:
        _record_result(
            request_id,
            checkout_id,
            models.PaymentResultStatus.FAILED,
            error_message=exc.detail,
        )
        raise

    _record_result(
        request_id,
        checkout_id,
        models.PaymentResultStatus.SUCCESS,
        transaction_id=authorization.transaction_id,
    )
    _queue_welcome_emails(account)
    capture_event(
        account.email,
        "checkout_processed",
        {
            "checkout_id": checkout_id,
            "flow": flow,
            "is_annual": account.is_annually,
            "total_price": str(account.total_price),
        },
    )

    subscription = account.subscription
    return CheckoutOutcome(
        status=STATUS_SUCCESS,
        checkout_id=checkout_id,
        request_id=request_id,
        transaction_id=authorization.transaction_id,
        account_reference=str(account.reference),
        subscription_status=subscription.status,
        flow=flow,
    )


def _complete_immediately(
    checkout: models.CheckoutRecord,
    card: CardData,
    billing: BillingInfo,
    authorization: AuthorizationResult,
    gateway: PaymentGateway,
    priced: tuple[list[dict[str, Any]], Decimal],
) -> models.Account:
    try:
        gateway.void(authorization.transaction_id)
    except GatewayDeclined as exc:
        if not authorization.is_duplicate:
            raise
        logger.info(
            "Validation charge %s was already settled by an earlier attempt: %s",
            authorization.transaction_id,
            exc.detail,
        )

    profile = gateway.ensure_customer_profile(
        card=card,
        billing=billing,
        reference=checkout.checkout_id,
        username=checkout.username,
    )
    subscription_id = gateway.create_subscription(
        profile=profile,
        schedule=SubscriptionSchedule.starting_next_month(is_annual=checkout.is_annual),
        amount=priced[1],
        username=checkout.username,
        reference=checkout.checkout_id,
    )
    return persist_checkout(
        checkout,
        card,
        transaction_id=authorization.transaction_id,
        transaction_status=models.TransactionStatus.VOIDED,
        subscription_status=models.SubscriptionStatus.ACTIVE,
        external_subscription_id=subscription_id,
        profile=profile,
        priced=priced,
    )


def _complete_deferred(
    checkout: models.CheckoutRecord,
    card: CardData,
    authorization: AuthorizationResult,
    priced: tuple[list[dict[str, Any]], Decimal],
) -> models.Account:
    account = persist_checkout(
        checkout,
        card,
        transaction_id=authorization.transaction_id,
        transaction_status=models.TransactionStatus.AUTHORIZED,
        subscription_status=models.SubscriptionStatus.PENDING,
        keep_card=True,
        priced=priced,
    )
    delay = int(getattr(settings, "BILLING_DEFERRED_DELAY_SECONDS", 3600))
    try:
        jobs.enqueue_delayed(
            jobs.COMPLETE_SUBSCRIPTION_SETUP,
            {"checkout_id": checkout.checkout_id},
            delay,
        )
    except Exception as exc:  # pragma: no cover - broker outage
        logger.error(
            "Could not queue subscription setup for checkout %s; the silent post "
            "will have to complete it: %s",
            checkout.checkout_id,
            exc,
        )
    return account


def _queue_welcome_emails(account: models.Account) -> None:
    messages = [notifications.welcome_message(account)]
    messages.extend(
        notifications.invoice_message(account, invoice) for invoice in account.invoices.all()
    )
    for message in messages:
        try:
            notifications.queue_email(message)
        except Exception as exc:  # pragma: no cover - broker outage
            logger.warning("Could not queue %r for %s: %s", message.subject, message.to, exc)


def checkout_status(checkout_id: str) -> dict[str, Any]:
    record = models.CheckoutRecord.objects.filter(checkout_id=checkout_id).first()
    if record is None:
        raise NotFoundError("Checkout not found")

    result = models.PaymentResult.objects.filter(checkout_id=checkout_id).first()
    return {
        "checkout_id": checkout_id,
        "status": record.status,
        "processed": record.status == models.CheckoutStatus.PROCESSED,
        "locked": locks.is_locked(checkout_id),
        "payment_status": result.status if result else NOT_STARTED,
        "payment_date": result.updated_at.isoformat() if result else None,
    }


def payment_status(request_id: str) -> dict[str, Any]:
    result = models.PaymentResult.objects.filter(request_id=request_id).first()
    if result is None:
        raise NotFoundError("Payment request not found")

    payload: dict[str, Any] = {
        "request_id": request_id,
        "payment_status": result.status,
        "transaction_id": result.transaction_id,
        "account_created": models.Account.objects.filter(
            checkout__checkout_id=result.checkout_id
        ).exists(),
        "created_at": result.created_at.isoformat(),
    }
    if result.error_message:
        payload["error"] = result.error_message
    return payload


def reset_checkout(checkout_id: str) -> dict[str, Any]:
    locks.release(checkout_id)
    logger.info("Checkout lock for %s released on request", checkout_id)
    return {"checkout_id": checkout_id, "locked": False}


__all__ = [
    "CHECKOUT_FLOWS",
    "CheckoutOutcome",
    "FLOW_DEFERRED",
    "FLOW_IMMEDIATE",
    "billing_from_checkout",
    "build_line_items",
    "checkout_status",
    "generate_checkout_id",
    "is_checkout_processed",
    "payment_status",
    "persist_checkout",
    "process_checkout",
    "require_gateway",
    "reset_checkout",
    "resolve_flow",
]
