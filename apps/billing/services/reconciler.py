"""Bring local billing state in line with what the gateway reports.

Inputs are gateway webhooks (silent post, relay response, ARB subscription
events) and the deferred setup job queued at checkout. Every handler is safe
to run more than once for the same event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from django.db import transaction
from django.utils import timezone

from apps.billing import models
from apps.billing.services import jobs, locks, notifications
from apps.billing.services.cards import discard_temporary_card, load_temporary_card
from apps.billing.services.checkout import billing_from_checkout, require_gateway
from apps.billing.services.errors import ConflictError, GatewayDeclined, NotFoundError
from apps.billing.services.gateway import (
    APPROVED_RESPONSE_CODE,
    MAX_REF_ID_LENGTH,
    CustomerProfile,
    PaymentGateway,
    SubscriptionSchedule,
)
from apps.billing.services.proration import add_months
from apps.core.posthog import capture_event

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENT_STATUSES = {
    "subscription_cancelled": models.SubscriptionStatus.CANCELLED,
    "subscription_suspended": models.SubscriptionStatus.SUSPENDED,
    "subscription_terminated": models.SubscriptionStatus.TERMINATED,
    "subscription_expired": models.SubscriptionStatus.EXPIRED,
    "subscription_failed": models.SubscriptionStatus.FAILED,
    "subscription_successful": models.SubscriptionStatus.ACTIVE,
}

PROCESSED = "processed"
SKIPPED = "skipped"
IGNORED = "ignored"

# A successful charge within this window of the renewal date pays for the period it opens.
RENEWAL_SLACK = timedelta(days=1)


@dataclass(frozen=True)
class ReconcileOutcome:
    status: str
    reason: str = ""

    def as_dict(self) -> dict[str, str]:
        return {"status": self.status, "reason": self.reason}


def _submit(task_name: str, payload: dict[str, Any]) -> bool:
    try:
        jobs.enqueue(task_name, payload)
    except Exception as exc:  # broker outage
        logger.error("Could not queue %s with %s: %s", task_name, payload, exc)
        return False
    return True


def _resolve_checkout_id(reference: Optional[str]) -> Optional[str]:
    """Map the refId echoed by the gateway back to a full checkout id.

    The gateway truncates refIds, so a reference at that limit that matches
    no checkout exactly is resolved by prefix when exactly one checkout fits.
    """

    if not reference:
        return None
    if models.CheckoutRecord.objects.filter(checkout_id=reference).exists():
        return reference
    if len(reference) < MAX_REF_ID_LENGTH:
        return reference
    matches = list(
        models.CheckoutRecord.objects.filter(checkout_id__startswith=reference).values_list(
            "checkout_id", flat=True
        )[:2]
    )
    if len(matches) == 1:
        return matches[0]
    if matches:
        logger.warning("Reference %s matches several checkouts; not resolving it", reference)
    return reference


def handle_transaction_notification(
    transaction_id: str,
    response_code: str,
    checkout_id: Optional[str] = None,
) -> ReconcileOutcome:
    """Process a silent-post notification for an authorization."""

    if response_code != APPROVED_RESPONSE_CODE:
        logger.info(
            "Silent post for transaction %s with response code %s; nothing to do",
            transaction_id,
            response_code,
        )
        return ReconcileOutcome(SKIPPED, "not approved")

    record = models.Transaction.objects.filter(gateway_transaction_id=transaction_id).first()
    if record is not None:
        checkout_id = record.checkout_id
    else:
        checkout_id = _resolve_checkout_id(checkout_id)
    if not checkout_id:
        logger.warning("Silent post for unknown transaction %s without checkout id", transaction_id)
        return ReconcileOutcome(SKIPPED, "unknown checkout")

    if record is None:
        account = models.Account.objects.filter(checkout__checkout_id=checkout_id).first()
        if account is None:
            logger.info(
                "Silent post for transaction %s arrived before checkout %s was saved",
                transaction_id,
                checkout_id,
            )
            return ReconcileOutcome(SKIPPED, "account not found")
        record = models.Transaction.objects.create(
            account=account,
            checkout_id=checkout_id,
            amount=Decimal("1.00"),
            status=models.TransactionStatus.AUTHORIZED,
            gateway_transaction_id=transaction_id,
        )
        logger.info("Registered transaction %s for checkout %s", transaction_id, checkout_id)

    if record.status != models.TransactionStatus.AUTHORIZED:
        logger.info("Transaction %s is already %s", transaction_id, record.status)
        return ReconcileOutcome(SKIPPED, f"transaction {record.status}")

    if load_temporary_card(checkout_id) is None:
        logger.warning(
            "No live card data for checkout %s; subscription setup cannot be queued",
            checkout_id,
        )
        _submit(jobs.VOID_TRANSACTION, {"transaction_id": transaction_id})
        return ReconcileOutcome(PROCESSED, "void queued; card data unavailable")

    _submit(jobs.VOID_TRANSACTION, {"transaction_id": transaction_id})
    _submit(jobs.CREATE_SUBSCRIPTION, {"checkout_id": checkout_id})
    return ReconcileOutcome(PROCESSED, "void and subscription queued")


def handle_subscription_event(subscription_id: str, event_type: str) -> ReconcileOutcome:
    """Apply an ARB lifecycle event to the local subscription."""

    new_status = SUBSCRIPTION_EVENT_STATUSES.get(event_type)
    if new_status is None:
        logger.info("Ignoring unhandled subscription event %s for %s", event_type, subscription_id)
        return ReconcileOutcome(IGNORED, "unknown event")

    subscription = (
        models.Subscription.objects.select_related("account")
        .filter(external_subscription_id=subscription_id)
        .first()
    )
    if subscription is None:
        logger.warning("Event %s for unknown subscription %s", event_type, subscription_id)
        return ReconcileOutcome(SKIPPED, "unknown subscription")

    previous = subscription.status
    subscription.status = new_status
    subscription.save(update_fields=["status", "updated_at"])
    logger.info("Subscription %s moved from %s to %s", subscription_id, previous, new_status)

    account = subscription.account
    if event_type == "subscription_successful":
        advance_renewal(account, subscription)
    capture_event(
        account.email,
        "subscription_status_changed",
        {"subscription_id": subscription_id, "from": previous, "to": new_status},
    )
    if new_status == models.SubscriptionStatus.FAILED:
        message = notifications.payment_failed_message(account)
        _submit(jobs.SEND_BILLING_EMAIL, message.as_payload())
    return ReconcileOutcome(PROCESSED, new_status)


def advance_renewal(
    account: models.Account,
    subscription: models.Subscription,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """Move the renewal date past the period the gateway just billed.

    Returns False when the renewal date is already ahead, which is how a
    repeated delivery of the same billing event is recognised.
    """

    now = now or timezone.now()
    horizon = now + RENEWAL_SLACK
    if account.renew_date > horizon:
        logger.info("Account %s already renews on %s", account.reference, account.renew_date)
        return False

    months = 12 if account.is_annually else 1
    renew_date = account.renew_date
    while renew_date <= horizon:
        renew_date = add_months(renew_date, months)

    with transaction.atomic():
        account.invoices.filter(is_paid=False, due_date__lte=horizon).update(is_paid=True)
        if not account.invoices.filter(is_paid=False).exists():
            models.Invoice.objects.create(
                account=account,
                is_trial=False,
                total=account.total_price,
                due_date=renew_date,
                is_paid=False,
            )
        account.renew_date = renew_date
        account.is_trial = False
        account.save(update_fields=["renew_date", "is_trial", "updated_at"])
        subscription.next_billing_date = renew_date
        subscription.save(update_fields=["next_billing_date", "updated_at"])

    logger.info("Account %s now renews on %s", account.reference, renew_date)
    return True


def void_transaction(transaction_id: str, *, gateway: Optional[PaymentGateway] = None) -> bool:
    """Void an authorized validation charge; returns False if there was nothing to void."""

    record = models.Transaction.objects.filter(gateway_transaction_id=transaction_id).first()
    if record is not None and record.status != models.TransactionStatus.AUTHORIZED:
        logger.info("Transaction %s is already %s; not voiding", transaction_id, record.status)
        return False

    require_gateway(gateway).void(transaction_id)
    if record is not None:
        record.transition_to(models.TransactionStatus.VOIDED)
    return True


def setup_lock_key(checkout_id: str) -> str:
    return f"setup:{checkout_id}"


def create_subscription(checkout_id: str, *, gateway: Optional[PaymentGateway] = None) -> str:
    """Ensure the customer profile and recurring subscription for a saved checkout.

    Returns the external subscription id. Runs hold a per-checkout setup lease
    and reuse existing profile mappings and subscription ids, so concurrent or
    repeated runs do not create duplicates.
    """

    lock_key = setup_lock_key(checkout_id)
    if not locks.acquire(lock_key):
        raise ConflictError(f"Subscription setup for checkout {checkout_id} is already running")
    try:
        return _create_subscription_locked(checkout_id, gateway)
    finally:
        locks.release(lock_key)


def _create_subscription_locked(checkout_id: str, gateway: Optional[PaymentGateway]) -> str:
    account = (
        models.Account.objects.select_related("checkout", "subscription")
        .filter(checkout__checkout_id=checkout_id)
        .first()
    )
    if account is None:
        raise NotFoundError(f"No account for checkout {checkout_id}")

    subscription = account.subscription
    if subscription.external_subscription_id:
        logger.info(
            "Checkout %s already has subscription %s",
            checkout_id,
            subscription.external_subscription_id,
        )
        return subscription.external_subscription_id

    card = load_temporary_card(checkout_id)
    if card is None:
        raise NotFoundError(f"Card data for checkout {checkout_id} is missing or expired")

    gateway = require_gateway(gateway)
    mapping = models.CustomerProfileMapping.objects.filter(account=account).first()
    existing = (
        CustomerProfile(mapping.customer_profile_id, mapping.payment_profile_id) if mapping else None
    )

    subscription.attempts += 1
    subscription.save(update_fields=["attempts", "updated_at"])

    profile = gateway.ensure_customer_profile(
        card=card,
        billing=billing_from_checkout(account.checkout),
        reference=checkout_id,
        username=account.username,
        existing=existing,
    )
    if mapping is None:
        models.CustomerProfileMapping.objects.get_or_create(
            account=account,
            defaults={
                "customer_profile_id": profile.customer_profile_id,
                "payment_profile_id": profile.payment_profile_id,
            },
        )
    elif existing != profile:
        mapping.customer_profile_id = profile.customer_profile_id
        mapping.payment_profile_id = profile.payment_profile_id
        mapping.save(update_fields=["customer_profile_id", "payment_profile_id", "updated_at"])

    subscription_id = gateway.create_subscription(
        profile=profile,
        schedule=SubscriptionSchedule.starting_next_month(is_annual=account.is_annually),
        amount=account.total_price,
        username=account.username,
        reference=checkout_id,
    )

    with transaction.atomic():
        subscription.external_subscription_id = subscription_id
        subscription.status = models.SubscriptionStatus.ACTIVE
        subscription.last_error = ""
        subscription.save(
            update_fields=["external_subscription_id", "status", "last_error", "updated_at"]
        )
        discard_temporary_card(checkout_id)

    logger.info("Subscription %s active for checkout %s", subscription_id, checkout_id)
    return subscription_id


def complete_subscription_setup(
    checkout_id: str,
    *,
    gateway: Optional[PaymentGateway] = None,
) -> dict[str, Any]:
    """Deferred job: void the validation charge, then create the subscription."""

    gateway = require_gateway(gateway)
    pending = models.Transaction.objects.filter(
        checkout_id=checkout_id,
        status=models.TransactionStatus.AUTHORIZED,
    ).first()

    voided = False
    if pending is not None:
        try:
            voided = void_transaction(pending.gateway_transaction_id, gateway=gateway)
        except GatewayDeclined as exc:
            logger.warning(
                "Void of %s for checkout %s declined: %s",
                pending.gateway_transaction_id,
                checkout_id,
                exc.detail,
            )
            pending.transition_to(models.TransactionStatus.FAILED)

    subscription_id = create_subscription(checkout_id, gateway=gateway)
    return {"checkout_id": checkout_id, "voided": voided, "subscription_id": subscription_id}


def record_setup_failure(checkout_id: str, error: str) -> None:
    """Mark the pending subscription failed once retries are exhausted."""

    updated = models.Subscription.objects.filter(
        account__checkout__checkout_id=checkout_id,
        status=models.SubscriptionStatus.PENDING,
    ).update(status=models.SubscriptionStatus.FAILED, last_error=error[:2000])
    if updated:
        logger.error("Subscription setup for checkout %s failed permanently: %s", checkout_id, error)


__all__ = [
    "ReconcileOutcome",
    "SUBSCRIPTION_EVENT_STATUSES",
    "advance_renewal",
    "complete_subscription_setup",
    "create_subscription",
    "handle_subscription_event",
    "handle_transaction_notification",
    "record_setup_failure",
    "setup_lock_key",
    "void_transaction",
]
