"""Replacing the stored card on an existing account."""

from __future__ import annotations

import logging
from typing import Any, Optional

from django.db import DatabaseError, transaction
from django.utils import timezone

from apps.billing import models
from apps.billing.services import notifications
from apps.billing.services.cards import CardData, validate_card
from apps.billing.services.checkout import require_gateway
from apps.billing.services.errors import GatewayDeclined, GatewayError, PersistenceError
from apps.billing.services.gateway import (
    VALIDATION_AMOUNT,
    BillingInfo,
    CustomerProfile,
    PaymentGateway,
    SubscriptionSchedule,
)
from apps.billing.services.plan_changes import get_account
from apps.billing.services.proration import add_months
from apps.core.posthog import capture_event

logger = logging.getLogger(__name__)

UPDATE_CARD_CONTEXT = "UPDATE_CARD"

_NEEDS_ATTENTION = {models.SubscriptionStatus.SUSPENDED, models.SubscriptionStatus.FAILED}


def billing_from_account(account: models.Account) -> BillingInfo:
    return BillingInfo(
        first_name=account.first_name,
        last_name=account.last_name,
        email=account.email,
        phone_number=account.phone_number,
        street=account.street,
        city=account.city,
        state=account.state,
        zip_code=account.zip_code,
    )


def _reactivate_subscription(
    account: models.Account,
    subscription: models.Subscription,
    profile: CustomerProfile,
    gateway: PaymentGateway,
) -> None:
    """Bring a suspended or failed subscription back now that a working card is on file.

    A subscription that never reached the gateway is created there against the
    updated profile. Gateway failures are logged and left on the subscription.
    """

    previous = subscription.status
    if not subscription.external_subscription_id:
        schedule = SubscriptionSchedule.starting_next_month(is_annual=account.is_annually)
        subscription.attempts += 1
        try:
            subscription.external_subscription_id = gateway.create_subscription(
                profile=profile,
                schedule=schedule,
                amount=account.total_price,
                username=account.username,
                reference=account.reference.hex[:20],
            )
        except GatewayError as exc:
            logger.error(
                "Could not set up a subscription for account %s after its card update: %s",
                account.reference,
                exc.detail,
            )
            subscription.last_error = exc.detail[:2000]
            subscription.save(update_fields=["attempts", "last_error", "updated_at"])
            return
        renew_date = add_months(timezone.now(), 1)
        subscription.next_billing_date = renew_date
        account.renew_date = renew_date
        account.save(update_fields=["renew_date", "updated_at"])

    subscription.status = models.SubscriptionStatus.ACTIVE
    subscription.last_error = ""
    subscription.save(
        update_fields=[
            "external_subscription_id",
            "status",
            "attempts",
            "last_error",
            "next_billing_date",
            "updated_at",
        ]
    )
    logger.info(
        "Subscription %s for account %s moved from %s to active after a card update",
        subscription.external_subscription_id,
        account.reference,
        previous,
    )


def update_card(
    account_reference: Any,
    card: CardData,
    *,
    gateway: Optional[PaymentGateway] = None,
) -> dict[str, Any]:
    """Verify a new card with a voided $1 authorization and store it on the profile."""

    account = get_account(account_reference)
    validate_card(card)
    gateway = require_gateway(gateway)
    billing = billing_from_account(account)

    authorization = gateway.authorize(
        amount=VALIDATION_AMOUNT,
        card=card,
        billing=billing,
        reference=f"CARD-{account.reference.hex[:15]}",
    )
    if not authorization.approved:
        raise GatewayDeclined(
            authorization.message,
            transaction_id=authorization.transaction_id or None,
        )

    try:
        gateway.void(authorization.transaction_id)
    except GatewayDeclined as exc:
        logger.warning(
            "Validation charge %s for account %s not voided: %s",
            authorization.transaction_id,
            account.reference,
            exc.detail,
        )

    mapping = models.CustomerProfileMapping.objects.filter(account=account).first()
    if mapping is not None and mapping.is_complete:
        profile = CustomerProfile(mapping.customer_profile_id, mapping.payment_profile_id)
        gateway.update_payment_profile(profile=profile, card=card)
    else:
        profile = gateway.ensure_customer_profile(
            card=card,
            billing=billing,
            reference=account.reference.hex[:20],
            username=account.username,
        )

    try:
        with transaction.atomic():
            if mapping is None:
                models.CustomerProfileMapping.objects.create(
                    account=account,
                    customer_profile_id=profile.customer_profile_id,
                    payment_profile_id=profile.payment_profile_id,
                )
            elif not mapping.is_complete:
                mapping.customer_profile_id = profile.customer_profile_id
                mapping.payment_profile_id = profile.payment_profile_id
                mapping.save(update_fields=["customer_profile_id", "payment_profile_id", "updated_at"])

            account.card_last_four = card.last_four
            account.card_expiry = card.expiry
            account.save(update_fields=["card_last_four", "card_expiry", "updated_at"])

            models.Transaction.objects.create(
                account=account,
                checkout_id=UPDATE_CARD_CONTEXT,
                amount=VALIDATION_AMOUNT,
                status=models.TransactionStatus.VOIDED,
                gateway_transaction_id=authorization.transaction_id,
            )
    except DatabaseError as exc:
        logger.error(
            "Reconciliation needed: card for account %s was updated at the gateway "
            "(profile %s) but not saved: %s",
            account.reference,
            profile.customer_profile_id,
            exc,
        )
        raise PersistenceError(
            "Card was updated but the account could not be saved",
            context={"account": str(account.reference)},
        ) from exc

    subscription = models.Subscription.objects.filter(account=account).first()
    if subscription is not None and subscription.status in _NEEDS_ATTENTION:
        _reactivate_subscription(account, subscription, profile, gateway)

    notifications.queue_email(notifications.card_updated_message(account))
    capture_event(account.email, "card_updated", {"last_four": card.last_four})

    return {
        "account_reference": str(account.reference),
        "card_last_four": account.card_last_four,
        "card_expiry": account.card_expiry,
        "transaction_id": authorization.transaction_id,
        "subscription_status": subscription.status if subscription else None,
    }


__all__ = ["UPDATE_CARD_CONTEXT", "billing_from_account", "update_card"]
