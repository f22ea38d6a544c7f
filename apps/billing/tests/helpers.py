"""Shared builders and a recording gateway double for billing tests."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Any, Optional

from django.utils import timezone

from apps.billing import models
from apps.billing.services.cards import CardData
from apps.billing.services.gateway import (
    AuthorizationResult,
    CustomerProfile,
    PaymentGateway,
)

VALID_CARD = CardData(number="4111111111111111", expiry="12/39", cvv="123", name="Ada Lovelace")


class RecordingGateway(PaymentGateway):
    """In-memory gateway that records every call it receives."""

    def __init__(
        self,
        *,
        authorization: Optional[AuthorizationResult] = None,
        profile: Optional[CustomerProfile] = None,
        subscription_id: str = "SUB-1",
        charge_id: str = "CHG-1",
        void_error: Optional[Exception] = None,
        subscription_error: Optional[Exception] = None,
        charge_error: Optional[Exception] = None,
        update_amount_error: Optional[Exception] = None,
    ) -> None:
        self.authorization = authorization or AuthorizationResult(approved=True, transaction_id="T-1")
        self.profile = profile or CustomerProfile("CP-1", "PP-1")
        self.subscription_id = subscription_id
        self.charge_id = charge_id
        self.void_error = void_error
        self.subscription_error = subscription_error
        self.charge_error = charge_error
        self.update_amount_error = update_amount_error
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def authorize(self, *, amount, card, billing, reference):
        self.calls.append(("authorize", {"amount": amount, "billing": billing, "reference": reference}))
        return self.authorization

    def void(self, transaction_id):
        self.calls.append(("void", {"transaction_id": transaction_id}))
        if self.void_error is not None:
            raise self.void_error

    def ensure_customer_profile(self, *, card, billing, reference, username, existing=None):
        self.calls.append(("ensure_customer_profile", {"reference": reference, "existing": existing}))
        if existing is not None and existing.is_complete:
            return existing
        return self.profile

    def create_subscription(self, *, profile, schedule, amount, username, reference):
        self.calls.append(
            (
                "create_subscription",
                {"profile": profile, "schedule": schedule, "amount": amount, "reference": reference},
            )
        )
        if self.subscription_error is not None:
            raise self.subscription_error
        return self.subscription_id

    def update_subscription_amount(self, subscription_id, amount):
        self.calls.append(("update_subscription_amount", {"subscription_id": subscription_id, "amount": amount}))
        if self.update_amount_error is not None:
            raise self.update_amount_error

    def charge_customer_profile(self, *, profile, amount, description, card_code=""):
        self.calls.append(("charge_customer_profile", {"profile": profile, "amount": amount, "card_code": card_code}))
        if self.charge_error is not None:
            raise self.charge_error
        return self.charge_id

    def update_payment_profile(self, *, profile, card):
        self.calls.append(("update_payment_profile", {"profile": profile, "last_four": card.last_four}))


def declined(message: str = "This transaction has been declined.") -> RecordingGateway:
    return RecordingGateway(authorization=AuthorizationResult(approved=False, message=message))


def make_checkout(checkout_id: str = "chk-1", *, annual: bool = False, plans=None) -> models.CheckoutRecord:
    models.Plan.objects.get_or_create(id=1, defaults={"name": "Basic", "price": Decimal("20.00")})
    return models.CheckoutRecord.objects.create(
        checkout_id=checkout_id,
        name="Ada King Lovelace",
        email="ada@example.com",
        username="ada",
        phone_number="555-123-4567",
        street="1 Analytical Way",
        city="London",
        state="NY",
        zip_code="10001",
        plans=plans
        or [
            {
                "plan_id": 1,
                "plan_name": "Basic",
                "price": "20.00",
                "annually": 1 if annual else 0,
                "quantity": 1,
            }
        ],
    )


def make_plan(
    plan_id: int = 1, name: str = "Basic", price: str = "20.00", *, discount_rules=None
) -> models.Plan:
    plan, _ = models.Plan.objects.update_or_create(
        id=plan_id,
        defaults={"name": name, "price": Decimal(price), "discount_rules": discount_rules or []},
    )
    return plan


def make_account(
    *,
    trial: bool = False,
    annual: bool = False,
    total: str = "20.00",
    renew_in: timedelta = timedelta(days=30),
    with_profile: bool = True,
    subscription_status: str = models.SubscriptionStatus.ACTIVE,
    external_subscription_id: Optional[str] = "SUB-9",
) -> models.Account:
    now = timezone.now()
    account = models.Account.objects.create(
        first_name="Ada",
        last_name="Lovelace",
        email="ada@example.com",
        username="ada",
        total_price=Decimal(total),
        is_annually=annual,
        is_trial=trial,
        renew_date=now + renew_in,
        purchased_plans=[
            {
                "plan_id": 1,
                "plan_name": "Basic",
                "annually": 1 if annual else 0,
                "username": "ada",
                "email": "ada@example.com",
                "is_master": 1,
            }
        ],
        simultaneous_users=1,
        card_last_four="1111",
        card_expiry="12/39",
    )
    if with_profile:
        models.CustomerProfileMapping.objects.create(
            account=account, customer_profile_id="CP-9", payment_profile_id="PP-9"
        )
    models.Subscription.objects.create(
        account=account,
        external_subscription_id=external_subscription_id,
        status=subscription_status,
        next_billing_date=account.renew_date,
    )
    return account


__all__ = [
    "RecordingGateway",
    "VALID_CARD",
    "declined",
    "make_account",
    "make_checkout",
    "make_plan",
]
