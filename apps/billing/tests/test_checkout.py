"""Tests for the checkout orchestrator."""

from __future__ import annotations

from decimal import Decimal
from unittest import mock

import pytest
from django.db import DatabaseError

from apps.billing import models
from apps.billing.services import checkout, locks
from apps.billing.services.cards import CardData, load_temporary_card
from apps.billing.services.errors import (
    ConflictError,
    GatewayDeclined,
    GatewayNotConfigured,
    InvalidQuantity,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from apps.billing.services.gateway import AuthorizationResult

from .helpers import VALID_CARD, RecordingGateway, declined, make_checkout, make_plan


@pytest.mark.django_db
def test_immediate_flow_creates_active_subscription(enqueued):
    make_checkout()
    gateway = RecordingGateway()

    outcome = checkout.process_checkout(
        checkout_id="chk-1",
        card=VALID_CARD,
        request_id="req-1",
        flow="immediate",
        gateway=gateway,
    )

    assert outcome.status == "success"
    assert outcome.subscription_status == models.SubscriptionStatus.ACTIVE
    assert gateway.names() == ["authorize", "void", "ensure_customer_profile", "create_subscription"]
    assert gateway.calls[0][1]["amount"] == Decimal("1.00")
    assert gateway.calls[3][1]["amount"] == Decimal("20.00")

    account = models.Account.objects.get(reference=outcome.account_reference)
    assert account.is_trial is True
    assert account.first_name == "Ada"
    assert account.last_name == "King Lovelace"
    assert account.card_last_four == "1111"
    assert account.customer_profile.customer_profile_id == "CP-1"
    assert account.subscription.external_subscription_id == "SUB-1"

    trial, upcoming = account.invoices.order_by("due_date")
    assert (trial.is_trial, trial.is_paid, trial.total) == (True, True, Decimal("0.00"))
    assert (upcoming.is_paid, upcoming.total) == (False, Decimal("20.00"))

    transaction = models.Transaction.objects.get(checkout_id="chk-1")
    assert transaction.status == models.TransactionStatus.VOIDED
    assert transaction.amount == Decimal("1.00")

    assert models.CheckoutRecord.objects.get(checkout_id="chk-1").status == "processed"
    assert models.PaymentResult.objects.get(request_id="req-1").status == "success"
    assert not locks.is_locked("chk-1")
    assert enqueued["enqueue"].call_count == 3


@pytest.mark.django_db
def test_deferred_flow_keeps_authorization_and_queues_setup(enqueued, settings):
    settings.BILLING_DEFERRED_DELAY_SECONDS = 120
    make_checkout()
    gateway = RecordingGateway()

    outcome = checkout.process_checkout(
        checkout_id="chk-1",
        card=VALID_CARD,
        request_id="req-1",
        flow="deferred",
        gateway=gateway,
    )

    assert outcome.subscription_status == models.SubscriptionStatus.PENDING
    assert gateway.names() == ["authorize"]
    assert models.Transaction.objects.get(checkout_id="chk-1").status == "authorized"
    assert load_temporary_card("chk-1") == VALID_CARD
    enqueued["enqueue_delayed"].assert_called_once_with(
        "billing.complete_subscription_setup", {"checkout_id": "chk-1"}, 120
    )


@pytest.mark.django_db
def test_flow_defaults_to_setting(enqueued, settings):
    settings.BILLING_CHECKOUT_FLOW = "immediate"
    make_checkout()

    outcome = checkout.process_checkout(
        checkout_id="chk-1", card=VALID_CARD, request_id="req-1", gateway=RecordingGateway()
    )

    assert outcome.flow == "immediate"


@pytest.mark.django_db
def test_repeat_submission_is_not_charged_twice(enqueued):
    make_checkout()
    first = RecordingGateway()
    checkout.process_checkout(
        checkout_id="chk-1", card=VALID_CARD, request_id="req-1", flow="deferred", gateway=first
    )

    second = RecordingGateway()
    outcome = checkout.process_checkout(
        checkout_id="chk-1", card=VALID_CARD, request_id="req-2", flow="deferred", gateway=second
    )

    assert outcome.status == "already_processed"
    assert second.calls == []
    assert models.Account.objects.count() == 1


@pytest.mark.django_db
def test_processed_record_short_circuits_without_transactions(enqueued):
    record = make_checkout()
    record.status = models.CheckoutStatus.PROCESSED
    record.save()
    gateway = RecordingGateway()

    outcome = checkout.process_checkout(checkout_id="chk-1", card=VALID_CARD, gateway=gateway)

    assert outcome.status == "already_processed"
    assert gateway.calls == []


@pytest.mark.django_db
def test_held_lock_raises_conflict():
    make_checkout()
    locks.acquire("chk-1")
    gateway = RecordingGateway()

    with pytest.raises(ConflictError):
        checkout.process_checkout(checkout_id="chk-1", card=VALID_CARD, gateway=gateway)

    assert gateway.calls == []
    assert locks.is_locked("chk-1")


@pytest.mark.django_db
def test_unknown_checkout_raises_not_found_and_releases_lock():
    with pytest.raises(NotFoundError):
        checkout.process_checkout(checkout_id="missing", card=VALID_CARD, gateway=RecordingGateway())

    assert not locks.is_locked("missing")


@pytest.mark.django_db
def test_invalid_card_never_reaches_gateway():
    make_checkout()
    gateway = RecordingGateway()
    bad_card = CardData(number="4111111111111112", expiry="12/39", cvv="123", name="Ada")

    with pytest.raises(ValidationError):
        checkout.process_checkout(
            checkout_id="chk-1", card=bad_card, request_id="req-1", gateway=gateway
        )

    assert gateway.calls == []
    assert models.PaymentResult.objects.get(request_id="req-1").status == "failed"


@pytest.mark.django_db
def test_decline_surfaces_gateway_message_and_creates_no_rows():
    make_checkout()

    with pytest.raises(GatewayDeclined) as excinfo:
        checkout.process_checkout(
            checkout_id="chk-1",
            card=VALID_CARD,
            request_id="req-1",
            gateway=declined("Card code mismatch."),
        )

    assert excinfo.value.detail == "Card code mismatch."
    assert models.Account.objects.count() == 0
    assert models.Transaction.objects.count() == 0
    result = models.PaymentResult.objects.get(request_id="req-1")
    assert (result.status, result.error_message) == ("failed", "Card code mismatch.")
    assert not locks.is_locked("chk-1")


@pytest.mark.django_db
def test_duplicate_authorization_tolerates_failed_void(enqueued):
    make_checkout()
    gateway = RecordingGateway(
        authorization=AuthorizationResult(approved=True, transaction_id="T-0", is_duplicate=True),
        void_error=GatewayDeclined("Transaction already voided"),
    )

    outcome = checkout.process_checkout(
        checkout_id="chk-1", card=VALID_CARD, flow="immediate", gateway=gateway
    )

    assert outcome.status == "success"
    assert outcome.transaction_id == "T-0"


@pytest.mark.django_db
def test_persistence_failure_after_gateway_success_is_not_reversed(enqueued):
    make_checkout()
    gateway = RecordingGateway()

    with mock.patch.object(
        models.Account.objects, "create", side_effect=DatabaseError("disk full")
    ), pytest.raises(PersistenceError) as excinfo:
        checkout.process_checkout(
            checkout_id="chk-1", card=VALID_CARD, request_id="req-1", flow="immediate", gateway=gateway
        )

    assert excinfo.value.context["subscription_id"] == "SUB-1"
    assert gateway.names() == ["authorize", "void", "ensure_customer_profile", "create_subscription"]
    assert models.Subscription.objects.count() == 0
    assert not locks.is_locked("chk-1")


@pytest.mark.django_db
def test_unconfigured_gateway(settings):
    settings.AUTHNET_API_LOGIN_ID = None
    settings.AUTHNET_TRANSACTION_KEY = None
    make_checkout()

    with pytest.raises(GatewayNotConfigured):
        checkout.process_checkout(checkout_id="chk-1", card=VALID_CARD)


@pytest.mark.django_db
def test_line_items_expand_quantity_and_price_annual_cadence():
    make_plan(2, "Pro", "9.99")
    record = make_checkout(
        plans=[
            {"plan_id": 1, "plan_name": "Basic", "price": "20.00", "annually": 1, "quantity": 2},
            {"plan_id": 2, "plan_name": "Pro", "price": "9.99", "annually": 1},
        ]
    )

    items, total = checkout.build_line_items(record)

    assert total == Decimal("499.90")
    assert [item["plan_id"] for item in items] == [1, 1, 2]
    assert items[0]["is_master"] == 1 and items[0]["username"] == "ada"
    assert all(item["annually"] == 1 for item in items)
    assert items[1]["username"] == "none"


@pytest.mark.django_db
def test_checkout_is_priced_from_the_catalog(enqueued):
    make_plan(1, "Basic", "20.00")
    make_checkout(plans=[{"plan_id": 1, "plan_name": "Cheap", "price": "0.01", "quantity": 1}])
    gateway = RecordingGateway()

    outcome = checkout.process_checkout(
        checkout_id="chk-1", card=VALID_CARD, flow="immediate", gateway=gateway
    )

    account = models.Account.objects.get(reference=outcome.account_reference)
    assert account.total_price == Decimal("20.00")
    assert account.purchased_plans[0]["plan_name"] == "Basic"
    _, subscription_call = gateway.calls[-1]
    assert subscription_call["amount"] == Decimal("20.00")


@pytest.mark.django_db
def test_unknown_plan_fails_before_the_gateway(enqueued):
    make_checkout(plans=[{"plan_id": 1, "quantity": 1}, {"plan_id": 999, "price": "5.00", "quantity": 1}])
    gateway = RecordingGateway()

    with pytest.raises(NotFoundError):
        checkout.process_checkout(
            checkout_id="chk-1", card=VALID_CARD, request_id="req-1", flow="immediate", gateway=gateway
        )

    assert gateway.calls == []
    assert not models.Account.objects.exists()
    result = models.PaymentResult.objects.get(request_id="req-1")
    assert result.status == models.PaymentResultStatus.FAILED
    assert result.error_message == "Plan 999 not found"


@pytest.mark.django_db
def test_non_positive_quantity_is_rejected(enqueued):
    make_checkout(plans=[{"plan_id": 1, "quantity": 1}, {"plan_id": 1, "quantity": 0}])
    gateway = RecordingGateway()

    with pytest.raises(InvalidQuantity):
        checkout.process_checkout(checkout_id="chk-1", card=VALID_CARD, flow="deferred", gateway=gateway)

    assert gateway.calls == []


@pytest.mark.django_db
def test_volume_discount_follows_whole_cart_item_count():
    make_plan(
        1,
        "Basic",
        "20.00",
        discount_rules=[{"qtd": "2", "percent": "10"}, {"qtd": "3", "percent": "25"}, {"qtd": "many"}],
    )
    make_plan(2, "Pro", "9.99")
    record = make_checkout(plans=[{"plan_id": 1, "quantity": 2}, {"plan_id": 2, "quantity": 1}])

    items, total = checkout.build_line_items(record)

    # three items reach the 25% tier on Basic; Pro has no rules
    assert total == Decimal("39.99")
    assert len(items) == 3


@pytest.mark.django_db
def test_volume_discount_needs_the_minimum_item_count():
    make_plan(1, "Basic", "20.00", discount_rules=[{"qtd": "2", "percent": "10"}])
    record = make_checkout(plans=[{"plan_id": 1, "quantity": 1}])

    _, total = checkout.build_line_items(record)

    assert total == Decimal("20.00")


@pytest.mark.django_db
def test_status_lookups(enqueued):
    make_checkout()

    assert checkout.checkout_status("chk-1")["payment_status"] == "not_started"

    checkout.process_checkout(
        checkout_id="chk-1", card=VALID_CARD, request_id="req-1", flow="deferred",
        gateway=RecordingGateway(),
    )

    status = checkout.checkout_status("chk-1")
    assert status["processed"] is True
    assert status["locked"] is False
    assert status["payment_status"] == "success"

    payment = checkout.payment_status("req-1")
    assert payment["payment_status"] == "success"
    assert payment["transaction_id"] == "T-1"
    assert payment["account_created"] is True

    with pytest.raises(NotFoundError):
        checkout.payment_status("nope")
    with pytest.raises(NotFoundError):
        checkout.checkout_status("nope")


@pytest.mark.django_db
def test_reset_releases_lock():
    locks.acquire("chk-1")

    assert checkout.reset_checkout("chk-1") == {"checkout_id": "chk-1", "locked": False}
    assert not locks.is_locked("chk-1")


def test_generate_checkout_id_is_unique():
    assert checkout.generate_checkout_id() != checkout.generate_checkout_id()
