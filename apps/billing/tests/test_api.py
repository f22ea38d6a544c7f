"""HTTP-level tests for the billing API."""

from __future__ import annotations

from urllib.parse import urlencode

import pytest
from django.urls import reverse
from rest_framework.test import APIClient

from apps.billing import models
from apps.billing.services import checkout, locks
from apps.billing.services.errors import GatewayDeclined
from apps.core.services import InMemoryRateLimiter, rate_limits

from .helpers import VALID_CARD, RecordingGateway, declined, make_account, make_checkout, make_plan

CARD_FIELDS = {
    "card_number": "4111 1111 1111 1111",
    "expiry": "12/39",
    "cvv": "123",
    "card_name": "Ada Lovelace",
}


@pytest.fixture(autouse=True)
def reset_rate_limiter(monkeypatch):
    monkeypatch.setattr(rate_limits, "_rate_limiter_singleton", InMemoryRateLimiter())
    yield


@pytest.fixture
def client():
    return APIClient()


def post_form(client, url, data):
    return client.post(url, urlencode(data), content_type="application/x-www-form-urlencoded")


@pytest.fixture
def gateway(monkeypatch):
    recording = RecordingGateway()
    monkeypatch.setattr(checkout, "get_payment_gateway", lambda: recording)
    return recording


@pytest.mark.django_db
def test_checkout_process_success(client, gateway, enqueued, settings):
    settings.BILLING_CHECKOUT_FLOW = "immediate"
    make_checkout()

    response = client.post(
        reverse("billing:checkout-process"),
        {"checkout_id": "chk-1", **CARD_FIELDS},
        format="json",
        HTTP_X_REQUEST_ID="req-42",
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["request_id"] == "req-42"
    assert body["subscription_status"] == "active"
    assert response["X-Request-ID"] == "req-42"


@pytest.mark.django_db
def test_checkout_process_decline_returns_gateway_message(client, monkeypatch):
    monkeypatch.setattr(checkout, "get_payment_gateway", lambda: declined("Card code mismatch."))
    make_checkout()

    response = client.post(
        reverse("billing:checkout-process"), {"checkout_id": "chk-1", **CARD_FIELDS}, format="json"
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Card code mismatch."


@pytest.mark.django_db
def test_checkout_process_invalid_card(client, gateway):
    make_checkout()

    response = client.post(
        reverse("billing:checkout-process"),
        {"checkout_id": "chk-1", **CARD_FIELDS, "cvv": "1"},
        format="json",
    )

    assert response.status_code == 400
    assert gateway.calls == []


@pytest.mark.django_db
def test_checkout_process_missing_fields(client):
    response = client.post(reverse("billing:checkout-process"), {"checkout_id": "chk-1"}, format="json")

    assert response.status_code == 400


@pytest.mark.django_db
def test_checkout_process_conflict(client, gateway):
    make_checkout()
    locks.acquire("chk-1")

    response = client.post(
        reverse("billing:checkout-process"), {"checkout_id": "chk-1", **CARD_FIELDS}, format="json"
    )

    assert response.status_code == 409


@pytest.mark.django_db
def test_checkout_process_unknown_checkout(client, gateway):
    response = client.post(
        reverse("billing:checkout-process"), {"checkout_id": "nope", **CARD_FIELDS}, format="json"
    )

    assert response.status_code == 404


@pytest.mark.django_db
def test_checkout_process_without_gateway_configuration(client, settings):
    settings.AUTHNET_API_LOGIN_ID = None
    settings.AUTHNET_TRANSACTION_KEY = None
    make_checkout()

    response = client.post(
        reverse("billing:checkout-process"), {"checkout_id": "chk-1", **CARD_FIELDS}, format="json"
    )

    assert response.status_code == 503


@pytest.mark.django_db
def test_checkout_process_is_rate_limited(client, gateway, settings):
    settings.RATE_LIMITS = {"checkout": {"per_minute": 1}}
    url = reverse("billing:checkout-process")

    client.post(url, {"checkout_id": "nope", **CARD_FIELDS}, format="json")
    response = client.post(url, {"checkout_id": "nope", **CARD_FIELDS}, format="json")

    assert response.status_code == 429
    assert "retry_after" in response.json()


@pytest.mark.django_db
def test_status_endpoints(client, gateway, enqueued):
    make_checkout()
    client.post(
        reverse("billing:checkout-process"),
        {"checkout_id": "chk-1", **CARD_FIELDS},
        format="json",
        HTTP_X_REQUEST_ID="req-1",
    )

    payment = client.get(reverse("billing:payment-status"), {"request_id": "req-1"})
    status = client.get(reverse("billing:checkout-status"), {"id": "chk-1"})

    assert payment.status_code == 200
    assert payment.json()["payment_status"] == "success"
    assert status.json()["processed"] is True
    assert client.get(reverse("billing:payment-status")).status_code == 400
    assert client.get(reverse("billing:payment-status"), {"request_id": "x"}).status_code == 404
    assert client.get(reverse("billing:checkout-status"), {"id": "x"}).status_code == 404


@pytest.mark.django_db
def test_reset_and_generate_id(client):
    reset = client.post(reverse("billing:checkout-reset"), {"checkout_id": "chk-1"}, format="json")
    generated = client.get(reverse("billing:checkout-generate-id"))

    assert reset.json() == {"checkout_id": "chk-1", "locked": False}
    assert len(generated.json()["checkout_id"]) == 36


@pytest.mark.django_db
def test_plan_preview_and_add(client, gateway, enqueued):
    make_plan()
    account = make_account()
    body = {"cart": [{"plan_id": 1, "quantity": 1}], "cvv": "123"}

    preview = client.post(
        reverse("billing:plans-preview", kwargs={"reference": account.reference}), body, format="json"
    )
    added = client.post(
        reverse("billing:plans-add", kwargs={"reference": account.reference}), body, format="json"
    )

    assert preview.status_code == 200
    assert preview.json()["new_total_price"] == "40.00"
    assert added.status_code == 200
    payload = added.json()
    assert payload["transaction_id"] == "CHG-1"
    assert payload["account"]["total_price"] == "40.00"
    assert payload["account"]["subscription"]["status"] == "active"


@pytest.mark.django_db
def test_add_plans_decline_is_payment_required(client, monkeypatch):
    monkeypatch.setattr(
        checkout,
        "get_payment_gateway",
        lambda: RecordingGateway(charge_error=GatewayDeclined("Insufficient funds")),
    )
    make_plan()
    account = make_account()

    response = client.post(
        reverse("billing:plans-add", kwargs={"reference": account.reference}),
        {"cart": [{"plan_id": 1}], "cvv": "123"},
        format="json",
    )

    assert response.status_code == 402
    assert response.json()["detail"] == "Insufficient funds"


@pytest.mark.django_db
def test_add_plans_for_unknown_plan(client, gateway):
    account = make_account()

    response = client.post(
        reverse("billing:plans-add", kwargs={"reference": account.reference}),
        {"cart": [{"plan_id": 99}], "cvv": "123"},
        format="json",
    )

    assert response.status_code == 404


@pytest.mark.django_db
def test_update_card(client, gateway, enqueued):
    account = make_account()

    response = client.post(
        reverse("billing:card-update", kwargs={"reference": account.reference}),
        {**CARD_FIELDS, "card_number": "5555555555554444"},
        format="json",
    )

    assert response.status_code == 200
    assert response.json()["card_last_four"] == "4444"


@pytest.mark.django_db
def test_silent_post_is_form_encoded(client, enqueued):
    make_account()

    response = post_form(
        client,
        reverse("billing:silent-post"),
        {"x_trans_id": "T-5", "x_response_code": "1", "x_ref_id": "chk-none"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "skipped"


@pytest.mark.django_db
def test_silent_post_requires_transaction_fields(client):
    response = post_form(client, reverse("billing:silent-post"), {"x_response_code": "1"})

    assert response.status_code == 400


@pytest.mark.django_db
def test_relay_response_redirects_to_result_page(client, settings):
    settings.BILLING_CHECKOUT_RESULT_URL = "https://shop.example.com/checkout/result"

    response = post_form(
        client,
        reverse("billing:relay-response"),
        {"x_trans_id": "T-5", "x_response_code": "2"},
    )

    assert response.status_code == 200
    assert response["Content-Type"].startswith("text/html")
    content = response.content.decode()
    assert 'content="0;url=https://shop.example.com/checkout/result?tx_id=T-5"' in content


@pytest.mark.django_db
def test_relay_response_escapes_transaction_id(client):
    response = post_form(
        client,
        reverse("billing:relay-response"),
        {"x_trans_id": '"><script>', "x_response_code": "2"},
    )

    assert "<script>" not in response.content.decode()


@pytest.mark.django_db
def test_subscription_notification(client, enqueued):
    make_account()

    response = post_form(
        client,
        reverse("billing:subscription-notification"),
        {"x_subscription_id": "SUB-9", "x_event_type": "subscription_suspended"},
    )

    assert response.status_code == 200
    assert response.json() == {"status": "processed", "reason": "suspended"}
    assert models.Subscription.objects.get(external_subscription_id="SUB-9").status == "suspended"


@pytest.mark.django_db
def test_webhooks_answer_200_while_the_broker_is_down(client, enqueued):
    make_account()
    make_checkout()
    checkout.process_checkout(
        checkout_id="chk-1", card=VALID_CARD, flow="deferred", gateway=RecordingGateway()
    )
    enqueued["enqueue"].side_effect = ConnectionError("broker down")

    silent = post_form(client, reverse("billing:silent-post"), {"x_trans_id": "T-1", "x_response_code": "1"})
    failed = post_form(
        client,
        reverse("billing:subscription-notification"),
        {"x_subscription_id": "SUB-9", "x_event_type": "subscription_failed"},
    )

    assert silent.status_code == 200
    assert silent.json()["status"] == "processed"
    assert failed.status_code == 200
    assert failed.json() == {"status": "processed", "reason": "failed"}
