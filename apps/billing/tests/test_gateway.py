"""Tests for the Authorize.Net gateway client."""

from __future__ import annotations

import json
from datetime import date
from decimal import Decimal

import httpx
import pytest

from apps.billing.services.cards import CardData
from apps.billing.services.errors import GatewayDeclined, GatewayTransportError
from apps.billing.services.gateway import (
    SANDBOX_ENDPOINT,
    AuthorizeNetGateway,
    BillingInfo,
    CustomerProfile,
    SubscriptionSchedule,
    extract_profile_id,
    format_phone_number,
    get_payment_gateway,
)

CARD = CardData(number="4111111111111111", expiry="12/30", cvv="123", name="Ada Lovelace")
BILLING = BillingInfo(
    first_name="Ada",
    last_name="Lovelace",
    email="ada@example.com",
    phone_number="+1 555 123 4567",
    street="1 Analytical Way",
    city="London",
    state="NY",
    zip_code="10001",
)
OK = {"resultCode": "Ok", "message": [{"code": "I00001", "text": "Successful."}]}


class Recorder:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        body = self.responses.pop(0)
        if isinstance(body, httpx.Response):
            return body
        # the live API prefixes JSON with a byte order mark
        return httpx.Response(200, content=("\ufeff" + json.dumps(body)).encode("utf-8"))


def _gateway(recorder: Recorder) -> AuthorizeNetGateway:
    return AuthorizeNetGateway(
        api_login_id="login",
        transaction_key="key",
        brand_name="Acme",
        transport=httpx.MockTransport(recorder),
    )


def test_authorize_approved_sends_ordered_request():
    recorder = Recorder(
        {
            "messages": OK,
            "transactionResponse": {
                "responseCode": "1",
                "transId": "60001",
                "messages": [{"code": "1", "description": "This transaction has been approved."}],
            },
        }
    )

    result = _gateway(recorder).authorize(
        amount=Decimal("1.00"), card=CARD, billing=BILLING, reference="chk-123"
    )

    assert result.approved is True
    assert result.transaction_id == "60001"
    assert result.is_duplicate is False

    body = recorder.requests[0]["createTransactionRequest"]
    assert list(body) == ["merchantAuthentication", "refId", "transactionRequest"]
    request = body["transactionRequest"]
    assert list(request) == [
        "transactionType",
        "amount",
        "payment",
        "order",
        "customer",
        "billTo",
        "transactionSettings",
    ]
    assert request["transactionType"] == "authOnlyTransaction"
    assert request["amount"] == "1.00"
    assert request["payment"]["creditCard"]["expirationDate"] == "2030-12"
    assert len(request["order"]["invoiceNumber"]) <= 20
    assert request["billTo"]["phoneNumber"] == "(555) 123-4567"
    assert request["transactionSettings"]["setting"][0] == {
        "settingName": "duplicateWindow",
        "settingValue": "3",
    }


def test_authorize_duplicate_returns_original_transaction():
    recorder = Recorder(
        {
            "messages": {
                "resultCode": "Error",
                "message": [{"code": "E00027", "text": "The transaction was unsuccessful."}],
            },
            "transactionResponse": {
                "responseCode": "3",
                "errors": [
                    {
                        "errorCode": "11",
                        "errorText": "A duplicate transaction has been submitted.",
                        "originalTransactionId": "59999",
                    }
                ],
            },
        }
    )

    result = _gateway(recorder).authorize(
        amount=Decimal("1.00"), card=CARD, billing=BILLING, reference="chk-123"
    )

    assert result.approved is True
    assert result.is_duplicate is True
    assert result.transaction_id == "59999"


def test_authorize_decline_uses_error_text():
    recorder = Recorder(
        {
            "messages": OK,
            "transactionResponse": {
                "responseCode": "2",
                "transId": "60002",
                "errors": [{"errorCode": "2", "errorText": "This transaction has been declined."}],
            },
        }
    )

    result = _gateway(recorder).authorize(
        amount=Decimal("1.00"), card=CARD, billing=BILLING, reference="chk-123"
    )

    assert result.approved is False
    assert result.message == "This transaction has been declined."


def test_authorize_error_result_uses_first_message():
    recorder = Recorder(
        {
            "messages": {
                "resultCode": "Error",
                "message": [{"code": "E00007", "text": "User authentication failed."}],
            }
        }
    )

    result = _gateway(recorder).authorize(
        amount=Decimal("1.00"), card=CARD, billing=BILLING, reference="chk-123"
    )

    assert result.approved is False
    assert result.message == "User authentication failed."


def test_long_reference_is_truncated_for_ref_id():
    recorder = Recorder({"messages": OK, "transactionResponse": {"responseCode": "1", "transId": "1"}})

    _gateway(recorder).authorize(
        amount=Decimal("1.00"),
        card=CARD,
        billing=BILLING,
        reference="0f8fad5b-d9cb-469f-a165-70867728950e",
    )

    body = recorder.requests[0]["createTransactionRequest"]
    assert body["refId"] == "0f8fad5b-d9cb-469f-a"
    assert len(body["transactionRequest"]["order"]["invoiceNumber"]) <= 20


def test_transport_failure_raises():
    def explode(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    gateway = AuthorizeNetGateway(
        api_login_id="login", transaction_key="key", transport=httpx.MockTransport(explode)
    )

    with pytest.raises(GatewayTransportError):
        gateway.void("60001")


def test_busy_client_gives_up_within_the_timeout():
    recorder = Recorder(OK)
    gateway = AuthorizeNetGateway(
        api_login_id="login",
        transaction_key="key",
        timeout=0.05,
        transport=httpx.MockTransport(recorder),
    )
    gateway._lock.acquire()
    try:
        with pytest.raises(GatewayTransportError, match="busy"):
            gateway.void("60001")
    finally:
        gateway._lock.release()

    assert recorder.requests == []


def test_undecodable_body_raises_transport_error():
    recorder = Recorder(httpx.Response(200, content=b"<html>maintenance</html>"))

    with pytest.raises(GatewayTransportError):
        _gateway(recorder).void("60001")


def test_void_failure_raises_declined():
    recorder = Recorder(
        {
            "messages": {
                "resultCode": "Error",
                "message": [{"code": "E00027", "text": "The transaction was unsuccessful."}],
            },
            "transactionResponse": {"responseCode": "3"},
        }
    )

    with pytest.raises(GatewayDeclined):
        _gateway(recorder).void("60001")

    assert recorder.requests[0]["createTransactionRequest"]["transactionRequest"] == {
        "transactionType": "voidTransaction",
        "refTransId": "60001",
    }


def test_existing_complete_profile_is_reused_without_call():
    recorder = Recorder()
    existing = CustomerProfile("CP-1", "PP-1")

    profile = _gateway(recorder).ensure_customer_profile(
        card=CARD, billing=BILLING, reference="chk-1", username="ada", existing=existing
    )

    assert profile == existing
    assert recorder.requests == []


def test_create_customer_profile():
    recorder = Recorder(
        {"messages": OK, "customerProfileId": "500100", "customerPaymentProfileIdList": ["600200"]}
    )

    profile = _gateway(recorder).ensure_customer_profile(
        card=CARD, billing=BILLING, reference="chk-1", username="ada"
    )

    assert profile == CustomerProfile("500100", "600200")
    body = recorder.requests[0]["createCustomerProfileRequest"]
    assert body["validationMode"] == "testMode"
    payment_profile = body["profile"]["paymentProfiles"][0]
    assert payment_profile["customerType"] == "individual"
    assert payment_profile["billTo"]["country"] == "US"
    assert payment_profile["defaultPaymentProfile"] is True
    assert body["profile"]["description"] == "Acme Customer Profile - ada"


def test_duplicate_profile_is_recovered_with_lookup():
    recorder = Recorder(
        {
            "messages": {
                "resultCode": "Error",
                "message": [
                    {"code": "E00039", "text": "A duplicate record with ID 1505598716 already exists."}
                ],
            }
        },
        {
            "messages": OK,
            "profile": {
                "customerProfileId": "1505598716",
                "paymentProfiles": [{"customerPaymentProfileId": "1504925302"}],
            },
        },
    )

    profile = _gateway(recorder).ensure_customer_profile(
        card=CARD, billing=BILLING, reference="chk-1", username="ada"
    )

    assert profile == CustomerProfile("1505598716", "1504925302")
    assert recorder.requests[1]["getCustomerProfileRequest"]["customerProfileId"] == "1505598716"


def test_duplicate_profile_with_failed_lookup_returns_partial_profile():
    recorder = Recorder(
        {
            "messages": {
                "resultCode": "Error",
                "message": [
                    {"code": "E00039", "text": "A duplicate record with ID 1505598716 already exists."}
                ],
            }
        },
        {"messages": {"resultCode": "Error", "message": [{"code": "E00040", "text": "Not found."}]}},
    )

    profile = _gateway(recorder).ensure_customer_profile(
        card=CARD, billing=BILLING, reference="chk-1", username="ada"
    )

    assert profile == CustomerProfile("1505598716", "")
    assert profile.is_complete is False


def test_create_subscription_sends_profile_not_card():
    recorder = Recorder({"messages": OK, "subscriptionId": "9001"})
    schedule = SubscriptionSchedule(is_annual=True, start_date=date(2025, 7, 1))

    subscription_id = _gateway(recorder).create_subscription(
        profile=CustomerProfile("CP-1", "PP-1"),
        schedule=schedule,
        amount=Decimal("200"),
        username="a-very-long-username-that-needs-trimming-badly",
        reference="chk-1",
    )

    assert subscription_id == "9001"
    subscription = recorder.requests[0]["ARBCreateSubscriptionRequest"]["subscription"]
    assert subscription["paymentSchedule"] == {
        "interval": {"length": 12, "unit": "months"},
        "startDate": "2025-07-01",
        "totalOccurrences": "9999",
    }
    assert subscription["amount"] == "200.00"
    assert subscription["profile"] == {"customerProfileId": "CP-1", "customerPaymentProfileId": "PP-1"}
    assert "payment" not in subscription
    assert len(subscription["name"]) <= 50
    assert subscription["name"].startswith("Acme - ")


def test_create_subscription_requires_complete_profile():
    recorder = Recorder()

    with pytest.raises(GatewayDeclined):
        _gateway(recorder).create_subscription(
            profile=CustomerProfile("CP-1", ""),
            schedule=SubscriptionSchedule(is_annual=False, start_date=date(2025, 7, 1)),
            amount=Decimal("20"),
            username="ada",
            reference="chk-1",
        )
    assert recorder.requests == []


def test_charge_customer_profile_includes_card_code():
    recorder = Recorder(
        {"messages": OK, "transactionResponse": {"responseCode": "1", "transId": "70001"}}
    )

    transaction_id = _gateway(recorder).charge_customer_profile(
        profile=CustomerProfile("CP-1", "PP-1"),
        amount=Decimal("6.67"),
        description="Prorated charge",
        card_code="123",
    )

    assert transaction_id == "70001"
    request = recorder.requests[0]["createTransactionRequest"]["transactionRequest"]
    assert request["transactionType"] == "authCaptureTransaction"
    assert request["profile"]["paymentProfile"] == {"paymentProfileId": "PP-1", "cardCode": "123"}
    assert request["order"]["invoiceNumber"].startswith("ADDPLAN-")


def test_update_subscription_amount_failure_raises():
    recorder = Recorder(
        {"messages": {"resultCode": "Error", "message": [{"code": "E00035", "text": "Not found."}]}}
    )

    with pytest.raises(GatewayDeclined):
        _gateway(recorder).update_subscription_amount("9001", Decimal("40"))


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("A duplicate record with ID 1505598716 already exists.", "1505598716"),
        ("A duplicate record with id 12345678 already exists", "12345678"),
        ("Duplicate profile 987654321.", "987654321"),
        ("A duplicate record already exists.", None),
        ("Record 1234567 exists", None),
        ("", None),
    ],
)
def test_extract_profile_id(message, expected):
    assert extract_profile_id(message) == expected


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("5551234567", "(555) 123-4567"),
        ("+1 (555) 123-4567", "(555) 123-4567"),
        ("25551234567", ""),
        ("12345", ""),
        ("", ""),
    ],
)
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw) == expected


def test_get_payment_gateway_requires_credentials(settings):
    settings.AUTHNET_API_LOGIN_ID = None
    settings.AUTHNET_TRANSACTION_KEY = None

    assert get_payment_gateway() is None


def test_get_payment_gateway_uses_sandbox_by_default(settings):
    settings.AUTHNET_API_LOGIN_ID = "login"
    settings.AUTHNET_TRANSACTION_KEY = "key"
    settings.AUTHNET_ENVIRONMENT = "sandbox"

    gateway = get_payment_gateway()

    assert isinstance(gateway, AuthorizeNetGateway)
    assert gateway.endpoint == SANDBOX_ENDPOINT
