"""Payment gateway client (Authorize.Net JSON API over httpx).

The gateway exposes a small, stable contract to the rest of the billing app:

* ``authorize`` returns an :class:`AuthorizationResult`; business declines
  are results (``approved=False``), never exceptions.
* ``void``, ``create_subscription`` and the profile operations raise
  :class:`GatewayDeclined` when the gateway refuses the request and
  :class:`GatewayTransportError` for network or decoding failures.

All outbound identifiers are truncated to the gateway's documented limits,
and every HTTP exchange is serialized through a per-client lock.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from functools import lru_cache
from typing import Any, Optional

import httpx
from django.conf import settings
from django.utils import timezone

from apps.billing.services.cards import CardData
from apps.billing.services.errors import GatewayDeclined, GatewayError, GatewayTransportError
from apps.billing.services.proration import add_months

logger = logging.getLogger(__name__)

SANDBOX_ENDPOINT = "https://apitest.authorize.net/xml/v1/request.api"
PRODUCTION_ENDPOINT = "https://api.authorize.net/xml/v1/request.api"
DUPLICATE_WINDOW_SECONDS = 3
REQUEST_TIMEOUT_SECONDS = 45.0
MAX_REF_ID_LENGTH = 20
MAX_MERCHANT_CUSTOMER_ID_LENGTH = 20
MAX_INVOICE_NUMBER_LENGTH = 20
MAX_DESCRIPTION_LENGTH = 255
MAX_SUBSCRIPTION_NAME_LENGTH = 50
VALIDATION_AMOUNT = Decimal("1.00")
OPEN_ENDED_OCCURRENCES = "9999"

DUPLICATE_TRANSACTION_CODE = "E00027"
DUPLICATE_TRANSACTION_ERROR = "11"
DUPLICATE_PROFILE_CODE = "E00039"
APPROVED_RESPONSE_CODE = "1"


@dataclass(frozen=True)
class BillingInfo:
    first_name: str
    last_name: str
    email: str = ""
    phone_number: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""

    @classmethod
    def from_full_name(cls, full_name: str, **fields: str) -> "BillingInfo":
        parts = (full_name or "").split()
        first = parts[0] if parts else ""
        last = " ".join(parts[1:])
        return cls(first_name=first, last_name=last, **fields)


@dataclass(frozen=True)
class AuthorizationResult:
    approved: bool
    transaction_id: str = ""
    message: str = ""
    is_duplicate: bool = False


@dataclass(frozen=True)
class CustomerProfile:
    customer_profile_id: str
    payment_profile_id: str

    @property
    def is_complete(self) -> bool:
        return bool(self.customer_profile_id and self.payment_profile_id)


@dataclass(frozen=True)
class SubscriptionSchedule:
    is_annual: bool
    start_date: date

    @property
    def interval_months(self) -> int:
        return 12 if self.is_annual else 1

    @classmethod
    def starting_next_month(cls, *, is_annual: bool, today: Optional[date] = None) -> "SubscriptionSchedule":
        today = today or timezone.now().date()
        return cls(is_annual=is_annual, start_date=add_months(today, 1))


_PROFILE_ID_AFTER_MARKER = re.compile(r"\bID\s+(\d{8,})", re.IGNORECASE)
_STANDALONE_PROFILE_ID = re.compile(r"(?<![\w])(\d{8,})(?![\w])")


def extract_profile_id(message: str) -> Optional[str]:
    """Recover the existing profile id from a duplicate-profile error message.

    Authorize.Net reports duplicates as free text, e.g.
    ``"A duplicate record with ID 1234567890 already exists."``. The first
    8+ digit run after the token ``ID`` wins; otherwise any standalone 8+
    digit token. Returns ``None`` when no id is present.
    """

    if not message:
        return None
    match = _PROFILE_ID_AFTER_MARKER.search(message)
    if match:
        return match.group(1)
    for token in message.split():
        cleaned = token.rstrip(".,;:")
        if _STANDALONE_PROFILE_ID.fullmatch(cleaned):
            return cleaned
    return None


def format_phone_number(phone: str) -> str:
    """Format as ``(xxx) xxx-xxxx``; returns "" when the number is unusable."""

    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 11 and digits[0] == "1":
        digits = digits[1:]
    if len(digits) != 10:
        return ""
    return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"


def _truncate(value: str, limit: int, label: str) -> str:
    if len(value) <= limit:
        return value
    truncated = value[:limit]
    logger.info("%s truncated from %r to %r (max %s chars)", label, value, truncated, limit)
    return truncated


def _fit_name(full: str, prefix: str, username: str, fallback: str, limit: int, label: str) -> str:
    if len(full) <= limit:
        return full
    available = limit - len(prefix)
    if available > 0:
        shortened = prefix + username[:available]
    else:
        shortened = fallback[:limit]
    logger.info("%s truncated from %r to %r (max %s chars)", label, full, shortened, limit)
    return shortened


def _money(amount: Decimal | float) -> str:
    return f"{Decimal(str(amount)):.2f}"


class PaymentGateway:
    """Abstract payment gateway interface."""

    def authorize(
        self,
        *,
        amount: Decimal,
        card: CardData,
        billing: BillingInfo,
        reference: str,
    ) -> AuthorizationResult:
        raise NotImplementedError

    def void(self, transaction_id: str) -> None:
        raise NotImplementedError

    def ensure_customer_profile(
        self,
        *,
        card: CardData,
        billing: BillingInfo,
        reference: str,
        username: str,
        existing: Optional[CustomerProfile] = None,
    ) -> CustomerProfile:
        raise NotImplementedError

    def create_subscription(
        self,
        *,
        profile: CustomerProfile,
        schedule: SubscriptionSchedule,
        amount: Decimal,
        username: str,
        reference: str,
    ) -> str:
        raise NotImplementedError

    def update_subscription_amount(self, subscription_id: str, amount: Decimal) -> None:
        raise NotImplementedError

    def charge_customer_profile(
        self,
        *,
        profile: CustomerProfile,
        amount: Decimal,
        description: str,
        card_code: str = "",
    ) -> str:
        raise NotImplementedError

    def update_payment_profile(
        self,
        *,
        profile: CustomerProfile,
        card: CardData,
    ) -> None:
        raise NotImplementedError


class AuthorizeNetGateway(PaymentGateway):
    """Authorize.Net-backed implementation of the payment gateway."""

    def __init__(
        self,
        *,
        api_login_id: str,
        transaction_key: str,
        environment: str = "sandbox",
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        brand_name: str = "Secure Billing",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_login_id = api_login_id
        self._transaction_key = transaction_key
        self._environment = environment
        self._brand_name = brand_name
        self._timeout = timeout
        self._lock = threading.Lock()
        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json", "Cache-Control": "no-cache"},
        )

    @property
    def endpoint(self) -> str:
        return PRODUCTION_ENDPOINT if self._environment == "production" else SANDBOX_ENDPOINT

    def close(self) -> None:
        self._client.close()

    # -- transport -------------------------------------------------------

    def _merchant_authentication(self) -> dict[str, str]:
        return {"name": self._api_login_id, "transactionKey": self._transaction_key}

    def _call(self, operation: str, body: dict[str, Any]) -> dict[str, Any]:
        payload = {operation: {"merchantAuthentication": self._merchant_authentication(), **body}}
        started = time.monotonic()
        if not self._lock.acquire(timeout=self._timeout):
            logger.warning(
                "Authorize.Net %s gave up waiting for the client after %ss", operation, self._timeout
            )
            raise GatewayTransportError("Payment gateway is busy; try again")
        try:
            response = self._client.post(self.endpoint, content=json.dumps(payload))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Authorize.Net %s failed: %s", operation, exc)
            raise GatewayTransportError(f"Payment gateway unavailable: {exc}") from exc
        finally:
            self._lock.release()

        text = response.content.decode("utf-8", errors="replace").lstrip("\ufeff")
        try:
            data = json.loads(text)
        except ValueError as exc:
            logger.warning("Authorize.Net %s returned undecodable body: %.300s", operation, text)
            raise GatewayTransportError("Payment gateway returned an invalid response") from exc

        logger.info(
            "Authorize.Net %s answered %s in %.2fs",
            operation,
            _result_code(data),
            time.monotonic() - started,
        )
        return data

    def _ref_id(self, reference: str) -> str:
        return _truncate(reference, MAX_REF_ID_LENGTH, "RefID")

    def _invoice_number(self, prefix: str, reference: str = "") -> str:
        stamp = time.time_ns()
        candidate = f"{prefix}-{reference}-{stamp}" if reference else f"{prefix}-{stamp}"
        if len(candidate) > MAX_INVOICE_NUMBER_LENGTH:
            candidate = f"{prefix}-{stamp % 100000}"
        return candidate[:MAX_INVOICE_NUMBER_LENGTH]

    @staticmethod
    def _bill_to(billing: BillingInfo) -> dict[str, str]:
        bill_to = {
            "firstName": billing.first_name,
            "lastName": billing.last_name,
            "address": billing.street,
            "city": billing.city,
            "state": billing.state,
            "zip": billing.zip_code,
            "country": "US",
        }
        phone = format_phone_number(billing.phone_number)
        if phone:
            bill_to["phoneNumber"] = phone
        elif billing.phone_number:
            logger.info("Omitting unformattable phone number from billing details")
        return bill_to

    @staticmethod
    def _credit_card(card: CardData) -> dict[str, Any]:
        return {
            "creditCard": {
                "cardNumber": card.number,
                "expirationDate": card.gateway_expiry,
                "cardCode": card.cvv,
            }
        }

    # -- transactions ----------------------------------------------------

    def authorize(
        self,
        *,
        amount: Decimal = VALIDATION_AMOUNT,
        card: CardData,
        billing: BillingInfo,
        reference: str,
    ) -> AuthorizationResult:
        transaction_request: dict[str, Any] = {
            "transactionType": "authOnlyTransaction",
            "amount": _money(amount),
            "payment": self._credit_card(card),
            "order": {
                "invoiceNumber": self._invoice_number("Order", reference),
                "description": f"{self._brand_name} Validation Charge",
            },
        }
        if billing.email:
            transaction_request["customer"] = {"type": "individual", "email": billing.email}
        transaction_request["billTo"] = self._bill_to(billing)
        transaction_request["transactionSettings"] = {
            "setting": [
                {"settingName": "duplicateWindow", "settingValue": str(DUPLICATE_WINDOW_SECONDS)}
            ]
        }

        logger.info(
            "Authorizing %s for %s with card ending %s",
            _money(amount),
            reference,
            card.last_four,
        )
        data = self._call(
            "createTransactionRequest",
            {"refId": self._ref_id(reference), "transactionRequest": transaction_request},
        )
        return interpret_authorization(data)

    def void(self, transaction_id: str) -> None:
        data = self._call(
            "createTransactionRequest",
            {
                "transactionRequest": {
                    "transactionType": "voidTransaction",
                    "refTransId": transaction_id,
                }
            },
        )
        if _result_code(data) == "Error":
            code, text = _first_message(data)
            raise GatewayDeclined(f"Void failed: {text or 'unknown error'} ({code})")

        transaction = data.get("transactionResponse") or {}
        if transaction.get("responseCode") != APPROVED_RESPONSE_CODE:
            raise GatewayDeclined(f"Void failed: {_transaction_message(transaction)}")
        logger.info("Voided transaction %s", transaction_id)

    def charge_customer_profile(
        self,
        *,
        profile: CustomerProfile,
        amount: Decimal,
        description: str,
        card_code: str = "",
    ) -> str:
        payment_profile = {"paymentProfileId": profile.payment_profile_id}
        if card_code:
            payment_profile["cardCode"] = card_code
        data = self._call(
            "createTransactionRequest",
            {
                "refId": self._ref_id(f"CHARGE-{int(time.time())}"),
                "transactionRequest": {
                    "transactionType": "authCaptureTransaction",
                    "amount": _money(amount),
                    "profile": {
                        "customerProfileId": profile.customer_profile_id,
                        "paymentProfile": payment_profile,
                    },
                    "order": {
                        "invoiceNumber": self._invoice_number("ADDPLAN"),
                        "description": description,
                    },
                },
            },
        )
        if _result_code(data) == "Error":
            _, text = _first_message(data)
            raise GatewayDeclined(f"Charge failed: {text or 'unknown error'}")

        transaction = data.get("transactionResponse") or {}
        if transaction.get("responseCode") != APPROVED_RESPONSE_CODE:
            raise GatewayDeclined(f"Charge declined: {_transaction_message(transaction)}")

        transaction_id = transaction.get("transId", "")
        logger.info("Charged profile %s for %s (%s)", profile.customer_profile_id, _money(amount), transaction_id)
        return transaction_id

    # -- customer profiles -----------------------------------------------

    def ensure_customer_profile(
        self,
        *,
        card: CardData,
        billing: BillingInfo,
        reference: str,
        username: str,
        existing: Optional[CustomerProfile] = None,
    ) -> CustomerProfile:
        if existing is not None and existing.is_complete:
            logger.info("Reusing customer profile %s", existing.customer_profile_id)
            return existing

        description = _fit_name(
            f"{self._brand_name} Customer Profile - {username}",
            f"{self._brand_name} Customer - ",
            username,
            f"{self._brand_name} Customer Profile",
            MAX_DESCRIPTION_LENGTH,
            "Profile description",
        )
        profile: dict[str, Any] = {
            "merchantCustomerId": _truncate(
                reference, MAX_MERCHANT_CUSTOMER_ID_LENGTH, "MerchantCustomerId"
            ),
            "description": description,
        }
        if billing.email:
            profile["email"] = billing.email
        profile["paymentProfiles"] = [
            {
                "customerType": "individual",
                "billTo": self._bill_to(billing),
                "payment": self._credit_card(card),
                "defaultPaymentProfile": True,
            }
        ]

        data = self._call(
            "createCustomerProfileRequest",
            {
                "refId": self._ref_id(reference),
                "profile": profile,
                "validationMode": "testMode",
            },
        )

        if _result_code(data) == "Error":
            code, text = _first_message(data)
            if code == DUPLICATE_PROFILE_CODE:
                return self._recover_duplicate_profile(text)
            raise GatewayDeclined(f"Customer profile creation failed: {text or 'unknown error'}")

        customer_profile_id = data.get("customerProfileId", "")
        payment_ids = data.get("customerPaymentProfileIdList") or []
        payment_profile_id = payment_ids[0] if payment_ids else ""
        if not payment_profile_id and customer_profile_id:
            payment_profile_id = self._first_payment_profile_id(customer_profile_id) or ""

        logger.info("Created customer profile %s", customer_profile_id)
        return CustomerProfile(customer_profile_id, payment_profile_id)

    def _recover_duplicate_profile(self, message: str) -> CustomerProfile:
        profile_id = extract_profile_id(message)
        if profile_id is None:
            raise GatewayDeclined(f"Customer profile already exists: {message}")

        logger.info("Customer profile %s already exists; looking up payment profile", profile_id)
        try:
            payment_profile_id = self._first_payment_profile_id(profile_id)
        except GatewayError as exc:
            logger.warning("Payment profile lookup for %s failed: %s", profile_id, exc.detail)
            payment_profile_id = None
        return CustomerProfile(profile_id, payment_profile_id or "")

    def _first_payment_profile_id(self, customer_profile_id: str) -> Optional[str]:
        data = self._call(
            "getCustomerProfileRequest",
            {"customerProfileId": customer_profile_id},
        )
        if _result_code(data) == "Error":
            _, text = _first_message(data)
            raise GatewayDeclined(f"Customer profile lookup failed: {text or 'unknown error'}")

        payment_profiles = (data.get("profile") or {}).get("paymentProfiles") or []
        if not payment_profiles:
            return None
        return payment_profiles[0].get("customerPaymentProfileId") or None

    def update_payment_profile(
        self,
        *,
        profile: CustomerProfile,
        card: CardData,
    ) -> None:
        data = self._call(
            "updateCustomerPaymentProfileRequest",
            {
                "customerProfileId": profile.customer_profile_id,
                "paymentProfile": {
                    "payment": self._credit_card(card),
                    "customerPaymentProfileId": profile.payment_profile_id,
                },
                "validationMode": "testMode",
            },
        )
        if _result_code(data) == "Error":
            _, text = _first_message(data)
            raise GatewayDeclined(f"Payment method update failed: {text or 'unknown error'}")
        logger.info(
            "Updated payment profile %s to card ending %s",
            profile.payment_profile_id,
            card.last_four,
        )

    # -- recurring billing -----------------------------------------------

    def create_subscription(
        self,
        *,
        profile: CustomerProfile,
        schedule: SubscriptionSchedule,
        amount: Decimal,
        username: str,
        reference: str,
    ) -> str:
        if not profile.is_complete:
            raise GatewayDeclined("Invalid customer profile or payment profile ID")

        name = _fit_name(
            f"{self._brand_name} Subscription - {username}",
            f"{self._brand_name} - ",
            username,
            f"{self._brand_name} Subscription",
            MAX_SUBSCRIPTION_NAME_LENGTH,
            "Subscription name",
        )
        data = self._call(
            "ARBCreateSubscriptionRequest",
            {
                "refId": self._ref_id(reference),
                "subscription": {
                    "name": name,
                    "paymentSchedule": {
                        "interval": {"length": schedule.interval_months, "unit": "months"},
                        "startDate": schedule.start_date.isoformat(),
                        "totalOccurrences": OPEN_ENDED_OCCURRENCES,
                    },
                    "amount": _money(amount),
                    "profile": {
                        "customerProfileId": profile.customer_profile_id,
                        "customerPaymentProfileId": profile.payment_profile_id,
                    },
                },
            },
        )
        if _result_code(data) == "Error":
            _, text = _first_message(data)
            raise GatewayDeclined(f"Subscription creation failed: {text or 'unknown error'}")

        subscription_id = data.get("subscriptionId", "")
        logger.info(
            "Created subscription %s for %s (%s every %s months)",
            subscription_id,
            reference,
            _money(amount),
            schedule.interval_months,
        )
        return subscription_id

    def update_subscription_amount(self, subscription_id: str, amount: Decimal) -> None:
        data = self._call(
            "ARBUpdateSubscriptionRequest",
            {
                "refId": self._ref_id(f"UPD-{int(time.time())}"),
                "subscriptionId": subscription_id,
                "subscription": {"amount": _money(amount)},
            },
        )
        if _result_code(data) == "Error":
            _, text = _first_message(data)
            raise GatewayDeclined(f"Subscription update failed: {text or 'unknown error'}")
        logger.info("Updated subscription %s to %s", subscription_id, _money(amount))


def _result_code(data: dict[str, Any]) -> str:
    return (data.get("messages") or {}).get("resultCode", "")


def _first_message(data: dict[str, Any]) -> tuple[str, str]:
    messages = (data.get("messages") or {}).get("message") or []
    if not messages:
        return "", ""
    return messages[0].get("code", ""), messages[0].get("text", "")


def _transaction_message(transaction: dict[str, Any]) -> str:
    errors = transaction.get("errors") or []
    if errors and errors[0].get("errorText"):
        return errors[0]["errorText"]
    messages = transaction.get("messages") or []
    if messages and messages[0].get("description"):
        return messages[0]["description"]
    return "Transaction failed"


def interpret_authorization(data: dict[str, Any]) -> AuthorizationResult:
    """Turn a createTransaction response into an :class:`AuthorizationResult`."""

    transaction = data.get("transactionResponse") or {}

    if _result_code(data) == "Error":
        codes = [message.get("code") for message in (data.get("messages") or {}).get("message") or []]
        if DUPLICATE_TRANSACTION_CODE in codes:
            for error in transaction.get("errors") or []:
                original = error.get("originalTransactionId")
                if error.get("errorCode") == DUPLICATE_TRANSACTION_ERROR and original:
                    logger.info("Duplicate authorization absorbed; original transaction %s", original)
                    return AuthorizationResult(
                        approved=True,
                        transaction_id=original,
                        message="Transaction previously processed",
                        is_duplicate=True,
                    )
        _, text = _first_message(data)
        return AuthorizationResult(approved=False, message=text or "Unknown error occurred")

    if transaction.get("responseCode") != APPROVED_RESPONSE_CODE:
        return AuthorizationResult(
            approved=False,
            transaction_id=transaction.get("transId", ""),
            message=_transaction_message(transaction),
        )

    messages = transaction.get("messages") or []
    return AuthorizationResult(
        approved=True,
        transaction_id=transaction.get("transId", ""),
        message=messages[0].get("description", "") if messages else "",
    )


@lru_cache()
def get_payment_gateway() -> AuthorizeNetGateway | None:
    """Lazily build the configured payment gateway, if credentials are set."""

    api_login_id = getattr(settings, "AUTHNET_API_LOGIN_ID", None)
    transaction_key = getattr(settings, "AUTHNET_TRANSACTION_KEY", None)
    if not api_login_id or not transaction_key:
        return None

    return AuthorizeNetGateway(
        api_login_id=api_login_id,
        transaction_key=transaction_key,
        environment=getattr(settings, "AUTHNET_ENVIRONMENT", "sandbox"),
        timeout=float(getattr(settings, "AUTHNET_TIMEOUT_SECONDS", REQUEST_TIMEOUT_SECONDS)),
        brand_name=getattr(settings, "BILLING_BRAND_NAME", "Secure Billing"),
    )


__all__ = [
    "AuthorizationResult",
    "AuthorizeNetGateway",
    "BillingInfo",
    "CustomerProfile",
    "PaymentGateway",
    "SubscriptionSchedule",
    "extract_profile_id",
    "format_phone_number",
    "get_payment_gateway",
    "interpret_authorization",
]
