"""Error taxonomy for billing operations.

Every error carries a human-readable ``detail``. Views translate the class
into an HTTP status; only ``ValidationError``, ``ConflictError``,
``GatewayDeclined`` and ``NotFoundError`` details are safe to show verbatim.
"""

from __future__ import annotations

from typing import Any, Optional


class BillingError(Exception):
    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ValidationError(BillingError):
    """Bad input; raised before any gateway or datastore side effect."""


class InvalidQuantity(ValidationError):
    def __init__(self, plan_id: Any) -> None:
        super().__init__(f"Invalid quantity for plan {plan_id}")
        self.plan_id = plan_id


class ConflictError(BillingError):
    """The checkout is already being processed by another request."""


class GatewayError(BillingError):
    """Base class for payment gateway failures."""


class GatewayDeclined(GatewayError):
    """Business decline from the gateway; the message is user-facing."""

    def __init__(self, detail: str, *, transaction_id: Optional[str] = None) -> None:
        super().__init__(detail)
        self.transaction_id = transaction_id


class GatewayTransportError(GatewayError):
    """Network, timeout or malformed-response failure; retryable."""


class GatewayNotConfigured(GatewayError):
    """No gateway credentials are configured for this deployment."""


class PersistenceError(BillingError):
    """Datastore write failed after the gateway already acted."""

    def __init__(self, detail: str, *, context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(detail)
        self.context = context or {}


class NotFoundError(BillingError):
    """Unknown checkout, plan, account or payment request."""


class PlanNotFound(NotFoundError):
    def __init__(self, plan_id: Any) -> None:
        super().__init__(f"Plan {plan_id} not found")
        self.plan_id = plan_id


__all__ = [
    "BillingError",
    "ConflictError",
    "GatewayDeclined",
    "GatewayError",
    "GatewayNotConfigured",
    "GatewayTransportError",
    "InvalidQuantity",
    "NotFoundError",
    "PersistenceError",
    "PlanNotFound",
    "ValidationError",
]
