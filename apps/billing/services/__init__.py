"""Service layer for the billing app."""

from .card_updates import update_card
from .checkout import (
    CheckoutOutcome,
    checkout_status,
    generate_checkout_id,
    payment_status,
    process_checkout,
    reset_checkout,
)
from .errors import (
    BillingError,
    ConflictError,
    GatewayDeclined,
    GatewayError,
    GatewayNotConfigured,
    GatewayTransportError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .plan_changes import add_plans, preview_plan_addition
from .proration import CartItem, calculate_proration
from .reconciler import (
    complete_subscription_setup,
    handle_subscription_event,
    handle_transaction_notification,
)

__all__ = [
    "BillingError",
    "CartItem",
    "CheckoutOutcome",
    "ConflictError",
    "GatewayDeclined",
    "GatewayError",
    "GatewayNotConfigured",
    "GatewayTransportError",
    "NotFoundError",
    "PersistenceError",
    "ValidationError",
    "add_plans",
    "calculate_proration",
    "checkout_status",
    "complete_subscription_setup",
    "generate_checkout_id",
    "handle_subscription_event",
    "handle_transaction_notification",
    "payment_status",
    "preview_plan_addition",
    "process_checkout",
    "reset_checkout",
    "update_card",
]
