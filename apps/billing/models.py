"""Billing domain models: checkouts, accounts, gateway records and invoices."""

from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal

from django.db import models
from django.utils import timezone


class CheckoutStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"


_CHECKOUT_STATUS_ORDER = [
    CheckoutStatus.PENDING,
    CheckoutStatus.PROCESSING,
    CheckoutStatus.PROCESSED,
]


class TransactionStatus(models.TextChoices):
    AUTHORIZED = "authorized", "Authorized"
    CAPTURED = "captured", "Captured"
    VOIDED = "voided", "Voided"
    FAILED = "failed", "Failed"


_TRANSACTION_TRANSITIONS = {
    TransactionStatus.AUTHORIZED: {
        TransactionStatus.CAPTURED,
        TransactionStatus.VOIDED,
        TransactionStatus.FAILED,
    },
    TransactionStatus.CAPTURED: set(),
    TransactionStatus.VOIDED: set(),
    TransactionStatus.FAILED: set(),
}


class SubscriptionStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    ACTIVE = "active", "Active"
    SUSPENDED = "suspended", "Suspended"
    CANCELLED = "cancelled", "Cancelled"
    TERMINATED = "terminated", "Terminated"
    EXPIRED = "expired", "Expired"
    FAILED = "failed", "Failed"


class PaymentResultStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    SUCCESS = "success", "Success"
    FAILED = "failed", "Failed"


class InvalidStatusTransition(Exception):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move from {current} to {requested}")
        self.current = current
        self.requested = requested


class Plan(models.Model):
    """Catalog entry; ``price`` is the monthly list price.

    ``discount_rules`` holds volume discounts as ``[{"qtd": "3", "percent": "10"}]``:
    a cart with at least ``qtd`` items gets ``percent`` off this plan.
    """

    id = models.PositiveIntegerField(primary_key=True)
    name = models.CharField(max_length=128)
    description = models.TextField(blank=True)
    price = models.DecimalField(max_digits=10, decimal_places=2)
    discount_rules = models.JSONField(default=list, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["id"]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.name} (${self.price})"


class CheckoutRecord(models.Model):
    """A cart-derived purchase intent awaiting payment."""

    id = models.UUIDField(primary_key=True, editable=False, default=uuid.uuid4)
    checkout_id = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=255)
    email = models.EmailField()
    username = models.CharField(max_length=150)
    phone_number = models.CharField(max_length=32, blank=True)
    street = models.CharField(max_length=255, blank=True)
    city = models.CharField(max_length=128, blank=True)
    state = models.CharField(max_length=64, blank=True)
    zip_code = models.CharField(max_length=16, blank=True)
    additional_info = models.CharField(max_length=255, blank=True)
    plans = models.JSONField(default=list, blank=True)
    credential_hash = models.CharField(max_length=255, blank=True)
    status = models.CharField(
        max_length=16,
        choices=CheckoutStatus.choices,
        default=CheckoutStatus.PENDING,
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["status"], name="billing_checkout_status_idx")]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"Checkout {self.checkout_id} ({self.status})"

    @property
    def is_annual(self) -> bool:
        return any(int(plan.get("annually", 0)) == 1 for plan in self.plans or [])

    def advance_status(self, new_status: str) -> bool:
        """Move forward through pending -> processing -> processed.

        Returns False (and leaves the record untouched) when ``new_status``
        is not ahead of the current status.
        """

        if _CHECKOUT_STATUS_ORDER.index(new_status) <= _CHECKOUT_STATUS_ORDER.index(self.status):
            return False
        self.status = new_status
        self.save(update_fields=["status", "updated_at"])
        return True


class CheckoutLock(models.Model):
    """Mutual-exclusion lease row, one per in-flight checkout.

    Subscription setup takes its own lease under a ``setup:`` prefixed key.
    """

    checkout_id = models.CharField(max_length=80, unique=True)
    locked_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-locked_at"]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"Lock {self.checkout_id} @ {self.locked_at.isoformat()}"


class Account(models.Model):
    """A billed customer (the master account)."""

    id = models.UUIDField(primary_key=True, editable=False, default=uuid.uuid4)
    reference = models.UUIDField(unique=True, editable=False, default=uuid.uuid4)
    checkout = models.OneToOneField(
        CheckoutRecord,
        null=True,
        blank=True,
        related_name="account",
        on_delete=models.SET_NULL,
    )
    first_name = models.CharField(max_length=128)
    last_name = models.CharField(max_length=128, blank=True)
    email = models.EmailField()
    username = models.CharField(max_length=150)
    phone_number = models.CharField(max_length=32, blank=True)
    street = models.CharField(max_length=255, blank=True)
    city = models.CharField(max_length=128, blank=True)
    state = models.CharField(max_length=64, blank=True)
    zip_code = models.CharField(max_length=16, blank=True)
    additional_info = models.CharField(max_length=255, blank=True)
    total_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    is_annually = models.BooleanField(default=False)
    is_trial = models.BooleanField(default=True)
    renew_date = models.DateTimeField()
    purchased_plans = models.JSONField(default=list, blank=True)
    simultaneous_users = models.PositiveIntegerField(default=0)
    card_last_four = models.CharField(max_length=4, blank=True)
    card_expiry = models.CharField(max_length=5, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["email", "username"], name="billing_account_email_idx")]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.username} <{self.email}>"


class CustomerProfileMapping(models.Model):
    """Link between an account and its stored gateway payment method."""

    id = models.UUIDField(primary_key=True, editable=False, default=uuid.uuid4)
    account = models.OneToOneField(
        Account,
        related_name="customer_profile",
        on_delete=models.CASCADE,
    )
    customer_profile_id = models.CharField(max_length=64)
    payment_profile_id = models.CharField(max_length=64)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.customer_profile_id}/{self.payment_profile_id}"

    @property
    def is_complete(self) -> bool:
        return bool(self.customer_profile_id and self.payment_profile_id)


class Transaction(models.Model):
    """One gateway charge or void attempt."""

    id = models.UUIDField(primary_key=True, editable=False, default=uuid.uuid4)
    account = models.ForeignKey(
        Account,
        null=True,
        blank=True,
        related_name="transactions",
        on_delete=models.SET_NULL,
    )
    checkout_id = models.CharField(max_length=64)
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    status = models.CharField(max_length=16, choices=TransactionStatus.choices)
    gateway_transaction_id = models.CharField(max_length=64, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["checkout_id", "status"], name="billing_txn_checkout_idx"),
            models.Index(fields=["gateway_transaction_id"], name="billing_txn_gateway_id_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.gateway_transaction_id or 'pending'} {self.status} ${self.amount}"

    def transition_to(self, new_status: str) -> None:
        if new_status not in _TRANSACTION_TRANSITIONS[TransactionStatus(self.status)]:
            raise InvalidStatusTransition(self.status, new_status)
        self.status = new_status
        self.save(update_fields=["status", "updated_at"])


class Invoice(models.Model):
    """A billing-period statement."""

    id = models.UUIDField(primary_key=True, editable=False, default=uuid.uuid4)
    account = models.ForeignKey(Account, related_name="invoices", on_delete=models.CASCADE)
    is_trial = models.BooleanField(default=False)
    total = models.DecimalField(max_digits=10, decimal_places=2)
    due_date = models.DateTimeField()
    is_paid = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["due_date"]
        indexes = [models.Index(fields=["account", "is_paid", "due_date"], name="billing_invoice_due_idx")]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"Invoice {self.id} ${self.total} due {self.due_date:%Y-%m-%d}"


class Subscription(models.Model):
    """Recurring billing registration, driven by the reconciler after creation."""

    id = models.UUIDField(primary_key=True, editable=False, default=uuid.uuid4)
    account = models.OneToOneField(
        Account,
        related_name="subscription",
        on_delete=models.CASCADE,
    )
    external_subscription_id = models.CharField(max_length=64, null=True, blank=True)
    status = models.CharField(
        max_length=16,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.PENDING,
    )
    next_billing_date = models.DateTimeField()
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="billing_sub_status_idx"),
            models.Index(fields=["external_subscription_id"], name="billing_sub_external_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"Subscription {self.external_subscription_id or '-'} ({self.status})"


class TemporaryCardData(models.Model):
    """Encrypted card details kept only until deferred setup finishes."""

    checkout_id = models.CharField(max_length=64, unique=True)
    sealed_payload = models.TextField()
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"Card data for {self.checkout_id}"

    def is_expired(self, ttl: timedelta) -> bool:
        return timezone.now() - self.created_at > ttl


class PaymentResult(models.Model):
    """Outcome of one checkout submission, looked up by request id."""

    id = models.UUIDField(primary_key=True, editable=False, default=uuid.uuid4)
    request_id = models.CharField(max_length=64, unique=True)
    checkout_id = models.CharField(max_length=64)
    status = models.CharField(
        max_length=16,
        choices=PaymentResultStatus.choices,
        default=PaymentResultStatus.PENDING,
    )
    transaction_id = models.CharField(max_length=64, blank=True)
    error_message = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["checkout_id", "created_at"], name="billing_result_checkout_idx")]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.request_id} {self.status}"
