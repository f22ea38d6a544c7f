"""Plain-text billing emails.

Messages are composed here and delivered by the ``billing.send_billing_email``
task, so request handlers never wait on SMTP.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from django.conf import settings
from django.core.mail import send_mail

from apps.billing import models
from apps.billing.services import jobs

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    body: str

    def as_payload(self) -> dict[str, str]:
        return {"to": self.to, "subject": self.subject, "body": self.body}


def _brand() -> str:
    return getattr(settings, "BILLING_BRAND_NAME", "Secure Billing")


def send_email(to: str, subject: str, body: str) -> int:
    """Deliver one message synchronously; returns the number of messages sent."""

    sender = getattr(settings, "BILLING_FROM_EMAIL", None) or settings.DEFAULT_FROM_EMAIL
    sent = send_mail(subject, body, sender, [to], fail_silently=False)
    logger.info("Sent %r to %s", subject, to)
    return sent


def queue_email(message: EmailMessage) -> Optional[str]:
    return jobs.enqueue(jobs.SEND_BILLING_EMAIL, message.as_payload())


def _plan_lines(plans: Iterable[dict]) -> str:
    return "\n".join(f"  - {plan.get('plan_name', plan.get('plan_id'))}" for plan in plans)


def welcome_message(account: models.Account) -> EmailMessage:
    cadence = "annual" if account.is_annually else "monthly"
    body = (
        f"Hi {account.first_name},\n\n"
        f"Welcome to {_brand()}! Your {cadence} subscription is set up and your "
        f"trial has started.\n\n"
        f"Plans:\n{_plan_lines(account.purchased_plans)}\n\n"
        f"Your first renewal is on {account.renew_date:%Y-%m-%d}.\n"
    )
    return EmailMessage(account.email, f"Welcome to {_brand()}", body)


def invoice_message(account: models.Account, invoice: models.Invoice) -> EmailMessage:
    status = "paid" if invoice.is_paid else f"due on {invoice.due_date:%Y-%m-%d}"
    body = (
        f"Hi {account.first_name},\n\n"
        f"Invoice {invoice.id} for ${invoice.total:.2f} is {status}.\n"
    )
    return EmailMessage(account.email, f"{_brand()} invoice", body)


def plans_added_message(
    account: models.Account,
    *,
    added: Iterable[dict],
    charged: Decimal,
) -> EmailMessage:
    body = (
        f"Hi {account.first_name},\n\n"
        f"The following plans were added to your account:\n{_plan_lines(added)}\n\n"
        f"Charged today: ${charged:.2f}\n"
        f"New recurring total: ${account.total_price:.2f}\n"
    )
    return EmailMessage(account.email, f"{_brand()} plans added", body)


def card_updated_message(account: models.Account) -> EmailMessage:
    body = (
        f"Hi {account.first_name},\n\n"
        f"Your payment method was updated to the card ending in {account.card_last_four}.\n"
    )
    return EmailMessage(account.email, f"{_brand()} payment method updated", body)


def payment_failed_message(account: models.Account) -> EmailMessage:
    body = (
        f"Hi {account.first_name},\n\n"
        f"We could not process your latest {_brand()} payment. "
        f"Please update your card to keep your subscription active.\n"
    )
    return EmailMessage(account.email, f"{_brand()} payment failed", body)


__all__ = [
    "EmailMessage",
    "card_updated_message",
    "invoice_message",
    "payment_failed_message",
    "plans_added_message",
    "queue_email",
    "send_email",
    "welcome_message",
]
