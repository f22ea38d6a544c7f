"""Thin enqueue helpers over the Celery app.

Tasks are addressed by name so that services never import ``apps.billing.tasks``
(which itself imports the services).
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from celery import current_app

logger = logging.getLogger(__name__)

COMPLETE_SUBSCRIPTION_SETUP = "billing.complete_subscription_setup"
VOID_TRANSACTION = "billing.void_transaction"
CREATE_SUBSCRIPTION = "billing.create_subscription"
SEND_BILLING_EMAIL = "billing.send_billing_email"
PURGE_EXPIRED_CARD_DATA = "billing.purge_expired_card_data"

MAX_RETRIES = 2


def retry_backoff(retries: int) -> int:
    return 60 * 2**retries


def retry_window_seconds(max_retries: int = MAX_RETRIES) -> int:
    """Longest time a task can spend waiting between its first and last attempt."""

    return sum(retry_backoff(attempt) for attempt in range(max_retries))


def enqueue(task_name: str, payload: dict[str, Any]) -> Optional[str]:
    """Submit ``task_name`` for immediate execution; returns the task id."""

    result = current_app.send_task(task_name, kwargs=payload)
    logger.info("Enqueued %s (%s)", task_name, result.id)
    return result.id


def enqueue_delayed(task_name: str, payload: dict[str, Any], delay_seconds: int) -> Optional[str]:
    """Submit ``task_name`` to run no sooner than ``delay_seconds`` from now."""

    result = current_app.send_task(task_name, kwargs=payload, countdown=max(int(delay_seconds), 0))
    logger.info("Enqueued %s in %ss (%s)", task_name, delay_seconds, result.id)
    return result.id


__all__ = [
    "COMPLETE_SUBSCRIPTION_SETUP",
    "CREATE_SUBSCRIPTION",
    "MAX_RETRIES",
    "PURGE_EXPIRED_CARD_DATA",
    "SEND_BILLING_EMAIL",
    "VOID_TRANSACTION",
    "enqueue",
    "enqueue_delayed",
    "retry_backoff",
    "retry_window_seconds",
]
