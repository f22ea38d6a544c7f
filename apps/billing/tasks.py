"""Celery tasks for deferred billing work.

Each task is a thin shell around a service function. Gateway transport
failures and setup already running elsewhere are retried with exponential
backoff; business declines are not.
"""

from __future__ import annotations

import logging

from celery import shared_task

from apps.billing.services import jobs, notifications, reconciler
from apps.billing.services.cards import purge_expired_card_data as purge_card_data
from apps.billing.services.errors import BillingError, ConflictError, GatewayTransportError

logger = logging.getLogger(__name__)

MAX_RETRIES = jobs.MAX_RETRIES
_backoff = jobs.retry_backoff


@shared_task(bind=True, name=jobs.COMPLETE_SUBSCRIPTION_SETUP, max_retries=MAX_RETRIES)
def complete_subscription_setup(self, checkout_id: str):
    """Void the validation charge and open the recurring subscription."""

    logger.info("Completing subscription setup for checkout %s", checkout_id)
    try:
        return reconciler.complete_subscription_setup(checkout_id)
    except GatewayTransportError as exc:
        if self.request.retries >= self.max_retries:
            reconciler.record_setup_failure(checkout_id, exc.detail)
            raise
        raise self.retry(exc=exc, countdown=_backoff(self.request.retries))
    except ConflictError as exc:
        logger.info("Setup for checkout %s is running elsewhere; retrying", checkout_id)
        raise self.retry(exc=exc, countdown=_backoff(self.request.retries))
    except BillingError as exc:
        reconciler.record_setup_failure(checkout_id, exc.detail)
        raise


@shared_task(bind=True, name=jobs.VOID_TRANSACTION, max_retries=MAX_RETRIES)
def void_transaction(self, transaction_id: str):
    try:
        voided = reconciler.void_transaction(transaction_id)
    except GatewayTransportError as exc:
        raise self.retry(exc=exc, countdown=_backoff(self.request.retries))
    return {"transaction_id": transaction_id, "voided": voided}


@shared_task(bind=True, name=jobs.CREATE_SUBSCRIPTION, max_retries=MAX_RETRIES)
def create_subscription(self, checkout_id: str):
    try:
        subscription_id = reconciler.create_subscription(checkout_id)
    except GatewayTransportError as exc:
        if self.request.retries >= self.max_retries:
            reconciler.record_setup_failure(checkout_id, exc.detail)
            raise
        raise self.retry(exc=exc, countdown=_backoff(self.request.retries))
    except ConflictError as exc:
        logger.info("Setup for checkout %s is running elsewhere; retrying", checkout_id)
        raise self.retry(exc=exc, countdown=_backoff(self.request.retries))
    except BillingError as exc:
        reconciler.record_setup_failure(checkout_id, exc.detail)
        raise
    return {"checkout_id": checkout_id, "subscription_id": subscription_id}


@shared_task(bind=True, name=jobs.SEND_BILLING_EMAIL, max_retries=MAX_RETRIES)
def send_billing_email(self, to: str, subject: str, body: str):
    try:
        return notifications.send_email(to, subject, body)
    except OSError as exc:
        logger.warning("Sending %r to %s failed: %s", subject, to, exc)
        raise self.retry(exc=exc, countdown=_backoff(self.request.retries))


@shared_task(name=jobs.PURGE_EXPIRED_CARD_DATA)
def purge_expired_card_data():
    return purge_card_data()
