"""Datastore-backed checkout leases.

A lease is a ``CheckoutLock`` row keyed by checkout id. Rows older than the
TTL are considered abandoned and may be taken over by the next caller.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.billing import models

logger = logging.getLogger(__name__)

LOCK_TTL = timedelta(minutes=5)


def acquire(checkout_id: str, *, ttl: timedelta = LOCK_TTL) -> bool:
    """Take the lease for ``checkout_id``; False if someone else holds it."""

    now = timezone.now()
    with transaction.atomic():
        stolen = models.CheckoutLock.objects.filter(
            checkout_id=checkout_id,
            locked_at__lt=now - ttl,
        ).update(locked_at=now)
    if stolen:
        logger.warning("Took over stale checkout lock for %s", checkout_id)
        return True

    # A competing insert between the update and here surfaces as IntegrityError.
    try:
        with transaction.atomic():
            models.CheckoutLock.objects.create(checkout_id=checkout_id, locked_at=now)
    except IntegrityError:
        logger.info("Checkout %s is already locked", checkout_id)
        return False
    return True


def release(checkout_id: str) -> None:
    models.CheckoutLock.objects.filter(checkout_id=checkout_id).delete()


def is_locked(checkout_id: str, *, ttl: timedelta = LOCK_TTL) -> bool:
    return models.CheckoutLock.objects.filter(
        checkout_id=checkout_id,
        locked_at__gte=timezone.now() - ttl,
    ).exists()


__all__ = ["LOCK_TTL", "acquire", "is_locked", "release"]
