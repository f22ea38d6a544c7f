"""Fixtures shared by the billing test modules."""

from __future__ import annotations

from unittest import mock

import pytest

from apps.billing.services import gateway


@pytest.fixture(autouse=True)
def disable_posthog(settings):
    settings.POSTHOG_DISABLED = True
    yield


@pytest.fixture(autouse=True)
def clear_gateway_cache():
    gateway.get_payment_gateway.cache_clear()
    yield
    gateway.get_payment_gateway.cache_clear()


@pytest.fixture
def enqueued():
    """Capture job submissions instead of talking to a broker."""

    with mock.patch("apps.billing.services.jobs.enqueue") as enqueue, mock.patch(
        "apps.billing.services.jobs.enqueue_delayed"
    ) as enqueue_delayed:
        yield {"enqueue": enqueue, "enqueue_delayed": enqueue_delayed}
