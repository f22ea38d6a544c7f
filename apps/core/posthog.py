"""PostHog configuration helpers for billing analytics."""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Optional

from django.conf import settings
from posthog import Posthog

logger = logging.getLogger(__name__)

_client: Optional[Posthog] = None
_configured = False
_lock = Lock()


def configure_posthog(*, force: bool = False) -> Optional[Posthog]:
    """Initialize the shared PostHog client with error autocapture."""

    global _client, _configured

    with _lock:
        if _configured and not force:
            return _client

        api_key = getattr(settings, "POSTHOG_PROJECT_API_KEY", None)
        if not api_key or getattr(settings, "POSTHOG_DISABLED", False):
            _client = None
            _configured = True
            return None

        host = getattr(settings, "POSTHOG_HOST", "https://us.i.posthog.com")
        client = Posthog(
            api_key,
            host=host,
            enable_exception_autocapture=True,
        )

        if getattr(settings, "POSTHOG_DEBUG", False):
            client.debug = True

        _client = client
        _configured = True
        return _client


def get_posthog_client() -> Optional[Posthog]:
    """Return the shared PostHog client if configured."""

    return configure_posthog()


def capture_event(
    distinct_id: str,
    event: str,
    properties: Optional[dict[str, Any]] = None,
) -> None:
    """Record a billing milestone; analytics failures never break billing."""

    if getattr(settings, "POSTHOG_DISABLED", False):
        return

    client = get_posthog_client()
    if client is None:
        return

    try:
        client.capture(event=event, distinct_id=distinct_id, properties=properties or {})
    except Exception as exc:  # pragma: no cover - network issues
        logger.warning("PostHog capture of %s failed: %s", event, exc)


__all__ = [
    "capture_event",
    "configure_posthog",
    "get_posthog_client",
]
