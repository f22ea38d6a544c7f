"""Request correlation middleware."""

from __future__ import annotations

import logging
import re
import uuid

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def get_request_id(request) -> str:
    """Return the correlation id attached to ``request`` (or a fresh one)."""

    request_id = getattr(request, "request_id", None)
    if request_id:
        return request_id
    return str(uuid.uuid4())


class RequestIdMiddleware:
    """Attach a correlation id to every request and echo it on the response."""

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        incoming = request.META.get("HTTP_X_REQUEST_ID", "")
        if incoming and _VALID_REQUEST_ID.match(incoming):
            request.request_id = incoming
        else:
            request.request_id = str(uuid.uuid4())

        response = self.get_response(request)
        response[REQUEST_ID_HEADER] = request.request_id
        return response


__all__ = ["REQUEST_ID_HEADER", "RequestIdMiddleware", "get_request_id"]
