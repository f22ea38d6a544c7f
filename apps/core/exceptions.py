"""Project-wide DRF exception handling."""

from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

from apps.core.middleware import get_request_id

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An internal error occurred"


def api_exception_handler(exc, context):
    """Defer to DRF for API exceptions; mask everything else behind a request id."""

    response = exception_handler(exc, context)
    if response is not None:
        return response

    request = context.get("request")
    request_id = get_request_id(request) if request is not None else None
    view = context.get("view")
    logger.exception(
        "Unhandled error in %s [request_id=%s]",
        type(view).__name__ if view is not None else "unknown view",
        request_id,
        exc_info=exc,
    )
    return Response(
        {"detail": GENERIC_ERROR_MESSAGE, "request_id": request_id},
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


__all__ = ["GENERIC_ERROR_MESSAGE", "api_exception_handler"]
