"""REST API endpoints for checkout, account billing changes and gateway webhooks."""

from __future__ import annotations

import logging
from typing import Any

from django.conf import settings
from django.http import HttpResponse
from django.urls import path
from django.utils.html import escape
from rest_framework import status
from rest_framework.parsers import FormParser, JSONParser
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.billing import serializers
from apps.billing.services import card_updates, checkout, plan_changes, reconciler
from apps.billing.services.errors import (
    BillingError,
    ConflictError,
    GatewayDeclined,
    GatewayNotConfigured,
    GatewayTransportError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from apps.core.middleware import get_request_id
from apps.core.services import RateLimitExceeded, enforce_checkout_rate_limit

logger = logging.getLogger(__name__)

app_name = "billing"


def _error_response(
    request,
    exc: BillingError,
    *,
    declined_status: int = status.HTTP_400_BAD_REQUEST,
) -> Response:
    if isinstance(exc, ValidationError):
        return Response({"detail": exc.detail}, status=status.HTTP_400_BAD_REQUEST)
    if isinstance(exc, ConflictError):
        return Response({"detail": exc.detail}, status=status.HTTP_409_CONFLICT)
    if isinstance(exc, NotFoundError):
        return Response({"detail": exc.detail}, status=status.HTTP_404_NOT_FOUND)
    if isinstance(exc, GatewayDeclined):
        payload: dict[str, Any] = {"detail": exc.detail}
        if exc.transaction_id:
            payload["transaction_id"] = exc.transaction_id
        return Response(payload, status=declined_status)
    if isinstance(exc, GatewayNotConfigured):
        return Response({"detail": exc.detail}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
    if isinstance(exc, GatewayTransportError):
        return Response(
            {"detail": "Payment gateway unavailable, please try again"},
            status=status.HTTP_502_BAD_GATEWAY,
        )
    if isinstance(exc, PersistenceError):
        return Response(
            {"detail": exc.detail, "request_id": get_request_id(request)},
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    raise exc


def _rate_limited(exc: RateLimitExceeded) -> Response:
    return Response(
        {"detail": "Too many payment attempts", "retry_after": exc.retry_after},
        status=status.HTTP_429_TOO_MANY_REQUESTS,
    )


class CheckoutProcessView(APIView):
    """Validate the card, authorize and start the subscription for a checkout."""

    def post(self, request, *args, **kwargs):
        try:
            enforce_checkout_rate_limit(request)
        except RateLimitExceeded as exc:
            return _rate_limited(exc)

        serializer = serializers.CheckoutProcessSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            outcome = checkout.process_checkout(
                checkout_id=serializer.validated_data["checkout_id"],
                card=serializer.to_card(),
                request_id=get_request_id(request),
            )
        except BillingError as exc:
            return _error_response(request, exc)

        return Response(outcome.as_dict())


class PaymentStatusView(APIView):
    def get(self, request, *args, **kwargs):
        request_id = request.query_params.get("request_id")
        if not request_id:
            return Response({"detail": "request_id is required"}, status=status.HTTP_400_BAD_REQUEST)
        try:
            return Response(checkout.payment_status(request_id))
        except BillingError as exc:
            return _error_response(request, exc)


class CheckoutStatusView(APIView):
    def get(self, request, *args, **kwargs):
        checkout_id = request.query_params.get("id")
        if not checkout_id:
            return Response({"detail": "id is required"}, status=status.HTTP_400_BAD_REQUEST)
        try:
            return Response(checkout.checkout_status(checkout_id))
        except BillingError as exc:
            return _error_response(request, exc)


class CheckoutResetView(APIView):
    def post(self, request, *args, **kwargs):
        serializer = serializers.CheckoutReferenceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        return Response(checkout.reset_checkout(serializer.validated_data["checkout_id"]))


class GenerateCheckoutIdView(APIView):
    def get(self, request, *args, **kwargs):
        return Response({"checkout_id": checkout.generate_checkout_id()})


class PlanPreviewView(APIView):
    def post(self, request, reference: str, *args, **kwargs):
        serializer = serializers.CartSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            preview = plan_changes.preview_plan_addition(reference, serializer.to_cart())
        except BillingError as exc:
            return _error_response(request, exc)
        return Response(preview)


class AddPlansView(APIView):
    def post(self, request, reference: str, *args, **kwargs):
        serializer = serializers.AddPlansSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            outcome = plan_changes.add_plans(
                reference,
                serializer.to_cart(),
                cvv=serializer.validated_data.get("cvv"),
            )
        except BillingError as exc:
            return _error_response(request, exc, declined_status=status.HTTP_402_PAYMENT_REQUIRED)

        payload = outcome.as_dict()
        payload["account"] = serializers.AccountSerializer(plan_changes.get_account(reference)).data
        return Response(payload)


class UpdateCardView(APIView):
    def post(self, request, reference: str, *args, **kwargs):
        try:
            enforce_checkout_rate_limit(request)
        except RateLimitExceeded as exc:
            return _rate_limited(exc)

        serializer = serializers.CardSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            result = card_updates.update_card(reference, serializer.to_card())
        except BillingError as exc:
            return _error_response(request, exc)
        return Response(result)


class WebhookView(APIView):
    """Gateway callbacks: form encoded, unauthenticated, answered quickly."""

    authentication_classes: list = []
    parser_classes = [FormParser, JSONParser]


class SilentPostView(WebhookView):
    def post(self, request, *args, **kwargs):
        serializer = serializers.SilentPostSerializer(data=request.data)
        if not serializer.is_valid():
            logger.warning("Malformed silent post: %s", serializer.errors)
            return Response({"detail": "Invalid notification"}, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        logger.info(
            "Silent post: transaction=%s code=%s reason=%s invoice=%s",
            data["x_trans_id"],
            data["x_response_code"],
            data.get("x_response_reason_text", ""),
            data.get("x_invoice_num", ""),
        )
        outcome = reconciler.handle_transaction_notification(
            data["x_trans_id"],
            data["x_response_code"],
            data.get("x_ref_id") or None,
        )
        return Response(outcome.as_dict())


class RelayResponseView(WebhookView):
    def post(self, request, *args, **kwargs):
        serializer = serializers.SilentPostSerializer(data=request.data)
        if not serializer.is_valid():
            logger.warning("Malformed relay response: %s", serializer.errors)
            return HttpResponse("Invalid request", status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        reconciler.handle_transaction_notification(
            data["x_trans_id"],
            data["x_response_code"],
            data.get("x_ref_id") or None,
        )

        target = escape(f"{settings.BILLING_CHECKOUT_RESULT_URL}?tx_id={data['x_trans_id']}")
        html = (
            "<!DOCTYPE html><html><head>"
            f'<meta http-equiv="refresh" content="0;url={target}">'
            "<title>Processing payment</title></head>"
            f'<body><p>Processing your payment... <a href="{target}">Continue</a></p></body></html>'
        )
        return HttpResponse(html, content_type="text/html")


class SubscriptionNotificationView(WebhookView):
    def post(self, request, *args, **kwargs):
        serializer = serializers.SubscriptionNotificationSerializer(data=request.data)
        if not serializer.is_valid():
            logger.warning("Malformed subscription notification: %s", serializer.errors)
            return Response({"detail": "Invalid notification"}, status=status.HTTP_400_BAD_REQUEST)

        outcome = reconciler.handle_subscription_event(
            serializer.validated_data["x_subscription_id"],
            serializer.validated_data["x_event_type"],
        )
        return Response(outcome.as_dict())


urlpatterns = [
    path("checkout/process/", CheckoutProcessView.as_view(), name="checkout-process"),
    path("checkout/payment-status/", PaymentStatusView.as_view(), name="payment-status"),
    path("checkout/status/", CheckoutStatusView.as_view(), name="checkout-status"),
    path("checkout/reset/", CheckoutResetView.as_view(), name="checkout-reset"),
    path("checkout/generate-id/", GenerateCheckoutIdView.as_view(), name="checkout-generate-id"),
    path("accounts/<uuid:reference>/plans/preview/", PlanPreviewView.as_view(), name="plans-preview"),
    path("accounts/<uuid:reference>/plans/", AddPlansView.as_view(), name="plans-add"),
    path("accounts/<uuid:reference>/card/", UpdateCardView.as_view(), name="card-update"),
    path("webhooks/silent-post/", SilentPostView.as_view(), name="silent-post"),
    path("webhooks/relay-response/", RelayResponseView.as_view(), name="relay-response"),
    path(
        "webhooks/subscription-notification/",
        SubscriptionNotificationView.as_view(),
        name="subscription-notification",
    ),
]
