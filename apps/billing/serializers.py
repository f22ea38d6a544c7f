"""Serializers for billing APIs."""

from rest_framework import serializers

from apps.billing.services.cards import CardData, normalize_card
from apps.billing.services.proration import CartItem

from . import models


class CardSerializer(serializers.Serializer):
    card_number = serializers.CharField(max_length=32, trim_whitespace=True)
    expiry = serializers.CharField(max_length=7)
    cvv = serializers.CharField(max_length=4)
    card_name = serializers.CharField(max_length=255)

    def to_card(self) -> CardData:
        data = self.validated_data
        return normalize_card(
            number=data["card_number"],
            expiry=data["expiry"],
            cvv=data["cvv"],
            name=data["card_name"],
        )


class CheckoutProcessSerializer(CardSerializer):
    checkout_id = serializers.CharField(max_length=64)


class CheckoutReferenceSerializer(serializers.Serializer):
    checkout_id = serializers.CharField(max_length=64)


class CartItemSerializer(serializers.Serializer):
    plan_id = serializers.IntegerField()
    quantity = serializers.IntegerField(default=1)


class CartSerializer(serializers.Serializer):
    cart = CartItemSerializer(many=True, allow_empty=True)

    def to_cart(self) -> list[CartItem]:
        return [
            CartItem(plan_id=item["plan_id"], quantity=item["quantity"])
            for item in self.validated_data["cart"]
        ]


class AddPlansSerializer(CartSerializer):
    cvv = serializers.CharField(max_length=4, required=False, allow_blank=True)


class SilentPostSerializer(serializers.Serializer):
    x_trans_id = serializers.CharField(max_length=64)
    x_response_code = serializers.CharField(max_length=8)
    x_response_reason_text = serializers.CharField(required=False, allow_blank=True)
    x_invoice_num = serializers.CharField(required=False, allow_blank=True)
    x_amount = serializers.CharField(required=False, allow_blank=True)
    x_ref_id = serializers.CharField(required=False, allow_blank=True)


class SubscriptionNotificationSerializer(serializers.Serializer):
    x_subscription_id = serializers.CharField(max_length=64)
    x_event_type = serializers.CharField(max_length=64)


class SubscriptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = models.Subscription
        fields = ["external_subscription_id", "status", "next_billing_date", "attempts"]
        read_only_fields = fields


class AccountSerializer(serializers.ModelSerializer):
    subscription = SubscriptionSerializer(read_only=True)

    class Meta:
        model = models.Account
        fields = [
            "reference",
            "first_name",
            "last_name",
            "email",
            "username",
            "total_price",
            "is_annually",
            "is_trial",
            "renew_date",
            "purchased_plans",
            "simultaneous_users",
            "card_last_four",
            "card_expiry",
            "subscription",
        ]
        read_only_fields = fields
