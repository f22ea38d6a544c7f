"""Admin registrations for billing models."""

from django.contrib import admin

from . import models


@admin.register(models.Plan)
class PlanAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "price", "is_active", "updated_at")
    list_filter = ("is_active",)
    search_fields = ("name",)


@admin.register(models.CheckoutRecord)
class CheckoutRecordAdmin(admin.ModelAdmin):
    list_display = ("checkout_id", "username", "email", "status", "created_at")
    list_filter = ("status",)
    search_fields = ("checkout_id", "email", "username")
    exclude = ("credential_hash",)
    ordering = ("-created_at",)


class InvoiceInline(admin.TabularInline):
    model = models.Invoice
    extra = 0
    fields = ("is_trial", "total", "due_date", "is_paid")


@admin.register(models.Account)
class AccountAdmin(admin.ModelAdmin):
    list_display = (
        "reference",
        "username",
        "email",
        "total_price",
        "is_annually",
        "is_trial",
        "renew_date",
    )
    list_filter = ("is_annually", "is_trial")
    search_fields = ("reference", "email", "username")
    readonly_fields = ("reference", "card_last_four", "card_expiry")
    raw_id_fields = ("checkout",)
    inlines = [InvoiceInline]


@admin.register(models.Transaction)
class TransactionAdmin(admin.ModelAdmin):
    list_display = ("gateway_transaction_id", "checkout_id", "amount", "status", "created_at")
    list_filter = ("status",)
    search_fields = ("gateway_transaction_id", "checkout_id")
    raw_id_fields = ("account",)
    ordering = ("-created_at",)


@admin.register(models.Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = ("external_subscription_id", "account", "status", "attempts", "next_billing_date")
    list_filter = ("status",)
    search_fields = ("external_subscription_id", "account__email")
    raw_id_fields = ("account",)


@admin.register(models.CustomerProfileMapping)
class CustomerProfileMappingAdmin(admin.ModelAdmin):
    list_display = ("account", "customer_profile_id", "payment_profile_id", "created_at")
    search_fields = ("customer_profile_id", "account__email")
    raw_id_fields = ("account",)


@admin.register(models.PaymentResult)
class PaymentResultAdmin(admin.ModelAdmin):
    list_display = ("request_id", "checkout_id", "status", "transaction_id", "created_at")
    list_filter = ("status",)
    search_fields = ("request_id", "checkout_id", "transaction_id")


@admin.register(models.CheckoutLock)
class CheckoutLockAdmin(admin.ModelAdmin):
    list_display = ("checkout_id", "locked_at")
    search_fields = ("checkout_id",)
