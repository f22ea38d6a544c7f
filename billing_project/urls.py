"""URL configuration for the subscription billing service."""

from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/billing/", include("apps.billing.api", namespace="billing")),
]
