"""Pydantic-backed configuration for Django settings."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DEFAULT_ENV_FILE = BASE_DIR / ".env"


class AppSettings(BaseSettings):
    """Environment-driven configuration for the Django project."""

    debug: bool = False
    secret_key: str = "development-secret-key"
    allowed_hosts: list[str] = Field(default_factory=list)
    cors_allowed_origins: list[str] = Field(default_factory=list)
    database_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DJANGO_DATABASE_URL", "DATABASE_URL"),
    )
    db_conn_max_age: int = 60
    redis_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("REDIS_URL", "DJANGO_REDIS_URL"),
    )
    celery_broker_url: str = Field(
        default="redis://localhost:6379/0",
        validation_alias=AliasChoices("CELERY_BROKER_URL", "DJANGO_CELERY_BROKER_URL"),
    )
    celery_result_backend: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CELERY_RESULT_BACKEND", "DJANGO_CELERY_RESULT_BACKEND"),
    )
    celery_task_always_eager: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "CELERY_TASK_ALWAYS_EAGER",
            "DJANGO_CELERY_TASK_ALWAYS_EAGER",
        ),
    )
    authnet_api_login_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("AUTHNET_API_LOGIN_ID", "DJANGO_AUTHNET_API_LOGIN_ID"),
    )
    authnet_transaction_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "AUTHNET_TRANSACTION_KEY",
            "DJANGO_AUTHNET_TRANSACTION_KEY",
        ),
    )
    authnet_environment: Literal["sandbox", "production"] = Field(
        default="sandbox",
        validation_alias=AliasChoices("AUTHNET_ENVIRONMENT", "DJANGO_AUTHNET_ENVIRONMENT"),
    )
    authnet_timeout_seconds: float = Field(
        default=45.0,
        validation_alias=AliasChoices(
            "AUTHNET_TIMEOUT_SECONDS",
            "DJANGO_AUTHNET_TIMEOUT_SECONDS",
        ),
    )
    billing_brand_name: str = Field(
        default="Secure Billing",
        validation_alias=AliasChoices("BILLING_BRAND_NAME", "DJANGO_BILLING_BRAND_NAME"),
    )
    billing_checkout_flow: Literal["immediate", "deferred"] = Field(
        default="deferred",
        validation_alias=AliasChoices("BILLING_CHECKOUT_FLOW", "DJANGO_BILLING_CHECKOUT_FLOW"),
    )
    billing_deferred_delay_seconds: int = Field(
        default=3600,
        validation_alias=AliasChoices(
            "BILLING_DEFERRED_DELAY_SECONDS",
            "DJANGO_BILLING_DEFERRED_DELAY_SECONDS",
        ),
    )
    # Grace period kept after the deferred delay and the last setup retry.
    billing_card_data_ttl_seconds: int = Field(
        default=3600,
        validation_alias=AliasChoices(
            "BILLING_CARD_DATA_TTL_SECONDS",
            "DJANGO_BILLING_CARD_DATA_TTL_SECONDS",
        ),
    )
    billing_card_encryption_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "BILLING_CARD_ENCRYPTION_KEY",
            "DJANGO_BILLING_CARD_ENCRYPTION_KEY",
        ),
    )
    billing_from_email: str = Field(
        default="billing@localhost",
        validation_alias=AliasChoices("BILLING_FROM_EMAIL", "DJANGO_BILLING_FROM_EMAIL"),
    )
    billing_checkout_result_url: str = Field(
        default="/checkout/result",
        validation_alias=AliasChoices(
            "BILLING_CHECKOUT_RESULT_URL",
            "DJANGO_BILLING_CHECKOUT_RESULT_URL",
        ),
    )
    checkout_rate_limit_per_minute: int = Field(
        default=5,
        validation_alias=AliasChoices(
            "CHECKOUT_RATE_LIMIT_PER_MINUTE",
            "DJANGO_CHECKOUT_RATE_LIMIT_PER_MINUTE",
        ),
    )
    posthog_project_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("POSTHOG_PROJECT_API_KEY", "DJANGO_POSTHOG_PROJECT_API_KEY"),
    )
    posthog_host: str | None = Field(
        default="https://us.i.posthog.com",
        validation_alias=AliasChoices("POSTHOG_HOST", "DJANGO_POSTHOG_HOST"),
    )
    posthog_debug: bool = Field(
        default=False,
        validation_alias=AliasChoices("POSTHOG_DEBUG", "DJANGO_POSTHOG_DEBUG"),
    )
    posthog_disabled: bool = Field(
        default=False,
        validation_alias=AliasChoices("POSTHOG_DISABLED", "DJANGO_POSTHOG_DISABLED"),
    )

    model_config = SettingsConfigDict(
        env_prefix="DJANGO_",
        case_sensitive=False,
        extra="allow",
    )

    @field_validator("allowed_hosts", "cors_allowed_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> list[str]:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, list):
            return value
        return [str(value).strip()] if str(value).strip() else []


@lru_cache()
def get_settings(env_file: str | os.PathLike[str] | None = None) -> AppSettings:
    """Load settings from environment and optional .env file with caching."""

    kwargs: dict[str, Any] = {}
    env_file_path: Path | None = None

    if env_file:
        env_file_path = Path(env_file)
    elif os.getenv("DJANGO_ENV_FILE"):
        env_file_path = Path(os.environ["DJANGO_ENV_FILE"])
    elif DEFAULT_ENV_FILE.exists():
        env_file_path = DEFAULT_ENV_FILE

    if env_file_path is not None:
        kwargs["_env_file"] = env_file_path
        kwargs["_env_file_encoding"] = "utf-8"

    return AppSettings(**kwargs)


__all__ = [
    "AppSettings",
    "BASE_DIR",
    "DEFAULT_ENV_FILE",
    "get_settings",
]
