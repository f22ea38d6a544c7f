"""Service layer helpers for the core app."""

from .rate_limits import (
    InMemoryRateLimiter,
    RateLimitConfig,
    RateLimitExceeded,
    RedisRateLimiter,
    client_fingerprint,
    enforce_checkout_rate_limit,
    get_rate_limiter,
)

__all__ = [
    "InMemoryRateLimiter",
    "RedisRateLimiter",
    "RateLimitConfig",
    "RateLimitExceeded",
    "client_fingerprint",
    "enforce_checkout_rate_limit",
    "get_rate_limiter",
]
