"""Sliding-window rate limiting for payment endpoints, with Redis support."""

from __future__ import annotations

import hashlib
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Optional

import redis
from django.conf import settings

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    window_seconds: int
    limit: int


class RateLimitExceeded(Exception):
    def __init__(self, retry_after: float) -> None:
        super().__init__("Rate limit exceeded")
        self.retry_after = retry_after


class BaseRateLimiter(ABC):
    @abstractmethod
    def check(self, bucket: str, config: RateLimitConfig) -> None: ...

    @abstractmethod
    def get_count(self, bucket: str, config: RateLimitConfig) -> int: ...

    def reset(self) -> None:  # pragma: no cover - optional
        """Reset limiter state (only meaningful for the in-memory implementation)."""


class InMemoryRateLimiter(BaseRateLimiter):
    """Per-process limiter suitable for tests and local dev."""

    def __init__(self) -> None:
        self._buckets: dict[str, deque[float]] = {}
        self._lock = Lock()

    def check(self, bucket: str, config: RateLimitConfig) -> None:
        now = time.time()
        window_start = now - config.window_seconds
        with self._lock:
            entries = self._buckets.setdefault(bucket, deque())
            while entries and entries[0] < window_start:
                entries.popleft()

            if len(entries) >= config.limit:
                retry_after = max(entries[0] + config.window_seconds - now, 0.0)
                raise RateLimitExceeded(retry_after)

            entries.append(now)

    def get_count(self, bucket: str, config: RateLimitConfig) -> int:
        window_start = time.time() - config.window_seconds
        with self._lock:
            entries = self._buckets.get(bucket)
            if entries is None:
                return 0
            return sum(1 for entry in entries if entry >= window_start)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


class RedisRateLimiter(BaseRateLimiter):
    """Sliding-window limiter backed by Redis sorted sets, shared across workers."""

    def __init__(self, client: "redis.Redis") -> None:
        self.client = client

    def _key(self, bucket: str, window: int) -> str:
        return f"rate:{bucket}:{window}"

    def check(self, bucket: str, config: RateLimitConfig) -> None:
        key = self._key(bucket, config.window_seconds)
        now = time.time()
        window_start = now - config.window_seconds

        with self.client.pipeline() as pipe:
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            _, current_count = pipe.execute()

        if current_count >= config.limit:
            oldest = self.client.zrange(key, 0, 0, withscores=True)
            retry_after = 0.0
            if oldest:
                retry_after = max(oldest[0][1] + config.window_seconds - now, 0.0)
            raise RateLimitExceeded(retry_after)

        with self.client.pipeline() as pipe:
            pipe.zadd(key, {str(now): now})
            pipe.expire(key, config.window_seconds)
            pipe.execute()

    def get_count(self, bucket: str, config: RateLimitConfig) -> int:
        key = self._key(bucket, config.window_seconds)
        window_start = time.time() - config.window_seconds
        return int(self.client.zcount(key, window_start, "+inf"))


_rate_limiter_singleton: Optional[BaseRateLimiter] = None


def build_rate_limiter() -> BaseRateLimiter:
    redis_url = getattr(settings, "REDIS_URL", None)
    if redis_url:
        try:
            client = redis.Redis.from_url(redis_url, decode_responses=False)
            client.ping()
            logger.info("Using Redis rate limiter at %s", redis_url)
            return RedisRateLimiter(client)
        except redis.RedisError as exc:
            logger.warning("Could not initialize Redis rate limiter: %s", exc)

    logger.info("Using in-memory rate limiter")
    return InMemoryRateLimiter()


def get_rate_limiter() -> BaseRateLimiter:
    global _rate_limiter_singleton
    if _rate_limiter_singleton is None:
        _rate_limiter_singleton = build_rate_limiter()
    return _rate_limiter_singleton


def client_fingerprint(request) -> str:
    """Stable, non-reversible identifier for the calling client."""

    forwarded = request.META.get("HTTP_X_FORWARDED_FOR", "")
    address = forwarded.split(",")[0].strip() if forwarded else request.META.get("REMOTE_ADDR", "")
    raw = f"{address}:{request.META.get('HTTP_USER_AGENT', '')}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def enforce_checkout_rate_limit(request) -> None:
    """Raise ``RateLimitExceeded`` when a client submits payments too quickly."""

    per_minute = settings.RATE_LIMITS.get("checkout", {}).get("per_minute", 5)
    get_rate_limiter().check(
        f"checkout:{client_fingerprint(request)}",
        RateLimitConfig(window_seconds=60, limit=per_minute),
    )


__all__ = [
    "BaseRateLimiter",
    "InMemoryRateLimiter",
    "RateLimitConfig",
    "RateLimitExceeded",
    "RedisRateLimiter",
    "build_rate_limiter",
    "client_fingerprint",
    "enforce_checkout_rate_limit",
    "get_rate_limiter",
]
