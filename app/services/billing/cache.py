"""Per-user cache invalidation.

Readers cache a user snapshot under ``user:{user_id}``; absence of the key means
"recompute from the store on next read". Every subscription mutation deletes it
before reporting success.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Protocol

import redis

from app.config import settings
from app.services.billing.errors import BillingPersistenceError

logger = logging.getLogger(__name__)


def user_cache_key(user_id: str) -> str:
    return f"user:{user_id}"


class CacheInvalidator(Protocol):
    def invalidate_user(self, user_id: str) -> None:
        ...


class NullCache(CacheInvalidator):
    """No cache backend configured."""

    def invalidate_user(self, user_id: str) -> None:
        return None


class InMemoryCache(CacheInvalidator):
    """Process-local key/value cache."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._lock = Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def invalidate_user(self, user_id: str) -> None:
        with self._lock:
            self._values.pop(user_cache_key(user_id), None)


class RedisCache(CacheInvalidator):
    """Redis-backed invalidation; failures surface so the caller can retry."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(redis.Redis.from_url(url, socket_timeout=2.0))

    def invalidate_user(self, user_id: str) -> None:
        key = user_cache_key(user_id)
        try:
            self._client.delete(key)
        except redis.RedisError as exc:
            logger.error("billing.cache.invalidate_failed", extra={"key": key, "error": str(exc)})
            raise BillingPersistenceError(
                "Failed to invalidate cached user.", code="503_CACHE_UNAVAILABLE"
            ) from exc


def build_cache(backend: str | None = None, redis_url: str | None = None) -> CacheInvalidator:
    resolved = (backend or settings.cache_backend or "none").lower()
    if resolved == "redis":
        url = redis_url or settings.redis_url
        if not url:
            raise ValueError("REDIS_URL is required when CACHE_BACKEND=redis.")
        logger.info("billing.cache.initialized", extra={"backend": "redis"})
        return RedisCache.from_url(url)
    if resolved == "memory":
        logger.info("billing.cache.initialized", extra={"backend": "memory"})
        return InMemoryCache()
    logger.info("billing.cache.initialized", extra={"backend": "none"})
    return NullCache()
