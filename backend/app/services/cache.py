"""Small key-value store for client UI hints (last room, dismissed banners)."""

from __future__ import annotations

import logging
import threading
import time
from functools import lru_cache
from typing import Protocol

try:  # pragma: no cover - redis is optional in some deployments
    from redis import Redis
    from redis.exceptions import RedisError
except ImportError:  # pragma: no cover - gracefully degrade when redis is unavailable
    Redis = None  # type: ignore[misc, assignment]
    RedisError = OSError  # type: ignore[misc, assignment]

from app.config import get_settings

logger = logging.getLogger(__name__)


class CacheBackend(Protocol):
    """Opaque string storage used for hints that may be lost at any time."""

    def set(self, key: str, value: str, ttl_seconds: int = 0) -> None:
        """Store a value; ``ttl_seconds <= 0`` keeps it until deleted."""

    def get(self, key: str) -> str | None:
        """Retrieve a value if it exists and has not expired."""

    def delete(self, key: str) -> None:
        """Remove an entry, ignoring missing values."""


class InMemoryCache:
    """Process local cache used when Redis is not configured."""

    def __init__(self, clock=time.monotonic) -> None:
        self._store: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def set(self, key: str, value: str, ttl_seconds: int = 0) -> None:
        expires_at: float | None = None
        if ttl_seconds > 0:
            expires_at = self._clock() + ttl_seconds
        with self._lock:
            self._store[key] = (value, expires_at)

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._store.get(key)
            if not entry:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                self._store.pop(key, None)
                return None
            return value

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)


class RedisCache:
    """Thin Redis wrapper adhering to :class:`CacheBackend`."""

    def __init__(self, url: str) -> None:
        if Redis is None:  # pragma: no cover - should not happen when redis is installed
            raise RuntimeError("Redis support is not available")
        self._client = Redis.from_url(url, decode_responses=True)

    def set(self, key: str, value: str, ttl_seconds: int = 0) -> None:
        if ttl_seconds > 0:
            self._client.setex(key, ttl_seconds, value)
        else:
            self._client.set(key, value)

    def get(self, key: str) -> str | None:
        return self._client.get(key)

    def delete(self, key: str) -> None:
        self._client.delete(key)


@lru_cache(maxsize=1)
def get_cache() -> CacheBackend:
    """Return the configured hint store, preferring Redis when available."""

    settings = get_settings()
    if settings.realtime_redis_url and Redis is not None:
        try:
            return RedisCache(settings.realtime_redis_url)
        except (RedisError, ValueError):  # pragma: no cover - fallback path when Redis misbehaves
            logger.warning("Falling back to in-memory hint store", exc_info=True)
    return InMemoryCache()


__all__ = ["CacheBackend", "InMemoryCache", "RedisCache", "get_cache"]
