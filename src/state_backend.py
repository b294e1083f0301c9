"""Pluggable counter backend for per-tenant monthly send counts.

Default: InMemoryBackend (single-container, zero-dependency).
Production: RedisBackend (multi-container, requires REDIS_URL).

Switch via STATE_BACKEND env var: "memory" (default) | "redis".

Counters are only ever advanced through ``increment()``, which maps to a
single ``INCR`` in Redis. Callers must never read a count, add one, and
write it back: concurrent gateway invocations for the same tenant would
undercount and let the monthly cap be exceeded.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from functools import lru_cache

logger = logging.getLogger(__name__)


def monthly_counter_key(tenant_id: str, now: datetime) -> str:
    """Counter key for a tenant's sends in the calendar month containing ``now``."""
    return f"sms_sent:{tenant_id}:{now:%Y-%m}"


class StateBackend(ABC):
    """Abstract backend for distributed counters."""

    @abstractmethod
    def increment(self, key: str, ttl: int = 60) -> int: ...

    @abstractmethod
    def get_count(self, key: str) -> int: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...


class InMemoryBackend(StateBackend):
    """In-memory counter backend. Per-container, suitable for single-instance deployment.

    Increments are serialized by a lock so concurrent callers (threads or
    ``asyncio.to_thread`` workers) never lose an update.
    """

    def __init__(self) -> None:
        self._store: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def _cleanup_expired(self, key: str) -> None:
        if key in self._store and self._store[key][1] < time.monotonic():
            del self._store[key]

    def increment(self, key: str, ttl: int = 60) -> int:
        with self._lock:
            self._cleanup_expired(key)
            current = self._store.get(key, (0, 0.0))[0]
            self._store[key] = (current + 1, time.monotonic() + ttl)
            return current + 1

    def get_count(self, key: str) -> int:
        with self._lock:
            self._cleanup_expired(key)
            return self._store.get(key, (0, 0.0))[0]

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)


class RedisBackend(StateBackend):
    """Redis counter backend for multi-container deployments.

    Requires REDIS_URL in settings (e.g., redis://10.0.0.1:6379/0).
    """

    def __init__(self, redis_url: str) -> None:
        try:
            import redis

            self._client = redis.Redis.from_url(redis_url, decode_responses=True)
            self._client.ping()
            # Never log the full URL; it may carry credentials.
            conn = self._client.connection_pool.connection_kwargs
            logger.info(
                "Redis state backend connected: host=%s port=%s db=%s",
                conn.get("host", "?"),
                conn.get("port", "?"),
                conn.get("db", "?"),
            )
        except Exception:
            logger.error("Redis connection failed", exc_info=True)
            raise

    def increment(self, key: str, ttl: int = 60) -> int:
        pipe = self._client.pipeline()
        pipe.incr(key)
        # NX: the first increment of the month sets the expiry, later ones keep it
        pipe.expire(key, ttl, nx=True)
        results = pipe.execute()
        return int(results[0])

    def get_count(self, key: str) -> int:
        val = self._client.get(key)
        return int(val) if val else 0

    def delete(self, key: str) -> None:
        self._client.delete(key)


@lru_cache(maxsize=1)
def get_state_backend() -> StateBackend:
    """Return the configured state backend singleton."""
    from src.config import get_settings

    settings = get_settings()
    if settings.STATE_BACKEND == "redis":
        if not settings.REDIS_URL:
            logger.warning("STATE_BACKEND=redis but REDIS_URL not set, falling back to memory")
            return InMemoryBackend()
        return RedisBackend(settings.REDIS_URL)
    return InMemoryBackend()
