"""Cache backend implementations.

Defines the CacheBackend ABC and two concrete implementations:
- RedisCacheBackend: Production backend using Redis with JSON serialization
- InMemoryCacheBackend: Bounded dict-based backend with TTL, for single
  process deployments, dev and testing

Backends raise PersistenceError when the store is unreachable. They do not
decide what a failure means for the request - ResponseCache absorbs the
error and degrades to a miss / no-op.
"""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from docgateway.config import Settings
from docgateway.core.errors import PersistenceError

log = structlog.get_logger(__name__)


class CacheBackend(ABC):
    """Abstract interface all cache backends must implement."""

    name: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return cached value for key, or None if not found / expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Store value under key with TTL in seconds, replacing any previous value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key from cache (no-op if key does not exist)."""

    @abstractmethod
    async def info(self) -> dict[str, Any]:
        """Return backend-specific info/stats dict. Never raises."""

    async def ping(self) -> bool:
        """Return True when the backend is reachable."""
        return True

    async def close(self) -> None:
        """Release backend resources."""


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisCacheBackend(CacheBackend):
    """Production cache backend backed by Redis.

    Values are JSON-serialised so they round-trip cleanly without pickle
    security risks. The client is created lazily so import never blocks,
    and socket timeouts are short so an unreachable Redis costs a request
    about a second, not a hang.
    """

    name = "redis"

    def __init__(self, redis_url: str, *, socket_timeout: float = 1.0) -> None:
        self._redis_url = redis_url
        self._socket_timeout = socket_timeout
        self._client: aioredis.Redis | None = None

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
            )
        return self._client

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._get_client().get(key)
        except (RedisError, OSError) as exc:
            raise PersistenceError(f"redis get failed: {exc}") from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            log.warning("cache.redis.corrupt_value", key=key)
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        serialised = json.dumps(value, default=str)
        try:
            await self._get_client().setex(key, ttl, serialised)
        except (RedisError, OSError) as exc:
            raise PersistenceError(f"redis set failed: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._get_client().delete(key)
        except (RedisError, OSError) as exc:
            raise PersistenceError(f"redis delete failed: {exc}") from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._get_client().ping())
        except (RedisError, OSError):
            return False

    async def info(self) -> dict[str, Any]:
        try:
            client = self._get_client()
            redis_info = await client.info()
            dbsize = await client.dbsize()
            return {
                "backend": self.name,
                "connected": True,
                "used_memory_human": redis_info.get("used_memory_human", "unknown"),
                "hits": redis_info.get("keyspace_hits", 0),
                "misses": redis_info.get("keyspace_misses", 0),
                "total_keys": dbsize,
            }
        except (RedisError, OSError) as exc:
            return {
                "backend": self.name,
                "connected": False,
                "error": str(exc),
            }

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class _CacheEntry:
    """Single entry stored by InMemoryCacheBackend."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: float) -> None:
        self.value = value
        self.expires_at = expires_at


class InMemoryCacheBackend(CacheBackend):
    """Bounded dict-backed cache with passive TTL expiry.

    Every operation runs without an await, so each one is atomic with
    respect to the event loop; no lock is held and requests for different
    keys never contend. Entries are replaced wholesale, never mutated.

    When ``max_entries`` is reached, expired entries are swept first; if the
    cache is still full the oldest insertion is evicted.
    """

    name = "memory"

    def __init__(
        self,
        *,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store: dict[str, _CacheEntry] = {}
        self._max_entries = max_entries
        self._clock = clock
        self._hits: int = 0
        self._misses: int = 0
        self._evictions: int = 0

    async def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None or self._clock() >= entry.expires_at:
            if entry is not None:
                del self._store[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        # Re-insert so dict order tracks insertion time
        self._store.pop(key, None)
        if len(self._store) >= self._max_entries:
            self._evict()
        self._store[key] = _CacheEntry(value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def _evict(self) -> None:
        now = self._clock()
        expired = [k for k, v in self._store.items() if now >= v.expires_at]
        for k in expired:
            del self._store[k]
        self._evictions += len(expired)
        if len(self._store) >= self._max_entries:
            oldest = next(iter(self._store))
            del self._store[oldest]
            self._evictions += 1

    async def info(self) -> dict[str, Any]:
        total_requests = self._hits + self._misses
        hit_rate = self._hits / total_requests if total_requests > 0 else 0.0
        return {
            "backend": self.name,
            "connected": True,
            "total_keys": len(self._store),
            "max_entries": self._max_entries,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate": round(hit_rate, 4),
        }


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def get_cache_backend(settings: Settings) -> CacheBackend:
    """Return the CacheBackend selected by ``settings.cache_backend``."""
    if settings.cache_backend == "redis":
        log.info("cache.backend_selected", backend="redis", url=settings.redis_url.split("@")[-1])
        return RedisCacheBackend(settings.redis_url)

    log.info("cache.backend_selected", backend="memory", max_entries=settings.cache_max_entries)
    return InMemoryCacheBackend(max_entries=settings.cache_max_entries)
