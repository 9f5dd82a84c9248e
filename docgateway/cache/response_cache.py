"""Response cache - fingerprint-addressed generated documentation.

Maps a request fingerprint (see docgateway.core.fingerprint) to the
artifact produced for it, with an explicit expiry. Entries are immutable
once stored; a second put for the same fingerprint simply replaces the
first (artifacts for one fingerprint are interchangeable, so the last
writer winning a race is fine).

Failure policy: the cache never fails a request. If the backend raises
PersistenceError, get() reports a miss and put() does nothing; both log a
warning and bump cache_errors_total. The gateway then behaves as if
caching were disabled until the backend recovers.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from docgateway.cache.backend import CacheBackend
from docgateway.core.enrichment import Enrichment
from docgateway.core.errors import PersistenceError
from docgateway.middleware.prometheus import record_cache_error, record_cache_lookup

log = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 3600


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Artifact:
    """Generated documentation plus its enrichment block."""

    content: str
    model: str
    enrichment: Enrichment


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    artifact: Artifact
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "content": self.artifact.content,
            "model": self.artifact.model,
            "enrichment": self.artifact.enrichment.to_dict(),
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            fingerprint=data["fingerprint"],
            artifact=Artifact(
                content=data["content"],
                model=data["model"],
                enrichment=Enrichment.from_dict(data["enrichment"]),
            ),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


class ResponseCache:
    """Fingerprint-addressed cache over a CacheBackend.

    The class holds no mutable state beyond the injected backend.
    """

    def __init__(
        self,
        backend: CacheBackend,
        *,
        enabled: bool = True,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._backend = backend
        self._enabled = enabled
        self._default_ttl = default_ttl
        self._clock = clock

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def get(self, fingerprint: str) -> tuple[CacheEntry | None, bool]:
        """Return ``(entry, True)`` on a live hit, ``(None, False)`` otherwise."""
        if not self._enabled:
            return None, False

        try:
            data = await self._backend.get(fingerprint)
        except PersistenceError as exc:
            log.warning("cache.response.get_failed", key=fingerprint, error=str(exc))
            record_cache_error("get")
            record_cache_lookup(hit=False)
            return None, False

        if data is None:
            log.debug("cache.response.miss", key=fingerprint)
            record_cache_lookup(hit=False)
            return None, False

        try:
            entry = CacheEntry.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            log.warning("cache.response.corrupt_entry", key=fingerprint, error=str(exc))
            record_cache_lookup(hit=False)
            return None, False

        if entry.is_expired(self._clock()):
            log.debug("cache.response.expired", key=fingerprint)
            record_cache_lookup(hit=False)
            return None, False

        log.debug("cache.response.hit", key=fingerprint)
        record_cache_lookup(hit=True)
        return entry, True

    async def put(self, fingerprint: str, artifact: Artifact, ttl: int | None = None) -> CacheEntry:
        """Store an artifact under fingerprint for ``ttl`` seconds from now.

        Returns the entry that was (or, on backend failure, would have been)
        stored.
        """
        effective_ttl = ttl if ttl is not None else self._default_ttl
        now = self._clock()
        entry = CacheEntry(
            fingerprint=fingerprint,
            artifact=artifact,
            created_at=now,
            expires_at=now + timedelta(seconds=effective_ttl),
        )
        if not self._enabled:
            return entry

        try:
            await self._backend.set(fingerprint, entry.to_dict(), effective_ttl)
        except PersistenceError as exc:
            log.warning("cache.response.put_failed", key=fingerprint, error=str(exc))
            record_cache_error("put")
            return entry

        log.debug("cache.response.stored", key=fingerprint, ttl=effective_ttl)
        return entry

    async def invalidate(self, fingerprint: str) -> None:
        try:
            await self._backend.delete(fingerprint)
        except PersistenceError as exc:
            log.warning("cache.response.delete_failed", key=fingerprint, error=str(exc))
            record_cache_error("delete")

    async def stats(self) -> dict[str, Any]:
        info = await self._backend.info()
        return {
            "enabled": self._enabled,
            "backend": info.get("backend", "unknown"),
            "connected": info.get("connected", False),
            "total_keys": info.get("total_keys", 0),
            "hits": info.get("hits", 0),
            "misses": info.get("misses", 0),
            "hit_rate": info.get("hit_rate", 0.0),
        }
