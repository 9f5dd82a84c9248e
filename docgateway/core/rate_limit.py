"""Tiered per-caller rate limiting.

Two independent policies guard the API:

- general:  every /api/ route (default 100 requests / 15 minutes)
- elevated: routes under the elevated-compliance prefix, on top of the
            general policy (default 50 requests / 15 minutes)

Algorithm: fixed window counter per caller key (normally the source
address). A window starts on the key's first request, counts only go up
within it, and the counter resets once the window has elapsed. Requests
over the ceiling are still counted, so hammering a closed window does not
reopen it early.

Thread safety: one asyncio.Lock per key, so callers never contend with
each other. For multiple API instances use the Redis policy in
docgateway.infra.redis_rate_limiter, which has the same interface.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from docgateway.config import Settings
from docgateway.core.errors import RateLimitExceeded
from docgateway.middleware.prometheus import record_rate_limit_rejection

log = structlog.get_logger(__name__)

GENERAL_TIER = "general"
ELEVATED_TIER = "elevated"

_COMPLIANCE_NOTES = {
    GENERAL_TIER: (
        "General throttling: request volume from this address exceeded the "
        "standard API allowance. This is not a compliance restriction."
    ),
    ELEVATED_TIER: (
        "Compliance-mandated throttling: elevated-compliance operations are "
        "limited per address. This request was refused before processing and "
        "produced no access record; accepted requests are recorded in the "
        "access log."
    ),
}


def compliance_note_for(exc: RateLimitExceeded) -> str:
    return _COMPLIANCE_NOTES.get(exc.tier, _COMPLIANCE_NOTES[GENERAL_TIER])


@dataclass(frozen=True)
class RateDecision:
    """Outcome of an allowed request, used for X-RateLimit-* headers."""
    tier: str
    limit: int
    remaining: int
    reset_after: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(int(time.time()) + self.reset_after),
        }


class RatePolicy(ABC):
    """One tier's ceiling applied per caller key."""

    tier: str
    limit: int
    window_seconds: int

    @abstractmethod
    async def hit(self, key: str) -> RateDecision:
        """Count one request for key.

        Raises:
            RateLimitExceeded: the key is over the ceiling for this window
        """

    async def close(self) -> None:
        return None

    def _reject(self, key: str, count: int, retry_after: int) -> RateLimitExceeded:
        log.warning(
            "rate_limit.exceeded",
            tier=self.tier,
            key=key,
            count=count,
            limit=self.limit,
        )
        record_rate_limit_rejection(self.tier)
        return RateLimitExceeded(
            tier=self.tier,
            limit=self.limit,
            window_seconds=self.window_seconds,
            retry_after=retry_after,
        )


@dataclass
class _WindowCounter:
    """Fixed window state for one caller key."""
    window_start: float
    count: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class RateLimiter(RatePolicy):
    """In-process per-key fixed window limiter for one tier."""

    def __init__(
        self,
        *,
        tier: str,
        max_requests: int,
        window_seconds: int = 900,
        max_tracked_keys: int = 50_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tier = tier
        self.limit = max_requests
        self.window_seconds = window_seconds
        self._max_tracked_keys = max_tracked_keys
        self._clock = clock
        self._counters: dict[str, _WindowCounter] = {}

    async def hit(self, key: str) -> RateDecision:
        if self.limit <= 0:
            return RateDecision(self.tier, 0, 0, self.window_seconds)

        counter = self._counters.get(key)
        if counter is None:
            if len(self._counters) >= self._max_tracked_keys:
                self.prune()
            counter = _WindowCounter(window_start=self._clock())
            self._counters[key] = counter

        async with counter.lock:
            now = self._clock()
            elapsed = now - counter.window_start

            if elapsed >= self.window_seconds:
                counter.window_start = now
                counter.count = 0
                elapsed = 0.0

            counter.count += 1
            reset_after = int(self.window_seconds - elapsed) + 1

            if counter.count > self.limit:
                raise self._reject(key, counter.count, reset_after)

            return RateDecision(self.tier, self.limit, self.limit - counter.count, reset_after)

    def prune(self) -> int:
        """Drop counters whose window has elapsed. Returns the number removed."""
        now = self._clock()
        stale = [
            k
            for k, c in self._counters.items()
            if now - c.window_start >= self.window_seconds and not c.lock.locked()
        ]
        for k in stale:
            del self._counters[k]
        if stale:
            log.debug("rate_limit.pruned", tier=self.tier, removed=len(stale))
        return len(stale)

    def reset(self, key: str) -> None:
        """Reset the counter for a key (useful in tests)."""
        self._counters.pop(key, None)

    def count(self, key: str) -> int:
        counter = self._counters.get(key)
        return counter.count if counter else 0


class RateGovernor:
    """Applies the general and elevated policies to a request path."""

    def __init__(
        self,
        *,
        general: RatePolicy,
        elevated: RatePolicy,
        elevated_prefix: str = "/api/itar",
        api_prefix: str = "/api/",
    ) -> None:
        self.general = general
        self.elevated = elevated
        self._elevated_prefix = elevated_prefix.rstrip("/")
        self._api_prefix = api_prefix

    async def close(self) -> None:
        await self.general.close()
        await self.elevated.close()

    def is_elevated_path(self, path: str) -> bool:
        return path == self._elevated_prefix or path.startswith(self._elevated_prefix + "/")

    def applies_to(self, path: str) -> bool:
        return path.startswith(self._api_prefix) or self.is_elevated_path(path)

    async def check(self, key: str, path: str) -> RateDecision | None:
        """Count the request against every applicable policy.

        Returns the tightest decision (fewest remaining) for response headers,
        or None when the path is not rate limited.

        Raises:
            RateLimitExceeded: if either applicable policy rejects
        """
        if not self.applies_to(path):
            return None

        decision = await self.general.hit(key)
        if self.is_elevated_path(path):
            elevated = await self.elevated.hit(key)
            if elevated.limit > 0 and (decision.limit <= 0 or elevated.remaining < decision.remaining):
                decision = elevated
        return decision


def build_rate_governor(settings: Settings) -> RateGovernor:
    """Construct the governor with the backend selected in settings."""
    if settings.rate_limit_backend == "redis":
        from docgateway.infra.redis_rate_limiter import RedisRateLimiter

        general: RatePolicy = RedisRateLimiter(
            settings.redis_url,
            tier=GENERAL_TIER,
            max_requests=settings.rate_limit_general_max,
            window_seconds=settings.rate_limit_window_seconds,
        )
        elevated: RatePolicy = RedisRateLimiter(
            settings.redis_url,
            tier=ELEVATED_TIER,
            max_requests=settings.rate_limit_elevated_max,
            window_seconds=settings.rate_limit_window_seconds,
        )
    else:
        general = RateLimiter(
            tier=GENERAL_TIER,
            max_requests=settings.rate_limit_general_max,
            window_seconds=settings.rate_limit_window_seconds,
        )
        elevated = RateLimiter(
            tier=ELEVATED_TIER,
            max_requests=settings.rate_limit_elevated_max,
            window_seconds=settings.rate_limit_window_seconds,
        )

    log.info(
        "rate_limiter.initialized",
        backend=settings.rate_limit_backend,
        general=settings.rate_limit_general_max,
        elevated=settings.rate_limit_elevated_max,
        window_seconds=settings.rate_limit_window_seconds,
    )
    return RateGovernor(
        general=general,
        elevated=elevated,
        elevated_prefix=settings.elevated_path_prefix,
    )
