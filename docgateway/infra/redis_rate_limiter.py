"""
Redis-backed distributed rate limiter using a fixed window counter.

Drop-in replacement for the in-memory RateLimiter that works across
multiple API instances. One counter key per (tier, caller, window).

Key features:
- Fixed window matching the in-memory policy semantics
- Rate limit headers (X-RateLimit-*)
- Graceful fallback to in-memory if Redis is unavailable

Algorithm:
- Window index = floor(now / window_seconds)
- INCR the window key, set EXPIRE on the first hit
- Both operations in a Lua script for atomicity

Design decisions:
- Key format: rate_limit:{tier}:{caller_key}:{window_index}
- Keys expire with their window, so nothing needs pruning
- Falls back to the in-memory limiter on Redis connection failure
"""

from __future__ import annotations

import time

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from docgateway.core.rate_limit import RateDecision, RateLimiter, RatePolicy

log = structlog.get_logger(__name__)


# Lua script for atomic increment-and-expire
_LUA_RATE_LIMIT_SCRIPT = """
local key = KEYS[1]
local ttl = tonumber(ARGV[1])

local current = redis.call('INCR', key)
if current == 1 then
    redis.call('EXPIRE', key, ttl)
end

return current
"""


class RedisRateLimiter(RatePolicy):
    """
    Redis-backed fixed window rate limiter for one tier.

    Falls back to in-memory rate limiting if Redis is unavailable.

    Example:
        limiter = RedisRateLimiter(
            "redis://localhost:6379/0",
            tier="elevated",
            max_requests=50,
            window_seconds=900,
        )
        decision = await limiter.hit("203.0.113.7")
    """

    def __init__(
        self,
        redis_url: str,
        *,
        tier: str,
        max_requests: int,
        window_seconds: int = 900,
        socket_timeout: float = 1.0,
    ) -> None:
        """
        Initialize Redis rate limiter.

        Args:
            redis_url: Redis connection URL
            tier: Policy tier name ("general" or "elevated")
            max_requests: Requests allowed per caller per window (0 = unlimited)
            window_seconds: Fixed window duration
        """
        self.tier = tier
        self.limit = max_requests
        self.window_seconds = window_seconds
        self._redis_url = redis_url
        self._socket_timeout = socket_timeout
        self._redis: aioredis.Redis | None = None
        self._script: aioredis.client.AsyncScript | None = None  # type: ignore[name-defined]
        self._fallback = RateLimiter(
            tier=tier,
            max_requests=max_requests,
            window_seconds=window_seconds,
        )

    def _get_client(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
            )
            self._script = self._redis.register_script(_LUA_RATE_LIMIT_SCRIPT)
        return self._redis

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            log.info("redis_rate_limiter.closed", tier=self.tier)

    async def hit(self, key: str) -> RateDecision:
        if self.limit <= 0:
            return RateDecision(self.tier, 0, 0, self.window_seconds)

        now = time.time()
        window_index = int(now // self.window_seconds)
        reset_after = int((window_index + 1) * self.window_seconds - now) + 1

        try:
            count = await self._incr(self._make_key(key, window_index))
        except (RedisError, OSError) as exc:
            log.error(
                "redis_rate_limiter.check_failed",
                tier=self.tier,
                error=str(exc),
                fallback="in-memory",
            )
            return await self._fallback.hit(key)

        if count > self.limit:
            raise self._reject(key, count, reset_after)

        return RateDecision(self.tier, self.limit, self.limit - count, reset_after)

    async def _incr(self, redis_key: str) -> int:
        self._get_client()
        assert self._script is not None
        # Keys outlive their window slightly so a late INCR never resets early
        result = await self._script(keys=[redis_key], args=[self.window_seconds + 1])
        return int(result)

    def _make_key(self, key: str, window_index: int) -> str:
        return f"rate_limit:{self.tier}:{key}:{window_index}"

    async def reset(self, key: str) -> None:
        """Reset the current window for a key (useful in tests)."""
        window_index = int(time.time() // self.window_seconds)
        try:
            await self._get_client().delete(self._make_key(key, window_index))
        except (RedisError, OSError) as exc:
            log.error("redis_rate_limiter.reset_failed", tier=self.tier, error=str(exc))
        self._fallback.reset(key)
