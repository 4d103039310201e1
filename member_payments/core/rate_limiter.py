"""
Per-key request counting for the payment endpoints.

Two interchangeable backends implement ``check(key, max_requests,
window_seconds)``:
- InMemoryRateLimiter: process-local, resets on restart. Fine for a single
  instance.
- RedisRateLimiter: shared counter for horizontally scaled deployments.
"""
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)

SWEEP_EVERY = 100


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one rate-limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # Unix seconds
    retry_after: int  # Whole seconds, 0 when allowed

    def headers(self) -> Dict[str, str]:
        """Telemetry headers attached to every rate-limited endpoint response."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass
class _Bucket:
    count: int
    reset_at: float


class RateLimiter:
    """Interface shared by the rate limiter backends."""

    async def check(self, key: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        raise NotImplementedError

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryRateLimiter(RateLimiter):
    """
    Fixed-window counter held in process memory.

    The first request for a key opens a window; requests inside the window
    increment the counter until it reaches ``max_requests``, after which they
    are rejected until the window resets. Expired buckets are swept lazily
    every ``SWEEP_EVERY`` checks.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._checks = 0

    def _sweep(self, now: float) -> None:
        expired = [key for key, bucket in self._buckets.items() if bucket.reset_at <= now]
        for key in expired:
            del self._buckets[key]
        if expired:
            logger.debug("rate_limit_buckets_swept", count=len(expired))

    def check_sync(self, key: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        """Synchronous core of ``check``; the lock makes increments atomic."""
        with self._lock:
            now = self._clock()
            self._checks += 1
            if self._checks % SWEEP_EVERY == 0:
                self._sweep(now)

            bucket = self._buckets.get(key)
            if bucket is None or bucket.reset_at <= now:
                bucket = _Bucket(count=1, reset_at=now + window_seconds)
                self._buckets[key] = bucket
                return RateLimitResult(
                    allowed=True,
                    limit=max_requests,
                    remaining=max_requests - 1,
                    reset_at=int(bucket.reset_at),
                    retry_after=0,
                )

            if bucket.count < max_requests:
                bucket.count += 1
                return RateLimitResult(
                    allowed=True,
                    limit=max_requests,
                    remaining=max_requests - bucket.count,
                    reset_at=int(bucket.reset_at),
                    retry_after=0,
                )

            return RateLimitResult(
                allowed=False,
                limit=max_requests,
                remaining=0,
                reset_at=int(bucket.reset_at),
                retry_after=max(1, math.ceil(bucket.reset_at - now)),
            )

    async def check(self, key: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        return self.check_sync(key, max_requests, window_seconds)

    def __len__(self) -> int:
        return len(self._buckets)


# INCR the key, start its TTL on first hit, and report count plus TTL in one
# round trip so concurrent callers never see a key without expiry.
_HIT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
return {count, ttl}
"""


class RedisRateLimiter(RateLimiter):
    """Fixed-window counter stored in Redis, shared by every API instance."""

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "ratelimit",
        clock: Callable[[], float] = time.time,
    ):
        self.redis_client = redis_client
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self._clock = clock

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    async def check(self, key: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        redis = await self._ensure_redis()
        window_ms = int(window_seconds * 1000)
        count, ttl_ms = await redis.eval(_HIT_SCRIPT, 1, f"{self.key_prefix}:{key}", window_ms)
        count = int(count)
        ttl_ms = int(ttl_ms) if int(ttl_ms) > 0 else window_ms

        now = self._clock()
        reset_at = now + ttl_ms / 1000
        allowed = count <= max_requests
        return RateLimitResult(
            allowed=allowed,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_at=int(reset_at),
            retry_after=0 if allowed else max(1, math.ceil(ttl_ms / 1000)),
        )

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
