"""Fixed-window per-client rate limiting for the proxy API.

Counts requests per key (client IP + endpoint by default) in windows of
window_seconds. Storage is pluggable: MemoryRateLimitStore for a single
instance, RedisRateLimitStore when several instances must share counts.

The limiter fails OPEN: if the store raises, the request is allowed and the
error is logged, so a broken Redis never takes the API down with it.
"""

import math
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

import redis.asyncio as redis

from btc_benefit.config import RateLimitSettings
from btc_benefit.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RateLimitResult:
    """Outcome of a single rate limit check."""

    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds
    total_hits: int
    headers: dict[str, str] = field(default_factory=dict)
    error: str | None = None


class RateLimitStore(ABC):
    """Counter storage contract for RateLimiter."""

    @abstractmethod
    async def increment(self, key: str, window_seconds: float) -> tuple[int, float]:
        """Count one hit for key. Returns (count_in_window, window_reset_at)."""
        ...

    @abstractmethod
    async def get(self, key: str) -> tuple[int, float] | None:
        """Return the live (count, reset_at) for key, or None if expired/absent."""
        ...

    @abstractmethod
    async def reset(self, key: str) -> None:
        ...

    async def close(self) -> None:
        """Release backend connections (no-op for in-process stores)."""

    def purge_expired(self) -> int:
        """Drop expired windows. Returns the number removed.

        Stores whose backend expires keys by itself keep the default no-op.
        """
        return 0


class MemoryRateLimitStore(RateLimitStore):
    """In-process counters. Not shared across server instances."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[int, float]] = {}

    async def increment(self, key: str, window_seconds: float) -> tuple[int, float]:
        now = self._clock()
        entry = self._entries.get(key)
        if entry is None or entry[1] <= now:
            entry = (1, now + window_seconds)
        else:
            entry = (entry[0] + 1, entry[1])
        self._entries[key] = entry
        return entry

    async def get(self, key: str) -> tuple[int, float] | None:
        entry = self._entries.get(key)
        if entry is None or entry[1] <= self._clock():
            return None
        return entry

    async def reset(self, key: str) -> None:
        self._entries.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (_, reset_at) in self._entries.items() if reset_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)


# Atomic check-and-increment. Times are integer milliseconds.
_INCREMENT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local reset_at = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])

local current = redis.call('HMGET', key, 'count', 'reset_at')
local count = tonumber(current[1]) or 0
local existing_reset = tonumber(current[2]) or 0

if existing_reset <= now then
  redis.call('HSET', key, 'count', 1, 'reset_at', reset_at)
  redis.call('EXPIRE', key, ttl)
  return {1, reset_at}
end

count = count + 1
redis.call('HSET', key, 'count', count)
return {count, existing_reset}
"""


class RedisRateLimitStore(RateLimitStore):
    """Shared counters in Redis for multi-instance deployments."""

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "ratelimit:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def increment(self, key: str, window_seconds: float) -> tuple[int, float]:
        now_ms = int(self._clock() * 1000)
        reset_ms = now_ms + int(window_seconds * 1000)
        ttl = max(1, math.ceil(window_seconds))
        count, reset_at = await self._client.eval(
            _INCREMENT_SCRIPT, 1, self._key(key), now_ms, reset_ms, ttl
        )
        return int(count), int(reset_at) / 1000

    async def get(self, key: str) -> tuple[int, float] | None:
        data = await self._client.hgetall(self._key(key))
        if not data:
            return None
        count = int(data.get(b"count", data.get("count", 0)))
        reset_at = int(data.get(b"reset_at", data.get("reset_at", 0))) / 1000
        if reset_at <= self._clock():
            await self._client.delete(self._key(key))
            return None
        return count, reset_at

    async def reset(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def close(self) -> None:
        await self._client.aclose()


def create_rate_limit_store(settings: RateLimitSettings) -> RateLimitStore:
    """Pick the store backend from settings."""
    if settings.backend == "redis":
        logger.info("rate_limit_store_redis", url=settings.redis_url)
        return RedisRateLimitStore(redis.Redis.from_url(settings.redis_url))
    return MemoryRateLimitStore()


def client_key(headers: Mapping[str, str], path: str, fallback_ip: str | None = None) -> str:
    """Build the default limiter key "<ip>:<path>".

    The IP is taken from proxy headers in order: x-forwarded-for (first hop),
    x-real-ip, cf-connecting-ip; then the socket peer; then "unknown".
    """
    forwarded = headers.get("x-forwarded-for")
    ip = (
        (forwarded.split(",")[0].strip() if forwarded else None)
        or headers.get("x-real-ip")
        or headers.get("cf-connecting-ip")
        or fallback_ip
        or "unknown"
    )
    return f"{ip}:{path}"


class RateLimiter:
    """Counts hits per key and decides whether a request is within quota.

    Args:
        window_seconds: Length of a counting window.
        max_requests: Hits allowed per key per window.
        store: Counter backend (defaults to a fresh MemoryRateLimitStore).
        message: Error message returned when the limit is exceeded.
    """

    def __init__(
        self,
        window_seconds: float,
        max_requests: int,
        store: RateLimitStore | None = None,
        message: str = "Too many requests, please try again later.",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._store = store or MemoryRateLimitStore(clock=clock)
        self._message = message
        self._clock = clock

    async def check(self, key: str) -> RateLimitResult:
        """Count a hit for key and report whether it is allowed."""
        try:
            count, reset_at = await self._store.increment(key, self.window_seconds)
        except Exception as e:
            logger.error("rate_limiter_store_error", key=key, error=str(e))
            return RateLimitResult(
                allowed=True,
                remaining=self.max_requests,
                reset_at=self._clock() + self.window_seconds,
                total_hits=0,
                error="Rate limiter error",
            )

        remaining = max(0, self.max_requests - count)
        allowed = count <= self.max_requests
        if not allowed:
            logger.warning("rate_limit_reached", key=key, hits=count)

        return RateLimitResult(
            allowed=allowed,
            remaining=remaining,
            reset_at=reset_at,
            total_hits=count,
            headers=self._headers(remaining, reset_at),
            error=None if allowed else self._message,
        )

    async def reset(self, key: str) -> None:
        await self._store.reset(key)

    def _headers(self, remaining: int, reset_at: float) -> dict[str, str]:
        reset_iso = datetime.fromtimestamp(reset_at, tz=timezone.utc).isoformat()
        return {
            "RateLimit-Limit": str(self.max_requests),
            "RateLimit-Remaining": str(remaining),
            "RateLimit-Reset": reset_iso,
            "X-RateLimit-Limit": str(self.max_requests),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(math.ceil(reset_at)),
        }
