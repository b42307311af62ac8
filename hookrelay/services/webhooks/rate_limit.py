from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable, Protocol

from redis.asyncio import Redis


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BucketConfig:
    # Sustained refill rate in tokens per second plus burst capacity.
    rate: float
    burst: int

    @classmethod
    def per_minute(cls, limit: int) -> "BucketConfig":
        limit = max(1, int(limit))
        return cls(rate=limit / 60.0, burst=limit)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int
    remaining: float | None = None


class SubscriptionRateLimiter(Protocol):
    async def acquire(self, subscription_id: str, limit_per_minute: int) -> RateLimitDecision: ...


_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local data = redis.call("HMGET", KEYS[1], "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])
if tokens == nil then
  tokens = burst
  ts = now_ms
end
if now_ms < ts then
  ts = now_ms
end
tokens = math.min(burst, tokens + ((now_ms - ts) / 1000.0) * rate)

local retry_after = 0
if tokens < cost then
  if rate <= 0 then
    retry_after = 1000
  else
    retry_after = math.ceil(((cost - tokens) / rate) * 1000)
  end
end

local allowed = tokens >= cost
if allowed then
  tokens = tokens - cost
end

redis.call("HMSET", KEYS[1], "tokens", tokens, "ts", now_ms)
redis.call("EXPIRE", KEYS[1], ttl)

return {allowed and 1 or 0, tostring(tokens), retry_after}
"""


def _calculate_tokens(
    *,
    tokens: float | None,
    last_ms: int | None,
    now_ms: int,
    rate: float,
    burst: int,
) -> float:
    # Refill tokens based on elapsed time while enforcing burst capacity.
    if tokens is None:
        tokens = float(burst)
    if last_ms is None:
        last_ms = now_ms
    if now_ms < last_ms:
        last_ms = now_ms
    delta_s = (now_ms - last_ms) / 1000.0
    return min(float(burst), tokens + (delta_s * rate))


def _retry_after_ms(tokens: float, *, rate: float, cost: int) -> int:
    if tokens >= cost:
        return 0
    if rate <= 0:
        return 1000
    needed = cost - tokens
    return int(math.ceil((needed / rate) * 1000))


def _ttl_seconds(rate: float, burst: int) -> int:
    # Expire idle buckets after a conservative refill window.
    if rate <= 0:
        return max(1, burst)
    return max(1, int(math.ceil((burst / rate) * 2)))


class InMemoryRateLimiter:
    """Per-subscription token buckets held in process memory."""

    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.monotonic
        self._buckets: dict[str, tuple[float, int]] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, subscription_id: str, limit_per_minute: int) -> RateLimitDecision:
        config = BucketConfig.per_minute(limit_per_minute)
        now_ms = int(self._time_provider() * 1000)
        async with self._lock:
            previous = self._buckets.get(subscription_id)
            tokens = _calculate_tokens(
                tokens=previous[0] if previous else None,
                last_ms=previous[1] if previous else None,
                now_ms=now_ms,
                rate=config.rate,
                burst=config.burst,
            )
            retry_after_ms = _retry_after_ms(tokens, rate=config.rate, cost=1)
            allowed = retry_after_ms == 0
            if allowed:
                tokens -= 1
            self._buckets[subscription_id] = (tokens, now_ms)
        return RateLimitDecision(allowed=allowed, retry_after_ms=retry_after_ms, remaining=tokens)


class RedisRateLimiter:
    """Per-subscription token buckets shared by every worker process through Redis."""

    def __init__(
        self,
        *,
        redis_url: str,
        prefix: str,
        time_provider: Callable[[], float] | None = None,
        redis: Redis | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._prefix = prefix
        self._time_provider = time_provider or time.time
        self._redis = redis
        self._redis_loop: asyncio.AbstractEventLoop | None = None
        self._lock = asyncio.Lock()

    async def _get_redis(self) -> Redis:
        # Cache the connection per event loop to avoid cross-loop reuse in tests.
        current_loop = asyncio.get_running_loop()
        if self._redis is not None and self._redis_loop in (None, current_loop):
            self._redis_loop = current_loop
            return self._redis
        async with self._lock:
            self._redis = Redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
            self._redis_loop = current_loop
        return self._redis

    async def acquire(self, subscription_id: str, limit_per_minute: int) -> RateLimitDecision:
        config = BucketConfig.per_minute(limit_per_minute)
        redis = await self._get_redis()
        result = await redis.eval(
            _TOKEN_BUCKET_LUA,
            1,
            f"{self._prefix}:{subscription_id}",
            int(self._time_provider() * 1000),
            config.rate,
            config.burst,
            1,
            _ttl_seconds(config.rate, config.burst),
        )
        return RateLimitDecision(
            allowed=int(result[0]) == 1,
            retry_after_ms=int(float(result[2])),
            remaining=float(result[1]),
        )

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
