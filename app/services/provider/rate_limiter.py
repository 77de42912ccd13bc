"""Distributed rate limiter for third-party calls.

Token bucket kept in Redis so every worker process shares one budget.
Used in front of the match result provider and, with a much smaller
budget, in front of the AI disambiguator.
"""

import asyncio
import time
from typing import Any

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)

# Returns {acquired, wait_seconds}
TOKEN_BUCKET_LUA = """
local key = KEYS[1]
local rate = tonumber(ARGV[1])
local burst = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local refill_interval = tonumber(ARGV[4])

local state = redis.call('HMGET', key, 'tokens', 'last_update')
local tokens = tonumber(state[1]) or burst
local last_update = tonumber(state[2]) or now

local elapsed = now - last_update
tokens = math.min(burst, tokens + elapsed * rate)

if tokens >= 1 then
    tokens = tokens - 1
    redis.call('HMSET', key, 'tokens', tokens, 'last_update', now)
    redis.call('EXPIRE', key, 300)
    return {1, 0}
else
    redis.call('HMSET', key, 'tokens', tokens, 'last_update', now)
    redis.call('EXPIRE', key, 300)
    return {0, tostring((1 - tokens) * refill_interval)}
end
"""


class RequestRateLimiter:
    """
    Token bucket rate limiter using Redis.

    ``rate`` is requests per second, so a budget of 15 requests per minute
    is ``rate=0.25``.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        rate: float = 5.0,
        burst: int = 10,
        key_prefix: str = "ratelimit:provider",
        fail_open: bool = True,
    ):
        """
        Initialize the rate limiter.

        Args:
            redis_client: Redis client for distributed state
            rate: Requests per second allowed
            burst: Maximum burst size
            key_prefix: Redis key prefix
            fail_open: Allow requests when Redis is unreachable
        """
        self.redis = redis_client
        self.rate = rate
        self.burst = burst
        self.key_prefix = key_prefix
        self.fail_open = fail_open
        self.refill_interval = 1.0 / rate

    @classmethod
    def per_minute(cls, redis_client: redis.Redis, requests: int, **kwargs) -> "RequestRateLimiter":
        return cls(redis_client, rate=requests / 60.0, burst=max(1, requests // 4), **kwargs)

    def _get_key(self, scope: str) -> str:
        return f"{self.key_prefix}:{scope}"

    async def acquire(self, scope: str = "default") -> tuple[bool, float]:
        """
        Try to take one token.

        Returns:
            (acquired, seconds to wait before a token is available)
        """
        try:
            result = await self.redis.eval(
                TOKEN_BUCKET_LUA,
                1,
                self._get_key(scope),
                str(self.rate),
                str(self.burst),
                str(time.time()),
                str(self.refill_interval),
            )
            acquired = int(result[0]) == 1
            wait_time = float(result[1])
            if not acquired:
                logger.debug("rate_limited", scope=scope, wait_time=wait_time)
            return acquired, wait_time
        except Exception as e:
            logger.error("rate_limiter_error", error=str(e), scope=scope)
            return self.fail_open, 0.0

    async def wait_if_needed(self, scope: str = "default", max_wait: float = 10.0) -> bool:
        """
        Wait until a token is available or ``max_wait`` elapses.

        Returns:
            True if a token was acquired
        """
        total_wait = 0.0
        while True:
            acquired, wait_time = await self.acquire(scope)
            if acquired:
                return True
            if total_wait >= max_wait:
                logger.warning(
                    "rate_limiter_max_wait_exceeded",
                    scope=scope,
                    total_wait=total_wait,
                )
                return False
            sleep_for = max(0.05, min(wait_time, max_wait - total_wait))
            await asyncio.sleep(sleep_for)
            total_wait += sleep_for

    async def get_stats(self, scope: str = "default") -> dict[str, Any]:
        """Get current rate limiter stats for a scope."""
        try:
            state = await self.redis.hgetall(self._get_key(scope))
            return {
                "scope": scope,
                "tokens": float(state.get(b"tokens", self.burst)),
                "last_update": float(state.get(b"last_update", 0)),
                "rate": self.rate,
                "burst": self.burst,
            }
        except Exception as e:
            logger.error("get_stats_error", error=str(e))
            return {"scope": scope, "error": str(e)}
