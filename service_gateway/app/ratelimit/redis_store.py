"""
Redis-backed counter store for multi-node deployments.
"""

import re
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import StoreUnavailable
from shared.logging import get_logger

from .counter_store import CounterStore, WindowState, window_floor

# Evict, count and conditionally insert as one atomic unit. Scores are
# milliseconds; denied requests are not recorded.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local member = ARGV[5]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local accepted = 0
if count + cost <= limit then
    for i = 1, cost do
        redis.call('ZADD', key, now, member .. ':' .. i)
    end
    count = count + cost
    accepted = 1
end
if count > 0 then
    redis.call('PEXPIRE', key, window)
end

local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local oldest_score = now
if #oldest > 0 then
    oldest_score = tonumber(oldest[2])
end
return {count, accepted, oldest_score}
"""

# DECRBY on a missing key would create a counter with no TTL
RELEASE_FIXED_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return redis.call('DECRBY', KEYS[1], ARGV[1])
end
return 0
"""


def _glob_escape(value: str) -> str:
    """Escape Redis MATCH metacharacters so keys match literally."""
    return re.sub(r"([\\*?\[\]])", r"\\\1", value)


class RedisCounterStore(CounterStore):
    """Rate limit counters in Redis.

    Fixed windows use ``INCRBY`` + ``PEXPIREAT`` inside MULTI/EXEC; sliding
    windows run a Lua script over a sorted set of request timestamps.
    """

    name = "redis"

    def __init__(self, redis_url: str, socket_timeout: float = 0.5,
                 client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.logger = get_logger("gateway.rate_limiter.redis")
        self._redis: Optional[redis.Redis] = client
        self._sliding_script = None
        self._release_script = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                decode_responses=True,
            )
        if self._sliding_script is None:
            self._sliding_script = self._redis.register_script(SLIDING_WINDOW_SCRIPT)
            self._release_script = self._redis.register_script(RELEASE_FIXED_SCRIPT)
        return self._redis

    def _unavailable(self, operation: str, exc: Exception) -> StoreUnavailable:
        self.logger.error("Counter store error", operation=operation, error=str(exc))
        return StoreUnavailable("counter_store")

    async def hit_fixed(self, key: str, cost: int, limit: int, window_seconds: int, now: float) -> WindowState:
        window_start = window_floor(now, window_seconds)
        window_key = f"{key}:{int(window_start)}"
        expires_at_ms = int((window_start + window_seconds) * 1000)

        try:
            redis_client = await self._get_redis()
            async with redis_client.pipeline(transaction=True) as pipeline:
                pipeline.incrby(window_key, cost)
                pipeline.pexpireat(window_key, expires_at_ms)
                results = await pipeline.execute()
        except (RedisError, OSError) as e:
            raise self._unavailable("hit_fixed", e) from e

        count = int(results[0])
        return WindowState(
            count=count,
            accepted=count <= limit,
            reset_at=window_start + window_seconds,
            cost=cost,
            window_start=window_start,
        )

    async def hit_sliding(self, key: str, cost: int, limit: int, window_seconds: int,
                          now: float, member: str) -> WindowState:
        now_ms = int(now * 1000)
        window_ms = int(window_seconds * 1000)

        try:
            await self._get_redis()
            count, accepted, oldest_ms = await self._sliding_script(
                keys=[key],
                args=[now_ms, window_ms, limit, cost, member],
            )
        except (RedisError, OSError) as e:
            raise self._unavailable("hit_sliding", e) from e

        accepted = bool(int(accepted))
        members = tuple(f"{member}:{i}" for i in range(1, cost + 1)) if accepted else ()
        return WindowState(
            count=int(count),
            accepted=accepted,
            reset_at=(int(oldest_ms) + window_ms) / 1000.0,
            cost=cost,
            members=members,
        )

    async def release(self, key: str, state: WindowState) -> None:
        try:
            redis_client = await self._get_redis()
            if state.members:
                await redis_client.zrem(key, *state.members)
            elif state.window_start is not None:
                await self._release_script(
                    keys=[f"{key}:{int(state.window_start)}"],
                    args=[state.cost],
                )
        except (RedisError, OSError) as e:
            raise self._unavailable("release", e) from e

    async def reset(self, key: str) -> None:
        """Reset every window for a key."""
        try:
            redis_client = await self._get_redis()
            keys = [key]
            prefix = f"{key}:"
            async for window_key in redis_client.scan_iter(match=_glob_escape(prefix) + "*"):
                # Fixed windows only; "sub:alice:x" is another subject
                if window_key[len(prefix):].isdigit():
                    keys.append(window_key)
            await redis_client.delete(*keys)
            self.logger.info("Rate limit reset", key=key)
        except (RedisError, OSError) as e:
            raise self._unavailable("reset", e) from e

    async def ping(self) -> bool:
        try:
            redis_client = await self._get_redis()
            return bool(await redis_client.ping())
        except (RedisError, OSError) as e:
            raise self._unavailable("ping", e) from e

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._sliding_script = None
            self._release_script = None
