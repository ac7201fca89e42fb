import logging
from typing import NamedTuple

from redis.asyncio import Redis

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

SCAN_BATCH_SIZE = 100


class CounterState(NamedTuple):
    count: int
    remaining_ms: int


def create_redis(settings: Settings | None = None, url: str | None = None) -> Redis:
    """Build a Redis client with the pool settings used across the service."""
    settings = settings or get_settings()
    return Redis.from_url(
        url or settings.redis_dsn,
        encoding="utf-8",
        decode_responses=True,
        max_connections=settings.redis_pool_size,
        socket_connect_timeout=5,
        socket_keepalive=True,
        health_check_interval=30,
    )


class KeyValueStore:
    """
    Thin adapter over the shared Redis instance.

    Used by the cache layer and the rate limiter. Errors raised by the
    client (``redis.exceptions.RedisError``) are never swallowed here;
    callers decide whether a failure is fatal.
    """

    def __init__(self, redis: Redis):
        self.redis = redis

    async def get(self, key: str) -> str | None:
        return await self.redis.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.redis.set(key, value, ex=ttl_seconds)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.redis.delete(*keys)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern. Returns the number deleted."""
        cursor = 0
        deleted = 0
        while True:
            cursor, keys = await self.redis.scan(
                cursor, match=pattern, count=SCAN_BATCH_SIZE
            )
            if keys:
                deleted += await self.redis.delete(*keys)
            if cursor == 0:
                break
        return deleted

    async def increment_with_ttl(self, key: str, ttl_ms: int) -> CounterState:
        """
        Atomically increment a counter and read its remaining lifetime.

        INCR and PTTL run in one MULTI/EXEC block so concurrent callers each
        observe a distinct count. A freshly created key has no expiry (PTTL
        of -1); the expiry is then set in a follow-up call. Only the caller
        that created the key sees -1, so the gap only delays the expiry and
        never loses a hit.
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.pttl(key)
            count, remaining_ms = await pipe.execute()

        if remaining_ms == -1:
            await self.redis.pexpire(key, ttl_ms)
            remaining_ms = ttl_ms

        return CounterState(count=int(count), remaining_ms=max(int(remaining_ms), 0))

    async def ping(self) -> bool:
        return await self.redis.ping()

    async def close(self) -> None:
        await self.redis.aclose()
        logger.info("Redis connection closed")
