import asyncio
import json
from typing import Any, Awaitable, Callable, Mapping, Optional

from cachetools import TTLCache
from redis.asyncio import RedisError

from app.cache.store import KeyValueStore, create_redis
from app.core.config import Settings, get_settings

import logging

logger = logging.getLogger(__name__)

TASK_KEY = "tasks:{task_id}"
USER_SCOPE = "tasks:user:{user_id}"
ALL_USERS = "all"


class CacheLayer:
    """
    Best-effort JSON cache on top of the shared key-value store.

    Features:
    - Deterministic keys derived from a prefix and a parameter mapping
    - Stampede protection with per-key locks for read-through loads
    - Invalidation by exact key and by glob pattern
    - Graceful degradation: store failures are logged and read as misses
    """

    def __init__(
        self,
        store: KeyValueStore | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings
        self._store = store
        self._initialized = store is not None

        # Stats tracking
        self.stats = {
            "hits": 0,
            "misses": 0,
            "errors": 0,
        }

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def store(self) -> KeyValueStore:
        if self._store is None:
            raise RuntimeError("Cache layer used before init_cache()")
        return self._store

    async def init_cache(self):
        """Create the Redis connection if no store was injected."""
        if self._initialized:
            return

        self._store = KeyValueStore(create_redis(self.settings))
        self._initialized = True

        try:
            await self._store.ping()
            logger.info("Redis connection established")
        except RedisError as e:
            # Keep the client; it reconnects on the next command
            logger.error(f"Redis ping failed during cache init: {e}")

    def _key(self, key: str) -> str:
        """Build namespaced cache key."""
        return f"{self.settings.cache_namespace}{key}"

    @staticmethod
    def derive_key(prefix: str, params: Mapping[str, Any]) -> str:
        """
        Build a stable key from a prefix and query parameters.

        Parameters are sorted by name so logically identical queries map to
        the same key whatever order the caller supplied them in.
        """
        parts = [f"{name}:{params[name]}" for name in sorted(params)]
        return ":".join([prefix, *parts])

    def _serialize(self, value: Any) -> str:
        """Serialize value for storage."""
        return json.dumps(value, default=str)

    def _deserialize(self, raw: str) -> Any:
        """Deserialize value from storage."""
        return json.loads(raw)

    async def read(self, key: str) -> Any | None:
        """Return the cached value, or None on miss, expiry or any failure."""
        try:
            raw = await self.store.get(self._key(key))
        except (RedisError, UnicodeDecodeError) as e:
            logger.error(f"Cache get error for key {key}: {e}")
            self.stats["errors"] += 1
            return None

        if raw is None:
            self.stats["misses"] += 1
            return None

        try:
            value = self._deserialize(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Cache payload for key {key} is not valid JSON: {e}")
            self.stats["errors"] += 1
            return None

        self.stats["hits"] += 1
        logger.debug(f"Cache hit: {key}")
        return value

    async def write(self, key: str, value: Any, ttl: Optional[int] = None):
        """Store a value. Failures are logged and never raised."""
        ttl = ttl or self.settings.cache_ttl_list
        try:
            data = self._serialize(value)
            await self.store.set(self._key(key), data, ttl)
            logger.debug(f"Cached {key} for {ttl}s")
        except (TypeError, ValueError) as e:
            logger.error(f"Cache serialization failed for key {key}: {e}")
            self.stats["errors"] += 1
        except RedisError as e:
            logger.error(f"Cache set error for key {key}: {e}")
            self.stats["errors"] += 1

    async def invalidate(self, key: str):
        try:
            await self.store.delete(self._key(key))
        except RedisError as e:
            logger.error(f"Cache delete error for key {key}: {e}")
            self.stats["errors"] += 1

    async def invalidate_prefix(self, pattern: str):
        """Delete all keys matching a glob pattern such as ``tasks:user:1:*``."""
        try:
            deleted = await self.store.delete_pattern(self._key(pattern))
            if deleted:
                logger.debug(f"Deleted {deleted} keys matching pattern: {pattern}")
        except RedisError as e:
            logger.error(f"Cache delete pattern error for {pattern}: {e}")
            self.stats["errors"] += 1

    async def invalidate_user(self, user_id: Any):
        """Drop list and stats views that may contain this user's tasks."""
        await self.invalidate_prefix(f"{USER_SCOPE.format(user_id=user_id)}:*")
        await self.invalidate_prefix(f"{USER_SCOPE.format(user_id=ALL_USERS)}:*")

    async def invalidate_task(self, task_id: Any, user_id: Any):
        await self.invalidate(TASK_KEY.format(task_id=task_id))
        await self.invalidate_user(user_id)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
    ):
        """
        Read-through lookup: cache, then loader.

        Concurrent misses on the same key share one loader call. A loader
        returning None is not cached.
        """
        cached = await self.read(key)
        if cached is not None:
            return cached

        lock = _get_lock_for_key(key)
        async with lock:
            # Double-check after acquiring lock
            cached = await self.read(key)
            if cached is not None:
                return cached

            value = await loader()
            if value is None:
                return None

            await self.write(key, value, ttl)
            return value

    async def close(self):
        """Graceful shutdown of cache connections."""
        if self._store is not None:
            try:
                await self._store.close()
            except RedisError as e:
                logger.error(f"Error closing Redis: {e}")

    def get_stats(self) -> dict:
        total = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "hit_rate": self.stats["hits"] / total if total > 0 else 0,
        }


# Lock management for cache stampede protection
# When multiple concurrent requests miss the same key, per-key locks make
# sure only one of them hits the database while the others wait.
# TTLCache bounds memory; the TTL exceeds any realistic load time so a lock
# never expires while held. setdefault() hands every caller the same lock.
_locks = TTLCache(maxsize=10_000, ttl=300)


def _get_lock_for_key(key: str) -> asyncio.Lock:
    """Get or create an asyncio.Lock for a cache key."""
    return _locks.setdefault(key, asyncio.Lock())


# Cache layer instance (singleton per worker)
cache_layer = CacheLayer()


def get_cache() -> CacheLayer:
    return cache_layer
