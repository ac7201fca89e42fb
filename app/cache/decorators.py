from functools import wraps
from typing import Callable


def cached(key_builder: Callable[..., str], ttl_setting: str | None = None):
    """
    Read-through cache for async service methods.

    The owning object must expose a ``cache`` attribute (a CacheLayer).
    key_builder receives the same args/kwargs as the method, minus self.
    ttl_setting names the Settings field holding the TTL.
    Example:
      @cached(lambda task_id, **kw: f"tasks:{task_id}", "cache_ttl_item")
      async def find_one(self, task_id): ...
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            cache = self.cache
            key = key_builder(*args, **kwargs)
            ttl = getattr(cache.settings, ttl_setting) if ttl_setting else None

            # loader closure calls the original method
            async def loader():
                value = await fn(self, *args, **kwargs)
                if value is None:
                    return None
                if hasattr(value, "model_dump"):
                    return value.model_dump(mode="json")
                return value

            return await cache.get_or_load(key, loader=loader, ttl=ttl)

        return wrapper

    return decorator
