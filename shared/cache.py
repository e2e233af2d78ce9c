"""
Cache invalidation capability.

Services receive a `CacheInvalidator` instead of reaching for a global client,
so tests can pass `InMemoryCache` and deployments without Redis get `NullCache`.
"""
import logging
from typing import Dict, Iterable, List, Optional, Protocol

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class CacheInvalidator(Protocol):
    async def invalidate(self, keys: Iterable[str]) -> None:
        ...


class NullCache:
    async def invalidate(self, keys: Iterable[str]) -> None:
        return None


class InMemoryCache:
    def __init__(self):
        self.store: Dict[str, str] = {}
        self.invalidated: List[str] = []

    async def set(self, key: str, value: str) -> None:
        self.store[key] = value

    async def get(self, key: str) -> Optional[str]:
        return self.store.get(key)

    async def invalidate(self, keys: Iterable[str]) -> None:
        for key in keys:
            self.store.pop(key, None)
            self.invalidated.append(key)


class RedisCache:
    def __init__(self, url: str):
        self.client = redis.from_url(url, decode_responses=True)

    async def invalidate(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if keys:
            await self.client.delete(*keys)

    async def close(self) -> None:
        await self.client.aclose()


def build_cache(redis_url: Optional[str]) -> CacheInvalidator:
    if not redis_url:
        logger.info("REDIS_URL not set, cache invalidation disabled")
        return NullCache()
    return RedisCache(redis_url)


async def safe_invalidate(cache: CacheInvalidator, keys: Iterable[str]) -> None:
    """Invalidate keys, logging instead of raising on failure."""
    keys = [k for k in keys if k]
    if not keys:
        return
    try:
        await cache.invalidate(keys)
    except Exception as exc:
        logger.warning("Cache invalidation failed", extra={"error": str(exc)})
