"""
Redis cache for upstream list responses (search, ingredient search, autocomplete).
Uses 24-hour TTL. Gracefully degrades to no caching when Redis is unavailable.
Recipe details are not cached here; they live in the persistent store.
"""

import json
import logging
from typing import Any, List, Optional

from redis import asyncio as aioredis

logger = logging.getLogger(__name__)

# 24 hours in seconds
CACHE_TTL_SECONDS = 86400

CACHE_KEY_PREFIX = "spoonacular:"


def _cache_key(namespace: str, key: str) -> str:
    return f"{CACHE_KEY_PREFIX}{namespace}:{key.strip().lower()}"


def _disabled_url(url: Optional[str]) -> bool:
    return not url or url.strip().lower() in ("", "false", "none", "0")


class NoOpResponseCache:
    """Cache backend that never stores anything. Used when Redis is not configured."""

    def is_available(self) -> bool:
        return False

    async def get_results(self, namespace: str, key: str) -> Optional[List[Any]]:
        return None

    async def set_results(self, namespace: str, key: str, results: List[Any]) -> None:
        return None


class RedisResponseCache:
    """Redis-backed response cache. Errors are logged, never raised."""

    def __init__(self, client: Any, ttl_seconds: int = CACHE_TTL_SECONDS) -> None:
        self._client = client
        self._ttl = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = CACHE_TTL_SECONDS) -> "RedisResponseCache":
        return cls(aioredis.from_url(url, decode_responses=True), ttl_seconds)

    def is_available(self) -> bool:
        return self._client is not None

    async def get_results(self, namespace: str, key: str) -> Optional[List[Any]]:
        cache_key = _cache_key(namespace, key)
        try:
            raw = await self._client.get(cache_key)
            if raw is None:
                return None
            data = json.loads(raw)
            return data if isinstance(data, list) else None
        except Exception as e:
            logger.debug("Cache get failed for %s: %s", cache_key, e)
            return None

    async def set_results(self, namespace: str, key: str, results: List[Any]) -> None:
        cache_key = _cache_key(namespace, key)
        try:
            await self._client.set(cache_key, json.dumps(results), ex=self._ttl)
        except Exception as e:
            logger.debug("Cache set failed for %s: %s", cache_key, e)

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.debug("Redis close failed: %s", e)


def create_response_cache(redis_url: Optional[str]):
    """Build a Redis cache from REDIS_URL, or a no-op cache if not configured."""
    if _disabled_url(redis_url):
        return NoOpResponseCache()
    try:
        return RedisResponseCache.from_url(redis_url)
    except Exception as e:
        logger.warning("Redis unavailable, caching disabled: %s", e)
        return NoOpResponseCache()
