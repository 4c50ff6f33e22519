"""
Cache Port

Short-lived shared state for in-flight syncs (live session URLs, latest
progress event). Two backends are provided:

- RedisCache: shared across processes, used when REDIS_URL is configured
- MemoryCache: per-process dictionary with TTL

FallbackCache composes them: Redis first, then memory whenever Redis is not
configured or a Redis call fails.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from finsync.config import get_settings

logger = logging.getLogger(__name__)


class CachePort(ABC):
    """Minimal async key/value interface used by the sync engine."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int = 60) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass


class MemoryCache(CachePort):

    def __init__(self, clock=time.monotonic):
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl: int = 60) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)


class RedisCache(CachePort):
    """Values are stored as JSON strings."""

    def __init__(self, url: str, prefix: str = "finsync"):
        self.client = redis.from_url(url, decode_responses=True)
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.client.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: int = 60) -> None:
        await self.client.set(self._key(key), json.dumps(value), ex=ttl)

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))


class FallbackCache(CachePort):
    """
    Try the primary backend, fall back to the secondary on failure.

    Writes always land in the fallback too, so a Redis outage in the middle
    of a sync does not lose the live session URL for this process.
    """

    def __init__(self, primary: Optional[CachePort], fallback: CachePort):
        self.primary = primary
        self.fallback = fallback

    async def get(self, key: str) -> Optional[Any]:
        if self.primary is not None:
            try:
                value = await self.primary.get(key)
                if value is not None:
                    return value
            except RedisError as e:
                logger.warning(f"Primary cache get failed for {key}, using memory: {e}")
        return await self.fallback.get(key)

    async def set(self, key: str, value: Any, ttl: int = 60) -> None:
        if self.primary is not None:
            try:
                await self.primary.set(key, value, ttl)
            except RedisError as e:
                logger.warning(f"Primary cache set failed for {key}, using memory: {e}")
        await self.fallback.set(key, value, ttl)

    async def delete(self, key: str) -> None:
        if self.primary is not None:
            try:
                await self.primary.delete(key)
            except RedisError as e:
                logger.warning(f"Primary cache delete failed for {key}: {e}")
        await self.fallback.delete(key)


@lru_cache()
def get_cache() -> CachePort:
    """
    Cache built from settings.

    Redis is used when REDIS_URL is set; otherwise only the memory backend.
    """
    settings = get_settings()
    primary = RedisCache(settings.redis_url) if settings.redis_url else None
    if primary is None:
        logger.info("REDIS_URL not configured, using in-memory cache")
    return FallbackCache(primary, MemoryCache())


def live_session_key(connection_id: str) -> str:
    return f"live_session:{connection_id}"


def progress_key(connection_id: str) -> str:
    return f"progress:{connection_id}"
