"""
Redis Cache Backend

Production implementation on redis.asyncio.
Used when ENV_MODE=production or ENV_MODE=staging.

Every key is stored under the configured namespace
(`<cache_key_prefix>:<key>`) so several deployments can share one Redis.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from typing import Optional

import redis.asyncio as redis

from orderflow.core.config import get_settings
from orderflow.services.cache.base import BaseCacheBackend, CacheEntry

logger = logging.getLogger(__name__)


class RedisCacheBackend(BaseCacheBackend):
    """
    Redis-backed cache.

    Entries are JSON documents `{"value": ..., "etag": ...}` written with
    `SET key value EX ttl`. Prefix deletion walks `SCAN MATCH prefix*`
    rather than `KEYS` to avoid blocking the server.
    """

    SCAN_BATCH = 500

    def __init__(self, client: Optional[redis.Redis] = None, namespace: Optional[str] = None):
        settings = get_settings()
        self._client = client or redis.from_url(settings.redis_url, decode_responses=True)
        self._namespace = namespace if namespace is not None else settings.cache_key_prefix
        logger.info(f"RedisCacheBackend initialized (namespace={self._namespace!r})")

    @property
    def provider_name(self) -> str:
        return "redis"

    def _full_key(self, key: str) -> str:
        return f"{self._namespace}:{key}" if self._namespace else key

    async def get(self, key: str) -> Optional[CacheEntry]:
        raw = await self._client.get(self._full_key(key))
        if raw is None:
            return None
        return CacheEntry.from_json(key, raw)

    async def set(self, entry: CacheEntry, ttl_seconds: int) -> None:
        await self._client.set(self._full_key(entry.key), entry.to_json(), ex=ttl_seconds)

    async def delete(self, key: str) -> bool:
        removed = await self._client.delete(self._full_key(key))
        return bool(removed)

    async def delete_prefix(self, prefix: str) -> int:
        pattern = f"{self._full_key(prefix)}*"
        removed = 0
        batch: list[str] = []
        async for key in self._client.scan_iter(match=pattern, count=self.SCAN_BATCH):
            batch.append(key)
            if len(batch) >= self.SCAN_BATCH:
                removed += await self._client.delete(*batch)
                batch = []
        if batch:
            removed += await self._client.delete(*batch)
        return removed

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()
