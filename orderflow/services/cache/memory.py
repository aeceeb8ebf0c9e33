"""
In-Memory Cache Backend

Process-local TTL dictionary used in development mode and in tests.
Expired entries are dropped lazily on access and during prefix scans.
"""

import logging
import time
from typing import Callable, Optional

from orderflow.services.cache.base import BaseCacheBackend, CacheEntry

logger = logging.getLogger(__name__)


class MemoryCacheBackend(BaseCacheBackend):
    """Dictionary-backed cache with per-entry expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[CacheEntry, float]] = {}
        logger.info("MemoryCacheBackend initialized")

    @property
    def provider_name(self) -> str:
        return "memory"

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        now = self._clock()
        return [k for k, (_, expires_at) in self._entries.items() if expires_at > now]

    async def get(self, key: str) -> Optional[CacheEntry]:
        item = self._entries.get(key)
        if item is None:
            return None
        entry, expires_at = item
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry

    async def set(self, entry: CacheEntry, ttl_seconds: int) -> None:
        self._entries[entry.key] = (entry, self._clock() + ttl_seconds)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for k in doomed:
            del self._entries[k]
        return len(doomed)

    async def health_check(self) -> bool:
        return True
