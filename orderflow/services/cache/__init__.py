"""
Cache Service Factory

Returns the in-memory or Redis cache backend based on ENV_MODE, wrapped in
the shared CacheCoordinator.

Usage:
    from orderflow.services.cache import get_cache_coordinator

    cache = get_cache_coordinator()
    result = await cache.get_or_fetch(order_item_key(7), load, ttl=60)

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from functools import lru_cache

from orderflow.core.config import get_settings
from orderflow.services.cache.base import (
    BaseCacheBackend,
    CacheEntry,
    compute_etag,
    normalize_etag,
)
from orderflow.services.cache.coordinator import (
    CacheCoordinator,
    CachedValue,
    NotModified,
    order_history_key,
    order_item_key,
    order_list_key,
)
from orderflow.services.cache.memory import MemoryCacheBackend

logger = logging.getLogger(__name__)


@lru_cache()
def get_cache_backend() -> BaseCacheBackend:
    """
    Get the configured cache backend instance.

    Returns:
        BaseCacheBackend: MemoryCacheBackend in development, RedisCacheBackend otherwise
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Cache Backend: Using MemoryCacheBackend (development mode)")
        return MemoryCacheBackend()
    else:
        from orderflow.services.cache.redis import RedisCacheBackend

        logger.info(f"Cache Backend: Using RedisCacheBackend ({settings.env_mode.value} mode)")
        return RedisCacheBackend()


@lru_cache()
def get_cache_coordinator() -> CacheCoordinator:
    """Get the process-wide cache coordinator."""
    settings = get_settings()
    return CacheCoordinator(get_cache_backend(), default_ttl=settings.cache_default_ttl_seconds)


def reset_cache_service() -> None:
    """
    Clear the cached backend and coordinator instances.

    Useful for testing or when configuration changes at runtime.
    """
    get_cache_coordinator.cache_clear()
    get_cache_backend.cache_clear()
    logger.debug("Cache service cache cleared")


__all__ = [
    "get_cache_backend",
    "get_cache_coordinator",
    "reset_cache_service",
    "BaseCacheBackend",
    "CacheEntry",
    "CacheCoordinator",
    "CachedValue",
    "NotModified",
    "MemoryCacheBackend",
    "compute_etag",
    "normalize_etag",
    "order_item_key",
    "order_list_key",
    "order_history_key",
]
