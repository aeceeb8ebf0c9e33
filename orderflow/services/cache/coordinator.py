"""
Cache Coordinator

Cache-aside layer in front of the order store.

Responsibilities:
    - Single-flight reads: concurrent misses for one key share one fetch
    - Hierarchical keys (`orders:item:42`, `orders:list:status=active:page=1:size=20`)
    - Exact-key and prefix invalidation driven by write-side effects
    - ETags on every payload for conditional reads

The cache is never a source of truth. Backend errors are logged and
treated as a miss; a failed fetch is never cached.

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from orderflow.core.errors import CacheMissUnrecoverable, OrderFlowError
from orderflow.services.cache.base import (
    BaseCacheBackend,
    CacheEntry,
    compute_etag,
    normalize_etag,
)

logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[Any]]


# =============================================================================
# KEY LAYOUT
# =============================================================================

ORDERS_NAMESPACE = "orders"
ITEM_NAMESPACE = f"{ORDERS_NAMESPACE}:item"
LIST_NAMESPACE = f"{ORDERS_NAMESPACE}:list"
HISTORY_NAMESPACE = f"{ORDERS_NAMESPACE}:history"


def order_item_key(order_id: int) -> str:
    return f"{ITEM_NAMESPACE}:{order_id}"


def order_history_key(order_id: int) -> str:
    return f"{HISTORY_NAMESPACE}:{order_id}"


def order_list_key(
    status_filter: str = "all",
    page: int = 1,
    page_size: int = 20,
    include_archived: bool = False,
) -> str:
    archived = "archived=1" if include_archived else "archived=0"
    return f"{LIST_NAMESPACE}:status={status_filter}:{archived}:page={page}:size={page_size}"


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class CachedValue:
    """Payload returned by the coordinator, with its ETag."""
    value: Any
    etag: str
    from_cache: bool = False


@dataclass
class NotModified:
    """Conditional read matched the client's ETag; no payload is sent."""
    etag: str


# =============================================================================
# COORDINATOR
# =============================================================================

class CacheCoordinator:
    """
    Stampede-safe cache-aside coordinator.

    Example:
        >>> cache = CacheCoordinator(MemoryCacheBackend())
        >>> result = await cache.get_or_fetch("orders:item:7", load_order_7, ttl=60)
        >>> result.etag
        '"k3J1c0x9aQ2V8mPq"'
    """

    def __init__(self, backend: BaseCacheBackend, default_ttl: int = 300):
        self.backend = backend
        self.default_ttl = default_ttl
        self._inflight: dict[str, asyncio.Task] = {}
        # Fetches detached by an invalidation; their results are not stored
        self._stale: set[asyncio.Task] = set()

        logger.info(
            f"CacheCoordinator initialized "
            f"(backend={backend.provider_name}, default_ttl={default_ttl}s)"
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: FetchFn,
        ttl: Optional[int] = None,
    ) -> CachedValue:
        """
        Return the cached payload for `key`, fetching and storing it on a miss.

        Concurrent callers that miss on the same key while a fetch is running
        await that fetch instead of starting their own. The fetch runs in its
        own task, so a caller that is cancelled does not cancel it for the
        others.

        Raises:
            OrderFlowError: Domain errors from `fetch_fn` (e.g. OrderNotFound) as-is
            CacheMissUnrecoverable: Any other failure of `fetch_fn`
        """
        entry = await self._safe_get(key)
        if entry is not None:
            logger.debug(f"Cache hit: {key}")
            return CachedValue(value=entry.value, etag=entry.etag, from_cache=True)

        task = self._inflight.get(key)
        if task is not None:
            logger.debug(f"Cache miss joined in-flight fetch: {key}")
        else:
            task = asyncio.get_running_loop().create_task(self._fetch_and_store(key, fetch_fn, ttl))
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._forget(key, t))

        return await asyncio.shield(task)

    async def _fetch_and_store(self, key: str, fetch_fn: FetchFn, ttl: Optional[int]) -> CachedValue:
        try:
            value = await fetch_fn()
        except OrderFlowError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Backing fetch failed for {key}: {e}")
            raise CacheMissUnrecoverable(key, str(e)) from e

        result = CachedValue(value=value, etag=compute_etag(value), from_cache=False)
        if asyncio.current_task() in self._stale:
            logger.debug(f"Skipping store of {key}: invalidated during fetch")
        else:
            await self._safe_set(CacheEntry(key=key, value=value, etag=result.etag), ttl)
        return result

    def _forget(self, key: str, task: asyncio.Task) -> None:
        # A newer fetch may already own the key after an invalidation
        if self._inflight.get(key) is task:
            del self._inflight[key]
        self._stale.discard(task)
        if not task.cancelled():
            # Mark the exception retrieved when every waiter has gone away
            task.exception()

    async def get_conditional(
        self,
        key: str,
        fetch_fn: FetchFn,
        if_none_match: Optional[str] = None,
        ttl: Optional[int] = None,
    ) -> Union[CachedValue, NotModified]:
        """get_or_fetch, answering NotModified when the client's ETag still matches."""
        result = await self.get_or_fetch(key, fetch_fn, ttl=ttl)
        if if_none_match and self.etag_matches(if_none_match, result.etag):
            return NotModified(etag=result.etag)
        return result

    @staticmethod
    def etag_matches(client_etag: Optional[str], server_etag: str) -> bool:
        client = normalize_etag(client_etag)
        if client is None:
            return False
        if client == "*":
            return True
        return client == normalize_etag(server_etag)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> str:
        """Store a payload directly. Returns its ETag."""
        etag = compute_etag(value)
        await self._safe_set(CacheEntry(key=key, value=value, etag=etag), ttl)
        return etag

    async def invalidate(self, key_or_prefix: str) -> int:
        """
        Remove an exact key and everything below it in the hierarchy.

        `invalidate("orders:list")` drops every list page;
        `invalidate("orders:item:4")` drops that key only (not `orders:item:42`).
        Invalidating a missing key is a no-op.

        Returns:
            Number of entries removed
        """
        base = key_or_prefix.rstrip(":")
        prefix = f"{base}:"

        for inflight_key in list(self._inflight):
            if inflight_key == base or inflight_key.startswith(prefix):
                # Later misses start a fresh fetch instead of joining this one
                self._stale.add(self._inflight.pop(inflight_key))

        removed = 0
        try:
            if await self.backend.delete(base):
                removed += 1
            removed += await self.backend.delete_prefix(prefix)
        except Exception as e:
            logger.error(f"Cache invalidation failed for {key_or_prefix}: {e}")
            raise

        logger.debug(f"Invalidated {removed} cache entries under {base}")
        return removed

    async def invalidate_order(self, order_id: int) -> int:
        """Drop the item, history and every list page that may contain this order."""
        removed = await self.invalidate(order_item_key(order_id))
        removed += await self.invalidate(order_history_key(order_id))
        removed += await self.invalidate(LIST_NAMESPACE)
        return removed

    # -------------------------------------------------------------------------
    # Backend guards
    # -------------------------------------------------------------------------

    async def _safe_get(self, key: str) -> Optional[CacheEntry]:
        try:
            return await self.backend.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}, treating as miss: {e}")
            return None

    async def _safe_set(self, entry: CacheEntry, ttl: Optional[int]) -> None:
        try:
            await self.backend.set(entry, ttl or self.default_ttl)
        except Exception as e:
            logger.warning(f"Cache write failed for {entry.key}: {e}")

    async def health_check(self) -> bool:
        return await self.backend.health_check()
