"""
Tests for the CacheCoordinator and the memory backend.
"""

import asyncio

import pytest

from orderflow.core.errors import CacheMissUnrecoverable, OrderNotFound
from orderflow.services.cache import (
    CacheCoordinator,
    CachedValue,
    MemoryCacheBackend,
    NotModified,
    compute_etag,
    normalize_etag,
    order_item_key,
    order_list_key,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class BrokenBackend(MemoryCacheBackend):
    """Backend whose reads and writes blow up like a lost Redis connection."""

    async def get(self, key):
        raise ConnectionError("redis down")

    async def set(self, entry, ttl_seconds):
        raise ConnectionError("redis down")


class CountingFetch:
    def __init__(self, value=None, error=None, delay: float = 0.0):
        self.value = value if value is not None else {"id": 7, "status": "pending"}
        self.error = error
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.value


class TestGetOrFetch:
    """Cache-aside reads."""

    async def test_miss_then_hit(self, cache):
        fetch = CountingFetch()

        first = await cache.get_or_fetch("orders:item:7", fetch)
        second = await cache.get_or_fetch("orders:item:7", fetch)

        assert fetch.calls == 1
        assert first.from_cache is False
        assert second.from_cache is True
        assert second.value == first.value
        assert second.etag == first.etag

    async def test_concurrent_misses_share_one_fetch(self, cache):
        fetch = CountingFetch(delay=0.01)

        results = await asyncio.gather(*(cache.get_or_fetch("orders:item:7", fetch) for _ in range(20)))

        assert fetch.calls == 1
        assert len({r.etag for r in results}) == 1

    async def test_joiners_see_domain_error(self, cache):
        fetch = CountingFetch(error=OrderNotFound(7), delay=0.01)

        results = await asyncio.gather(
            *(cache.get_or_fetch("orders:item:7", fetch) for _ in range(5)),
            return_exceptions=True,
        )

        assert fetch.calls == 1
        assert all(isinstance(r, OrderNotFound) for r in results)

    async def test_failed_fetch_is_not_cached(self, cache, cache_backend):
        with pytest.raises(OrderNotFound):
            await cache.get_or_fetch("orders:item:7", CountingFetch(error=OrderNotFound(7)))

        assert cache_backend.keys() == []

        fetch = CountingFetch()
        result = await cache.get_or_fetch("orders:item:7", fetch)
        assert fetch.calls == 1
        assert result.from_cache is False

    async def test_unexpected_fetch_error_is_wrapped(self, cache):
        with pytest.raises(CacheMissUnrecoverable) as exc_info:
            await cache.get_or_fetch("orders:item:7", CountingFetch(error=RuntimeError("db gone")))

        assert exc_info.value.key == "orders:item:7"
        assert exc_info.value.http_status == 503

    async def test_backend_failure_is_a_miss(self):
        cache = CacheCoordinator(BrokenBackend())
        fetch = CountingFetch()

        result = await cache.get_or_fetch("orders:item:7", fetch)

        assert result.value == fetch.value
        assert fetch.calls == 1

    async def test_entries_expire(self):
        clock = FakeClock()
        cache = CacheCoordinator(MemoryCacheBackend(clock=clock), default_ttl=60)
        fetch = CountingFetch()

        await cache.get_or_fetch("orders:item:7", fetch, ttl=30)
        clock.now += 31
        await cache.get_or_fetch("orders:item:7", fetch, ttl=30)

        assert fetch.calls == 2

    async def test_set_stores_payload_with_its_etag(self, cache):
        etag = await cache.set(order_item_key(7), {"id": 7, "status": "preparing"})
        fetch = CountingFetch()

        result = await cache.get_or_fetch(order_item_key(7), fetch)

        assert etag == compute_etag({"id": 7, "status": "preparing"})
        assert result.from_cache is True
        assert result.etag == etag
        assert result.value == {"id": 7, "status": "preparing"}
        assert fetch.calls == 0


class TestInvalidation:
    """Exact and hierarchical invalidation."""

    async def test_item_invalidation_does_not_touch_prefix_siblings(self, cache, cache_backend):
        await cache.set(order_item_key(4), {"id": 4})
        await cache.set(order_item_key(42), {"id": 42})

        removed = await cache.invalidate(order_item_key(4))

        assert removed == 1
        assert cache_backend.keys() == [order_item_key(42)]

    async def test_list_namespace_drops_every_page(self, cache, cache_backend):
        await cache.set(order_list_key("all", 1), [1])
        await cache.set(order_list_key("active", 2), [2])
        await cache.set(order_item_key(1), {"id": 1})

        removed = await cache.invalidate("orders:list")

        assert removed == 2
        assert cache_backend.keys() == [order_item_key(1)]

    async def test_invalidate_missing_key_is_noop(self, cache):
        assert await cache.invalidate(order_item_key(99)) == 0
        assert await cache.invalidate(order_item_key(99)) == 0

    async def test_invalidate_order_covers_item_history_and_lists(self, cache, cache_backend):
        await cache.set(order_item_key(7), {"id": 7})
        await cache.set("orders:history:7", [])
        await cache.set(order_list_key(), [7])
        await cache.set(order_item_key(8), {"id": 8})

        await cache.invalidate_order(7)

        assert cache_backend.keys() == [order_item_key(8)]

    async def test_invalidation_during_fetch_is_not_stored(self, cache, cache_backend):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_fetch():
            started.set()
            await release.wait()
            return {"id": 7, "status": "pending"}

        task = asyncio.create_task(cache.get_or_fetch(order_item_key(7), slow_fetch))
        await started.wait()
        await cache.invalidate_order(7)
        release.set()
        result = await task

        assert result.value["status"] == "pending"
        assert cache_backend.keys() == []

        fetch = CountingFetch(value={"id": 7, "status": "preparing"})
        fresh = await cache.get_or_fetch(order_item_key(7), fetch)
        assert fresh.value["status"] == "preparing"

    async def test_reader_after_invalidation_does_not_join_old_fetch(self, cache):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_fetch():
            started.set()
            await release.wait()
            return {"id": 7, "status": "pending"}

        before = asyncio.create_task(cache.get_or_fetch(order_item_key(7), slow_fetch))
        await started.wait()
        await cache.invalidate_order(7)

        fetch = CountingFetch(value={"id": 7, "status": "preparing"})
        after = await cache.get_or_fetch(order_item_key(7), fetch)
        release.set()
        old = await before

        assert fetch.calls == 1
        assert after.value["status"] == "preparing"
        assert old.value["status"] == "pending"
        assert after.etag != old.etag

        cached = await cache.get_or_fetch(order_item_key(7), CountingFetch())
        assert cached.from_cache is True
        assert cached.value["status"] == "preparing"


class TestCancellation:
    """One caller going away does not take the shared fetch with it."""

    async def test_cancelled_owner_does_not_cancel_joiners(self, cache, cache_backend):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_fetch():
            started.set()
            await release.wait()
            return {"id": 7, "status": "pending"}

        owner = asyncio.create_task(cache.get_or_fetch(order_item_key(7), slow_fetch))
        await started.wait()
        joiner = asyncio.create_task(cache.get_or_fetch(order_item_key(7), CountingFetch()))
        await asyncio.sleep(0)

        owner.cancel()
        await asyncio.sleep(0)
        release.set()
        result = await joiner

        assert owner.cancelled()
        assert result.value["status"] == "pending"
        assert cache_backend.keys() == [order_item_key(7)]

    async def test_cancelled_sole_caller_still_fills_cache(self, cache, cache_backend):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_fetch():
            started.set()
            await release.wait()
            return {"id": 7}

        reader = asyncio.create_task(cache.get_or_fetch(order_item_key(7), slow_fetch))
        await started.wait()
        reader.cancel()
        release.set()
        with pytest.raises(asyncio.CancelledError):
            await reader

        for _ in range(5):
            await asyncio.sleep(0)
        assert cache_backend.keys() == [order_item_key(7)]


class TestETags:
    """Content hashes and conditional reads."""

    def test_etag_is_stable_and_quoted(self):
        a = compute_etag({"b": 1, "a": [1, 2]})
        b = compute_etag({"a": [1, 2], "b": 1})

        assert a == b
        assert a.startswith('"') and a.endswith('"')
        assert len(a) == 18

    def test_etag_changes_with_content(self):
        assert compute_etag({"status": "pending"}) != compute_etag({"status": "preparing"})

    @pytest.mark.parametrize("raw,expected", [
        ('"abc"', "abc"),
        ('W/"abc"', "abc"),
        ("abc", "abc"),
        ('""', None),
        (None, None),
    ])
    def test_normalize_etag(self, raw, expected):
        assert normalize_etag(raw) == expected

    async def test_matching_etag_returns_not_modified(self, cache):
        first = await cache.get_conditional(order_item_key(7), CountingFetch())
        second = await cache.get_conditional(order_item_key(7), CountingFetch(), if_none_match=first.etag)

        assert isinstance(first, CachedValue)
        assert isinstance(second, NotModified)
        assert second.etag == first.etag

    async def test_weak_and_wildcard_match(self, cache):
        first = await cache.get_conditional(order_item_key(7), CountingFetch())

        weak = await cache.get_conditional(order_item_key(7), CountingFetch(), if_none_match=f"W/{first.etag}")
        star = await cache.get_conditional(order_item_key(7), CountingFetch(), if_none_match="*")

        assert isinstance(weak, NotModified)
        assert isinstance(star, NotModified)

    async def test_stale_etag_gets_payload(self, cache):
        result = await cache.get_conditional(order_item_key(7), CountingFetch(), if_none_match='"stale"')
        assert isinstance(result, CachedValue)
