"""
Unit tests for the edge TTL cache.
"""

import asyncio

import pytest

from service_edge.app.caching.ttl_cache import (
    CACHE_TTL,
    TTLCache,
    WarmEntry,
    estimate_size,
    make_cache_key,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []

    def increment_counter(self, metric_name: str, **labels):
        self.counters.append((metric_name, labels))


class TestCacheKeys:
    """Test cases for cache key helpers."""

    def test_params_are_sorted_by_name(self):
        key = make_cache_key("coins", {"per_page": 20, "page": 1})
        assert key == "coins:page:1-per_page:20"

    def test_key_is_order_independent(self):
        first = make_cache_key("price-history", {"id": "bitcoin", "days": 7})
        second = make_cache_key("price-history", {"days": 7, "id": "bitcoin"})
        assert first == second == "price-history:days:7-id:bitcoin"

    def test_resource_ttls(self):
        assert CACHE_TTL == {
            "coins": 120,
            "coin-detail": 300,
            "price-history": 900,
            "search": 600,
        }

    def test_estimate_size_uses_json_length(self):
        assert estimate_size({"a": 1}) == len('{"a": 1}')

    def test_estimate_size_unserializable(self):
        assert estimate_size(object()) == 1000


class TestTTLCache:
    """Test cases for TTLCache."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, clock):
        """Create TTLCache instance with a controllable clock."""
        return TTLCache(default_ttl_seconds=60, clock=clock)

    def test_set_then_get(self, cache):
        cache.set("coins:page:1", [{"id": "bitcoin"}])

        assert cache.get("coins:page:1") == [{"id": "bitcoin"}]
        assert cache.get_stats()["hits"] == 1

    def test_get_missing_key_counts_miss(self, cache):
        assert cache.get("missing") is None

        stats = cache.get_stats()
        assert stats["misses"] == 1
        assert stats["hits"] == 0

    def test_entry_expires_after_ttl(self, cache, clock):
        cache.set("k", "v", ttl_seconds=10)

        clock.advance(9)
        assert cache.get("k") == "v"

        clock.advance(1)
        assert cache.get("k") is None
        assert cache.has("k") is False
        assert cache.get_stats()["item_count"] == 0

    def test_zero_ttl_is_immediately_expired(self, cache):
        cache.set("k", "v", ttl_seconds=0)

        assert cache.has("k") is False
        assert cache.get("k") is None

    def test_get_stale_returns_expired_value(self, cache, clock):
        cache.set("k", "old", ttl_seconds=5)
        clock.advance(10)

        assert cache.get("k") is None
        assert cache.get_stale("k") == "old"

    def test_get_stale_without_prior_get(self, cache, clock):
        cache.set("k", "old", ttl_seconds=5)
        clock.advance(10)

        assert cache.get_stale("k") == "old"

    def test_get_stale_unknown_key(self, cache):
        assert cache.get_stale("never-set") is None

    def test_has_does_not_touch_stats(self, cache):
        cache.set("k", "v")

        assert cache.has("k") is True
        assert cache.has("other") is False
        stats = cache.get_stats()
        assert stats["hits"] == 0
        assert stats["misses"] == 0

    def test_set_replaces_value_and_ttl(self, cache, clock):
        cache.set("k", "first", ttl_seconds=5)
        cache.set("k", "second", ttl_seconds=100)
        clock.advance(50)

        assert cache.get("k") == "second"
        assert cache.get_stats()["item_count"] == 1

    def test_delete(self, cache):
        cache.set("k", "v")

        assert cache.delete("k") is True
        assert cache.get("k") is None
        assert cache.get_stale("k") is None
        assert cache.delete("k") is False

    def test_hit_rate_percentage(self, cache):
        cache.set("k", "v")
        for _ in range(3):
            cache.get("k")
        cache.get("missing")

        stats = cache.get_stats()
        assert stats["hits"] == 3
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.75
        assert stats["hit_rate_percentage"] == "75.00%"

    def test_hit_rate_with_no_lookups(self, cache):
        stats = cache.get_stats()
        assert stats["hit_rate"] == 0
        assert stats["hit_rate_percentage"] == "0.00%"

    def test_size_tracks_entries(self, cache):
        cache.set("a", "xx")
        cache.set("b", [1, 2, 3])

        assert cache.get_stats()["size"] == len('"xx"') + len("[1, 2, 3]")

        cache.delete("a")
        assert cache.get_stats()["size"] == len("[1, 2, 3]")

    def test_clear_is_idempotent(self, cache):
        cache.set("a", 1)
        cache.get("a")
        cache.get("b")

        cache.clear()
        cache.clear()

        assert cache.get_stats() == {
            "hits": 0,
            "misses": 0,
            "size": 0,
            "item_count": 0,
            "hit_rate": 0,
            "hit_rate_percentage": "0.00%",
        }
        assert cache.get_stale("a") is None

    def test_get_cache_items_sorted_by_key(self, cache, clock):
        cache.set("search:query:eth", {"coins": []}, ttl_seconds=600)
        cache.set("coins:page:1", [], ttl_seconds=120)
        cache.set("coin-detail:id:btc", {"id": "btc"}, ttl_seconds=5)
        clock.advance(10)

        items = cache.get_cache_items()

        assert [item["key"] for item in items] == [
            "coin-detail:id:btc",
            "coins:page:1",
            "search:query:eth",
        ]
        assert items[0]["remaining_ttl"] == "Expired"
        assert items[1]["remaining_ttl"] == "110s"
        assert items[2]["remaining_ttl"] == "590s"
        assert items[1]["size"] == 2

    def test_get_cache_items_rounds_half_up(self, cache, clock):
        cache.set("k", "v", ttl_seconds=2.5)

        assert cache.get_cache_items()[0]["remaining_ttl"] == "3s"

    def test_get_cache_items_does_not_evict(self, cache, clock):
        cache.set("k", "v", ttl_seconds=1)
        clock.advance(5)

        cache.get_cache_items()
        assert cache.get_stats()["item_count"] == 1

    def test_lru_eviction_by_entry_count(self, clock):
        cache = TTLCache(max_entries=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.has("a") is True
        assert cache.has("b") is False
        assert cache.has("c") is True
        # evicted entries remain available for stale reads
        assert cache.get_stale("b") == 2

    def test_eviction_by_size(self, clock):
        cache = TTLCache(max_size_bytes=20, clock=clock)
        cache.set("a", "x" * 9)
        cache.set("b", "y" * 9)

        assert cache.has("a") is False
        assert cache.has("b") is True
        assert cache.get_stats()["size"] <= 20

    def test_single_oversized_entry_is_kept(self, clock):
        cache = TTLCache(max_size_bytes=4, clock=clock)
        cache.set("big", "x" * 100)

        assert cache.get("big") == "x" * 100

    def test_purge_expired(self, cache, clock):
        cache.set("short", 1, ttl_seconds=1)
        cache.set("long", 2, ttl_seconds=100)
        clock.advance(2)

        assert cache.purge_expired() == 1
        assert cache.get_stats()["item_count"] == 1
        assert cache.get_stale("short") == 1

    def test_purge_drops_stale_past_retention(self, clock):
        cache = TTLCache(stale_retention_seconds=30, clock=clock)
        cache.set("k", 1, ttl_seconds=1)
        clock.advance(2)
        cache.purge_expired()

        clock.advance(60)
        cache.purge_expired()

        assert cache.get_stale("k") is None

    def test_metrics_recorded_by_key_type(self, clock):
        metrics = DummyMetrics()
        cache = TTLCache(clock=clock, metrics=metrics)
        cache.set("coins:page:1", [])
        cache.get("coins:page:1")
        cache.get("search:query:x")

        assert ("cache_hits_total", {"cache_type": "coins"}) in metrics.counters
        assert ("cache_misses_total", {"cache_type": "search"}) in metrics.counters


class TestDedupeRequest:
    """Test cases for single-flight fetching."""

    @pytest.fixture
    def cache(self):
        return TTLCache(default_ttl_seconds=60)

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self, cache):
        calls = 0
        release = asyncio.Event()

        async def fetcher():
            nonlocal calls
            calls += 1
            await release.wait()
            return {"price": 42}

        tasks = [asyncio.ensure_future(cache.dedupe_request("coin-detail:id:btc", fetcher)) for _ in range(5)]
        await asyncio.sleep(0)
        assert cache.pending_count() == 1

        release.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert results == [{"price": 42}] * 5
        assert cache.pending_count() == 0
        assert cache.has("coin-detail:id:btc") is True

    @pytest.mark.asyncio
    async def test_cached_value_skips_fetcher(self, cache):
        cache.set("k", "cached")

        async def fetcher():
            raise AssertionError("fetcher should not run")

        assert await cache.dedupe_request("k", fetcher) == "cached"

    @pytest.mark.asyncio
    async def test_cached_none_value_skips_fetcher(self, cache):
        cache.set("k", None, ttl_seconds=60)
        calls = 0

        async def fetcher():
            nonlocal calls
            calls += 1
            return "fresh"

        assert await cache.dedupe_request("k", fetcher) is None
        assert calls == 0
        assert cache.get_stats()["hits"] == 1
        assert cache.get_stats()["misses"] == 0
        assert cache.pending_count() == 0

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter_and_is_not_cached(self, cache):
        calls = 0

        async def fetcher():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            raise ValueError("upstream down")

        results = await asyncio.gather(
            cache.dedupe_request("k", fetcher),
            cache.dedupe_request("k", fetcher),
            return_exceptions=True,
        )

        assert calls == 1
        assert all(isinstance(result, ValueError) for result in results)
        assert cache.has("k") is False
        assert cache.pending_count() == 0

    @pytest.mark.asyncio
    async def test_new_fetch_after_failure(self, cache):
        async def failing():
            raise ValueError("boom")

        async def working():
            return "ok"

        with pytest.raises(ValueError):
            await cache.dedupe_request("k", failing)

        assert await cache.dedupe_request("k", working) == "ok"

    @pytest.mark.asyncio
    async def test_custom_ttl_applied(self):
        clock = FakeClock()
        cache = TTLCache(default_ttl_seconds=60, clock=clock)

        await cache.dedupe_request("k", lambda: "sync-value", ttl_seconds=5)
        clock.advance(6)

        assert cache.has("k") is False
        assert cache.get_stale("k") == "sync-value"

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_fetch(self, cache):
        release = asyncio.Event()

        async def fetcher():
            await release.wait()
            return "value"

        first = asyncio.ensure_future(cache.dedupe_request("k", fetcher))
        second = asyncio.ensure_future(cache.dedupe_request("k", fetcher))
        await asyncio.sleep(0)

        first.cancel()
        release.set()

        assert await second == "value"
        with pytest.raises(asyncio.CancelledError):
            await first
        assert cache.get("k") == "value"


class TestWarmCache:
    """Test cases for cache warming."""

    @pytest.mark.asyncio
    async def test_warm_skips_present_and_isolates_failures(self):
        cache = TTLCache()
        cache.set("present", "already")

        async def ok():
            return "fresh"

        async def broken():
            raise RuntimeError("upstream unavailable")

        summary = await cache.warm_cache([
            WarmEntry(key="present", fetcher=ok),
            WarmEntry(key="new", fetcher=ok, ttl_seconds=30),
            WarmEntry(key="bad", fetcher=broken),
        ])

        assert summary["planned"] == 3
        assert summary["warmed"] == 1
        assert summary["skipped"] == 1
        assert summary["errors"] == [{"key": "bad", "error": "upstream unavailable"}]
        assert cache.get("present") == "already"
        assert cache.get("new") == "fresh"
        assert cache.has("bad") is False

    @pytest.mark.asyncio
    async def test_cancelled_fetcher_reported_as_error(self):
        cache = TTLCache()

        async def ok():
            return "fresh"

        async def cancelled():
            raise asyncio.CancelledError()

        summary = await cache.warm_cache([
            WarmEntry(key="new", fetcher=ok),
            WarmEntry(key="gone", fetcher=cancelled),
        ])

        assert summary["warmed"] == 1
        assert summary["skipped"] == 0
        assert [error["key"] for error in summary["errors"]] == ["gone"]
        assert cache.has("gone") is False


class TestSweeper:
    """Test cases for the background sweeper."""

    @pytest.mark.asyncio
    async def test_sweeper_purges_in_background(self):
        cache = TTLCache()
        cache.set("k", "v", ttl_seconds=0.01)

        cache.start_sweeper(0.02)
        await asyncio.sleep(0.1)
        await cache.stop_sweeper()

        assert cache.get_stats()["item_count"] == 0
        assert cache.get_stale("k") == "v"

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        cache = TTLCache()
        await cache.stop_sweeper()
