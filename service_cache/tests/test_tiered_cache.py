"""
Unit tests for the tiered cache manager.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from shared.errors import FetchTimeoutError
from service_cache.app.local import LocalTierStore
from service_cache.app.manager import TieredCacheManager, WarmUpEntry
from service_cache.app.strategies import build_strategy


class TestReadWrite:
    """Test cases for get/set/delete across both tiers."""

    @pytest.mark.asyncio
    async def test_write_then_read(self, manager, shared_tier):
        """Test a set is immediately readable and lands in both tiers."""
        assert await manager.set("products", "p1", {"price": 10}) is True

        assert await manager.get("products", "p1") == {"price": 10}
        assert manager.local.get("products:p1") == {"price": 10}
        assert "cache:products:p1" in shared_tier.data

    @pytest.mark.asyncio
    async def test_local_hit_skips_shared_tier(self, manager, shared_tier):
        """Test local hits never touch the shared tier."""
        await manager.set("products", "p1", {"price": 10})

        await manager.get("products", "p1")

        assert shared_tier.calls["get_with_ttl"] == 0
        assert manager.stats()["namespaces"]["products"]["tiers"]["local"]["hits"] == 1

    @pytest.mark.asyncio
    async def test_idempotent_reads(self, manager):
        """Test repeated reads return identical values."""
        await manager.set("products", "p1", {"price": 10, "tags": ["a", "b"]})

        first = await manager.get("products", "p1")
        second = await manager.get("products", "p1")

        assert first == second == {"price": 10, "tags": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_shared_hit_promotes_with_namespace_ttl(self, manager, shared_tier, codec, clock, registry):
        """Test a shared hit is copied into the local tier with the base TTL."""
        registry.register("products", build_strategy(base_ttl=600))
        await shared_tier.set("products", "p1", codec.encode({"price": 12}), 30)

        assert await manager.get("products", "p1") == {"price": 12}

        entry = manager.local.get_entry("products:p1")
        assert entry is not None
        assert entry.expires_at == clock.now + 600
        assert manager.stats()["namespaces"]["products"]["tiers"]["shared"]["hits"] == 1

    @pytest.mark.asyncio
    async def test_pure_miss_returns_none(self, manager):
        """Test a miss without a fetch function returns None."""
        assert await manager.get("products", "missing") is None
        assert manager.stats()["namespaces"]["products"]["misses"] == 1

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, manager, registry, clock):
        """Test a value is present just before and gone just after its TTL."""
        registry.register("sessions", build_strategy(base_ttl=30))
        await manager.set("sessions", "s1", "token")

        clock.advance(29.9)
        assert await manager.get("sessions", "s1") == "token"

        clock.advance(0.2)
        assert await manager.get("sessions", "s1") is None

        fetch = AsyncMock(return_value="fresh")
        assert await manager.get("sessions", "s1", fetch) == "fresh"
        fetch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_explicit_ttl_override(self, manager, clock):
        """Test set accepts a per-call TTL."""
        await manager.set("products", "p1", 1, ttl=5)

        clock.advance(6)

        assert await manager.get("products", "p1") is None

    @pytest.mark.asyncio
    async def test_delete_removes_both_tiers(self, manager, shared_tier):
        """Test delete clears local and shared copies."""
        await manager.set("products", "p1", 1)

        assert await manager.delete("products", "p1") is True

        assert manager.local.get("products:p1") is None
        assert "cache:products:p1" not in shared_tier.data
        assert await manager.delete("products", "p1") is False

    @pytest.mark.asyncio
    async def test_unserializable_value_not_cached(self, manager, shared_tier):
        """Test values that cannot be encoded are skipped in both tiers."""
        assert await manager.set("products", "p1", {"when": object()}) is False

        assert manager.local.get("products:p1") is None
        assert shared_tier.calls["set"] == 0

    @pytest.mark.asyncio
    async def test_undecodable_shared_entry_is_a_miss(self, manager, shared_tier, clock):
        """Test a corrupt shared payload falls through to the fetch function."""
        shared_tier.data["cache:products:p1"] = (b"{corrupt", clock.now + 60)
        fetch = AsyncMock(return_value={"price": 1})

        assert await manager.get("products", "p1", fetch) == {"price": 1}
        fetch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_compressed_namespace_round_trips_through_shared_tier(self, manager, registry, shared_tier):
        """Test compressed payloads decode on promotion."""
        registry.register("search", build_strategy(base_ttl=300, compress=True))
        results = {"hits": ["result"] * 500}
        await manager.set("search", "q=shoes", results)
        manager.local.clear()

        assert await manager.get("search", "q=shoes") == results
        assert shared_tier.data["cache:search:q=shoes"][0].startswith(manager.codec.MAGIC_COMPRESSED)


class TestFetchOnMiss:
    """Test cases for the fetch-function path."""

    @pytest.mark.asyncio
    async def test_fetch_result_is_cached(self, manager, shared_tier):
        """Test a fetched value is written through and served next time."""
        fetch = AsyncMock(return_value={"name": "Shoe"})

        assert await manager.get("products", "p1", fetch) == {"name": "Shoe"}
        assert await manager.get("products", "p1", fetch) == {"name": "Shoe"}

        fetch.assert_awaited_once()
        assert "cache:products:p1" in shared_tier.data

    @pytest.mark.asyncio
    async def test_fetch_error_propagates_and_is_not_cached(self, manager):
        """Test fetch failures reach the caller and are retried next time."""
        fetch = AsyncMock(side_effect=ValueError("backend down"))

        with pytest.raises(ValueError, match="backend down"):
            await manager.get("products", "p1", fetch)

        fetch.side_effect = None
        fetch.return_value = {"name": "Shoe"}
        assert await manager.get("products", "p1", fetch) == {"name": "Shoe"}
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_none_result_not_cached(self, manager):
        """Test a None fetch result is returned but not stored."""
        fetch = AsyncMock(return_value=None)

        assert await manager.get("products", "p1", fetch) is None
        assert await manager.get("products", "p1", fetch) is None

        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_fetch_timeout(self, manager):
        """Test a slow fetch fails with FetchTimeoutError."""
        async def slow_fetch():
            await asyncio.sleep(1)
            return "late"

        with pytest.raises(FetchTimeoutError) as exc_info:
            await manager.get("products", "p1", slow_fetch, timeout=0.01)

        assert exc_info.value.details["key"] == "products:p1"
        assert manager.local.get("products:p1") is None

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_fetch(self, manager):
        """Test concurrent misses for one key run the fetch once."""
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return {"price": 10}

        results = await asyncio.gather(*(manager.get("products", "p1", fetch) for _ in range(20)))

        assert calls == 1
        assert all(result == {"price": 10} for result in results)

    @pytest.mark.asyncio
    async def test_get_or_set(self, manager):
        """Test get_or_set computes once and caches."""
        fetch = AsyncMock(return_value=[1, 2, 3])

        assert await manager.get_or_set("categories", "root", fetch) == [1, 2, 3]
        assert await manager.get_or_set("categories", "root", fetch) == [1, 2, 3]
        fetch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fetch_duration_observed(self, manager, metrics):
        """Test fetch durations are recorded per namespace."""
        await manager.get("products", "p1", AsyncMock(return_value=1))

        assert metrics.sample("cache_fetch_duration_seconds_count", namespace="products") == 1.0


class TestSharedTierFailure:
    """Test cases for a failing shared tier."""

    @pytest.mark.asyncio
    async def test_local_write_survives_shared_failure(self, manager, shared_tier):
        """Test a failing shared write still caches locally."""
        shared_tier.fail = True

        assert await manager.set("products", "p1", {"price": 10}) is True
        assert await manager.get("products", "p1") == {"price": 10}

    @pytest.mark.asyncio
    async def test_reads_fall_through_to_fetch(self, manager, shared_tier):
        """Test an unreachable shared tier downgrades to pass-through."""
        shared_tier.fail = True
        fetch = AsyncMock(return_value="value")

        assert await manager.get("products", "p1", fetch) == "value"
        fetch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_health_reports_shared_errors(self, manager, shared_tier):
        """Test shared tier errors make the cache critical."""
        shared_tier.fail = True
        await manager.get("products", "p1")

        health = manager.health()

        assert health["status"] == "critical"
        assert health["shared_errors"] >= 1

    @pytest.mark.asyncio
    async def test_health_recovers_with_the_shared_tier(self, manager, shared_tier):
        """Test one transient shared error stops counting once the tier answers again."""
        shared_tier.fail = True
        await manager.get("products", "p0")
        assert manager.health()["status"] == "critical"

        shared_tier.fail = False
        for index in range(10):
            await manager.set("products", f"p{index}", index)
            await manager.get("products", f"p{index}")

        health = manager.health()
        assert health["status"] == "healthy"
        assert health["shared_errors"] == 0
        assert manager.stats()["shared"]["errors"] == 1

    @pytest.mark.asyncio
    async def test_reset_stats_forgets_shared_errors(self, manager, shared_tier):
        """Test a full stats reset also clears the shared error history."""
        shared_tier.fail = True
        await manager.get("products", "p1")

        manager.reset_stats()

        assert shared_tier.error_count == 0
        assert manager.health()["status"] == "healthy"
        assert manager.stats()["totals"]["lookups"] == 0

    @pytest.mark.asyncio
    async def test_injected_empty_store_is_used(self, shared_tier, clock):
        """Test an empty local store passed in is the one the manager writes to."""
        store = LocalTierStore(max_entries=2, clock=clock)
        manager = TieredCacheManager(shared_tier, local_store=store)

        await manager.set("products", "p1", 1)

        assert manager.local is store
        assert store.get("products:p1") == 1
        assert manager.local.max_entries == 2

    @pytest.mark.asyncio
    async def test_local_only_manager(self, clock):
        """Test the manager works with no shared tier at all."""
        manager = TieredCacheManager(None, local_store=LocalTierStore(clock=clock))

        await manager.set("products", "p1", 1)
        assert await manager.get("products", "p1") == 1
        assert await manager.get("products", "p2") is None

        tiers = manager.stats()["namespaces"]["products"]["tiers"]
        assert tiers["local"]["misses"] == 1
        assert manager.stats()["shared"] is None


class TestInvalidation:
    """Test cases for tag and pattern invalidation."""

    @pytest.mark.asyncio
    async def test_invalidate_by_tag(self, manager, shared_tier):
        """Test every tagged entry disappears from both tiers."""
        await manager.set("products", "p1", 1, tags=["brand:acme"])
        await manager.set("products", "p2", 2, tags=["brand:acme", "sale"])
        await manager.set("products", "p3", 3, tags=["brand:other"])

        removed = await manager.invalidate_by_tag("brand:acme")

        assert removed == 4
        assert await manager.get("products", "p1") is None
        assert await manager.get("products", "p2") is None
        assert await manager.get("products", "p3") == 3
        assert "brand:acme" not in shared_tier.tags

    @pytest.mark.asyncio
    async def test_invalidate_by_tag_covers_promoted_entries(self, manager):
        """Test entries promoted without tags are still invalidated."""
        await manager.set("products", "p1", 1, tags=["sale"])
        manager.local.clear()
        assert await manager.get("products", "p1") == 1

        await manager.invalidate_by_tag("sale")

        assert manager.local.get("products:p1") is None
        assert await manager.get("products", "p1") is None

    @pytest.mark.asyncio
    async def test_invalidate_pattern(self, manager, shared_tier):
        """Test glob invalidation in one namespace only."""
        await manager.set("catalog", "item-1", 1)
        await manager.set("catalog", "item-2", 2)
        await manager.set("catalog", "other-1", 3)
        await manager.set("carts", "item-1", 4)

        removed = await manager.invalidate_pattern("catalog", "item-*")

        assert removed == 4
        assert await manager.get("catalog", "item-1") is None
        assert await manager.get("catalog", "item-2") is None
        assert await manager.get("catalog", "other-1") == 3
        assert await manager.get("carts", "item-1") == 4


class TestRefreshAhead:
    """Test cases for refresh-ahead."""

    @pytest.mark.asyncio
    async def test_catalog_scenario(self, manager, registry, shared_tier, clock, metrics):
        """Test a hit 245s into a 300s TTL serves the value and refreshes once."""
        registry.register("catalog", build_strategy(base_ttl=300, refresh_threshold=60))
        refresher = AsyncMock(return_value={"price": 11})
        manager.register_refresher("catalog", "item-*", refresher)

        await manager.set("catalog", "item-1", {"price": 10})
        assert await manager.get("catalog", "item-1") == {"price": 10}
        assert shared_tier.calls["get_with_ttl"] == 0
        refresher.assert_not_awaited()

        clock.advance(245)
        assert await manager.get("catalog", "item-1") == {"price": 10}
        assert await manager.get("catalog", "item-1") == {"price": 10}
        await manager.wait_for_background()

        refresher.assert_awaited_once_with("item-1")
        assert await manager.get("catalog", "item-1") == {"price": 11}
        assert metrics.sample("cache_refreshes_total", namespace="catalog", result="success") == 1.0

    @pytest.mark.asyncio
    async def test_no_refresh_above_threshold(self, manager, registry, clock):
        """Test hits with plenty of TTL left do not refresh."""
        registry.register("catalog", build_strategy(base_ttl=300, refresh_threshold=60))
        refresher = AsyncMock(return_value=1)
        manager.register_refresher("catalog", "*", refresher)
        await manager.set("catalog", "item-1", 0)

        clock.advance(200)
        await manager.get("catalog", "item-1")
        await manager.wait_for_background()

        refresher.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_shared_hit_refresh_uses_caller_fetch(self, manager, registry, shared_tier, codec):
        """Test a near-expiry shared hit re-runs the caller's fetch in the background."""
        registry.register("catalog", build_strategy(base_ttl=300, refresh_threshold=60))
        await shared_tier.set("catalog", "item-1", codec.encode({"price": 10}), 30)
        fetch = AsyncMock(return_value={"price": 12})

        assert await manager.get("catalog", "item-1", fetch) == {"price": 10}
        await manager.wait_for_background()

        fetch.assert_awaited_once()
        assert await manager.get("catalog", "item-1") == {"price": 12}

    @pytest.mark.asyncio
    async def test_refresh_failure_is_not_raised(self, manager, registry, clock, metrics):
        """Test refresh errors are logged and the entry keeps serving."""
        registry.register("catalog", build_strategy(base_ttl=300, refresh_threshold=60))
        manager.register_refresher("catalog", "*", AsyncMock(side_effect=RuntimeError("boom")))
        await manager.set("catalog", "item-1", "cached")

        clock.advance(250)
        assert await manager.get("catalog", "item-1") == "cached"
        await manager.wait_for_background()

        assert await manager.get("catalog", "item-1") == "cached"
        await manager.wait_for_background()
        assert metrics.sample("cache_refreshes_total", namespace="catalog", result="error") == 2.0

    @pytest.mark.asyncio
    async def test_without_refresher_entry_expires(self, manager, registry, clock):
        """Test no refresh happens without a fetcher; the entry simply expires."""
        registry.register("catalog", build_strategy(base_ttl=300, refresh_threshold=60))
        await manager.set("catalog", "item-1", "cached")

        clock.advance(250)
        assert await manager.get("catalog", "item-1") == "cached"
        assert manager.stats()["refreshing"] == 0

        clock.advance(60)
        assert await manager.get("catalog", "item-1") is None


class TestBulkAndWarmUp:
    """Test cases for multi-key operations and warm-up."""

    @pytest.mark.asyncio
    async def test_set_many_get_many(self, manager, shared_tier):
        """Test multi-key writes and reads, promoting shared hits."""
        stored = await manager.set_many("products", {"a": 1, "b": 2, "c": 3})
        manager.local.clear()
        await manager.set("products", "a", 10)

        found = await manager.get_many("products", ["a", "b", "c", "d"])

        assert stored == 3
        assert found == {"a": 10, "b": 2, "c": 3}
        assert shared_tier.calls["mget"] == 1
        assert shared_tier.calls["mset"] == 1
        assert manager.local.get("products:b") == 2

    @pytest.mark.asyncio
    async def test_warm_up_isolates_failures(self, manager):
        """Test one failing warm-up entry does not stop its siblings."""
        entries = [
            WarmUpEntry("products", "p1", AsyncMock(return_value={"id": "p1"})),
            WarmUpEntry("products", "p2", AsyncMock(side_effect=RuntimeError("boom"))),
            WarmUpEntry("categories", "c1", AsyncMock(return_value=["p1"]), tags=["nav"]),
        ]

        summary = await manager.warm_up(entries)

        assert summary["planned"] == 3
        assert summary["warmed"] == 2
        assert len(summary["errors"]) == 1
        assert "products:p2" in summary["errors"][0]
        assert manager.local.get("products:p1") == {"id": "p1"}
        assert manager.local.get("categories:c1") == ["p1"]

    @pytest.mark.asyncio
    async def test_warm_up_empty(self, manager):
        """Test an empty plan is a no-op."""
        assert await manager.warm_up([]) == {"planned": 0, "warmed": 0, "errors": []}


class TestLifecycle:
    """Test cases for background work."""

    @pytest.mark.asyncio
    async def test_sweep_loop_removes_expired_entries(self, shared_tier, local_store, clock):
        """Test the periodic sweep drops expired local entries."""
        manager = TieredCacheManager(
            shared_tier,
            local_store=local_store,
            sweep_interval=0.01,
            stats_report_interval=0,
        )
        await manager.set("products", "p1", 1, ttl=10)
        clock.advance(11)
        assert len(local_store) == 1

        await manager.start()
        try:
            await asyncio.sleep(0.05)
        finally:
            await manager.stop()

        assert len(local_store) == 0

    @pytest.mark.asyncio
    async def test_stop_cancels_loops(self, manager):
        """Test stop leaves no background loops running."""
        await manager.start()
        loops = list(manager._loops)

        await manager.stop()

        assert loops
        assert all(task.done() for task in loops)


class TestInvalidationRaces:
    """Test cases for invalidation while fetches are running."""

    @pytest.mark.asyncio
    async def test_delete_during_fetch_skips_write_back(self, manager):
        """Test a fetch started before a delete is neither shared nor written back."""
        started = asyncio.Event()
        release = asyncio.Event()

        async def fetch():
            started.set()
            await release.wait()
            return {"price": 10}

        pending = asyncio.ensure_future(manager.get("products", "p1", fetch))
        await started.wait()
        await manager.delete("products", "p1")

        fresh = await manager.get("products", "p1", AsyncMock(return_value={"price": 11}))
        release.set()

        assert fresh == {"price": 11}
        assert await pending == {"price": 10}
        assert await manager.get("products", "p1") == {"price": 11}

    @pytest.mark.asyncio
    async def test_tag_invalidation_during_refresh_skips_write_back(self, manager, registry, clock):
        """Test a refresh racing a tag invalidation leaves the key absent."""
        registry.register("catalog", build_strategy(base_ttl=300, refresh_threshold=60))
        started = asyncio.Event()
        release = asyncio.Event()

        async def refresher(key):
            started.set()
            await release.wait()
            return "fresh"

        manager.register_refresher("catalog", "*", refresher)
        await manager.set("catalog", "item-1", "cached", tags=["sale"])
        clock.advance(250)
        assert await manager.get("catalog", "item-1") == "cached"

        await started.wait()
        await manager.invalidate_by_tag("sale")
        release.set()
        await manager.wait_for_background()

        assert await manager.get("catalog", "item-1") is None

    @pytest.mark.asyncio
    async def test_generation_tracks_invalidations(self, manager):
        """Test generations move per namespace, and globally for tags."""
        products = manager.generation("products")
        carts = manager.generation("carts")

        await manager.invalidate_pattern("products", "p*")
        assert manager.generation("products") != products
        assert manager.generation("carts") == carts

        await manager.invalidate_by_tag("sale")
        assert manager.generation("carts") != carts

    @pytest.mark.asyncio
    async def test_stale_bulk_write_is_skipped(self, manager):
        """Test set_many refuses values fetched before an invalidation."""
        generation = manager.generation("products")
        await manager.delete("products", "a")

        assert await manager.set_many("products", {"a": 1}, generation=generation) == 0
        assert await manager.get("products", "a") is None

    @pytest.mark.asyncio
    async def test_listeners_are_notified(self, manager):
        """Test listeners receive namespace, key and pattern."""
        events = []
        manager.add_invalidation_listener(lambda *event: events.append(event))

        await manager.delete("products", "p1")
        await manager.invalidate_pattern("products", "p*")
        await manager.invalidate_by_tag("sale")

        assert events == [("products", "p1", None), ("products", None, "p*"), (None, None, None)]
