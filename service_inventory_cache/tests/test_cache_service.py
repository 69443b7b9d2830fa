"""
Unit tests for CacheService.
"""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_inventory_cache.app.caching import CacheService, ReadStatus, StorageMode
from service_inventory_cache.app.caching.keys import KeyKind
from service_inventory_cache.app.storage import FileFallbackStore, InMemoryStore
from shared.errors import ValidationError
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock, InventoryFactory, create_test_settings


def _owner_keys(service: CacheService, store: InMemoryStore, owner: str):
    parsed = [service.schema.parse(key) for key in store.data]
    return sorted(p.key for p in parsed if p is not None and p.owner_key == owner)


def _chunk_keys(service: CacheService, store: InMemoryStore, owner: str):
    parsed = [service.schema.parse(key) for key in store.data]
    return [p for p in parsed if p is not None and p.owner_key == owner and p.kind == KeyKind.CHUNK]


class TestCacheService:
    """Test cases for CacheService."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self):
        return InMemoryStore()

    @pytest.fixture
    def service(self, store, clock):
        return CacheService(create_test_settings(), store, clock=clock)

    @pytest.mark.asyncio
    async def test_direct_mode_round_trip(self, service, store):
        """Test a small inventory is stored under one key and read back."""
        items = InventoryFactory.create_items(40)

        report = await service.cache("user-1", items)
        result = await service.get_cached("user-1")

        assert report.mode == StorageMode.DIRECT
        assert report.published is True
        assert _owner_keys(service, store, "user-1") == ["inv_cache_user-1"]
        assert result.status == ReadStatus.COMPLETE
        assert result.storage_mode == StorageMode.DIRECT
        assert result.items == items

    @pytest.mark.asyncio
    async def test_empty_inventory_round_trip(self, service):
        """Test caching zero items."""
        await service.cache("user-1", [])
        result = await service.get_cached("user-1")

        assert result.is_complete
        assert result.items == []

    @pytest.mark.asyncio
    async def test_chunked_mode_round_trip(self, service, store):
        """Test a large inventory is split into 25 chunks plus metadata."""
        items = InventoryFactory.create_items(2500)

        report = await service.cache("user-1", items)
        result = await service.get_cached("user-1")

        assert report.mode == StorageMode.CHUNKED
        assert report.total_chunks == 25
        assert report.chunks_written == 25
        assert len(_chunk_keys(service, store, "user-1")) == 25
        assert "inv_meta_user-1" in store.data
        assert len(_owner_keys(service, store, "user-1")) == 26
        assert result.status == ReadStatus.COMPLETE
        assert result.items == items
        assert result.item_count == 2500

    @pytest.mark.asyncio
    async def test_threshold_boundary_uses_chunked_mode(self, service):
        """Test exactly direct_mode_threshold items are chunked."""
        report = await service.cache("user-1", InventoryFactory.create_items(1000))
        assert report.mode == StorageMode.CHUNKED
        assert report.total_chunks == 10

    @pytest.mark.asyncio
    async def test_oversized_direct_value_is_chunked(self, clock):
        """Test a direct payload over the value ceiling falls back to chunking."""
        store = InMemoryStore(max_value_bytes=4096)
        service = CacheService(create_test_settings(chunk_size=10), store, clock=clock)
        items = InventoryFactory.create_items(100)

        report = await service.cache("user-1", items)

        assert report.mode == StorageMode.CHUNKED
        assert report.published is True
        assert (await service.get_cached("user-1")).items == items

    @pytest.mark.asyncio
    async def test_expiry(self, service, store, clock):
        """Test entries are valid before the TTL and purged after it."""
        items = InventoryFactory.create_items(2500)
        await service.cache("user-1", items)

        clock.advance(30 * 60 - 1)
        assert (await service.get_cached("user-1")).items == items

        clock.advance(2)
        assert await service.get_cached("user-1") is None
        assert _owner_keys(service, store, "user-1") == []

    @pytest.mark.asyncio
    async def test_expiry_scenario_thirty_one_minutes(self, service, store, clock):
        """Test a direct entry read 31 minutes later is gone."""
        await service.cache("user-1", InventoryFactory.create_items(40))
        clock.advance(31 * 60)

        assert await service.get_cached("user-1") is None
        assert _owner_keys(service, store, "user-1") == []

    @pytest.mark.asyncio
    async def test_eviction_keeps_most_recent_owners(self, store, clock):
        """Test the 21st owner evicts the oldest of 21."""
        service = CacheService(create_test_settings(max_entries=20), store, clock=clock)

        for index in range(21):
            clock.advance(1)
            await service.cache(f"owner-{index}", InventoryFactory.create_items(5))

        owners = {service.schema.parse(key).owner_key for key in store.data}
        assert len(owners) == 20
        assert "owner-0" not in owners
        assert "owner-20" in owners

    @pytest.mark.asyncio
    async def test_missing_chunk_yields_partial_result(self, service, store):
        """Test one unreadable chunk is reported, not silently dropped."""
        items = InventoryFactory.create_items(2500)
        report = await service.cache("user-1", items)
        store.failing_gets.add(service.schema.chunk_key("user-1", report.version, 7))

        result = await service.get_cached("user-1")

        assert result.status == ReadStatus.PARTIAL
        assert result.missing_chunks == [7]
        assert len(result.items) == 2400
        assert result.item_count == 2500
        assert result.items[:700] == items[:700]
        assert result.items[700:] == items[800:]
        assert await service.get_cached_items("user-1") is None

    @pytest.mark.asyncio
    async def test_raising_chunk_read_yields_partial_result(self, service, store):
        """Test an exception from one chunk read is isolated."""
        report = await service.cache("user-1", InventoryFactory.create_items(1500))
        store.raising_gets.add(service.schema.chunk_key("user-1", report.version, 0))

        result = await service.get_cached("user-1")

        assert result.status == ReadStatus.PARTIAL
        assert result.missing_chunks == [0]

    @pytest.mark.asyncio
    async def test_corrupt_chunk_is_removed_and_reported(self, service, store):
        """Test an undecodable chunk is discarded and flagged missing."""
        report = await service.cache("user-1", InventoryFactory.create_items(1500))
        key = service.schema.chunk_key("user-1", report.version, 3)
        store.data[key] = "not json"

        result = await service.get_cached("user-1")

        assert result.missing_chunks == [3]
        assert key not in store.data

    @pytest.mark.asyncio
    async def test_corrupt_direct_value_is_a_miss(self, service, store):
        """Test an undecodable direct value is removed."""
        store.data["inv_cache_user-1"] = "{broken"

        assert await service.get_cached("user-1") is None
        assert "inv_cache_user-1" not in store.data

    @pytest.mark.asyncio
    async def test_failed_chunk_write_does_not_publish(self, service, store):
        """Test metadata is only published when every chunk was written."""
        previous = InventoryFactory.create_items(1200, prefix="OLD")
        await service.cache("user-1", previous)
        store.failing_sets.add(service.schema.chunk_key("user-1", 2, 4))

        report = await service.cache("user-1", InventoryFactory.create_items(1500))

        assert report.published is False
        assert report.failed_chunks == [4]
        assert all(p.version == 1 for p in _chunk_keys(service, store, "user-1"))
        assert (await service.get_cached("user-1")).items == previous

    @pytest.mark.asyncio
    async def test_rewrite_collects_previous_generation(self, service, store):
        """Test a new chunked version replaces the old chunks."""
        await service.cache("user-1", InventoryFactory.create_items(2500))
        fresh = InventoryFactory.create_items(1100, prefix="NEW")

        report = await service.cache("user-1", fresh)

        chunks = _chunk_keys(service, store, "user-1")
        assert report.version == 2
        assert len(chunks) == 11
        assert {p.version for p in chunks} == {2}
        assert (await service.get_cached("user-1")).items == fresh

    @pytest.mark.asyncio
    async def test_mode_switch_removes_other_layout(self, service, store):
        """Test switching between chunked and direct mode leaves one layout."""
        await service.cache("user-1", InventoryFactory.create_items(1500))
        small = InventoryFactory.create_items(10)

        await service.cache("user-1", small)
        assert _owner_keys(service, store, "user-1") == ["inv_cache_user-1"]
        assert (await service.get_cached("user-1")).items == small

        large = InventoryFactory.create_items(1500)
        await service.cache("user-1", large)
        assert "inv_cache_user-1" not in store.data
        assert (await service.get_cached("user-1")).items == large

    @pytest.mark.asyncio
    async def test_concurrent_writers_publish_one_generation(self, service, store):
        """Test racing writes for one owner never mix generations."""
        first = InventoryFactory.create_items(1500, prefix="A")
        second = InventoryFactory.create_items(1300, prefix="B")

        reports = await asyncio.gather(service.cache("user-1", first), service.cache("user-1", second))

        assert {r.version for r in reports} == {1, 2}
        result = await service.get_cached("user-1")
        assert result.is_complete
        assert result.items in (first, second)
        published = json.loads(store.data["inv_meta_user-1"])["version"]
        assert {p.version for p in _chunk_keys(service, store, "user-1")} == {published}

    @pytest.mark.asyncio
    async def test_concurrent_mixed_mode_writers_keep_newest(self, service, store):
        """Test a direct write racing a chunked write leaves only the newest layout."""
        large = InventoryFactory.create_items(1500, prefix="A")
        small = InventoryFactory.create_items(40, prefix="B")

        reports = await asyncio.gather(service.cache("user-1", large), service.cache("user-1", small))

        assert [r.version for r in reports] == [1, 2]
        assert reports[0].outcome == "superseded"
        assert reports[1].outcome == "published"
        assert _owner_keys(service, store, "user-1") == ["inv_cache_user-1"]
        result = await service.get_cached("user-1")
        assert result.storage_mode == StorageMode.DIRECT
        assert result.items == small

    @pytest.mark.asyncio
    async def test_newer_direct_value_wins_over_stale_metadata(self, service, store):
        """Test a metadata pointer that could not be removed never hides newer data."""
        await service.cache("user-1", InventoryFactory.create_items(1500))
        store.failing_removes.add("inv_meta_user-1")
        small = InventoryFactory.create_items(40)

        report = await service.cache("user-1", small)
        result = await service.get_cached("user-1")

        assert report.published is True
        assert result.status == ReadStatus.COMPLETE
        assert result.storage_mode == StorageMode.DIRECT
        assert result.items == small
        # Chunks stay while their pointer does
        assert len(_chunk_keys(service, store, "user-1")) == 15

        store.failing_removes.clear()
        assert (await service.get_cached("user-1")).items == small
        assert _owner_keys(service, store, "user-1") == ["inv_cache_user-1"]

    @pytest.mark.asyncio
    async def test_newer_chunked_value_wins_over_stale_direct_value(self, service, store):
        """Test a direct value that could not be removed is ignored and cleaned up later."""
        await service.cache("user-1", InventoryFactory.create_items(40))
        store.failing_removes.add("inv_cache_user-1")
        large = InventoryFactory.create_items(1500)

        await service.cache("user-1", large)
        result = await service.get_cached("user-1")

        assert result.storage_mode == StorageMode.CHUNKED
        assert result.items == large

        store.failing_removes.clear()
        await service.get_cached("user-1")
        assert "inv_cache_user-1" not in store.data

    @pytest.mark.asyncio
    async def test_chunks_are_read_with_batched_gets(self, service, store):
        """Test each read batch is fetched with one batched call."""
        items = InventoryFactory.create_items(1500)
        await service.cache("user-1", items)

        with patch.object(store, "get_many", AsyncMock(side_effect=store.get_many)) as get_many:
            result = await service.get_cached("user-1")

        assert result.items == items
        assert get_many.await_count == 3

    @pytest.mark.asyncio
    async def test_cancelled_write_publishes_nothing(self, store, clock):
        """Test a cancellation between batches aborts and cleans up."""
        service = CacheService(create_test_settings(write_batch_delay=5.0), store, clock=clock)
        cancel = asyncio.Event()

        task = asyncio.create_task(service.cache("user-1", InventoryFactory.create_items(2500), cancel_event=cancel))
        await asyncio.sleep(0.01)
        cancel.set()
        report = await asyncio.wait_for(task, timeout=1.0)

        assert report.cancelled is True
        assert report.published is False
        assert _owner_keys(service, store, "user-1") == []

    @pytest.mark.asyncio
    async def test_cancelled_read_is_a_miss(self, service):
        """Test a pre-set cancellation turns a read into a miss."""
        await service.cache("user-1", InventoryFactory.create_items(1500))
        cancel = asyncio.Event()
        cancel.set()

        assert await service.get_cached("user-1", cancel_event=cancel) is None

    @pytest.mark.asyncio
    async def test_clear_removes_all_keys(self, service, store):
        """Test clear removes metadata and chunks."""
        await service.cache("user-1", InventoryFactory.create_items(2500))
        await service.cache("user-2", InventoryFactory.create_items(5))

        await service.clear("user-1")

        assert _owner_keys(service, store, "user-1") == []
        assert _owner_keys(service, store, "user-2") == ["inv_cache_user-2"]

    @pytest.mark.asyncio
    async def test_clear_swallows_removal_errors(self, service, store):
        """Test clear is best-effort."""
        report = await service.cache("user-1", InventoryFactory.create_items(1500))
        stuck = service.schema.chunk_key("user-1", report.version, 2)
        store.failing_removes.add(stuck)

        await service.clear("user-1")

        assert _owner_keys(service, store, "user-1") == [stuck]

    @pytest.mark.asyncio
    async def test_replace_large_dataset(self, store, clock):
        """Test replace clears the previous entry of very large inventories."""
        service = CacheService(create_test_settings(large_dataset_threshold=2000), store, clock=clock)
        await service.cache("user-1", InventoryFactory.create_items(10))
        items = InventoryFactory.create_items(2500)

        report = await service.replace("user-1", items)

        assert report.mode == StorageMode.CHUNKED
        assert (await service.get_cached_items("user-1")) == items

    @pytest.mark.asyncio
    async def test_stats(self, service, store):
        """Test descriptive stats over the namespace."""
        store.data["user_preferences"] = "{}"
        await service.cache("user-1", InventoryFactory.create_items(2500))
        await service.cache("user-2", InventoryFactory.create_items(5))

        stats = await service.stats()

        assert stats.resident_count == 2
        assert stats.inventory_keys == 27
        assert stats.total_keys == 28
        assert stats.approximate_size == "~5KB"
        assert stats.backend == "primary"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("owner", ["", "   ", None, True, 1.5])
    async def test_invalid_owner_key(self, service, owner):
        """Test programmer errors raise ValidationError."""
        with pytest.raises(ValidationError):
            await service.cache(owner, [])
        with pytest.raises(ValidationError):
            await service.get_cached(owner)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("owner", [" user-1", "user-1 ", "\tuser-1"])
    async def test_owner_keys_with_surrounding_whitespace(self, service, owner):
        """Test padded owner keys are rejected instead of aliasing another owner."""
        await service.cache("user-1", [{"id": 1}])

        with pytest.raises(ValidationError):
            await service.cache(owner, [{"id": 2}])
        with pytest.raises(ValidationError):
            await service.get_cached(owner)
        assert await service.get_cached_items("user-1") == [{"id": 1}]

    @pytest.mark.asyncio
    async def test_unserializable_items(self, service):
        """Test items that cannot be stored as JSON are rejected."""
        with pytest.raises(ValidationError):
            await service.cache("user-1", [object()])

    @pytest.mark.asyncio
    async def test_integer_owner_keys(self, service):
        """Test numeric owner ids are accepted."""
        await service.cache(42, [{"id": 1}])
        assert await service.get_cached_items("42") == [{"id": 1}]

    @pytest.mark.asyncio
    async def test_metrics_are_recorded(self, store, clock):
        """Test hits, misses and writes are counted."""
        metrics = MetricsCollector("test_inventory_cache")
        service = CacheService(create_test_settings(), store, clock=clock, metrics=metrics)

        await service.get_cached("user-1")
        await service.cache("user-1", InventoryFactory.create_items(1500))
        await service.get_cached("user-1")

        assert metrics.get_value("cache_reads_total", result="miss") == 1
        assert metrics.get_value("cache_reads_total", result="hit") == 1
        assert metrics.get_value("cache_writes_total", mode="chunked", outcome="published") == 1


class TestCacheServiceFallback:
    """Test cases for the fallback store path."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def primary(self):
        return InMemoryStore(available=False)

    @pytest.fixture
    def fallback(self, tmp_path):
        return FileFallbackStore(tmp_path / "fallback.json")

    @pytest.fixture
    def service(self, primary, fallback, clock):
        return CacheService(create_test_settings(), primary, fallback, clock=clock)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [40, 2500])
    async def test_round_trip_through_fallback(self, service, primary, fallback, count):
        """Test round trips still hold with the primary store down."""
        items = InventoryFactory.create_items(count)

        report = await service.cache("user-1", items)
        result = await service.get_cached("user-1")

        assert report.backend == "fallback"
        assert result.items == items
        assert primary.data == {}
        assert await fallback.list_keys() == ["inv_cache_user-1"]
        assert service.backend == "fallback"

    @pytest.mark.asyncio
    async def test_fallback_respects_ttl(self, service, fallback, clock):
        """Test fallback entries expire too."""
        await service.cache("user-1", [{"id": 1}])
        clock.advance(31 * 60)

        assert await service.get_cached("user-1") is None
        assert await fallback.list_keys() == []

    @pytest.mark.asyncio
    async def test_recovers_when_primary_returns(self, service, primary):
        """Test writes go back to the primary store once it is available."""
        await service.cache("user-1", [{"id": 1}])
        primary.available = True

        report = await service.cache("user-1", [{"id": 2}])

        assert report.backend == "primary"
        assert service.backend == "primary"
        assert await service.get_cached_items("user-1") == [{"id": 2}]

    @pytest.mark.asyncio
    async def test_clear_and_stats_use_fallback(self, service, fallback):
        """Test clear and stats while degraded."""
        await service.cache("user-1", [{"id": 1}])
        stats = await service.stats()
        assert stats.backend == "fallback"
        assert stats.resident_count == 1

        await service.clear("user-1")
        assert await fallback.list_keys() == []
        assert (await service.reconcile()).evicted_owners == []
