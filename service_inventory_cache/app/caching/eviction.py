"""
Least-recently-written eviction over the cache namespace.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from shared.logging import get_logger
from shared.errors import SerializationError
from ..storage.base import KeyValueStore
from .batching import partition, run_in_batches
from .keys import KeyKind, KeySchema, ParsedKey
from .models import EvictionReport, MetadataRecord, decode_record, extract_timestamp


@dataclass
class OwnerGroup:
    """Every physical key belonging to one owner."""
    owner_key: str
    metadata_key: Optional[str] = None
    direct_key: Optional[str] = None
    chunks: List[ParsedKey] = field(default_factory=list)
    timestamp: int = 0
    published_version: Optional[int] = None

    @property
    def keys(self) -> List[str]:
        keys = [key for key in (self.metadata_key, self.direct_key) if key]
        keys.extend(chunk.key for chunk in self.chunks)
        return keys

    def representative_keys(self) -> List[str]:
        """Keys whose value carries the group's write timestamp."""
        keys = [key for key in (self.metadata_key, self.direct_key) if key]
        if not keys and self.chunks:
            keys.append(min(self.chunks, key=lambda c: (c.version, c.chunk_index)).key)
        return keys


class EvictionManager:
    """
    Keeps at most ``max_entries`` owners resident in the store.

    Residency is decided by write time: the timestamp stored in each owner's
    metadata, direct value or (for unpublished chunks) first chunk. Read
    access does not refresh an entry. Chunks older than an owner's published
    metadata version are swept on the same pass.
    """

    def __init__(
        self,
        store: KeyValueStore,
        schema: KeySchema,
        max_entries: int,
        *,
        batch_size: int = 5,
        batch_delay: float = 0.0,
        metrics=None,
    ):
        self.store = store
        self.schema = schema
        self.max_entries = max_entries
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.metrics = metrics
        self.logger = get_logger("inventory_cache.eviction")

    async def collect_groups(self) -> Dict[str, OwnerGroup]:
        """List the namespace and group its keys by owner."""
        try:
            keys = await self.store.list_keys()
        except Exception as e:
            self.logger.error("Failed to list cache keys", error=str(e))
            return {}

        groups: Dict[str, OwnerGroup] = {}
        for key in keys:
            parsed = self.schema.parse(key)
            if parsed is None:
                continue
            group = groups.setdefault(parsed.owner_key, OwnerGroup(parsed.owner_key))
            if parsed.kind == KeyKind.METADATA:
                group.metadata_key = key
            elif parsed.kind == KeyKind.DIRECT:
                group.direct_key = key
            else:
                group.chunks.append(parsed)
        return groups

    async def reconcile(self) -> EvictionReport:
        """Evict the oldest owners until at most ``max_entries`` remain."""
        groups = await self.collect_groups()
        report = EvictionReport(resident_before=len(groups))
        if not groups:
            return report

        await run_in_batches(
            list(groups.values()),
            self._load_group_state,
            batch_size=self.batch_size,
        )

        report.stale_chunks_removed = await self._sweep_stale_chunks(groups.values())

        excess = len(groups) - self.max_entries
        if excess > 0:
            ordered = sorted(groups.values(), key=lambda g: (g.timestamp, g.owner_key))
            victims = ordered[:excess]
            for group in victims:
                report.removed_keys += await self.remove_keys(group.keys)
                report.evicted_owners.append(group.owner_key)

            self.logger.info(
                "Evicted least recently written inventories",
                evicted=report.evicted_owners,
                resident_before=report.resident_before,
                max_entries=self.max_entries
            )
            if self.metrics:
                self.metrics.increment_counter("cache_evictions_total", amount=len(victims))

        report.resident_after = len(groups) - len(report.evicted_owners)
        return report

    async def remove_keys(self, keys: List[str]) -> int:
        """Remove keys in bulk batches; returns how many removals succeeded.

        A batch whose bulk removal fails is retried key by key, so one bad key
        never keeps its siblings resident.
        """
        batches = partition(keys, self.batch_size)
        outcomes = await run_in_batches(
            batches,
            self._remove_batch,
            batch_size=1,
            delay=self.batch_delay,
        )
        removed = 0
        for batch, outcome in zip(batches, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.warning("Failed to remove cache keys", keys=batch, error=str(outcome))
                self._count_failure()
                continue
            removed += outcome
        return removed

    async def _remove_batch(self, keys: List[str]) -> int:
        try:
            if await self.store.remove_many(keys):
                return len(keys)
        except Exception as e:
            self.logger.warning("Bulk removal raised", keys_count=len(keys), error=str(e))

        outcomes = await asyncio.gather(*(self.store.remove(key) for key in keys), return_exceptions=True)
        removed = 0
        for key, outcome in zip(keys, outcomes):
            if outcome is True:
                removed += 1
                continue
            error = str(outcome) if isinstance(outcome, BaseException) else "remove returned false"
            self.logger.warning("Failed to remove cache key", key=key, error=error)
            self._count_failure()
        return removed

    def _count_failure(self) -> None:
        if self.metrics:
            self.metrics.increment_counter("store_failures_total", operation="remove")

    async def _load_group_state(self, group: OwnerGroup) -> None:
        for key in group.representative_keys():
            try:
                raw = await self.store.get(key)
            except Exception as e:
                self.logger.warning("Failed to read cache key for eviction", key=key, error=str(e))
                continue

            group.timestamp = max(group.timestamp, extract_timestamp(raw))
            if key == group.metadata_key and raw is not None:
                try:
                    group.published_version = decode_record(MetadataRecord, raw).version
                except SerializationError:
                    group.published_version = None

    async def _sweep_stale_chunks(self, groups) -> int:
        stale: List[str] = []
        for group in groups:
            if group.published_version is None:
                continue
            current = [c for c in group.chunks if c.version >= group.published_version]
            stale.extend(c.key for c in group.chunks if c.version < group.published_version)
            group.chunks = current

        if not stale:
            return 0
        removed = await self.remove_keys(stale)
        self.logger.info("Swept superseded chunks", count=removed)
        return removed
