"""
CacheService: the public face of the inventory cache.

Collections below ``direct_mode_threshold`` items are stored under a single
key. Larger ones (or ones whose single value would exceed the store's value
ceiling) are split into chunks written under a version-tagged key set; the
metadata pointer is published only once every chunk of that version has been
written, and older versions are garbage-collected afterwards. Readers
therefore only ever see one complete generation.
"""

import asyncio
import time
from contextlib import nullcontext
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from shared.config import CacheSettings
from shared.errors import SerializationError, StorageUnavailableError, ValidationError
from shared.logging import get_logger, set_owner_context
from shared.metrics import MetricsCollector
from ..storage.base import KeyValueStore
from .batching import OperationCancelled, partition, run_in_batches
from .chunking import Chunk, missing_indices, reconstruct, split
from .eviction import EvictionManager
from .keys import KeyKind, KeySchema
from .metadata import MetadataStore
from .models import (
    CacheResult, CacheStats, CacheWriteReport, ChunkRecord, DirectRecord,
    EvictionReport, MetadataRecord, ReadStatus, StorageMode,
    decode_record, encode_record,
)

PRIMARY = "primary"
FALLBACK = "fallback"

# Rough per-key footprint used for the descriptive size estimate
APPROX_KB_PER_KEY = 0.2


class CacheService:
    """Chunked, expiring, size-bounded cache of per-owner item collections."""

    def __init__(
        self,
        settings: CacheSettings,
        primary: KeyValueStore,
        fallback: Optional[KeyValueStore] = None,
        *,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.settings = settings
        self.primary = primary
        self.fallback = fallback
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("inventory_cache.controller")

        self.schema = KeySchema(settings.namespace)
        self.metadata = MetadataStore(primary, self.schema)
        self.fallback_metadata = MetadataStore(fallback, self.schema) if fallback else None
        self.eviction = EvictionManager(
            primary,
            self.schema,
            settings.max_entries,
            batch_size=settings.write_batch_size,
            batch_delay=settings.write_batch_delay,
            metrics=metrics,
        )

        self._versions: Dict[str, int] = {}
        self._using_fallback = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect the primary store; a failure leaves the fallback in charge."""
        try:
            await self.primary.start()
        except StorageUnavailableError as e:
            self.logger.warning("Primary store unavailable at startup", error=e.message)
        if self.fallback:
            await self.fallback.start()

    async def stop(self) -> None:
        await self.primary.stop()
        if self.fallback:
            await self.fallback.stop()

    @property
    def backend(self) -> str:
        """Store used by the most recent call."""
        return FALLBACK if self._using_fallback else PRIMARY

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def cache(
        self,
        owner_key: Union[str, int],
        items: Sequence[Any],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CacheWriteReport:
        """
        Store ``items`` for ``owner_key``.

        Storage failures are logged and reflected in the returned report; only
        invalid arguments raise ``ValidationError``.
        """
        owner = self._validate_owner(owner_key)
        items = self._validate_items(items)
        set_owner_context(owner)

        with self._timed("cache"):
            if await self._select_backend() == FALLBACK:
                report = await self._cache_fallback(owner, items)
            else:
                report = await self._cache_primary(owner, items, cancel_event)
                await self.eviction.reconcile()

        self._count("cache_writes_total", mode=report.mode.value if report.backend == PRIMARY else FALLBACK,
                    outcome=report.outcome)
        return report

    async def replace(
        self,
        owner_key: Union[str, int],
        items: Sequence[Any],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CacheWriteReport:
        """Like ``cache``, but clears very large inventories before rewriting them."""
        owner = self._validate_owner(owner_key)
        items = self._validate_items(items)
        if len(items) > self.settings.large_dataset_threshold:
            self.logger.info("Clearing before large dataset write", owner_key=owner, item_count=len(items))
            await self.clear(owner)
        return await self.cache(owner, items, cancel_event=cancel_event)

    async def get_cached(
        self,
        owner_key: Union[str, int],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Optional[CacheResult]:
        """
        Read the cached collection for ``owner_key``.

        Returns ``None`` on miss, expiry, corruption or cancellation; callers
        should then fetch from the source of truth. A ``PARTIAL`` result lists
        the chunk indices that could not be loaded.
        """
        owner = self._validate_owner(owner_key)
        set_owner_context(owner)

        with self._timed("get_cached"):
            if await self._select_backend() == FALLBACK:
                result = await self._get_fallback(owner)
            else:
                result = await self._get_primary(owner, cancel_event)

        if result is not None:
            self._count("cache_reads_total", result="hit" if result.is_complete else "partial")
        return result

    async def get_cached_items(self, owner_key: Union[str, int]) -> Optional[List[Any]]:
        """Items of a complete hit; partial results count as a miss."""
        result = await self.get_cached(owner_key)
        if result is None or not result.is_complete:
            return None
        return result.items

    async def clear(self, owner_key: Union[str, int]) -> None:
        """Remove every key of ``owner_key`` from the stores, best-effort."""
        owner = self._validate_owner(owner_key)
        set_owner_context(owner)

        if await self._select_backend() == PRIMARY:
            await self._clear_primary(owner)
        if self.fallback_metadata:
            await self.fallback_metadata.invalidate_direct(owner)

    async def reconcile(self) -> EvictionReport:
        """Run an eviction pass against the primary store."""
        if await self._select_backend() == FALLBACK:
            return EvictionReport()
        return await self.eviction.reconcile()

    async def stats(self) -> CacheStats:
        """Descriptive counts for the active store; sizes are estimates."""
        backend = await self._select_backend()
        store = self.fallback if backend == FALLBACK else self.primary
        try:
            keys = await store.list_keys()
        except Exception as e:
            self.logger.warning("Failed to list keys for stats", error=str(e))
            keys = []

        parsed = [p for p in (self.schema.parse(key) for key in keys) if p is not None]
        return CacheStats(
            resident_count=len({p.owner_key for p in parsed}),
            inventory_keys=len(parsed),
            total_keys=len(keys),
            approximate_size=f"~{round(len(parsed) * APPROX_KB_PER_KEY)}KB",
            backend=backend,
        )

    # ------------------------------------------------------------------
    # Primary store paths
    # ------------------------------------------------------------------

    async def _cache_primary(
        self,
        owner: str,
        items: List[Any],
        cancel_event: Optional[asyncio.Event],
    ) -> CacheWriteReport:
        previous_meta = await self.metadata.read(owner)
        previous_direct = await self.metadata.read_direct(owner)
        version = self._next_version(
            owner,
            previous_meta.version if previous_meta else 0,
            previous_direct.version if previous_direct else 0,
        )
        timestamp = self._now_ms()

        if len(items) < self.settings.direct_mode_threshold:
            record = DirectRecord(
                version=version,
                timestamp=timestamp,
                owner_key=owner,
                item_count=len(items),
                data=items,
            )
            payload = self._encode(record)
            if self.primary.fits(payload):
                return await self._write_direct(owner, record, payload)
            self.logger.info(
                "Direct value exceeds store ceiling, storing chunked",
                owner_key=owner,
                item_count=len(items),
                max_value_bytes=self.primary.max_value_bytes
            )

        return await self._write_chunked(owner, items, version, timestamp, cancel_event)

    async def _write_direct(self, owner: str, record: DirectRecord, payload: str) -> CacheWriteReport:
        report = CacheWriteReport(
            owner_key=owner,
            backend=PRIMARY,
            mode=StorageMode.DIRECT,
            item_count=record.item_count,
            version=record.version,
        )

        current = await self._published_version(owner)
        if current > record.version:
            report.superseded = True
            self.logger.info(
                "Direct write superseded by a newer version",
                owner_key=owner,
                version=record.version,
                current_version=current
            )
            return report

        report.published = await self.metadata.write_direct(owner, record, payload)
        if not report.published:
            self.logger.error("Failed to cache inventory directly", owner_key=owner)
            self._count("store_failures_total", operation="set")
            return report

        descriptor = await self.metadata.read(owner)
        if descriptor is not None and descriptor.version < record.version:
            await self._retire_chunked(owner, record.version)

        self.logger.info("Cached inventory directly", owner_key=owner, item_count=record.item_count)
        return report

    async def _write_chunked(
        self,
        owner: str,
        items: List[Any],
        version: int,
        timestamp: int,
        cancel_event: Optional[asyncio.Event],
    ) -> CacheWriteReport:
        chunks = split(items, self.settings.chunk_size, owner_key=owner, version=version, timestamp=timestamp)
        report = CacheWriteReport(
            owner_key=owner,
            backend=PRIMARY,
            mode=StorageMode.CHUNKED,
            item_count=len(items),
            version=version,
            total_chunks=len(chunks),
        )

        self.logger.info(
            "Storing inventory in chunks",
            owner_key=owner,
            item_count=len(items),
            total_chunks=len(chunks),
            version=version
        )

        try:
            outcomes = await run_in_batches(
                chunks,
                self._write_chunk,
                batch_size=self.settings.write_batch_size,
                delay=self.settings.write_batch_delay,
                cancel_event=cancel_event,
            )
        except OperationCancelled:
            report.cancelled = True
            self.logger.info("Chunked write cancelled", owner_key=owner, version=version)
            await self._remove_owner_chunks(owner, only_version=version)
            return report

        for chunk, outcome in zip(chunks, outcomes):
            if outcome is True:
                report.chunks_written += 1
                continue
            report.failed_chunks.append(chunk.chunk_index)
            error = str(outcome) if isinstance(outcome, BaseException) else "set returned false"
            self.logger.warning("Failed to write chunk", owner_key=owner, chunk_index=chunk.chunk_index, error=error)
            self._count("store_failures_total", operation="set")

        if report.failed_chunks:
            # Unpublished: the previous generation, if any, stays readable
            self.logger.error(
                "Chunked write incomplete, metadata not published",
                owner_key=owner,
                failed_chunks=report.failed_chunks
            )
            await self._remove_owner_chunks(owner, only_version=version)
            return report

        current = await self._published_version(owner)
        if current > version:
            report.superseded = True
            self.logger.info(
                "Chunked write superseded by a newer version",
                owner_key=owner,
                version=version,
                current_version=current
            )
            await self._remove_owner_chunks(owner, only_version=version)
            return report

        descriptor = MetadataRecord(
            version=version,
            timestamp=timestamp,
            item_count=len(items),
            total_chunks=len(chunks),
            chunk_size=self.settings.chunk_size,
        )
        report.published = await self.metadata.write(owner, descriptor)
        if not report.published:
            self._count("store_failures_total", operation="set")
            await self._remove_owner_chunks(owner, only_version=version)
            return report

        previous_direct = await self.metadata.read_direct(owner)
        if previous_direct is not None and previous_direct.version < version:
            await self.metadata.invalidate_direct(owner)
        await self._remove_owner_chunks(owner, below_version=version)

        self.logger.info(
            "Cached inventory in chunks",
            owner_key=owner,
            item_count=len(items),
            total_chunks=len(chunks),
            version=version
        )
        return report

    async def _write_chunk(self, chunk: Chunk) -> bool:
        record = ChunkRecord(
            version=chunk.version,
            timestamp=chunk.timestamp,
            owner_key=chunk.owner_key,
            chunk_index=chunk.chunk_index,
            total_chunks=chunk.total_chunks,
            items=chunk.items,
        )
        key = self.schema.chunk_key(chunk.owner_key, chunk.version, chunk.chunk_index)
        return await self.primary.set(key, self._encode(record))

    async def _get_primary(self, owner: str, cancel_event: Optional[asyncio.Event]) -> Optional[CacheResult]:
        descriptor = await self.metadata.read(owner)
        record = await self.metadata.read_direct(owner)
        if descriptor is not None and record is not None:
            descriptor, record = await self._resolve_layouts(owner, descriptor, record)

        if descriptor is not None:
            if self._is_expired(descriptor.timestamp):
                return await self._expire(owner)
            return await self._load_chunked(owner, descriptor, cancel_event)

        if record is None:
            self.logger.debug("No cached inventory found", owner_key=owner)
            self._count("cache_reads_total", result="miss")
            return None
        if self._is_expired(record.timestamp):
            return await self._expire(owner)
        if len(record.data) != record.item_count:
            self.logger.warning(
                "Direct value item count mismatch, discarding",
                owner_key=owner,
                expected=record.item_count,
                actual=len(record.data)
            )
            await self.metadata.invalidate_direct(owner)
            self._count("cache_reads_total", result="corrupt")
            return None

        self.logger.debug("Retrieved cached inventory", owner_key=owner, item_count=record.item_count)
        return CacheResult(
            status=ReadStatus.COMPLETE,
            items=list(record.data),
            item_count=record.item_count,
            storage_mode=StorageMode.DIRECT,
            timestamp=record.timestamp,
        )

    async def _load_chunked(
        self,
        owner: str,
        descriptor: MetadataRecord,
        cancel_event: Optional[asyncio.Event],
    ) -> Optional[CacheResult]:
        groups = partition(list(range(descriptor.total_chunks)), self.settings.read_batch_size)

        async def read_group(indices: List[int]) -> List[Chunk]:
            return await self._read_chunk_group(owner, descriptor, indices)

        try:
            # One batched read per group; groups run one after another
            outcomes = await run_in_batches(
                groups,
                read_group,
                batch_size=1,
                delay=self.settings.read_batch_delay,
                cancel_event=cancel_event,
            )
        except OperationCancelled:
            self.logger.info("Chunked read cancelled", owner_key=owner)
            return None

        chunks: List[Chunk] = []
        for indices, outcome in zip(groups, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.warning("Failed to load chunks", owner_key=owner, chunk_indices=indices, error=str(outcome))
                self._count("store_failures_total", operation="get")
                continue
            chunks.extend(outcome)

        missing = missing_indices(chunks, descriptor.total_chunks)
        items = reconstruct(chunks)

        if missing:
            self.logger.warning(
                "Cached inventory incomplete",
                owner_key=owner,
                missing_chunks=missing,
                loaded_items=len(items),
                item_count=descriptor.item_count
            )
            return CacheResult(
                status=ReadStatus.PARTIAL,
                items=items,
                item_count=descriptor.item_count,
                storage_mode=StorageMode.CHUNKED,
                timestamp=descriptor.timestamp,
                missing_chunks=missing,
            )

        if len(items) != descriptor.item_count:
            self.logger.warning(
                "Chunked inventory item count mismatch, discarding",
                owner_key=owner,
                expected=descriptor.item_count,
                actual=len(items)
            )
            await self._clear_primary(owner)
            self._count("cache_reads_total", result="corrupt")
            return None

        self.logger.debug("Loaded inventory from chunks", owner_key=owner, item_count=len(items))
        return CacheResult(
            status=ReadStatus.COMPLETE,
            items=items,
            item_count=descriptor.item_count,
            storage_mode=StorageMode.CHUNKED,
            timestamp=descriptor.timestamp,
        )

    async def _read_chunk_group(self, owner: str, descriptor: MetadataRecord, indices: List[int]) -> List[Chunk]:
        keys = [self.schema.chunk_key(owner, descriptor.version, index) for index in indices]
        try:
            values = await self.primary.get_many(keys)
        except Exception as e:
            # Read key by key so one failing chunk does not hide its siblings
            self.logger.warning("Batched chunk read failed, reading chunks singly", owner_key=owner, error=str(e))
            outcomes = await asyncio.gather(*(self.primary.get(key) for key in keys), return_exceptions=True)
            values = {}
            for index, key, outcome in zip(indices, keys, outcomes):
                if isinstance(outcome, BaseException):
                    self.logger.warning("Failed to load chunk", owner_key=owner, chunk_index=index, error=str(outcome))
                    self._count("store_failures_total", operation="get")
                elif outcome is not None:
                    values[key] = outcome

        chunks = []
        for index, key in zip(indices, keys):
            raw = values.get(key)
            if raw is None:
                continue
            chunk = await self._decode_chunk(owner, descriptor, index, key, raw)
            if chunk is not None:
                chunks.append(chunk)
        return chunks

    async def _decode_chunk(
        self,
        owner: str,
        descriptor: MetadataRecord,
        index: int,
        key: str,
        raw: str,
    ) -> Optional[Chunk]:
        try:
            record = decode_record(ChunkRecord, raw)
        except SerializationError as e:
            self.logger.warning("Discarding corrupt chunk", key=key, error=e.message)
            await self.primary.remove(key)
            return None

        if (record.version != descriptor.version
                or record.chunk_index != index
                or record.total_chunks != descriptor.total_chunks):
            self.logger.warning("Chunk does not match metadata", key=key, chunk_version=record.version)
            return None

        return Chunk(
            owner_key=owner,
            chunk_index=record.chunk_index,
            total_chunks=record.total_chunks,
            items=record.items,
            timestamp=record.timestamp,
            version=record.version,
        )

    async def _resolve_layouts(self, owner: str, descriptor: MetadataRecord, record: DirectRecord):
        """Keep the newer of two resident layouts left behind by overlapping writes."""
        self.logger.warning(
            "Both storage layouts resident, keeping the newer",
            owner_key=owner,
            chunked_version=descriptor.version,
            direct_version=record.version
        )
        if record.version > descriptor.version:
            await self._retire_chunked(owner, record.version)
            return None, record
        await self.metadata.invalidate_direct(owner)
        return descriptor, None

    async def _retire_chunked(self, owner: str, version: int) -> None:
        """Remove a chunked layout older than ``version``, pointer first."""
        if not await self.metadata.invalidate(owner):
            # Chunks stay while the pointer does; reads resolve by version
            self.logger.warning("Failed to remove superseded metadata, keeping its chunks", owner_key=owner)
            self._count("store_failures_total", operation="remove")
            return
        await self._remove_owner_chunks(owner, below_version=version)

    async def _published_version(self, owner: str) -> int:
        """Highest version currently published under either layout."""
        descriptor = await self.metadata.read(owner)
        record = await self.metadata.read_direct(owner)
        return max(descriptor.version if descriptor else 0, record.version if record else 0)

    async def _expire(self, owner: str) -> None:
        self.logger.info("Cached inventory expired, cleaning up", owner_key=owner)
        await self._clear_primary(owner)
        self._count("cache_reads_total", result="expired")
        return None

    async def _clear_primary(self, owner: str) -> None:
        keys = {self.schema.metadata_key(owner), self.schema.direct_key(owner)}
        descriptor = await self.metadata.read(owner)
        if descriptor is not None:
            keys.update(
                self.schema.chunk_key(owner, descriptor.version, index)
                for index in range(descriptor.total_chunks)
            )
        keys.update(await self._owner_chunk_keys(owner))

        removed = await self.eviction.remove_keys(sorted(keys))
        self.logger.info("Cleared cached inventory", owner_key=owner, removed_keys=removed)

    async def _owner_chunk_keys(
        self,
        owner: str,
        *,
        below_version: Optional[int] = None,
        only_version: Optional[int] = None,
    ) -> List[str]:
        try:
            keys = await self.primary.list_keys()
        except Exception as e:
            self.logger.warning("Failed to list keys", owner_key=owner, error=str(e))
            return []

        selected = []
        for key in keys:
            parsed = self.schema.parse(key)
            if parsed is None or parsed.kind != KeyKind.CHUNK or parsed.owner_key != owner:
                continue
            if below_version is not None and parsed.version >= below_version:
                continue
            if only_version is not None and parsed.version != only_version:
                continue
            selected.append(key)
        return selected

    async def _remove_owner_chunks(
        self,
        owner: str,
        *,
        below_version: Optional[int] = None,
        only_version: Optional[int] = None,
    ) -> int:
        keys = await self._owner_chunk_keys(owner, below_version=below_version, only_version=only_version)
        if not keys:
            return 0
        return await self.eviction.remove_keys(keys)

    # ------------------------------------------------------------------
    # Fallback store paths
    # ------------------------------------------------------------------

    async def _cache_fallback(self, owner: str, items: List[Any]) -> CacheWriteReport:
        previous = await self.fallback_metadata.read_direct(owner)
        record = DirectRecord(
            version=self._next_version(owner, previous.version if previous else 0),
            timestamp=self._now_ms(),
            owner_key=owner,
            item_count=len(items),
            data=items,
        )
        report = CacheWriteReport(
            owner_key=owner,
            backend=FALLBACK,
            mode=StorageMode.DIRECT,
            item_count=len(items),
            version=record.version,
        )
        report.published = await self.fallback_metadata.write_direct(owner, record, self._encode(record))
        if report.published:
            self.logger.info("Cached inventory in fallback store", owner_key=owner, item_count=len(items))
        return report

    async def _get_fallback(self, owner: str) -> Optional[CacheResult]:
        record = await self.fallback_metadata.read_direct(owner)
        if record is None:
            self._count("cache_reads_total", result="miss")
            return None
        if self._is_expired(record.timestamp):
            self.logger.info("Fallback inventory expired", owner_key=owner)
            await self.fallback_metadata.invalidate_direct(owner)
            self._count("cache_reads_total", result="expired")
            return None
        return CacheResult(
            status=ReadStatus.COMPLETE,
            items=list(record.data),
            item_count=record.item_count,
            storage_mode=StorageMode.DIRECT,
            timestamp=record.timestamp,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _select_backend(self) -> str:
        try:
            available = await self.primary.is_available()
        except Exception as e:
            self.logger.warning("Primary availability check raised", error=str(e))
            available = False

        if available or self.fallback_metadata is None:
            if self._using_fallback:
                self.logger.info("Primary store available again")
            self._using_fallback = False
            return PRIMARY

        if not self._using_fallback:
            self.logger.warning("Primary store unavailable, using fallback store", store=self.primary.name)
        self._using_fallback = True
        return FALLBACK

    def _next_version(self, owner: str, *known: int) -> int:
        # Computed without awaiting so concurrent writers get distinct versions
        version = max(self._versions.get(owner, 0), *known) + 1
        self._versions[owner] = version
        return version

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _is_expired(self, timestamp: int) -> bool:
        return self._now_ms() - timestamp >= self.settings.ttl_seconds * 1000

    @staticmethod
    def _encode(record) -> str:
        try:
            return encode_record(record)
        except SerializationError as e:
            raise ValidationError("Items are not JSON serializable", details=e.details) from e

    @staticmethod
    def _validate_owner(owner_key: Union[str, int]) -> str:
        if isinstance(owner_key, bool) or not isinstance(owner_key, (str, int)):
            raise ValidationError("owner_key must be a string or integer", details={"owner_key": repr(owner_key)})
        owner = str(owner_key)
        if not owner.strip():
            raise ValidationError("owner_key must not be empty")
        if owner != owner.strip():
            raise ValidationError(
                "owner_key must not have leading or trailing whitespace",
                details={"owner_key": owner}
            )
        return owner

    @staticmethod
    def _validate_items(items: Sequence[Any]) -> List[Any]:
        if items is None or isinstance(items, (str, bytes, dict)):
            raise ValidationError("items must be an ordered sequence")
        try:
            return list(items)
        except TypeError as e:
            raise ValidationError("items must be an ordered sequence", details={"error": str(e)}) from e

    def _timed(self, operation: str):
        if self.metrics:
            return self.metrics.time_operation(operation)
        return nullcontext()

    def _count(self, metric_name: str, **labels) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, **labels)
