"""
Per-collection descriptors: the chunked-mode metadata pointer and the
self-describing direct-mode record.
"""

from typing import Optional, Type

from shared.logging import get_logger
from shared.errors import SerializationError
from ..storage.base import KeyValueStore
from .keys import KeySchema
from .models import DirectRecord, MetadataRecord, RecordT, decode_record, encode_record


class MetadataStore:
    """Reads and writes collection descriptors in one store.

    Corrupt descriptors are treated as absent and removed from the store, so a
    caller never sees a deserialization failure.
    """

    def __init__(self, store: KeyValueStore, schema: KeySchema):
        self.store = store
        self.schema = schema
        self.logger = get_logger("inventory_cache.metadata")

    async def write(self, owner_key: str, descriptor: MetadataRecord) -> bool:
        key = self.schema.metadata_key(owner_key)
        written = await self._set(key, encode_record(descriptor))
        if not written:
            self.logger.warning("Failed to write metadata", owner_key=owner_key, key=key)
        return written

    async def read(self, owner_key: str) -> Optional[MetadataRecord]:
        return await self._read(self.schema.metadata_key(owner_key), MetadataRecord)

    async def invalidate(self, owner_key: str) -> bool:
        """Remove the metadata pointer; chunk keys are left to the caller."""
        return await self._remove(self.schema.metadata_key(owner_key))

    async def write_direct(self, owner_key: str, record: DirectRecord, payload: Optional[str] = None) -> bool:
        """Store a direct-mode record; ``payload`` is its pre-encoded form if known."""
        key = self.schema.direct_key(owner_key)
        written = await self._set(key, payload if payload is not None else encode_record(record))
        if not written:
            self.logger.warning("Failed to write direct value", owner_key=owner_key, key=key)
        return written

    async def read_direct(self, owner_key: str) -> Optional[DirectRecord]:
        return await self._read(self.schema.direct_key(owner_key), DirectRecord)

    async def invalidate_direct(self, owner_key: str) -> bool:
        return await self._remove(self.schema.direct_key(owner_key))

    async def _set(self, key: str, value: str) -> bool:
        try:
            return await self.store.set(key, value)
        except Exception as e:
            self.logger.warning("Store write raised", key=key, error=str(e))
            return False

    async def _remove(self, key: str) -> bool:
        try:
            return await self.store.remove(key)
        except Exception as e:
            self.logger.warning("Store removal raised", key=key, error=str(e))
            return False

    async def _read(self, key: str, model: Type[RecordT]) -> Optional[RecordT]:
        try:
            raw = await self.store.get(key)
        except Exception as e:
            self.logger.warning("Failed to read cache record", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return decode_record(model, raw)
        except SerializationError as e:
            self.logger.warning("Discarding corrupt cache record", key=key, error=e.message)
            await self._remove(key)
            return None
