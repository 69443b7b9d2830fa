"""
Data models for the inventory cache.

Persisted records are pydantic models serialized as camelCase JSON; results
handed back to callers are plain dataclasses.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticSerializationError

from shared.errors import SerializationError


class StorageMode(str, Enum):
    """How a collection is laid out in the store."""
    DIRECT = "direct"
    CHUNKED = "chunked"


class ReadStatus(str, Enum):
    """Outcome of reading a cached collection."""
    COMPLETE = "complete"
    PARTIAL = "partial"


class StoredRecord(BaseModel):
    """Common shape of every value written under the cache namespace."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    version: int = Field(..., ge=0)
    timestamp: int = Field(..., ge=0, description="Write time in ms since epoch")


class MetadataRecord(StoredRecord):
    """Pointer to the published generation of a chunked collection."""
    mode: Literal["chunked"] = "chunked"
    item_count: int = Field(..., ge=0, alias="itemCount")
    total_chunks: int = Field(..., ge=0, alias="totalChunks")
    chunk_size: int = Field(..., ge=1, alias="chunkSize")


class DirectRecord(StoredRecord):
    """A whole collection stored under a single key."""
    mode: Literal["direct"] = "direct"
    owner_key: str = Field(..., alias="ownerKey")
    item_count: int = Field(..., ge=0, alias="itemCount")
    data: List[Any] = Field(default_factory=list)


class ChunkRecord(StoredRecord):
    """One slice of a chunked collection."""
    owner_key: str = Field(..., alias="ownerKey")
    chunk_index: int = Field(..., ge=0, alias="chunkIndex")
    total_chunks: int = Field(..., ge=1, alias="totalChunks")
    items: List[Any] = Field(default_factory=list)


RecordT = TypeVar("RecordT", bound=StoredRecord)


def encode_record(record: StoredRecord) -> str:
    """Serialize a record to the JSON layout stored in the backing store."""
    try:
        return record.model_dump_json(by_alias=True)
    except PydanticSerializationError as e:
        raise SerializationError(
            f"Cannot serialize {type(record).__name__}",
            details={"error": str(e)}
        ) from e


def decode_record(model: Type[RecordT], raw: str) -> RecordT:
    """Parse a stored value, raising ``SerializationError`` on any mismatch."""
    try:
        return model.model_validate_json(raw)
    except (PydanticValidationError, ValueError) as e:
        raise SerializationError(
            f"Invalid {model.__name__}",
            details={"error": str(e)}
        ) from e


def extract_timestamp(raw: Optional[str]) -> int:
    """Best-effort timestamp of any stored value; 0 when unreadable."""
    if not raw:
        return 0
    try:
        payload = json.loads(raw)
    except ValueError:
        return 0
    if not isinstance(payload, dict):
        return 0
    timestamp = payload.get("timestamp")
    if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
        return int(timestamp)
    return 0


@dataclass
class CacheResult:
    """Tagged result of ``CacheService.get_cached``.

    ``PARTIAL`` means at least one chunk could not be loaded; ``items`` then
    holds only the chunks that were read, in order, and must not be trusted
    for counts or positions.
    """
    status: ReadStatus
    items: List[Any]
    item_count: int
    storage_mode: StorageMode
    timestamp: int
    missing_chunks: List[int] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.status == ReadStatus.COMPLETE


@dataclass
class CacheWriteReport:
    """Summary of one ``cache`` call."""
    owner_key: str
    backend: str
    mode: StorageMode
    item_count: int
    version: int = 0
    total_chunks: int = 0
    chunks_written: int = 0
    failed_chunks: List[int] = field(default_factory=list)
    published: bool = False
    superseded: bool = False
    cancelled: bool = False

    @property
    def outcome(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.superseded:
            return "superseded"
        return "published" if self.published else "failed"


@dataclass
class EvictionReport:
    """Summary of one ``EvictionManager.reconcile`` pass."""
    resident_before: int = 0
    resident_after: int = 0
    evicted_owners: List[str] = field(default_factory=list)
    removed_keys: int = 0
    stale_chunks_removed: int = 0


@dataclass
class CacheStats:
    """Descriptive snapshot of the cache namespace."""
    resident_count: int
    inventory_keys: int
    total_keys: int
    approximate_size: str
    backend: str
