"""
Key-value store contract shared by the primary and fallback stores.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional


class KeyValueStore(ABC):
    """Asynchronous string key-value store.

    Ordinary failures (quota, size, connectivity) are reported through return
    values: ``get`` returns ``None`` and ``set``/``remove`` return ``False``.
    Implementations may still raise on unexpected errors; callers isolate each
    call.
    """

    #: Human readable name used in logs and stats.
    name: str = "store"

    #: Largest value (in UTF-8 bytes) the store accepts, ``None`` when unbounded.
    max_value_bytes: Optional[int] = None

    async def start(self) -> None:
        """Open connections. Raises ``StorageUnavailableError`` when impossible."""

    async def stop(self) -> None:
        """Release connections."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the store can serve requests right now."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value or ``None``."""

    @abstractmethod
    async def set(self, key: str, value: str) -> bool:
        """Store a value, returning whether the write succeeded."""

    @abstractmethod
    async def remove(self, key: str) -> bool:
        """Remove a key, returning whether the removal succeeded."""

    @abstractmethod
    async def list_keys(self) -> List[str]:
        """Return every key currently stored."""

    async def get_many(self, keys: Iterable[str]) -> Dict[str, str]:
        """Batched read; missing keys are absent from the result."""
        values: Dict[str, str] = {}
        for key in keys:
            value = await self.get(key)
            if value is not None:
                values[key] = value
        return values

    async def remove_many(self, keys: Iterable[str]) -> bool:
        """Batched removal; returns whether every key was removed."""
        removed = True
        for key in keys:
            if not await self.remove(key):
                removed = False
        return removed

    def fits(self, value: str) -> bool:
        """Whether ``value`` respects this store's per-value ceiling."""
        if self.max_value_bytes is None:
            return True
        return len(value.encode("utf-8")) <= self.max_value_bytes
