"""
In-process store used for local development and deterministic tests.
"""

from typing import Dict, List, Optional, Set

from .base import KeyValueStore


class InMemoryStore(KeyValueStore):
    """Dictionary-backed store honouring a per-value ceiling.

    ``failing_gets``/``failing_sets``/``failing_removes`` hold keys whose
    operations fail (reads return ``None``, writes return ``False``);
    ``raising_gets`` holds keys whose reads raise ``ConnectionError``.
    """

    name = "memory"

    def __init__(self, max_value_bytes: Optional[int] = None, available: bool = True):
        self.max_value_bytes = max_value_bytes
        self.available = available
        self.data: Dict[str, str] = {}
        self.failing_gets: Set[str] = set()
        self.raising_gets: Set[str] = set()
        self.failing_sets: Set[str] = set()
        self.failing_removes: Set[str] = set()

    async def is_available(self) -> bool:
        return self.available

    async def get(self, key: str) -> Optional[str]:
        if key in self.raising_gets:
            raise ConnectionError(f"read of {key} failed")
        if key in self.failing_gets:
            return None
        return self.data.get(key)

    async def set(self, key: str, value: str) -> bool:
        if key in self.failing_sets or not self.fits(value):
            return False
        self.data[key] = value
        return True

    async def remove(self, key: str) -> bool:
        if key in self.failing_removes:
            return False
        self.data.pop(key, None)
        return True

    async def list_keys(self) -> List[str]:
        return list(self.data)
