"""
Unconstrained local fallback store backed by a JSON file.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Union

from shared.logging import get_logger
from .base import KeyValueStore


class FileFallbackStore(KeyValueStore):
    """
    Degraded substitute used when the primary store is unavailable.

    Every key lives in a single JSON object on disk. There is no value
    ceiling and no eviction; the file is rewritten atomically on each change.
    A missing or unreadable file starts the store empty.
    """

    name = "fallback"
    max_value_bytes = None

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self._data: Optional[Dict[str, str]] = None
        self.logger = get_logger("inventory_cache.store.fallback")

    async def is_available(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            data = await self._ensure_loaded()
            return data.get(key)

    async def set(self, key: str, value: str) -> bool:
        async with self._lock:
            data = await self._ensure_loaded()
            previous = data.get(key)
            data[key] = value
            if await self._flush(data):
                return True
            if previous is None:
                data.pop(key, None)
            else:
                data[key] = previous
            return False

    async def remove(self, key: str) -> bool:
        async with self._lock:
            data = await self._ensure_loaded()
            if key not in data:
                return True
            previous = data.pop(key)
            if await self._flush(data):
                return True
            data[key] = previous
            return False

    async def list_keys(self) -> List[str]:
        async with self._lock:
            data = await self._ensure_loaded()
            return list(data)

    async def _ensure_loaded(self) -> Dict[str, str]:
        if self._data is None:
            self._data = await asyncio.to_thread(self._load)
        return self._data

    def _load(self) -> Dict[str, str]:
        """Read JSON payload from disk. Returns an empty mapping on failure."""
        if not self._path.exists():
            return {}

        try:
            with self._path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (ValueError, OSError) as e:
            self.logger.warning("Fallback file unreadable, starting empty", path=str(self._path), error=str(e))
            return {}

        if not isinstance(payload, dict):
            self.logger.warning("Fallback file has unexpected shape, starting empty", path=str(self._path))
            return {}
        return {str(key): value for key, value in payload.items() if isinstance(value, str)}

    async def _flush(self, data: Dict[str, str]) -> bool:
        try:
            await asyncio.to_thread(self._write, dict(data))
            return True
        except OSError as e:
            self.logger.error("Failed to persist fallback store", path=str(self._path), error=str(e))
            return False

    def _write(self, data: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self._path.parent), prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle)
            os.replace(tmp_name, self._path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
