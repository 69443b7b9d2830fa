"""
Storage package for the inventory cache.

- base: the asynchronous key-value contract both stores implement.
- redis_store: primary store with a per-value size ceiling.
- memory_store: in-process store for local runs and tests.
- fallback: unconstrained JSON-file store used when the primary is down.
"""

from .base import KeyValueStore
from .fallback import FileFallbackStore
from .memory_store import InMemoryStore
from .redis_store import RedisBackingStore

__all__ = ["KeyValueStore", "FileFallbackStore", "InMemoryStore", "RedisBackingStore"]
