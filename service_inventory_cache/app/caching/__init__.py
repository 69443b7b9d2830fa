"""
Inventory caching package.

Splits large collections into chunks sized for a constrained key-value
store, publishes them behind a versioned metadata pointer, expires them by
TTL and evicts the least recently written owners once the resident budget
is exceeded.
"""

from .controller import CacheService
from .models import CacheResult, CacheStats, CacheWriteReport, EvictionReport, ReadStatus, StorageMode

__all__ = [
    "CacheService",
    "CacheResult",
    "CacheStats",
    "CacheWriteReport",
    "EvictionReport",
    "ReadStatus",
    "StorageMode",
]
