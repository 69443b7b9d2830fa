"""
Key naming for cached collections.

    <ns>_meta_<owner>                      chunked-mode metadata pointer
    <ns>_cache_<owner>                     direct-mode value (metadata embedded)
    <ns>_chunk_<owner>_<version>_<index>   one chunk of a chunked collection

Owner keys may contain underscores, so chunk keys are parsed from the right.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class KeyKind(str, Enum):
    """Physical key classes under the cache namespace."""
    METADATA = "meta"
    DIRECT = "cache"
    CHUNK = "chunk"


@dataclass(frozen=True)
class ParsedKey:
    """A key split into its components."""
    key: str
    kind: KeyKind
    owner_key: str
    version: Optional[int] = None
    chunk_index: Optional[int] = None


class KeySchema:
    """Builds and classifies keys for one namespace."""

    def __init__(self, namespace: str = "inv"):
        self.namespace = namespace
        self.meta_prefix = f"{namespace}_{KeyKind.METADATA.value}_"
        self.direct_prefix = f"{namespace}_{KeyKind.DIRECT.value}_"
        self.chunk_prefix = f"{namespace}_{KeyKind.CHUNK.value}_"

    def metadata_key(self, owner_key: str) -> str:
        return f"{self.meta_prefix}{owner_key}"

    def direct_key(self, owner_key: str) -> str:
        return f"{self.direct_prefix}{owner_key}"

    def chunk_key(self, owner_key: str, version: int, chunk_index: int) -> str:
        return f"{self.chunk_prefix}{owner_key}_{version}_{chunk_index}"

    def owns(self, key: str) -> bool:
        """Whether ``key`` lives under this namespace."""
        return self.parse(key) is not None

    def parse(self, key: str) -> Optional[ParsedKey]:
        """Classify a key, returning ``None`` for foreign or malformed keys."""
        if key.startswith(self.meta_prefix):
            owner = key[len(self.meta_prefix):]
            return ParsedKey(key, KeyKind.METADATA, owner) if owner else None

        if key.startswith(self.direct_prefix):
            owner = key[len(self.direct_prefix):]
            return ParsedKey(key, KeyKind.DIRECT, owner) if owner else None

        if key.startswith(self.chunk_prefix):
            parts = key[len(self.chunk_prefix):].rsplit("_", 2)
            if len(parts) != 3 or not parts[0]:
                return None
            owner, version, index = parts
            if not (version.isdigit() and index.isdigit()):
                return None
            return ParsedKey(key, KeyKind.CHUNK, owner, int(version), int(index))

        return None
