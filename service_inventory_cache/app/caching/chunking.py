"""
Pure split/reconstruct logic for ordered collections.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Sequence

from shared.errors import ValidationError


@dataclass(frozen=True)
class Chunk:
    """One fixed-size slice of an ordered collection."""
    owner_key: str
    chunk_index: int
    total_chunks: int
    items: List[Any] = field(default_factory=list)
    timestamp: int = 0
    version: int = 0


def chunk_count(item_count: int, chunk_size: int) -> int:
    """Number of chunks needed for ``item_count`` items: ceil(count / size)."""
    if chunk_size < 1:
        raise ValidationError("chunk_size must be at least 1", details={"chunk_size": chunk_size})
    return -(-item_count // chunk_size)


def split(
    items: Sequence[Any],
    chunk_size: int,
    *,
    owner_key: str = "",
    version: int = 0,
    timestamp: int = 0,
) -> List[Chunk]:
    """
    Split ``items`` into consecutive chunks of at most ``chunk_size`` items.

    Concatenating the chunks' items in index order yields ``items`` again;
    an empty sequence yields no chunks.
    """
    total = chunk_count(len(items), chunk_size)
    return [
        Chunk(
            owner_key=owner_key,
            chunk_index=index,
            total_chunks=total,
            items=list(items[index * chunk_size:(index + 1) * chunk_size]),
            timestamp=timestamp,
            version=version,
        )
        for index in range(total)
    ]


def reconstruct(chunks: Iterable[Chunk]) -> List[Any]:
    """Concatenate chunk items ordered by ``chunk_index``, whatever the input order."""
    items: List[Any] = []
    for chunk in sorted(chunks, key=lambda c: c.chunk_index):
        items.extend(chunk.items)
    return items


def missing_indices(chunks: Iterable[Chunk], total_chunks: int) -> List[int]:
    """Indices in ``[0, total_chunks)`` not covered by ``chunks``."""
    present = {chunk.chunk_index for chunk in chunks}
    return [index for index in range(total_chunks) if index not in present]
