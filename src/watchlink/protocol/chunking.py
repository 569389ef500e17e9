"""Split update images into fixed-size chunks."""

from __future__ import annotations

from typing import Iterator

from .services import MAX_CHUNK_SIZE


def _check_chunk_size(chunk_size: int) -> None:
    if not 0 < chunk_size <= MAX_CHUNK_SIZE:
        raise ValueError(f"Chunk size {chunk_size} out of range (1-{MAX_CHUNK_SIZE})")


def chunk_count(total_size: int, chunk_size: int) -> int:
    """Number of chunks needed to carry total_size bytes."""
    _check_chunk_size(chunk_size)
    return -(-total_size // chunk_size)


def chunk_bounds(index: int, total_size: int, chunk_size: int) -> tuple[int, int]:
    """Byte range [start, end) covered by one chunk.

    Raises:
        IndexError: If index is outside the image
    """
    count = chunk_count(total_size, chunk_size)
    if not 0 <= index < count:
        raise IndexError(f"Chunk index {index} out of range (0-{count - 1})")
    start = index * chunk_size
    return start, min(start + chunk_size, total_size)


def iter_chunks(data: bytes, chunk_size: int, start_index: int = 0) -> Iterator[tuple[int, bytes]]:
    """Yield (index, payload) pairs starting at start_index."""
    _check_chunk_size(chunk_size)
    for index in range(start_index, chunk_count(len(data), chunk_size)):
        start = index * chunk_size
        yield index, data[start:start + chunk_size]
