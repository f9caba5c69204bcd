"""Helper functions for chunking row sequences."""
from collections.abc import Iterator


def chunk_ranges(total: int, size: int) -> Iterator[tuple[int, int]]:
    """Yield half-open ``(start, end)`` offsets that partition ``range(total)``."""
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    for start in range(0, total, size):
        yield start, min(start + size, total)
