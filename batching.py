"""Fixed-size batching of validator identifiers."""

from typing import List, Sequence, TypeVar

T = TypeVar('T')


def chunk(items: Sequence[T], max_size: int) -> List[List[T]]:
    """Split items into contiguous batches of at most max_size, keeping order."""
    if max_size <= 0:
        raise ValueError(f"max_size must be positive, got {max_size}")

    items = list(items)
    return [items[i:i + max_size] for i in range(0, len(items), max_size)]
