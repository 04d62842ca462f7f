# =============================================================================
# core/batching.py  —  Chunking for kintone's Per-Call Caps
# =============================================================================
#
# kintone caps how many items a single call may carry:
#   - 100 records per bulk create/update, 100 per bulk status update
#   - 500 records per search page
#
# Batches above the cap are split into slices of exactly the cap size
# (the last slice holds the remainder) and sent ONE AT A TIME, in order.
# Keeping the slicing here means the chunk boundaries can be tested
# without any HTTP at all.
# =============================================================================

from collections.abc import Iterator, Sequence
from typing import TypeVar

T = TypeVar("T")

RECORDS_PER_WRITE = 100
STATUSES_PER_WRITE = 100
RECORDS_PER_PAGE = 500


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive slices of `items`, each `size` long except the last.

    An empty input yields nothing.
    """
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])
