"""Sorted time-series helpers shared by the store's collections."""

from bisect import bisect_left
from collections.abc import Callable
from datetime import datetime
from typing import TypeVar

T = TypeVar("T")


def upsert_sorted(series: list[T], item: T, key: Callable[[T], datetime]) -> bool:
    """Insert ``item`` keeping ``series`` ascending by ``key``.

    An element with exactly the same key is replaced.

    Returns:
        ``True`` if an existing element was replaced.
    """
    ts = key(item)
    idx = bisect_left(series, ts, key=key)
    if idx < len(series) and key(series[idx]) == ts:
        series[idx] = item
        return True
    series.insert(idx, item)
    return False


def prune_before(series: list[T], cutoff: datetime, key: Callable[[T], datetime]) -> int:
    """Drop elements older than ``cutoff`` in place, always keeping the newest one.

    Returns:
        Number of elements removed.
    """
    if len(series) <= 1:
        return 0
    idx = bisect_left(series, cutoff, key=key)
    idx = min(idx, len(series) - 1)
    if idx:
        del series[:idx]
    return idx


def trim_to(series: list[T], max_len: int, keep: int) -> int:
    """Once ``series`` exceeds ``max_len``, keep only its newest ``keep`` elements."""
    if len(series) <= max_len:
        return 0
    removed = len(series) - keep
    del series[:removed]
    return removed
