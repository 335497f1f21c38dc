"""Numeric and threading helpers shared by the engine."""

from __future__ import annotations

import os
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

import numpy as np
from numpy.typing import ArrayLike, NDArray

from budgetboost.exceptions import ShapeMismatchError

__all__: list[str] = [
    "chunk_ranges",
    "parallel_map",
    "percentiles",
    "resolve_threads",
]

T = TypeVar("T")
R = TypeVar("R")


def percentiles(
    v: ArrayLike,
    sample_weight: ArrayLike | None,
    percentiles_: ArrayLike,
) -> NDArray[np.float64]:
    """Weighted percentiles of ``v``.

    For each requested percentile ``p`` in ``[0, 1]`` returns the smallest value
    whose cumulative weight reaches ``p`` of the total weight.

    Args:
        v: Values.
        sample_weight: Non-negative weight per value, or None for unit weights.
        percentiles_: Percentiles in ``[0, 1]``.

    Returns:
        Array with one value per requested percentile.

    Raises:
        ShapeMismatchError: If weights and values differ in length.
        ValueError: If ``v`` is empty or a percentile is outside ``[0, 1]``.
    """
    values = np.asarray(v, dtype=np.float64).ravel()
    pct = np.atleast_1d(np.asarray(percentiles_, dtype=np.float64))
    if values.size == 0:
        raise ValueError("percentiles requires at least one value")
    if np.any((pct < 0) | (pct > 1)):
        raise ValueError(f"percentiles must lie in [0, 1], got {pct.tolist()}")
    if sample_weight is None:
        weights = np.ones_like(values)
    else:
        weights = np.asarray(sample_weight, dtype=np.float64).ravel()
        if weights.shape != values.shape:
            raise ShapeMismatchError(
                f"sample_weight length {weights.shape[0]} does not match values length {values.shape[0]}",
                expected=values.shape[0],
                actual=weights.shape[0],
            )

    order = np.argsort(values, kind="stable")
    sorted_values = values[order]
    cum = np.cumsum(weights[order])
    total = cum[-1]
    idx = np.searchsorted(cum, pct * total, side="left")
    idx = np.clip(idx, 0, sorted_values.size - 1)
    return sorted_values[idx]


def resolve_threads(num_threads: int | None) -> int:
    """Worker count for a configured thread count (None means all cores)."""
    if num_threads is None:
        return max(os.cpu_count() or 1, 1)
    return max(int(num_threads), 1)


def chunk_ranges(n: int, n_chunks: int) -> list[tuple[int, int]]:
    """Split ``range(n)`` into at most ``n_chunks`` contiguous ``(start, stop)`` ranges."""
    n_chunks = max(min(n_chunks, n), 1)
    bounds = np.linspace(0, n, n_chunks + 1).astype(int)
    return [(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:], strict=True) if b > a]


def parallel_map(
    fn: Callable[[T], R],
    items: Sequence[T],
    n_threads: int,
    *,
    parallel: bool = True,
) -> list[R]:
    """Apply ``fn`` to ``items`` preserving order, on a thread pool when worthwhile.

    numpy kernels release the GIL, so threads give real speedups for the
    histogram and traversal work done here.
    """
    if not parallel or n_threads <= 1 or len(items) <= 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=min(n_threads, len(items))) as pool:
        return list(pool.map(fn, items))
