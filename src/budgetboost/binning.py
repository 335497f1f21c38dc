"""Histogram binning of training features.

Bin 0 of every feature holds missing values. Numeric features use bins
``1..len(cuts) + 1`` where a value ``v`` falls in bin ``searchsorted(cuts, v,
side="right") + 1``; this makes ``bin <= b`` equivalent to ``v < cuts[b - 1]``
so a split found on bins maps to an exact raw-value threshold. Categorical
features map each distinct category to its own bin.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
from numpy.typing import NDArray

from budgetboost.data import Matrix

__all__: list[str] = [
    "BinnedData",
    "FeatureBins",
    "bin_matrix",
]

logger = logging.getLogger(__name__)


@dataclass
class FeatureBins:
    """Bin layout for one feature."""

    n_bins: int
    cuts: NDArray[np.float64] = field(default_factory=lambda: np.empty(0))
    categories: NDArray[np.float64] | None = None

    @property
    def is_categorical(self) -> bool:
        return self.categories is not None

    def threshold(self, bin_index: int) -> float:
        """Raw threshold equivalent to "bin <= bin_index" for a numeric feature."""
        return float(self.cuts[bin_index - 1])


@dataclass
class BinnedData:
    """Binned training matrix.

    Attributes:
        bins: ``(rows, cols)`` bin indices.
        offset_bins: ``bins`` shifted by each feature's offset into the flat histogram.
        features: Per-feature bin layouts.
        offsets: Start of each feature in the flat histogram (length ``cols + 1``).
        missing: ``(rows, cols)`` missing mask.
    """

    bins: NDArray[np.int32]
    offset_bins: NDArray[np.int64]
    features: list[FeatureBins]
    offsets: NDArray[np.int64]
    missing: NDArray[np.bool_]

    @property
    def n_total_bins(self) -> int:
        return int(self.offsets[-1])

    @property
    def n_features(self) -> int:
        return len(self.features)


def _numeric_cuts(values: NDArray[np.float64], max_bin: int) -> NDArray[np.float64]:
    unique = np.unique(values)
    if unique.size <= 1:
        return np.empty(0, dtype=np.float64)
    # One bin per distinct value when they fit, quantile boundaries otherwise.
    if unique.size <= max_bin - 1:
        return unique[1:]
    qs = np.linspace(0.0, 1.0, max_bin)[1:-1]
    cuts = np.unique(np.quantile(values, qs, method="higher"))
    return cuts[cuts > unique[0]]


def _bin_feature(
    col: NDArray[np.float64],
    miss: NDArray[np.bool_],
    max_bin: int,
    categorical: bool,
    index: int,
) -> tuple[FeatureBins, NDArray[np.int32]]:
    present = col[~miss]
    out = np.zeros(col.shape[0], dtype=np.int32)
    if categorical:
        categories = np.unique(present)
        if categories.size <= max_bin - 1:
            out[~miss] = np.searchsorted(categories, present).astype(np.int32) + 1
            return FeatureBins(n_bins=categories.size + 1, categories=categories), out
        logger.warning(
            "Feature %d has %d categories, more than max_bin - 1 = %d; treating it as numeric",
            index,
            categories.size,
            max_bin - 1,
        )
    cuts = _numeric_cuts(present, max_bin) if present.size else np.empty(0, dtype=np.float64)
    out[~miss] = np.searchsorted(cuts, present, side="right").astype(np.int32) + 1
    return FeatureBins(n_bins=cuts.size + 2, cuts=cuts), out


def bin_matrix(data: Matrix, max_bin: int, categorical_features: set[int] | None = None) -> BinnedData:
    """Bin every feature of ``data`` into at most ``max_bin`` value buckets plus a missing bucket."""
    categorical_features = categorical_features or set()
    missing = data.missing_mask()
    values = data.values
    features: list[FeatureBins] = []
    bins = np.zeros((data.rows, data.cols), dtype=np.int32)
    for j in range(data.cols):
        fb, col_bins = _bin_feature(values[:, j], missing[:, j], max_bin, j in categorical_features, j)
        features.append(fb)
        bins[:, j] = col_bins
    offsets = np.zeros(data.cols + 1, dtype=np.int64)
    offsets[1:] = np.cumsum([fb.n_bins for fb in features])
    offset_bins = bins.astype(np.int64) + offsets[:-1]
    return BinnedData(bins=bins, offset_bins=offset_bins, features=features, offsets=offsets, missing=missing)
