"""Dense matrix input type.

This module provides the uniform input representation for training and
inference.

Types:
    - Matrix: Immutable row-major view over a flat numeric buffer
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Any

import numpy as np
import pandas as pd
from numpy.typing import ArrayLike, NDArray

from budgetboost.exceptions import ShapeMismatchError

__all__: list[str] = [
    "Matrix",
    "as_matrix",
    "as_vector",
]


# =============================================================================
# DataFrame extraction utilities
# =============================================================================


def _is_pandas_dataframe(obj: object) -> bool:
    """Check if object is a pandas DataFrame."""
    return isinstance(obj, pd.DataFrame)


def _extract_pandas_dataframe(df: pd.DataFrame) -> tuple[NDArray[np.float64], list[str]]:
    """Extract a float64 array and column names from a pandas DataFrame.

    Categorical columns are replaced by their integer codes, with pandas'
    ``-1`` "no category" code mapped to NaN.
    """
    feature_names = [str(c) for c in df.columns]
    columns: list[NDArray[np.float64]] = []
    for name in df.columns:
        col = df[name]
        if isinstance(col.dtype, pd.CategoricalDtype):
            codes = col.cat.codes.to_numpy().astype(np.float64)
            codes[codes < 0] = np.nan
            columns.append(codes)
        else:
            columns.append(col.to_numpy(dtype=np.float64, na_value=np.nan))
    values = np.column_stack(columns) if columns else np.empty((len(df), 0), dtype=np.float64)
    return np.ascontiguousarray(values, dtype=np.float64), feature_names


# =============================================================================
# Matrix
# =============================================================================


class Matrix:
    """Immutable row-major view over a flat ``float64`` buffer.

    A matrix is a flat buffer plus explicit row and column counts. Entries
    equal to the ``missing`` sentinel (and NaN, always) are treated as absent.

    Args:
        data: Flat buffer of length ``rows * cols`` in row-major order.
        rows: Number of rows.
        cols: Number of columns.
        missing: Sentinel value marking absent entries. Defaults to NaN.
        feature_names: Optional column names.

    Raises:
        ShapeMismatchError: If ``len(data) != rows * cols``.

    Example:
        >>> import numpy as np
        >>> from budgetboost import Matrix
        >>> m = Matrix(np.arange(6.0), rows=3, cols=2)
        >>> m.values[1]
        array([2., 3.])
    """

    __slots__ = ("_data", "_values", "cols", "feature_names", "missing", "rows")

    def __init__(
        self,
        data: ArrayLike,
        rows: int,
        cols: int,
        missing: float = math.nan,
        feature_names: Sequence[str] | None = None,
    ) -> None:
        flat = np.asarray(data, dtype=np.float64).ravel()
        if rows < 0 or cols < 0:
            raise ShapeMismatchError(f"matrix shape must be non-negative, got ({rows}, {cols})")
        if flat.shape[0] != rows * cols:
            raise ShapeMismatchError(
                f"buffer length {flat.shape[0]} does not match shape ({rows}, {cols})",
                expected=rows * cols,
                actual=flat.shape[0],
            )
        if feature_names is not None and len(feature_names) != cols:
            raise ShapeMismatchError(
                f"got {len(feature_names)} feature names for {cols} columns",
                expected=cols,
                actual=len(feature_names),
            )
        # A view keeps the caller's array writeable while ours is not.
        view = np.ascontiguousarray(flat).view()
        view.flags.writeable = False
        self._data = view
        self._values = view.reshape(rows, cols)
        self.rows = int(rows)
        self.cols = int(cols)
        self.missing = float(missing)
        self.feature_names = list(feature_names) if feature_names is not None else None

    @classmethod
    def from_array(cls, X: Any, missing: float = math.nan) -> Matrix:  # noqa: N803
        """Build a matrix from a 2D numpy array, pandas DataFrame or nested sequence.

        Raises:
            ShapeMismatchError: If the input is not two dimensional.
            TypeError: If the input cannot be converted to a float array.
        """
        if isinstance(X, Matrix):
            return X
        if _is_pandas_dataframe(X):
            values, names = _extract_pandas_dataframe(X)
            return cls(values, values.shape[0], values.shape[1], missing=missing, feature_names=names)
        try:
            arr = np.asarray(X, dtype=np.float64)
        except (ValueError, TypeError) as e:
            raise TypeError(
                f"Cannot convert {type(X).__name__} to feature array. "
                "Expected numpy array, pandas DataFrame, or array-like."
            ) from e
        if arr.ndim != 2:
            raise ShapeMismatchError(f"features must be 2D array, got {arr.ndim}D", expected=2, actual=arr.ndim)
        return cls(arr, arr.shape[0], arr.shape[1], missing=missing)

    @property
    def data(self) -> NDArray[np.float64]:
        """Flat read-only buffer."""
        return self._data

    @property
    def values(self) -> NDArray[np.float64]:
        """Read-only ``(rows, cols)`` view of the buffer."""
        return self._values

    @property
    def shape(self) -> tuple[int, int]:
        """``(rows, cols)``."""
        return (self.rows, self.cols)

    def missing_mask(self) -> NDArray[np.bool_]:
        """Boolean ``(rows, cols)`` mask of absent entries."""
        mask = np.isnan(self._values)
        if not math.isnan(self.missing):
            mask |= self._values == self.missing
        return mask

    def get_col(self, j: int) -> NDArray[np.float64]:
        """Column ``j`` as a read-only strided view."""
        return self._values[:, j]

    def get_row(self, i: int) -> NDArray[np.float64]:
        """Row ``i`` as a read-only view."""
        return self._values[i]

    def take_rows(self, index: NDArray[np.intp]) -> Matrix:
        """New matrix holding the selected rows, in the given order."""
        sub = self._values[index]
        return Matrix(sub, sub.shape[0], self.cols, missing=self.missing, feature_names=self.feature_names)

    def __len__(self) -> int:
        return self.rows

    def __repr__(self) -> str:
        return f"Matrix(rows={self.rows}, cols={self.cols}, missing={self.missing})"


def as_matrix(X: Any, missing: float = math.nan) -> Matrix:  # noqa: N803
    """Coerce ``X`` into a :class:`Matrix`, re-tagging the missing sentinel if needed."""
    if isinstance(X, Matrix):
        same = X.missing == missing or (math.isnan(X.missing) and math.isnan(missing))
        if same:
            return X
        return Matrix(X.data, X.rows, X.cols, missing=missing, feature_names=X.feature_names)
    return Matrix.from_array(X, missing=missing)


def as_vector(v: Any, n_rows: int, name: str) -> NDArray[np.float64]:
    """Coerce a label or weight vector and check its length against ``n_rows``.

    Raises:
        ShapeMismatchError: If the vector is not 1D or its length differs from ``n_rows``.
        ValueError: If the vector contains NaN or Inf values.
    """
    arr = np.asarray(v, dtype=np.float64)
    if arr.ndim != 1:
        raise ShapeMismatchError(f"{name} must be 1D array, got {arr.ndim}D", expected=1, actual=arr.ndim)
    if arr.shape[0] != n_rows:
        raise ShapeMismatchError(
            f"{name} shape mismatch: expected {n_rows} samples, got {arr.shape[0]}",
            expected=n_rows,
            actual=arr.shape[0],
        )
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} contain NaN or Inf values")
    return arr
