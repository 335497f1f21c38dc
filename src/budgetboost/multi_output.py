"""Independent boosters for multi-column targets.

Each output column gets its own :class:`~budgetboost.booster.Booster` built
from a copy of one configuration template. Boosters never see each other's
residuals, so column ``i`` of :meth:`MultiOutputBooster.predict` is exactly what
a standalone booster fitted on label column ``i`` would predict.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Self

import numpy as np
from numpy.typing import NDArray

from budgetboost import persist
from budgetboost.booster import Booster
from budgetboost.config import BoosterConfig
from budgetboost.data import as_matrix
from budgetboost.exceptions import DeserializationError, KeyNotFoundError, ShapeMismatchError
from budgetboost.persist.schema import MultiOutputSchema
from budgetboost.utils import parallel_map, resolve_threads

__all__: list[str] = [
    "MultiOutputBooster",
]

logger = logging.getLogger(__name__)

MODEL_TYPE = "multi_output_booster"


def _check_n_boosters(n_boosters: int) -> None:
    if n_boosters < 1:
        raise ValueError(f"n_boosters must be at least 1, got {n_boosters}")


class MultiOutputBooster:
    """One booster per output column.

    Args:
        n_boosters: Number of output columns.
        config: Template configuration, copied into every booster.
        **params: Configuration fields applied on top of ``config``.

    Attributes:
        n_boosters: Number of outputs.
        boosters: The per-column boosters, in label-column order.
        metadata: Free-form string key/value store saved with the model.
    """

    def __init__(self, n_boosters: int, config: BoosterConfig | None = None, **params: Any) -> None:
        _check_n_boosters(n_boosters)
        template = Booster(config, **params)
        self.n_boosters = n_boosters
        self.boosters = [Booster(template.config) for _ in range(n_boosters)]
        self.metadata: dict[str, str] = {}

    def __repr__(self) -> str:
        return f"MultiOutputBooster(n_boosters={self.n_boosters}, objective={self.config.objective.value})"

    @property
    def config(self) -> BoosterConfig:
        return self.boosters[0].config

    @property
    def is_fitted(self) -> bool:
        return all(b.is_fitted for b in self.boosters)

    @property
    def number_of_trees(self) -> list[int]:
        return [b.number_of_trees for b in self.boosters]

    @property
    def base_score(self) -> list[float]:
        return [b.base_score for b in self.boosters]

    def get_params(self) -> dict[str, Any]:
        return self.config.to_params()

    def set_params(self, **params: Any) -> Self:
        """Apply the same parameter changes to every booster."""
        for booster in self.boosters:
            booster.set_params(**params)
        return self

    def set_n_boosters(self, n_boosters: int) -> Self:
        """Resize to ``n_boosters`` outputs.

        Every booster is rebuilt unfitted from the current configuration, so
        trees learned so far are discarded. Metadata is kept.
        """
        _check_n_boosters(n_boosters)
        config = self.config
        self.n_boosters = n_boosters
        self.boosters = [Booster(config) for _ in range(n_boosters)]
        return self

    def _labels(self, y: Any, n_rows: int) -> NDArray[np.float64]:
        labels = np.asarray(y, dtype=np.float64)
        if labels.ndim == 1 and self.n_boosters == 1:
            labels = labels[:, None]
        if labels.ndim != 2 or labels.shape != (n_rows, self.n_boosters):  # noqa: PLR2004
            raise ShapeMismatchError(
                f"labels must have shape ({n_rows}, {self.n_boosters}), got {labels.shape}",
                expected=(n_rows, self.n_boosters),
                actual=labels.shape,
            )
        return labels

    def _map(self, fn: Any, parallel: bool) -> list[Any]:
        n_threads = resolve_threads(self.config.num_threads)
        return parallel_map(fn, range(self.n_boosters), n_threads, parallel=parallel)

    # -------------------------------------------------------------------------
    # Training and prediction
    # -------------------------------------------------------------------------

    def fit(
        self,
        X: Any,  # noqa: N803
        y: Any,
        sample_weight: Any = None,
        parallel: bool = False,
    ) -> Self:
        """Fit booster ``i`` on label column ``i``.

        Args:
            X: Training features shared by every output.
            y: ``(rows, n_boosters)`` labels.
            sample_weight: Optional row weights shared by every output.
            parallel: Fit boosters concurrently.
        """
        data = as_matrix(X, self.config.missing)
        labels = self._labels(y, data.rows)

        def fit_one(i: int) -> None:
            self.boosters[i].fit(data, labels[:, i], sample_weight=sample_weight)

        self._map(fit_one, parallel)
        logger.info("Fitted %d boosters with %s trees", self.n_boosters, self.number_of_trees)
        return self

    def prune(self, X: Any, y: Any, sample_weight: Any = None, parallel: bool = False) -> Self:  # noqa: N803
        """Prune booster ``i`` against label column ``i``."""
        data = as_matrix(X, self.config.missing)
        labels = self._labels(y, data.rows)

        def prune_one(i: int) -> None:
            self.boosters[i].prune(data, labels[:, i], sample_weight=sample_weight)

        self._map(prune_one, parallel)
        return self

    def predict(self, X: Any, parallel: bool = True) -> NDArray[np.float64]:  # noqa: N803
        """``(rows, n_boosters)`` raw scores, one column per output."""
        data = as_matrix(X, self.config.missing)
        cols = self._map(lambda i: self.boosters[i].predict(data, parallel=False), parallel)
        return np.column_stack(cols)

    def predict_proba(self, X: Any, parallel: bool = True) -> NDArray[np.float64]:  # noqa: N803
        """``(rows, n_boosters)`` positive-class probabilities (``LogLoss`` only)."""
        data = as_matrix(X, self.config.missing)
        cols = self._map(lambda i: self.boosters[i].predict_proba(data, parallel=False), parallel)
        return np.column_stack(cols)

    def calculate_feature_importance(self, method: str = "Gain", normalize: bool = True) -> list[dict[int, float]]:
        """Feature importance of every booster."""
        return [b.calculate_feature_importance(method, normalize=normalize) for b in self.boosters]

    def text_dump(self) -> list[list[str]]:
        return [b.text_dump() for b in self.boosters]

    # -------------------------------------------------------------------------
    # Metadata and serialization
    # -------------------------------------------------------------------------

    def insert_metadata(self, key: str, value: str) -> None:
        if not isinstance(key, str) or not isinstance(value, str):
            raise TypeError("metadata keys and values must be strings")
        self.metadata[key] = value

    def get_metadata(self, key: str) -> str:
        try:
            return self.metadata[key]
        except KeyError:
            raise KeyNotFoundError(key) from None

    def json_dump(self) -> str:
        schema = MultiOutputSchema(
            n_boosters=self.n_boosters,
            boosters=[b.to_schema() for b in self.boosters],
            metadata=dict(self.metadata),
        )
        return persist.dumps(MODEL_TYPE, schema)

    @classmethod
    def from_json(cls, json_str: str | bytes) -> MultiOutputBooster:
        schema = persist.loads(json_str, MultiOutputSchema, MODEL_TYPE)
        if schema.n_boosters != len(schema.boosters) or schema.n_boosters < 1:
            raise DeserializationError(
                f"Model declares {schema.n_boosters} boosters but holds {len(schema.boosters)}"
            )
        boosters = [Booster.from_schema(b) for b in schema.boosters]
        model = cls(schema.n_boosters, boosters[0].config)
        model.boosters = boosters
        model.metadata = dict(schema.metadata)
        return model

    def save_booster(self, path: str | os.PathLike[str]) -> None:
        persist.write_file(path, self.json_dump())

    @classmethod
    def load_booster(cls, path: str | os.PathLike[str]) -> MultiOutputBooster:
        return cls.from_json(persist.read_file(path))
