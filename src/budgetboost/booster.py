"""Single-output budget-driven gradient boosting.

A :class:`Booster` trains an additive tree ensemble without a tree count or a
learning rate. The ``budget`` fixes the step size ``eta = 10 ** -budget`` and
how long training runs: every round spends ``eta * tau / (r + tau)`` of the
budget, where ``r`` is the relative training-loss reduction the round achieved
and ``tau = eta / 100``. Rounds that still improve the fit are almost free;
rounds that stall cost up to ``eta``. Training stops once the spent amount
reaches ``budget``, or earlier when an iteration, time, memory or
early-stopping limit is hit. Hitting a limit is not an error: the trees built
so far are kept.

Example:
    >>> import numpy as np
    >>> from budgetboost import Booster
    >>> rng = np.random.default_rng(0)
    >>> X = rng.standard_normal((200, 4))
    >>> y = X[:, 0] * 2 + rng.standard_normal(200) * 0.1
    >>> model = Booster(objective="SquaredLoss", budget=0.5).fit(X, y)
    >>> model.predict(X).shape
    (200,)
"""

from __future__ import annotations

import logging
import math
import copy
import os
import time
from enum import Enum
from typing import Any, Self, TypeVar

import numpy as np
from numpy.typing import NDArray
from pydantic import ValidationError

from budgetboost import conformal, persist
from budgetboost.binning import bin_matrix
from budgetboost.builder import TreeBuilder
from budgetboost.config import BoosterConfig, config_error
from budgetboost.contributions import predict_contributions
from budgetboost.data import Matrix, as_matrix, as_vector
from budgetboost.exceptions import (
    DeserializationError,
    KeyNotFoundError,
    NotCalibratedError,
    NotFittedError,
    ShapeMismatchError,
    UnsupportedOperationError,
)
from budgetboost.objectives import Loss, Objective, get_loss
from budgetboost.persist.schema import BoosterSchema, CalibrationSchema, EnsembleSchema
from budgetboost.tree import Ensemble, Tree
from budgetboost.types import CONTRIBUTION_METHODS, IMPORTANCE_METHODS, ContributionMethod, ImportanceMethod
from budgetboost.utils import resolve_threads

__all__: list[str] = [
    "Booster",
    "BoosterState",
]

logger = logging.getLogger(__name__)

FloatArray = NDArray[np.float64]

# Ceiling on boosting rounds regardless of budget.
MAX_ITERATIONS = 10_000
# Share of training rows held out for early stopping when no evaluation data is given.
HOLDOUT_FRACTION = 0.1
MIN_HOLDOUT_ROWS = 20
SEED = 0
MODEL_TYPE = "booster"


class BoosterState(str, Enum):
    """Lifecycle of a booster."""

    UNFIT = "unfit"
    FITTING = "fitting"
    FIT = "fit"
    PRUNED = "pruned"


M = TypeVar("M", bound=str)


def _normalize_method(method: str, table: dict[str, M], kind: str) -> M:
    if method in table.values():
        return method  # type: ignore[return-value]
    found = table.get(str(method).lower())
    if found is None:
        valid = ", ".join(sorted(set(table.values())))
        raise ValueError(f"Unknown {kind} method {method!r}, expected one of: {valid}")
    return found


class Booster:
    """Gradient boosted decision trees trained against a budget.

    Args:
        config: A ready configuration. Keyword parameters are applied on top of it.
        **params: Any :class:`~budgetboost.config.BoosterConfig` field.

    Raises:
        ConfigError: If a parameter is unknown or invalid.

    Attributes:
        config: Live configuration; change it with :meth:`set_params`.
        ensemble: Trained trees and base score.
        metadata: Free-form string key/value store saved with the model.
        state: Lifecycle state.
        n_features: Column count seen at fit time.
        feature_names: Column names when fitted on a DataFrame.
        calibration: Conformal calibration, once :meth:`calibrate` has run.
        evaluation_history: Validation loss after each round of the last fit.
    """

    def __init__(self, config: BoosterConfig | None = None, **params: Any) -> None:
        if config is None:
            config = BoosterConfig.from_params(**params)
        elif params:
            config = BoosterConfig.from_params(**{**config.to_params(), **params})
        else:
            config = config.model_copy(deep=True)
        self.config = config
        self.ensemble = Ensemble()
        self.metadata: dict[str, str] = {}
        self.state = BoosterState.UNFIT
        self.n_features: int | None = None
        self.feature_names: list[str] | None = None
        self.calibration: conformal.CalibrationResult | None = None
        self.evaluation_history: list[float] = []

    def __repr__(self) -> str:
        return (
            f"Booster(objective={self.config.objective.value}, budget={self.config.budget}, "
            f"state={self.state.value}, trees={len(self.ensemble)})"
        )

    # -------------------------------------------------------------------------
    # Parameters and accessors
    # -------------------------------------------------------------------------

    def get_params(self) -> dict[str, Any]:
        """Current configuration as plain values."""
        return self.config.to_params()

    def set_params(self, **params: Any) -> Self:
        """Update configuration fields; each value is validated on its own."""
        for name, value in params.items():
            self.config.set_param(name, value)
        return self

    @property
    def loss(self) -> Loss:
        return get_loss(self.config.objective, self.config.quantile)

    @property
    def n_threads(self) -> int:
        return resolve_threads(self.config.num_threads)

    @property
    def is_fitted(self) -> bool:
        return self.state in (BoosterState.FIT, BoosterState.PRUNED)

    @property
    def base_score(self) -> float:
        return self.ensemble.base_score

    @property
    def number_of_trees(self) -> int:
        return len(self.ensemble)

    @property
    def trees(self) -> list[Tree]:
        return self.ensemble.trees

    def _check_fitted(self) -> None:
        if not self.is_fitted:
            raise NotFittedError("Booster is not fitted yet. Call fit() first.")

    def _matrix(self, X: Any) -> Matrix:  # noqa: N803
        data = as_matrix(X, self.config.missing)
        if self.n_features is not None and data.cols != self.n_features:
            raise ShapeMismatchError(
                f"X has {data.cols} features, but the booster was fitted with {self.n_features}",
                expected=self.n_features,
                actual=data.cols,
            )
        return data

    def _weights(self, sample_weight: Any, n_rows: int) -> FloatArray:
        if sample_weight is None:
            return np.ones(n_rows, dtype=np.float64)
        w = as_vector(sample_weight, n_rows, "sample_weight")
        if np.any(w < 0):
            raise ValueError("sample_weight must be non-negative")
        return w

    # -------------------------------------------------------------------------
    # Training
    # -------------------------------------------------------------------------

    def fit(
        self,
        X: Any,  # noqa: N803
        y: Any,
        sample_weight: Any = None,
        evaluation_data: tuple[Any, ...] | None = None,
    ) -> Self:
        """Train the ensemble.

        Args:
            X: Training features (2D array, DataFrame or :class:`Matrix`).
            y: Labels, one per row.
            sample_weight: Optional non-negative row weights.
            evaluation_data: Optional ``(X, y)`` or ``(X, y, weight)`` used for
                ``stopping_rounds``. Without it, a fixed 10% of the training
                rows is held out when ``stopping_rounds`` is set.

        Returns:
            self

        Raises:
            ShapeMismatchError: If label, weight or feature shapes disagree.
            ConfigError: If the configuration is inconsistent.
        """
        data = as_matrix(X, self.config.missing)
        self.config.validate_parameters(n_features=data.cols)
        if data.rows == 0:
            raise ShapeMismatchError("Cannot fit on a matrix with no rows", expected=">0", actual=0)
        labels = as_vector(y, data.rows, "y")
        weights = self._weights(sample_weight, data.rows)
        loss = self.loss
        loss.validate_labels(labels)

        reset = self.config.reset is not False or not self.is_fitted
        if not reset and data.cols != self.n_features:
            raise ShapeMismatchError(
                f"X has {data.cols} features, but the booster was fitted with {self.n_features}",
                expected=self.n_features,
                actual=data.cols,
            )

        eval_set = None
        train_rows = np.arange(data.rows)
        if evaluation_data is not None:
            eval_set = self._evaluation_set(evaluation_data, data.cols, loss)
        elif self.config.stopping_rounds is not None and data.rows >= MIN_HOLDOUT_ROWS:
            perm = np.random.default_rng(SEED).permutation(data.rows)
            n_hold = max(1, int(data.rows * HOLDOUT_FRACTION))
            hold = np.sort(perm[:n_hold])
            train_rows = np.sort(perm[n_hold:])
            eval_set = (data.take_rows(hold), labels[hold], weights[hold])
            logger.debug("Holding out %d rows for early stopping", n_hold)
        train = data.take_rows(train_rows) if train_rows.size != data.rows else data

        previous = self.state
        saved_ensemble = self.ensemble if reset else copy.deepcopy(self.ensemble)
        saved_history = self.evaluation_history
        self.state = BoosterState.FITTING
        try:
            if reset:
                self.ensemble = Ensemble(
                    base_score=loss.initial_value(labels[train_rows], weights[train_rows])
                )
            self._boost(train, labels[train_rows], weights[train_rows], loss, eval_set)
        except BaseException:
            self.ensemble = saved_ensemble
            self.evaluation_history = saved_history
            self.state = previous
            raise
        self.n_features = data.cols
        self.feature_names = data.feature_names
        self.calibration = None
        self.state = BoosterState.FIT
        return self

    def _evaluation_set(
        self, evaluation_data: tuple[Any, ...], n_features: int, loss: Loss
    ) -> tuple[Matrix, FloatArray, FloatArray]:
        if len(evaluation_data) not in (2, 3):
            raise ValueError("evaluation_data must be (X, y) or (X, y, sample_weight)")
        X_eval = as_matrix(evaluation_data[0], self.config.missing)  # noqa: N806
        if X_eval.cols != n_features:
            raise ShapeMismatchError(
                f"evaluation X has {X_eval.cols} features, expected {n_features}",
                expected=n_features,
                actual=X_eval.cols,
            )
        y_eval = as_vector(evaluation_data[1], X_eval.rows, "evaluation y")
        loss.validate_labels(y_eval)
        w_eval = self._weights(evaluation_data[2] if len(evaluation_data) == 3 else None, X_eval.rows)  # noqa: PLR2004
        return X_eval, y_eval, w_eval

    def _boost(  # noqa: PLR0912, PLR0915
        self,
        data: Matrix,
        y: FloatArray,
        w: FloatArray,
        loss: Loss,
        eval_set: tuple[Matrix, FloatArray, FloatArray] | None,
    ) -> None:
        config = self.config
        values, missing = data.values, data.missing_mask()
        n_threads = self.n_threads
        binned = bin_matrix(data, config.max_bin, config.categorical_features)
        fold = (np.random.default_rng(SEED).random(data.rows) < 0.5).astype(np.int64)  # noqa: PLR2004
        eta = 10.0 ** -config.budget
        tau = eta * 1e-2
        builder = TreeBuilder(binned, config, eta, fold, n_threads=n_threads)

        ensemble = self.ensemble
        rows = np.arange(data.rows, dtype=np.intp)
        yhat = ensemble.predict_raw(values, missing, parallel=n_threads > 1, n_threads=n_threads)
        current = loss.mean_loss(y, yhat, w)

        self.evaluation_history = []
        eval_yhat = None
        best_eval = math.inf
        best_n_trees = len(ensemble)
        stall = 0
        if eval_set is not None:
            eval_values, eval_missing = eval_set[0].values, eval_set[0].missing_mask()
            eval_yhat = ensemble.predict_raw(eval_values, eval_missing)
            best_eval = loss.mean_loss(eval_set[1], eval_yhat, eval_set[2])

        limit = min(config.iteration_limit or MAX_ITERATIONS, MAX_ITERATIONS)
        start = time.monotonic()
        spent = 0.0
        reason = "iteration limit"
        for it in range(1, limit + 1):
            grad, hess = loss.gradient(y, yhat, w)
            tree = builder.build(grad, hess, rows)
            ensemble.trees.append(tree)
            yhat = yhat + tree.predict(values, missing)

            new = loss.mean_loss(y, yhat, w)
            improvement = max((current - new) / current, 0.0) if current > 0 else 0.0
            spent += eta * tau / (improvement + tau)
            current = new

            if eval_set is not None and eval_yhat is not None:
                eval_yhat = eval_yhat + tree.predict(eval_values, eval_missing)
                eval_loss = loss.mean_loss(eval_set[1], eval_yhat, eval_set[2])
                self.evaluation_history.append(eval_loss)
                if eval_loss < best_eval:
                    best_eval = eval_loss
                    best_n_trees = len(ensemble)
                    stall = 0
                else:
                    stall += 1

            if config.log_iterations and it % config.log_iterations == 0:
                logger.info(
                    "round %d: %d leaves, train loss %.6g, budget spent %.4f of %.4f",
                    it,
                    tree.n_leaves,
                    current,
                    spent,
                    config.budget,
                )

            if spent >= config.budget:
                reason = "budget exhausted"
                break
            if config.stopping_rounds is not None and stall >= config.stopping_rounds:
                reason = f"no validation improvement in {stall} rounds"
                break
            if config.timeout is not None and time.monotonic() - start >= config.timeout:
                reason = "timeout"
                break
            if config.memory_limit is not None and ensemble.estimated_bytes() >= config.memory_limit * 1e9:
                reason = "memory limit"
                break

        if config.stopping_rounds is not None and eval_set is not None and best_n_trees < len(ensemble):
            del ensemble.trees[best_n_trees:]
        logger.info("Stopped after %d rounds (%s); ensemble has %d trees", it, reason, len(ensemble))

    def prune(self, X: Any, y: Any, sample_weight: Any = None) -> Self:  # noqa: N803
        """Collapse subtrees that do not reduce loss on new data.

        Rows are routed through the trees in order; a split node becomes a leaf
        when its own weight does at least as well on the new rows as the
        subtree below it, and a tree reduced to a leaf that does not improve
        the loss is dropped. No trees are added.

        Raises:
            NotFittedError: If the booster has not been fitted.
        """
        self._check_fitted()
        data = self._matrix(X)
        labels = as_vector(y, data.rows, "y")
        weights = self._weights(sample_weight, data.rows)
        loss = self.loss
        loss.validate_labels(labels)
        values, missing = data.values, data.missing_mask()

        yhat = np.full(data.rows, self.ensemble.base_score, dtype=np.float64)
        kept: list[Tree] = []
        for tree in self.ensemble.trees:
            grad, hess = loss.gradient(labels, yhat, weights)
            if _prune_tree(tree, values, missing, grad, hess):
                kept.append(tree)
                yhat = yhat + tree.predict(values, missing)
        logger.info("Pruning kept %d of %d trees", len(kept), len(self.ensemble))
        self.ensemble.trees = kept
        self.state = BoosterState.PRUNED
        return self

    # -------------------------------------------------------------------------
    # Prediction
    # -------------------------------------------------------------------------

    def predict(self, X: Any, parallel: bool = True) -> FloatArray:  # noqa: N803
        """Raw scores: base score plus the leaf value of every tree.

        For ``LogLoss`` these are log-odds; see :meth:`predict_proba`.
        """
        self._check_fitted()
        data = self._matrix(X)
        n_threads = self.n_threads
        return self.ensemble.predict_raw(
            data.values, data.missing_mask(), parallel=parallel and n_threads > 1, n_threads=n_threads
        )

    def predict_proba(self, X: Any, parallel: bool = True) -> FloatArray:  # noqa: N803
        """Probability of the positive class.

        Raises:
            UnsupportedOperationError: If the objective is not ``LogLoss``.
        """
        self._check_fitted()
        if self.config.objective is not Objective.LOG_LOSS:
            raise UnsupportedOperationError(
                f"predict_proba is only available for LogLoss, not {self.config.objective.value}"
            )
        return self.loss.link(self.predict(X, parallel=parallel))

    def predict_contributions(
        self,
        X: Any,  # noqa: N803
        method: ContributionMethod | str = "Average",
        parallel: bool = True,
    ) -> FloatArray:
        """Per-feature contributions, shape ``(rows, cols + 1)`` with the bias last.

        Raises:
            UnsupportedOperationError: For ``ProbabilityChange`` without ``LogLoss``.
        """
        self._check_fitted()
        canonical = _normalize_method(method, CONTRIBUTION_METHODS, "contribution")
        if canonical == "ProbabilityChange" and self.config.objective is not Objective.LOG_LOSS:
            raise UnsupportedOperationError("ProbabilityChange contributions require the LogLoss objective")
        data = self._matrix(X)
        n_threads = self.n_threads
        return predict_contributions(
            self.ensemble,
            data.values,
            data.missing_mask(),
            canonical,
            n_threads=n_threads,
            parallel=parallel and n_threads > 1,
        )

    def calculate_feature_importance(
        self, method: ImportanceMethod | str = "Gain", normalize: bool = True
    ) -> dict[int, float]:
        """Aggregate split statistics per feature.

        Only features used in at least one split appear in the result.
        """
        self._check_fitted()
        canonical = _normalize_method(method, IMPORTANCE_METHODS, "importance")
        counts: dict[int, int] = {}
        gains: dict[int, float] = {}
        covers: dict[int, float] = {}
        for tree in self.ensemble.trees:
            for node in tree.nodes:
                if node.is_leaf:
                    continue
                f = node.split_feature
                counts[f] = counts.get(f, 0) + 1
                gains[f] = gains.get(f, 0.0) + node.split_gain
                covers[f] = covers.get(f, 0.0) + node.hessian_sum
        match canonical:
            case "Weight":
                result = {f: float(c) for f, c in counts.items()}
            case "Gain":
                result = {f: gains[f] / counts[f] for f in counts}
            case "Cover":
                result = {f: covers[f] / counts[f] for f in counts}
            case "TotalGain":
                result = dict(gains)
            case "TotalCover":
                result = dict(covers)
        if normalize:
            total = sum(result.values())
            if total > 0:
                result = {f: v / total for f, v in result.items()}
        return dict(sorted(result.items()))

    def value_partial_dependence(self, feature: int, value: float) -> float:
        """Model output with ``feature`` fixed at ``value``, averaged over the training cover."""
        self._check_fitted()
        if self.n_features is not None and not 0 <= feature < self.n_features:
            raise ShapeMismatchError(
                f"feature {feature} out of range for {self.n_features} features",
                expected=self.n_features,
                actual=feature,
            )
        value = float(value)
        is_missing = math.isnan(value) or value == self.config.missing
        total = self.ensemble.base_score
        for tree in self.ensemble.trees:
            total += tree.value_partial_dependence(feature, value, is_missing)
        return total

    # -------------------------------------------------------------------------
    # Conformal intervals
    # -------------------------------------------------------------------------

    def calibrate(
        self,
        X: Any,  # noqa: N803
        y: Any,
        X_cal: Any,  # noqa: N803
        y_cal: Any,
        alpha: float | list[float] | None = None,
        sample_weight: Any = None,
    ) -> Self:
        """Fit (unless already fitted with ``reset=False``) and calibrate intervals.

        Args:
            X: Training features.
            y: Training labels.
            X_cal: Calibration features, disjoint from the training rows.
            y_cal: Calibration labels.
            alpha: Miscoverage level(s); intervals target ``1 - alpha`` coverage.
                None calibrates the default level ``DEFAULT_ALPHA`` (0.1).
            sample_weight: Optional training weights.
        """
        if not self.is_fitted or self.config.reset is not False:
            self.fit(X, y, sample_weight=sample_weight)
        data = self._matrix(X)
        labels = as_vector(y, data.rows, "y")
        weights = self._weights(sample_weight, data.rows)
        cal = self._matrix(X_cal)
        y_cal_ = as_vector(y_cal, cal.rows, "y_cal")
        if alpha is None:
            alphas = [conformal.DEFAULT_ALPHA]
        elif isinstance(alpha, int | float):
            alphas = [alpha]
        else:
            alphas = list(alpha)
        self.calibration = conformal.calibrate(self, (data, labels, weights), (cal, y_cal_), alphas)
        return self

    def predict_intervals(self, X: Any, parallel: bool = True) -> dict[float, FloatArray]:  # noqa: N803
        """``{alpha: (rows, 2)}`` lower and upper bounds.

        Raises:
            NotCalibratedError: If :meth:`calibrate` has not been run.
        """
        self._check_fitted()
        if self.calibration is None:
            raise NotCalibratedError("Booster is not calibrated yet. Call calibrate() first.")
        return conformal.predict_intervals(self, self.calibration, self._matrix(X), parallel=parallel)

    # -------------------------------------------------------------------------
    # Metadata and serialization
    # -------------------------------------------------------------------------

    def insert_metadata(self, key: str, value: str) -> None:
        """Store a string value saved alongside the model."""
        if not isinstance(key, str) or not isinstance(value, str):
            raise TypeError("metadata keys and values must be strings")
        self.metadata[key] = value

    def get_metadata(self, key: str) -> str:
        """Value stored under ``key``.

        Raises:
            KeyNotFoundError: If nothing is stored under ``key``.
        """
        try:
            return self.metadata[key]
        except KeyError:
            raise KeyNotFoundError(key) from None

    def text_dump(self) -> list[str]:
        """Human-readable rendering, one string per tree."""
        return [str(tree) for tree in self.ensemble.trees]

    def to_schema(self) -> BoosterSchema:
        return BoosterSchema(
            params=self.config.to_params(),
            state=self.state.value,
            n_features=self.n_features,
            feature_names=self.feature_names,
            ensemble=EnsembleSchema.from_ensemble(self.ensemble),
            metadata=dict(self.metadata),
            calibration=CalibrationSchema.from_result(self.calibration) if self.calibration is not None else None,
        )

    @classmethod
    def from_schema(cls, schema: BoosterSchema) -> Booster:
        """Rebuild a booster from its parsed schema.

        Raises:
            DeserializationError: If the stored parameters or state are invalid.
        """
        try:
            config = BoosterConfig(**schema.params)
            state = BoosterState(schema.state)
        except ValidationError as e:
            raise DeserializationError(f"Invalid model payload: {config_error(e)}") from e
        except ValueError as e:
            raise DeserializationError(f"Invalid model payload: {e}") from e
        booster = cls(config)
        booster.ensemble = schema.ensemble.to_ensemble()
        booster.metadata = dict(schema.metadata)
        booster.state = state
        booster.n_features = schema.n_features
        booster.feature_names = schema.feature_names
        booster.calibration = schema.calibration.to_result() if schema.calibration is not None else None
        return booster

    def json_dump(self) -> str:
        """Serialize configuration, trees, metadata and calibration to JSON."""
        return persist.dumps(MODEL_TYPE, self.to_schema())

    @classmethod
    def from_json(cls, json_str: str | bytes) -> Booster:
        """Rebuild a booster from :meth:`json_dump` output.

        Raises:
            DeserializationError: If the text is not a valid model.
        """
        return cls.from_schema(persist.loads(json_str, BoosterSchema, MODEL_TYPE))

    def save_booster(self, path: str | os.PathLike[str]) -> None:
        """Write :meth:`json_dump` output to ``path``.

        Raises:
            IoError: If the file cannot be written.
        """
        persist.write_file(path, self.json_dump())

    @classmethod
    def load_booster(cls, path: str | os.PathLike[str]) -> Booster:
        """Read a booster written by :meth:`save_booster`.

        Raises:
            IoError: If the file cannot be read.
            DeserializationError: If its content is not a valid model.
        """
        return cls.from_json(persist.read_file(path))


def _prune_tree(
    tree: Tree,
    values: FloatArray,
    missing: NDArray[np.bool_],
    grad: FloatArray,
    hess: FloatArray,
) -> bool:
    """Collapse unhelpful subtrees of ``tree`` in place; False if the tree should be dropped."""
    n_nodes = len(tree.nodes)
    g = np.zeros(n_nodes, dtype=np.float64)
    h = np.zeros(n_nodes, dtype=np.float64)
    g[0], h[0] = grad.sum(), hess.sum()
    for rows, _, nxt in tree.walk(values, missing):
        np.add.at(g, nxt, grad[rows])
        np.add.at(h, nxt, hess[rows])

    w = np.array([n.weight_value for n in tree.nodes], dtype=np.float64)
    own = g * w + 0.5 * h * w * w
    subtree = own.copy()
    for node in reversed(tree.nodes):
        if node.is_leaf:
            continue
        below = float(sum(subtree[c] for c in node.children()))
        if h[node.num] > 0 and own[node.num] <= below:
            node.is_leaf = True
            node.left_child = node.right_child = node.missing_node = -1
            node.split_feature = -1
            node.split_value = math.nan
            node.split_gain = 0.0
            node.left_categories = None
        else:
            subtree[node.num] = below
    tree.compact()
    root = tree.nodes[0]
    return not (root.is_leaf and own[0] >= 0)
