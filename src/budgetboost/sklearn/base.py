"""Base classes and utilities for sklearn integration.

This module provides shared logic for sklearn-compatible estimators,
including kwargs→config conversion and the common estimator base class.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Any, Self

import numpy as np
from numpy.typing import NDArray
from sklearn.base import BaseEstimator
from sklearn.utils.validation import check_is_fitted

from budgetboost.booster import Booster
from budgetboost.config import BoosterConfig
from budgetboost.data import Matrix, as_matrix
from budgetboost.exceptions import ShapeMismatchError
from budgetboost.multi_output import MultiOutputBooster
from budgetboost.objectives import Objective

__all__ = [
    "BudgetBoostEstimatorBase",
    "build_booster_config",
]


# =============================================================================
# Config Builder
# =============================================================================


def build_booster_config(
    *,
    objective: Objective | str,
    budget: float = 0.5,
    max_bin: int = 256,
    num_threads: int | None = None,
    monotone_constraints: dict[int, int] | None = None,
    force_children_to_bound_parent: bool = False,
    missing: float = math.nan,
    allow_missing_splits: bool = True,
    create_missing_branch: bool = False,
    terminate_missing_features: set[int] | None = None,
    missing_node_treatment: str = "None",
    log_iterations: int = 0,
    quantile: float | None = None,
    categorical_features: set[int] | None = None,
    timeout: float | None = None,
    iteration_limit: int | None = None,
    memory_limit: float | None = None,
    stopping_rounds: int | None = None,
) -> BoosterConfig:
    """Build a BoosterConfig from flat estimator kwargs.

    ``None`` collections become empty ones; everything else maps one to one.

    Raises:
        ConfigError: If any value is invalid.
    """
    return BoosterConfig.from_params(
        objective=objective,
        budget=budget,
        max_bin=max_bin,
        num_threads=num_threads,
        monotone_constraints=monotone_constraints or {},
        force_children_to_bound_parent=force_children_to_bound_parent,
        missing=missing,
        allow_missing_splits=allow_missing_splits,
        create_missing_branch=create_missing_branch,
        terminate_missing_features=set(terminate_missing_features or ()),
        missing_node_treatment=missing_node_treatment,
        log_iterations=log_iterations,
        quantile=quantile,
        categorical_features=set(categorical_features) if categorical_features is not None else None,
        timeout=timeout,
        iteration_limit=iteration_limit,
        memory_limit=memory_limit,
        stopping_rounds=stopping_rounds,
    )


# =============================================================================
# Base Estimator
# =============================================================================


class BudgetBoostEstimatorBase(BaseEstimator, ABC):  # type: ignore[misc]
    """Base class for budgetboost estimators.

    Stores constructor arguments untouched (sklearn convention) and builds the
    configuration at fit time, so ``clone`` and ``set_params`` behave as usual.
    """

    # Instance attributes (declared for type checking)
    model_: Booster | MultiOutputBooster
    n_features_in_: int

    def __init__(
        self,
        budget: float = 0.5,
        objective: str | None = None,
        max_bin: int = 256,
        num_threads: int | None = None,
        monotone_constraints: dict[int, int] | None = None,
        force_children_to_bound_parent: bool = False,
        missing: float = math.nan,
        allow_missing_splits: bool = True,
        create_missing_branch: bool = False,
        terminate_missing_features: set[int] | None = None,
        missing_node_treatment: str = "None",
        log_iterations: int = 0,
        quantile: float | None = None,
        categorical_features: set[int] | None = None,
        timeout: float | None = None,
        iteration_limit: int | None = None,
        memory_limit: float | None = None,
        stopping_rounds: int | None = None,
    ) -> None:
        self.budget = budget
        self.objective = objective
        self.max_bin = max_bin
        self.num_threads = num_threads
        self.monotone_constraints = monotone_constraints
        self.force_children_to_bound_parent = force_children_to_bound_parent
        self.missing = missing
        self.allow_missing_splits = allow_missing_splits
        self.create_missing_branch = create_missing_branch
        self.terminate_missing_features = terminate_missing_features
        self.missing_node_treatment = missing_node_treatment
        self.log_iterations = log_iterations
        self.quantile = quantile
        self.categorical_features = categorical_features
        self.timeout = timeout
        self.iteration_limit = iteration_limit
        self.memory_limit = memory_limit
        self.stopping_rounds = stopping_rounds

    @classmethod
    @abstractmethod
    def _get_default_objective(cls) -> Objective:
        """Return the default objective for this estimator type."""
        ...

    @classmethod
    @abstractmethod
    def _validate_objective(cls, objective: Objective) -> None:
        """Validate objective is appropriate for this estimator type.

        Raises:
            ValueError: If objective is not valid for this estimator type.
        """
        ...

    @abstractmethod
    def fit(self, X: Any, y: Any, sample_weight: Any = None) -> Self:  # noqa: N803
        ...

    def _build_config(self) -> BoosterConfig:
        params = self.get_params(deep=False)
        objective = params.pop("objective")
        config = build_booster_config(
            objective=objective if objective is not None else self._get_default_objective(), **params
        )
        self._validate_objective(config.objective)
        return config

    def _check_X(self, X: Any) -> Matrix:  # noqa: N802, N803
        data = as_matrix(X, self.missing)
        if data.cols != self.n_features_in_:
            raise ShapeMismatchError(
                f"X has {data.cols} features, but {type(self).__name__} is expecting {self.n_features_in_}",
                expected=self.n_features_in_,
                actual=data.cols,
            )
        return data

    def _importance_array(self, booster: Booster, importance_type: str) -> NDArray[np.float64]:
        out = np.zeros(self.n_features_in_, dtype=np.float64)
        for f, v in booster.calculate_feature_importance(importance_type, normalize=False).items():
            out[f] = v
        return out

    def get_feature_importance(self, importance_type: str = "Gain") -> NDArray[np.float64]:
        """Get feature importance scores.

        Parameters
        ----------
        importance_type : str, default="Gain"
            One of "Weight", "Gain", "Cover", "TotalGain", "TotalCover".

        Returns
        -------
        importance : ndarray of shape (n_features,)
            Normalized importance scores (features never split on get 0).
        """
        check_is_fitted(self, ["model_"])
        boosters = self.model_.boosters if isinstance(self.model_, MultiOutputBooster) else [self.model_]
        total = np.sum([self._importance_array(b, importance_type) for b in boosters], axis=0)
        s = total.sum()
        return total / s if s > 0 else total

    @property
    def feature_importances_(self) -> NDArray[np.float64]:
        """Return feature importances (gain-based, normalized)."""
        return self.get_feature_importance("Gain")
