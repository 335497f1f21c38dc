"""Budget-driven gradient boosting sklearn-compatible estimators."""

from __future__ import annotations

from typing import Any, Self

import numpy as np
from numpy.typing import NDArray
from sklearn.base import ClassifierMixin, RegressorMixin
from sklearn.utils.validation import check_is_fitted

from budgetboost.booster import Booster
from budgetboost.data import as_matrix
from budgetboost.multi_output import MultiOutputBooster
from budgetboost.objectives import Objective
from budgetboost.sklearn.base import BudgetBoostEstimatorBase

__all__ = ["BudgetBoostClassifier", "BudgetBoostRegressor"]


# =============================================================================
# Regressor
# =============================================================================


class BudgetBoostRegressor(RegressorMixin, BudgetBoostEstimatorBase):  # type: ignore[misc]
    """Budget-driven gradient boosting regressor.

    A sklearn-compatible wrapper around :class:`~budgetboost.Booster` for regression.

    Parameters
    ----------
    budget : float, default=0.5
        Complexity/accuracy trade-off; larger budgets train longer with smaller steps.
    objective : str or None, default=None
        "SquaredLoss", "QuantileLoss" or "HuberLoss". If None, uses "SquaredLoss".
    max_bin : int, default=256
        Maximum histogram buckets per feature.
    num_threads : int or None, default=None
        Worker threads (None = all cores).
    monotone_constraints : dict or None, default=None
        Feature index to -1 / 0 / 1.
    force_children_to_bound_parent : bool, default=False
        Keep every parent weight between its children's.
    missing : float, default=nan
        Sentinel value marking absent entries.
    allow_missing_splits : bool, default=True
        Allow splits on features with missing values in the node.
    create_missing_branch : bool, default=False
        Route missing values to a dedicated third branch.
    terminate_missing_features : set or None, default=None
        Features whose missing branch is always a leaf.
    missing_node_treatment : str, default="None"
        Weight policy for dedicated missing branches.
    log_iterations : int, default=0
        Log progress every N rounds (0 = silent).
    quantile : float or None, default=None
        Target quantile for "QuantileLoss".
    categorical_features : set or None, default=None
        Feature indices treated as categories.
    timeout : float or None, default=None
        Training time limit in seconds.
    iteration_limit : int or None, default=None
        Maximum number of boosting rounds.
    memory_limit : float or None, default=None
        Model size ceiling in gigabytes.
    stopping_rounds : int or None, default=None
        Early-stopping patience on held-out loss.

    Attributes
    ----------
    model_ : Booster
        The fitted core model.
    n_features_in_ : int
        Number of features seen during fit.
    feature_importances_ : ndarray of shape (n_features,)
        Feature importance scores (gain-based).
    """

    @classmethod
    def _get_default_objective(cls) -> Objective:
        return Objective.SQUARED_LOSS

    @classmethod
    def _validate_objective(cls, objective: Objective) -> None:
        if objective is Objective.LOG_LOSS:
            raise ValueError(
                "BudgetBoostRegressor requires a regression objective, got LogLoss. "
                "For classification, use BudgetBoostClassifier instead."
            )

    def fit(
        self,
        X: Any,  # noqa: N803
        y: Any,
        sample_weight: Any = None,
        eval_set: tuple[Any, Any] | None = None,
    ) -> Self:
        """Fit the estimator.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Training input samples.
        y : array-like of shape (n_samples,)
            Target values.
        sample_weight : array-like of shape (n_samples,), optional
            Sample weights.
        eval_set : tuple (X, y), optional
            Validation data for ``stopping_rounds``.

        Returns
        -------
        self
            Fitted estimator.
        """
        data = as_matrix(X, self.missing)
        model = Booster(self._build_config())
        model.fit(data, np.asarray(y, dtype=np.float64), sample_weight=sample_weight, evaluation_data=eval_set)
        self.model_ = model
        self.n_features_in_ = data.cols
        return self

    def predict(self, X: Any) -> NDArray[np.float64]:  # noqa: N803
        """Predict using the fitted model.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Input samples.

        Returns
        -------
        y_pred : ndarray of shape (n_samples,)
            Predicted values.
        """
        check_is_fitted(self, ["model_"])
        model = self.model_
        assert isinstance(model, Booster)
        return model.predict(self._check_X(X))


# =============================================================================
# Classifier
# =============================================================================


class BudgetBoostClassifier(ClassifierMixin, BudgetBoostEstimatorBase):  # type: ignore[misc]
    """Budget-driven gradient boosting classifier.

    Binary problems train one ``LogLoss`` booster; multiclass problems train
    one-vs-rest boosters and normalize their probabilities.

    Parameters
    ----------
    budget : float, default=0.5
        Complexity/accuracy trade-off; larger budgets train longer with smaller steps.
    objective : str or None, default=None
        Must be "LogLoss" (the default) when given.
    **kwargs
        Remaining parameters as for :class:`BudgetBoostRegressor`.

    Attributes
    ----------
    model_ : Booster or MultiOutputBooster
        The fitted core model.
    classes_ : ndarray
        Unique class labels.
    n_classes_ : int
        Number of classes.
    n_features_in_ : int
        Number of features seen during fit.
    feature_importances_ : ndarray of shape (n_features,)
        Feature importance scores.
    """

    classes_: NDArray[Any]
    n_classes_: int

    @classmethod
    def _get_default_objective(cls) -> Objective:
        return Objective.LOG_LOSS

    @classmethod
    def _validate_objective(cls, objective: Objective) -> None:
        if objective is not Objective.LOG_LOSS:
            raise ValueError(
                f"BudgetBoostClassifier requires the LogLoss objective, got {objective.value}. "
                "For regression, use BudgetBoostRegressor instead."
            )

    def fit(
        self,
        X: Any,  # noqa: N803
        y: Any,
        sample_weight: Any = None,
    ) -> Self:
        """Fit the estimator.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Training input samples.
        y : array-like of shape (n_samples,)
            Class labels.
        sample_weight : array-like of shape (n_samples,), optional
            Sample weights.

        Returns
        -------
        self
            Fitted estimator.
        """
        data = as_matrix(X, self.missing)
        y = np.asarray(y)
        self.classes_, encoded = np.unique(y, return_inverse=True)
        self.n_classes_ = len(self.classes_)
        if self.n_classes_ < 2:  # noqa: PLR2004
            raise ValueError(f"Classifier needs at least 2 classes, got {self.n_classes_}")

        config = self._build_config()
        if self.n_classes_ == 2:  # noqa: PLR2004
            model: Booster | MultiOutputBooster = Booster(config)
            model.fit(data, encoded.astype(np.float64), sample_weight=sample_weight)
        else:
            one_hot = (encoded[:, None] == np.arange(self.n_classes_)[None, :]).astype(np.float64)
            model = MultiOutputBooster(self.n_classes_, config)
            model.fit(data, one_hot, sample_weight=sample_weight)
        self.model_ = model
        self.n_features_in_ = data.cols
        return self

    def predict_proba(self, X: Any) -> NDArray[np.float64]:  # noqa: N803
        """Predict class probabilities.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Input samples.

        Returns
        -------
        proba : ndarray of shape (n_samples, n_classes)
            Class probability estimates.
        """
        check_is_fitted(self, ["model_", "classes_"])
        data = self._check_X(X)
        if isinstance(self.model_, Booster):
            p = self.model_.predict_proba(data)
            return np.column_stack([1.0 - p, p])
        scores = self.model_.predict_proba(data)
        totals = scores.sum(axis=1, keepdims=True)
        return scores / np.where(totals > 0, totals, 1.0)

    def predict(self, X: Any) -> NDArray[Any]:  # noqa: N803
        """Predict class labels.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Input samples.

        Returns
        -------
        y_pred : ndarray of shape (n_samples,)
            Predicted class labels.
        """
        proba = self.predict_proba(X)
        if self.n_classes_ == 2:  # noqa: PLR2004
            indices = (proba[:, 1] >= 0.5).astype(int)  # noqa: PLR2004
        else:
            indices = np.argmax(proba, axis=1)
        return self.classes_[indices]
