"""Split-conformal prediction intervals.

Three nonconformity scores are supported:

- ``residual``: ``|y - yhat|`` of the point prediction; the interval is
  ``yhat -/+ q``.
- ``probability`` (``LogLoss``): the residual score on the probability scale,
  ``|y - p|``; the interval is ``p -/+ q`` clipped to ``[0, 1]``.
- ``quantile`` (conformalized quantile regression, used when the booster
  optimizes ``QuantileLoss``): auxiliary ensembles are fitted at the
  ``alpha / 2`` and ``1 - alpha / 2`` quantiles, the score is
  ``max(lo - y, y - hi)`` and the interval is ``[lo - q, hi + q]``.

``q`` is the ``ceil((n + 1) * (1 - alpha))``-th smallest calibration score, which
gives marginal coverage of at least ``1 - alpha`` under exchangeability. When
the calibration set is too small for the requested level, ``q`` is infinite.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

import numpy as np
from numpy.typing import NDArray

from budgetboost.data import Matrix
from budgetboost.objectives import Objective
from budgetboost.tree import Ensemble

if TYPE_CHECKING:
    from budgetboost.booster import Booster

__all__: list[str] = [
    "CalibrationResult",
    "DEFAULT_ALPHA",
    "calibrate",
    "conformal_quantile",
    "predict_intervals",
]

logger = logging.getLogger(__name__)

DEFAULT_ALPHA = 0.1

CalibrationMethod = Literal["residual", "probability", "quantile"]


@dataclass
class CalibrationResult:
    """Interval half-widths per alpha, plus the quantile ensembles for CQR."""

    method: CalibrationMethod
    half_widths: dict[float, float]
    lower: dict[float, Ensemble] = field(default_factory=dict)
    upper: dict[float, Ensemble] = field(default_factory=dict)

    @property
    def alphas(self) -> list[float]:
        return sorted(self.half_widths)


def conformal_quantile(scores: NDArray[np.float64], alpha: float) -> float:
    """Finite-sample corrected ``(1 - alpha)`` quantile of ``scores``."""
    n = scores.shape[0]
    k = math.ceil((n + 1) * (1.0 - alpha))
    if k > n:
        return math.inf
    return float(np.sort(scores)[max(k, 1) - 1])


def _check_alphas(alphas: list[float]) -> list[float]:
    if not alphas:
        raise ValueError("At least one alpha is required")
    out = []
    for a in alphas:
        a = float(a)
        if not 0.0 < a < 1.0:
            raise ValueError(f"alpha must lie in (0, 1), got {a}")
        out.append(a)
    return out


def calibrate(
    booster: Booster,
    train: tuple[Matrix, NDArray[np.float64], NDArray[np.float64]],
    calibration: tuple[Matrix, NDArray[np.float64]],
    alphas: list[float],
) -> CalibrationResult:
    """Compute half-widths for every alpha from a fitted ``booster``.

    Args:
        booster: Fitted booster providing the point predictions.
        train: Training matrix, labels and weights, used to fit the auxiliary
            quantile ensembles.
        calibration: Held-out matrix and labels.
        alphas: Miscoverage levels in (0, 1).
    """
    alphas = _check_alphas(alphas)
    X_cal, y_cal = calibration  # noqa: N806
    if booster.config.objective is Objective.LOG_LOSS:
        scores = np.abs(y_cal - booster.predict_proba(X_cal))
        widths = {a: conformal_quantile(scores, a) for a in alphas}
        logger.debug("Calibrated probability intervals: %s", widths)
        return CalibrationResult(method="probability", half_widths=widths)
    if booster.config.objective is not Objective.QUANTILE_LOSS:
        scores = np.abs(y_cal - booster.predict(X_cal))
        widths = {a: conformal_quantile(scores, a) for a in alphas}
        logger.debug("Calibrated residual intervals: %s", widths)
        return CalibrationResult(method="residual", half_widths=widths)

    X_train, y_train, w_train = train  # noqa: N806
    result = CalibrationResult(method="quantile", half_widths={})
    missing = X_cal.missing_mask()
    for a in alphas:
        bounds = []
        for q in (a / 2.0, 1.0 - a / 2.0):
            aux = type(booster)(booster.config.model_copy(update={"quantile": q, "reset": True}, deep=True))
            aux.fit(X_train, y_train, sample_weight=w_train)
            bounds.append(aux.ensemble)
        lo_model, hi_model = bounds
        lo = lo_model.predict_raw(X_cal.values, missing)
        hi = hi_model.predict_raw(X_cal.values, missing)
        scores = np.maximum(lo - y_cal, y_cal - hi)
        result.half_widths[a] = conformal_quantile(scores, a)
        result.lower[a] = lo_model
        result.upper[a] = hi_model
    logger.debug("Calibrated quantile intervals: %s", result.half_widths)
    return result


def predict_intervals(
    booster: Booster,
    result: CalibrationResult,
    X: Matrix,  # noqa: N803
    *,
    parallel: bool = False,
) -> dict[float, NDArray[np.float64]]:
    """``{alpha: (rows, 2)}`` lower / upper interval bounds."""
    out: dict[float, NDArray[np.float64]] = {}
    if result.method == "residual":
        pred = booster.predict(X, parallel=parallel)
        for a in result.alphas:
            q = result.half_widths[a]
            out[a] = np.column_stack([pred - q, pred + q])
        return out
    if result.method == "probability":
        proba = booster.predict_proba(X, parallel=parallel)
        for a in result.alphas:
            q = result.half_widths[a]
            out[a] = np.column_stack([np.clip(proba - q, 0.0, 1.0), np.clip(proba + q, 0.0, 1.0)])
        return out
    missing = X.missing_mask()
    n_threads = booster.n_threads
    for a in result.alphas:
        q = result.half_widths[a]
        lo = result.lower[a].predict_raw(X.values, missing, parallel=parallel, n_threads=n_threads)
        hi = result.upper[a].predict_raw(X.values, missing, parallel=parallel, n_threads=n_threads)
        out[a] = np.column_stack([lo - q, hi + q])
    return out
