"""Objective (loss) functions for gradient boosting.

This module provides the objective enum accepted by the configuration and the
loss implementations the booster trains against.

Regression:
    - SquaredLoss: Mean squared error (L2)
    - QuantileLoss: Pinball loss for a single quantile
    - HuberLoss: Huber loss (robust, delta = 1)

Classification:
    - LogLoss: Binary cross-entropy on the log-odds scale
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

import numpy as np
from numpy.typing import NDArray

from budgetboost.utils import percentiles

__all__: list[str] = [
    "HuberLoss",
    "LogLoss",
    "Loss",
    "Objective",
    "QuantileLoss",
    "SquaredLoss",
    "get_loss",
    "sigmoid",
]

FloatArray = NDArray[np.float64]


class Objective(str, Enum):
    """Objective names, matching their serialized form."""

    LOG_LOSS = "LogLoss"
    SQUARED_LOSS = "SquaredLoss"
    QUANTILE_LOSS = "QuantileLoss"
    HUBER_LOSS = "HuberLoss"


def sigmoid(x: FloatArray) -> FloatArray:
    """Numerically stable logistic function."""
    out = np.empty_like(x, dtype=np.float64)
    pos = x >= 0
    out[pos] = 1.0 / (1.0 + np.exp(-x[pos]))
    ex = np.exp(x[~pos])
    out[~pos] = ex / (1.0 + ex)
    return out


class Loss(ABC):
    """A twice-differentiable loss on the raw (margin) scale."""

    objective: Objective
    is_classification: bool = False

    @abstractmethod
    def loss(self, y: FloatArray, yhat: FloatArray, sample_weight: FloatArray) -> FloatArray:
        """Per-row weighted loss."""
        ...

    @abstractmethod
    def gradient(self, y: FloatArray, yhat: FloatArray, sample_weight: FloatArray) -> tuple[FloatArray, FloatArray]:
        """Per-row gradient and hessian of the loss with respect to ``yhat``."""
        ...

    @abstractmethod
    def initial_value(self, y: FloatArray, sample_weight: FloatArray) -> float:
        """Constant raw score minimizing the loss, used as the ensemble's base score."""
        ...

    def link(self, raw: FloatArray) -> FloatArray:
        """Map raw scores to the response scale."""
        return raw

    def validate_labels(self, y: FloatArray) -> None:  # noqa: B027
        """Raise ``ValueError`` for labels the loss is undefined on."""

    def mean_loss(self, y: FloatArray, yhat: FloatArray, sample_weight: FloatArray) -> float:
        """Weighted mean loss."""
        total = float(np.sum(sample_weight))
        if total <= 0:
            return 0.0
        return float(np.sum(self.loss(y, yhat, sample_weight)) / total)


class SquaredLoss(Loss):
    """Squared error, ``0.5 * w * (y - yhat)^2``."""

    objective = Objective.SQUARED_LOSS

    def loss(self, y: FloatArray, yhat: FloatArray, sample_weight: FloatArray) -> FloatArray:  # noqa: D102
        diff = yhat - y
        return 0.5 * sample_weight * diff * diff

    def gradient(  # noqa: D102
        self, y: FloatArray, yhat: FloatArray, sample_weight: FloatArray
    ) -> tuple[FloatArray, FloatArray]:
        return sample_weight * (yhat - y), sample_weight.astype(np.float64, copy=True)

    def initial_value(self, y: FloatArray, sample_weight: FloatArray) -> float:  # noqa: D102
        return float(np.average(y, weights=sample_weight))


class LogLoss(Loss):
    """Binary cross-entropy; raw scores are log-odds."""

    objective = Objective.LOG_LOSS
    is_classification = True

    def loss(self, y: FloatArray, yhat: FloatArray, sample_weight: FloatArray) -> FloatArray:  # noqa: D102
        return sample_weight * (np.logaddexp(0.0, yhat) - y * yhat)

    def gradient(  # noqa: D102
        self, y: FloatArray, yhat: FloatArray, sample_weight: FloatArray
    ) -> tuple[FloatArray, FloatArray]:
        p = sigmoid(yhat)
        return sample_weight * (p - y), sample_weight * np.maximum(p * (1.0 - p), 1e-16)

    def initial_value(self, y: FloatArray, sample_weight: FloatArray) -> float:  # noqa: D102
        p = float(np.average(y, weights=sample_weight))
        p = min(max(p, 1e-7), 1.0 - 1e-7)
        return float(np.log(p / (1.0 - p)))

    def link(self, raw: FloatArray) -> FloatArray:  # noqa: D102
        return sigmoid(raw)

    def validate_labels(self, y: FloatArray) -> None:  # noqa: D102
        if np.any((y < 0) | (y > 1)):
            raise ValueError("LogLoss labels must lie in [0, 1]")


class QuantileLoss(Loss):
    """Pinball loss for quantile ``q``."""

    objective = Objective.QUANTILE_LOSS

    def __init__(self, quantile: float) -> None:
        self.quantile = float(quantile)

    def loss(self, y: FloatArray, yhat: FloatArray, sample_weight: FloatArray) -> FloatArray:  # noqa: D102
        diff = y - yhat
        q = self.quantile
        return sample_weight * np.where(diff >= 0, q * diff, (q - 1.0) * diff)

    def gradient(  # noqa: D102
        self, y: FloatArray, yhat: FloatArray, sample_weight: FloatArray
    ) -> tuple[FloatArray, FloatArray]:
        grad = np.where(y < yhat, 1.0 - self.quantile, -self.quantile)
        return sample_weight * grad, sample_weight.astype(np.float64, copy=True)

    def initial_value(self, y: FloatArray, sample_weight: FloatArray) -> float:  # noqa: D102
        return float(percentiles(y, sample_weight, [self.quantile])[0])


class HuberLoss(Loss):
    """Huber loss with a fixed transition point ``delta``."""

    objective = Objective.HUBER_LOSS

    def __init__(self, delta: float = 1.0) -> None:
        self.delta = float(delta)

    def loss(self, y: FloatArray, yhat: FloatArray, sample_weight: FloatArray) -> FloatArray:  # noqa: D102
        a = np.abs(yhat - y)
        d = self.delta
        return sample_weight * np.where(a <= d, 0.5 * a * a, d * (a - 0.5 * d))

    def gradient(  # noqa: D102
        self, y: FloatArray, yhat: FloatArray, sample_weight: FloatArray
    ) -> tuple[FloatArray, FloatArray]:
        grad = np.clip(yhat - y, -self.delta, self.delta)
        return sample_weight * grad, sample_weight.astype(np.float64, copy=True)

    def initial_value(self, y: FloatArray, sample_weight: FloatArray) -> float:  # noqa: D102
        return float(percentiles(y, sample_weight, [0.5])[0])


def get_loss(objective: Objective, quantile: float | None = None) -> Loss:
    """Instantiate the loss for ``objective``."""
    match objective:
        case Objective.SQUARED_LOSS:
            return SquaredLoss()
        case Objective.LOG_LOSS:
            return LogLoss()
        case Objective.QUANTILE_LOSS:
            return QuantileLoss(0.5 if quantile is None else quantile)
        case Objective.HUBER_LOSS:
            return HuberLoss()
    raise ValueError(f"Unknown objective: {objective!r}")
