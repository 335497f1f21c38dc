"""Pydantic v2 models describing the JSON model format.

The payload is produced with the standard library ``json`` module so that
non-finite floats (NaN thresholds, infinite bounds and half-widths) survive
as ``NaN`` / ``Infinity`` tokens, and parsed back with ``model_validate``.
Floats are written with their shortest round-trip repr, so a loaded model
predicts bit-identically to the one that was saved.

Example:
-------
>>> import json
>>> from budgetboost.persist.schema import BoosterSchema, JsonEnvelope
>>>
>>> with open("model.json") as f:
...     envelope = JsonEnvelope[BoosterSchema].model_validate(json.load(f))
>>> print(envelope.model_type)  # "booster"
>>> print(len(envelope.model.ensemble.trees))  # number of trees
"""

from __future__ import annotations

from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict

from budgetboost.conformal import CalibrationResult
from budgetboost.tree import Ensemble, Node, Tree

__all__: list[str] = [
    "FORMAT_VERSION",
    "BoosterSchema",
    "CalibrationSchema",
    "EnsembleSchema",
    "EnvelopeHeader",
    "JsonEnvelope",
    "MultiOutputSchema",
    "NodeSchema",
    "TreeSchema",
]

FORMAT_VERSION = 1

# -----------------------------------------------------------------------------
# JSON Envelope
# -----------------------------------------------------------------------------


class EnvelopeHeader(BaseModel):
    """Version and model type of an envelope, read before the payload."""

    model_config = ConfigDict(strict=True, extra="ignore")

    format_version: int
    model_type: str


T = TypeVar("T")


class JsonEnvelope(BaseModel, Generic[T]):
    """Top-level JSON envelope wrapping any model schema.

    Attributes:
    ----------
    format_version
        Schema version number (currently 1).
    model_type
        Model type identifier ("booster" or "multi_output_booster").
    model
        The model schema payload.
    """

    model_config = ConfigDict(strict=True)

    format_version: int
    model_type: str
    model: T


# -----------------------------------------------------------------------------
# Trees
# -----------------------------------------------------------------------------


class NodeSchema(BaseModel):
    """One tree node. Leaves keep the default split fields."""

    model_config = ConfigDict(strict=True)

    num: int
    weight_value: float
    hessian_sum: float
    depth: int
    split_value: float
    split_feature: int
    split_gain: float
    missing_node: int
    left_child: int
    right_child: int
    is_leaf: bool
    lower_bound: float
    upper_bound: float
    left_categories: list[float] | None = None

    @classmethod
    def from_node(cls, node: Node) -> NodeSchema:
        return cls(
            num=node.num,
            weight_value=node.weight_value,
            hessian_sum=node.hessian_sum,
            depth=node.depth,
            split_value=node.split_value,
            split_feature=node.split_feature,
            split_gain=node.split_gain,
            missing_node=node.missing_node,
            left_child=node.left_child,
            right_child=node.right_child,
            is_leaf=node.is_leaf,
            lower_bound=node.lower_bound,
            upper_bound=node.upper_bound,
            left_categories=node.left_categories,
        )

    def to_node(self) -> Node:
        return Node(**self.model_dump())


class TreeSchema(BaseModel):
    """Nodes of one tree, in arena order."""

    model_config = ConfigDict(strict=True)

    nodes: list[NodeSchema]


class EnsembleSchema(BaseModel):
    """Base score and trees of one additive ensemble.

    Attributes:
    ----------
    base_score
        Raw score every prediction starts from.
    trees
        Trees in boosting order.
    """

    model_config = ConfigDict(strict=True)

    base_score: float
    trees: list[TreeSchema]

    @classmethod
    def from_ensemble(cls, ensemble: Ensemble) -> EnsembleSchema:
        return cls(
            base_score=ensemble.base_score,
            trees=[TreeSchema(nodes=[NodeSchema.from_node(n) for n in t.nodes]) for t in ensemble.trees],
        )

    def to_ensemble(self) -> Ensemble:
        return Ensemble(
            base_score=self.base_score,
            trees=[Tree([n.to_node() for n in t.nodes]) for t in self.trees],
        )


# -----------------------------------------------------------------------------
# Calibration
# -----------------------------------------------------------------------------


class CalibrationSchema(BaseModel):
    """Conformal calibration state, one entry per alpha.

    ``lower`` / ``upper`` are empty unless the method is ``quantile``.
    """

    model_config = ConfigDict(strict=True)

    method: Literal["residual", "probability", "quantile"]
    alphas: list[float]
    half_widths: list[float]
    lower: list[EnsembleSchema] = []
    upper: list[EnsembleSchema] = []

    @classmethod
    def from_result(cls, result: CalibrationResult) -> CalibrationSchema:
        alphas = result.alphas
        return cls(
            method=result.method,
            alphas=alphas,
            half_widths=[result.half_widths[a] for a in alphas],
            lower=[EnsembleSchema.from_ensemble(result.lower[a]) for a in alphas if a in result.lower],
            upper=[EnsembleSchema.from_ensemble(result.upper[a]) for a in alphas if a in result.upper],
        )

    def to_result(self) -> CalibrationResult:
        result = CalibrationResult(method=self.method, half_widths=dict(zip(self.alphas, self.half_widths, strict=True)))
        if self.method == "quantile":
            result.lower = {a: e.to_ensemble() for a, e in zip(self.alphas, self.lower, strict=True)}
            result.upper = {a: e.to_ensemble() for a, e in zip(self.alphas, self.upper, strict=True)}
        return result


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------


class BoosterSchema(BaseModel):
    """Complete single-output booster.

    Attributes:
    ----------
    params
        Configuration as produced by ``BoosterConfig.to_params``.
    state
        Lifecycle state ("fit" or "pruned" for a trained model).
    n_features
        Column count seen at fit time.
    feature_names
        Column names, when the training data carried them.
    ensemble
        The trained trees.
    metadata
        Free-form string key/value store.
    calibration
        Conformal calibration, if ``calibrate`` was run.
    """

    model_config = ConfigDict(strict=True)

    params: dict[str, Any]
    state: str
    n_features: int | None = None
    feature_names: list[str] | None = None
    ensemble: EnsembleSchema
    metadata: dict[str, str] = {}
    calibration: CalibrationSchema | None = None


class MultiOutputSchema(BaseModel):
    """One booster per output column."""

    model_config = ConfigDict(strict=True)

    n_boosters: int
    boosters: list[BoosterSchema]
    metadata: dict[str, str] = {}
