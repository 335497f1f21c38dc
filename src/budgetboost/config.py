"""Configuration model for the booster.

This module defines the pydantic model holding every training and inference
parameter, along with the enums it uses.

Types:
    - BoosterConfig: Validated training/inference parameters
    - MissingNodeTreatment: Weight policy for the dedicated missing branch
    - Constraint: Monotone constraint direction
"""

from __future__ import annotations

import math
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from budgetboost.exceptions import ConfigError, ShapeMismatchError
from budgetboost.objectives import Objective

__all__: list[str] = [
    "BoosterConfig",
    "Constraint",
    "MissingNodeTreatment",
    "config_error",
]


class MissingNodeTreatment(str, Enum):
    """How the weight of a dedicated missing branch is chosen.

    Only used when ``create_missing_branch`` is enabled.
    """

    NONE = "None"
    """Fit the missing branch weight from its own rows."""
    ASSIGN_TO_PARENT = "AssignToParent"
    """Give the missing branch the weight of its parent node."""
    AVERAGE_LEAF_WEIGHT = "AverageLeafWeight"
    """After each tree is built, set missing branches (bottom-up) to the cover-weighted
    average of their siblings, and every internal node to the average of its children."""
    AVERAGE_NODE_WEIGHT = "AverageNodeWeight"
    """Set the missing branch to the cover-weighted average of the left and right children."""


class Constraint(IntEnum):
    """Monotone constraint direction for a feature."""

    NEGATIVE = -1
    UNCONSTRAINED = 0
    POSITIVE = 1


def config_error(e: ValidationError) -> ConfigError:
    """Turn a pydantic validation error into a ConfigError with a readable message."""
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "config"
        parts.append(f"{loc}: {err['msg']}")
    return ConfigError("Invalid parameters: " + "; ".join(parts))


class BoosterConfig(BaseModel):
    """Training and inference parameters.

    Assigning a field re-validates that field only; cross-field rules and the
    feature index checks (which need the data width) run in
    :meth:`validate_parameters`.

    Attributes:
        objective: Loss to optimize.
        budget: Positive scalar trading ensemble complexity for accuracy.
            Larger values take more, smaller steps (step size is ``10 ** -budget``).
        max_bin: Maximum histogram buckets per feature.
        num_threads: Worker threads, or None for all cores.
        monotone_constraints: Feature index to -1 / 0 / 1.
        force_children_to_bound_parent: Keep each parent weight between its children's.
        missing: Sentinel value marking absent entries (NaN is always missing).
        allow_missing_splits: Whether features with missing values in a node may be split on.
        create_missing_branch: Route missing values to a third, dedicated branch.
        terminate_missing_features: Features whose missing branch is always a leaf.
        missing_node_treatment: Weight policy for dedicated missing branches.
        log_iterations: Log progress every N rounds (0 disables).
        quantile: Target quantile for ``QuantileLoss``.
        reset: Whether a repeated ``fit`` restarts from scratch (None means yes).
        categorical_features: Feature indices treated as categories.
        timeout: Training wall-clock limit in seconds.
        iteration_limit: Maximum number of boosting rounds.
        memory_limit: Ceiling on estimated model size, in gigabytes.
        stopping_rounds: Early-stopping patience on validation loss.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid", use_enum_values=False)

    objective: Objective = Objective.LOG_LOSS
    budget: float = Field(default=0.5, gt=0)
    max_bin: int = Field(default=256, ge=2, le=65535)
    num_threads: int | None = Field(default=None, gt=0)
    monotone_constraints: dict[int, Constraint] = Field(default_factory=dict)
    force_children_to_bound_parent: bool = False
    missing: float = math.nan
    allow_missing_splits: bool = True
    create_missing_branch: bool = False
    terminate_missing_features: set[int] = Field(default_factory=set)
    missing_node_treatment: MissingNodeTreatment = MissingNodeTreatment.NONE
    log_iterations: int = Field(default=0, ge=0)
    quantile: float | None = None
    reset: bool | None = None
    categorical_features: set[int] | None = None
    timeout: float | None = Field(default=None, gt=0)
    iteration_limit: int | None = Field(default=None, gt=0)
    memory_limit: float | None = Field(default=None, gt=0)
    stopping_rounds: int | None = Field(default=None, gt=0)

    @field_validator("objective", mode="before")
    @classmethod
    def _parse_objective(cls, v: Any) -> Any:
        if isinstance(v, str) and not isinstance(v, Objective):
            try:
                return Objective(v)
            except ValueError:
                valid = ", ".join(o.value for o in Objective)
                raise ValueError(f"Invalid objective {v!r}, expected one of: {valid}") from None
        return v

    @field_validator("missing_node_treatment", mode="before")
    @classmethod
    def _parse_missing_node_treatment(cls, v: Any) -> Any:
        if isinstance(v, str) and not isinstance(v, MissingNodeTreatment):
            try:
                return MissingNodeTreatment(v)
            except ValueError:
                valid = ", ".join(t.value for t in MissingNodeTreatment)
                raise ValueError(f"Invalid missing_node_treatment {v!r}, expected one of: {valid}") from None
        return v

    @field_validator("monotone_constraints", mode="before")
    @classmethod
    def _parse_constraints(cls, v: Any) -> Any:
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("monotone_constraints must be a mapping of feature index to -1, 0 or 1")
        out: dict[int, Constraint] = {}
        for f, c in v.items():
            try:
                feature = int(f)
            except (TypeError, ValueError):
                raise ValueError(f"Invalid feature index {f!r}") from None
            if feature < 0:
                raise ValueError(f"Invalid feature index {feature}")
            if isinstance(c, bool) or c not in (-1, 0, 1):
                raise ValueError(f"Invalid monotone constraint for feature {feature}: {c}")
            out[feature] = Constraint(int(c))
        return out

    @field_validator("terminate_missing_features", "categorical_features")
    @classmethod
    def _check_indices(cls, v: set[int] | None) -> set[int] | None:
        if v is not None:
            bad = sorted(i for i in v if i < 0)
            if bad:
                raise ValueError(f"Invalid feature index {bad[0]}")
        return v

    @field_validator("quantile")
    @classmethod
    def _check_quantile(cls, v: float | None) -> float | None:
        if v is not None and not 0.0 < v < 1.0:
            raise ValueError(f"quantile must lie in (0, 1), got {v}")
        return v

    def validate_parameters(self, n_features: int | None = None) -> None:
        """Check cross-field rules and, when ``n_features`` is known, feature indices.

        Raises:
            ConfigError: If the quantile objective has no quantile.
            ShapeMismatchError: If a referenced feature index is ``>= n_features``.
        """
        if self.objective is Objective.QUANTILE_LOSS and self.quantile is None:
            raise ConfigError("QuantileLoss requires quantile in (0, 1)")
        if n_features is None:
            return
        referenced = [
            ("monotone_constraints", set(self.monotone_constraints)),
            ("terminate_missing_features", self.terminate_missing_features),
            ("categorical_features", self.categorical_features or set()),
        ]
        for name, indices in referenced:
            for i in sorted(indices):
                if i >= n_features:
                    raise ShapeMismatchError(
                        f"{name} references feature {i}, but data has {n_features} columns",
                        expected=n_features,
                        actual=i,
                    )

    def set_param(self, name: str, value: Any) -> None:
        """Assign one field, raising ConfigError when the value is invalid."""
        if name not in type(self).model_fields:
            raise ConfigError(f"Unknown parameter {name!r}")
        try:
            setattr(self, name, value)
        except ValidationError as e:
            raise config_error(e) from None

    def to_params(self) -> dict[str, Any]:
        """Plain-python view of the configuration (enum names, sorted lists).

        The result can be passed back as keyword arguments to rebuild an equal
        configuration, and is JSON-encodable with the standard library.
        """
        return {
            "objective": self.objective.value,
            "budget": self.budget,
            "max_bin": self.max_bin,
            "num_threads": self.num_threads,
            "monotone_constraints": {f: int(c) for f, c in sorted(self.monotone_constraints.items())},
            "force_children_to_bound_parent": self.force_children_to_bound_parent,
            "missing": self.missing,
            "allow_missing_splits": self.allow_missing_splits,
            "create_missing_branch": self.create_missing_branch,
            "terminate_missing_features": sorted(self.terminate_missing_features),
            "missing_node_treatment": self.missing_node_treatment.value,
            "log_iterations": self.log_iterations,
            "quantile": self.quantile,
            "reset": self.reset,
            "categorical_features": (
                sorted(self.categorical_features) if self.categorical_features is not None else None
            ),
            "timeout": self.timeout,
            "iteration_limit": self.iteration_limit,
            "memory_limit": self.memory_limit,
            "stopping_rounds": self.stopping_rounds,
        }

    @classmethod
    def from_params(cls, **params: Any) -> BoosterConfig:
        """Build and validate a configuration, raising ConfigError on bad values."""
        try:
            config = cls(**params)
        except ValidationError as e:
            raise config_error(e) from None
        config.validate_parameters()
        return config
