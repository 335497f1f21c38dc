"""budgetboost - Budget-driven gradient boosted decision trees.

Instead of a tree count and a learning rate, training takes a single
``budget``: larger budgets take smaller steps and train longer. The package
also covers monotone constraints, missing-value policies, feature
contributions, pruning, split-conformal prediction intervals and a JSON model
format.

Example:
    >>> import numpy as np
    >>> import budgetboost as bb
    >>> rng = np.random.default_rng(0)
    >>> X = rng.standard_normal((200, 4))
    >>> y = (X[:, 0] + X[:, 1] > 0).astype(float)
    >>> model = bb.Booster(objective="LogLoss", budget=0.5).fit(X, y)
    >>> model.predict_proba(X[:3]).shape
    (3,)
"""

# Model types
from budgetboost.booster import Booster, BoosterState

# Conformal results
from budgetboost.conformal import CalibrationResult

# Config types
from budgetboost.config import BoosterConfig, Constraint, MissingNodeTreatment

# Data types
from budgetboost.data import Matrix

# Errors
from budgetboost.exceptions import (
    BoosterError,
    ConfigError,
    DeserializationError,
    IoError,
    KeyNotFoundError,
    NotCalibratedError,
    NotFittedError,
    ShapeMismatchError,
    UnsupportedOperationError,
)

# Multi-output
from budgetboost.multi_output import MultiOutputBooster

# Objective enum
from budgetboost.objectives import Objective

# Type aliases
from budgetboost.types import ContributionMethod, ImportanceMethod
from budgetboost.utils import percentiles

__version__ = "0.1.0"

__all__ = [
    "Booster",
    "BoosterConfig",
    "BoosterError",
    "BoosterState",
    "CalibrationResult",
    "ConfigError",
    "Constraint",
    "ContributionMethod",
    "DeserializationError",
    "ImportanceMethod",
    "IoError",
    "KeyNotFoundError",
    "Matrix",
    "MissingNodeTreatment",
    "MultiOutputBooster",
    "NotCalibratedError",
    "NotFittedError",
    "Objective",
    "ShapeMismatchError",
    "UnsupportedOperationError",
    "__version__",
    "percentiles",
]
