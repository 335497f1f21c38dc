"""scikit-learn compatible estimators."""

from budgetboost.sklearn.base import BudgetBoostEstimatorBase, build_booster_config
from budgetboost.sklearn.estimators import BudgetBoostClassifier, BudgetBoostRegressor

__all__ = [
    "BudgetBoostClassifier",
    "BudgetBoostEstimatorBase",
    "BudgetBoostRegressor",
    "build_booster_config",
]
