"""Common type aliases for budgetboost.

This module defines type aliases used throughout the budgetboost package.
"""

from typing import Literal

# =============================================================================
# Explanation Types
# =============================================================================

ContributionMethod = Literal[
    "Weight",
    "Average",
    "Shapley",
    "BranchDifference",
    "MidpointDifference",
    "ModeDifference",
    "ProbabilityChange",
]
"""Feature attribution method for ``predict_contributions``.

- ``"Weight"``: Walk each row's path and credit the split feature with the change
  in internal node weight (Saabas attribution).
- ``"Average"``: Same walk, but internal node values are the cover-weighted average
  of their leaves.
- ``"Shapley"``: Path-dependent TreeSHAP values.
- ``"BranchDifference"``: Taken branch weight minus the other non-missing branch.
- ``"MidpointDifference"``: Taken branch weight minus the cover-weighted midpoint of
  both branches.
- ``"ModeDifference"``: Taken branch weight minus the branch with the largest cover.
- ``"ProbabilityChange"``: Change in predicted probability along the path
  (``LogLoss`` only). Rows sum to ``predict_proba``.

The first three methods are additive: each row sums to ``predict``.
"""

ImportanceMethod = Literal["Weight", "Gain", "Cover", "TotalGain", "TotalCover"]
"""Feature importance aggregation.

- ``"Weight"``: Number of splits using the feature.
- ``"Gain"``: Average split gain of the feature.
- ``"Cover"``: Average hessian cover of the feature's splits.
- ``"TotalGain"``: Summed split gain.
- ``"TotalCover"``: Summed hessian cover.
"""

CONTRIBUTION_METHODS: dict[str, ContributionMethod] = {
    "weight": "Weight",
    "average": "Average",
    "shapley": "Shapley",
    "branch-difference": "BranchDifference",
    "branchdifference": "BranchDifference",
    "midpoint-difference": "MidpointDifference",
    "midpointdifference": "MidpointDifference",
    "mode-difference": "ModeDifference",
    "modedifference": "ModeDifference",
    "probability-change": "ProbabilityChange",
    "probabilitychange": "ProbabilityChange",
}

IMPORTANCE_METHODS: dict[str, ImportanceMethod] = {
    "weight": "Weight",
    "gain": "Gain",
    "cover": "Cover",
    "totalgain": "TotalGain",
    "total-gain": "TotalGain",
    "totalcover": "TotalCover",
    "total-cover": "TotalCover",
}
