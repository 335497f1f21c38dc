"""Tests for monotone constraints, missing-value policies and categorical splits.

These train small models and check structural properties of the resulting
trees rather than exact values.
"""

import math

import numpy as np
import pytest

from budgetboost import Booster, MissingNodeTreatment
from budgetboost.tree import Node, Tree


def make_wavy_data(n_samples: int = 300, seed: int = 42) -> tuple[np.ndarray, np.ndarray]:
    """Increasing trend in feature 0 with a strong non-monotone wiggle."""
    rng = np.random.default_rng(seed)
    X = rng.uniform(-2, 2, (n_samples, 3))  # noqa: N806
    y = X[:, 0] + np.sin(4 * X[:, 0]) + 0.5 * X[:, 1] + rng.standard_normal(n_samples) * 0.1
    return X, y


def make_missing_data(n_samples: int = 400, seed: int = 42) -> tuple[np.ndarray, np.ndarray]:
    """Feature 0 is missing for a third of the rows, which have their own level."""
    rng = np.random.default_rng(seed)
    X = rng.standard_normal((n_samples, 2))  # noqa: N806
    absent = rng.random(n_samples) < 1 / 3
    y = np.where(absent, 5.0 + 2.0 * X[:, 1], 3.0 * X[:, 0])
    X[absent, 0] = np.nan
    return X, y


def split_nodes(model: Booster) -> list[tuple[Tree, Node]]:
    """Every split node of every tree."""
    return [(tree, node) for tree in model.trees for node in tree.nodes if not node.is_leaf]


class TestMonotoneConstraints:
    """Tests for monotone constraints."""

    @pytest.mark.parametrize("force", [False, True])
    @pytest.mark.parametrize("direction", [1, -1])
    def test_predictions_are_monotone(self, direction: int, force: bool) -> None:
        """Predictions move in the constrained direction along the feature."""
        X, y = make_wavy_data()  # noqa: N806
        model = Booster(
            objective="SquaredLoss",
            budget=1.0,
            monotone_constraints={0: direction},
            force_children_to_bound_parent=force,
        ).fit(X, direction * y)

        grid = np.linspace(-2.5, 2.5, 60)
        for row in X[:10]:
            sweep = np.tile(row, (grid.size, 1))
            sweep[:, 0] = grid
            diffs = np.diff(model.predict(sweep)) * direction
            assert np.all(diffs >= 0)

    def test_unconstrained_model_is_not_monotone(self) -> None:
        """The wiggle is learned when feature 0 is unconstrained."""
        X, y = make_wavy_data()  # noqa: N806
        model = Booster(objective="SquaredLoss", budget=1.0).fit(X, y)
        grid = np.linspace(-2.5, 2.5, 60)
        sweep = np.tile(X[0], (grid.size, 1))
        sweep[:, 0] = grid
        assert np.any(np.diff(model.predict(sweep)) < 0)

    def test_constrained_children_respect_bounds(self) -> None:
        """Every node weight lies within the bounds it was built with."""
        X, y = make_wavy_data()  # noqa: N806
        model = Booster(objective="SquaredLoss", budget=1.0, monotone_constraints={0: 1}).fit(X, y)
        eta = 10.0**-1.0
        for tree in model.trees:
            for node in tree.nodes:
                w = node.weight_value / eta
                assert node.lower_bound - 1e-9 <= w <= node.upper_bound + 1e-9


class TestMissingValues:
    """Tests for missing-value routing and policies."""

    def test_default_direction_without_missing(self) -> None:
        """Without missing training values, missing follows the heavier child."""
        X, y = make_wavy_data()  # noqa: N806
        model = Booster(objective="SquaredLoss").fit(X, y)
        for tree, node in split_nodes(model):
            assert node.missing_node in (node.left_child, node.right_child)
            other = node.right_child if node.missing_node == node.left_child else node.left_child
            assert tree.nodes[node.missing_node].hessian_sum >= tree.nodes[other].hessian_sum - 1e-9

    def test_missing_predictions_deterministic(self) -> None:
        """Rows with missing values get a finite, repeatable prediction."""
        X, y = make_missing_data()  # noqa: N806
        model = Booster(objective="SquaredLoss").fit(X, y)
        sweep = np.array([[np.nan, 0.0], [np.nan, 1.0]])
        first = model.predict(sweep)
        assert np.all(np.isfinite(first))
        np.testing.assert_array_equal(first, model.predict(sweep))

    def test_sentinel_matches_nan(self) -> None:
        """A sentinel missing value behaves exactly like NaN."""
        X, y = make_missing_data()  # noqa: N806
        X_sentinel = np.where(np.isnan(X), -999.0, X)  # noqa: N806
        nan_model = Booster(objective="SquaredLoss").fit(X, y)
        sentinel_model = Booster(objective="SquaredLoss", missing=-999.0).fit(X_sentinel, y)
        np.testing.assert_array_equal(nan_model.predict(X), sentinel_model.predict(X_sentinel))

    def test_disallowed_missing_splits(self) -> None:
        """Splits only use features that have no missing values in the node."""
        X, y = make_missing_data()  # noqa: N806
        model = Booster(objective="SquaredLoss", allow_missing_splits=False).fit(X, y)
        missing = np.isnan(X)
        for tree in model.trees:
            for rows, nodes, _ in tree.walk(X, missing):
                features = np.array([tree.nodes[n].split_feature for n in nodes])
                assert not missing[rows, features].any()

    def test_missing_branch_created(self) -> None:
        """With create_missing_branch, missing rows get a dedicated child."""
        X, y = make_missing_data()  # noqa: N806
        model = Booster(objective="SquaredLoss", create_missing_branch=True).fit(X, y)
        branched = [node for _, node in split_nodes(model) if node.has_missing_branch]
        assert branched
        assert all(len(node.children()) == 3 for node in branched)
        preds = model.predict(np.array([[np.nan, 0.0], [0.0, 0.0]]))
        assert abs(preds[0] - 5.0) < abs(preds[1] - 5.0)

    def test_terminated_missing_branches_are_leaves(self) -> None:
        """Missing branches of terminated features are never split further."""
        X, y = make_missing_data()  # noqa: N806
        model = Booster(
            objective="SquaredLoss",
            create_missing_branch=True,
            terminate_missing_features={0},
        ).fit(X, y)
        checked = 0
        for tree, node in split_nodes(model):
            if node.has_missing_branch and node.split_feature == 0:
                assert tree.nodes[node.missing_node].is_leaf
                checked += 1
        assert checked > 0

    def test_assign_to_parent(self) -> None:
        """Missing branches carry their parent's weight."""
        X, y = make_missing_data()  # noqa: N806
        model = Booster(
            objective="SquaredLoss",
            create_missing_branch=True,
            missing_node_treatment="AssignToParent",
        ).fit(X, y)
        branched = [(t, n) for t, n in split_nodes(model) if n.has_missing_branch]
        assert branched
        for tree, node in branched:
            assert tree.nodes[node.missing_node].weight_value == node.weight_value

    def test_average_node_weight(self) -> None:
        """Missing branches carry the cover-weighted average of their siblings."""
        X, y = make_missing_data()  # noqa: N806
        model = Booster(
            objective="SquaredLoss",
            create_missing_branch=True,
            missing_node_treatment=MissingNodeTreatment.AVERAGE_NODE_WEIGHT,
        ).fit(X, y)
        branched = [(t, n) for t, n in split_nodes(model) if n.has_missing_branch]
        assert branched
        for tree, node in branched:
            left, right = tree.nodes[node.left_child], tree.nodes[node.right_child]
            expected = (left.hessian_sum * left.weight_value + right.hessian_sum * right.weight_value) / (
                left.hessian_sum + right.hessian_sum
            )
            assert tree.nodes[node.missing_node].weight_value == pytest.approx(expected, rel=1e-6, abs=1e-12)

    def test_average_leaf_weight(self) -> None:
        """Every internal node holds the cover-weighted average of its children."""
        X, y = make_missing_data()  # noqa: N806
        model = Booster(
            objective="SquaredLoss",
            create_missing_branch=True,
            missing_node_treatment="AverageLeafWeight",
        ).fit(X, y)
        for tree, node in split_nodes(model):
            kids = [tree.nodes[c] for c in node.children()]
            cover = sum(k.hessian_sum for k in kids)
            if cover > 0:
                expected = sum(k.hessian_sum * k.weight_value for k in kids) / cover
                assert node.weight_value == pytest.approx(expected, rel=1e-9, abs=1e-12)


class TestCategoricalSplits:
    """Tests for categorical features."""

    def test_categories_grouped(self) -> None:
        """Non-ordinal category effects are learned with set splits."""
        rng = np.random.default_rng(42)
        n = 400
        cats = rng.integers(0, 6, n).astype(np.float64)
        effects = np.array([3.0, -1.0, 2.0, -2.0, 0.0, 1.0])
        X = np.column_stack([cats, rng.standard_normal(n)])  # noqa: N806
        y = effects[cats.astype(int)] + rng.standard_normal(n) * 0.1
        model = Booster(objective="SquaredLoss", budget=1.0, categorical_features={0}).fit(X, y)

        cat_nodes = [node for _, node in split_nodes(model) if node.left_categories is not None]
        assert cat_nodes
        assert all(node.split_feature == 0 and math.isnan(node.split_value) for node in cat_nodes)
        mse = float(np.mean((model.predict(X) - y) ** 2))
        assert mse < 0.1 * float(np.var(y))
