"""Tests for tree routing, structure helpers and contributions on hand-built trees."""

import math

import numpy as np
import pytest

from budgetboost.contributions import expected_values, predict_contributions
from budgetboost.tree import Ensemble, Node, Tree


def make_stump(missing_branch: bool = False) -> Tree:
    """``x0 < 0.5`` goes left (1.0, cover 1), else right (2.0, cover 3).

    Missing values go right, or to a third leaf (5.0, cover 1) with ``missing_branch``.
    """
    nodes = [
        Node(
            num=0,
            weight_value=0.0,
            hessian_sum=5.0 if missing_branch else 4.0,
            depth=0,
            split_value=0.5,
            split_feature=0,
            split_gain=1.0,
            missing_node=3 if missing_branch else 2,
            left_child=1,
            right_child=2,
            is_leaf=False,
        ),
        Node(num=1, weight_value=1.0, hessian_sum=1.0, depth=1),
        Node(num=2, weight_value=2.0, hessian_sum=3.0, depth=1),
    ]
    if missing_branch:
        nodes.append(Node(num=3, weight_value=5.0, hessian_sum=1.0, depth=1))
    return Tree(nodes)


def route(tree: Tree, values: list[list[float]]) -> np.ndarray:
    """Predict rows through ``tree``."""
    X = np.array(values, dtype=np.float64)  # noqa: N806
    return tree.predict(X, np.isnan(X))


class TestRouting:
    """Tests for row routing."""

    def test_numeric_split(self) -> None:
        """Values below the threshold go left, missing follows missing_node."""
        np.testing.assert_array_equal(route(make_stump(), [[0.0], [0.5], [math.nan]]), [1.0, 2.0, 2.0])

    def test_missing_branch(self) -> None:
        """A dedicated missing branch receives only missing rows."""
        tree = make_stump(missing_branch=True)
        assert tree.nodes[0].has_missing_branch
        np.testing.assert_array_equal(route(tree, [[0.0], [1.0], [math.nan]]), [1.0, 2.0, 5.0])

    def test_categorical_split(self) -> None:
        """Categorical nodes send listed categories left."""
        tree = make_stump()
        tree.nodes[0].left_categories = [1.0, 3.0]
        tree.nodes[0].split_value = math.nan
        np.testing.assert_array_equal(route(tree, [[1.0], [2.0], [3.0]]), [1.0, 2.0, 1.0])

    def test_single_leaf(self) -> None:
        """A lone leaf predicts its weight everywhere."""
        tree = Tree([Node(num=0, weight_value=0.25, hessian_sum=1.0, depth=0)])
        np.testing.assert_array_equal(route(tree, [[0.0], [9.0]]), [0.25, 0.25])

    def test_parallel_predict_matches(self) -> None:
        """Row-chunked prediction gives identical results."""
        rng = np.random.default_rng(42)
        X = rng.random((101, 1))  # noqa: N806
        ensemble = Ensemble(base_score=0.1, trees=[make_stump(), make_stump()])
        serial = ensemble.predict_raw(X, np.isnan(X))
        parallel = ensemble.predict_raw(X, np.isnan(X), parallel=True, n_threads=4)
        np.testing.assert_array_equal(serial, parallel)


class TestStructure:
    """Tests for structure queries."""

    def test_partial_dependence(self) -> None:
        """Split features follow the value; others average by cover."""
        tree = make_stump()
        assert tree.value_partial_dependence(0, 0.0, False) == 1.0
        assert tree.value_partial_dependence(0, 0.0, True) == 2.0
        assert tree.value_partial_dependence(1, 0.0, False) == pytest.approx(1.75)

    def test_expected_values(self) -> None:
        """Internal nodes hold the cover-weighted mean of their leaves."""
        np.testing.assert_allclose(expected_values(make_stump()), [1.75, 1.0, 2.0])

    def test_compact_drops_unreachable(self) -> None:
        """Collapsing a node and compacting renumbers the arena."""
        tree = make_stump()
        root = tree.nodes[0]
        root.is_leaf = True
        root.left_child = root.right_child = root.missing_node = -1
        tree.compact()
        assert len(tree) == 1
        assert tree.nodes[0].num == 0
        np.testing.assert_array_equal(route(tree, [[0.0]]), [0.0])

    def test_text_rendering(self) -> None:
        """Split and leaf lines are rendered with indentation."""
        text = str(make_stump())
        lines = text.splitlines()
        assert lines[0].startswith("0:[0 < 0.5]")
        assert "leaf=1.0" in lines[1]
        assert lines[1].startswith(" ")


class TestContributionsOnStump:
    """Contributions on a tree with known values."""

    def test_shapley_exact(self) -> None:
        """The only split feature carries prediction minus expectation."""
        ensemble = Ensemble(base_score=0.5, trees=[make_stump()])
        X = np.array([[0.0, 7.0], [1.0, 7.0]])  # noqa: N806
        contribs = predict_contributions(ensemble, X, np.isnan(X), "Shapley")
        np.testing.assert_allclose(contribs[:, 0], [-0.75, 0.25])
        np.testing.assert_allclose(contribs[:, 1], [0.0, 0.0])
        np.testing.assert_allclose(contribs[:, 2], [2.25, 2.25])

    def test_average_matches_shapley_for_single_split(self) -> None:
        """With one split, the path and Shapley attributions agree."""
        ensemble = Ensemble(base_score=0.0, trees=[make_stump()])
        X = np.array([[0.0], [1.0]])  # noqa: N806
        average = predict_contributions(ensemble, X, np.isnan(X), "Average")
        shapley = predict_contributions(ensemble, X, np.isnan(X), "Shapley")
        np.testing.assert_allclose(average, shapley)

    def test_branch_difference(self) -> None:
        """Taken branch minus the other branch; zero down a missing branch."""
        ensemble = Ensemble(base_score=0.0, trees=[make_stump(missing_branch=True)])
        X = np.array([[0.0], [1.0], [math.nan]])  # noqa: N806
        contribs = predict_contributions(ensemble, X, np.isnan(X), "BranchDifference")
        np.testing.assert_allclose(contribs[:, 0], [-1.0, 1.0, 0.0])
        np.testing.assert_allclose(contribs[:, 1], [0.0, 0.0, 0.0])

    def test_mode_difference(self) -> None:
        """Taken branch minus the branch with the largest cover."""
        ensemble = Ensemble(base_score=0.0, trees=[make_stump()])
        X = np.array([[0.0], [1.0]])  # noqa: N806
        contribs = predict_contributions(ensemble, X, np.isnan(X), "ModeDifference")
        np.testing.assert_allclose(contribs[:, 0], [-1.0, 0.0])

    def test_midpoint_difference(self) -> None:
        """Taken branch minus the cover-weighted midpoint."""
        ensemble = Ensemble(base_score=0.0, trees=[make_stump()])
        X = np.array([[0.0], [1.0]])  # noqa: N806
        contribs = predict_contributions(ensemble, X, np.isnan(X), "MidpointDifference")
        np.testing.assert_allclose(contribs[:, 0], [-0.75, 0.25])
