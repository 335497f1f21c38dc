"""Per-feature prediction contributions.

Every method returns a ``(rows, cols + 1)`` array whose last column is the
bias term. ``Weight``, ``Average`` and ``Shapley`` are additive: each row sums
to the raw prediction. ``ProbabilityChange`` rows sum to the predicted
probability. The difference methods are explanatory only and do not sum to
anything in particular.
"""

from __future__ import annotations

from collections.abc import Callable

import numpy as np
from numpy.typing import NDArray

from budgetboost.objectives import sigmoid
from budgetboost.tree import Ensemble, Tree
from budgetboost.types import ContributionMethod
from budgetboost.utils import chunk_ranges, parallel_map

__all__: list[str] = [
    "expected_values",
    "predict_contributions",
]

FloatArray = NDArray[np.float64]


def _weights(tree: Tree) -> FloatArray:
    return np.array([n.weight_value for n in tree.nodes], dtype=np.float64)


def expected_values(tree: Tree) -> FloatArray:
    """Cover-weighted mean leaf value below every node."""
    out = _weights(tree)
    # Children always have larger indices than their parent.
    for node in reversed(tree.nodes):
        if node.is_leaf:
            continue
        kids = node.children()
        cover = np.array([tree.nodes[c].hessian_sum for c in kids])
        if cover.sum() > 0:
            out[node.num] = float(np.dot(cover, out[kids]) / cover.sum())
    return out


def _midpoints(tree: Tree, weights: FloatArray) -> FloatArray:
    out = weights.copy()
    for node in tree.nodes:
        if node.is_leaf:
            continue
        left, right = tree.nodes[node.left_child], tree.nodes[node.right_child]
        cover = left.hessian_sum + right.hessian_sum
        if cover > 0:
            out[node.num] = (left.hessian_sum * weights[left.num] + right.hessian_sum * weights[right.num]) / cover
    return out


def _modes(tree: Tree) -> NDArray[np.intp]:
    out = np.arange(len(tree.nodes), dtype=np.intp)
    for node in tree.nodes:
        if not node.is_leaf:
            out[node.num] = max(node.children(), key=lambda c: tree.nodes[c].hessian_sum)
    return out


def _other_branch(tree: Tree) -> tuple[NDArray[np.intp], NDArray[np.intp]]:
    left = np.array([n.left_child for n in tree.nodes], dtype=np.intp)
    right = np.array([n.right_child for n in tree.nodes], dtype=np.intp)
    return left, right


# =============================================================================
# Path-based methods (vectorized over rows)
# =============================================================================


def _delta_fn(tree: Tree, method: ContributionMethod) -> Callable[[NDArray[np.intp], NDArray[np.intp]], FloatArray]:
    """Per-step contribution of moving from ``nodes`` to ``nxt``."""
    w = _weights(tree)
    match method:
        case "Weight":
            return lambda nodes, nxt: w[nxt] - w[nodes]
        case "Average":
            values = expected_values(tree)
            return lambda nodes, nxt: values[nxt] - values[nodes]
        case "BranchDifference":
            left, right = _other_branch(tree)

            def branch_difference(nodes: NDArray[np.intp], nxt: NDArray[np.intp]) -> FloatArray:
                # Rows sent down a dedicated missing branch have no opposite branch.
                other = np.where(nxt == left[nodes], right[nodes], np.where(nxt == right[nodes], left[nodes], -1))
                return np.where(other >= 0, w[nxt] - w[np.maximum(other, 0)], 0.0)

            return branch_difference
        case "MidpointDifference":
            mid = _midpoints(tree, w)
            return lambda nodes, nxt: w[nxt] - mid[nodes]
        case "ModeDifference":
            mode = _modes(tree)
            return lambda nodes, nxt: w[nxt] - w[mode[nodes]]
    raise ValueError(f"Unknown contribution method: {method!r}")


def _path_contributions(
    ensemble: Ensemble,
    X: FloatArray,  # noqa: N803
    missing: NDArray[np.bool_],
    method: ContributionMethod,
) -> FloatArray:
    n, p = X.shape
    out = np.zeros((n, p + 1), dtype=np.float64)
    out[:, -1] = ensemble.base_score
    for tree in ensemble.trees:
        if method == "Weight":
            out[:, -1] += tree.nodes[0].weight_value
        elif method == "Average":
            out[:, -1] += expected_values(tree)[0]
        delta = _delta_fn(tree, method)
        features = np.array([max(nd.split_feature, 0) for nd in tree.nodes], dtype=np.intp)
        for rows, nodes, nxt in tree.walk(X, missing):
            out[rows, features[nodes]] += delta(nodes, nxt)
    return out


def _probability_change(ensemble: Ensemble, X: FloatArray, missing: NDArray[np.bool_]) -> FloatArray:  # noqa: N803
    n, p = X.shape
    out = np.zeros((n, p + 1), dtype=np.float64)
    raw = np.full(n, ensemble.base_score, dtype=np.float64)
    out[:, -1] = sigmoid(raw)
    for tree in ensemble.trees:
        w = _weights(tree)
        features = np.array([max(nd.split_feature, 0) for nd in tree.nodes], dtype=np.intp)
        out[:, -1] += sigmoid(raw + w[0]) - sigmoid(raw)
        for rows, nodes, nxt in tree.walk(X, missing):
            r = raw[rows]
            out[rows, features[nodes]] += sigmoid(r + w[nxt]) - sigmoid(r + w[nodes])
        raw += tree.predict(X, missing)
    return out


# =============================================================================
# TreeSHAP
# =============================================================================
# Path elements are [feature, zero_fraction, one_fraction, weight].


def _extend(path: list[list[float]], zero: float, one: float, feature: int) -> list[list[float]]:
    path = [e.copy() for e in path]
    depth = len(path)
    path.append([feature, zero, one, 1.0 if depth == 0 else 0.0])
    for i in range(depth - 1, -1, -1):
        path[i + 1][3] += one * path[i][3] * (i + 1) / (depth + 1)
        path[i][3] = zero * path[i][3] * (depth - i) / (depth + 1)
    return path


def _unwind(path: list[list[float]], index: int) -> list[list[float]]:
    path = [e.copy() for e in path]
    depth = len(path) - 1
    _, zero, one, _ = path[index]
    nxt = path[depth][3]
    for i in range(depth - 1, -1, -1):
        if one != 0:
            tmp = path[i][3]
            path[i][3] = nxt * (depth + 1) / ((i + 1) * one)
            nxt = tmp - path[i][3] * zero * (depth - i) / (depth + 1)
        else:
            path[i][3] = path[i][3] * (depth + 1) / (zero * (depth - i))
    for i in range(index, depth):
        path[i][0], path[i][1], path[i][2] = path[i + 1][0], path[i + 1][1], path[i + 1][2]
    path.pop()
    return path


def _unwound_sum(path: list[list[float]], index: int) -> float:
    depth = len(path) - 1
    _, zero, one, _ = path[index]
    nxt = path[depth][3]
    total = 0.0
    for i in range(depth - 1, -1, -1):
        if one != 0:
            tmp = nxt * (depth + 1) / ((i + 1) * one)
            total += tmp
            nxt = path[i][3] - tmp * zero * (depth - i) / (depth + 1)
        elif zero != 0:
            total += path[i][3] / (zero * (depth - i) / (depth + 1))
    return total


def _shap_row(
    tree: Tree,
    x: FloatArray,
    x_missing: NDArray[np.bool_],
    phi: FloatArray,
    num: int,
    path: list[list[float]],
    zero: float,
    one: float,
    feature: int,
) -> None:
    path = _extend(path, zero, one, feature)
    node = tree.nodes[num]
    if node.is_leaf:
        for i in range(1, len(path)):
            w = _unwound_sum(path, i)
            phi[int(path[i][0])] += w * (path[i][2] - path[i][1]) * node.weight_value
        return

    f = node.split_feature
    if x_missing[f]:
        hot = node.missing_node
    else:
        hot = node.left_child if node.goes_left(x[f]) else node.right_child
    incoming_zero, incoming_one = 1.0, 1.0
    for k in range(1, len(path)):
        if int(path[k][0]) == f:
            incoming_zero, incoming_one = path[k][1], path[k][2]
            path = _unwind(path, k)
            break
    kids = node.children()
    cover = sum(tree.nodes[c].hessian_sum for c in kids)
    for child in kids:
        fraction = tree.nodes[child].hessian_sum / cover if cover > 0 else 0.0
        if fraction == 0.0 and (child != hot or incoming_one == 0.0):
            continue
        _shap_row(
            tree,
            x,
            x_missing,
            phi,
            child,
            path,
            incoming_zero * fraction,
            incoming_one if child == hot else 0.0,
            f,
        )


def _shapley(
    ensemble: Ensemble,
    X: FloatArray,  # noqa: N803
    missing: NDArray[np.bool_],
    n_threads: int,
    parallel: bool,
) -> FloatArray:
    n, p = X.shape
    out = np.zeros((n, p + 1), dtype=np.float64)
    out[:, -1] = ensemble.base_score + sum(float(expected_values(t)[0]) for t in ensemble.trees)

    def run(bounds: tuple[int, int]) -> None:
        for r in range(*bounds):
            phi = np.zeros(p + 1, dtype=np.float64)
            for tree in ensemble.trees:
                if not tree.nodes[0].is_leaf:
                    _shap_row(tree, X[r], missing[r], phi, 0, [], 1.0, 1.0, p)
            out[r, :p] += phi[:p]

    parallel_map(run, chunk_ranges(n, n_threads if parallel else 1), n_threads, parallel=parallel)
    return out


def predict_contributions(
    ensemble: Ensemble,
    X: FloatArray,  # noqa: N803
    missing: NDArray[np.bool_],
    method: ContributionMethod,
    *,
    n_threads: int = 1,
    parallel: bool = False,
) -> FloatArray:
    """Contribution matrix for ``method`` (canonical name)."""
    if method == "Shapley":
        return _shapley(ensemble, X, missing, n_threads, parallel)
    if method == "ProbabilityChange":
        return _probability_change(ensemble, X, missing)
    return _path_contributions(ensemble, X, missing, method)
