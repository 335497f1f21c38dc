"""Decision tree and ensemble structures.

Trees are stored as an index-based arena: ``Tree.nodes[i].num == i`` and
children are referenced by index. A split node routes a row left when its
value is below ``split_value`` (or, for categorical splits, when its value is
in ``left_categories``), right otherwise, and to ``missing_node`` when the
value is absent. ``missing_node`` is either one of the two children or a
dedicated third branch.
"""

from __future__ import annotations

import math
from collections.abc import Iterator
from dataclasses import dataclass, field

import numpy as np
from numpy.typing import NDArray

from budgetboost.utils import chunk_ranges, parallel_map

__all__: list[str] = [
    "Ensemble",
    "Node",
    "Tree",
]

# Estimated in-memory size of one node, used for the memory ceiling.
NODE_BYTES = 160


@dataclass
class Node:
    """One split or leaf node."""

    num: int
    weight_value: float
    hessian_sum: float
    depth: int
    split_value: float = math.nan
    split_feature: int = -1
    split_gain: float = 0.0
    missing_node: int = -1
    left_child: int = -1
    right_child: int = -1
    is_leaf: bool = True
    lower_bound: float = -math.inf
    upper_bound: float = math.inf
    left_categories: list[float] | None = None

    @property
    def has_missing_branch(self) -> bool:
        return not self.is_leaf and self.missing_node not in (self.left_child, self.right_child)

    def children(self) -> list[int]:
        """Distinct child indices (two, or three with a missing branch)."""
        if self.is_leaf:
            return []
        if self.has_missing_branch:
            return [self.left_child, self.right_child, self.missing_node]
        return [self.left_child, self.right_child]

    def goes_left(self, value: float) -> bool:
        """Routing of a present value."""
        if self.left_categories is not None:
            return value in self.left_categories
        return value < self.split_value

    def __str__(self) -> str:
        if self.is_leaf:
            return f"{self.num}:leaf={self.weight_value},cover={self.hessian_sum}"
        if self.left_categories is not None:
            cond = f"{self.split_feature} in {self.left_categories}"
        else:
            cond = f"{self.split_feature} < {self.split_value}"
        return (
            f"{self.num}:[{cond}] yes={self.left_child},no={self.right_child},"
            f"missing={self.missing_node},gain={self.split_gain},cover={self.hessian_sum}"
        )


@dataclass
class Tree:
    """A single decision tree over an arena of nodes."""

    nodes: list[Node] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._compiled: dict[str, NDArray] | None = None

    # -------------------------------------------------------------------------
    # Vectorized traversal
    # -------------------------------------------------------------------------

    def _arrays(self) -> dict[str, NDArray]:
        if self._compiled is None:
            nodes = self.nodes
            self._compiled = {
                "feature": np.array([max(n.split_feature, 0) for n in nodes], dtype=np.intp),
                "threshold": np.array([n.split_value for n in nodes], dtype=np.float64),
                "left": np.array([n.left_child for n in nodes], dtype=np.intp),
                "right": np.array([n.right_child for n in nodes], dtype=np.intp),
                "missing": np.array([n.missing_node for n in nodes], dtype=np.intp),
                "is_leaf": np.array([n.is_leaf for n in nodes], dtype=bool),
                "weight": np.array([n.weight_value for n in nodes], dtype=np.float64),
                "categorical": np.array([n.left_categories is not None for n in nodes], dtype=bool),
            }
        return self._compiled

    def invalidate(self) -> None:
        """Drop cached arrays after the node list was modified."""
        self._compiled = None

    def walk(
        self, X: NDArray[np.float64], missing: NDArray[np.bool_]  # noqa: N803
    ) -> Iterator[tuple[NDArray[np.intp], NDArray[np.intp], NDArray[np.intp]]]:
        """Route all rows down the tree one level at a time.

        Yields ``(rows, nodes, next_nodes)`` for every row still at a split node.
        """
        arr = self._arrays()
        position = np.zeros(X.shape[0], dtype=np.intp)
        active = np.arange(X.shape[0], dtype=np.intp)
        if arr["is_leaf"][0]:
            return
        while active.size:
            nodes = position[active]
            feat = arr["feature"][nodes]
            vals = X[active, feat]
            miss = missing[active, feat]
            go_left = vals < arr["threshold"][nodes]
            cat = arr["categorical"][nodes]
            if cat.any():
                cat_pos = np.flatnonzero(cat)
                for node in np.unique(nodes[cat_pos]):
                    sel = cat_pos[nodes[cat_pos] == node]
                    go_left[sel] = np.isin(vals[sel], self.nodes[node].left_categories)
            nxt = np.where(go_left, arr["left"][nodes], arr["right"][nodes])
            nxt = np.where(miss, arr["missing"][nodes], nxt)
            yield active, nodes, nxt
            position[active] = nxt
            active = active[~arr["is_leaf"][nxt]]

    def predict_leaf(self, X: NDArray[np.float64], missing: NDArray[np.bool_]) -> NDArray[np.intp]:  # noqa: N803
        """Leaf index reached by each row."""
        position = np.zeros(X.shape[0], dtype=np.intp)
        for rows, _, nxt in self.walk(X, missing):
            position[rows] = nxt
        return position

    def predict(self, X: NDArray[np.float64], missing: NDArray[np.bool_]) -> NDArray[np.float64]:  # noqa: N803
        """Leaf weight reached by each row."""
        return self._arrays()["weight"][self.predict_leaf(X, missing)]

    # -------------------------------------------------------------------------
    # Structure queries
    # -------------------------------------------------------------------------

    @property
    def n_leaves(self) -> int:
        return sum(1 for n in self.nodes if n.is_leaf)

    def __len__(self) -> int:
        return len(self.nodes)

    def value_partial_dependence(self, feature: int, value: float, is_missing: bool) -> float:
        """Cover-weighted expected output with ``feature`` clamped to ``value``."""
        return self._partial_dependence(0, feature, value, is_missing)

    def _partial_dependence(self, num: int, feature: int, value: float, is_missing: bool) -> float:
        node = self.nodes[num]
        if node.is_leaf:
            return node.weight_value
        if node.split_feature == feature:
            if is_missing:
                child = node.missing_node
            else:
                child = node.left_child if node.goes_left(value) else node.right_child
            return self._partial_dependence(child, feature, value, is_missing)
        total = 0.0
        cover = 0.0
        for c in node.children():
            h = self.nodes[c].hessian_sum
            total += h * self._partial_dependence(c, feature, value, is_missing)
            cover += h
        return total / cover if cover > 0 else node.weight_value

    def compact(self) -> None:
        """Drop nodes unreachable from the root and renumber the arena."""
        order: list[int] = []
        stack = [0]
        while stack:
            num = stack.pop()
            order.append(num)
            stack.extend(reversed(self.nodes[num].children()))
        remap = {old: new for new, old in enumerate(order)}
        new_nodes = []
        for old in order:
            node = self.nodes[old]
            node.num = remap[old]
            if not node.is_leaf:
                node.left_child = remap[node.left_child]
                node.right_child = remap[node.right_child]
                node.missing_node = remap[node.missing_node]
            new_nodes.append(node)
        self.nodes = new_nodes
        self.invalidate()

    def __str__(self) -> str:
        lines: list[str] = []
        stack = [0]
        while stack:
            num = stack.pop()
            node = self.nodes[num]
            lines.append("      " * node.depth + str(node))
            stack.extend(reversed(node.children()))
        return "\n".join(lines)


@dataclass
class Ensemble:
    """Additive tree ensemble.

    The raw prediction is ``base_score`` plus the sum of each tree's leaf value.
    """

    base_score: float = 0.0
    trees: list[Tree] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.trees)

    @property
    def n_nodes(self) -> int:
        return sum(len(t) for t in self.trees)

    def estimated_bytes(self) -> int:
        """Approximate memory held by the trees."""
        return self.n_nodes * NODE_BYTES

    def predict_raw(
        self,
        X: NDArray[np.float64],  # noqa: N803
        missing: NDArray[np.bool_],
        *,
        parallel: bool = False,
        n_threads: int = 1,
    ) -> NDArray[np.float64]:
        """Raw scores, optionally computed over row chunks in parallel.

        Every row is summed in tree order, so the result does not depend on
        ``parallel``.
        """
        n = X.shape[0]

        def run(bounds: tuple[int, int]) -> NDArray[np.float64]:
            start, stop = bounds
            out = np.full(stop - start, self.base_score, dtype=np.float64)
            xs, ms = X[start:stop], missing[start:stop]
            for tree in self.trees:
                out += tree.predict(xs, ms)
            return out

        if n == 0:
            return np.empty(0, dtype=np.float64)
        ranges = chunk_ranges(n, n_threads if parallel else 1)
        return np.concatenate(parallel_map(run, ranges, n_threads, parallel=parallel))
