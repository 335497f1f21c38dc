"""Histogram-based tree construction.

One :class:`TreeBuilder` is created per ``fit`` and builds one tree per
boosting round from the current gradients and hessians.

Histograms hold gradient sum, hessian sum and row count per (fold, bin),
where the fold splits each node's rows into two halves. Split gain is scored on
both halves together; the halves are also used to score every candidate on
data it was not fitted on, and splits that do not reduce that held-out loss
are rejected. Growth is best-first until no admissible split remains or the
leaf cap is reached.
"""

from __future__ import annotations

import heapq
import math
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from budgetboost.binning import BinnedData
from budgetboost.config import BoosterConfig, Constraint, MissingNodeTreatment
from budgetboost.tree import Node, Tree
from budgetboost.utils import chunk_ranges, parallel_map

__all__: list[str] = [
    "SplitInfo",
    "TreeBuilder",
]

FloatArray = NDArray[np.float64]

# L2 penalty on leaf weights.
L2 = 1.0
MIN_HESSIAN = 1e-6
MIN_GAIN = 1e-10
MAX_LEAVES = 64

MISSING_LEFT = 0
MISSING_RIGHT = 1
MISSING_BRANCH = 2


def _objective(g: FloatArray, h: FloatArray, w: FloatArray, l2: float) -> FloatArray:
    """Second-order loss approximation ``g*w + (h + l2) * w^2 / 2``."""
    return g * w + 0.5 * (h + l2) * w * w


def _weight(g: FloatArray | float, h: FloatArray | float, lower: float, upper: float) -> FloatArray:
    return np.clip(-np.asarray(g) / (np.asarray(h) + L2), lower, upper)


@dataclass
class SplitInfo:
    """Best split of a node."""

    gain: float
    feature: int
    bin: int
    missing_dir: int
    left_weight: float
    right_weight: float
    missing_weight: float
    left_bounds: tuple[float, float]
    right_bounds: tuple[float, float]
    left_bins: NDArray[np.int64] | None = None


@dataclass
class _Candidate:
    """A leaf that may still be split."""

    num: int
    rows: NDArray[np.intp]
    hist: FloatArray
    weight: float
    lower: float
    upper: float
    depth: int
    splittable: bool
    split: SplitInfo | None = None


class TreeBuilder:
    """Builds trees against binned training data.

    Args:
        data: Binned training features.
        config: Booster configuration (missing policies, constraints, threads).
        eta: Step size applied to every stored node weight.
        fold: Per-row half assignment used for the held-out split check.
        n_threads: Worker threads for histogram and split search.
        max_leaves: Leaf cap per tree.
    """

    def __init__(
        self,
        data: BinnedData,
        config: BoosterConfig,
        eta: float,
        fold: NDArray[np.int64],
        n_threads: int = 1,
        max_leaves: int = MAX_LEAVES,
    ) -> None:
        self.data = data
        self.eta = eta
        self.fold = fold
        self.n_threads = n_threads
        self.max_leaves = max_leaves
        self.allow_missing_splits = config.allow_missing_splits
        self.create_missing_branch = config.create_missing_branch
        self.missing_node_treatment = config.missing_node_treatment
        self.terminate_missing_features = set(config.terminate_missing_features)
        self.force_children_to_bound_parent = config.force_children_to_bound_parent
        self.constraints = np.zeros(data.n_features, dtype=np.int64)
        for f, c in config.monotone_constraints.items():
            if not data.features[f].is_categorical:
                self.constraints[f] = int(c)
        self._chunks = chunk_ranges(data.n_features, n_threads)
        self._grad: FloatArray = np.empty(0)
        self._hess: FloatArray = np.empty(0)

    # -------------------------------------------------------------------------
    # Histograms
    # -------------------------------------------------------------------------

    def histogram(self, rows: NDArray[np.intp]) -> FloatArray:
        """``(3, 2, n_total_bins)`` gradient / hessian / count sums per fold and bin."""
        data = self.data
        offsets = data.offsets
        out = np.empty((3, 2, data.n_total_bins), dtype=np.float64)
        fold = self.fold[rows]
        g = self._grad[rows]
        h = self._hess[rows]

        def fill(bounds: tuple[int, int]) -> None:
            a, b = bounds
            lo, hi = int(offsets[a]), int(offsets[b])
            width = hi - lo
            idx = (data.offset_bins[rows, a:b] - lo + (fold * width)[:, None]).ravel()
            n_rep = b - a
            size = 2 * width
            out[0, :, lo:hi] = np.bincount(idx, weights=np.repeat(g, n_rep), minlength=size).reshape(2, width)
            out[1, :, lo:hi] = np.bincount(idx, weights=np.repeat(h, n_rep), minlength=size).reshape(2, width)
            out[2, :, lo:hi] = np.bincount(idx, minlength=size).reshape(2, width)

        parallel_map(fill, self._chunks, self.n_threads)
        return out

    # -------------------------------------------------------------------------
    # Split search
    # -------------------------------------------------------------------------

    def find_split(self, cand: _Candidate) -> SplitInfo | None:
        """Best admissible split of ``cand`` across all features, or None."""
        if not cand.splittable or cand.rows.size < 2:
            return None

        def search(bounds: tuple[int, int]) -> SplitInfo | None:
            best: SplitInfo | None = None
            for f in range(*bounds):
                info = self._best_for_feature(cand, f)
                if info is not None and (best is None or info.gain > best.gain):
                    best = info
            return best

        best: SplitInfo | None = None
        for info in parallel_map(search, self._chunks, self.n_threads):
            if info is not None and (best is None or info.gain > best.gain):
                best = info
        return best

    def _best_for_feature(self, cand: _Candidate, f: int) -> SplitInfo | None:  # noqa: PLR0912, PLR0915
        data = self.data
        fb = data.features[f]
        lo, hi = int(data.offsets[f]), int(data.offsets[f + 1])
        hs = cand.hist[:, :, lo:hi]
        miss = hs[:, :, 0]
        values = hs[:, :, 1:]
        n_missing = miss[2].sum()
        if n_missing > 0 and not self.allow_missing_splits:
            return None

        bin_ids = np.arange(1, fb.n_bins, dtype=np.int64)
        if fb.is_categorical:
            present = values[2].sum(axis=0) > 0
            values = values[:, :, present]
            bin_ids = bin_ids[present]
            ratio = values[0].sum(axis=0) / (values[1].sum(axis=0) + L2)
            order = np.argsort(ratio, kind="stable")
            values = values[:, :, order]
            bin_ids = bin_ids[order]
        if values.shape[2] < 2:
            return None

        # Left = first k + 1 value bins, right = the rest.
        cum = np.cumsum(values, axis=2)[:, :, :-1]
        total = values.sum(axis=2)[:, :, None]
        left = cum
        right = total - cum

        if n_missing == 0:
            variants = [(MISSING_LEFT, left, right, None)]
        elif self.create_missing_branch:
            variants = [(MISSING_BRANCH, left, right, miss[:, :, None])]
        else:
            variants = [
                (MISSING_LEFT, left + miss[:, :, None], right, None),
                (MISSING_RIGHT, left, right + miss[:, :, None], None),
            ]

        best: SplitInfo | None = None
        for direction, lstat, rstat, mstat in variants:
            found = self._score(cand, f, lstat, rstat, mstat)
            if found is None:
                continue
            k, gain, wl, wr, wm = found
            if best is not None and gain <= best.gain:
                continue
            if direction == MISSING_LEFT and n_missing == 0:
                # No missing rows here; unseen missing values follow the heavier child.
                direction = MISSING_LEFT if lstat[1, :, k].sum() >= rstat[1, :, k].sum() else MISSING_RIGHT
            c = self.constraints[f]
            bounds = (cand.lower, cand.upper)
            if c != Constraint.UNCONSTRAINED:
                mid = cand.weight if self.force_children_to_bound_parent else 0.5 * (wl + wr)
                low_side, high_side = (cand.lower, mid), (mid, cand.upper)
                left_bounds, right_bounds = (low_side, high_side) if c > 0 else (high_side, low_side)
            else:
                left_bounds = right_bounds = bounds
            best = SplitInfo(
                gain=float(gain),
                feature=f,
                bin=int(bin_ids[k]),
                missing_dir=direction,
                left_weight=float(wl),
                right_weight=float(wr),
                missing_weight=float(wm),
                left_bounds=left_bounds,
                right_bounds=right_bounds,
                left_bins=bin_ids[: k + 1].copy() if fb.is_categorical else None,
            )
        return best

    def _child_weights(
        self,
        cand: _Candidate,
        c: int,
        parent_w: FloatArray | float,
        gl: FloatArray,
        hl: FloatArray,
        gr: FloatArray,
        hr: FloatArray,
        gm: FloatArray | None,
        hm: FloatArray | None,
        *,
        enforce: bool,
    ) -> tuple[FloatArray, FloatArray, FloatArray, NDArray[np.bool_]]:
        """Constrained left / right / missing weights and the mask of admissible candidates."""
        wl = _weight(gl, hl, cand.lower, cand.upper)
        wr = _weight(gr, hr, cand.lower, cand.upper)
        ok = np.ones(wl.shape, dtype=bool)
        if enforce:
            if c != Constraint.UNCONSTRAINED:
                if self.force_children_to_bound_parent:
                    if c > 0:
                        wl, wr = np.minimum(wl, parent_w), np.maximum(wr, parent_w)
                    else:
                        wl, wr = np.maximum(wl, parent_w), np.minimum(wr, parent_w)
                else:
                    ok = wl <= wr if c > 0 else wl >= wr
            elif self.force_children_to_bound_parent:
                above = (wl > parent_w) & (wr > parent_w)
                below = (wl < parent_w) & (wr < parent_w)
                left_nearer_above = above & (wl <= wr)
                right_nearer_above = above & (wr < wl)
                left_nearer_below = below & (wl >= wr)
                right_nearer_below = below & (wr > wl)
                wl = np.where(left_nearer_above | left_nearer_below, parent_w, wl)
                wr = np.where(right_nearer_above | right_nearer_below, parent_w, wr)
        if gm is None or hm is None:
            wm = np.zeros_like(wl)
        else:
            match self.missing_node_treatment:
                case MissingNodeTreatment.ASSIGN_TO_PARENT:
                    wm = np.broadcast_to(np.asarray(parent_w, dtype=np.float64), wl.shape).copy()
                case MissingNodeTreatment.AVERAGE_NODE_WEIGHT:
                    denom = hl + hr
                    wm = np.where(denom > 0, (hl * wl + hr * wr) / np.where(denom > 0, denom, 1.0), parent_w)
                case _:
                    wm = np.broadcast_to(_weight(gm, hm, cand.lower, cand.upper), wl.shape).copy()
        return wl, wr, wm, ok

    def _score(
        self,
        cand: _Candidate,
        f: int,
        lstat: FloatArray,
        rstat: FloatArray,
        mstat: FloatArray | None,
    ) -> tuple[int, float, float, float, float] | None:
        c = int(self.constraints[f])
        gl, hl, nl = lstat[0].sum(axis=0), lstat[1].sum(axis=0), lstat[2].sum(axis=0)
        gr, hr, nr = rstat[0].sum(axis=0), rstat[1].sum(axis=0), rstat[2].sum(axis=0)
        gm = hm = None
        if mstat is not None:
            gm, hm = mstat[0].sum(axis=0), mstat[1].sum(axis=0)
        gp = gl + gr + (gm if gm is not None else 0.0)
        hp = hl + hr + (hm if hm is not None else 0.0)
        wp = cand.weight

        wl, wr, wm, ok = self._child_weights(cand, c, wp, gl, hl, gr, hr, gm, hm, enforce=True)
        gain = _objective(gp, hp, np.asarray(wp), L2) - _objective(gl, hl, wl, L2) - _objective(gr, hr, wr, L2)
        if gm is not None and hm is not None:
            gain = gain - _objective(gm, hm, wm, L2)
        ok &= (hl >= MIN_HESSIAN) & (hr >= MIN_HESSIAN) & (nl > 0) & (nr > 0) & (gain > MIN_GAIN)
        if not ok.any():
            return None

        # Held-out check: weights fitted on one half, loss measured on the other.
        held_out = np.zeros_like(gain)
        for a in (0, 1):
            b = 1 - a
            gma = hma = None
            if mstat is not None:
                gma, hma = mstat[0, a], mstat[1, a]
            gpa = _fold_total(lstat, rstat, mstat, 0, a)
            hpa = _fold_total(lstat, rstat, mstat, 1, a)
            wpa = float(_weight(gpa, hpa, cand.lower, cand.upper))
            wla, wra, wma, _ = self._child_weights(
                cand, c, wpa, lstat[0, a], lstat[1, a], rstat[0, a], rstat[1, a], gma, hma, enforce=False
            )
            gpb = _fold_total(lstat, rstat, mstat, 0, b)
            hpb = _fold_total(lstat, rstat, mstat, 1, b)
            delta = (
                _objective(gpb, hpb, np.asarray(wpa), 0.0)
                - _objective(lstat[0, b], lstat[1, b], wla, 0.0)
                - _objective(rstat[0, b], rstat[1, b], wra, 0.0)
            )
            if mstat is not None:
                delta = delta - _objective(mstat[0, b], mstat[1, b], wma, 0.0)
            held_out = held_out + delta
        ok &= held_out > 0
        if not ok.any():
            return None

        scored = np.where(ok, gain, -np.inf)
        k = int(np.argmax(scored))
        return k, float(gain[k]), float(wl[k]), float(wr[k]), float(wm[k])

    # -------------------------------------------------------------------------
    # Growth
    # -------------------------------------------------------------------------

    def build(self, grad: FloatArray, hess: FloatArray, rows: NDArray[np.intp]) -> Tree:
        """Grow one tree on ``rows`` for the given gradients and hessians."""
        self._grad = grad
        self._hess = hess
        hist = self.histogram(rows)
        first = int(self.data.offsets[1]) if self.data.n_features else 0
        g_tot = float(hist[0, :, :first].sum())
        h_tot = float(hist[1, :, :first].sum())
        w = float(_weight(g_tot, h_tot, -math.inf, math.inf))
        nodes = [Node(num=0, weight_value=self.eta * w, hessian_sum=h_tot, depth=0)]
        root = _Candidate(0, rows, hist, w, -math.inf, math.inf, 0, splittable=self.data.n_features > 0)
        root.split = self.find_split(root)

        heap: list[tuple[float, int, _Candidate]] = []
        if root.split is not None:
            heapq.heappush(heap, (-root.split.gain, 0, root))
        n_leaves = 1
        while heap and n_leaves < self.max_leaves:
            _, _, cand = heapq.heappop(heap)
            children = self._apply_split(cand, nodes)
            n_leaves += len(children) - 1
            for child in children:
                child.split = self.find_split(child)
                if child.split is not None:
                    heapq.heappush(heap, (-child.split.gain, child.num, child))

        if self.create_missing_branch and self.missing_node_treatment is MissingNodeTreatment.AVERAGE_LEAF_WEIGHT:
            _average_leaf_weights(nodes)
        return Tree(nodes)

    def _apply_split(self, cand: _Candidate, nodes: list[Node]) -> list[_Candidate]:
        split = cand.split
        assert split is not None
        data = self.data
        fb = data.features[split.feature]
        col = data.bins[cand.rows, split.feature]
        is_missing = col == 0
        if split.left_bins is not None:
            go_left = np.isin(col, split.left_bins)
        else:
            go_left = (col >= 1) & (col <= split.bin)
        branch = split.missing_dir == MISSING_BRANCH
        if split.missing_dir == MISSING_LEFT:
            go_left |= is_missing
        go_right = ~go_left & ~is_missing if branch else ~go_left
        parts = [cand.rows[go_left], cand.rows[go_right]]
        weights = [split.left_weight, split.right_weight]
        bounds = [split.left_bounds, split.right_bounds]
        if branch:
            parts.append(cand.rows[is_missing])
            weights.append(split.missing_weight)
            bounds.append((cand.lower, cand.upper))

        # Histogram subtraction: the largest child is parent minus its siblings.
        largest = int(np.argmax([p.size for p in parts]))
        hists: list[FloatArray | None] = [None] * len(parts)
        for i, p in enumerate(parts):
            if i != largest:
                hists[i] = self.histogram(p)
        rest = cand.hist.copy()
        for i, hst in enumerate(hists):
            if hst is not None:
                rest -= hst
        hists[largest] = rest

        node = nodes[cand.num]
        node.is_leaf = False
        node.split_feature = split.feature
        node.split_gain = split.gain
        if split.left_bins is not None:
            assert fb.categories is not None
            node.left_categories = [float(v) for v in fb.categories[split.left_bins - 1]]
        else:
            node.split_value = fb.threshold(split.bin)

        children: list[_Candidate] = []
        first = int(data.offsets[1])
        for i, (p, w, (lower, upper)) in enumerate(zip(parts, weights, bounds, strict=True)):
            hst = hists[i]
            assert hst is not None
            num = len(nodes)
            h_sum = float(hst[1, :, :first].sum())
            nodes.append(
                Node(
                    num=num,
                    weight_value=self.eta * w,
                    hessian_sum=h_sum,
                    depth=cand.depth + 1,
                    lower_bound=lower,
                    upper_bound=upper,
                )
            )
            splittable = True
            if i == 2 and split.feature in self.terminate_missing_features:
                splittable = False
            children.append(_Candidate(num, p, hst, w, lower, upper, cand.depth + 1, splittable))

        node.left_child = children[0].num
        node.right_child = children[1].num
        if branch:
            node.missing_node = children[2].num
        elif split.missing_dir == MISSING_LEFT:
            node.missing_node = node.left_child
        else:
            node.missing_node = node.right_child
        return children


def _fold_total(
    lstat: FloatArray, rstat: FloatArray, mstat: FloatArray | None, stat: int, fold: int
) -> float:
    """Node total of ``stat`` over one fold (identical for every candidate)."""
    total = lstat[stat, fold, 0] + rstat[stat, fold, 0]
    if mstat is not None:
        total += mstat[stat, fold, 0]
    return float(total)


def _average_leaf_weights(nodes: list[Node]) -> None:
    """Bottom-up: missing branches take the average of their siblings, parents of their children."""
    for node in reversed(nodes):
        if node.is_leaf:
            continue
        left, right = nodes[node.left_child], nodes[node.right_child]
        if node.has_missing_branch:
            m = nodes[node.missing_node]
            cover = left.hessian_sum + right.hessian_sum
            if m.is_leaf and cover > 0:
                m.weight_value = (left.hessian_sum * left.weight_value + right.hessian_sum * right.weight_value) / cover
        kids = [nodes[c] for c in node.children()]
        cover = sum(k.hessian_sum for k in kids)
        if cover > 0:
            node.weight_value = sum(k.hessian_sum * k.weight_value for k in kids) / cover
