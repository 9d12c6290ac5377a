"""Random forest classifier: CART tree induction, bagging, probability prediction.

Trees are grown greedily on Gini impurity. Each tree is trained on a bootstrap
sample of the dataset. With ``num_features=None`` every split searches all
features, so the trees differ only through bagging; set ``num_features`` to
enable per-split feature subsampling.

A trained forest is an immutable value. Retraining always builds a new one.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, TypeAlias

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tree nodes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Leaf:
    """Terminal node holding a read-only class -> probability mapping."""

    distribution: Mapping[int, float]


@dataclass(frozen=True)
class Internal:
    """Decision node: go left when ``features[feature_index] <= threshold``."""

    feature_index: int
    threshold: float
    left: Node
    right: Node


Node: TypeAlias = Leaf | Internal


@dataclass(frozen=True, eq=False)
class Split:
    """Best split found for a node, with row indices of each side."""

    feature_index: int
    threshold: float
    impurity: float
    left: NDArray[np.intp]
    right: NDArray[np.intp]


@dataclass(frozen=True)
class ForestParams:
    """Hyperparameters shared by every tree of a forest."""

    num_trees: int = 100
    max_depth: int = 20
    min_samples_split: int = 2
    num_features: int | None = None


# ---------------------------------------------------------------------------
# Impurity and split search
# ---------------------------------------------------------------------------


def gini_impurity(labels: ArrayLike) -> float:
    """Return the Gini impurity ``1 - sum(p_c ** 2)`` of a label multiset."""
    values = np.asarray(labels)
    if values.size == 0:
        return 0.0
    _, counts = np.unique(values, return_counts=True)
    proportions = counts / values.size
    return float(1.0 - np.sum(proportions**2))


def _gini_from_counts(counts: NDArray[np.float64]) -> NDArray[np.float64]:
    """Gini impurity of every row of a (candidates, classes) count matrix."""
    totals = counts.sum(axis=1)
    safe_totals = np.where(totals > 0, totals, 1.0)
    return 1.0 - np.sum((counts / safe_totals[:, None]) ** 2, axis=1)


def find_best_split(
    features: ArrayLike,
    labels: ArrayLike,
    feature_indices: Sequence[int] | NDArray[np.intp],
) -> Split | None:
    """Find the split with the lowest weighted Gini impurity.

    Candidate thresholds are the midpoints between adjacent distinct values
    of each candidate feature. Ties keep the first candidate found, in
    ``feature_indices`` order and then by increasing threshold.

    Returns:
        The best split, or None if no candidate feature has at least two
        distinct values.
    """
    x = np.asarray(features, dtype=np.float64)
    y = np.asarray(labels)
    n = y.shape[0]

    classes, encoded = np.unique(y, return_inverse=True)
    one_hot = np.zeros((n, classes.size), dtype=np.float64)
    one_hot[np.arange(n), encoded] = 1.0

    best: Split | None = None
    best_impurity = np.inf

    for feature_index in feature_indices:
        column = x[:, feature_index]
        order = np.argsort(column, kind="stable")
        sorted_values = column[order]
        unique_values = np.unique(sorted_values)
        if unique_values.size < 2:
            continue

        thresholds = (unique_values[:-1] + unique_values[1:]) / 2
        cumulative = np.cumsum(one_hot[order], axis=0)
        left_sizes = np.searchsorted(sorted_values, thresholds, side="right")
        left_counts = cumulative[left_sizes - 1]
        right_counts = cumulative[-1] - left_counts

        impurities = (left_sizes / n) * _gini_from_counts(left_counts) + ((n - left_sizes) / n) * _gini_from_counts(
            right_counts
        )
        # A midpoint can round onto the upper value and leave one side empty.
        impurities = np.where(left_sizes < n, impurities, np.inf)

        candidate = int(np.argmin(impurities))
        if impurities[candidate] < best_impurity:
            best_impurity = float(impurities[candidate])
            threshold = float(thresholds[candidate])
            mask = column <= threshold
            best = Split(
                feature_index=int(feature_index),
                threshold=threshold,
                impurity=best_impurity,
                left=np.flatnonzero(mask),
                right=np.flatnonzero(~mask),
            )

    return best


# ---------------------------------------------------------------------------
# Decision tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DecisionTree:
    """A trained CART classification tree."""

    root: Node

    def leaf_for(self, features: Sequence[float] | NDArray[np.float64]) -> Leaf:
        """Descend from the root to the leaf that ``features`` falls into."""
        node = self.root
        while isinstance(node, Internal):
            node = node.left if features[node.feature_index] <= node.threshold else node.right
        return node

    def predict_proba_all(self, features: Sequence[float] | NDArray[np.float64]) -> Mapping[int, float]:
        return self.leaf_for(features).distribution

    def predict_proba(self, features: Sequence[float] | NDArray[np.float64], class_label: int) -> float:
        return self.leaf_for(features).distribution.get(class_label, 0.0)

    def predict(self, features: Sequence[float] | NDArray[np.float64]) -> int:
        return _argmax(self.predict_proba_all(features))


def _argmax(scores: Mapping[int, float]) -> int:
    """Class with the highest score; among tied classes the largest label wins."""
    return max(sorted(scores, reverse=True), key=scores.__getitem__)


def _leaf(labels: NDArray[np.int64]) -> Leaf:
    classes, counts = np.unique(labels, return_counts=True)
    distribution = {int(c): float(k) / labels.size for c, k in zip(classes, counts, strict=True)}
    return Leaf(MappingProxyType(distribution))


def build_tree(
    features: ArrayLike,
    labels: ArrayLike,
    *,
    max_depth: int,
    min_samples_split: int,
    num_features: int | None = None,
    rng: np.random.Generator | None = None,
) -> DecisionTree:
    """Grow a decision tree depth-first.

    A node becomes a leaf when it reaches ``max_depth``, holds fewer than
    ``min_samples_split`` rows, is pure, or has no valid split. Otherwise a
    random subset of ``num_features`` feature indices (all of them when None)
    is searched for the best split.

    Raises:
        ValueError: If the dataset is empty or features are not 2-D.
    """
    x = np.asarray(features, dtype=np.float64)
    y = np.asarray(labels, dtype=np.int64)
    if y.size == 0:
        raise ValueError("Cannot build a tree from an empty dataset")
    if x.ndim != 2 or x.shape[0] != y.size:
        raise ValueError(f"Expected {y.size} feature rows, got array of shape {x.shape}")

    generator = rng if rng is not None else np.random.default_rng()
    n_features = x.shape[1]
    subset_size = n_features if num_features is None else min(num_features, n_features)

    def grow(rows: NDArray[np.intp], depth: int) -> Node:
        node_labels = y[rows]
        if depth >= max_depth or rows.size < min_samples_split or np.unique(node_labels).size == 1:
            return _leaf(node_labels)

        candidates = generator.permutation(n_features)[:subset_size]
        split = find_best_split(x[rows], node_labels, candidates)
        if split is None:
            return _leaf(node_labels)

        return Internal(
            feature_index=split.feature_index,
            threshold=split.threshold,
            left=grow(rows[split.left], depth + 1),
            right=grow(rows[split.right], depth + 1),
        )

    return DecisionTree(root=grow(np.arange(y.size), 0))


# ---------------------------------------------------------------------------
# Forest
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RandomForest:
    """An immutable ensemble of decision trees."""

    trees: tuple[DecisionTree, ...]

    def __len__(self) -> int:
        return len(self.trees)

    def predict(self, features: Sequence[float] | NDArray[np.float64]) -> int:
        """Majority vote; ties go to the largest class label."""
        return _argmax(Counter(tree.predict(features) for tree in self.trees))

    def predict_proba(self, features: Sequence[float] | NDArray[np.float64], class_label: int) -> float:
        """Mean probability of ``class_label`` across all trees."""
        total = sum(tree.predict_proba(features, class_label) for tree in self.trees)
        return total / len(self.trees)

    def predict_proba_all(self, features: Sequence[float] | NDArray[np.float64]) -> dict[int, float]:
        """Per-class mean probability; a class missing from a leaf counts as 0."""
        totals: dict[int, float] = {}
        for tree in self.trees:
            for label, probability in tree.predict_proba_all(features).items():
                totals[label] = totals.get(label, 0.0) + probability
        return {label: totals[label] / len(self.trees) for label in sorted(totals)}


class RandomForestTrainer:
    """Builds forests by bootstrap aggregation of CART trees."""

    def __init__(self, params: ForestParams | None = None, rng: np.random.Generator | None = None) -> None:
        self._params = params or ForestParams()
        self._rng = rng if rng is not None else np.random.default_rng()

    @property
    def params(self) -> ForestParams:
        return self._params

    def train(self, features: ArrayLike, labels: ArrayLike) -> RandomForest:
        """Train ``num_trees`` trees, each on a bootstrap sample of size n.

        Raises:
            ValueError: If the dataset is empty or rows and labels disagree.
        """
        x = np.asarray(features, dtype=np.float64)
        y = np.asarray(labels, dtype=np.int64)
        if y.size == 0:
            raise ValueError("Cannot train a forest on an empty dataset")
        if x.ndim != 2 or x.shape[0] != y.size:
            raise ValueError(f"Expected {y.size} feature rows, got array of shape {x.shape}")

        params = self._params
        trees: list[DecisionTree] = []
        for _ in range(params.num_trees):
            sample = self._rng.integers(0, y.size, size=y.size)
            trees.append(
                build_tree(
                    x[sample],
                    y[sample],
                    max_depth=params.max_depth,
                    min_samples_split=params.min_samples_split,
                    num_features=params.num_features,
                    rng=self._rng,
                )
            )

        logger.debug("Trained %d trees on %d samples with %d features", len(trees), y.size, x.shape[1])
        return RandomForest(trees=tuple(trees))
