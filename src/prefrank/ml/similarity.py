"""Cosine-similarity preference scoring against liked and disliked examples."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Iterable

    from numpy.typing import ArrayLike


class DimensionMismatchError(ValueError):
    """Raised when two vectors that must have equal length do not."""


def cosine_similarity(a: ArrayLike, b: ArrayLike) -> float:
    """Return ``dot(a, b) / (||a|| * ||b||)``.

    A zero-norm input yields NaN.

    Raises:
        DimensionMismatchError: If the vectors differ in length.
    """
    vec_a = np.asarray(a, dtype=np.float64).ravel()
    vec_b = np.asarray(b, dtype=np.float64).ravel()
    if vec_a.shape != vec_b.shape:
        raise DimensionMismatchError(f"Vectors must have the same length ({vec_a.size} != {vec_b.size})")

    norm = np.linalg.norm(vec_a) * np.linalg.norm(vec_b)
    with np.errstate(invalid="ignore", divide="ignore"):
        return float(np.dot(vec_a, vec_b) / norm)


def preference_score(
    embedding: ArrayLike | None,
    liked: Iterable[ArrayLike],
    disliked: Iterable[ArrayLike],
) -> float | None:
    """Score an image against the labeled examples.

    The score is the summed similarity to every liked embedding minus the
    summed similarity to every disliked embedding. Sums are not normalized
    by set size, so the larger set carries more weight.

    Returns:
        The score, or None when the image has no embedding.
    """
    if embedding is None:
        return None
    positive = sum((cosine_similarity(embedding, other) for other in liked), 0.0)
    negative = sum((cosine_similarity(embedding, other) for other in disliked), 0.0)
    return positive - negative
