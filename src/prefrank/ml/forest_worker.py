"""Forest worker: the train / predict_proba boundary served over HTTP.

Each ``train`` call builds a complete new forest before swapping it in, so a
concurrent ``predict_proba`` sees either the old forest or the new one.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING

import numpy as np

from prefrank.ml.forest import ForestParams, RandomForest, RandomForestTrainer
from prefrank.ml.similarity import DimensionMismatchError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from prefrank.config import Settings

logger = logging.getLogger(__name__)


class ForestNotTrainedError(RuntimeError):
    """Raised when a prediction is requested before any forest was trained."""


def forest_params_from_settings(settings: Settings) -> ForestParams:
    return ForestParams(
        num_trees=settings.num_trees,
        max_depth=settings.max_depth,
        min_samples_split=settings.min_samples_split,
        num_features=settings.num_features,
    )


class ForestWorker:
    """Holds the most recently trained forest and its version token."""

    def __init__(self, params: ForestParams | None = None, rng: np.random.Generator | None = None) -> None:
        self._trainer = RandomForestTrainer(params, rng)
        # (forest, feature count), replaced as a single value.
        self._current: tuple[RandomForest, int] | None = None
        self._version: int = 0
        self._version_lock = threading.Lock()

    @property
    def version(self) -> int:
        """Version of the current forest, 0 before the first training."""
        return self._version

    @property
    def is_trained(self) -> bool:
        return self._current is not None

    @property
    def forest(self) -> RandomForest | None:
        current = self._current
        return current[0] if current is not None else None

    def train(self, training_set: Sequence[Sequence[float]], predictions: Sequence[int]) -> int:
        """Train a new forest and return its version.

        An empty training set leaves the current forest in place and returns
        the current version.

        Raises:
            ValueError: If ``training_set`` and ``predictions`` differ in length
                or the rows differ in length.
        """
        if len(training_set) != len(predictions):
            raise ValueError(
                f"trainingSet and predictions must have the same length ({len(training_set)} != {len(predictions)})"
            )
        if not training_set:
            logger.info("Empty training set, keeping forest version %d", self._version)
            return self._version

        dimensions = {len(row) for row in training_set}
        if len(dimensions) != 1:
            raise DimensionMismatchError(f"Training rows have differing lengths: {sorted(dimensions)}")

        started = time.monotonic()
        forest = self._trainer.train(training_set, predictions)

        with self._version_lock:
            # Millisecond timestamp, bumped if two trainings land in the same ms.
            version = max(time.time_ns() // 1_000_000, self._version + 1)
            self._current = (forest, dimensions.pop())
            self._version = version

        logger.info(
            "Trained forest version %d on %d samples (%d trees) in %.2fs",
            version,
            len(predictions),
            len(forest),
            time.monotonic() - started,
        )
        return version

    def predict_proba(self, features: Sequence[float], class_label: int) -> float:
        """Probability of ``class_label`` under the current forest.

        Raises:
            ForestNotTrainedError: If no forest has been trained yet.
            DimensionMismatchError: If ``features`` does not match the training rows.
        """
        current = self._current
        if current is None:
            raise ForestNotTrainedError("No forest has been trained yet")
        forest, dimension = current
        if len(features) != dimension:
            raise DimensionMismatchError(f"Expected {dimension} features, got {len(features)}")
        return forest.predict_proba(np.asarray(features, dtype=np.float64), class_label)
