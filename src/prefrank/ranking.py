"""Ranking orchestration: turn embeddings and sparse labels into an order.

The orchestrator only records its inputs when they change. ``rank`` compares
a fingerprint of the inputs with the one used for the last ranking and
recomputes only when they differ. The learned strategy keeps a second
fingerprint for the training inputs so the forest is rebuilt only when the
labeled set or its embeddings change.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from prefrank.library import scan_directory
from prefrank.ml.embedding import EmbeddingCoordinator
from prefrank.ml.forest import RandomForest, RandomForestTrainer
from prefrank.ml.forest_worker import forest_params_from_settings
from prefrank.ml.inference import InferencePool
from prefrank.ml.similarity import preference_score

if TYPE_CHECKING:
    from collections.abc import Hashable, Mapping, Sequence
    from pathlib import Path

    from numpy.typing import NDArray

    from prefrank.config import Settings
    from prefrank.library import ImageRef
    from prefrank.ml.embedding import EmbeddingProvider
    from prefrank.ml.forest import ForestParams

logger = logging.getLogger(__name__)

LIKED_CLASS = 1
DISLIKED_CLASS = 0


class Label(StrEnum):
    LIKED = "liked"
    DISLIKED = "disliked"
    UNLABELED = "unlabeled"


class Strategy(StrEnum):
    SIMILARITY = "similarity"
    LEARNED = "learned"


_GROUP_ORDER: dict[Label, int] = {
    Label.LIKED: 0,
    Label.UNLABELED: 1,
    Label.DISLIKED: 2,
}


@dataclass(frozen=True)
class RankedImage:
    """One entry of a ranking."""

    image: ImageRef
    label: Label
    score: float | None


class LabelStore:
    """Per-image liked/disliked state, in labeling order."""

    def __init__(self) -> None:
        self._labels: dict[ImageRef, bool] = {}

    def __len__(self) -> int:
        return len(self._labels)

    def __contains__(self, image: object) -> bool:
        return image in self._labels

    def get(self, image: ImageRef) -> Label:
        liked = self._labels.get(image)
        if liked is None:
            return Label.UNLABELED
        return Label.LIKED if liked else Label.DISLIKED

    def toggle(self, image: ImageRef, label: Label | str) -> Label:
        """Apply ``label`` to ``image``; applying the current label clears it.

        Returns:
            The image's label after the toggle.

        Raises:
            ValueError: If ``label`` is not liked or disliked.
        """
        label = Label(label)
        if label is Label.UNLABELED:
            raise ValueError("Only 'liked' or 'disliked' can be toggled")

        liked = label is Label.LIKED
        if image in self._labels and self._labels[image] == liked:
            del self._labels[image]
            return Label.UNLABELED
        self._labels[image] = liked
        return label

    def clear(self) -> None:
        self._labels.clear()

    def liked(self) -> list[ImageRef]:
        return [image for image, liked in self._labels.items() if liked]

    def disliked(self) -> list[ImageRef]:
        return [image for image, liked in self._labels.items() if not liked]

    def items(self) -> list[tuple[ImageRef, bool]]:
        return list(self._labels.items())

    def fingerprint(self) -> frozenset[tuple[ImageRef, bool]]:
        return frozenset(self._labels.items())


@dataclass(frozen=True, eq=False)
class _Same:
    """Hashable handle that compares the wrapped object by identity and keeps it alive."""

    value: object

    def __eq__(self, other: object) -> bool:
        return isinstance(other, _Same) and other.value is self.value

    def __hash__(self) -> int:
        return id(self.value)


def _sort_key(item: RankedImage) -> tuple[int, int, float]:
    # NaN (zero-norm embedding) sorts with the unscored images.
    if item.score is None or math.isnan(item.score):
        return (_GROUP_ORDER[item.label], 1, 0.0)
    return (_GROUP_ORDER[item.label], 0, -item.score)


class RankingOrchestrator:
    """Scores every image with the active strategy and orders the result."""

    def __init__(
        self,
        params: ForestParams | None = None,
        strategy: Strategy | str = Strategy.SIMILARITY,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._trainer = RandomForestTrainer(params, rng)
        self._images: tuple[ImageRef, ...] = ()
        self._labels = LabelStore()
        self._embeddings: dict[ImageRef, NDArray[np.float32]] = {}
        self._strategy = Strategy(strategy)

        self._forest: RandomForest | None = None
        self._training_key: frozenset[Hashable] | None = None
        self._ranking_key: tuple[Hashable, ...] | None = None
        self._ranking: list[RankedImage] = []

    # -- Inputs -------------------------------------------------------------

    @property
    def images(self) -> tuple[ImageRef, ...]:
        return self._images

    @property
    def labels(self) -> LabelStore:
        return self._labels

    @property
    def strategy(self) -> Strategy:
        return self._strategy

    @property
    def forest(self) -> RandomForest | None:
        """The forest currently used by the learned strategy, if any."""
        return self._forest

    def set_images(self, images: Sequence[ImageRef]) -> None:
        self._images = tuple(images)

    def set_embeddings(self, embeddings: Mapping[ImageRef, NDArray[np.float32]]) -> None:
        self._embeddings = dict(embeddings)

    def set_strategy(self, strategy: Strategy | str) -> None:
        self._strategy = Strategy(strategy)

    def toggle_label(self, image: ImageRef, label: Label | str) -> Label:
        return self._labels.toggle(image, label)

    def clear_labels(self) -> None:
        self._labels.clear()

    # -- Ranking ------------------------------------------------------------

    def rank(self) -> list[RankedImage]:
        """Return images ordered liked > unlabeled > disliked, then by score.

        Within a group higher scores come first and unscored images come
        last, keeping their input order.
        """
        key = self._dependency_key()
        if key != self._ranking_key:
            scores = self._score()
            ranked = [RankedImage(image, self._labels.get(image), scores.get(image)) for image in self._images]
            self._ranking = sorted(ranked, key=_sort_key)
            self._ranking_key = key
        return list(self._ranking)

    def _dependency_key(self) -> tuple[Hashable, ...]:
        return (
            self._images,
            self._labels.fingerprint(),
            frozenset((image, _Same(vector)) for image, vector in self._embeddings.items()),
            self._strategy,
        )

    def _score(self) -> dict[ImageRef, float]:
        if self._strategy is Strategy.SIMILARITY:
            return self._similarity_scores()
        return self._learned_scores()

    def _similarity_scores(self) -> dict[ImageRef, float]:
        liked = [self._embeddings[image] for image in self._labels.liked() if image in self._embeddings]
        disliked = [self._embeddings[image] for image in self._labels.disliked() if image in self._embeddings]

        scores: dict[ImageRef, float] = {}
        for image in self._images:
            score = preference_score(self._embeddings.get(image), liked, disliked)
            if score is not None:
                scores[image] = score
        return scores

    def _learned_scores(self) -> dict[ImageRef, float]:
        self._maybe_retrain()
        forest = self._forest
        if forest is None:
            return {}
        return {
            image: forest.predict_proba(self._embeddings[image], LIKED_CLASS)
            for image in self._images
            if image in self._embeddings
        }

    def _maybe_retrain(self) -> None:
        labeled = self._labels.items()
        if not labeled:
            return
        if any(image not in self._embeddings for image, _ in labeled):
            logger.debug("Labeled images still missing embeddings, keeping previous forest")
            return

        key = frozenset((image, liked, _Same(self._embeddings[image])) for image, liked in labeled)
        if key == self._training_key:
            return

        features = np.stack([self._embeddings[image] for image, _ in labeled])
        labels = [LIKED_CLASS if liked else DISLIKED_CLASS for _, liked in labeled]
        self._forest = self._trainer.train(features, labels)
        self._training_key = key
        logger.info("Retrained forest on %d labeled images", len(labels))


class RankingSession:
    """Wires images through the embedding coordinator into the orchestrator."""

    def __init__(
        self,
        coordinator: EmbeddingCoordinator,
        orchestrator: RankingOrchestrator,
        pool: InferencePool | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._orchestrator = orchestrator
        self._pool = pool

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        providers: Sequence[EmbeddingProvider],
        pool: InferencePool | None = None,
    ) -> RankingSession:
        """Build a session whose embedding pool has no acquire timeout."""
        coordinator_seed, forest_seed = np.random.SeedSequence(settings.random_seed).spawn(2)
        embedding_pool = pool or InferencePool(
            settings.embedding_concurrency,
            acquire_timeout=None,
            thread_name_prefix="prefrank-embed",
        )
        coordinator = EmbeddingCoordinator(providers, embedding_pool, np.random.default_rng(coordinator_seed))
        orchestrator = RankingOrchestrator(
            forest_params_from_settings(settings),
            rng=np.random.default_rng(forest_seed),
        )
        return cls(coordinator, orchestrator, pool=embedding_pool if pool is None else None)

    @property
    def coordinator(self) -> EmbeddingCoordinator:
        return self._coordinator

    @property
    def orchestrator(self) -> RankingOrchestrator:
        return self._orchestrator

    @property
    def progress(self) -> float | None:
        return self._coordinator.progress

    async def load(self, images: Sequence[ImageRef]) -> None:
        """Replace the image set and compute its embeddings."""
        self._orchestrator.set_images(images)
        await self._coordinator.compute_all(images)
        self._orchestrator.set_embeddings(self._coordinator.embeddings)

    async def load_directory(self, root: Path | str) -> None:
        await self.load(scan_directory(root))

    def toggle_label(self, image: ImageRef, label: Label | str) -> Label:
        return self._orchestrator.toggle_label(image, label)

    def clear_labels(self) -> None:
        self._orchestrator.clear_labels()

    def set_strategy(self, strategy: Strategy | str) -> None:
        self._orchestrator.set_strategy(strategy)

    def rank(self) -> list[RankedImage]:
        return self._orchestrator.rank()

    def close(self) -> None:
        """Shut down the embedding pool if this session created it."""
        if self._pool is not None:
            self._pool.shutdown()
