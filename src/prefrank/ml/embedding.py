"""Embedding coordinator: bounded-concurrency embedding of an image set.

Every ``compute_all`` call takes a new generation number. Work that belongs
to an older generation is ignored when it starts or finishes. It is never
interrupted, so a superseded provider call may keep a worker slot busy until
it returns.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from prefrank.library import ImageRef
    from prefrank.ml.inference import InferencePool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmbeddingResult:
    """Output of one provider call."""

    embedding: NDArray[np.float32]


class EmbeddingProvider(Protocol):
    """Protocol for anything that turns an image into a fixed-length vector."""

    def create_embedding(self, image: ImageRef) -> EmbeddingResult:
        """Embed a single image.

        Implementations are called from worker threads and must be safe to
        call concurrently.
        """
        ...


class EmbeddingCoordinator:
    """Computes one embedding per image across a pool of providers."""

    def __init__(
        self,
        providers: Sequence[EmbeddingProvider],
        pool: InferencePool,
        rng: np.random.Generator | None = None,
    ) -> None:
        if not providers:
            raise ValueError("At least one embedding provider is required")
        self._providers = list(providers)
        self._pool = pool
        self._rng = rng if rng is not None else np.random.default_rng()

        self._generation = 0
        self._cache: dict[ImageRef, NDArray[np.float32]] = {}
        self._embeddings: dict[ImageRef, NDArray[np.float32]] = {}
        self._dimension: int | None = None
        self._finished = 0
        self._total = 0

    # -- Public API ---------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def dimension(self) -> int | None:
        """Embedding length fixed by the first successful call, if any."""
        return self._dimension

    @property
    def embeddings(self) -> dict[ImageRef, NDArray[np.float32]]:
        """The last published image -> embedding map."""
        return dict(self._embeddings)

    @property
    def progress(self) -> float | None:
        """Fraction of the current image set processed, None if it is empty."""
        if self._total == 0:
            return None
        return self._finished / self._total

    async def compute_all(self, images: Sequence[ImageRef]) -> dict[ImageRef, NDArray[np.float32]]:
        """Embed every image and publish the resulting map.

        Images whose provider call fails are left out. If another call starts
        before this one finishes, nothing is published and an empty map is
        returned.
        """
        self._generation += 1
        generation = self._generation
        self._finished = 0
        self._total = len(images)

        results = await asyncio.gather(*(self._compute_one(image, generation) for image in images))

        if generation != self._generation:
            logger.debug("Discarding results of superseded generation %d", generation)
            return {}

        embeddings = {image: embedding for image, embedding in zip(images, results, strict=True) if embedding is not None}
        self._embeddings = embeddings
        logger.info("Computed embeddings for %d of %d images", len(embeddings), len(images))
        return dict(embeddings)

    # -- Internal -----------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _choose_provider(self) -> EmbeddingProvider:
        return self._providers[int(self._rng.integers(len(self._providers)))]

    async def _compute_one(self, image: ImageRef, generation: int) -> NDArray[np.float32] | None:
        if not self._is_current(generation):
            return None

        cached = self._cache.get(image)
        if cached is not None:
            self._finished += 1
            return cached

        provider = self._choose_provider()

        def create() -> EmbeddingResult | None:
            # Runs once a worker slot is free; the generation may be stale by then.
            if not self._is_current(generation):
                return None
            return provider.create_embedding(image)

        try:
            result = await self._pool.run(create)
        except Exception:  # noqa: BLE001 - a failed image is left out of the batch
            if self._is_current(generation):
                logger.warning("Embedding failed for %s", image.name, exc_info=True)
                self._finished += 1
            return None

        if result is None or not self._is_current(generation):
            return None

        embedding = np.asarray(result.embedding, dtype=np.float32).ravel()
        if self._dimension is None:
            self._dimension = embedding.size
        elif embedding.size != self._dimension:
            logger.warning(
                "Dropping embedding for %s: dimension %d, expected %d",
                image.name,
                embedding.size,
                self._dimension,
            )
            self._finished += 1
            return None

        self._cache[image] = embedding
        self._finished += 1
        return embedding
