"""Tests for labels, the ranking orchestrator and ranking sessions."""

from __future__ import annotations

import math
from pathlib import Path

import numpy as np
import pytest

from prefrank.config import Settings
from prefrank.library import ImageRef
from prefrank.ml.embedding import EmbeddingResult
from prefrank.ml.forest import ForestParams
from prefrank.ranking import Label, LabelStore, RankingOrchestrator, RankingSession, Strategy

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SMALL_FOREST = ForestParams(num_trees=10, max_depth=5, min_samples_split=2)


def _image(name: str) -> ImageRef:
    return ImageRef(path=Path(f"{name}.png"))


def _vec(*values: float) -> np.ndarray:
    return np.asarray(values, dtype=np.float32)


def _orchestrator(strategy: Strategy = Strategy.SIMILARITY) -> RankingOrchestrator:
    return RankingOrchestrator(SMALL_FOREST, strategy, np.random.default_rng(0))


def _names(orchestrator: RankingOrchestrator) -> list[str]:
    return [entry.image.path.stem for entry in orchestrator.rank()]


def _scores(orchestrator: RankingOrchestrator) -> dict[str, float]:
    return {entry.image.path.stem: entry.score for entry in orchestrator.rank() if entry.score is not None}


class NamedVectorProvider:
    """Embedding provider keyed by file stem."""

    def __init__(self, vectors: dict[str, list[float]]) -> None:
        self.vectors = vectors

    def create_embedding(self, image: ImageRef) -> EmbeddingResult:
        return EmbeddingResult(embedding=np.asarray(self.vectors[image.path.stem], dtype=np.float32))


# ---------------------------------------------------------------------------
# LabelStore tests
# ---------------------------------------------------------------------------


class TestLabelStore:
    def test_unlabeled_by_default(self) -> None:
        assert LabelStore().get(_image("a")) is Label.UNLABELED

    def test_toggle_sets_label(self) -> None:
        store = LabelStore()
        image = _image("a")

        assert store.toggle(image, Label.LIKED) is Label.LIKED
        assert store.get(image) is Label.LIKED
        assert store.liked() == [image]

    def test_toggle_same_label_clears(self) -> None:
        store = LabelStore()
        image = _image("a")
        store.toggle(image, Label.DISLIKED)

        assert store.toggle(image, Label.DISLIKED) is Label.UNLABELED
        assert image not in store
        assert len(store) == 0

    def test_toggle_other_label_switches(self) -> None:
        store = LabelStore()
        image = _image("a")
        store.toggle(image, Label.LIKED)

        assert store.toggle(image, "disliked") is Label.DISLIKED
        assert store.disliked() == [image]
        assert store.liked() == []

    def test_toggle_unlabeled_raises(self) -> None:
        with pytest.raises(ValueError, match="liked"):
            LabelStore().toggle(_image("a"), Label.UNLABELED)

    def test_clear(self) -> None:
        store = LabelStore()
        store.toggle(_image("a"), Label.LIKED)
        store.toggle(_image("b"), Label.DISLIKED)

        store.clear()

        assert len(store) == 0

    def test_labels_follow_identity_not_path(self) -> None:
        store = LabelStore()
        store.toggle(_image("a"), Label.LIKED)
        assert store.get(_image("a")) is Label.UNLABELED


# ---------------------------------------------------------------------------
# Similarity strategy
# ---------------------------------------------------------------------------


class TestSimilarityRanking:
    def test_unlabeled_ranks_between_liked_and_disliked(self) -> None:
        liked_a, liked_b = _image("liked_a"), _image("liked_b")
        disliked_a, disliked_b = _image("disliked_a"), _image("disliked_b")
        neutral = _image("neutral")
        orchestrator = _orchestrator()
        orchestrator.set_images([disliked_a, neutral, liked_a, disliked_b, liked_b])
        orchestrator.set_embeddings(
            {
                liked_a: _vec(1.0, 0.0),
                liked_b: _vec(0.9, 0.1),
                disliked_a: _vec(0.0, 1.0),
                disliked_b: _vec(0.1, 0.9),
                neutral: _vec(0.5, 0.5),
            }
        )
        for image in (liked_a, liked_b):
            orchestrator.toggle_label(image, Label.LIKED)
        for image in (disliked_a, disliked_b):
            orchestrator.toggle_label(image, Label.DISLIKED)

        names = _names(orchestrator)
        scores = _scores(orchestrator)

        assert names.index("neutral") == 2
        assert set(names[:2]) == {"liked_a", "liked_b"}
        assert set(names[3:]) == {"disliked_a", "disliked_b"}
        assert scores["neutral"] == pytest.approx(0.0, abs=1e-6)
        assert min(scores["liked_a"], scores["liked_b"]) > scores["neutral"]
        assert max(scores["disliked_a"], scores["disliked_b"]) < scores["neutral"]

    def test_unlabeled_images_sorted_by_score(self) -> None:
        liked, near, far = _image("liked"), _image("near"), _image("far")
        orchestrator = _orchestrator()
        orchestrator.set_images([far, near, liked])
        orchestrator.set_embeddings({liked: _vec(1.0, 0.0), near: _vec(0.9, 0.1), far: _vec(0.1, 0.9)})
        orchestrator.toggle_label(liked, Label.LIKED)

        assert _names(orchestrator) == ["liked", "near", "far"]

    def test_unscored_images_go_last_in_input_order(self) -> None:
        liked, scored, missing_a, missing_b = (_image(n) for n in ("liked", "scored", "missing_a", "missing_b"))
        orchestrator = _orchestrator()
        orchestrator.set_images([missing_b, scored, missing_a, liked])
        orchestrator.set_embeddings({liked: _vec(1.0, 0.0), scored: _vec(-1.0, 0.0)})
        orchestrator.toggle_label(liked, Label.LIKED)

        assert _names(orchestrator) == ["liked", "scored", "missing_b", "missing_a"]
        assert "missing_b" not in _scores(orchestrator)

    def test_without_labels_keeps_input_order(self) -> None:
        images = [_image(n) for n in ("c", "a", "b")]
        orchestrator = _orchestrator()
        orchestrator.set_images(images)
        orchestrator.set_embeddings({image: _vec(1.0, float(i)) for i, image in enumerate(images)})

        assert _names(orchestrator) == ["c", "a", "b"]

    def test_liked_image_without_embedding_still_ranks_first(self) -> None:
        liked, other = _image("liked"), _image("other")
        orchestrator = _orchestrator()
        orchestrator.set_images([other, liked])
        orchestrator.set_embeddings({other: _vec(1.0, 0.0)})
        orchestrator.toggle_label(liked, Label.LIKED)

        ranking = orchestrator.rank()

        assert [entry.image for entry in ranking] == [liked, other]
        assert ranking[0].label is Label.LIKED
        assert ranking[0].score is None

    def test_rank_is_cached_until_inputs_change(self) -> None:
        image = _image("a")
        orchestrator = _orchestrator()
        orchestrator.set_images([image])
        orchestrator.set_embeddings({image: _vec(1.0, 0.0)})

        first = orchestrator.rank()
        assert orchestrator.rank() == first

        orchestrator.toggle_label(image, Label.DISLIKED)
        assert orchestrator.rank()[0].label is Label.DISLIKED

    def test_zero_embedding_does_not_disturb_order(self) -> None:
        names = ("liked", "zero", "far", "missing", "near", "mid")
        images = {name: _image(name) for name in names}
        orchestrator = _orchestrator()
        orchestrator.set_images([images[name] for name in names])
        orchestrator.set_embeddings(
            {
                images["liked"]: _vec(1.0, 0.0),
                images["zero"]: _vec(0.0, 0.0),
                images["far"]: _vec(0.1, 1.0),
                images["near"]: _vec(1.0, 0.1),
                images["mid"]: _vec(1.0, 1.0),
            }
        )
        orchestrator.toggle_label(images["liked"], Label.LIKED)

        ranking = orchestrator.rank()

        assert [entry.image.path.stem for entry in ranking] == ["liked", "near", "mid", "far", "zero", "missing"]
        assert ranking[4].score is not None and math.isnan(ranking[4].score)
        assert ranking[5].score is None

    def test_fresh_embedding_arrays_are_always_rescored(self) -> None:
        liked, other = _image("liked"), _image("other")
        orchestrator = _orchestrator()
        orchestrator.set_images([liked, other])
        orchestrator.toggle_label(liked, Label.LIKED)

        for angle in np.linspace(0.0, np.pi / 2, 50):
            orchestrator.set_embeddings({liked: _vec(1.0, 0.0), other: _vec(np.cos(angle), np.sin(angle))})
            assert _scores(orchestrator)["other"] == pytest.approx(np.cos(angle), abs=1e-5)


# ---------------------------------------------------------------------------
# Learned strategy
# ---------------------------------------------------------------------------


def _clustered_orchestrator() -> tuple[RankingOrchestrator, dict[str, ImageRef]]:
    images = {name: _image(name) for name in ("liked_a", "liked_b", "disliked_a", "disliked_b", "near", "far")}
    vectors = {
        "liked_a": _vec(1.0, 0.0),
        "liked_b": _vec(0.9, 0.1),
        "disliked_a": _vec(0.0, 1.0),
        "disliked_b": _vec(0.1, 0.9),
        "near": _vec(0.95, 0.05),
        "far": _vec(0.05, 0.95),
    }
    orchestrator = _orchestrator(Strategy.LEARNED)
    orchestrator.set_images(list(images.values()))
    orchestrator.set_embeddings({images[name]: vector for name, vector in vectors.items()})
    orchestrator.toggle_label(images["liked_a"], Label.LIKED)
    orchestrator.toggle_label(images["liked_b"], Label.LIKED)
    orchestrator.toggle_label(images["disliked_a"], Label.DISLIKED)
    orchestrator.toggle_label(images["disliked_b"], Label.DISLIKED)
    return orchestrator, images


class TestLearnedRanking:
    def test_unlabeled_image_near_liked_scores_higher(self) -> None:
        orchestrator, _ = _clustered_orchestrator()

        scores = _scores(orchestrator)
        names = _names(orchestrator)

        assert orchestrator.forest is not None
        assert len(orchestrator.forest) == SMALL_FOREST.num_trees
        assert scores["near"] > scores["far"]
        assert names.index("near") < names.index("far")
        assert all(0.0 <= score <= 1.0 for score in scores.values())

    def test_no_labels_means_no_forest(self) -> None:
        image = _image("a")
        orchestrator = _orchestrator(Strategy.LEARNED)
        orchestrator.set_images([image])
        orchestrator.set_embeddings({image: _vec(1.0, 0.0)})

        assert orchestrator.rank()[0].score is None
        assert orchestrator.forest is None

    def test_forest_reused_while_training_inputs_unchanged(self) -> None:
        orchestrator, images = _clustered_orchestrator()
        orchestrator.rank()
        forest = orchestrator.forest

        orchestrator.set_strategy(Strategy.SIMILARITY)
        orchestrator.rank()
        orchestrator.set_strategy(Strategy.LEARNED)
        orchestrator.set_images([images["near"], images["far"]])
        orchestrator.rank()

        assert orchestrator.forest is forest

    def test_label_change_replaces_forest(self) -> None:
        orchestrator, images = _clustered_orchestrator()
        orchestrator.rank()
        forest = orchestrator.forest

        orchestrator.toggle_label(images["near"], Label.LIKED)
        orchestrator.rank()

        assert orchestrator.forest is not None
        assert orchestrator.forest is not forest
        assert forest is not None and len(forest) == SMALL_FOREST.num_trees

    def test_labeled_image_without_embedding_keeps_previous_forest(self) -> None:
        orchestrator, images = _clustered_orchestrator()
        before = _scores(orchestrator)
        forest = orchestrator.forest

        pending = _image("pending")
        orchestrator.set_images([*images.values(), pending])
        orchestrator.toggle_label(pending, Label.LIKED)
        after = _scores(orchestrator)

        assert orchestrator.forest is forest
        assert after["near"] == before["near"]
        assert "pending" not in after

    def test_clearing_labels_keeps_previous_forest(self) -> None:
        orchestrator, _ = _clustered_orchestrator()
        orchestrator.rank()
        forest = orchestrator.forest

        orchestrator.clear_labels()
        ranking = orchestrator.rank()

        assert orchestrator.forest is forest
        assert all(entry.label is Label.UNLABELED for entry in ranking)
        assert all(entry.score is not None for entry in ranking)

    def test_strategy_accepts_strings(self) -> None:
        orchestrator = _orchestrator()
        orchestrator.set_strategy("learned")
        assert orchestrator.strategy is Strategy.LEARNED

    def test_fresh_embedding_arrays_always_retrain(self) -> None:
        liked, disliked = _image("liked"), _image("disliked")
        orchestrator = _orchestrator(Strategy.LEARNED)
        orchestrator.set_images([liked, disliked])
        orchestrator.toggle_label(liked, Label.LIKED)
        orchestrator.toggle_label(disliked, Label.DISLIKED)

        previous = None
        for step in range(20):
            orchestrator.set_embeddings({liked: _vec(1.0, float(step)), disliked: _vec(0.0, float(step))})
            orchestrator.rank()
            assert orchestrator.forest is not None
            assert orchestrator.forest is not previous
            previous = orchestrator.forest


# ---------------------------------------------------------------------------
# RankingSession tests
# ---------------------------------------------------------------------------


class TestRankingSession:
    async def test_load_and_rank(self) -> None:
        settings = Settings(random_seed=1, num_trees=5, max_depth=5, embedding_concurrency=4)
        provider = NamedVectorProvider({"a": [1.0, 0.0], "b": [0.9, 0.1], "c": [0.0, 1.0]})
        session = RankingSession.from_settings(settings, [provider, provider])
        images = [_image(name) for name in ("c", "b", "a")]

        try:
            await session.load(images)
            session.toggle_label(images[2], Label.LIKED)
            similarity_order = [entry.image.path.stem for entry in session.rank()]

            session.set_strategy(Strategy.LEARNED)
            learned = session.rank()
        finally:
            session.close()

        assert session.progress == 1.0
        assert similarity_order == ["a", "b", "c"]
        assert learned[0].image is images[2]
        assert session.orchestrator.forest is not None
        assert len(session.orchestrator.forest) == 5

    async def test_load_directory(self, tmp_path: Path) -> None:
        for name in ("a", "b"):
            (tmp_path / f"{name}.png").write_bytes(b"")
        (tmp_path / "notes.txt").write_text("skip me")
        provider = NamedVectorProvider({"a": [1.0, 0.0], "b": [0.0, 1.0]})
        session = RankingSession.from_settings(Settings(), [provider])

        try:
            await session.load_directory(tmp_path)
        finally:
            session.close()

        assert [image.name for image in session.orchestrator.images] == ["a.png", "b.png"]
        assert len(session.coordinator.embeddings) == 2

    async def test_clear_labels(self) -> None:
        provider = NamedVectorProvider({"a": [1.0, 0.0]})
        session = RankingSession.from_settings(Settings(), [provider])
        image = _image("a")
        try:
            await session.load([image])
            session.toggle_label(image, Label.DISLIKED)
            session.clear_labels()
            ranking = session.rank()
        finally:
            session.close()

        assert ranking[0].label is Label.UNLABELED
