"""Tests for the visual vocabulary and the keyframe database."""

from pathlib import Path

import numpy as np
import pytest

from covislam.errors import ResourceExhaustion
from covislam.frontend import PinholeCamera
from covislam.loop_closure import KeyFrameDatabase, VisualVocabulary
from covislam.map import Map

from .conftest import MapBuilder, SyntheticScene, pose_from


def bow(*weights: float, n_words: int = 8) -> np.ndarray:
    v = np.zeros(n_words, dtype=np.float32)
    v[: len(weights)] = weights
    return v / np.linalg.norm(v)


class TestVisualVocabulary:
    """Test suite for BoW conversion."""

    def test_describe_is_normalized(self, vocabulary: VisualVocabulary, scene: SyntheticScene):
        """Test that BoW vectors have unit length."""
        v = vocabulary.describe(scene.descriptors)
        assert v.shape == (vocabulary.n_words,)
        assert np.linalg.norm(v) == pytest.approx(1.0, abs=1e-5)
        assert vocabulary.similarity(v, v) == pytest.approx(1.0, abs=1e-5)

    def test_empty_descriptors(self, vocabulary: VisualVocabulary):
        """Test that no descriptors give a zero vector."""
        v = vocabulary.describe(np.empty((0, 32), dtype=np.uint8))
        assert not np.any(v)

    def test_words_are_read_only(self, vocabulary: VisualVocabulary):
        """Test that the vocabulary cannot be modified."""
        with pytest.raises(ValueError):
            vocabulary.words[0, 0] = 1.0

    def test_save_load(self, vocabulary: VisualVocabulary, tmp_path: Path):
        """Test that a saved vocabulary loads unchanged."""
        path = tmp_path / "vocab.npz"
        vocabulary.save(path)
        loaded = VisualVocabulary.load(path)
        assert loaded.n_words == vocabulary.n_words
        np.testing.assert_array_equal(loaded.words, vocabulary.words)

    def test_load_missing(self, tmp_path: Path):
        """Test that a missing vocabulary file is reported."""
        with pytest.raises(ResourceExhaustion):
            VisualVocabulary.load(tmp_path / "missing.npz")

    def test_with_idf_downweights_common_words(self, vocabulary: VisualVocabulary):
        """Test that frequent words get lower IDF weights."""
        df = np.ones(vocabulary.n_words, dtype=np.int64)
        df[0] = 10
        weighted = vocabulary.with_idf(df, 10)
        assert weighted.idf[0] == pytest.approx(0.0)
        assert weighted.idf[1] == pytest.approx(np.log(10))

    def test_wrong_word_shape(self):
        """Test that words of the wrong shape are rejected."""
        with pytest.raises(ValueError):
            VisualVocabulary.from_words(np.zeros((4, 16)))


class TestKeyFrameDatabase:
    """Test suite for the inverted index."""

    def test_add_query_erase(self):
        """Test that keyframes can be added, queried and erased."""
        db = KeyFrameDatabase()
        db.add(0, bow(1, 1, 0, 0))
        db.add(1, bow(0, 0, 1, 1))
        db.add(2, bow(1, 0, 0, 1))
        assert len(db) == 3

        results = db.query(bow(1, 1, 0, 0))
        assert [r.keyframe_id for r in results] == [0, 2]
        assert results[0].similarity == pytest.approx(1.0, abs=1e-6)
        assert results[0].common_words == 2

        db.erase(0)
        assert 0 not in db
        assert [r.keyframe_id for r in db.query(bow(1, 1, 0, 0))] == [2]

    def test_query_filters(self):
        """Test that query exclusions and limits apply."""
        db = KeyFrameDatabase()
        for kf_id in range(4):
            db.add(kf_id, bow(1, 1 + kf_id))
        assert len(db.query(bow(1, 1), max_results=2)) == 2
        assert all(r.keyframe_id != 1 for r in db.query(bow(1, 1), exclude={1}))
        assert db.query(bow(1, 1), min_score=1.1) == []

    def test_clear(self):
        """Test that clearing empties the index."""
        db = KeyFrameDatabase()
        db.add(0, bow(1))
        db.clear()
        assert len(db) == 0
        assert db.query(bow(1)) == []


class TestCandidateDetection:
    """Test suite for loop and relocalization candidate selection."""

    @pytest.fixture
    def indexed_map(self, map_: Map, builder: MapBuilder, camera: PinholeCamera):
        """Three covisible keyframes of one scene and one keyframe of another."""
        kf0 = builder.add_keyframe(pose_from())
        kf1 = builder.add_keyframe(pose_from(translation=(0.1, 0, 0)), parent_id=kf0.id)
        kf2 = builder.add_keyframe(pose_from(translation=(0.2, 0, 0)), parent_id=kf1.id)
        other = MapBuilder(map_, SyntheticScene(camera, seed=7))
        kf3 = other.add_keyframe(pose_from(translation=(0, 0, 0.1)), parent_id=kf2.id)

        db = KeyFrameDatabase()
        db.add(kf0.id, bow(1, 1, 0.8))
        db.add(kf1.id, bow(1, 1, 1))
        db.add(kf2.id, bow(1, 0.8, 1))
        db.add(kf3.id, bow(0, 0, 0, 1, 1, 1))
        return db, [kf0.id, kf1.id, kf2.id, kf3.id]

    def test_loop_candidate_is_best_of_group(self, map_: Map, indexed_map):
        """Test that each group contributes its best keyframe."""
        db, ids = indexed_map
        assert map_.covisible_keyframes(ids[3]) == []
        candidates = db.detect_loop_candidates(map_, ids[3], bow(1, 1, 1), min_score=0.1)
        assert candidates == [ids[1]]

    def test_covisible_neighbourhood_excluded(self, map_: Map, indexed_map):
        """Test that covisible neighbours are never loop candidates."""
        db, ids = indexed_map
        assert db.detect_loop_candidates(map_, ids[1], bow(1, 1, 1), min_score=0.1) == []

    def test_min_score(self, map_: Map, indexed_map):
        """Test that candidates below the minimum score are dropped."""
        db, ids = indexed_map
        assert db.detect_loop_candidates(map_, ids[3], bow(1, 1, 1), min_score=1.5) == []

    def test_relocalization_candidates(self, map_: Map, indexed_map):
        """Test that relocalization returns the best-matching keyframe."""
        db, ids = indexed_map
        assert db.detect_relocalization_candidates(map_, bow(0, 0, 0, 1, 1, 1)) == [ids[3]]

    def test_erased_keyframes_ignored(self, map_: Map, indexed_map):
        """Test that keyframes no longer in the map are not returned."""
        db, ids = indexed_map
        map_.clear()
        assert db.detect_relocalization_candidates(map_, bow(1, 1, 1)) == []
