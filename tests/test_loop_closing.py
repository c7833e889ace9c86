"""Tests for loop detection, geometric verification and loop correction."""

import dataclasses

import numpy as np
import pytest

from covislam.config import LoopClosingConfig, SLAMConfig
from covislam.frontend import PinholeCamera
from covislam.frontend.matcher import FeatureMatcher
from covislam.frontend.pose import Sim3
from covislam.loop_closure import KeyFrameDatabase, LoopCloser, PoseGraph
from covislam.map import Map

from .conftest import MapBuilder, SyntheticScene, pose_from


@pytest.fixture
def closer(slam_config: SLAMConfig, camera: PinholeCamera, map_: Map):
    closer = LoopCloser(slam_config, camera, map_, KeyFrameDatabase(), FeatureMatcher(map_.pyramid))
    yield closer
    closer.shutdown(timeout=5.0)


@pytest.fixture
def chain(builder: MapBuilder) -> list[int]:
    kf0 = builder.add_keyframe(pose_from())
    kf1 = builder.add_keyframe(pose_from(translation=(0.1, 0, 0)), parent_id=kf0.id)
    kf2 = builder.add_keyframe(pose_from(translation=(0.2, 0, 0)), parent_id=kf1.id)
    return [kf0.id, kf1.id, kf2.id]


def shared_slots(map_: Map, query_id: int, candidate_id: int) -> list[int]:
    """Slots of the query whose map point the candidate also observes."""
    query = map_.keyframe(query_id)
    return [
        int(slot)
        for slot in np.flatnonzero(query.map_points >= 0)
        if candidate_id in map_.map_point(int(query.map_points[slot])).observers
    ]


class TestConsistency:
    """Test suite for covisibility-group consistency over consecutive keyframes."""

    def test_candidate_accepted_after_threshold(self, closer: LoopCloser, chain: list[int]):
        """Test that a candidate is accepted once consistent often enough."""
        threshold = LoopClosingConfig().covisibility_consistency_threshold
        for _ in range(threshold):
            assert closer.check_consistency(chain[2], [chain[0]]) == []
        assert closer.check_consistency(chain[2], [chain[0]]) == [chain[0]]

    def test_empty_candidates_reset_groups(self, closer: LoopCloser, chain: list[int]):
        """Test that a query without candidates clears the groups."""
        for _ in range(3):
            closer.check_consistency(chain[2], [chain[0]])
        assert closer.check_consistency(chain[2], []) == []
        assert closer.check_consistency(chain[2], [chain[0]]) == []

    def test_culled_candidate_skipped(self, closer: LoopCloser, map_: Map, chain: list[int]):
        """Test that a culled candidate is ignored."""
        assert closer.check_consistency(chain[2], [999]) == []


class TestDetectionGates:
    """Test suite for the cheap early exits of a cycle."""

    def test_few_keyframes_give_no_candidates(
        self, closer: LoopCloser, map_: Map, chain: list[int], vocabulary
    ):
        """Test that detection waits for enough keyframes."""
        kf = map_.keyframe(chain[2])
        map_.set_keyframe_bow(kf.id, vocabulary.describe(kf.descriptors))
        assert closer.detect_candidates(chain[2]) == []

    def test_missing_keyframe(self, closer: LoopCloser, map_: Map, chain: list[int]):
        """Test that a culled query keyframe is skipped."""
        result = closer.process_keyframe(12345)
        assert result.message == "keyframe culled"
        assert not result.detected

    def test_disabled(self, slam_config: SLAMConfig, camera: PinholeCamera, map_: Map, chain: list[int]):
        """Test that disabled loop closing never detects."""
        config = dataclasses.replace(slam_config, loop_closing=LoopClosingConfig(enabled=False))
        closer = LoopCloser(config, camera, map_, KeyFrameDatabase(), FeatureMatcher(map_.pyramid))
        assert closer.process_keyframe(chain[2]).message == "loop closing disabled"

    def test_keyframe_unpinned_after_cycle(self, closer: LoopCloser, map_: Map, chain: list[int]):
        """Test that the query keyframe is erasable again after a cycle."""
        revision = map_.revision
        result = closer.process_keyframe(chain[1])
        assert result.message == "no consistent candidates"
        assert map_.revision == revision
        assert map_.erase_keyframe(chain[1])


class TestGeometricVerification:
    """Test suite for read-only Sim3 / rigid verification."""

    def test_consistent_correspondences_accepted(self, closer: LoopCloser, map_: Map, chain: list[int]):
        """Test that exact correspondences verify with the true transform."""
        query, candidate = map_.keyframe(chain[1]), map_.keyframe(chain[0])
        slots = shared_slots(map_, query.id, candidate.id)
        matched = {slot: int(query.map_points[slot]) for slot in slots}

        result = closer.verifier.verify_matches(map_, query, candidate, matched)

        assert result.is_valid
        assert result.num_inliers >= LoopClosingConfig().min_sim3_inliers
        assert result.S12.scale == pytest.approx(1.0)
        np.testing.assert_allclose(result.S12.translation, [-0.1, 0.0, 0.0], atol=1e-4)
        np.testing.assert_allclose(result.S12.rotation, np.eye(3), atol=1e-6)

    def test_descriptor_matching_path(self, closer: LoopCloser, map_: Map, chain: list[int]):
        """Test that candidates are verified through descriptor matching."""
        result = closer.verifier.verify(map_, chain[1], chain[0])
        assert result.is_valid
        assert result.num_inliers >= LoopClosingConfig().min_sim3_inliers

    def test_inconsistent_correspondences_rejected(
        self, closer: LoopCloser, map_: Map, chain: list[int]
    ):
        """Test that shuffled correspondences are rejected without map changes."""
        query, candidate = map_.keyframe(chain[1]), map_.keyframe(chain[0])
        slots = shared_slots(map_, query.id, candidate.id)
        point_ids = [int(query.map_points[slot]) for slot in slots]
        # Every slot paired with its neighbour's point
        matched = dict(zip(slots, np.roll(point_ids, 1).tolist()))
        revision = map_.revision
        poses = {kf_id: map_.keyframe(kf_id).pose.to_matrix() for kf_id in chain}

        result = closer.verifier.verify_matches(map_, query, candidate, matched)

        assert not result.is_valid
        assert result.S12 is None
        assert result.num_matches == len(slots)
        assert map_.revision == revision
        for kf_id, T in poses.items():
            np.testing.assert_array_equal(map_.keyframe(kf_id).pose.to_matrix(), T)

    def test_missing_keyframe_rejected(self, closer: LoopCloser, map_: Map, chain: list[int]):
        """Test that a culled candidate fails verification."""
        result = closer.verifier.verify(map_, chain[1], 999)
        assert not result.is_valid
        assert result.message == "keyframe missing"


class TestPoseGraph:
    """Test suite for distributing a correction over the spanning tree."""

    def test_weights_follow_tree_distance(self, map_: Map, chain: list[int]):
        """Test that correction weights grow along the spanning tree."""
        weights = PoseGraph(map_).correction_weights([chain[2]], [chain[0]])
        assert weights == {chain[0]: 0.0, chain[1]: 0.5, chain[2]: 1.0}

    def test_points_follow_reference_keyframe(self, map_: Map, chain: list[int]):
        """Test that points move with their reference keyframe."""
        shift = Sim3(rotation=np.eye(3), translation=np.array([0.0, 1.0, 0.0]))
        before = {mp.id: (mp.position.copy(), mp.reference_keyframe_id) for mp in map_.map_points()}
        pivot = map_.keyframe(chain[2]).camera_center

        with map_.transaction():
            result = PoseGraph(map_).correct(shift, [chain[0]], [chain[2]], pivot=pivot)

        np.testing.assert_allclose(map_.keyframe(chain[0]).pose.translation, [0.0, 1.0, 0.0], atol=1e-9)
        np.testing.assert_allclose(map_.keyframe(chain[1]).pose.translation, [0.1, 0.5, 0.0], atol=1e-9)
        np.testing.assert_allclose(map_.keyframe(chain[2]).pose.translation, [0.2, 0.0, 0.0], atol=1e-9)
        for mp_id, (position, ref) in before.items():
            expected = position + result.weights[ref] * np.array([0.0, 1.0, 0.0])
            np.testing.assert_allclose(map_.map_point(mp_id).position, expected, atol=1e-9)
        map_.check_invariants()


class TestLoopCorrection:
    """Test suite for closing a loop onto a drifted revisit of the same place."""

    @pytest.fixture
    def revisit(self, map_: Map, builder: MapBuilder, scene: SyntheticScene):
        """Two keyframes of the scene, then two more that re-map it with drift.

        The second pair triangulated its own copies of the landmarks, so it
        shares no map point with the first pair.
        """
        a0 = builder.add_keyframe(pose_from())
        a1 = builder.add_keyframe(pose_from(translation=(0.1, 0, 0)), parent_id=a0.id)
        again = MapBuilder(map_, scene)
        b0 = again.add_keyframe(pose_from(translation=(0.05, 0, 0)), parent_id=a1.id)
        b1 = again.add_keyframe(pose_from(translation=(0.1, 0, 0)), parent_id=b0.id)

        drift = pose_from(translation=(0, 0.05, 0))
        with map_.transaction():
            for kf_id in (b0.id, b1.id):
                map_.set_keyframe_pose(kf_id, drift @ map_.keyframe(kf_id).pose)
            for mp_id in again.point_of_landmark.values():
                map_.set_point_position(mp_id, map_.map_point(mp_id).position + drift.translation)
                map_.update_point_geometry(mp_id)
        return a0.id, a1.id, b0.id, b1.id

    def test_loop_corrects_drift_and_fuses_points(self, closer: LoopCloser, map_: Map, revisit):
        """Test that a closed loop removes drift and fuses duplicates."""
        a0, a1, b0, b1 = revisit
        assert map_.covisibility_weight(a1, b1) == 0
        n_points = map_.num_map_points

        loop = closer.compute_sim3(b1, [a1])
        assert loop is not None
        assert loop.loop_keyframe_id == a1
        assert len(loop.matched) >= LoopClosingConfig().min_projection_matches

        revision = map_.revision
        correction = closer.correct_loop(loop)

        assert correction is not None
        assert map_.revision > revision
        assert closer.num_loops == 1
        np.testing.assert_allclose(map_.keyframe(b1).pose.translation, [0.1, 0.0, 0.0], atol=1e-3)
        np.testing.assert_allclose(map_.keyframe(b0).pose.translation, [0.05, 0.0, 0.0], atol=1e-3)
        np.testing.assert_allclose(map_.keyframe(a1).pose.translation, [0.1, 0.0, 0.0], atol=1e-9)
        assert a1 in map_.loop_edges(b1)
        assert map_.covisibility_weight(a1, b1) > 0
        assert map_.num_map_points < n_points
        map_.check_invariants()

    def test_rejected_candidate_leaves_map_untouched(self, closer: LoopCloser, map_: Map, revisit):
        """Test that a rejected candidate leaves the map unchanged."""
        a0, a1, b0, b1 = revisit
        revision = map_.revision
        # Candidate culled before verification
        assert closer.compute_sim3(b1, [999]) is None
        assert map_.revision == revision
        assert closer.num_loops == 0
