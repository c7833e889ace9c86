"""Tests for the Tracker state machine on synthetic stereo observations."""

import numpy as np
import pytest

from covislam.config import SLAMConfig
from covislam.frontend import SE3
from covislam.frontend.keyframe_policy import KeyframeDecision, KeyframePolicy, TrackingQuality
from covislam.frontend.tracking import TrackingState
from covislam.loop_closure import VisualVocabulary
from covislam.system import SLAMSystem

from .conftest import SyntheticScene, pose_from

ALLOWED = {
    (TrackingState.NOT_INITIALIZED, TrackingState.NOT_INITIALIZED),
    (TrackingState.NOT_INITIALIZED, TrackingState.OK),
    (TrackingState.OK, TrackingState.OK),
    (TrackingState.OK, TrackingState.LOST),
    (TrackingState.LOST, TrackingState.OK),
    (TrackingState.LOST, TrackingState.LOST),
}


def feed(system: SLAMSystem, scene: SyntheticScene, pose: SE3, timestamp: float):
    obs = scene.observe(pose)
    return system.track_stereo_features(obs.keypoints, obs.descriptors, obs.right_u, timestamp)


def feed_empty(system: SLAMSystem, timestamp: float):
    return system.track_stereo_features(
        np.empty((0, 2)), np.empty((0, 32), dtype=np.uint8), np.empty(0), timestamp
    )


@pytest.fixture
def system(slam_config: SLAMConfig, vocabulary: VisualVocabulary):
    system = SLAMSystem(slam_config, vocabulary, start_workers=False)
    yield system
    system.shutdown()


class TestStereoBootstrap:
    """Test suite for NOT_INITIALIZED -> OK."""

    def test_first_frame_is_origin(self, system: SLAMSystem, scene: SyntheticScene):
        """Test that the first stereo frame bootstraps at the origin."""
        assert system.tracking_state is TrackingState.NO_IMAGES_YET
        T = feed(system, scene, pose_from(), 0.0)
        assert system.tracking_state is TrackingState.OK
        np.testing.assert_allclose(T, np.eye(4))
        assert system.map.num_keyframes == 1
        assert system.map.num_map_points == len(scene.observe(pose_from()))
        system.map.check_invariants()

    def test_two_view_pose(self, system: SLAMSystem, scene: SyntheticScene):
        """Test that the second frame is tracked at its true pose."""
        truth = pose_from((0, 1, 0), (0.05, 0.0, 0.02))
        feed(system, scene, pose_from(), 0.0)
        T = feed(system, scene, truth, 1 / 30)

        assert system.tracking_state is TrackingState.OK
        assert T is not None
        np.testing.assert_allclose(T[:3, 3], truth.translation, atol=1e-2)
        np.testing.assert_allclose(T[:3, :3], truth.rotation, atol=1e-2)
        assert system.tracker.num_inliers >= system.config.tracking.min_inliers

    def test_too_few_depth_features(self, system: SLAMSystem, scene: SyntheticScene):
        """Test that bootstrap needs enough features with depth."""
        obs = scene.observe(pose_from())
        right_u = np.full(len(obs), -1.0)
        right_u[:10] = obs.right_u[:10]
        T = system.track_stereo_features(obs.keypoints, obs.descriptors, right_u, 0.0)
        assert T is None
        assert system.tracking_state is TrackingState.NOT_INITIALIZED
        assert system.map.num_keyframes == 0

    def test_bootstrap_keyframe_queued_for_mapping(self, system: SLAMSystem, scene: SyntheticScene):
        """Test that the bootstrap keyframe is handed to the mapper."""
        feed(system, scene, pose_from(), 0.0)
        assert system.local_mapper.queue_length == 1
        assert system.local_mapper.drain() == 1
        root = system.map.root_id
        assert root in system.keyframe_database
        assert system.map.keyframe(root).bow is not None


class TestTrackingLoss:
    """Test suite for OK -> LOST and the state transition rules."""

    def test_zero_features_lose_tracking(self, system: SLAMSystem, scene: SyntheticScene):
        """Test that an empty frame loses tracking."""
        feed(system, scene, pose_from(), 0.0)
        assert system.tracking_state is TrackingState.OK
        assert feed_empty(system, 1 / 30) is None
        assert system.tracking_state is TrackingState.LOST

    def test_lost_right_after_bootstrap_requests_reset(
        self, system: SLAMSystem, scene: SyntheticScene
    ):
        """Test that losing a young map requests a reset."""
        feed(system, scene, pose_from(), 0.0)
        feed_empty(system, 1 / 30)
        requests = system.apply_pending_requests()
        assert requests.reset
        assert system.tracking_state is TrackingState.NOT_INITIALIZED
        assert system.map.num_keyframes == 0

    def test_transitions_stay_within_allowed_set(
        self, system: SLAMSystem, scene: SyntheticScene, monkeypatch
    ):
        """Test that observed state transitions are all allowed."""
        # Keep the map after losing tracking so LOST -> LOST is reachable
        monkeypatch.setattr(system.tracker, "_reset_callback", None)
        sequence = [pose_from(translation=(0.01 * i, 0, 0)) for i in range(4)]
        observed = []

        def step(result):
            observed.append((system.tracker.last_processed_state, system.tracking_state))
            return result

        step(feed_empty(system, 0.0))
        for i, pose in enumerate(sequence):
            step(feed(system, scene, pose, 0.1 * (i + 1)))
        step(feed_empty(system, 1.0))
        step(feed_empty(system, 1.1))

        assert set(observed) <= ALLOWED
        assert (TrackingState.NOT_INITIALIZED, TrackingState.OK) in observed
        assert (TrackingState.OK, TrackingState.LOST) in observed
        assert (TrackingState.LOST, TrackingState.LOST) in observed


class TestRelocalization:
    """Test suite for LOST -> OK."""

    def test_relocalizes_near_mapped_pose(self, system: SLAMSystem, scene: SyntheticScene, monkeypatch):
        """Test that a lost tracker recovers its pose from the place-recognition index."""
        monkeypatch.setattr(system.tracker, "_reset_callback", None)
        feed(system, scene, pose_from(), 0.0)
        system.local_mapper.drain()
        keyframes = system.map.num_keyframes

        feed_empty(system, 1 / 30)
        assert system.tracking_state is TrackingState.LOST

        truth = pose_from(translation=(0.05, 0, 0))
        T = feed(system, scene, truth, 2 / 30)
        assert system.tracking_state is TrackingState.OK
        assert system.tracker.last_processed_state is TrackingState.LOST
        np.testing.assert_allclose(T[:3, 3], truth.translation, atol=2e-2)
        frame_id = system.tracker.current_frame.id
        assert system.tracker._policy.last_relocalization_frame_id == frame_id
        assert system.map.num_keyframes == keyframes

    def test_unknown_place_stays_lost(self, system: SLAMSystem, scene: SyntheticScene, monkeypatch):
        """Test that relocalization fails against a map that never saw the features."""
        monkeypatch.setattr(system.tracker, "_reset_callback", None)
        feed(system, scene, pose_from(), 0.0)
        system.local_mapper.drain()
        feed_empty(system, 1 / 30)

        other = SyntheticScene(scene.camera, seed=7)
        obs = other.observe(pose_from())
        T = system.track_stereo_features(obs.keypoints, obs.descriptors, obs.right_u, 2 / 30)
        assert T is None
        assert system.tracking_state is TrackingState.LOST


class TestSequence:
    """Test suite for continuous tracking with keyframe insertion."""

    def test_constant_velocity_sequence(self, system: SLAMSystem, scene: SyntheticScene):
        """Test that a smooth trajectory is tracked frame by frame."""
        poses = [pose_from((0, 0.2 * i, 0), (0.02 * i, 0, 0.01 * i)) for i in range(8)]
        for i, truth in enumerate(poses):
            T = feed(system, scene, truth, i / 30)
            assert system.tracking_state is TrackingState.OK
            np.testing.assert_allclose(T[:3, 3], truth.translation, atol=2e-2)
        assert system.tracker.velocity is not None

    def test_keyframes_mapped_in_order(self, system: SLAMSystem, scene: SyntheticScene, monkeypatch):
        """Test that inserted keyframes are mapped consistently."""
        monkeypatch.setattr(
            system.tracker._policy, "decide", lambda *args, **kwargs: KeyframeDecision(insert=True)
        )
        for i in range(5):
            truth = pose_from(translation=(0.03 * i, 0, 0))
            T = feed(system, scene, truth, i / 30)
            system.local_mapper.drain()
            assert system.tracking_state is TrackingState.OK
            np.testing.assert_allclose(T[:3, 3], truth.translation, atol=5e-2)

        assert system.map.num_keyframes >= 2
        assert system.map.epoch == 0
        system.map.check_invariants()


class TestKeyframePolicy:
    """Test suite for the insertion heuristic."""

    @pytest.fixture
    def policy(self, slam_config: SLAMConfig) -> KeyframePolicy:
        return KeyframePolicy(slam_config)

    def test_stopped_mapper_never_inserts(self, policy: KeyframePolicy):
        """Test that no keyframe is requested while the mapper is paused."""
        quality = TrackingQuality(frame_id=100, num_inliers=20, reference_matches=400, num_keyframes=5)
        assert not policy.decide(quality, mapper_idle=True, mapper_queue_length=0, mapper_stopped=True).insert

    def test_degraded_tracking_inserts(self, policy: KeyframePolicy):
        """Test that weak tracking requests a keyframe."""
        quality = TrackingQuality(frame_id=100, num_inliers=50, reference_matches=400, num_keyframes=5)
        assert policy.decide(quality, mapper_idle=True, mapper_queue_length=0).insert

    def test_good_tracking_does_not_insert(self, policy: KeyframePolicy):
        """Test that strong tracking needs no keyframe."""
        quality = TrackingQuality(
            frame_id=100, num_inliers=390, reference_matches=400, tracked_close=300, num_keyframes=5
        )
        assert not policy.decide(quality, mapper_idle=True, mapper_queue_length=0).insert

    def test_busy_mapper_interrupted(self, policy: KeyframePolicy):
        """Test that a busy mapper is interrupted and its queue bounded."""
        quality = TrackingQuality(frame_id=100, num_inliers=50, reference_matches=400, num_keyframes=5)
        decision = policy.decide(quality, mapper_idle=False, mapper_queue_length=1)
        assert decision.insert and decision.interrupt_mapping
        decision = policy.decide(quality, mapper_idle=False, mapper_queue_length=3)
        assert not decision.insert and decision.interrupt_mapping

    def test_recent_relocalization_blocks_insertion(self, policy: KeyframePolicy):
        """Test that no keyframe follows a recent relocalization."""
        policy.relocalized(95)
        quality = TrackingQuality(frame_id=100, num_inliers=50, reference_matches=400, num_keyframes=50)
        assert not policy.decide(quality, mapper_idle=True, mapper_queue_length=0).insert
