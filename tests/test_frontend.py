"""Tests for feature extraction, stereo depth, two-view geometry and global bundle adjustment."""

import threading

import cv2
import numpy as np
import pytest

from covislam.backend.optimizer.scipy_ba import BAResult
from covislam.config import FeatureConfig, Sensor
from covislam.errors import InitializationFailed
from covislam.frontend import FeatureDetector, Features, FrameBuilder, PinholeCamera, StereoMatcher
from covislam.frontend.feature_detector import hamming_distance, hamming_matrix
from covislam.frontend.initializer import MonocularInitializer
from covislam.frontend.motion_estimator import MotionEstimator
from covislam.frontend.stereo_matcher import depth_from_image
from covislam.loop_closure import GlobalBundleAdjustment
from covislam.map import Map

from .conftest import MapBuilder, SyntheticScene, pose_from


@pytest.fixture
def textured_image() -> np.ndarray:
    rng = np.random.default_rng(3)
    noise = rng.integers(0, 256, size=(480, 640), dtype=np.uint8)
    return cv2.GaussianBlur(noise, (5, 5), 1.5)


def features_of(obs) -> Features:
    return Features(points=obs.keypoints, descriptors=obs.descriptors, octaves=obs.octaves)


class TestFeatureDetector:
    """Test suite for ORB extraction."""

    def test_detect_textured_image(self, textured_image: np.ndarray):
        """Test that ORB finds features with valid descriptors and octaves."""
        detector = FeatureDetector(FeatureConfig(), n_features=500)
        features = detector.detect(textured_image)

        assert 0 < len(features) <= 500
        assert features.descriptors.shape == (len(features), 32)
        assert features.descriptors.dtype == np.uint8
        assert features.octaves.min() >= 0
        assert features.octaves.max() < detector.pyramid.n_levels

    def test_detect_color_image(self, textured_image: np.ndarray):
        """Test that color images are converted before detection."""
        color = cv2.cvtColor(textured_image, cv2.COLOR_GRAY2BGR)
        assert len(FeatureDetector().detect(color)) > 0

    def test_blank_image(self):
        """Test that a blank image gives an empty feature set."""
        features = FeatureDetector().detect(np.zeros((480, 640), dtype=np.uint8))
        assert len(features) == 0
        assert features.descriptors.shape == (0, 32)

    def test_mismatched_arrays(self):
        """Test that feature arrays of different lengths are rejected."""
        with pytest.raises(ValueError):
            Features(points=np.zeros((3, 2)), descriptors=np.zeros((2, 32)), octaves=None)


class TestHamming:
    """Test suite for descriptor distances."""

    def test_matrix_agrees_with_pairwise(self):
        """Test that the blocked distance matrix matches pairwise distances."""
        rng = np.random.default_rng(1)
        a = rng.integers(0, 256, size=(5, 32), dtype=np.uint8)
        b = rng.integers(0, 256, size=(7, 32), dtype=np.uint8)
        dist = hamming_matrix(a, b, block=2)

        assert dist.shape == (5, 7)
        for i in range(5):
            for j in range(7):
                assert dist[i, j] == hamming_distance(a[i], b[j])

    def test_known_distances(self):
        """Test that all-zero and all-one descriptors differ in every bit."""
        zeros = np.zeros(32, dtype=np.uint8)
        ones = np.full(32, 255, dtype=np.uint8)
        assert hamming_distance(zeros, zeros) == 0
        assert hamming_distance(zeros, ones) == 256


class TestStereoMatcher:
    """Test suite for left-right matching."""

    def test_synthetic_features(self, camera: PinholeCamera, pyramid, scene: SyntheticScene):
        """Test that exact left-right matches recover every depth."""
        obs = scene.observe(pose_from())
        left = features_of(obs)
        right = Features(
            points=np.column_stack([obs.right_u, obs.keypoints[:, 1]]),
            descriptors=obs.descriptors,
            octaves=obs.octaves,
        )
        stereo = StereoMatcher(camera.bf, camera.fx, pyramid).match(left, right)

        assert stereo.n_valid == len(obs)
        np.testing.assert_allclose(stereo.depth, obs.depth, rtol=1e-9)
        np.testing.assert_allclose(stereo.right_u, obs.right_u)

    def test_epipolar_and_disparity_gates(self, camera: PinholeCamera, pyramid, scene: SyntheticScene):
        """Test that off-row and negative-disparity matches are dropped."""
        obs = scene.observe(pose_from())
        left = features_of(obs)
        right_points = np.column_stack([obs.right_u, obs.keypoints[:, 1]])
        right_points[0, 1] += 10.0  # off the epipolar band
        right_points[1, 0] = obs.keypoints[1, 0] + 3.0  # negative disparity
        right = Features(points=right_points, descriptors=obs.descriptors, octaves=obs.octaves)
        stereo = StereoMatcher(camera.bf, camera.fx, pyramid).match(left, right)

        assert stereo.depth[0] == -1 and stereo.depth[1] == -1
        assert stereo.n_valid == len(obs) - 2

    def test_shifted_image_pair(self, camera: PinholeCamera, textured_image: np.ndarray):
        """Test that stereo depth on a real image pair recovers a known disparity."""
        disparity = 8
        right = np.roll(textured_image, -disparity, axis=1)
        builder = FrameBuilder(Sensor.STEREO, camera, FeatureDetector(FeatureConfig(), n_features=1000))
        frame = builder.stereo(textured_image, right, 0.0)

        valid = frame.depth > 0
        assert valid.sum() > 50
        assert np.median(frame.depth[valid]) == pytest.approx(camera.bf / disparity, rel=0.05)

    def test_empty_side(self, camera: PinholeCamera, pyramid, scene: SyntheticScene):
        """Test that an empty right image leaves every depth unknown."""
        left = features_of(scene.observe(pose_from()))
        stereo = StereoMatcher(camera.bf, camera.fx, pyramid).match(left, Features.empty())
        assert stereo.n_valid == 0
        assert len(stereo) == len(left)


class TestDepthFromImage:
    """Test suite for RGB-D depth lookup."""

    def test_lookup(self):
        """Test that registered depth is looked up and scaled per keypoint."""
        depth_image = np.zeros((10, 10), dtype=np.uint16)
        depth_image[2, 3] = 5000
        points = np.array([[3.2, 1.8], [5.0, 5.0], [40.0, 2.0]])
        stereo = depth_from_image(points, depth_image, depth_map_factor=5000.0, bf=40.0)

        np.testing.assert_allclose(stereo.depth, [1.0, -1.0, -1.0])
        assert stereo.right_u[0] == pytest.approx(3.2 - 40.0)
        assert stereo.right_u[1] == -1


class TestFrameBuilder:
    """Test suite for frames built from supplied features."""

    def test_from_features_with_depth(self, camera: PinholeCamera, scene: SyntheticScene):
        """Test that supplied depths fill the stereo slots of a frame."""
        obs = scene.observe(pose_from())
        builder = FrameBuilder(Sensor.RGBD, camera, FeatureDetector())
        depth = obs.depth.copy()
        depth[0] = np.nan
        frame = builder.from_features(features_of(obs), 1.0, depth=depth)

        assert frame.id == 0
        assert frame.depth[0] == -1 and frame.right_u[0] == -1
        np.testing.assert_allclose(frame.right_u[1:], obs.right_u[1:])
        np.testing.assert_allclose(frame.map_points, -1)
        assert builder.from_features(features_of(obs), 2.0).id == 1

    def test_monocular_frame_has_no_depth(self, camera: PinholeCamera, scene: SyntheticScene):
        """Test that a monocular frame has no stereo measurements."""
        obs = scene.observe(pose_from())
        frame = FrameBuilder(Sensor.MONOCULAR, camera, FeatureDetector()).from_features(
            features_of(obs), 0.0
        )
        assert not frame.stereo_mask.any()

    def test_depth_length_mismatch(self, camera: PinholeCamera, scene: SyntheticScene):
        """Test that a depth array of the wrong length is rejected."""
        obs = scene.observe(pose_from())
        builder = FrameBuilder(Sensor.RGBD, camera, FeatureDetector())
        with pytest.raises(ValueError):
            builder.from_features(features_of(obs), 0.0, depth=obs.depth[:-1])


class TestMotionEstimator:
    """Test suite for PnP pose estimation."""

    def test_recovers_pose(self, camera: PinholeCamera, scene: SyntheticScene):
        """Test that PnP recovers the exact camera pose."""
        truth = pose_from((0, 3, 0), (0.2, -0.1, 0.05))
        obs = scene.observe(truth)
        result = MotionEstimator().estimate_pose(
            scene.landmarks[obs.landmark_ids], obs.keypoints, camera.K
        )

        assert result.success
        assert result.num_inliers == len(obs)
        np.testing.assert_allclose(result.pose.to_matrix(), truth.to_matrix(), atol=1e-4)

    def test_rejects_outliers(self, camera: PinholeCamera, scene: SyntheticScene):
        """Test that corrupted correspondences are excluded from the inliers."""
        truth = pose_from(translation=(0.1, 0, 0))
        obs = scene.observe(truth)
        points_2d = obs.keypoints.copy()
        points_2d[:20] += 30.0
        result = MotionEstimator().estimate_pose(
            scene.landmarks[obs.landmark_ids], points_2d, camera.K, initial_pose=pose_from()
        )

        assert result.success
        assert not result.inliers[:20].any()
        np.testing.assert_allclose(result.pose.translation, truth.translation, atol=1e-3)

    def test_too_few_points(self, camera: PinholeCamera):
        """Test that fewer than four correspondences fail."""
        result = MotionEstimator().estimate_pose(np.zeros((3, 3)), np.zeros((3, 2)), camera.K)
        assert not result.success


class TestMonocularInitializer:
    """Test suite for the two-view bootstrap."""

    @pytest.fixture
    def views(self, camera: PinholeCamera, scene: SyntheticScene):
        builder = FrameBuilder(Sensor.MONOCULAR, camera, FeatureDetector())
        reference = builder.from_features(features_of(scene.observe(pose_from())), 0.0)
        current = builder.from_features(
            features_of(scene.observe(pose_from(translation=(0.3, 0, 0)))), 1.0
        )
        return reference, current

    def test_essential_bootstrap(self, camera: PinholeCamera, pyramid, views):
        """Test that two views of a non-planar scene are reconstructed."""
        reference, current = views
        initializer = MonocularInitializer(camera, pyramid)
        initializer.set_reference(reference)
        pairs = initializer.match(current)
        assert len(pairs) > 300

        result = initializer.initialize(current, pairs)
        assert result.model == "essential"
        assert result.parallax_deg > 1.0
        np.testing.assert_allclose(result.rotation, np.eye(3), atol=1e-3)
        np.testing.assert_allclose(result.translation, [-1.0, 0.0, 0.0], atol=1e-3)
        # Structure is recovered up to the unit baseline
        np.testing.assert_allclose(result.current_pose.translation, [1.0, 0.0, 0.0], atol=1e-3)

    def test_no_reference(self, camera: PinholeCamera, pyramid, views):
        """Test that bootstrap fails without a reference frame."""
        _, current = views
        initializer = MonocularInitializer(camera, pyramid)
        assert len(initializer.match(current)) == 0
        with pytest.raises(InitializationFailed):
            initializer.initialize(current, np.empty((0, 2), dtype=np.int64))

    def test_no_parallax(self, camera: PinholeCamera, pyramid, scene: SyntheticScene, views):
        """Test that bootstrap fails when the views barely moved."""
        reference, _ = views
        nearby = FrameBuilder(Sensor.MONOCULAR, camera, FeatureDetector()).from_features(
            features_of(scene.observe(pose_from(translation=(0.005, 0, 0)))), 1.0
        )
        initializer = MonocularInitializer(camera, pyramid)
        initializer.set_reference(reference)
        pairs = initializer.match(nearby)
        with pytest.raises(InitializationFailed):
            initializer.initialize(nearby, pairs)


class TestGlobalBundleAdjustment:
    """Test suite for synchronous full-map optimization."""

    def test_pulls_perturbed_keyframe_back(self, camera: PinholeCamera, map_: Map, builder: MapBuilder):
        """Test that global BA corrects a perturbed keyframe and keeps the root."""
        kf0 = builder.add_keyframe(pose_from())
        kf1 = builder.add_keyframe(pose_from(translation=(0.1, 0, 0)), parent_id=kf0.id)
        kf2 = builder.add_keyframe(pose_from(translation=(0.2, 0, 0)), parent_id=kf1.id)
        with map_.transaction():
            map_.set_keyframe_pose(kf2.id, pose_from(translation=(0.22, 0.01, 0)))
        big_change = map_.big_change_index

        global_ba = GlobalBundleAdjustment(camera, map_, iterations=50)
        result = global_ba.run(kf2.id)

        assert result is not None and result.success
        assert global_ba.stats.finished == 1
        assert map_.big_change_index == big_change + 1
        np.testing.assert_allclose(map_.keyframe(kf0.id).pose.translation, [0, 0, 0])
        np.testing.assert_allclose(map_.keyframe(kf2.id).pose.translation, [0.2, 0, 0], atol=5e-3)
        map_.check_invariants()

    def test_single_keyframe(self, camera: PinholeCamera, map_: Map, builder: MapBuilder):
        """Test that a one-keyframe map is not optimized."""
        kf0 = builder.add_keyframe(pose_from())
        assert GlobalBundleAdjustment(camera, map_).run(kf0.id) is None

    def test_aborted_run_leaves_map_untouched(
        self, camera: PinholeCamera, map_: Map, builder: MapBuilder
    ):
        """Test that an aborted optimization writes nothing back."""
        kf0 = builder.add_keyframe(pose_from())
        kf1 = builder.add_keyframe(pose_from(translation=(0.1, 0, 0)), parent_id=kf0.id)
        perturbed = pose_from(translation=(0.12, 0.01, 0))
        with map_.transaction():
            map_.set_keyframe_pose(kf1.id, perturbed)
        big_change = map_.big_change_index

        abort = threading.Event()
        abort.set()
        global_ba = GlobalBundleAdjustment(camera, map_)
        result = global_ba.run(kf1.id, abort=abort)

        assert result is not None and result.aborted
        assert global_ba.stats.aborted == 1
        assert global_ba.stats.finished == 0
        assert map_.big_change_index == big_change
        np.testing.assert_allclose(map_.keyframe(kf1.id).pose.to_matrix(), perturbed.to_matrix())


class TestGlobalBundleAdjustmentThread:
    """Test suite for the single background optimization."""

    @pytest.fixture
    def blocking(self, camera: PinholeCamera, map_: Map, builder: MapBuilder, monkeypatch):
        """A runner whose optimizer blocks until it is aborted."""
        kf0 = builder.add_keyframe(pose_from())
        builder.add_keyframe(pose_from(translation=(0.1, 0, 0)), parent_id=kf0.id)
        global_ba = GlobalBundleAdjustment(camera, map_)

        def optimize(problem, abort=None):
            abort.wait(5.0)
            return BAResult(success=False, aborted=abort.is_set(), message="aborted")

        monkeypatch.setattr(global_ba._optimizer, "optimize", optimize)
        yield global_ba
        global_ba.abort()

    @staticmethod
    def live_threads() -> list[threading.Thread]:
        return [t for t in threading.enumerate() if t.name == "GlobalBA" and t.is_alive()]

    def test_new_loop_restarts_optimization(self, blocking: GlobalBundleAdjustment, map_: Map):
        """Test that starting again aborts the running optimization first."""
        big_change = map_.big_change_index
        blocking.start(0)
        blocking.start(1)

        assert len(self.live_threads()) == 1
        assert blocking.is_running
        assert blocking.stats.started == 2
        assert blocking.stats.aborted == 1

        blocking.abort()
        assert not blocking.is_running
        assert not self.live_threads()
        assert blocking.stats.aborted == 2
        assert blocking.stats.finished == 0
        assert map_.big_change_index == big_change
