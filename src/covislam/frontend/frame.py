"""Per-capture frame data and its construction from sensor input."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field

import numpy as np

from ..config import Sensor
from .camera import PinholeCamera
from .feature_detector import FeatureDetector, Features, ScalePyramid
from .pose import SE3
from .stereo_matcher import StereoDepth, StereoMatcher, depth_from_image


@dataclass
class Frame:
    """One sensor capture during a single tracker iteration.

    Attributes:
        id: Monotonic frame counter
        timestamp: Capture time in seconds
        keypoints: Nx2 undistorted keypoint coordinates
        descriptors: Nx32 ORB descriptors
        octaves: N pyramid levels
        right_u: N right-image u coordinates (-1 when unknown)
        depth: N metric depths (-1 when unknown)
        pose: Estimated T_world_camera, None until tracked
        map_points: N map point ids per slot (-1 when unassociated)
        outliers: N flags set by pose optimization
        reference_keyframe_id: Keyframe this frame was tracked against
        bow: Bag-of-words vector, computed on demand
    """

    id: int
    timestamp: float
    keypoints: np.ndarray
    descriptors: np.ndarray
    octaves: np.ndarray
    right_u: np.ndarray
    depth: np.ndarray
    pose: SE3 | None = None
    map_points: np.ndarray = field(default=None)  # type: ignore[assignment]
    outliers: np.ndarray = field(default=None)  # type: ignore[assignment]
    reference_keyframe_id: int | None = None
    bow: np.ndarray | None = None

    def __post_init__(self) -> None:
        n = len(self.keypoints)
        if self.map_points is None:
            self.map_points = -np.ones(n, dtype=np.int64)
        if self.outliers is None:
            self.outliers = np.zeros(n, dtype=bool)

    def __len__(self) -> int:
        return len(self.keypoints)

    @property
    def stereo_mask(self) -> np.ndarray:
        """Return slots with a valid stereo/depth measurement."""
        return self.depth > 0

    def close_mask(self, depth_threshold: float) -> np.ndarray:
        """Return slots with valid depth closer than ``depth_threshold``."""
        return (self.depth > 0) & (self.depth < depth_threshold)

    def tracked_mask(self) -> np.ndarray:
        """Return slots associated to a map point and not flagged as outliers."""
        return (self.map_points >= 0) & ~self.outliers

    def unproject_stereo(self, camera: PinholeCamera, slots: np.ndarray) -> np.ndarray:
        """Back-project slots with depth to world coordinates using the frame pose."""
        if self.pose is None:
            raise ValueError("Frame has no pose")
        slots = np.asarray(slots, dtype=np.int64)
        points_camera = camera.unproject(self.keypoints[slots], self.depth[slots])
        return self.pose.transform_points(points_camera)

    def features_in_area(
        self,
        u: float,
        v: float,
        radius: float,
        min_level: int = -1,
        max_level: int = -1,
    ) -> np.ndarray:
        """Return slot indices inside a square window around (u, v)."""
        if len(self.keypoints) == 0:
            return np.empty(0, dtype=np.int64)
        mask = (np.abs(self.keypoints[:, 0] - u) < radius) & (
            np.abs(self.keypoints[:, 1] - v) < radius
        )
        if min_level >= 0:
            mask &= self.octaves >= min_level
        if max_level >= 0:
            mask &= self.octaves <= max_level
        return np.flatnonzero(mask)

    def copy_pose(self) -> SE3 | None:
        return None if self.pose is None else self.pose.copy()


class FrameBuilder:
    """Turns raw sensor input or pre-extracted features into Frames."""

    def __init__(
        self,
        sensor: Sensor,
        camera: PinholeCamera,
        detector: FeatureDetector,
        init_detector: FeatureDetector | None = None,
    ) -> None:
        self._sensor = sensor
        self._camera = camera
        self._detector = detector
        self._init_detector = init_detector or detector
        self._ids = itertools.count()
        self._stereo_matcher = StereoMatcher(
            bf=camera.bf, fx=camera.fx, pyramid=detector.pyramid
        )

    @property
    def pyramid(self) -> ScalePyramid:
        return self._detector.pyramid

    def reset_ids(self) -> None:
        self._ids = itertools.count()

    def stereo(self, left: np.ndarray, right: np.ndarray, timestamp: float) -> Frame:
        """Build a frame from a rectified stereo pair."""
        features_left = self._detector.detect(left)
        features_right = self._detector.detect(right)
        stereo = self._stereo_matcher.match(features_left, features_right)
        return self._make(features_left, stereo, timestamp)

    def rgbd(self, image: np.ndarray, depth: np.ndarray, timestamp: float) -> Frame:
        """Build a frame from an intensity image with registered depth."""
        features = self._detector.detect(image)
        stereo = depth_from_image(
            features.points,
            depth,
            self._camera.config.depth_map_factor,
            self._camera.bf,
        )
        return self._make(features, stereo, timestamp)

    def monocular(self, image: np.ndarray, timestamp: float, initializing: bool) -> Frame:
        """Build a monocular frame; bootstrap frames use the denser detector."""
        detector = self._init_detector if initializing else self._detector
        features = detector.detect(image)
        return self._make(features, StereoDepth.unknown(len(features)), timestamp)

    def from_features(
        self,
        features: Features,
        timestamp: float,
        depth: np.ndarray | None = None,
        right_u: np.ndarray | None = None,
    ) -> Frame:
        """Build a frame from pre-extracted keypoints and descriptors.

        Args:
            features: Keypoints, descriptors and octaves
            timestamp: Capture time in seconds
            depth: Optional per-keypoint metric depth (RGB-D / stereo)
            right_u: Optional per-keypoint right-image u coordinate; derived
                from depth and bf when omitted
        """
        n = len(features)
        if depth is None:
            stereo = StereoDepth.unknown(n)
        else:
            depth = np.asarray(depth, dtype=np.float64).reshape(-1)
            if len(depth) != n:
                raise ValueError(f"Expected {n} depths, got {len(depth)}")
            valid = np.isfinite(depth) & (depth > 0)
            stereo = StereoDepth.unknown(n)
            stereo.depth[valid] = depth[valid]
            if right_u is not None:
                right_u = np.asarray(right_u, dtype=np.float64).reshape(-1)
                stereo.right_u[valid] = right_u[valid]
            else:
                stereo.right_u[valid] = features.points[valid, 0] - self._camera.bf / depth[valid]
        return self._make(features, stereo, timestamp)

    def _make(self, features: Features, stereo: StereoDepth, timestamp: float) -> Frame:
        keypoints = self._camera.undistort_points(features.points)
        return Frame(
            id=next(self._ids),
            timestamp=float(timestamp),
            keypoints=keypoints,
            descriptors=features.descriptors,
            octaves=features.octaves,
            right_u=stereo.right_u.astype(np.float64),
            depth=stereo.depth.astype(np.float64),
        )
