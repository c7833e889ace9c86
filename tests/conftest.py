"""Shared fixtures: a synthetic landmark scene observed by a stereo camera.

Landmarks carry unique random ORB-like descriptors, so frames and keyframes
can be produced without images and every pipeline stage sees exact
correspondences.
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np
import pytest

from covislam.config import (
    CameraConfig,
    LocalMappingConfig,
    LoopClosingConfig,
    Sensor,
    SLAMConfig,
    TrackingConfig,
)
from covislam.frontend import SE3, PinholeCamera, ScalePyramid
from covislam.loop_closure import VisualVocabulary
from covislam.map import KeyFrame, Map


def pose_from(rotation_deg: tuple[float, float, float] = (0, 0, 0), translation=(0, 0, 0)) -> SE3:
    """T_world_camera from an axis-angle rotation in degrees and a translation."""
    rvec = np.deg2rad(np.asarray(rotation_deg, dtype=np.float64))
    R, _ = cv2.Rodrigues(rvec)
    return SE3(rotation=R, translation=np.asarray(translation, dtype=np.float64))


@dataclass
class Observation:
    """Landmarks seen from one pose, in keypoint order."""

    landmark_ids: np.ndarray
    keypoints: np.ndarray
    descriptors: np.ndarray
    octaves: np.ndarray
    right_u: np.ndarray
    depth: np.ndarray

    def __len__(self) -> int:
        return len(self.landmark_ids)


class SyntheticScene:
    """Random landmarks in front of the origin camera."""

    def __init__(
        self,
        camera: PinholeCamera,
        n_points: int = 400,
        depth_range: tuple[float, float] = (4.0, 8.0),
        seed: int = 0,
    ) -> None:
        rng = np.random.default_rng(seed)
        self.camera = camera
        z = rng.uniform(*depth_range, n_points)
        u = rng.uniform(40, camera.config.width - 40, n_points)
        v = rng.uniform(40, camera.config.height - 40, n_points)
        self.landmarks = camera.unproject(np.column_stack([u, v]), z)
        self.descriptors = rng.integers(0, 256, size=(n_points, 32), dtype=np.uint8)

    def observe(self, pose: SE3) -> Observation:
        """Project every landmark visible from ``pose``."""
        uv, z = self.camera.project_world(self.landmarks, pose)
        visible = np.flatnonzero(self.camera.is_in_image(uv) & (z > 0.1))
        keypoints = uv[visible]
        depth = z[visible]
        return Observation(
            landmark_ids=visible,
            keypoints=keypoints,
            descriptors=self.descriptors[visible].copy(),
            octaves=np.zeros(len(visible), dtype=np.int32),
            right_u=keypoints[:, 0] - self.camera.bf / depth,
            depth=depth,
        )


class MapBuilder:
    """Adds stereo keyframes of a synthetic scene to a map, sharing landmarks."""

    def __init__(self, map_: Map, scene: SyntheticScene) -> None:
        self.map = map_
        self.scene = scene
        self.point_of_landmark: dict[int, int] = {}
        self._frame_ids = iter(range(10**6))

    def add_keyframe(
        self,
        pose: SE3,
        parent_id: int | None = None,
        timestamp: float | None = None,
        new_points: bool = True,
    ) -> KeyFrame:
        obs = self.scene.observe(pose)
        frame_id = next(self._frame_ids)
        kf = KeyFrame(
            id=self.map.new_keyframe_id(),
            frame_id=frame_id,
            timestamp=float(frame_id) if timestamp is None else timestamp,
            pose=pose.copy(),
            keypoints=obs.keypoints.copy(),
            descriptors=obs.descriptors.copy(),
            octaves=obs.octaves.copy(),
            right_u=obs.right_u.copy(),
            depth=obs.depth.copy(),
            map_points=np.full(len(obs), -1, dtype=np.int64),
        )
        with self.map.transaction():
            self.map.add_keyframe(kf, parent_id)
            for slot, landmark in enumerate(obs.landmark_ids):
                landmark = int(landmark)
                mp_id = self.point_of_landmark.get(landmark)
                if mp_id is not None and self.map.has_map_point(mp_id):
                    self.map.add_observation(mp_id, kf.id, slot)
                elif new_points:
                    self.point_of_landmark[landmark] = self.map.create_map_point(
                        self.scene.landmarks[landmark], kf.id, {kf.id: slot}
                    )
            for mp_id in kf.observed_point_ids():
                self.map.update_point_geometry(mp_id)
            self.map.update_connections(kf.id)
        return kf


@pytest.fixture
def camera_config() -> CameraConfig:
    return CameraConfig(
        fx=400.0, fy=400.0, cx=320.0, cy=240.0, width=640, height=480, fps=30.0, bf=80.0
    )


@pytest.fixture
def camera(camera_config: CameraConfig) -> PinholeCamera:
    return PinholeCamera(camera_config)


@pytest.fixture
def pyramid() -> ScalePyramid:
    return ScalePyramid(1.2, 8)


@pytest.fixture
def scene(camera: PinholeCamera) -> SyntheticScene:
    return SyntheticScene(camera)


@pytest.fixture
def slam_config(camera_config: CameraConfig) -> SLAMConfig:
    """Stereo session tuned for a few hundred synthetic landmarks."""
    return SLAMConfig(
        sensor=Sensor.STEREO,
        camera=camera_config,
        tracking=TrackingConfig(min_init_features=50),
        local_mapping=LocalMappingConfig(stop_timeout_s=0.5),
        loop_closing=LoopClosingConfig(run_global_ba=False),
    )


@pytest.fixture
def vocabulary() -> VisualVocabulary:
    rng = np.random.default_rng(1)
    return VisualVocabulary.from_words(rng.uniform(0, 255, size=(64, 32)))


@pytest.fixture
def map_(pyramid: ScalePyramid) -> Map:
    return Map(pyramid=pyramid)


@pytest.fixture
def builder(map_: Map, scene: SyntheticScene) -> MapBuilder:
    return MapBuilder(map_, scene)
