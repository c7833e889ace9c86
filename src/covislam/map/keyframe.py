"""Keyframe record stored in the map."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ..frontend.pose import SE3


@dataclass
class KeyFrame:
    """A retained, map-connected camera observation.

    Keyframe edges (covisibility weights, spanning-tree parent/children and
    loop edges) are held by the Map's CovisibilityGraph and addressed by id.

    Attributes:
        id: Stable handle
        frame_id: Id of the frame the keyframe was promoted from
        timestamp: Capture time in seconds
        pose: Camera pose T_world_camera, refined by optimization
        keypoints: (N, 2) undistorted keypoint coordinates
        descriptors: (N, 32) ORB descriptors
        octaves: (N,) pyramid levels
        right_u: (N,) right-image u coordinates (-1 when monocular)
        depth: (N,) metric depths (-1 when unknown)
        map_points: (N,) map point id per slot (-1 when free)
        bow: Normalized bag-of-words vector
        pin_count: Loop-closing users; a pinned keyframe is not culled
        erase_requested: Culling was deferred while the keyframe was pinned
    """

    id: int
    frame_id: int
    timestamp: float
    pose: SE3
    keypoints: np.ndarray
    descriptors: np.ndarray
    octaves: np.ndarray
    right_u: np.ndarray
    depth: np.ndarray
    map_points: np.ndarray
    bow: np.ndarray | None = None
    pin_count: int = 0
    erase_requested: bool = False

    def __post_init__(self) -> None:
        self.keypoints = np.asarray(self.keypoints, dtype=np.float64).reshape(-1, 2)
        self.descriptors = np.asarray(self.descriptors, dtype=np.uint8).reshape(-1, 32)
        self.octaves = np.asarray(self.octaves, dtype=np.int32).reshape(-1)
        self.right_u = np.asarray(self.right_u, dtype=np.float64).reshape(-1)
        self.depth = np.asarray(self.depth, dtype=np.float64).reshape(-1)
        self.map_points = np.asarray(self.map_points, dtype=np.int64).reshape(-1)
        n = len(self.keypoints)
        for name in ("descriptors", "octaves", "right_u", "depth", "map_points"):
            if len(getattr(self, name)) != n:
                raise ValueError(f"KeyFrame.{name} has {len(getattr(self, name))} rows, expected {n}")

    def __len__(self) -> int:
        return len(self.keypoints)

    @property
    def camera_center(self) -> np.ndarray:
        return self.pose.translation.copy()

    def observed_point_ids(self) -> set[int]:
        return {int(i) for i in self.map_points if i >= 0}

    def slots_in_area(
        self,
        u: float,
        v: float,
        radius: float,
        min_level: int = -1,
        max_level: int = -1,
    ) -> np.ndarray:
        """Return slot indices inside a square window around (u, v)."""
        mask = (np.abs(self.keypoints[:, 0] - u) < radius) & (
            np.abs(self.keypoints[:, 1] - v) < radius
        )
        if min_level >= 0:
            mask &= self.octaves >= min_level
        if max_level >= 0:
            mask &= self.octaves <= max_level
        return np.flatnonzero(mask)

    def median_scene_depth(self, positions: np.ndarray) -> float:
        """Return the median depth of world points ``positions`` in this camera."""
        if len(positions) == 0:
            return 0.0
        z = self.pose.inverse_transform_points(positions)[:, 2]
        return float(np.median(z))
