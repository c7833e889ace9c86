"""Pinhole camera model with radial-tangential distortion."""

from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np
import yaml

from ..config import CameraConfig
from ..errors import ResourceExhaustion
from .pose import SE3


class PinholeCamera:
    """Pinhole projection for a (rectified) camera.

    Keypoints are undistorted once when a frame is built, so projection and
    back-projection work on ideal pinhole coordinates. For stereo and RGB-D
    sessions ``bf`` (baseline * fx) relates depth and the virtual right-image
    coordinate: u_right = u_left - bf / z.
    """

    def __init__(self, config: CameraConfig) -> None:
        self._config = config
        self._K = config.to_matrix()
        self._dist = config.distortion
        self._has_distortion = bool(np.any(np.abs(self._dist) > 0))
        self._bounds = self._compute_bounds()

    @classmethod
    def from_yaml(cls, path: str | Path) -> PinholeCamera:
        """Load intrinsics from a settings file with a ``camera`` section.

        Raises:
            ResourceExhaustion: If the file is missing or malformed
        """
        path = Path(path)
        if not path.exists():
            raise ResourceExhaustion(f"Calibration file not found: {path}")
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        section = data.get("camera", data)
        if not isinstance(section, dict):
            raise ResourceExhaustion(f"Invalid camera section in {path}")
        try:
            return cls(CameraConfig(**section))
        except TypeError as e:
            raise ResourceExhaustion(f"Invalid camera parameters in {path}: {e}") from e

    @property
    def config(self) -> CameraConfig:
        return self._config

    @property
    def K(self) -> np.ndarray:
        """Return 3x3 camera intrinsic matrix."""
        return self._K

    @property
    def fx(self) -> float:
        return self._config.fx

    @property
    def fy(self) -> float:
        return self._config.fy

    @property
    def cx(self) -> float:
        return self._config.cx

    @property
    def cy(self) -> float:
        return self._config.cy

    @property
    def bf(self) -> float:
        """Return stereo baseline times focal length (pixels * metres)."""
        return self._config.bf

    @property
    def baseline(self) -> float:
        return self._config.bf / self._config.fx if self._config.fx > 0 else 0.0

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        """Return (min_x, max_x, min_y, max_y) of the undistorted image."""
        return self._bounds

    def _compute_bounds(self) -> tuple[float, float, float, float]:
        w, h = float(self._config.width), float(self._config.height)
        if not self._has_distortion:
            return 0.0, w, 0.0, h
        corners = np.array([[0.0, 0.0], [w, 0.0], [0.0, h], [w, h]])
        und = self.undistort_points(corners)
        return (
            float(min(und[0, 0], und[2, 0])),
            float(max(und[1, 0], und[3, 0])),
            float(min(und[0, 1], und[1, 1])),
            float(max(und[2, 1], und[3, 1])),
        )

    def undistort_points(self, points: np.ndarray) -> np.ndarray:
        """Remove lens distortion from Nx2 pixel coordinates."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if not self._has_distortion or len(points) == 0:
            return points.copy()
        und = cv2.undistortPoints(
            points.reshape(-1, 1, 2), self._K, self._dist, P=self._K
        )
        return und.reshape(-1, 2)

    def project(self, points_camera: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Project Nx3 camera-frame points to pixels.

        Returns:
            Tuple of (Nx2 pixel coordinates, N depths). Points with
            non-positive depth get NaN coordinates.
        """
        points_camera = np.asarray(points_camera, dtype=np.float64).reshape(-1, 3)
        z = points_camera[:, 2]
        safe_z = np.where(z > 1e-9, z, np.nan)
        u = self.fx * points_camera[:, 0] / safe_z + self.cx
        v = self.fy * points_camera[:, 1] / safe_z + self.cy
        return np.column_stack([u, v]), z

    def project_world(
        self, points_world: np.ndarray, pose: SE3
    ) -> tuple[np.ndarray, np.ndarray]:
        """Project Nx3 world points into a camera at pose T_world_camera."""
        return self.project(pose.inverse_transform_points(points_world))

    def unproject(self, uv: np.ndarray, depth: np.ndarray) -> np.ndarray:
        """Back-project Nx2 pixels with known depth to camera-frame points."""
        uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
        depth = np.asarray(depth, dtype=np.float64).reshape(-1)
        x = (uv[:, 0] - self.cx) * depth / self.fx
        y = (uv[:, 1] - self.cy) * depth / self.fy
        return np.column_stack([x, y, depth])

    def bearing(self, uv: np.ndarray) -> np.ndarray:
        """Return Nx3 normalized image rays (z = 1) for pixel coordinates."""
        uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
        return np.column_stack(
            [(uv[:, 0] - self.cx) / self.fx, (uv[:, 1] - self.cy) / self.fy, np.ones(len(uv))]
        )

    def is_in_image(self, uv: np.ndarray) -> np.ndarray:
        """Return a boolean mask of pixels inside the image bounds."""
        uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
        min_x, max_x, min_y, max_y = self._bounds
        with np.errstate(invalid="ignore"):
            return (
                np.isfinite(uv).all(axis=1)
                & (uv[:, 0] >= min_x)
                & (uv[:, 0] < max_x)
                & (uv[:, 1] >= min_y)
                & (uv[:, 1] < max_y)
            )


def triangulate_points(
    K: np.ndarray,
    pose1: SE3,
    pose2: SE3,
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> np.ndarray:
    """Linear triangulation of matched pixels seen from two camera poses.

    Args:
        K: 3x3 camera intrinsic matrix
        pose1: T_world_camera of the first view
        pose2: T_world_camera of the second view
        pts1: Nx2 undistorted pixels in the first view
        pts2: Nx2 undistorted pixels in the second view

    Returns:
        Nx3 world points; rows at infinity are NaN
    """
    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)
    if len(pts1) == 0:
        return np.empty((0, 3))
    P1 = K @ pose1.inverse().to_matrix()[:3, :4]
    P2 = K @ pose2.inverse().to_matrix()[:3, :4]
    X = cv2.triangulatePoints(P1, P2, pts1.T, pts2.T)
    w = X[3]
    with np.errstate(invalid="ignore", divide="ignore"):
        points = (X[:3] / np.where(np.abs(w) > 1e-12, w, np.nan)).T
    return points
