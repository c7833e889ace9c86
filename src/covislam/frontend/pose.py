"""SE(3) and Sim(3) transformations for camera poses and drift corrections."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np


@dataclass
class SE3:
    """Rigid body transformation (rotation + translation) in SE(3).

    Camera poses are stored as T_world_camera, transforming points from the
    camera frame to the world frame:

        p_world = R @ p_camera + t

    Attributes:
        rotation: 3x3 orthonormal rotation matrix (det = +1)
        translation: 3D translation vector
    """

    rotation: np.ndarray  # 3x3 rotation matrix
    translation: np.ndarray  # (3,) translation vector

    def __post_init__(self) -> None:
        """Validate and normalize inputs."""
        self.rotation = np.asarray(self.rotation, dtype=np.float64)
        self.translation = np.asarray(self.translation, dtype=np.float64).flatten()

        if self.rotation.shape != (3, 3):
            raise ValueError(f"Rotation must be 3x3, got {self.rotation.shape}")
        if self.translation.shape != (3,):
            raise ValueError(
                f"Translation must be (3,), got {self.translation.shape}"
            )

    @classmethod
    def identity(cls) -> SE3:
        """Create identity transformation."""
        return cls(rotation=np.eye(3), translation=np.zeros(3))

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> SE3:
        """Create SE3 from a 4x4 homogeneous transformation matrix.

        Args:
            T: 4x4 transformation matrix [[R, t], [0, 1]]

        Returns:
            SE3 transformation
        """
        T = np.asarray(T)
        if T.shape != (4, 4):
            raise ValueError(f"Transform must be 4x4, got {T.shape}")
        return cls(rotation=T[:3, :3], translation=T[:3, 3])

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> SE3:
        """Create SE3 from OpenCV Rodrigues vector and translation.

        cv2.solvePnP returns T_camera_world; invert the result to obtain the
        camera pose T_world_camera.

        Args:
            rvec: 3D Rodrigues rotation vector (axis * angle)
            tvec: 3D translation vector

        Returns:
            SE3 transformation
        """
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        return cls(rotation=R, translation=np.asarray(tvec).flatten())

    @classmethod
    def from_quaternion(
        cls,
        qw: float,
        qx: float,
        qy: float,
        qz: float,
        translation: np.ndarray,
    ) -> SE3:
        """Create SE3 from a Hamilton quaternion (w, x, y, z) and translation."""
        norm = np.sqrt(qw * qw + qx * qx + qy * qy + qz * qz)
        qw, qx, qy, qz = qw / norm, qx / norm, qy / norm, qz / norm

        R = np.array(
            [
                [1 - 2 * (qy * qy + qz * qz), 2 * (qx * qy - qz * qw), 2 * (qx * qz + qy * qw)],
                [2 * (qx * qy + qz * qw), 1 - 2 * (qx * qx + qz * qz), 2 * (qy * qz - qx * qw)],
                [2 * (qx * qz - qy * qw), 2 * (qy * qz + qx * qw), 1 - 2 * (qx * qx + qy * qy)],
            ],
            dtype=np.float64,
        )
        return cls(rotation=R, translation=np.asarray(translation).flatten())

    def to_matrix(self) -> np.ndarray:
        """Convert to 4x4 homogeneous transformation matrix."""
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    def to_rvec_tvec(self) -> tuple[np.ndarray, np.ndarray]:
        """Convert to OpenCV Rodrigues vector and translation."""
        rvec, _ = cv2.Rodrigues(self.rotation)
        return rvec.flatten(), self.translation.copy()

    def to_quaternion(self) -> np.ndarray:
        """Return the rotation as a unit quaternion (qx, qy, qz, qw)."""
        return rotation_to_quaternion(self.rotation)

    def inverse(self) -> SE3:
        """Compute the inverse transformation [R^T, -R^T @ t]."""
        R_inv = self.rotation.T
        return SE3(rotation=R_inv, translation=-R_inv @ self.translation)

    def compose(self, other: SE3) -> SE3:
        """Compose with another transformation: self @ other.

        Example:
            T_world_prev.compose(T_prev_curr) gives T_world_curr
        """
        R = self.rotation @ other.rotation
        t = self.rotation @ other.translation + self.translation
        return SE3(rotation=R, translation=t)

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Apply p' = R @ p + t to an Nx3 array of points."""
        points = np.asarray(points, dtype=np.float64)
        if points.ndim == 1:
            points = points.reshape(1, 3)
        if points.shape[1] != 3:
            raise ValueError(f"Points must be Nx3, got {points.shape}")
        return points @ self.rotation.T + self.translation

    def transform_point(self, point: np.ndarray) -> np.ndarray:
        """Apply the transformation to a single 3D point."""
        return self.rotation @ np.asarray(point, dtype=np.float64).flatten() + self.translation

    def inverse_transform_points(self, points: np.ndarray) -> np.ndarray:
        """Apply the inverse transformation, p = R^T @ (p' - t), to Nx3 points.

        For a camera pose T_world_camera this maps world points into the
        camera frame without building the inverse explicitly.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return (points - self.translation) @ self.rotation

    def copy(self) -> SE3:
        """Return a deep copy."""
        return SE3(rotation=self.rotation.copy(), translation=self.translation.copy())

    def __repr__(self) -> str:
        pos = self.translation
        return f"SE3(position=[{pos[0]:.3f}, {pos[1]:.3f}, {pos[2]:.3f}])"

    def __matmul__(self, other: SE3) -> SE3:
        return self.compose(other)


@dataclass
class Sim3:
    """Similarity transformation p' = s * R @ p + t.

    Monocular maps drift in scale as well as pose, so loop corrections are
    expressed in Sim(3). Stereo and RGB-D sessions use scale = 1.
    """

    rotation: np.ndarray
    translation: np.ndarray
    scale: float = 1.0

    def __post_init__(self) -> None:
        self.rotation = np.asarray(self.rotation, dtype=np.float64)
        self.translation = np.asarray(self.translation, dtype=np.float64).flatten()
        self.scale = float(self.scale)
        if self.rotation.shape != (3, 3) or self.translation.shape != (3,):
            raise ValueError("Sim3 needs a 3x3 rotation and a (3,) translation")
        if not self.scale > 0:
            raise ValueError(f"Sim3 scale must be positive, got {self.scale}")

    @classmethod
    def identity(cls) -> Sim3:
        return cls(rotation=np.eye(3), translation=np.zeros(3), scale=1.0)

    @classmethod
    def from_se3(cls, pose: SE3) -> Sim3:
        return cls(rotation=pose.rotation, translation=pose.translation, scale=1.0)

    def to_matrix(self) -> np.ndarray:
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.scale * self.rotation
        T[:3, 3] = self.translation
        return T

    def inverse(self) -> Sim3:
        R_inv = self.rotation.T
        s_inv = 1.0 / self.scale
        return Sim3(rotation=R_inv, translation=-s_inv * (R_inv @ self.translation), scale=s_inv)

    def compose(self, other: Sim3) -> Sim3:
        """Return self @ other."""
        return Sim3(
            rotation=self.rotation @ other.rotation,
            translation=self.scale * (self.rotation @ other.translation) + self.translation,
            scale=self.scale * other.scale,
        )

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return self.scale * (points @ self.rotation.T) + self.translation

    def transform_point(self, point: np.ndarray) -> np.ndarray:
        return self.transform_points(point)[0]

    def power(self, weight: float) -> Sim3:
        """Return a fraction of this transformation, from identity (0) to self (1).

        Rotation is scaled along its axis-angle, translation linearly and
        scale geometrically. Used to blend a loop correction along the
        spanning tree.
        """
        weight = float(np.clip(weight, 0.0, 1.0))
        rvec, _ = cv2.Rodrigues(self.rotation)
        R, _ = cv2.Rodrigues(rvec * weight)
        return Sim3(
            rotation=R,
            translation=self.translation * weight,
            scale=self.scale**weight,
        )

    def correct_pose(self, pose: SE3) -> SE3:
        """Apply this world-frame correction to a camera pose T_world_camera.

        The camera centre is mapped through the similarity and the
        orientation is rotated; scale is absorbed by the new centre.
        """
        return SE3(
            rotation=self.rotation @ pose.rotation,
            translation=self.transform_point(pose.translation),
        )

    def __matmul__(self, other: Sim3) -> Sim3:
        return self.compose(other)


def rotation_to_quaternion(R: np.ndarray) -> np.ndarray:
    """Convert a rotation matrix to a unit quaternion (qx, qy, qz, qw)."""
    R = np.asarray(R, dtype=np.float64)
    trace = np.trace(R)
    if trace > 0:
        s = 0.5 / np.sqrt(trace + 1.0)
        qw = 0.25 / s
        qx = (R[2, 1] - R[1, 2]) * s
        qy = (R[0, 2] - R[2, 0]) * s
        qz = (R[1, 0] - R[0, 1]) * s
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        qw = (R[2, 1] - R[1, 2]) / s
        qx = 0.25 * s
        qy = (R[0, 1] + R[1, 0]) / s
        qz = (R[0, 2] + R[2, 0]) / s
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        qw = (R[0, 2] - R[2, 0]) / s
        qx = (R[0, 1] + R[1, 0]) / s
        qy = 0.25 * s
        qz = (R[1, 2] + R[2, 1]) / s
    else:
        s = 2.0 * np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        qw = (R[1, 0] - R[0, 1]) / s
        qx = (R[0, 2] + R[2, 0]) / s
        qy = (R[1, 2] + R[2, 1]) / s
        qz = 0.25 * s
    q = np.array([qx, qy, qz, qw], dtype=np.float64)
    return q / np.linalg.norm(q)


def rodrigues_batch(rvecs: np.ndarray) -> np.ndarray:
    """Convert an Nx3 array of axis-angle vectors to Nx3x3 rotation matrices.

    Vectorized equivalent of cv2.Rodrigues for the optimizers' inner loop.
    """
    rvecs = np.asarray(rvecs, dtype=np.float64).reshape(-1, 3)
    theta = np.linalg.norm(rvecs, axis=1)
    small = theta < 1e-12
    safe_theta = np.where(small, 1.0, theta)
    k = rvecs / safe_theta[:, None]
    K = np.zeros((len(rvecs), 3, 3), dtype=np.float64)
    K[:, 0, 1] = -k[:, 2]
    K[:, 0, 2] = k[:, 1]
    K[:, 1, 0] = k[:, 2]
    K[:, 1, 2] = -k[:, 0]
    K[:, 2, 0] = -k[:, 1]
    K[:, 2, 1] = k[:, 0]
    sin_t = np.where(small, 0.0, np.sin(theta))[:, None, None]
    cos_t = np.where(small, 1.0, np.cos(theta))[:, None, None]
    eye = np.broadcast_to(np.eye(3), K.shape)
    return eye + sin_t * K + (1.0 - cos_t) * (K @ K)
