"""Camera pose estimation: PnP with RANSAC and robust pose-only refinement."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np
from scipy.optimize import least_squares

from .pose import SE3

CHI2_MONO = 5.991
CHI2_STEREO = 7.815


@dataclass
class PnPResult:
    """Result of PnP pose estimation.

    Attributes:
        success: True if pose estimation succeeded
        pose: Estimated camera pose T_world_camera. None if failed.
        inliers: Boolean mask indicating which correspondences are inliers
        num_inliers: Number of inlier correspondences
        reprojection_error: Mean reprojection error of inliers (pixels)
    """

    success: bool
    pose: SE3 | None
    inliers: np.ndarray  # (N,) bool
    num_inliers: int
    reprojection_error: float

    @classmethod
    def failure(cls, n_points: int, num_inliers: int = 0) -> PnPResult:
        return cls(
            success=False,
            pose=None,
            inliers=np.zeros(n_points, dtype=bool),
            num_inliers=num_inliers,
            reprojection_error=float("inf"),
        )


class MotionEstimator:
    """Estimates camera pose from 3D-2D correspondences using PnP with RANSAC.

    Used when no pose prior is reliable: reference-keyframe tracking and
    relocalization. cv2.solvePnP returns T_camera_world, which is inverted to
    report the camera pose T_world_camera.
    """

    def __init__(
        self,
        reprojection_threshold: float = 2.0,
        ransac_confidence: float = 0.99,
        max_iterations: int = 300,
        min_inliers: int = 10,
    ) -> None:
        """Initialize motion estimator.

        Args:
            reprojection_threshold: RANSAC inlier threshold in pixels
            ransac_confidence: Desired probability of finding a good model
            max_iterations: Maximum RANSAC iterations
            min_inliers: Minimum number of inliers for a valid pose
        """
        self._reprojection_threshold = reprojection_threshold
        self._ransac_confidence = ransac_confidence
        self._max_iterations = max_iterations
        self._min_inliers = min_inliers

    def estimate_pose(
        self,
        points_3d: np.ndarray,
        points_2d: np.ndarray,
        camera_matrix: np.ndarray,
        initial_pose: SE3 | None = None,
    ) -> PnPResult:
        """Estimate camera pose from 3D-2D correspondences.

        Args:
            points_3d: Nx3 array of 3D points in world frame
            points_2d: Nx2 array of corresponding undistorted pixel coordinates
            camera_matrix: 3x3 camera intrinsic matrix K
            initial_pose: Optional T_world_camera used as extrinsic guess

        Returns:
            PnPResult with estimated pose and inlier information
        """
        n_points = len(points_3d)
        if n_points < 4:
            return PnPResult.failure(n_points)

        points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 1, 3)
        points_2d = np.asarray(points_2d, dtype=np.float64).reshape(-1, 1, 2)
        camera_matrix = np.asarray(camera_matrix, dtype=np.float64)

        use_extrinsic_guess = False
        rvec_init = None
        tvec_init = None
        if initial_pose is not None:
            rvec_init, tvec_init = initial_pose.inverse().to_rvec_tvec()
            rvec_init = rvec_init.reshape(3, 1)
            tvec_init = tvec_init.reshape(3, 1)
            use_extrinsic_guess = True

        try:
            success, rvec, tvec, inliers = cv2.solvePnPRansac(
                objectPoints=points_3d,
                imagePoints=points_2d,
                cameraMatrix=camera_matrix,
                distCoeffs=None,
                rvec=rvec_init,
                tvec=tvec_init,
                useExtrinsicGuess=use_extrinsic_guess,
                iterationsCount=self._max_iterations,
                reprojectionError=self._reprojection_threshold,
                confidence=self._ransac_confidence,
                flags=cv2.SOLVEPNP_ITERATIVE,
            )
        except cv2.error:
            return PnPResult.failure(n_points)

        if not success or inliers is None or len(inliers) < self._min_inliers:
            return PnPResult.failure(n_points, 0 if inliers is None else len(inliers))
        if not np.isfinite(rvec).all() or not np.isfinite(tvec).all():
            return PnPResult.failure(n_points)

        inlier_mask = np.zeros(n_points, dtype=bool)
        inlier_mask[inliers.flatten()] = True

        projected, _ = cv2.projectPoints(
            points_3d[inlier_mask], rvec, tvec, camera_matrix, None
        )
        errors = np.linalg.norm(projected.reshape(-1, 2) - points_2d[inlier_mask].reshape(-1, 2), axis=1)

        return PnPResult(
            success=True,
            pose=SE3.from_rvec_tvec(rvec, tvec).inverse(),
            inliers=inlier_mask,
            num_inliers=int(inlier_mask.sum()),
            reprojection_error=float(np.mean(errors)) if len(errors) else 0.0,
        )

    @property
    def min_inliers(self) -> int:
        """Return minimum required inliers."""
        return self._min_inliers


@dataclass
class PoseOptimizationResult:
    """Refined pose and per-correspondence inlier flags."""

    pose: SE3
    inliers: np.ndarray  # (N,) bool
    num_inliers: int


class PoseOptimizer:
    """Pose-only refinement by robust reprojection-error minimization.

    The map points are held fixed. Each round solves with a Huber loss on
    the whitened residuals, then classifies correspondences with a
    chi-square test (2 DoF monocular, 3 DoF stereo); outliers are left out
    of the next round but may be re-admitted if they fit the new estimate.
    """

    def __init__(
        self,
        camera_matrix: np.ndarray,
        bf: float = 0.0,
        rounds: int = 4,
        iterations_per_round: int = 10,
    ) -> None:
        self._K = np.asarray(camera_matrix, dtype=np.float64)
        self._bf = bf
        self._rounds = rounds
        self._iterations = iterations_per_round

    def optimize(
        self,
        pose: SE3,
        points_world: np.ndarray,
        pixels: np.ndarray,
        right_u: np.ndarray,
        inv_sigma2: np.ndarray,
    ) -> PoseOptimizationResult:
        """Refine T_world_camera against fixed world points.

        Args:
            pose: Initial T_world_camera
            points_world: (N, 3) matched map point positions
            pixels: (N, 2) observed undistorted keypoints
            right_u: (N,) observed right-image u, -1 when monocular
            inv_sigma2: (N,) inverse measurement variance per keypoint

        Returns:
            PoseOptimizationResult; with fewer than 3 correspondences the
            input pose is returned with no inliers
        """
        n = len(points_world)
        if n < 3:
            return PoseOptimizationResult(pose=pose.copy(), inliers=np.zeros(n, dtype=bool), num_inliers=0)

        points_world = np.asarray(points_world, dtype=np.float64)
        pixels = np.asarray(pixels, dtype=np.float64)
        right_u = np.asarray(right_u, dtype=np.float64)
        weights = np.sqrt(np.asarray(inv_sigma2, dtype=np.float64))
        stereo = right_u >= 0
        gate = np.where(stereo, CHI2_STEREO, CHI2_MONO)

        rvec, tvec = pose.inverse().to_rvec_tvec()
        x = np.concatenate([rvec, tvec])
        inliers = np.ones(n, dtype=bool)

        for _ in range(self._rounds):
            active = np.flatnonzero(inliers)
            if len(active) < 3:
                break
            result = least_squares(
                self._residuals,
                x,
                args=(points_world[active], pixels[active], right_u[active], weights[active]),
                method="trf",
                loss="huber",
                f_scale=np.sqrt(CHI2_STEREO),
                max_nfev=self._iterations,
            )
            if np.isfinite(result.x).all():
                x = result.x
            chi2 = self._chi2(x, points_world, pixels, right_u, weights)
            inliers = chi2 <= gate

        T_cw = SE3.from_rvec_tvec(x[:3], x[3:])
        return PoseOptimizationResult(
            pose=T_cw.inverse(), inliers=inliers, num_inliers=int(inliers.sum())
        )

    def _project(self, x: np.ndarray, points_world: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        R, _ = cv2.Rodrigues(x[:3])
        p_cam = points_world @ R.T + x[3:]
        z = p_cam[:, 2]
        safe_z = np.where(z > 1e-6, z, 1e-6)
        u = self._K[0, 0] * p_cam[:, 0] / safe_z + self._K[0, 2]
        v = self._K[1, 1] * p_cam[:, 1] / safe_z + self._K[1, 2]
        return np.column_stack([u, v, u - self._bf / safe_z]), z

    def _residuals(
        self,
        x: np.ndarray,
        points_world: np.ndarray,
        pixels: np.ndarray,
        right_u: np.ndarray,
        weights: np.ndarray,
    ) -> np.ndarray:
        projected, z = self._project(x, points_world)
        err = np.zeros((len(points_world), 3))
        err[:, :2] = pixels - projected[:, :2]
        stereo = right_u >= 0
        err[stereo, 2] = right_u[stereo] - projected[stereo, 2]
        err *= weights[:, None]
        err[z <= 1e-6] = 1e3
        return err.reshape(-1)

    def _chi2(
        self,
        x: np.ndarray,
        points_world: np.ndarray,
        pixels: np.ndarray,
        right_u: np.ndarray,
        weights: np.ndarray,
    ) -> np.ndarray:
        r = self._residuals(x, points_world, pixels, right_u, weights).reshape(-1, 3)
        projected, z = self._project(x, points_world)
        chi2 = np.sum(r**2, axis=1)
        chi2[z <= 0] = np.inf
        return chi2
