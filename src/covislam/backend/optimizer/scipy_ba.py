"""Bundle adjustment using scipy.optimize.least_squares.

Bundle adjustment jointly optimizes camera poses and 3D point positions
by minimizing the sum of squared reprojection errors.

The optimization problem:
    minimize sum_i rho(||observed_i - project(pose_j, point_k)||^2 / sigma_i^2)

Where:
- observed_i is a pixel observation (u, v), plus the right-image u
  coordinate for stereo/RGB-D observations
- pose_j is the keyframe pose, parameterized as T_camera_world
- point_k is the 3D position of the map point
- sigma_i^2 is the measurement variance of the keypoint's pyramid level
- rho is the Huber loss

The residual function checks an optional abort flag so that a long run can
be interrupted; the best parameters seen so far are returned.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from ...frontend.pose import SE3, rodrigues_batch

logger = logging.getLogger(__name__)

CHI2_MONO = 5.991
CHI2_STEREO = 7.815


class _Aborted(Exception):
    """Raised inside the residual function when the abort flag is set."""


@dataclass
class BAProblem:
    """Vectorized bundle adjustment problem.

    Attributes:
        keyframe_ids: Keyframe id per pose slot
        poses: T_world_camera per pose slot
        fixed: Pose slots held constant
        point_ids: Map point id per point slot
        positions: (P, 3) initial point positions
        obs_pose: (N,) pose slot per observation
        obs_point: (N,) point slot per observation
        obs_pixels: (N, 2) observed keypoint coordinates
        obs_right_u: (N,) observed right-image u, -1 for monocular
        obs_inv_sigma2: (N,) inverse measurement variance
    """

    keyframe_ids: list[int]
    poses: list[SE3]
    fixed: np.ndarray
    point_ids: list[int]
    positions: np.ndarray
    obs_pose: np.ndarray
    obs_point: np.ndarray
    obs_pixels: np.ndarray
    obs_right_u: np.ndarray
    obs_inv_sigma2: np.ndarray

    @property
    def n_observations(self) -> int:
        return len(self.obs_pose)

    def subset(self, keep: np.ndarray) -> BAProblem:
        """Return the same problem restricted to the observations in ``keep``."""
        return BAProblem(
            keyframe_ids=self.keyframe_ids,
            poses=self.poses,
            fixed=self.fixed,
            point_ids=self.point_ids,
            positions=self.positions,
            obs_pose=self.obs_pose[keep],
            obs_point=self.obs_point[keep],
            obs_pixels=self.obs_pixels[keep],
            obs_right_u=self.obs_right_u[keep],
            obs_inv_sigma2=self.obs_inv_sigma2[keep],
        )


@dataclass
class BAResult:
    """Result of bundle adjustment optimization."""

    success: bool
    # keyframe id -> optimized T_world_camera
    optimized_poses: dict[int, SE3] = field(default_factory=dict)
    # map point id -> position
    optimized_points: dict[int, np.ndarray] = field(default_factory=dict)
    # (keyframe id, map point id) pairs failing the chi-square test
    outliers: list[tuple[int, int]] = field(default_factory=list)
    initial_cost: float = 0.0
    final_cost: float = 0.0
    iterations: int = 0
    aborted: bool = False
    message: str = ""


class ScipyBundleAdjustment:
    """Bundle adjustment with scipy's trust-region reflective solver.

    Uses the sparse Jacobian structure: each observation only depends on the
    six parameters of its (free) pose and the three of its point.
    """

    def __init__(
        self,
        camera_matrix: np.ndarray,
        bf: float = 0.0,
        max_iterations: int = 10,
        loss: str = "huber",
        ftol: float = 1e-6,
        xtol: float = 1e-6,
    ) -> None:
        """Initialize bundle adjustment optimizer.

        Args:
            camera_matrix: 3x3 camera intrinsics matrix
            bf: Stereo baseline times fx, used for right-image residuals
            max_iterations: Function evaluation budget per solve
            loss: Robust loss ("huber", "soft_l1", "cauchy", "linear")
            ftol: Function tolerance for convergence
            xtol: Parameter tolerance for convergence
        """
        self._K = np.asarray(camera_matrix, dtype=np.float64)
        self._bf = bf
        self._max_iterations = max_iterations
        self._loss = loss
        self._ftol = ftol
        self._xtol = xtol

    def optimize(
        self,
        problem: BAProblem,
        abort: threading.Event | None = None,
        rounds: int = 2,
    ) -> BAResult:
        """Run bundle adjustment.

        The first round uses every observation; later rounds drop those
        failing the chi-square test. Outliers of the final estimate are
        reported so the caller can erase the observations.

        Args:
            problem: Problem to solve
            abort: Optional flag; when set the solve stops early and the best
                estimate seen so far is returned
            rounds: Number of solve/reject rounds

        Returns:
            BAResult with optimized poses and points
        """
        if problem.n_observations < 10 or len(problem.point_ids) == 0:
            return BAResult(success=False, message=f"Too few observations: {problem.n_observations}")
        if np.all(problem.fixed):
            return BAResult(success=False, message="All poses fixed")

        free = np.flatnonzero(~problem.fixed)
        x = self._pack(problem, free)
        active = problem
        initial_cost = None
        final_cost = 0.0
        iterations = 0
        aborted = False

        for _ in range(max(1, rounds)):
            x, cost0, cost, nfev, aborted = self._solve(active, free, x, abort)
            initial_cost = cost0 if initial_cost is None else initial_cost
            final_cost = cost
            iterations += nfev
            if aborted:
                break
            inliers = ~self._outlier_mask(problem, free, x)
            if inliers.sum() < 10 or inliers.all():
                break
            active = problem.subset(inliers)

        if not np.isfinite(x).all():
            return BAResult(success=False, message="Non-finite estimate", aborted=aborted)
        if initial_cost is not None and final_cost > 10 * initial_cost:
            return BAResult(
                success=False,
                message="Optimization diverged",
                initial_cost=initial_cost,
                final_cost=final_cost,
                aborted=aborted,
            )

        poses, points = self._unpack(problem, free, x)
        outlier_mask = self._outlier_mask(problem, free, x)
        outliers = [
            (problem.keyframe_ids[problem.obs_pose[i]], problem.point_ids[problem.obs_point[i]])
            for i in np.flatnonzero(outlier_mask)
        ]
        return BAResult(
            success=True,
            optimized_poses=poses,
            optimized_points=points,
            outliers=outliers,
            initial_cost=float(initial_cost or 0.0),
            final_cost=float(final_cost),
            iterations=iterations,
            aborted=aborted,
            message="aborted" if aborted else "ok",
        )

    def _solve(
        self,
        problem: BAProblem,
        free: np.ndarray,
        x0: np.ndarray,
        abort: threading.Event | None,
    ) -> tuple[np.ndarray, float, float, int, bool]:
        fixed_Rt = self._fixed_poses(problem)
        best = {"cost": np.inf, "x": x0.copy()}

        def fun(params: np.ndarray) -> np.ndarray:
            if abort is not None and abort.is_set():
                raise _Aborted()
            r = self._residuals(params, problem, free, fixed_Rt)
            cost = 0.5 * float(np.dot(r, r))
            if cost < best["cost"]:
                best["cost"] = cost
                best["x"] = params.copy()
            return r

        try:
            r0 = fun(x0)
        except _Aborted:
            return x0, np.inf, np.inf, 0, True
        initial_cost = 0.5 * float(np.dot(r0, r0))

        sparsity = self._build_sparsity_matrix(problem, free)
        try:
            result = least_squares(
                fun=fun,
                x0=x0,
                jac_sparsity=sparsity,
                method="trf",  # Trust Region Reflective
                loss=self._loss,
                f_scale=np.sqrt(CHI2_MONO),
                x_scale="jac",
                ftol=self._ftol,
                xtol=self._xtol,
                max_nfev=self._max_iterations,
                verbose=0,
            )
        except _Aborted:
            logger.debug("Bundle adjustment aborted; keeping best estimate")
            return best["x"], initial_cost, best["cost"], 0, True

        return result.x, initial_cost, 0.5 * float(np.dot(result.fun, result.fun)), result.nfev, False

    def _pack(self, problem: BAProblem, free: np.ndarray) -> np.ndarray:
        """Pack free poses (as T_camera_world) and points into a flat vector."""
        params = []
        for idx in free:
            rvec, tvec = problem.poses[idx].inverse().to_rvec_tvec()
            params.append(rvec)
            params.append(tvec)
        params.append(problem.positions.reshape(-1))
        return np.concatenate(params).astype(np.float64)

    def _fixed_poses(self, problem: BAProblem) -> tuple[np.ndarray, np.ndarray]:
        n = len(problem.poses)
        R = np.zeros((n, 3, 3))
        t = np.zeros((n, 3))
        for idx in np.flatnonzero(problem.fixed):
            T_cw = problem.poses[idx].inverse()
            R[idx] = T_cw.rotation
            t[idx] = T_cw.translation
        return R, t

    def _camera_from_params(
        self,
        params: np.ndarray,
        problem: BAProblem,
        free: np.ndarray,
        fixed_Rt: tuple[np.ndarray, np.ndarray],
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        R, t = fixed_Rt[0].copy(), fixed_Rt[1].copy()
        pose_params = params[: 6 * len(free)].reshape(-1, 6)
        if len(free):
            R[free] = rodrigues_batch(pose_params[:, :3])
            t[free] = pose_params[:, 3:]
        points = params[6 * len(free) :].reshape(-1, 3)
        return R, t, points

    def _project(
        self,
        params: np.ndarray,
        problem: BAProblem,
        free: np.ndarray,
        fixed_Rt: tuple[np.ndarray, np.ndarray],
    ) -> tuple[np.ndarray, np.ndarray]:
        R, t, points = self._camera_from_params(params, problem, free, fixed_Rt)
        p_cam = (
            np.einsum("nij,nj->ni", R[problem.obs_pose], points[problem.obs_point])
            + t[problem.obs_pose]
        )
        z = p_cam[:, 2]
        safe_z = np.where(z > 1e-6, z, 1e-6)
        fx, fy, cx, cy = self._K[0, 0], self._K[1, 1], self._K[0, 2], self._K[1, 2]
        u = fx * p_cam[:, 0] / safe_z + cx
        v = fy * p_cam[:, 1] / safe_z + cy
        u_r = u - self._bf / safe_z
        return np.column_stack([u, v, u_r]), z

    def _residuals(
        self,
        params: np.ndarray,
        problem: BAProblem,
        free: np.ndarray,
        fixed_Rt: tuple[np.ndarray, np.ndarray],
    ) -> np.ndarray:
        """Compute whitened residuals, three per observation."""
        projected, z = self._project(params, problem, free, fixed_Rt)
        err = np.zeros((problem.n_observations, 3))
        err[:, :2] = problem.obs_pixels - projected[:, :2]
        stereo = problem.obs_right_u >= 0
        err[stereo, 2] = problem.obs_right_u[stereo] - projected[stereo, 2]
        err *= np.sqrt(problem.obs_inv_sigma2)[:, None]
        # Points behind the camera get a large constant penalty
        err[z <= 1e-6] = 1e3
        return err.reshape(-1)

    def _outlier_mask(self, problem: BAProblem, free: np.ndarray, params: np.ndarray) -> np.ndarray:
        fixed_Rt = self._fixed_poses(problem)
        projected, z = self._project(params, problem, free, fixed_Rt)
        err2 = np.sum((problem.obs_pixels - projected[:, :2]) ** 2, axis=1)
        stereo = problem.obs_right_u >= 0
        err2[stereo] += (problem.obs_right_u[stereo] - projected[stereo, 2]) ** 2
        chi2 = err2 * problem.obs_inv_sigma2
        gate = np.where(stereo, CHI2_STEREO, CHI2_MONO)
        return (chi2 > gate) | (z <= 0)

    def _unpack(
        self, problem: BAProblem, free: np.ndarray, params: np.ndarray
    ) -> tuple[dict[int, SE3], dict[int, np.ndarray]]:
        """Unpack parameter vector to T_world_camera poses and points."""
        poses: dict[int, SE3] = {}
        pose_params = params[: 6 * len(free)].reshape(-1, 6)
        for row, idx in enumerate(free):
            T_cw = SE3.from_rvec_tvec(pose_params[row, :3], pose_params[row, 3:])
            poses[problem.keyframe_ids[idx]] = T_cw.inverse()
        points_flat = params[6 * len(free) :].reshape(-1, 3)
        points = {mp_id: points_flat[i].copy() for i, mp_id in enumerate(problem.point_ids)}
        return poses, points

    def _build_sparsity_matrix(self, problem: BAProblem, free: np.ndarray) -> lil_matrix:
        """Build sparse Jacobian structure for efficient optimization.

        Each observation contributes three residual rows depending on:
        - 6 pose parameters (when its keyframe is free)
        - 3 point parameters
        """
        pose_col = -np.ones(len(problem.poses), dtype=np.int64)
        pose_col[free] = np.arange(len(free)) * 6
        n_params = 6 * len(free) + 3 * len(problem.point_ids)
        n_obs = problem.n_observations

        sparsity = lil_matrix((3 * n_obs, n_params), dtype=int)
        rows = np.arange(n_obs) * 3
        point_cols = 6 * len(free) + problem.obs_point * 3
        for r in range(3):
            for j in range(3):
                sparsity[rows + r, point_cols + j] = 1
        has_pose = pose_col[problem.obs_pose] >= 0
        pose_rows = rows[has_pose]
        pose_cols = pose_col[problem.obs_pose][has_pose]
        for r in range(3):
            for j in range(6):
                sparsity[pose_rows + r, pose_cols + j] = 1
        return sparsity


def problem_from_map(
    map_,
    free_keyframe_ids: list[int],
    fixed_keyframe_ids: list[int],
    point_ids: list[int],
) -> BAProblem:
    """Collect the observations linking the given keyframes and points.

    Must be called with ``map_.lock`` held; the problem holds copies only.
    """
    keyframe_ids = list(free_keyframe_ids) + [k for k in fixed_keyframe_ids if k not in free_keyframe_ids]
    kf_index = {kf_id: i for i, kf_id in enumerate(keyframe_ids)}
    pyramid = map_.pyramid

    obs_pose, obs_point, pixels, right_u, inv_sigma2 = [], [], [], [], []
    kept_points = []
    positions = []
    for mp_id in point_ids:
        mp = map_.get_map_point(mp_id)
        if mp is None:
            continue
        observers = [(k, s) for k, s in mp.observers.items() if k in kf_index]
        if not observers:
            continue
        point_slot = len(kept_points)
        kept_points.append(mp_id)
        positions.append(mp.position.copy())
        for kf_id, slot in observers:
            kf = map_.keyframe(kf_id)
            obs_pose.append(kf_index[kf_id])
            obs_point.append(point_slot)
            pixels.append(kf.keypoints[slot])
            right_u.append(kf.right_u[slot])
            inv_sigma2.append(pyramid.inv_level_sigma2[min(int(kf.octaves[slot]), pyramid.n_levels - 1)])

    fixed = np.zeros(len(keyframe_ids), dtype=bool)
    fixed[len(free_keyframe_ids) :] = True
    return BAProblem(
        keyframe_ids=keyframe_ids,
        poses=[map_.keyframe(k).pose.copy() for k in keyframe_ids],
        fixed=fixed,
        point_ids=kept_points,
        positions=np.array(positions, dtype=np.float64).reshape(-1, 3),
        obs_pose=np.array(obs_pose, dtype=np.int64),
        obs_point=np.array(obs_point, dtype=np.int64),
        obs_pixels=np.array(pixels, dtype=np.float64).reshape(-1, 2),
        obs_right_u=np.array(right_u, dtype=np.float64),
        obs_inv_sigma2=np.array(inv_sigma2, dtype=np.float64),
    )
