"""Two-view map bootstrap for monocular sessions.

A monocular camera cannot measure depth from a single frame, so the first
map is built from two views. Both a homography (planar or low-parallax
scenes) and an essential matrix (general scenes) are estimated with RANSAC
and scored by their symmetric transfer error; the better model is
decomposed into candidate motions, and the motion that triangulates the
most points in front of both cameras with enough parallax wins.

The reconstruction has an arbitrary scale; the Tracker normalizes it so
that the median scene depth of the first keyframe is 1.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from ..config import TrackingConfig
from ..errors import InitializationFailed
from .camera import PinholeCamera, triangulate_points
from .feature_detector import ScalePyramid, hamming_matrix
from .frame import Frame
from .pose import SE3

logger = logging.getLogger(__name__)

# Chi-square 95% thresholds for 1 and 2 degrees of freedom
CHI2_1DOF = 3.841
CHI2_2DOF = 5.991


@dataclass
class InitializationResult:
    """Relative motion and structure recovered from two views.

    Attributes:
        rotation: Rotation taking reference-camera points to the current camera
        translation: Translation of the same transform (arbitrary scale)
        pairs: (M, 2) matched slots (reference slot, current slot)
        points: (M, 3) triangulated points in the reference camera frame
        triangulated: (M,) pairs with a valid, well-conditioned point
        parallax_deg: Representative parallax of the triangulated points
        model: "homography" or "essential"
    """

    rotation: np.ndarray
    translation: np.ndarray
    pairs: np.ndarray
    points: np.ndarray
    triangulated: np.ndarray
    parallax_deg: float
    model: str

    @property
    def num_triangulated(self) -> int:
        return int(self.triangulated.sum())

    @property
    def current_pose(self) -> SE3:
        """Return T_world_camera of the current frame, world = reference camera."""
        return SE3(rotation=self.rotation, translation=self.translation).inverse()


class MonocularInitializer:
    """Bootstraps a monocular map from a reference frame and a later frame."""

    def __init__(
        self,
        camera: PinholeCamera,
        pyramid: ScalePyramid,
        config: TrackingConfig | None = None,
        search_window: float = 100.0,
        ratio: float = 0.9,
        homography_ratio: float = 0.40,
    ) -> None:
        """Initialize the two-view bootstrap.

        Args:
            camera: Camera model
            pyramid: Scale pyramid of the bootstrap extractor
            config: Tracking thresholds (matches, triangulated points, parallax)
            search_window: Maximum keypoint displacement between the two views
            ratio: Best/second-best ratio for the initial matching
            homography_ratio: Select the homography when its share of the
                combined model score exceeds this value
        """
        self._camera = camera
        self._pyramid = pyramid
        self._config = config or TrackingConfig()
        self._search_window = search_window
        self._ratio = ratio
        self._homography_ratio = homography_ratio
        self.reference: Frame | None = None

    def set_reference(self, frame: Frame) -> None:
        self.reference = frame

    def clear(self) -> None:
        self.reference = None

    def match(self, frame: Frame) -> np.ndarray:
        """Match reference keypoints into ``frame`` within the search window.

        Only level-0 reference keypoints are used, as the two views are
        expected to be close in scale.

        Returns:
            (M, 2) array of (reference slot, current slot)
        """
        if self.reference is None or len(frame) == 0 or len(self.reference) == 0:
            return np.empty((0, 2), dtype=np.int64)
        ref = self.reference
        ref_slots = np.flatnonzero(ref.octaves == 0)
        if len(ref_slots) == 0:
            return np.empty((0, 2), dtype=np.int64)

        dist = hamming_matrix(ref.descriptors[ref_slots], frame.descriptors)
        dx = np.abs(ref.keypoints[ref_slots, 0][:, None] - frame.keypoints[None, :, 0])
        dy = np.abs(ref.keypoints[ref_slots, 1][:, None] - frame.keypoints[None, :, 1])
        window = (dx < self._search_window) & (dy < self._search_window)
        big = np.iinfo(np.int32).max
        dist = np.where(window, dist, big)

        best_for_cur: dict[int, tuple[int, int]] = {}
        for row in range(len(ref_slots)):
            order = np.argsort(dist[row], kind="stable")[:2]
            best = int(order[0])
            if dist[row, best] > self._config.descriptor_threshold_low:
                continue
            if len(order) > 1 and dist[row, best] >= self._ratio * dist[row, order[1]]:
                continue
            previous = best_for_cur.get(best)
            if previous is None or dist[row, best] < previous[1]:
                best_for_cur[best] = (int(ref_slots[row]), int(dist[row, best]))

        pairs = [(ref_slot, cur) for cur, (ref_slot, _) in best_for_cur.items()]
        pairs.sort()
        return np.array(pairs, dtype=np.int64).reshape(-1, 2)

    def initialize(self, frame: Frame, pairs: np.ndarray) -> InitializationResult:
        """Recover relative motion and structure between the reference and ``frame``.

        Args:
            frame: Current frame
            pairs: (M, 2) matches from :meth:`match`

        Returns:
            InitializationResult for the winning motion hypothesis

        Raises:
            InitializationFailed: If there are too few matches, no model can
                be estimated, or the winning hypothesis is ambiguous, has too
                little parallax or too few triangulated points
        """
        if self.reference is None:
            raise InitializationFailed("No reference frame")
        if len(pairs) < self._config.mono_init_min_matches:
            raise InitializationFailed(f"Too few matches: {len(pairs)}")

        ref = self.reference
        pts1 = ref.keypoints[pairs[:, 0]]
        pts2 = frame.keypoints[pairs[:, 1]]
        inv_sigma2 = self._pyramid.inv_level_sigma2[
            np.clip(frame.octaves[pairs[:, 1]], 0, self._pyramid.n_levels - 1)
        ]
        K = self._camera.K
        threshold = self._config.mono_init_ransac_threshold

        H, _ = cv2.findHomography(pts1, pts2, cv2.RANSAC, 2.0 * threshold)
        E, _ = cv2.findEssentialMat(
            pts1, pts2, K, method=cv2.RANSAC, prob=0.999, threshold=threshold
        )
        if E is not None and E.shape[0] > 3:
            E = E[:3]

        score_h, inliers_h = (0.0, np.zeros(len(pairs), dtype=bool))
        score_f, inliers_f = (0.0, np.zeros(len(pairs), dtype=bool))
        if H is not None:
            score_h, inliers_h = _score_homography(H, pts1, pts2, inv_sigma2)
        if E is not None:
            K_inv = np.linalg.inv(K)
            F = K_inv.T @ E @ K_inv
            score_f, inliers_f = _score_fundamental(F, pts1, pts2, inv_sigma2)
        if score_h + score_f <= 0:
            raise InitializationFailed("Neither homography nor essential matrix found")

        ratio_h = score_h / (score_h + score_f)
        if ratio_h > self._homography_ratio:
            model = "homography"
            inliers = inliers_h
            _, rotations, translations, _ = cv2.decomposeHomographyMat(H, K)
            hypotheses = [(R, t.reshape(3)) for R, t in zip(rotations, translations)]
        else:
            model = "essential"
            inliers = inliers_f
            R1, R2, t = cv2.decomposeEssentialMat(E)
            t = t.reshape(3)
            hypotheses = [(R1, t), (R1, -t), (R2, t), (R2, -t)]
        logger.debug(
            "Bootstrap: score H=%.1f F=%.1f (R_H=%.2f), using %s", score_h, score_f, ratio_h, model
        )

        evaluated = [
            self._check_motion(R, t, pts1, pts2, inliers, inv_sigma2) for R, t in hypotheses
        ]
        order = sorted(range(len(evaluated)), key=lambda i: -evaluated[i][0])
        best = order[0]
        n_good, points, good, parallax = evaluated[best]

        min_triangulated = self._config.mono_init_min_triangulated
        if n_good < min_triangulated:
            raise InitializationFailed(f"Too few triangulated points: {n_good}")
        if len(order) > 1 and evaluated[order[1]][0] > 0.75 * n_good:
            raise InitializationFailed("Ambiguous motion hypotheses")
        if parallax < self._config.mono_init_min_parallax_deg:
            raise InitializationFailed(f"Not enough parallax: {parallax:.2f} deg")

        R, t = hypotheses[best]
        return InitializationResult(
            rotation=np.asarray(R, dtype=np.float64),
            translation=np.asarray(t, dtype=np.float64),
            pairs=pairs,
            points=points,
            triangulated=good,
            parallax_deg=parallax,
            model=model,
        )

    def _check_motion(
        self,
        R: np.ndarray,
        t: np.ndarray,
        pts1: np.ndarray,
        pts2: np.ndarray,
        inliers: np.ndarray,
        inv_sigma2: np.ndarray,
    ) -> tuple[int, np.ndarray, np.ndarray, float]:
        """Triangulate the inliers under a motion hypothesis and count good points."""
        pose2 = SE3(rotation=R, translation=t).inverse()
        points = triangulate_points(self._camera.K, SE3.identity(), pose2, pts1, pts2)
        finite = np.isfinite(points).all(axis=1) & inliers

        good = np.zeros(len(points), dtype=bool)
        if not finite.any():
            return 0, points, good, 0.0

        p1 = np.where(finite[:, None], points, 0.0)
        p2 = p1 @ R.T + t
        center2 = pose2.translation
        ray1 = p1
        ray2 = p1 - center2
        with np.errstate(invalid="ignore", divide="ignore"):
            cos_parallax = np.einsum("ij,ij->i", ray1, ray2) / (
                np.linalg.norm(ray1, axis=1) * np.linalg.norm(ray2, axis=1)
            )

        uv1, z1 = self._camera.project(p1)
        uv2, z2 = self._camera.project(p2)
        err1 = np.sum((uv1 - pts1) ** 2, axis=1)
        err2 = np.sum((uv2 - pts2) ** 2, axis=1)
        # 4 px^2 scaled by the keypoint's level variance
        max_err = 4.0 / inv_sigma2
        with np.errstate(invalid="ignore"):
            good = finite & (z1 > 0) & (z2 > 0) & (err1 < max_err) & (err2 < max_err)
            good &= cos_parallax < 0.99998

        n_good = int(good.sum())
        if n_good == 0:
            return 0, points, good, 0.0
        angles = np.sort(np.degrees(np.arccos(np.clip(cos_parallax[good], -1.0, 1.0))))[::-1]
        parallax = float(angles[min(50, len(angles) - 1)])
        return n_good, points, good, parallax


def _score_homography(
    H: np.ndarray, pts1: np.ndarray, pts2: np.ndarray, inv_sigma2: np.ndarray
) -> tuple[float, np.ndarray]:
    """Score a homography by symmetric transfer error (2 DoF per direction)."""
    try:
        H_inv = np.linalg.inv(H)
    except np.linalg.LinAlgError:
        return 0.0, np.zeros(len(pts1), dtype=bool)

    def transfer(M: np.ndarray, pts: np.ndarray) -> np.ndarray:
        h = np.column_stack([pts, np.ones(len(pts))]) @ M.T
        with np.errstate(invalid="ignore", divide="ignore"):
            return h[:, :2] / h[:, 2:3]

    chi2_forward = np.sum((pts2 - transfer(H, pts1)) ** 2, axis=1) * inv_sigma2
    chi2_backward = np.sum((pts1 - transfer(H_inv, pts2)) ** 2, axis=1) * inv_sigma2
    chi2_forward = np.nan_to_num(chi2_forward, nan=np.inf)
    chi2_backward = np.nan_to_num(chi2_backward, nan=np.inf)

    ok_f = chi2_forward < CHI2_2DOF
    ok_b = chi2_backward < CHI2_2DOF
    score = np.sum(np.where(ok_f, CHI2_2DOF - chi2_forward, 0.0)) + np.sum(
        np.where(ok_b, CHI2_2DOF - chi2_backward, 0.0)
    )
    return float(score), ok_f & ok_b


def _score_fundamental(
    F: np.ndarray, pts1: np.ndarray, pts2: np.ndarray, inv_sigma2: np.ndarray
) -> tuple[float, np.ndarray]:
    """Score a fundamental matrix by symmetric point-to-epipolar-line distance."""
    x1 = np.column_stack([pts1, np.ones(len(pts1))])
    x2 = np.column_stack([pts2, np.ones(len(pts2))])

    lines2 = x1 @ F.T  # epipolar lines in image 2
    lines1 = x2 @ F  # epipolar lines in image 1
    num2 = np.sum(lines2 * x2, axis=1)
    num1 = np.sum(lines1 * x1, axis=1)
    with np.errstate(invalid="ignore", divide="ignore"):
        chi2_2 = num2**2 / (lines2[:, 0] ** 2 + lines2[:, 1] ** 2) * inv_sigma2
        chi2_1 = num1**2 / (lines1[:, 0] ** 2 + lines1[:, 1] ** 2) * inv_sigma2
    chi2_1 = np.nan_to_num(chi2_1, nan=np.inf)
    chi2_2 = np.nan_to_num(chi2_2, nan=np.inf)

    # Inliers are gated with 1 DoF but scored on the 2 DoF scale, so the
    # two models are comparable
    ok_1 = chi2_1 < CHI2_1DOF
    ok_2 = chi2_2 < CHI2_1DOF
    score = np.sum(np.where(ok_1, CHI2_2DOF - chi2_1, 0.0)) + np.sum(
        np.where(ok_2, CHI2_2DOF - chi2_2, 0.0)
    )
    return float(score), ok_1 & ok_2
