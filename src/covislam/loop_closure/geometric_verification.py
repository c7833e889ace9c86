"""Geometric verification of loop candidates.

After place recognition finds visually similar keyframes, the match is
confirmed by estimating the transform between the two cameras from map
point correspondences:

- monocular maps drift in scale, so a similarity transform Sim(3) is
  estimated; stereo and RGB-D use the same solver with the scale fixed to 1
- RANSAC over minimal sets of three 3D-3D correspondences (closed-form
  Umeyama alignment), scored by reprojection in both images
- guided matching with the hypothesis recovers correspondences the
  descriptor-only matching missed, then a nonlinear refinement with robust
  loss rejects the remaining outliers

This eliminates false positives from perceptual aliasing (different places
that look similar).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np
from scipy.optimize import least_squares

from ..frontend.camera import PinholeCamera
from ..frontend.feature_detector import ScalePyramid, hamming_matrix
from ..frontend.matcher import FeatureMatcher
from ..frontend.pose import SE3, Sim3
from ..map import KeyFrame, Map

logger = logging.getLogger(__name__)

# Chi-square 99% threshold for 2 degrees of freedom
CHI2_SIM3 = 9.210


@dataclass
class Correspondences:
    """3D-3D correspondences between a query keyframe (1) and a candidate (2).

    Attributes:
        slots1: Slots of the query keyframe
        slots2: Slots of the candidate keyframe
        point_ids2: Candidate-side map point ids
        points1: (N, 3) query-side map points in the query camera frame
        points2: (N, 3) candidate-side map points in the candidate camera frame
        pixels1: (N, 2) query keypoints
        pixels2: (N, 2) candidate keypoints
        sigma2_1: (N,) query keypoint variances
        sigma2_2: (N,) candidate keypoint variances
    """

    slots1: np.ndarray
    slots2: np.ndarray
    point_ids2: np.ndarray
    points1: np.ndarray
    points2: np.ndarray
    pixels1: np.ndarray
    pixels2: np.ndarray
    sigma2_1: np.ndarray
    sigma2_2: np.ndarray

    def __len__(self) -> int:
        return len(self.slots1)

    @classmethod
    def from_matches(cls, map_: Map, kf1: KeyFrame, kf2: KeyFrame, matched: dict[int, int]) -> Correspondences:
        """Build correspondences from ``{query slot: candidate map point id}``.

        Pairs whose query slot has no map point, or whose candidate point is
        no longer observed by ``kf2``, are dropped. Call with the map lock held.
        """
        pyramid = map_.pyramid
        rows = []
        for slot1, mp2_id in sorted(matched.items()):
            mp1_id = int(kf1.map_points[slot1])
            mp1 = map_.get_map_point(mp1_id) if mp1_id >= 0 else None
            mp2 = map_.get_map_point(mp2_id)
            if mp1 is None or mp2 is None or kf2.id not in mp2.observers:
                continue
            rows.append((slot1, mp2.observers[kf2.id], mp2_id, mp1.position, mp2.position))
        if not rows:
            return cls.empty()
        slots1 = np.array([r[0] for r in rows], dtype=np.int64)
        slots2 = np.array([r[1] for r in rows], dtype=np.int64)
        return cls(
            slots1=slots1,
            slots2=slots2,
            point_ids2=np.array([r[2] for r in rows], dtype=np.int64),
            points1=kf1.pose.inverse_transform_points(np.array([r[3] for r in rows])),
            points2=kf2.pose.inverse_transform_points(np.array([r[4] for r in rows])),
            pixels1=kf1.keypoints[slots1],
            pixels2=kf2.keypoints[slots2],
            sigma2_1=pyramid.sigma2(kf1.octaves[slots1]),
            sigma2_2=pyramid.sigma2(kf2.octaves[slots2]),
        )

    @classmethod
    def empty(cls) -> Correspondences:
        return cls(
            slots1=np.empty(0, dtype=np.int64),
            slots2=np.empty(0, dtype=np.int64),
            point_ids2=np.empty(0, dtype=np.int64),
            points1=np.empty((0, 3)),
            points2=np.empty((0, 3)),
            pixels1=np.empty((0, 2)),
            pixels2=np.empty((0, 2)),
            sigma2_1=np.empty(0),
            sigma2_2=np.empty(0),
        )

    def subset(self, keep: np.ndarray) -> Correspondences:
        return Correspondences(
            slots1=self.slots1[keep],
            slots2=self.slots2[keep],
            point_ids2=self.point_ids2[keep],
            points1=self.points1[keep],
            points2=self.points2[keep],
            pixels1=self.pixels1[keep],
            pixels2=self.pixels2[keep],
            sigma2_1=self.sigma2_1[keep],
            sigma2_2=self.sigma2_2[keep],
        )


@dataclass
class VerificationResult:
    """Result of geometric verification.

    Attributes:
        is_valid: Whether verification succeeded
        S12: Transform taking candidate-camera points into the query camera
        matched: Query slot -> candidate map point id, inliers only
        num_inliers: Number of inlier correspondences
        num_matches: Correspondences considered
        message: Reason for rejection
    """

    is_valid: bool
    S12: Sim3 | None = None
    matched: dict[int, int] | None = None
    num_inliers: int = 0
    num_matches: int = 0
    message: str = ""


def umeyama_alignment(src: np.ndarray, dst: np.ndarray, fix_scale: bool = False) -> Sim3 | None:
    """Closed-form similarity with dst ~ s * R @ src + t (Umeyama, 1991).

    Returns:
        The transform, or None for degenerate configurations
    """
    src = np.asarray(src, dtype=np.float64).reshape(-1, 3)
    dst = np.asarray(dst, dtype=np.float64).reshape(-1, 3)
    mu_src = src.mean(axis=0)
    mu_dst = dst.mean(axis=0)
    src_c = src - mu_src
    dst_c = dst - mu_dst
    var_src = float(np.sum(src_c**2)) / len(src)
    if var_src < 1e-12:
        return None

    cov = dst_c.T @ src_c / len(src)
    U, D, Vt = np.linalg.svd(cov)
    S = np.eye(3)
    if np.linalg.det(U) * np.linalg.det(Vt) < 0:
        S[2, 2] = -1.0
    R = U @ S @ Vt
    scale = 1.0 if fix_scale else float(np.trace(np.diag(D) @ S)) / var_src
    if not scale > 1e-9:
        return None
    t = mu_dst - scale * (R @ mu_src)
    return Sim3(rotation=R, translation=t, scale=scale)


def _reprojection_errors(
    camera: PinholeCamera, S12: Sim3, corr: Correspondences
) -> tuple[np.ndarray, np.ndarray]:
    """Squared reprojection errors normalised by level variance, in both images."""
    uv1, z1 = camera.project(S12.transform_points(corr.points2))
    uv2, z2 = camera.project(S12.inverse().transform_points(corr.points1))
    with np.errstate(invalid="ignore"):
        e1 = np.sum((uv1 - corr.pixels1) ** 2, axis=1) / corr.sigma2_1
        e2 = np.sum((uv2 - corr.pixels2) ** 2, axis=1) / corr.sigma2_2
    e1 = np.where((z1 > 0) & np.isfinite(e1), e1, np.inf)
    e2 = np.where((z2 > 0) & np.isfinite(e2), e2, np.inf)
    return e1, e2


class Sim3Solver:
    """RANSAC estimation of the transform between two keyframes."""

    def __init__(
        self,
        camera: PinholeCamera,
        fix_scale: bool,
        iterations: int = 300,
        min_set: int = 3,
        min_inliers: int = 20,
        seed: int | None = 0,
    ) -> None:
        """Initialize solver.

        Args:
            camera: Camera model shared by both keyframes
            fix_scale: Estimate a rigid transform (stereo / RGB-D)
            iterations: RANSAC hypotheses
            min_set: Correspondences per hypothesis
            min_inliers: Inliers needed to accept a hypothesis
            seed: Random seed for reproducible sampling
        """
        self._camera = camera
        self.fix_scale = fix_scale
        self._iterations = iterations
        self._min_set = max(3, min_set)
        self._min_inliers = min_inliers
        self._rng = np.random.default_rng(seed)

    def solve(self, corr: Correspondences) -> tuple[Sim3 | None, np.ndarray]:
        """Estimate S12 from correspondences.

        Returns:
            Tuple of (best transform or None, inlier mask)
        """
        n = len(corr)
        best_mask = np.zeros(n, dtype=bool)
        if n < max(self._min_set, self._min_inliers):
            return None, best_mask

        best: Sim3 | None = None
        for _ in range(self._iterations):
            sample = self._rng.choice(n, size=self._min_set, replace=False)
            S12 = umeyama_alignment(corr.points2[sample], corr.points1[sample], self.fix_scale)
            if S12 is None:
                continue
            e1, e2 = _reprojection_errors(self._camera, S12, corr)
            mask = (e1 < CHI2_SIM3) & (e2 < CHI2_SIM3)
            if mask.sum() > best_mask.sum():
                best, best_mask = S12, mask
                if best_mask.sum() == n:
                    break

        if best is None or best_mask.sum() < self._min_inliers:
            return None, best_mask
        return best, best_mask


def match_keyframes(matcher: FeatureMatcher, kf1: KeyFrame, kf2: KeyFrame) -> dict[int, int]:
    """Match map-point-bearing slots of two keyframes by descriptor.

    Returns:
        Query slot -> candidate map point id
    """
    slots1 = np.flatnonzero(kf1.map_points >= 0)
    slots2 = np.flatnonzero(kf2.map_points >= 0)
    if len(slots1) == 0 or len(slots2) == 0:
        return {}
    matches = matcher.match_descriptors(kf1.descriptors[slots1], kf2.descriptors[slots2])
    return {
        int(slots1[q]): int(kf2.map_points[slots2[t]])
        for q, t in zip(matches.query_indices, matches.train_indices)
    }


def search_by_sim3(
    map_: Map,
    matcher: FeatureMatcher,
    camera: PinholeCamera,
    kf1: KeyFrame,
    kf2: KeyFrame,
    S12: Sim3,
    matched: dict[int, int],
    radius: float = 7.5,
) -> dict[int, int]:
    """Find extra correspondences by projecting each keyframe's points into the other.

    Only pairs found in both directions are added. Call with the map lock held.

    Returns:
        ``matched`` extended with the new pairs
    """
    pyramid = map_.pyramid
    S21 = S12.inverse()
    result = dict(matched)
    already2 = set(matched.values())
    already1 = {int(kf1.map_points[s]) for s in matched if kf1.map_points[s] >= 0}

    def project_into(
        kf_from: KeyFrame, kf_to: KeyFrame, S_to_from: Sim3, skip: set[int]
    ) -> dict[int, int]:
        """Return {slot in kf_from: slot in kf_to} for the projected points."""
        found: dict[int, int] = {}
        for slot_from in np.flatnonzero(kf_from.map_points >= 0):
            mp = map_.get_map_point(int(kf_from.map_points[slot_from]))
            if mp is None or mp.id in skip:
                continue
            p_to = S_to_from.transform_point(kf_from.pose.inverse_transform_points(mp.position)[0])
            if p_to[2] <= 0:
                continue
            uv, _ = camera.project(p_to)
            if not camera.is_in_image(uv)[0]:
                continue
            distance = float(np.linalg.norm(p_to))
            if not mp.is_in_distance_range(distance):
                continue
            level = mp.predict_scale(distance, pyramid)
            slots = kf_to.slots_in_area(
                uv[0, 0], uv[0, 1], radius * pyramid.scale_factors[level], level - 1, level + 1
            )
            if len(slots) == 0:
                continue
            dist = hamming_matrix(mp.descriptor, kf_to.descriptors[slots])[0]
            best = int(np.argmin(dist))
            if dist[best] <= matcher.threshold_high:
                found[int(slot_from)] = int(slots[best])
        return found

    # Candidate points into the query keyframe and vice versa
    from2 = project_into(kf2, kf1, S12, already2)
    from1 = project_into(kf1, kf2, S21, already1)
    for slot2, slot1 in from2.items():
        if from1.get(slot1) != slot2 or slot1 in result:
            continue
        if kf1.map_points[slot1] < 0:
            continue
        result[slot1] = int(kf2.map_points[slot2])
    return result


def optimize_sim3(
    camera: PinholeCamera,
    corr: Correspondences,
    S12: Sim3,
    fix_scale: bool,
    chi2_threshold: float = 10.0,
    max_iterations: int = 10,
) -> tuple[Sim3, np.ndarray]:
    """Refine S12 by minimising reprojection error in both images.

    Runs a robust (Huber) pass, drops correspondences above
    ``chi2_threshold`` and refines again on the inliers.

    Returns:
        Tuple of (refined transform, inlier mask)
    """
    inliers = np.ones(len(corr), dtype=bool)
    current = S12
    for _ in range(2):
        if inliers.sum() < 3:
            break
        current = _refine(camera, corr.subset(inliers), current, fix_scale, chi2_threshold, max_iterations)
        e1, e2 = _reprojection_errors(camera, current, corr)
        inliers = (e1 < chi2_threshold) & (e2 < chi2_threshold)
    return current, inliers


def _refine(
    camera: PinholeCamera,
    corr: Correspondences,
    S12: Sim3,
    fix_scale: bool,
    chi2_threshold: float,
    max_iterations: int,
) -> Sim3:
    rvec0, _ = cv2.Rodrigues(S12.rotation)
    x0 = np.concatenate([rvec0.ravel(), S12.translation, [np.log(S12.scale)]])
    if fix_scale:
        x0 = x0[:6]
    w1 = 1.0 / np.sqrt(corr.sigma2_1)
    w2 = 1.0 / np.sqrt(corr.sigma2_2)

    def unpack(x: np.ndarray) -> Sim3:
        R, _ = cv2.Rodrigues(x[:3])
        scale = 1.0 if fix_scale else float(np.exp(x[6]))
        return Sim3(rotation=R, translation=x[3:6], scale=scale)

    def residuals(x: np.ndarray) -> np.ndarray:
        S = unpack(x)
        uv1, _ = camera.project(S.transform_points(corr.points2))
        uv2, _ = camera.project(S.inverse().transform_points(corr.points1))
        r1 = (uv1 - corr.pixels1) * w1[:, None]
        r2 = (uv2 - corr.pixels2) * w2[:, None]
        r = np.concatenate([r1.ravel(), r2.ravel()])
        # Points behind a camera get a large constant residual
        return np.nan_to_num(r, nan=1e3)

    result = least_squares(
        residuals,
        x0,
        method="trf",
        loss="huber",
        f_scale=float(np.sqrt(chi2_threshold)),
        max_nfev=max_iterations * len(x0),
    )
    return unpack(result.x)


def search_by_projection_sim3(
    map_: Map,
    matcher: FeatureMatcher,
    camera: PinholeCamera,
    kf: KeyFrame,
    Scw: Sim3,
    point_ids: list[int],
    matched: dict[int, int],
    radius: float = 10.0,
) -> dict[int, int]:
    """Project map points with a corrected world-to-camera Sim3 into ``kf``.

    Call with the map lock held.

    Returns:
        ``matched`` extended with ``{slot: map point id}`` for the new matches
    """
    pyramid = map_.pyramid
    result = dict(matched)
    already = set(matched.values())
    Swc = Scw.inverse()
    center = Swc.translation
    for mp_id in point_ids:
        if mp_id in already:
            continue
        mp = map_.get_map_point(mp_id)
        if mp is None:
            continue
        p_c = Scw.transform_point(mp.position)
        if p_c[2] <= 0:
            continue
        uv, _ = camera.project(p_c)
        if not camera.is_in_image(uv)[0]:
            continue
        ray = mp.position - center
        distance = float(np.linalg.norm(ray))
        if not mp.is_in_distance_range(distance):
            continue
        if np.dot(ray, mp.normal) < 0.5 * distance:
            continue
        level = mp.predict_scale(distance, pyramid)
        slots = kf.slots_in_area(
            uv[0, 0], uv[0, 1], radius * pyramid.scale_factors[level], level - 1, level + 1
        )
        slots = np.array([s for s in slots if int(s) not in result], dtype=np.int64)
        if len(slots) == 0:
            continue
        dist = hamming_matrix(mp.descriptor, kf.descriptors[slots])[0]
        best = int(np.argmin(dist))
        if dist[best] <= matcher.threshold_low:
            result[int(slots[best])] = mp_id
            already.add(mp_id)
    return result


def world_correction(Scw: Sim3, pose: SE3) -> Sim3:
    """World-frame similarity moving a keyframe at ``pose`` to the corrected ``Scw``.

    For every point X expressed in the keyframe's old frame, the correction
    maps ``pose(X)`` to ``Scw^-1(X)``.
    """
    return Scw.inverse() @ Sim3.from_se3(pose.inverse())


class GeometricVerifier:
    """Verifies a loop candidate against the query keyframe.

    Combines descriptor matching, Sim3 RANSAC, guided matching and robust
    refinement. Every step only reads the map.
    """

    def __init__(
        self,
        camera: PinholeCamera,
        matcher: FeatureMatcher,
        fix_scale: bool,
        min_descriptor_matches: int = 20,
        min_inliers: int = 20,
        ransac_iterations: int = 300,
        ransac_min_set: int = 3,
    ) -> None:
        self._camera = camera
        self._matcher = matcher
        self._fix_scale = fix_scale
        self._min_descriptor_matches = min_descriptor_matches
        self._min_inliers = min_inliers
        self._solver = Sim3Solver(
            camera,
            fix_scale=fix_scale,
            iterations=ransac_iterations,
            min_set=ransac_min_set,
            min_inliers=min_inliers,
        )

    @property
    def pyramid(self) -> ScalePyramid:
        return self._matcher.pyramid

    def verify(self, map_: Map, query_id: int, candidate_id: int) -> VerificationResult:
        """Verify one candidate; call with the map lock held."""
        kf1 = map_.get_keyframe(query_id)
        kf2 = map_.get_keyframe(candidate_id)
        if kf1 is None or kf2 is None:
            return VerificationResult(is_valid=False, message="keyframe missing")

        matched = match_keyframes(self._matcher, kf1, kf2)
        if len(matched) < self._min_descriptor_matches:
            return VerificationResult(
                is_valid=False, num_matches=len(matched), message="too few descriptor matches"
            )
        return self.verify_matches(map_, kf1, kf2, matched)

    def verify_matches(
        self, map_: Map, kf1: KeyFrame, kf2: KeyFrame, matched: dict[int, int]
    ) -> VerificationResult:
        """Verify a given correspondence set ``{query slot: candidate map point id}``."""
        corr = Correspondences.from_matches(map_, kf1, kf2, matched)
        S12, mask = self._solver.solve(corr)
        if S12 is None:
            return VerificationResult(
                is_valid=False,
                num_matches=len(corr),
                num_inliers=int(mask.sum()),
                message="no consistent transform",
            )

        inlier_matches = {
            int(s1): int(mp2) for s1, mp2 in zip(corr.slots1[mask], corr.point_ids2[mask])
        }
        extended = search_by_sim3(map_, self._matcher, self._camera, kf1, kf2, S12, inlier_matches)
        corr = Correspondences.from_matches(map_, kf1, kf2, extended)
        S12, mask = optimize_sim3(self._camera, corr, S12, self._fix_scale)
        num_inliers = int(mask.sum())
        if num_inliers < self._min_inliers:
            return VerificationResult(
                is_valid=False,
                num_matches=len(corr),
                num_inliers=num_inliers,
                message="too few inliers after refinement",
            )

        logger.debug(
            "Keyframe %d verified against %d: %d/%d inliers, scale %.3f",
            kf1.id,
            kf2.id,
            num_inliers,
            len(corr),
            S12.scale,
        )
        return VerificationResult(
            is_valid=True,
            S12=S12,
            matched={int(s1): int(mp2) for s1, mp2 in zip(corr.slots1[mask], corr.point_ids2[mask])},
            num_inliers=num_inliers,
            num_matches=len(corr),
        )
