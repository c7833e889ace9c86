"""Descriptor matching: brute force, guided by projection, epipolar, fusion."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from ..map import KeyFrame, Map
from .camera import PinholeCamera
from .feature_detector import ScalePyramid, hamming_matrix
from .frame import Frame

# Chi-square 95% thresholds for 2 and 3 degrees of freedom
CHI2_MONO = 5.991
CHI2_STEREO = 7.815


@dataclass
class Matches:
    """Index pairs between two descriptor sets.

    Attributes:
        query_indices: Indices into the first (query) set
        train_indices: Indices into the second (train) set
        distances: Hamming distances between matched descriptors
    """

    query_indices: np.ndarray  # (N,) int
    train_indices: np.ndarray  # (N,) int
    distances: np.ndarray  # (N,) float32

    @classmethod
    def empty(cls) -> Matches:
        return cls(
            query_indices=np.empty(0, dtype=np.int64),
            train_indices=np.empty(0, dtype=np.int64),
            distances=np.empty(0, dtype=np.float32),
        )

    def __len__(self) -> int:
        """Return number of matches."""
        return len(self.query_indices)


@dataclass
class PointCandidates:
    """Map points considered for projection search, copied out of the map."""

    ids: np.ndarray  # (M,)
    positions: np.ndarray  # (M, 3)
    descriptors: np.ndarray  # (M, 32)
    normals: np.ndarray  # (M, 3)
    min_distances: np.ndarray  # (M,)
    max_distances: np.ndarray  # (M,)

    @classmethod
    def from_map(cls, map_: Map, point_ids: list[int] | np.ndarray) -> PointCandidates:
        with map_.lock:
            points = [map_.get_map_point(int(i)) for i in point_ids]
            points = [p for p in points if p is not None]
            if not points:
                return cls.empty()
            return cls(
                ids=np.array([p.id for p in points], dtype=np.int64),
                positions=np.array([p.position for p in points]),
                descriptors=np.array([p.descriptor for p in points]),
                normals=np.array([p.normal for p in points]),
                min_distances=np.array([p.min_distance for p in points]),
                max_distances=np.array([p.max_distance for p in points]),
            )

    @classmethod
    def empty(cls) -> PointCandidates:
        return cls(
            ids=np.empty(0, dtype=np.int64),
            positions=np.empty((0, 3)),
            descriptors=np.empty((0, 32), dtype=np.uint8),
            normals=np.empty((0, 3)),
            min_distances=np.empty(0),
            max_distances=np.empty(0),
        )

    def __len__(self) -> int:
        return len(self.ids)


class FeatureMatcher:
    """ORB descriptor matcher used by tracking, mapping and loop closing.

    Brute-force matching uses Lowe's ratio test: a match is accepted only if
    the best distance is clearly below the second best. Guided searches
    restrict candidates to a window around the predicted projection and to
    pyramid levels consistent with the predicted scale.
    """

    def __init__(
        self,
        pyramid: ScalePyramid,
        threshold_low: int = 50,
        threshold_high: int = 100,
        ratio: float = 0.75,
    ) -> None:
        """Initialize matcher.

        Args:
            pyramid: Scale pyramid of the feature extractor
            threshold_low: Strict Hamming threshold (bag-of-words style matching)
            threshold_high: Loose Hamming threshold (guided projection search)
            ratio: Lowe's ratio test threshold
        """
        self._bf_matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
        self._pyramid = pyramid
        self.threshold_low = threshold_low
        self.threshold_high = threshold_high
        self.ratio = ratio

    @property
    def pyramid(self) -> ScalePyramid:
        return self._pyramid

    def match_descriptors(
        self,
        query: np.ndarray,
        train: np.ndarray,
        max_distance: int | None = None,
        ratio: float | None = None,
    ) -> Matches:
        """Brute-force match with ratio test; each train index used at most once."""
        max_distance = self.threshold_low if max_distance is None else max_distance
        ratio = self.ratio if ratio is None else ratio
        if len(query) == 0 or len(train) == 0:
            return Matches.empty()

        knn_matches = self._bf_matcher.knnMatch(
            np.ascontiguousarray(query, dtype=np.uint8),
            np.ascontiguousarray(train, dtype=np.uint8),
            k=2,
        )

        best_for_train: dict[int, tuple[int, float]] = {}
        for match_pair in knn_matches:
            if not match_pair:
                continue
            best = match_pair[0]
            if best.distance > max_distance:
                continue
            if len(match_pair) > 1 and best.distance > ratio * match_pair[1].distance:
                continue
            previous = best_for_train.get(best.trainIdx)
            if previous is None or best.distance < previous[1]:
                best_for_train[best.trainIdx] = (best.queryIdx, best.distance)

        if not best_for_train:
            return Matches.empty()
        train_idx = np.array(sorted(best_for_train), dtype=np.int64)
        return Matches(
            query_indices=np.array([best_for_train[t][0] for t in train_idx], dtype=np.int64),
            train_indices=train_idx,
            distances=np.array([best_for_train[t][1] for t in train_idx], dtype=np.float32),
        )

    def match_keyframe_to_frame(self, keyframe: KeyFrame, frame: Frame) -> list[tuple[int, int]]:
        """Match the map-point-bearing slots of a keyframe against a frame.

        Returns:
            List of (frame slot, map point id)
        """
        kf_slots = np.flatnonzero(keyframe.map_points >= 0)
        if len(kf_slots) == 0 or len(frame) == 0:
            return []
        matches = self.match_descriptors(keyframe.descriptors[kf_slots], frame.descriptors)
        return [
            (int(f), int(keyframe.map_points[kf_slots[q]]))
            for q, f in zip(matches.query_indices, matches.train_indices)
        ]

    def search_by_projection(
        self,
        frame: Frame,
        camera: PinholeCamera,
        candidates: PointCandidates,
        radius: float,
        predicted_levels: np.ndarray | None = None,
        level_tolerance: int = 1,
        check_viewing_angle: bool = True,
        ratio: float | None = None,
        max_distance: int | None = None,
    ) -> int:
        """Match map points into free slots of a posed frame by projection.

        Args:
            frame: Frame with a pose estimate; matches are written to
                ``frame.map_points``
            camera: Camera model
            candidates: Map points to project
            radius: Search radius at octave 0, scaled by the predicted level
            predicted_levels: Expected octave per candidate; predicted from
                distance when None
            level_tolerance: Accepted octave deviation from the prediction
            check_viewing_angle: Reject points viewed more than 60 degrees
                away from their mean viewing direction
            ratio: Ratio between best and second best distance (different
                octaves only); None disables the test
            max_distance: Hamming threshold (default: high threshold)

        Returns:
            Number of new matches
        """
        if frame.pose is None or len(candidates) == 0 or len(frame) == 0:
            return 0
        max_distance = self.threshold_high if max_distance is None else max_distance

        already = set(int(i) for i in frame.map_points if i >= 0)
        uv, z = camera.project_world(candidates.positions, frame.pose)
        valid = camera.is_in_image(uv) & (z > 0)

        rays = candidates.positions - frame.pose.translation
        distances = np.linalg.norm(rays, axis=1)
        if predicted_levels is None:
            with np.errstate(invalid="ignore", divide="ignore"):
                in_range = (distances >= 0.8 * candidates.min_distances) & (
                    distances <= 1.2 * candidates.max_distances
                )
            valid &= in_range
            predicted_levels = self._pyramid.predict_level(distances, candidates.max_distances)
        if check_viewing_angle:
            with np.errstate(invalid="ignore", divide="ignore"):
                cos_view = np.einsum("ij,ij->i", rays, candidates.normals) / np.maximum(distances, 1e-12)
            valid &= cos_view >= 0.5

        n_matches = 0
        for i in np.flatnonzero(valid):
            mp_id = int(candidates.ids[i])
            if mp_id in already:
                continue
            level = int(predicted_levels[i])
            r = radius * self._pyramid.scale_factors[min(max(level, 0), self._pyramid.n_levels - 1)]
            slots = frame.features_in_area(
                uv[i, 0],
                uv[i, 1],
                r,
                level - level_tolerance,
                level + level_tolerance,
            )
            slots = slots[frame.map_points[slots] < 0]
            if len(slots) == 0:
                continue

            # Stereo slots must agree on the right-image coordinate too
            if np.any(frame.right_u[slots] >= 0):
                u_r = uv[i, 0] - camera.bf / z[i]
                bad = (frame.right_u[slots] >= 0) & (np.abs(frame.right_u[slots] - u_r) > r)
                slots = slots[~bad]
                if len(slots) == 0:
                    continue

            dist = hamming_matrix(candidates.descriptors[i], frame.descriptors[slots])[0]
            order = np.argsort(dist, kind="stable")
            best = order[0]
            if dist[best] > max_distance:
                continue
            if ratio is not None and len(order) > 1:
                second = order[1]
                if (
                    frame.octaves[slots[best]] == frame.octaves[slots[second]]
                    and dist[best] > ratio * dist[second]
                ):
                    continue
            frame.map_points[slots[best]] = mp_id
            frame.outliers[slots[best]] = False
            already.add(mp_id)
            n_matches += 1
        return n_matches

    def search_for_triangulation(
        self,
        kf1: KeyFrame,
        kf2: KeyFrame,
        camera: PinholeCamera,
        check_epipole: bool,
    ) -> list[tuple[int, int]]:
        """Match free slots of two keyframes subject to the epipolar constraint.

        Returns:
            List of (slot in kf1, slot in kf2)
        """
        free1 = np.flatnonzero(kf1.map_points < 0)
        free2 = np.flatnonzero(kf2.map_points < 0)
        if len(free1) == 0 or len(free2) == 0:
            return []

        F12 = fundamental_from_poses(kf1.pose, kf2.pose, camera.K)
        dist = hamming_matrix(kf1.descriptors[free1], kf2.descriptors[free2])

        # Epipolar line of each kf1 point in kf2: l2 = x1^T F12
        x1 = np.column_stack([kf1.keypoints[free1], np.ones(len(free1))])
        x2 = np.column_stack([kf2.keypoints[free2], np.ones(len(free2))])
        lines = x1 @ F12  # (n1, 3)
        num = np.abs(lines @ x2.T)
        den = np.maximum(lines[:, 0] ** 2 + lines[:, 1] ** 2, 1e-12)[:, None]
        epipolar_sq = num**2 / den
        sigma2 = self._pyramid.sigma2(kf2.octaves[free2])[None, :]
        feasible = (epipolar_sq < 3.84 * sigma2) & (dist <= self.threshold_low)

        if check_epipole:
            # Points too close to the epipole have unreliable depth
            center1_in_2 = kf2.pose.inverse_transform_points(kf1.pose.translation)[0]
            if center1_in_2[2] > 1e-9:
                ex = camera.fx * center1_in_2[0] / center1_in_2[2] + camera.cx
                ey = camera.fy * center1_in_2[1] / center1_in_2[2] + camera.cy
                d_epi = (kf2.keypoints[free2, 0] - ex) ** 2 + (kf2.keypoints[free2, 1] - ey) ** 2
                near = d_epi < 100 * self._pyramid.scale_factors[kf2.octaves[free2]]
                feasible &= ~near[None, :]

        masked = np.where(feasible, dist, np.iinfo(np.int32).max)
        pairs = []
        used2 = set()
        best2 = masked.argmin(axis=1)
        for row in np.argsort(masked[np.arange(len(free1)), best2], kind="stable"):
            col = int(best2[row])
            if masked[row, col] == np.iinfo(np.int32).max or col in used2:
                continue
            # Mutual best only
            if int(masked[:, col].argmin()) != row:
                continue
            used2.add(col)
            pairs.append((int(free1[row]), int(free2[col])))
        return pairs

    def fuse(
        self,
        map_: Map,
        kf_id: int,
        candidate_ids: list[int] | np.ndarray,
        camera: PinholeCamera,
        radius: float = 3.0,
    ) -> int:
        """Project map points into a keyframe and merge duplicates.

        A candidate landing on a free slot becomes a new observation; one
        landing on a slot with a different map point is merged with it, the
        point with more observations surviving. Must be called inside a map
        transaction.

        Returns:
            Number of fused or added observations
        """
        kf = map_.keyframe(kf_id)
        candidates = PointCandidates.from_map(map_, candidate_ids)
        if len(candidates) == 0:
            return 0

        uv, z = camera.project_world(candidates.positions, kf.pose)
        rays = candidates.positions - kf.pose.translation
        distances = np.linalg.norm(rays, axis=1)
        with np.errstate(invalid="ignore", divide="ignore"):
            cos_view = np.einsum("ij,ij->i", rays, candidates.normals) / np.maximum(distances, 1e-12)
            valid = (
                camera.is_in_image(uv)
                & (z > 0)
                & (distances >= 0.8 * candidates.min_distances)
                & (distances <= 1.2 * candidates.max_distances)
                & (cos_view >= 0.5)
            )
        levels = self._pyramid.predict_level(distances, candidates.max_distances)

        n_fused = 0
        for i in np.flatnonzero(valid):
            mp_id = map_.resolve_point(int(candidates.ids[i]))
            if mp_id is None or kf_id in map_.map_point(mp_id).observers:
                continue
            level = int(levels[i])
            r = radius * self._pyramid.scale_factors[level]
            slots = kf.slots_in_area(uv[i, 0], uv[i, 1], r)
            if len(slots) == 0:
                continue

            err = np.sum((kf.keypoints[slots] - uv[i]) ** 2, axis=1)
            stereo = kf.right_u[slots] >= 0
            u_r = uv[i, 0] - camera.bf / z[i]
            err = err + np.where(stereo, (kf.right_u[slots] - u_r) ** 2, 0.0)
            inv_sigma2 = self._pyramid.inv_level_sigma2[kf.octaves[slots]]
            gate = np.where(stereo, CHI2_STEREO, CHI2_MONO)
            octave_ok = (kf.octaves[slots] >= level - 1) & (kf.octaves[slots] <= level)
            ok = (err * inv_sigma2 <= gate) & octave_ok
            slots = slots[ok]
            if len(slots) == 0:
                continue

            dist = hamming_matrix(candidates.descriptors[i], kf.descriptors[slots])[0]
            best = int(np.argmin(dist))
            if dist[best] > self.threshold_low:
                continue
            slot = int(slots[best])

            existing = int(kf.map_points[slot])
            if existing >= 0:
                if existing == mp_id:
                    continue
                if map_.map_point(existing).n_obs > map_.map_point(mp_id).n_obs:
                    map_.replace_map_point(mp_id, existing)
                else:
                    map_.replace_map_point(existing, mp_id)
            else:
                map_.add_observation(mp_id, kf_id, slot)
            n_fused += 1
        return n_fused


def skew(v: np.ndarray) -> np.ndarray:
    """Return the cross-product matrix of a 3-vector."""
    return np.array([[0.0, -v[2], v[1]], [v[2], 0.0, -v[0]], [-v[1], v[0], 0.0]])


def fundamental_from_poses(pose1, pose2, K: np.ndarray) -> np.ndarray:
    """Fundamental matrix F12 with x1^T F12 x2 = 0 for two camera poses T_world_camera."""
    # Relative transform taking camera-2 points into camera 1
    T12 = pose1.inverse() @ pose2
    R12, t12 = T12.rotation, T12.translation
    K_inv = np.linalg.inv(K)
    return K_inv.T @ skew(t12) @ R12 @ K_inv
