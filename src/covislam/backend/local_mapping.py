"""Local mapping: keyframe insertion, point management and local bundle adjustment.

The Local Mapper consumes keyframe requests from the Tracker in arrival
order. For each keyframe it:

1. Inserts the keyframe and its provisional points, updates covisibility
   and attaches it to the spanning tree below its reference keyframe
2. Culls recently created points that are rarely matched
3. Triangulates new points with covisible neighbours
4. Fuses duplicate points with the neighbourhood
5. Runs a local bundle adjustment over the keyframe's covisibility
   neighbourhood, holding the keyframes that only observe the local points
   fixed; a new keyframe arriving aborts it early
6. Culls redundant keyframes of the neighbourhood
7. Hands the keyframe to the Loop Closer
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from ..config import SLAMConfig
from ..frontend.camera import PinholeCamera, triangulate_points
from ..frontend.matcher import CHI2_MONO, CHI2_STEREO, FeatureMatcher
from ..loop_closure.place_recognition import KeyFrameDatabase
from ..loop_closure.vocabulary import VisualVocabulary
from ..map import Map
from .messages import KeyFrameRequest
from .optimizer import BAResult, ScipyBundleAdjustment, problem_from_map
from .worker import BackgroundWorker

if TYPE_CHECKING:
    from ..loop_closure.loop_closing import LoopCloser

logger = logging.getLogger(__name__)


@dataclass
class LocalMappingResult:
    """Summary of one local mapping cycle."""

    keyframe_id: int
    inserted: bool = False
    culled_points: int = 0
    created_points: int = 0
    fused_points: int = 0
    ba_result: BAResult | None = None
    culled_keyframes: int = 0
    message: str = ""


class LocalMapper(BackgroundWorker):
    """Background worker owning all map growth after bootstrap."""

    def __init__(
        self,
        config: SLAMConfig,
        camera: PinholeCamera,
        map_: Map,
        vocabulary: VisualVocabulary,
        database: KeyFrameDatabase,
        matcher: FeatureMatcher,
        loop_closer: LoopCloser | None = None,
    ) -> None:
        """Initialize the local mapper.

        Args:
            config: Session configuration
            camera: Camera model
            map_: Shared map
            vocabulary: Read-only visual vocabulary for keyframe BoW vectors
            database: Place-recognition index; keyframes are added on
                insertion and removed when culled
            matcher: Feature matcher
            loop_closer: Receiver of processed keyframes
        """
        super().__init__("LocalMapper")
        self._config = config
        self._mapping = config.local_mapping
        self._camera = camera
        self._map = map_
        self._vocabulary = vocabulary
        self._database = database
        self._matcher = matcher
        self._loop_closer = loop_closer
        self._monocular = config.is_monocular
        self._depth_threshold = config.depth_threshold

        self._optimizer = ScipyBundleAdjustment(
            camera.K, bf=camera.bf, max_iterations=self._mapping.local_ba_iterations
        )
        self._abort_ba = threading.Event()
        self._accepts_keyframes = threading.Event()
        self._accepts_keyframes.set()
        self._recent_points: list[int] = []
        self.last_result: LocalMappingResult | None = None

    def set_loop_closer(self, loop_closer: LoopCloser) -> None:
        self._loop_closer = loop_closer

    # Tracker-facing interface

    def insert_keyframe(self, request: KeyFrameRequest) -> None:
        """Queue a keyframe (never blocks) and interrupt a running local BA."""
        self.submit(request)
        self._abort_ba.set()

    @property
    def accepts_keyframes(self) -> bool:
        """Return True while the mapper is idle between keyframes."""
        return self._accepts_keyframes.is_set() and not self.has_pending()

    def interrupt_optimization(self) -> None:
        self._abort_ba.set()

    @property
    def recent_points(self) -> list[int]:
        return list(self._recent_points)

    def _interrupt(self) -> None:
        self._abort_ba.set()

    def _on_reset(self) -> None:
        self._recent_points.clear()
        self._abort_ba.clear()
        self._accepts_keyframes.set()
        self.last_result = None
        logger.info("Local mapper reset")

    # Cycle

    def _process(self, request: KeyFrameRequest) -> None:
        self._accepts_keyframes.clear()
        try:
            self.last_result = self.process_request(request)
        finally:
            self._accepts_keyframes.set()

    def process_request(self, request: KeyFrameRequest) -> LocalMappingResult:
        """Run every local mapping step for one keyframe request."""
        result = LocalMappingResult(keyframe_id=request.keyframe_id)
        if request.epoch != self._map.epoch:
            result.message = "stale request from before a reset"
            logger.debug("Dropping keyframe %d: %s", request.keyframe_id, result.message)
            return result

        self._abort_ba.clear()
        self._insert(request)
        result.inserted = True
        kf_id = request.keyframe_id

        result.culled_points = self._cull_recent_points(kf_id)
        result.created_points = self._create_new_points(kf_id)

        if not self.has_pending():
            result.fused_points = self._fuse_neighbours(kf_id)

        if not self.has_pending() and not self.stop_requested:
            if self._map.num_keyframes > 2:
                result.ba_result = self._local_bundle_adjustment(kf_id)
            result.culled_keyframes = self._cull_keyframes(kf_id)

        logger.debug(
            "Keyframe %d mapped: -%d +%d points, %d fused, %d keyframes culled",
            kf_id,
            result.culled_points,
            result.created_points,
            result.fused_points,
            result.culled_keyframes,
        )
        if self._loop_closer is not None and self._map.has_keyframe(kf_id):
            self._loop_closer.insert_keyframe(kf_id)
        return result

    # 1. Insertion

    def _insert(self, request: KeyFrameRequest) -> None:
        keyframe = request.keyframe
        bow = self._vocabulary.describe(keyframe.descriptors)

        with self._map.transaction():
            if not request.registered:
                parent_id = self._map.resolve_keyframe(request.parent_id)
                if parent_id is None:
                    parent_id = self._map.resolve_keyframe(self._map.reference_keyframe_id)
                self._map.add_keyframe(keyframe, parent_id)
                for slot, position in request.new_points:
                    if keyframe.map_points[slot] >= 0:
                        continue
                    mp_id = self._map.create_map_point(position, keyframe.id, {keyframe.id: slot})
                    self._recent_points.append(mp_id)
            else:
                self._recent_points.extend(
                    mp_id
                    for mp_id in sorted(keyframe.observed_point_ids())
                    if self._map.map_point(mp_id).first_keyframe_id == keyframe.id
                )

            self._map.apply_point_statistics(request.visible, request.found)
            for mp_id in sorted(keyframe.observed_point_ids()):
                self._map.update_point_geometry(mp_id)
            self._map.update_connections(keyframe.id)
            self._map.set_keyframe_bow(keyframe.id, bow)

        self._database.add(keyframe.id, bow)

    # 2. Recent point culling

    def _cull_recent_points(self, kf_id: int) -> int:
        """Erase young points with a poor found/visible ratio or too few observers."""
        min_observers = (
            self._mapping.recent_point_min_observers_mono
            if self._monocular
            else self._mapping.recent_point_min_observers_stereo
        )
        kept: list[int] = []
        culled = 0
        with self._map.transaction():
            for mp_id in self._recent_points:
                mp = self._map.get_map_point(mp_id)
                if mp is None:
                    continue
                age = kf_id - mp.first_keyframe_id
                if mp.found_ratio < self._mapping.recent_point_min_found_ratio:
                    self._map.erase_map_point(mp_id)
                    culled += 1
                elif age >= self._mapping.recent_point_grace_keyframes and mp.n_obs <= min_observers:
                    self._map.erase_map_point(mp_id)
                    culled += 1
                elif age < self._mapping.recent_point_trusted_keyframes:
                    kept.append(mp_id)
        self._recent_points = kept
        return culled

    # 3. Triangulation

    def _create_new_points(self, kf_id: int) -> int:
        n_neighbours = (
            self._mapping.triangulation_neighbors_mono
            if self._monocular
            else self._mapping.triangulation_neighbors_stereo
        )
        neighbours = self._map.covisible_keyframes(kf_id, n_neighbours)
        created = 0
        for i, other_id in enumerate(neighbours):
            if i > 0 and self.has_pending():
                break
            with self._map.transaction():
                if not (self._map.has_keyframe(kf_id) and self._map.has_keyframe(other_id)):
                    continue
                created += self._triangulate_pair(kf_id, other_id)
        return created

    def _triangulate_pair(self, kf1_id: int, kf2_id: int) -> int:
        """Triangulate free slots matched between two keyframes (map lock held)."""
        kf1 = self._map.keyframe(kf1_id)
        kf2 = self._map.keyframe(kf2_id)
        camera = self._camera
        pyramid = self._map.pyramid

        baseline = float(np.linalg.norm(kf2.camera_center - kf1.camera_center))
        if self._monocular:
            positions = self._map.point_positions(sorted(kf2.observed_point_ids()))
            median_depth = kf2.median_scene_depth(positions)
            if median_depth <= 0 or baseline / median_depth < self._mapping.min_baseline_depth_ratio:
                return 0
        elif baseline < camera.baseline:
            return 0

        pairs = self._matcher.search_for_triangulation(
            kf1, kf2, camera, check_epipole=self._monocular
        )
        if not pairs:
            return 0
        s1 = np.array([p[0] for p in pairs], dtype=np.int64)
        s2 = np.array([p[1] for p in pairs], dtype=np.int64)

        # Viewing rays in the world frame
        rays1 = camera.bearing(kf1.keypoints[s1]) @ kf1.pose.rotation.T
        rays2 = camera.bearing(kf2.keypoints[s2]) @ kf2.pose.rotation.T
        cos_rays = np.einsum("ij,ij->i", rays1, rays2) / (
            np.linalg.norm(rays1, axis=1) * np.linalg.norm(rays2, axis=1)
        )

        stereo1 = kf1.depth[s1] > 0
        stereo2 = kf2.depth[s2] > 0
        with np.errstate(invalid="ignore", divide="ignore"):
            cos_stereo1 = np.where(
                stereo1, np.cos(2 * np.arctan2(camera.baseline / 2, kf1.depth[s1])), 2.0
            )
            cos_stereo2 = np.where(
                stereo2, np.cos(2 * np.arctan2(camera.baseline / 2, kf2.depth[s2])), 2.0
            )
        cos_stereo = np.minimum(cos_stereo1, cos_stereo2)

        linear = triangulate_points(camera.K, kf1.pose, kf2.pose, kf1.keypoints[s1], kf2.keypoints[s2])
        use_linear = (
            (cos_rays < cos_stereo)
            & (cos_rays > 0)
            & ((stereo1 | stereo2) | (cos_rays < self._mapping.max_parallax_cos))
        )

        positions = np.full((len(pairs), 3), np.nan)
        positions[use_linear] = linear[use_linear]
        from_1 = ~use_linear & stereo1 & (cos_stereo1 < cos_stereo2)
        from_2 = ~use_linear & ~from_1 & stereo2
        if from_1.any():
            positions[from_1] = kf1.pose.transform_points(
                camera.unproject(kf1.keypoints[s1[from_1]], kf1.depth[s1[from_1]])
            )
        if from_2.any():
            positions[from_2] = kf2.pose.transform_points(
                camera.unproject(kf2.keypoints[s2[from_2]], kf2.depth[s2[from_2]])
            )

        valid = np.isfinite(positions).all(axis=1)
        valid &= self._reprojection_ok(kf1, s1, positions, valid)
        valid &= self._reprojection_ok(kf2, s2, positions, valid)

        # Scale consistency between the two observations
        with np.errstate(invalid="ignore", divide="ignore"):
            dist1 = np.linalg.norm(positions - kf1.camera_center, axis=1)
            dist2 = np.linalg.norm(positions - kf2.camera_center, axis=1)
            ratio_dist = dist2 / dist1
            ratio_octave = pyramid.scale_factors[kf1.octaves[s1]] / pyramid.scale_factors[kf2.octaves[s2]]
            factor = self._mapping.scale_consistency_factor * pyramid.scale_factor
            valid &= (dist1 > 0) & (dist2 > 0)
            valid &= (ratio_dist * factor >= ratio_octave) & (ratio_dist <= ratio_octave * factor)

        created = 0
        for i in np.flatnonzero(valid):
            if kf1.map_points[s1[i]] >= 0 or kf2.map_points[s2[i]] >= 0:
                continue
            mp_id = self._map.create_map_point(
                positions[i], kf1_id, {kf1_id: int(s1[i]), kf2_id: int(s2[i])}
            )
            self._recent_points.append(mp_id)
            created += 1
        return created

    def _reprojection_ok(
        self, kf, slots: np.ndarray, positions: np.ndarray, valid: np.ndarray
    ) -> np.ndarray:
        """Positive depth and chi-square reprojection test of points in ``kf``."""
        ok = np.zeros(len(slots), dtype=bool)
        idx = np.flatnonzero(valid)
        if len(idx) == 0:
            return ok
        uv, z = self._camera.project_world(positions[idx], kf.pose)
        pyramid = self._map.pyramid
        sigma2 = pyramid.sigma2(kf.octaves[slots[idx]])
        with np.errstate(invalid="ignore"):
            err2 = np.sum((uv - kf.keypoints[slots[idx]]) ** 2, axis=1)
            stereo = kf.right_u[slots[idx]] >= 0
            u_r = uv[:, 0] - self._camera.bf / z
            err2_stereo = err2 + (u_r - kf.right_u[slots[idx]]) ** 2
            passed = np.where(
                stereo, err2_stereo <= CHI2_STEREO * sigma2, err2 <= CHI2_MONO * sigma2
            )
            ok[idx] = (z > 0) & passed
        return ok

    # 4. Fusion

    def _fuse_neighbours(self, kf_id: int) -> int:
        """Fuse duplicates between the keyframe and its first and second neighbours."""
        n_neighbours = (
            self._mapping.fuse_neighbors_mono
            if self._monocular
            else self._mapping.fuse_neighbors_stereo
        )
        radius = self._mapping.fuse_search_radius
        fused = 0
        with self._map.transaction():
            if not self._map.has_keyframe(kf_id):
                return 0
            targets: list[int] = []
            for other in self._map.covisible_keyframes(kf_id, n_neighbours):
                if other not in targets:
                    targets.append(other)
                for second in self._map.covisible_keyframes(other, 5):
                    if second != kf_id and second not in targets:
                        targets.append(second)

            own_points = sorted(self._map.keyframe(kf_id).observed_point_ids())
            for target in targets:
                if self._map.has_keyframe(target):
                    fused += self._matcher.fuse(self._map, target, own_points, self._camera, radius)

            candidates: set[int] = set()
            for target in targets:
                kf = self._map.get_keyframe(target)
                if kf is not None:
                    candidates |= kf.observed_point_ids()
            fused += self._matcher.fuse(self._map, kf_id, sorted(candidates), self._camera, radius)

            for mp_id in sorted(self._map.keyframe(kf_id).observed_point_ids()):
                self._map.update_point_geometry(mp_id)
            self._map.update_connections(kf_id)
            for target in targets:
                if self._map.has_keyframe(target):
                    self._map.update_connections(target)
        return fused

    # 5. Local bundle adjustment

    def _local_bundle_adjustment(self, kf_id: int) -> BAResult | None:
        """Optimize the covisibility neighbourhood of ``kf_id``; abortable."""
        with self._map.lock:
            if not self._map.has_keyframe(kf_id):
                return None
            local = [kf_id] + self._map.covisible_keyframes(kf_id)
            point_ids: set[int] = set()
            for local_id in local:
                point_ids |= self._map.keyframe(local_id).observed_point_ids()
            local_set = set(local)
            fixed: list[int] = []
            for mp_id in sorted(point_ids):
                for observer in self._map.map_point(mp_id).observers:
                    if observer not in local_set and observer not in fixed:
                        fixed.append(observer)
            fixed = fixed[: self._mapping.max_fixed_keyframes]
            root = self._map.root_id
            if root in local_set:
                local.remove(root)
                fixed.insert(0, root)
            if not local:
                return None
            problem = problem_from_map(self._map, local, fixed, sorted(point_ids))
            epoch = self._map.epoch
            big_change = self._map.big_change_index

        result = self._optimizer.optimize(problem, abort=self._abort_ba)
        if not result.success:
            logger.debug("Local BA for keyframe %d skipped: %s", kf_id, result.message)
            return result

        with self._map.transaction():
            if self._map.epoch != epoch or self._map.big_change_index != big_change:
                logger.debug("Local BA result for keyframe %d discarded: map changed", kf_id)
                return result
            for obs_kf, mp_id in result.outliers:
                if self._map.has_keyframe(obs_kf) and self._map.has_map_point(mp_id):
                    self._map.erase_observation(mp_id, obs_kf)
            for opt_kf, pose in result.optimized_poses.items():
                if self._map.has_keyframe(opt_kf):
                    self._map.set_keyframe_pose(opt_kf, pose)
            for mp_id, position in result.optimized_points.items():
                if self._map.has_map_point(mp_id):
                    self._map.set_point_position(mp_id, position)
                    self._map.update_point_geometry(mp_id)
        if result.aborted:
            logger.debug("Local BA for keyframe %d interrupted by a new keyframe", kf_id)
        return result

    # 6. Keyframe culling

    def _cull_keyframes(self, kf_id: int) -> int:
        """Erase neighbours whose close points are mostly seen by 3+ other keyframes at finer scale."""
        culled = 0
        threshold_obs = self._mapping.redundant_min_observers
        with self._map.transaction():
            if not self._map.has_keyframe(kf_id):
                return 0
            for other_id in self._map.covisible_keyframes(kf_id):
                kf = self._map.get_keyframe(other_id)
                if kf is None or other_id == self._map.root_id:
                    continue
                n_points = 0
                n_redundant = 0
                for slot in np.flatnonzero(kf.map_points >= 0):
                    if not self._monocular and not (0 < kf.depth[slot] <= self._depth_threshold):
                        continue
                    n_points += 1
                    mp = self._map.map_point(int(kf.map_points[slot]))
                    if mp.num_observers <= threshold_obs:
                        continue
                    level = int(kf.octaves[slot])
                    n_obs = 0
                    for observer, observer_slot in mp.observers.items():
                        if observer == other_id:
                            continue
                        observer_level = int(self._map.keyframe(observer).octaves[observer_slot])
                        if observer_level <= level + 1:
                            n_obs += 1
                            if n_obs >= threshold_obs:
                                break
                    if n_obs >= threshold_obs:
                        n_redundant += 1

                if n_points > 0 and n_redundant > self._mapping.redundant_observation_ratio * n_points:
                    if self._map.erase_keyframe(other_id):
                        self._database.erase(other_id)
                        culled += 1
                        logger.debug("Culled redundant keyframe %d", other_id)
        return culled
