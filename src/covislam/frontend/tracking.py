"""Tracker: per-frame pose estimation against the shared map.

The Tracker runs on the caller's thread. It is a state machine over
NOT_INITIALIZED, OK and LOST:

1. NOT_INITIALIZED: bootstrap the map (stereo/RGB-D from one frame,
   monocular from two views). This is the only time the Tracker writes map
   structure, inside a single map transaction.
2. OK: predict the pose with a constant-velocity model (or match the
   reference keyframe), search the local map by projection, refine the pose
   and decide whether to request a keyframe.
3. LOST: relocalize against place-recognition candidates.

After bootstrap the map is only read; new keyframes are handed to the Local
Mapper as fire-and-forget requests.
"""

from __future__ import annotations

import logging
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable

import numpy as np

from ..backend.messages import KeyFrameRequest
from ..backend.optimizer import ScipyBundleAdjustment, problem_from_map
from ..config import SLAMConfig
from ..errors import InitializationFailed, RelocalizationFailed, TrackingLost
from ..loop_closure.place_recognition import KeyFrameDatabase
from ..loop_closure.vocabulary import VisualVocabulary
from ..map import KeyFrame, Map
from .camera import PinholeCamera
from .feature_detector import ScalePyramid, hamming_matrix
from .frame import Frame
from .initializer import InitializationResult, MonocularInitializer
from .keyframe_policy import KeyframePolicy, TrackingQuality
from .matcher import FeatureMatcher, PointCandidates
from .motion_estimator import MotionEstimator, PoseOptimizer
from .pose import SE3

if TYPE_CHECKING:
    from ..backend.local_mapping import LocalMapper

logger = logging.getLogger(__name__)


class TrackingState(Enum):
    """State of the tracking state machine."""

    NO_IMAGES_YET = "NO_IMAGES_YET"
    NOT_INITIALIZED = "NOT_INITIALIZED"
    OK = "OK"
    LOST = "LOST"

    @property
    def effective(self) -> TrackingState:
        """Return the state as seen by the transition rules."""
        if self is TrackingState.NO_IMAGES_YET:
            return TrackingState.NOT_INITIALIZED
        return self


@dataclass
class TrajectoryRecord:
    """Pose of one frame relative to its reference keyframe.

    Exporting through the reference keyframe makes the trajectory follow
    later optimization of the keyframes.
    """

    timestamp: float
    reference_keyframe_id: int
    relative_pose: SE3  # T_reference_camera
    absolute_pose: SE3  # T_world_camera when tracked
    lost: bool


@dataclass
class TrackingTiming:
    """Timing breakdown for a single frame."""

    initial_ms: float = 0.0
    local_map_ms: float = 0.0
    keyframe_ms: float = 0.0
    total_ms: float = 0.0


@dataclass
class _Provisional:
    """Close-depth points of the previous frame that are not in the map."""

    positions: np.ndarray = field(default_factory=lambda: np.empty((0, 3)))
    descriptors: np.ndarray = field(default_factory=lambda: np.empty((0, 32), dtype=np.uint8))
    octaves: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.int32))


class Tracker:
    """Estimates the camera pose of every frame and requests keyframes."""

    def __init__(
        self,
        config: SLAMConfig,
        camera: PinholeCamera,
        map_: Map,
        database: KeyFrameDatabase,
        vocabulary: VisualVocabulary,
        pyramid: ScalePyramid,
        init_pyramid: ScalePyramid | None = None,
        local_mapper: LocalMapper | None = None,
        reset_callback: Callable[[], None] | None = None,
    ) -> None:
        """Initialize the tracker.

        Args:
            config: Session configuration
            camera: Camera model
            map_: Shared map
            database: Place-recognition index used for relocalization
            vocabulary: Read-only visual vocabulary
            pyramid: Scale pyramid of the feature extractor
            init_pyramid: Pyramid of the monocular bootstrap extractor
            local_mapper: Receiver of keyframe requests
            reset_callback: Called to request a session reset when tracking
                is lost right after bootstrap
        """
        self._config = config
        self._tracking = config.tracking
        self._camera = camera
        self._map = map_
        self._database = database
        self._vocabulary = vocabulary
        self._pyramid = pyramid
        self._local_mapper = local_mapper
        self._reset_callback = reset_callback
        self._monocular = config.is_monocular
        self._depth_threshold = config.depth_threshold

        self._matcher = FeatureMatcher(
            pyramid,
            threshold_low=self._tracking.descriptor_threshold_low,
            threshold_high=self._tracking.descriptor_threshold_high,
            ratio=self._tracking.nn_ratio,
        )
        self._motion_estimator = MotionEstimator(min_inliers=10)
        self._pose_optimizer = PoseOptimizer(
            camera.K, bf=camera.bf, rounds=self._tracking.pose_optimization_rounds
        )
        self._policy = KeyframePolicy(config)
        self._initializer = (
            MonocularInitializer(camera, init_pyramid or pyramid, self._tracking)
            if self._monocular
            else None
        )
        self._bootstrap_ba = ScipyBundleAdjustment(camera.K, bf=camera.bf, max_iterations=20)

        self.state = TrackingState.NO_IMAGES_YET
        self.last_processed_state = TrackingState.NO_IMAGES_YET
        self.localization_mode = False
        self.last_timing = TrackingTiming()
        self.trajectory: list[TrajectoryRecord] = []
        self._reset_state()

    def _reset_state(self) -> None:
        self.last_frame: Frame | None = None
        self.current_frame: Frame | None = None
        self.velocity: SE3 | None = None
        self.reference_keyframe: KeyFrame | None = None
        self.last_keyframe: KeyFrame | None = None
        self.local_keyframe_ids: list[int] = []
        self.local_point_ids: list[int] = []
        self.num_inliers = 0
        self._provisional = _Provisional()
        self._visible: dict[int, int] = defaultdict(int)
        self._found: dict[int, int] = defaultdict(int)
        self._policy.reset()
        if self._initializer is not None:
            self._initializer.clear()

    def set_local_mapper(self, local_mapper: LocalMapper) -> None:
        self._local_mapper = local_mapper

    @property
    def matcher(self) -> FeatureMatcher:
        return self._matcher

    @property
    def needs_initialization_features(self) -> bool:
        """Monocular bootstrap extracts more features than regular tracking."""
        return self._monocular and self.state.effective is TrackingState.NOT_INITIALIZED

    def reset(self) -> None:
        """Return to NOT_INITIALIZED and forget every frame-level state."""
        self.state = TrackingState.NOT_INITIALIZED
        self.last_processed_state = TrackingState.NOT_INITIALIZED
        self.trajectory.clear()
        self._reset_state()
        logger.info("Tracker reset")

    def resume_from_map(self) -> None:
        """Start in LOST so the next frame relocalizes against a loaded map."""
        self._reset_state()
        self.state = TrackingState.LOST
        self.last_processed_state = TrackingState.LOST

    # Main entry point

    def track(self, frame: Frame) -> SE3 | None:
        """Estimate the pose of ``frame``.

        Args:
            frame: Frame built from the current capture

        Returns:
            T_world_camera, or None while not initialized or lost
        """
        t_start = time.perf_counter()
        self.current_frame = frame
        self.last_processed_state = self.state.effective
        if self.state is TrackingState.NO_IMAGES_YET:
            self.state = TrackingState.NOT_INITIALIZED
        self.last_timing = TrackingTiming()

        if self.state is TrackingState.NOT_INITIALIZED:
            try:
                self._bootstrap(frame)
            except InitializationFailed as e:
                logger.debug("Bootstrap failed for frame %d: %s", frame.id, e)
                return None
            self.state = TrackingState.OK
            self.last_frame = frame
            self._record(frame, lost=False)
            logger.info("Map bootstrapped at frame %d (%d points)", frame.id, self._map.num_map_points)
            return frame.pose.copy()

        ok = False
        try:
            t0 = time.perf_counter()
            if self.state is TrackingState.OK:
                self._track_initial_pose(frame)
            else:
                self._relocalize(frame)
            self.last_timing.initial_ms = (time.perf_counter() - t0) * 1000

            t0 = time.perf_counter()
            self._track_local_map(frame)
            self.last_timing.local_map_ms = (time.perf_counter() - t0) * 1000
            ok = True
        except (TrackingLost, RelocalizationFailed) as e:
            logger.debug("Frame %d not tracked: %s", frame.id, e)

        if ok:
            self.state = TrackingState.OK
            previous = self.last_frame
            was_tracking = self.last_processed_state is TrackingState.OK
            if was_tracking and previous is not None and previous.pose is not None:
                self.velocity = previous.pose.inverse() @ frame.pose
            else:
                self.velocity = None

            t0 = time.perf_counter()
            if not self.localization_mode:
                self._maybe_insert_keyframe(frame)
            self.last_timing.keyframe_ms = (time.perf_counter() - t0) * 1000

            # Outliers are not carried over to the next frame
            frame.map_points[frame.outliers] = -1
            frame.outliers[:] = False
        else:
            self.state = TrackingState.LOST
            self.velocity = None
            if (
                not self.localization_mode
                and self._map.num_keyframes <= self._tracking.reset_if_lost_within_keyframes
                and self._reset_callback is not None
            ):
                logger.info("Tracking lost right after bootstrap, requesting reset")
                self._reset_callback()

        if frame.reference_keyframe_id is None and self.reference_keyframe is not None:
            frame.reference_keyframe_id = self.reference_keyframe.id
        if ok:
            self.last_frame = frame
        self._record(frame, lost=not ok)
        self.last_timing.total_ms = (time.perf_counter() - t_start) * 1000
        return frame.pose.copy() if ok else None

    def _record(self, frame: Frame, lost: bool) -> None:
        reference = self.reference_keyframe
        if reference is None:
            return
        if lost or frame.pose is None:
            if not self.trajectory:
                return
            previous = self.trajectory[-1]
            self.trajectory.append(
                TrajectoryRecord(
                    timestamp=frame.timestamp,
                    reference_keyframe_id=previous.reference_keyframe_id,
                    relative_pose=previous.relative_pose,
                    absolute_pose=previous.absolute_pose,
                    lost=True,
                )
            )
            return
        with self._map.lock:
            reference_pose = reference.pose.copy()
        self.trajectory.append(
            TrajectoryRecord(
                timestamp=frame.timestamp,
                reference_keyframe_id=reference.id,
                relative_pose=reference_pose.inverse() @ frame.pose,
                absolute_pose=frame.pose.copy(),
                lost=False,
            )
        )

    # Bootstrap

    def _bootstrap(self, frame: Frame) -> None:
        if self._monocular:
            self._bootstrap_monocular(frame)
        else:
            self._bootstrap_stereo(frame)

    def _keyframe_from_frame(self, frame: Frame) -> KeyFrame:
        map_points = frame.map_points.copy()
        map_points[frame.outliers] = -1
        return KeyFrame(
            id=self._map.new_keyframe_id(),
            frame_id=frame.id,
            timestamp=frame.timestamp,
            pose=frame.pose.copy(),
            keypoints=frame.keypoints.copy(),
            descriptors=frame.descriptors.copy(),
            octaves=frame.octaves.copy(),
            right_u=frame.right_u.copy(),
            depth=frame.depth.copy(),
            map_points=map_points,
        )

    def _bootstrap_stereo(self, frame: Frame) -> None:
        """Create the first keyframe and one map point per valid depth."""
        slots = np.flatnonzero(frame.depth > 0)
        if len(slots) < self._tracking.min_init_features:
            raise InitializationFailed(
                f"Only {len(slots)} features with depth (need {self._tracking.min_init_features})"
            )

        frame.pose = SE3.identity()
        positions = frame.unproject_stereo(self._camera, slots)
        keyframe = self._keyframe_from_frame(frame)
        with self._map.transaction():
            self._map.add_keyframe(keyframe, None)
            for slot, position in zip(slots, positions):
                self._map.create_map_point(position, keyframe.id, {keyframe.id: int(slot)})
            self._map.reference_keyframe_id = keyframe.id
            frame.map_points = keyframe.map_points.copy()

        self._after_bootstrap(frame, [keyframe])

    def _bootstrap_monocular(self, frame: Frame) -> None:
        initializer = self._initializer
        if initializer.reference is None:
            if len(frame) > self._tracking.mono_init_min_features:
                initializer.set_reference(frame)
            raise InitializationFailed("Waiting for a second view")

        if len(frame) <= self._tracking.mono_init_min_features:
            initializer.clear()
            raise InitializationFailed(f"Too few features: {len(frame)}")

        pairs = initializer.match(frame)
        if len(pairs) < self._tracking.mono_init_min_matches:
            initializer.clear()
            raise InitializationFailed(f"Too few bootstrap matches: {len(pairs)}")

        result = initializer.initialize(frame, pairs)
        try:
            keyframes = self._create_monocular_map(initializer.reference, frame, result)
        except InitializationFailed:
            initializer.clear()
            raise
        initializer.clear()
        self._after_bootstrap(frame, keyframes)

    def _create_monocular_map(
        self, reference: Frame, frame: Frame, result: InitializationResult
    ) -> list[KeyFrame]:
        """Build the two-keyframe map, refine it and fix its scale.

        Raises:
            InitializationFailed: If the refined map is degenerate; the
                transaction is rolled back
        """
        reference.pose = SE3.identity()
        frame.pose = result.current_pose
        reference.map_points[:] = -1
        frame.map_points[:] = -1
        kf_ref = self._keyframe_from_frame(reference)
        kf_cur = self._keyframe_from_frame(frame)

        with self._map.transaction():
            self._map.add_keyframe(kf_ref, None)
            self._map.add_keyframe(kf_cur, kf_ref.id)
            for (slot_ref, slot_cur), point in zip(
                result.pairs[result.triangulated], result.points[result.triangulated]
            ):
                self._map.create_map_point(
                    point, kf_ref.id, {kf_ref.id: int(slot_ref), kf_cur.id: int(slot_cur)}
                )
            self._map.update_connections(kf_ref.id)
            self._map.update_connections(kf_cur.id)

            problem = problem_from_map(
                self._map, [kf_cur.id], [kf_ref.id], self._map.map_point_ids()
            )
            ba = self._bootstrap_ba.optimize(problem)
            if ba.success:
                for kf_id, pose in ba.optimized_poses.items():
                    self._map.set_keyframe_pose(kf_id, pose)
                for mp_id, position in ba.optimized_points.items():
                    self._map.set_point_position(mp_id, position)
                for kf_id, mp_id in ba.outliers:
                    self._map.erase_observation(mp_id, kf_id)

            point_ids = sorted(kf_ref.observed_point_ids())
            median_depth = kf_ref.median_scene_depth(self._map.point_positions(point_ids))
            tracked = self._map.tracked_point_count(kf_cur.id, 1)
            if median_depth <= 0 or tracked < self._tracking.mono_init_min_triangulated:
                raise InitializationFailed(
                    f"Degenerate bootstrap (median depth {median_depth:.3f}, {tracked} points)"
                )

            scale = 1.0 / median_depth
            scaled = kf_cur.pose.copy()
            scaled.translation = scaled.translation * scale
            self._map.set_keyframe_pose(kf_cur.id, scaled)
            for mp_id in self._map.map_point_ids():
                self._map.set_point_position(mp_id, self._map.map_point(mp_id).position * scale)
            for mp_id in self._map.map_point_ids():
                self._map.update_point_geometry(mp_id)
            self._map.reference_keyframe_id = kf_cur.id

        frame.pose = kf_cur.pose.copy()
        frame.map_points = kf_cur.map_points.copy()
        logger.info(
            "Monocular bootstrap from %s: %d points, parallax %.1f deg",
            result.model,
            self._map.num_map_points,
            result.parallax_deg,
        )
        return [kf_ref, kf_cur]

    def _after_bootstrap(self, frame: Frame, keyframes: list[KeyFrame]) -> None:
        epoch = self._map.epoch
        for keyframe in keyframes:
            request = KeyFrameRequest(
                keyframe=keyframe,
                parent_id=self._map.parent(keyframe.id),
                epoch=epoch,
                registered=True,
            )
            if self._local_mapper is not None:
                self._local_mapper.insert_keyframe(request)

        last = keyframes[-1]
        self.reference_keyframe = last
        self.last_keyframe = last
        frame.reference_keyframe_id = last.id
        self.local_keyframe_ids = [k.id for k in keyframes]
        self.local_point_ids = self._map.map_point_ids()
        self.velocity = None
        self._policy.keyframe_inserted(frame.id)

    # Initial pose estimate

    def _track_initial_pose(self, frame: Frame) -> None:
        self._refresh_last_frame()
        recently_relocalized = frame.id < self._policy.last_relocalization_frame_id + 2
        if self.velocity is not None and not recently_relocalized:
            try:
                self._track_with_motion_model(frame)
                return
            except TrackingLost as e:
                logger.debug("Motion model failed: %s", e)
        self._track_reference_keyframe(frame)

    def _refresh_last_frame(self) -> None:
        """Follow fused map points and drop culled ones in the previous frame."""
        last = self.last_frame
        if last is None:
            return
        for slot in np.flatnonzero(last.map_points >= 0):
            live = self._map.resolve_point(int(last.map_points[slot]))
            last.map_points[slot] = -1 if live is None else live

    def _track_reference_keyframe(self, frame: Frame) -> None:
        """Match the reference keyframe's points by descriptor and solve PnP."""
        reference = self.reference_keyframe
        if reference is None:
            raise TrackingLost("No reference keyframe")
        with self._map.lock:
            pairs = self._matcher.match_keyframe_to_frame(reference, frame)
            pairs = [(slot, self._map.resolve_point(mp_id)) for slot, mp_id in pairs]
            pairs = [(slot, mp_id) for slot, mp_id in pairs if mp_id is not None]
        if len(pairs) < self._tracking.reference_keyframe_min_matches:
            raise TrackingLost(f"Reference keyframe: {len(pairs)} matches")

        frame.map_points[:] = -1
        frame.outliers[:] = False
        slots = np.array([s for s, _ in pairs], dtype=np.int64)
        ids = np.array([m for _, m in pairs], dtype=np.int64)
        frame.map_points[slots] = ids

        prior = self.last_frame.pose if self.last_frame is not None else reference.pose
        pnp = self._motion_estimator.estimate_pose(
            self._map.point_positions(ids), frame.keypoints[slots], self._camera.K, prior
        )
        frame.pose = pnp.pose if pnp.success else prior.copy()
        n_inliers = self._optimize_pose(frame)
        self._discard_outliers(frame)
        if n_inliers < 10:
            raise TrackingLost(f"Reference keyframe: {n_inliers} inliers")

    def _track_with_motion_model(self, frame: Frame) -> None:
        """Predict with constant velocity and match the previous frame by projection."""
        last = self.last_frame
        frame.pose = last.pose @ self.velocity
        frame.map_points[:] = -1
        frame.outliers[:] = False

        slots = np.flatnonzero(last.map_points >= 0)
        candidates = PointCandidates.from_map(self._map, last.map_points[slots])
        levels = self._levels_for(candidates, last, slots)
        provisional = self._provisional
        radius = (
            self._tracking.motion_search_radius_mono
            if self._monocular
            else self._tracking.motion_search_radius_stereo
        )

        n_matches = self._search_last_frame(frame, candidates, levels, radius)
        provisional_matches = self._match_provisional(frame, provisional, radius)
        if n_matches + len(provisional_matches) < self._tracking.motion_model_min_matches:
            frame.map_points[:] = -1
            n_matches = self._search_last_frame(frame, candidates, levels, 2 * radius)
            provisional_matches = self._match_provisional(frame, provisional, 2 * radius)
        if n_matches + len(provisional_matches) < self._tracking.motion_model_min_matches:
            raise TrackingLost(f"Motion model: {n_matches} matches")

        n_inliers = self._optimize_pose(frame, provisional_matches)
        self._discard_outliers(frame)
        n_map = int(np.count_nonzero(frame.map_points >= 0))
        if self.localization_mode:
            if n_inliers < 10:
                raise TrackingLost(f"Motion model: {n_inliers} inliers")
        elif n_map < 10:
            raise TrackingLost(f"Motion model: {n_map} map inliers")

    def _levels_for(
        self, candidates: PointCandidates, last: Frame, slots: np.ndarray
    ) -> np.ndarray:
        slot_of = {int(last.map_points[s]): int(last.octaves[s]) for s in slots}
        return np.array([slot_of.get(int(i), 0) for i in candidates.ids], dtype=np.int32)

    def _search_last_frame(
        self,
        frame: Frame,
        candidates: PointCandidates,
        levels: np.ndarray,
        radius: float,
    ) -> int:
        return self._matcher.search_by_projection(
            frame,
            self._camera,
            candidates,
            radius,
            predicted_levels=levels,
            level_tolerance=1,
            check_viewing_angle=False,
        )

    def _match_provisional(
        self, frame: Frame, provisional: _Provisional, radius: float
    ) -> list[tuple[int, np.ndarray]]:
        """Match the previous frame's provisional points into free slots."""
        if len(provisional.positions) == 0:
            return []
        uv, z = self._camera.project_world(provisional.positions, frame.pose)
        valid = self._camera.is_in_image(uv) & (z > 0)
        taken = set(np.flatnonzero(frame.map_points >= 0).tolist())
        matches: list[tuple[int, np.ndarray]] = []
        for i in np.flatnonzero(valid):
            level = int(provisional.octaves[i])
            r = radius * self._pyramid.scale_factors[min(level, self._pyramid.n_levels - 1)]
            slots = frame.features_in_area(uv[i, 0], uv[i, 1], r, level - 1, level + 1)
            slots = np.array([s for s in slots if s not in taken], dtype=np.int64)
            if len(slots) == 0:
                continue
            dist = hamming_matrix(provisional.descriptors[i], frame.descriptors[slots])[0]
            best = int(np.argmin(dist))
            if dist[best] > self._matcher.threshold_high:
                continue
            taken.add(int(slots[best]))
            matches.append((int(slots[best]), provisional.positions[i]))
        return matches

    def _build_provisional(self, frame: Frame) -> None:
        """Keep up to 100 close unmatched depth points of ``frame`` for the next one."""
        self._provisional = _Provisional()
        if self._monocular or frame.pose is None:
            return
        slots = np.flatnonzero((frame.depth > 0) & (frame.map_points < 0))
        if len(slots) == 0:
            return
        slots = slots[np.argsort(frame.depth[slots], kind="stable")]
        keep = []
        for slot in slots:
            if frame.depth[slot] > self._depth_threshold and len(keep) > 100:
                break
            keep.append(int(slot))
        keep = np.array(keep, dtype=np.int64)
        self._provisional = _Provisional(
            positions=frame.unproject_stereo(self._camera, keep),
            descriptors=frame.descriptors[keep].copy(),
            octaves=frame.octaves[keep].copy(),
        )

    # Pose refinement

    def _optimize_pose(
        self, frame: Frame, provisional: list[tuple[int, np.ndarray]] | None = None
    ) -> int:
        """Refine ``frame.pose`` on its map point matches; flags outliers.

        Returns:
            Number of inlier correspondences (map points and provisional)
        """
        slots = np.flatnonzero(frame.map_points >= 0)
        positions = []
        kept = []
        with self._map.lock:
            for slot in slots:
                mp = self._map.get_map_point(int(frame.map_points[slot]))
                if mp is None:
                    frame.map_points[slot] = -1
                    continue
                kept.append(int(slot))
                positions.append(mp.position.copy())
        provisional = provisional or []
        extra_slots = [s for s, _ in provisional]
        all_slots = np.array(kept + extra_slots, dtype=np.int64)
        if len(all_slots) == 0:
            return 0
        points = np.array(positions + [p for _, p in provisional]).reshape(-1, 3)

        octaves = np.clip(frame.octaves[all_slots], 0, self._pyramid.n_levels - 1)
        result = self._pose_optimizer.optimize(
            frame.pose,
            points,
            frame.keypoints[all_slots],
            frame.right_u[all_slots],
            self._pyramid.inv_level_sigma2[octaves],
        )
        if not np.isfinite(result.pose.to_matrix()).all():
            raise TrackingLost("Pose refinement diverged")
        frame.pose = result.pose
        n_map = len(kept)
        frame.outliers[:] = False
        frame.outliers[all_slots[:n_map]] = ~result.inliers[:n_map]
        return result.num_inliers

    def _discard_outliers(self, frame: Frame) -> None:
        frame.map_points[frame.outliers] = -1
        frame.outliers[:] = False

    # Local map

    def _track_local_map(self, frame: Frame) -> None:
        """Project the local map into the frame and refine the pose on all matches.

        Raises:
            TrackingLost: If fewer inliers than required remain
        """
        self._update_local_map(frame)
        self._search_local_points(frame)
        n_inliers = self._optimize_pose(frame)

        matched = np.flatnonzero((frame.map_points >= 0) & ~frame.outliers)
        found_ids = [int(frame.map_points[s]) for s in matched]
        n_tracked = 0
        with self._map.lock:
            for mp_id in found_ids:
                mp = self._map.get_map_point(mp_id)
                if mp is None:
                    continue
                self._found[mp_id] += 1
                if self.localization_mode or mp.num_observers > 0:
                    n_tracked += 1
        self.num_inliers = n_tracked

        since_relocalization = frame.id - self._policy.last_relocalization_frame_id
        if since_relocalization < self._config.max_frames_between_keyframes:
            required = self._tracking.min_inliers_after_relocalization
        else:
            required = self._tracking.min_inliers
        if n_tracked < required:
            raise TrackingLost(f"Local map: {n_tracked} inliers (need {required}, {n_inliers} total)")
        self._build_provisional(frame)

    def _update_local_map(self, frame: Frame) -> None:
        """Collect local keyframes (and the reference) and their map points."""
        max_local = self._tracking.max_local_keyframes
        with self._map.lock:
            counts: Counter[int] = Counter()
            for slot in np.flatnonzero(frame.map_points >= 0):
                mp = self._map.get_map_point(int(frame.map_points[slot]))
                if mp is None:
                    frame.map_points[slot] = -1
                    continue
                counts.update(mp.observers.keys())
            if not counts:
                # Nothing matched yet; fall back to the reference neighbourhood
                if self.reference_keyframe is not None:
                    live = self._map.resolve_keyframe(self.reference_keyframe.id)
                    if live is not None:
                        counts[live] = 1
            if not counts:
                return

            local = [kf_id for kf_id, _ in counts.most_common()]
            seen = set(local)
            for kf_id in list(local):
                if len(local) >= max_local:
                    break
                neighbours = self._map.covisible_keyframes(kf_id, 10)
                neighbours += sorted(self._map.children(kf_id))
                parent = self._map.parent(kf_id)
                if parent is not None:
                    neighbours.append(parent)
                for other in neighbours:
                    if other not in seen:
                        seen.add(other)
                        local.append(other)
                        break
            local = local[:max_local]

            reference_id = counts.most_common(1)[0][0]
            self.reference_keyframe = self._map.keyframe(reference_id)
            self._map.reference_keyframe_id = reference_id
            frame.reference_keyframe_id = reference_id

            point_ids: list[int] = []
            seen_points: set[int] = set()
            for kf_id in local:
                kf = self._map.get_keyframe(kf_id)
                if kf is None:
                    continue
                for mp_id in kf.map_points[kf.map_points >= 0]:
                    mp_id = int(mp_id)
                    if mp_id not in seen_points:
                        seen_points.add(mp_id)
                        point_ids.append(mp_id)
        self.local_keyframe_ids = local
        self.local_point_ids = point_ids

    def _search_local_points(self, frame: Frame) -> int:
        """Match local map points not yet associated with the frame."""
        matched = set(int(i) for i in frame.map_points[frame.map_points >= 0])
        for mp_id in matched:
            self._visible[mp_id] += 1

        remaining = [i for i in self.local_point_ids if i not in matched]
        candidates = PointCandidates.from_map(self._map, remaining)
        if len(candidates) == 0:
            return 0

        uv, z = self._camera.project_world(candidates.positions, frame.pose)
        rays = candidates.positions - frame.pose.translation
        distances = np.linalg.norm(rays, axis=1)
        with np.errstate(invalid="ignore", divide="ignore"):
            cos_view = np.einsum("ij,ij->i", rays, candidates.normals) / np.maximum(distances, 1e-12)
            in_view = (
                self._camera.is_in_image(uv)
                & (z > 0)
                & (distances >= 0.8 * candidates.min_distances)
                & (distances <= 1.2 * candidates.max_distances)
                & (cos_view >= 0.5)
            )
        visible_idx = np.flatnonzero(in_view)
        for i in visible_idx:
            self._visible[int(candidates.ids[i])] += 1
        if len(visible_idx) == 0:
            return 0

        subset = PointCandidates(
            ids=candidates.ids[visible_idx],
            positions=candidates.positions[visible_idx],
            descriptors=candidates.descriptors[visible_idx],
            normals=candidates.normals[visible_idx],
            min_distances=candidates.min_distances[visible_idx],
            max_distances=candidates.max_distances[visible_idx],
        )
        radius = self._tracking.local_map_search_radius
        if frame.id < self._policy.last_relocalization_frame_id + 2:
            radius *= 5.0
        return self._matcher.search_by_projection(
            frame,
            self._camera,
            subset,
            radius * 3.0,
            ratio=0.8,
        )

    # Relocalization

    def _relocalize(self, frame: Frame) -> None:
        """Recover the pose from place-recognition candidates.

        Raises:
            RelocalizationFailed: If no candidate yields enough inliers
        """
        frame.bow = self._vocabulary.describe(frame.descriptors)
        with self._map.lock:
            candidates = self._database.detect_relocalization_candidates(self._map, frame.bow)
        candidates = candidates[: self._tracking.relocalization_max_candidates]
        if not candidates:
            raise RelocalizationFailed("No place-recognition candidates")

        for kf_id in candidates:
            keyframe = self._map.get_keyframe(kf_id)
            if keyframe is None:
                continue
            if self._try_relocalize(frame, keyframe):
                self.reference_keyframe = keyframe
                frame.reference_keyframe_id = keyframe.id
                self._policy.relocalized(frame.id)
                logger.info("Relocalized frame %d against keyframe %d", frame.id, kf_id)
                return
        frame.map_points[:] = -1
        frame.outliers[:] = False
        raise RelocalizationFailed(f"{len(candidates)} candidates rejected")

    def _try_relocalize(self, frame: Frame, keyframe: KeyFrame) -> bool:
        with self._map.lock:
            pairs = self._matcher.match_keyframe_to_frame(keyframe, frame)
            pairs = [(s, self._map.resolve_point(m)) for s, m in pairs]
            pairs = [(s, m) for s, m in pairs if m is not None]
        if len(pairs) < self._tracking.relocalization_min_matches:
            return False

        slots = np.array([s for s, _ in pairs], dtype=np.int64)
        ids = np.array([m for _, m in pairs], dtype=np.int64)
        pnp = self._motion_estimator.estimate_pose(
            self._map.point_positions(ids), frame.keypoints[slots], self._camera.K
        )
        if not pnp.success:
            return False

        frame.pose = pnp.pose
        frame.map_points[:] = -1
        frame.outliers[:] = False
        frame.map_points[slots[pnp.inliers]] = ids[pnp.inliers]
        n_good = self._optimize_pose(frame)
        if n_good < 10:
            return False
        self._discard_outliers(frame)

        required = self._tracking.relocalization_min_inliers
        if n_good < required:
            candidates = PointCandidates.from_map(self._map, sorted(keyframe.observed_point_ids()))
            added = self._matcher.search_by_projection(
                frame, self._camera, candidates, 10.0, check_viewing_angle=False
            )
            if n_good + added >= required:
                n_good = self._optimize_pose(frame)
                self._discard_outliers(frame)
        return n_good >= required

    # Keyframe decision

    def _maybe_insert_keyframe(self, frame: Frame) -> None:
        mapper = self._local_mapper
        if mapper is None or self.reference_keyframe is None:
            return

        num_keyframes = self._map.num_keyframes
        min_obs = self._policy.min_observations(num_keyframes)
        reference_id = self._map.resolve_keyframe(self.reference_keyframe.id)
        reference_matches = (
            self._map.tracked_point_count(reference_id, min_obs) if reference_id is not None else 0
        )
        tracked_close = untracked_close = 0
        if not self._monocular:
            close = frame.close_mask(self._depth_threshold)
            tracked = frame.tracked_mask()
            tracked_close = int(np.count_nonzero(close & tracked))
            untracked_close = int(np.count_nonzero(close & ~tracked))

        quality = TrackingQuality(
            frame_id=frame.id,
            num_inliers=self.num_inliers,
            reference_matches=reference_matches,
            tracked_close=tracked_close,
            untracked_close=untracked_close,
            num_keyframes=num_keyframes,
        )
        decision = self._policy.decide(
            quality,
            mapper_idle=mapper.accepts_keyframes,
            mapper_queue_length=mapper.queue_length,
            mapper_stopped=mapper.is_stopped or mapper.stop_requested,
        )
        if decision.interrupt_mapping:
            mapper.interrupt_optimization()
        if decision.insert:
            self._insert_keyframe(frame)

    def _insert_keyframe(self, frame: Frame) -> None:
        """Hand a new keyframe with its provisional close points to the Local Mapper."""
        keyframe = self._keyframe_from_frame(frame)
        new_points: list[tuple[int, np.ndarray]] = []
        if not self._monocular:
            slots = np.flatnonzero(frame.depth > 0)
            slots = slots[np.argsort(frame.depth[slots], kind="stable")]
            count = 0
            for slot in slots:
                if keyframe.map_points[slot] < 0:
                    new_points.append((int(slot), frame.unproject_stereo(self._camera, [slot])[0]))
                count += 1
                if frame.depth[slot] > self._depth_threshold and count > 100:
                    break

        request = KeyFrameRequest(
            keyframe=keyframe,
            parent_id=self.reference_keyframe.id,
            new_points=new_points,
            visible=dict(self._visible),
            found=dict(self._found),
            epoch=self._map.epoch,
        )
        self._visible.clear()
        self._found.clear()
        self._local_mapper.insert_keyframe(request)

        self.reference_keyframe = keyframe
        self.last_keyframe = keyframe
        frame.reference_keyframe_id = keyframe.id
        self._policy.keyframe_inserted(frame.id)
        self._provisional = _Provisional()
        logger.debug(
            "Keyframe %d requested from frame %d (%d new points)",
            keyframe.id,
            frame.id,
            len(new_points),
        )
