"""Loop closing worker.

Consumes the keyframes processed by the Local Mapper. For each one:

1. Query the place-recognition index, excluding the keyframe's covisible
   neighbourhood
2. Keep candidates whose covisibility group was also detected for the
   previous keyframes (temporal consistency)
3. Verify candidates geometrically (Sim3 for monocular, rigid otherwise)
   and confirm the hypothesis by projecting the candidate neighbourhood's
   map points into the keyframe
4. On acceptance: correct the current side of the loop over the spanning
   tree, fuse duplicated map points, register the loop edge and start a
   global bundle adjustment

Verification only reads the map, so a rejected candidate leaves the map
revision unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from ..backend.worker import BackgroundWorker
from ..config import SLAMConfig
from ..frontend.camera import PinholeCamera
from ..frontend.matcher import FeatureMatcher
from ..frontend.pose import Sim3
from ..map import Map
from .geometric_verification import (
    GeometricVerifier,
    VerificationResult,
    search_by_projection_sim3,
    world_correction,
)
from .global_ba import GlobalBundleAdjustment
from .place_recognition import KeyFrameDatabase
from .pose_graph import CorrectionResult, PoseGraph

if TYPE_CHECKING:
    from ..backend.local_mapping import LocalMapper

logger = logging.getLogger(__name__)


@dataclass
class LoopCandidate:
    """A verified loop hypothesis.

    Attributes:
        keyframe_id: Query keyframe
        loop_keyframe_id: Matched keyframe
        Scw: Corrected world-to-camera similarity of the query keyframe
        matched: Query slot -> loop-side map point id
        loop_point_ids: Map points of the matched keyframe's neighbourhood
        verification: Geometric verification details
    """

    keyframe_id: int
    loop_keyframe_id: int
    Scw: Sim3
    matched: dict[int, int]
    loop_point_ids: list[int]
    verification: VerificationResult


@dataclass
class LoopClosingResult:
    """Summary of one loop closing cycle."""

    keyframe_id: int
    candidates: list[int] = field(default_factory=list)
    consistent_candidates: list[int] = field(default_factory=list)
    loop: LoopCandidate | None = None
    correction: CorrectionResult | None = None
    message: str = ""

    @property
    def detected(self) -> bool:
        return self.loop is not None


class LoopCloser(BackgroundWorker):
    """Background worker detecting and correcting loops."""

    def __init__(
        self,
        config: SLAMConfig,
        camera: PinholeCamera,
        map_: Map,
        database: KeyFrameDatabase,
        matcher: FeatureMatcher,
        local_mapper: LocalMapper | None = None,
    ) -> None:
        """Initialize the loop closer.

        Args:
            config: Session configuration
            camera: Camera model
            map_: Shared map
            database: Place-recognition index
            matcher: Feature matcher
            local_mapper: Worker paused during loop correction
        """
        super().__init__("LoopCloser")
        self._config = config.loop_closing
        self._camera = camera
        self._map = map_
        self._database = database
        self._matcher = matcher
        self._local_mapper = local_mapper
        self._stop_timeout_s = config.local_mapping.stop_timeout_s
        self._verifier = GeometricVerifier(
            camera,
            matcher,
            fix_scale=not config.is_monocular,
            min_descriptor_matches=self._config.min_descriptor_matches,
            min_inliers=self._config.min_sim3_inliers,
            ransac_iterations=self._config.ransac_iterations,
            ransac_min_set=self._config.ransac_min_set,
        )
        self._pose_graph = PoseGraph(map_)
        self.global_ba = GlobalBundleAdjustment(
            camera,
            map_,
            iterations=self._config.global_ba_iterations,
            local_mapper=local_mapper,
            stop_timeout_s=self._stop_timeout_s,
        )

        self._consistent_groups: list[tuple[set[int], int]] = []
        self._last_loop_keyframe_id = -1
        self.num_loops = 0
        self.last_result: LoopClosingResult | None = None

    def set_local_mapper(self, local_mapper: LocalMapper) -> None:
        self._local_mapper = local_mapper
        self.global_ba.set_local_mapper(local_mapper)

    @property
    def verifier(self) -> GeometricVerifier:
        return self._verifier

    def insert_keyframe(self, keyframe_id: int) -> None:
        self.submit(keyframe_id)

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop the worker, then abort a running global bundle adjustment."""
        super().shutdown(timeout)
        self.global_ba.abort()

    def _on_reset(self) -> None:
        self.global_ba.abort()
        self._consistent_groups = []
        self._last_loop_keyframe_id = -1
        self.last_result = None
        logger.info("Loop closer reset")

    def _process(self, keyframe_id: int) -> None:
        self.last_result = self.process_keyframe(keyframe_id)

    def process_keyframe(self, keyframe_id: int) -> LoopClosingResult:
        """Run detection, verification and correction for one keyframe."""
        result = LoopClosingResult(keyframe_id=keyframe_id)
        if not self._config.enabled:
            result.message = "loop closing disabled"
            return result

        with self._map.lock:
            if not self._map.has_keyframe(keyframe_id):
                result.message = "keyframe culled"
                return result
            self._map.pin(keyframe_id)

        pinned = [keyframe_id]
        try:
            result.candidates = self.detect_candidates(keyframe_id)
            result.consistent_candidates = self.check_consistency(keyframe_id, result.candidates)
            if not result.consistent_candidates:
                result.message = "no consistent candidates"
                return result

            with self._map.lock:
                for candidate in result.consistent_candidates:
                    if self._map.has_keyframe(candidate):
                        self._map.pin(candidate)
                        pinned.append(candidate)

            loop = self.compute_sim3(keyframe_id, result.consistent_candidates)
            if loop is None:
                result.message = "geometric verification failed"
                return result

            result.loop = loop
            result.correction = self.correct_loop(loop)
            result.message = "loop corrected"
            return result
        finally:
            self._unpin(pinned)

    def _unpin(self, keyframe_ids: list[int]) -> None:
        with self._map.lock:
            for kf_id in keyframe_ids:
                self._map.unpin(kf_id)
                if not self._map.has_keyframe(kf_id):
                    # Culling deferred while pinned has now happened
                    self._database.erase(kf_id)

    # Detection

    def detect_candidates(self, keyframe_id: int) -> list[int]:
        """Query the index for loop candidates of a keyframe.

        The minimum score is the lowest similarity between the keyframe and
        its covisible neighbours, so candidates must look at least as similar
        as the keyframe's own neighbourhood.
        """
        with self._map.lock:
            kf = self._map.get_keyframe(keyframe_id)
            if kf is None or kf.bow is None:
                return []
            if keyframe_id < self._last_loop_keyframe_id + self._config.min_keyframes_since_last_loop:
                return []
            if self._map.num_keyframes < self._config.min_keyframes_in_map:
                return []

            min_score = 1.0
            for other in self._map.covisible_keyframes(keyframe_id):
                other_bow = self._map.keyframe(other).bow
                if other_bow is not None:
                    min_score = min(min_score, float(np.dot(kf.bow, other_bow)))

            return self._database.detect_loop_candidates(
                self._map,
                keyframe_id,
                kf.bow,
                min_score,
                common_words_ratio=self._config.common_words_ratio,
                accumulated_score_ratio=self._config.accumulated_score_ratio,
            )

    def check_consistency(self, keyframe_id: int, candidates: list[int]) -> list[int]:
        """Keep candidates whose group was seen for enough consecutive keyframes.

        Each candidate forms a group with its covisible keyframes. A group
        sharing a keyframe with a group of the previous query inherits its
        count plus one; candidates reaching the threshold are returned.
        """
        if not candidates:
            self._consistent_groups = []
            return []

        threshold = self._config.covisibility_consistency_threshold
        current_groups: list[tuple[set[int], int]] = []
        previous_extended = [False] * len(self._consistent_groups)
        enough: list[int] = []

        with self._map.lock:
            for candidate in candidates:
                if not self._map.has_keyframe(candidate):
                    continue
                group = set(self._map.covisible_keyframes(candidate)) | {candidate}
                candidate_enough = False
                consistent = False
                for i, (previous_group, count) in enumerate(self._consistent_groups):
                    if not group & previous_group:
                        continue
                    consistent = True
                    current_count = count + 1
                    if not previous_extended[i]:
                        current_groups.append((group, current_count))
                        previous_extended[i] = True
                    if current_count >= threshold and not candidate_enough:
                        enough.append(candidate)
                        candidate_enough = True
                if not consistent:
                    current_groups.append((group, 0))

        self._consistent_groups = current_groups
        if enough:
            logger.debug("Keyframe %d: consistent loop candidates %s", keyframe_id, enough)
        return enough

    # Verification

    def compute_sim3(self, keyframe_id: int, candidates: list[int]) -> LoopCandidate | None:
        """Verify candidates in order and return the first confirmed loop."""
        with self._map.lock:
            kf = self._map.get_keyframe(keyframe_id)
            if kf is None:
                return None
            for candidate in candidates:
                verification = self._verifier.verify(self._map, keyframe_id, candidate)
                if not verification.is_valid:
                    logger.debug(
                        "Loop candidate %d for keyframe %d rejected: %s",
                        candidate,
                        keyframe_id,
                        verification.message,
                    )
                    continue
                loop = self._confirm(kf.id, candidate, verification)
                if loop is not None:
                    return loop
        return None

    def _confirm(
        self, keyframe_id: int, candidate: int, verification: VerificationResult
    ) -> LoopCandidate | None:
        """Project the candidate neighbourhood with the hypothesis and count matches (lock held)."""
        kf = self._map.keyframe(keyframe_id)
        loop_kf = self._map.keyframe(candidate)
        Scw = verification.S12 @ Sim3.from_se3(loop_kf.pose.inverse())

        loop_side = [candidate] + self._map.covisible_keyframes(candidate)
        loop_points: list[int] = []
        seen: set[int] = set()
        for kf_id in loop_side:
            for mp_id in sorted(self._map.keyframe(kf_id).observed_point_ids()):
                if mp_id not in seen:
                    seen.add(mp_id)
                    loop_points.append(mp_id)

        matched = search_by_projection_sim3(
            self._map, self._matcher, self._camera, kf, Scw, loop_points, verification.matched or {}
        )
        if len(matched) < self._config.min_projection_matches:
            logger.debug(
                "Loop candidate %d for keyframe %d rejected: %d projection matches",
                candidate,
                keyframe_id,
                len(matched),
            )
            return None

        logger.info(
            "Loop detected: keyframe %d <-> %d (%d matches, scale %.3f)",
            keyframe_id,
            candidate,
            len(matched),
            Scw.scale,
        )
        return LoopCandidate(
            keyframe_id=keyframe_id,
            loop_keyframe_id=candidate,
            Scw=Scw,
            matched=matched,
            loop_point_ids=loop_points,
            verification=verification,
        )

    # Correction

    def correct_loop(self, loop: LoopCandidate) -> CorrectionResult | None:
        """Apply an accepted loop to the map and start global bundle adjustment."""
        self.global_ba.abort()
        paused = self._pause_mapper()
        try:
            with self._map.transaction():
                if not (
                    self._map.has_keyframe(loop.keyframe_id)
                    and self._map.has_keyframe(loop.loop_keyframe_id)
                ):
                    logger.info("Loop discarded: a loop keyframe was culled")
                    return None
                correction = self._apply_correction(loop)
        finally:
            if paused:
                self._local_mapper.release()

        self._last_loop_keyframe_id = loop.keyframe_id
        self.num_loops += 1
        if self._config.run_global_ba:
            self.global_ba.start(loop.keyframe_id)
        return correction

    def _apply_correction(self, loop: LoopCandidate) -> CorrectionResult:
        map_ = self._map
        kf_id = loop.keyframe_id
        map_.update_connections(kf_id)
        kf = map_.keyframe(kf_id)
        loop_kf = map_.keyframe(loop.loop_keyframe_id)

        current_side = [kf_id] + map_.covisible_keyframes(kf_id)
        loop_side = [loop.loop_keyframe_id] + map_.covisible_keyframes(loop.loop_keyframe_id)
        correction = world_correction(loop.Scw, kf.pose)
        result = self._pose_graph.correct(
            correction, current_side, loop_side, pivot=loop_kf.camera_center
        )

        # Duplicates confirmed by the loop match
        for slot, loop_mp in sorted(loop.matched.items()):
            loop_mp = map_.resolve_point(loop_mp)
            if loop_mp is None:
                continue
            existing = int(kf.map_points[slot])
            if existing >= 0:
                existing_live = map_.resolve_point(existing)
                if existing_live is not None and existing_live != loop_mp:
                    map_.replace_map_point(existing_live, loop_mp)
            elif kf_id not in map_.map_point(loop_mp).observers:
                map_.add_observation(loop_mp, kf_id, slot)

        # Remaining duplicates between the loop side and the current side
        for other in current_side:
            if map_.has_keyframe(other):
                self._matcher.fuse(
                    map_, other, loop.loop_point_ids, self._camera, self._config.fuse_search_radius
                )

        for other in current_side:
            if map_.has_keyframe(other):
                map_.update_connections(other)
        map_.add_loop_edge(kf_id, loop.loop_keyframe_id)
        map_.increment_big_change()
        return result

    def _pause_mapper(self) -> bool:
        """Pause the Local Mapper; False if it is absent or paused by someone else."""
        if self._local_mapper is None or self._local_mapper.stop_requested:
            return False
        self._local_mapper.request_stop()
        if not self._local_mapper.wait_until_stopped(self._stop_timeout_s):
            logger.warning("Local mapper did not pause; correcting the loop anyway")
        return True
