"""Background global bundle adjustment after a loop closure.

At most one optimization runs at a time. Starting a new one aborts the
previous run; an aborted run never writes to the map. When a run finishes,
the Local Mapper is paused while the result is written back:

- optimized keyframes and map points take their new values
- keyframes created while the optimization ran are moved with their
  spanning-tree parent
- map points that were not part of the problem follow their reference
  keyframe
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..backend.optimizer import BAResult, ScipyBundleAdjustment, problem_from_map
from ..frontend.camera import PinholeCamera
from ..frontend.pose import SE3
from ..map import Map

if TYPE_CHECKING:
    from ..backend.local_mapping import LocalMapper

logger = logging.getLogger(__name__)


@dataclass
class GlobalBAStats:
    """Counters of the global bundle adjustment runner."""

    started: int = 0
    finished: int = 0
    aborted: int = 0
    failed: int = 0
    last_duration_s: float = 0.0


class GlobalBundleAdjustment:
    """Single-instance runner for full-map bundle adjustment."""

    def __init__(
        self,
        camera: PinholeCamera,
        map_: Map,
        iterations: int = 10,
        local_mapper: LocalMapper | None = None,
        stop_timeout_s: float = 2.0,
    ) -> None:
        """Initialize the runner.

        Args:
            camera: Camera model
            map_: Shared map
            iterations: Optimizer iterations per round
            local_mapper: Worker paused while results are written back
            stop_timeout_s: Maximum wait for the Local Mapper to pause
        """
        self._camera = camera
        self._map = map_
        self._optimizer = ScipyBundleAdjustment(camera.K, bf=camera.bf, max_iterations=iterations)
        self._local_mapper = local_mapper
        self._stop_timeout_s = stop_timeout_s

        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._abort = threading.Event()
        self.stats = GlobalBAStats()
        self.last_result: BAResult | None = None

    def set_local_mapper(self, local_mapper: LocalMapper) -> None:
        self._local_mapper = local_mapper

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self, loop_keyframe_id: int) -> None:
        """Abort any running optimization and start a new one."""
        with self._lock:
            self._stop_locked()
            self._abort = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(loop_keyframe_id, self._abort),
                name="GlobalBA",
                daemon=True,
            )
            self.stats.started += 1
            self._thread.start()
        logger.info("Global BA started after loop at keyframe %d", loop_keyframe_id)

    def abort(self, timeout: float | None = 5.0) -> None:
        """Abort a running optimization and wait for its thread."""
        with self._lock:
            self._stop_locked(timeout)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for a running optimization to finish without aborting it.

        Returns:
            True if no optimization is running afterwards
        """
        with self._lock:
            thread = self._thread
        if thread is not None:
            thread.join(timeout)
            return not thread.is_alive()
        return True

    def _stop_locked(self, timeout: float | None = 5.0) -> None:
        if self._thread is None:
            return
        self._abort.set()
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Global BA did not stop within %.1fs", timeout or 0.0)
        self._thread = None

    def run(self, loop_keyframe_id: int, abort: threading.Event | None = None) -> BAResult | None:
        """Run one optimization on the calling thread and write it back."""
        return self._optimize_and_apply(loop_keyframe_id, abort or threading.Event())

    def _run(self, loop_keyframe_id: int, abort: threading.Event) -> None:
        try:
            self._optimize_and_apply(loop_keyframe_id, abort)
        except Exception:
            self.stats.failed += 1
            logger.warning("Global BA failed; keeping the loop-corrected map", exc_info=True)

    def _optimize_and_apply(self, loop_keyframe_id: int, abort: threading.Event) -> BAResult | None:
        start = time.perf_counter()
        with self._map.lock:
            root = self._map.root_id
            keyframe_ids = self._map.keyframe_ids()
            if root is None or len(keyframe_ids) < 2:
                return None
            free = [k for k in keyframe_ids if k != root]
            problem = problem_from_map(self._map, free, [root], self._map.map_point_ids())
            epoch = self._map.epoch
            old_poses = {k: self._map.keyframe(k).pose.copy() for k in keyframe_ids}

        result = self._optimizer.optimize(problem, abort=abort)
        self.last_result = result
        self.stats.last_duration_s = time.perf_counter() - start
        if result.aborted or abort.is_set():
            self.stats.aborted += 1
            logger.info("Global BA aborted (loop keyframe %d)", loop_keyframe_id)
            return result
        if not result.success:
            self.stats.failed += 1
            logger.warning("Global BA did not converge: %s", result.message)
            return result

        paused = self._pause_mapper()
        try:
            with self._map.transaction():
                if self._map.epoch != epoch or abort.is_set():
                    logger.info("Global BA result discarded: map was reset or a new loop arrived")
                    return result
                self._apply(result, old_poses)
                self._map.increment_big_change()
        finally:
            if paused:
                self._local_mapper.release()

        self.stats.finished += 1
        logger.info(
            "Global BA finished in %.2fs: %d keyframes, %d points",
            self.stats.last_duration_s,
            len(result.optimized_poses),
            len(result.optimized_points),
        )
        return result

    def _pause_mapper(self) -> bool:
        """Pause the Local Mapper; False if it is absent or paused by someone else."""
        if self._local_mapper is None or self._local_mapper.stop_requested:
            return False
        self._local_mapper.request_stop()
        if not self._local_mapper.wait_until_stopped(self._stop_timeout_s):
            logger.warning("Local mapper did not pause; writing global BA result anyway")
        return True

    def _apply(self, result: BAResult, old_poses: dict[int, SE3]) -> None:
        """Write the result back, propagating it to keyframes added meanwhile (transaction held)."""
        map_ = self._map
        corrected: dict[int, tuple[SE3, SE3]] = {}
        for kf_id, pose in result.optimized_poses.items():
            if map_.has_keyframe(kf_id):
                corrected[kf_id] = (old_poses[kf_id], pose)

        root = map_.root_id
        if root is not None and root in old_poses:
            corrected.setdefault(root, (old_poses[root], map_.keyframe(root).pose))

        # Spanning-tree order guarantees the parent is handled before the child
        for kf_id in map_.graph.tree_order(root) if root is not None else []:
            if kf_id in corrected:
                continue
            parent = map_.parent(kf_id)
            if parent is None or parent not in corrected:
                continue
            parent_old, parent_new = corrected[parent]
            pose = map_.keyframe(kf_id).pose
            corrected[kf_id] = (pose, parent_new @ (parent_old.inverse() @ pose))

        for kf_id, (_, new_pose) in corrected.items():
            map_.set_keyframe_pose(kf_id, new_pose)

        for mp in map_.map_points():
            position = result.optimized_points.get(mp.id)
            if position is None:
                ref = map_.resolve_keyframe(mp.reference_keyframe_id)
                if ref is None or ref not in corrected:
                    continue
                old, new = corrected[ref]
                position = new.transform_point(old.inverse_transform_points(mp.position)[0])
            map_.set_point_position(mp.id, position)
            map_.update_point_geometry(mp.id)
