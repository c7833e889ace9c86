"""Session controller tying the Tracker, Local Mapper and Loop Closer together.

SLAMSystem owns every component of a session:

- the Map and the place-recognition index (KeyFrameDatabase)
- the Tracker, run on the caller's thread for every frame
- the Local Mapper and Loop Closer worker threads, started at construction

Mode switches and resets are requests: they are stored in a small pending
cell and applied at the start of the next tracking cycle, never while a frame
is being processed. Trajectories can only be exported after ``shutdown``,
since background optimization may still move keyframes until then.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .backend.local_mapping import LocalMapper
from .config import Sensor, SLAMConfig
from .errors import SessionStateError
from .frontend.camera import PinholeCamera
from .frontend.feature_detector import FeatureDetector, Features
from .frontend.frame import Frame, FrameBuilder
from .frontend.matcher import FeatureMatcher
from .frontend.pose import SE3
from .frontend.tracking import Tracker, TrackingState
from .io.map_store import load_map, save_map
from .io.trajectory import write_kitti, write_tum
from .loop_closure.loop_closing import LoopCloser
from .loop_closure.place_recognition import KeyFrameDatabase
from .loop_closure.vocabulary import VisualVocabulary
from .map import Map, MapSnapshot

logger = logging.getLogger(__name__)


@dataclass
class RequestSnapshot:
    """Requests taken from the pending cell in one cycle.

    Attributes:
        reset: A session reset was requested
        localization: True/False to enter/leave localization mode, None if
            no mode switch is pending
    """

    reset: bool = False
    localization: bool | None = None

    @property
    def empty(self) -> bool:
        return not self.reset and self.localization is None


class PendingRequests:
    """Mode-switch and reset requests raised from any thread.

    Each request is consumed exactly once by :meth:`take`. A later mode
    switch overrides an earlier one that was not consumed yet.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset = False
        self._localization: bool | None = None

    def request_reset(self) -> None:
        with self._lock:
            self._reset = True

    def request_localization(self, active: bool) -> None:
        with self._lock:
            self._localization = active

    def take(self) -> RequestSnapshot:
        with self._lock:
            snapshot = RequestSnapshot(reset=self._reset, localization=self._localization)
            self._reset = False
            self._localization = None
        return snapshot


class SLAMSystem:
    """Complete SLAM session: tracking, local mapping and loop closing.

    Example:
        >>> with SLAMSystem("settings.yaml", "vocabulary.npz") as slam:
        ...     for left, right, t in frames:
        ...         T_world_camera = slam.track_stereo(left, right, t)
        >>> slam.save_trajectory_tum("trajectory.txt")
    """

    def __init__(
        self,
        config: SLAMConfig | str | Path,
        vocabulary: VisualVocabulary | str | Path,
        map_path: str | Path | None = None,
        start_workers: bool = True,
    ) -> None:
        """Build the session and start its worker threads.

        Args:
            config: Session configuration or path to a YAML settings file
            vocabulary: Visual vocabulary or path to a vocabulary ``.npz``
            map_path: Optional saved map to continue from; the Tracker then
                starts by relocalizing against it
            start_workers: Start the Local Mapper and Loop Closer threads.
                When False, queued work is only processed through the
                workers' ``process_next``/``drain`` (tests, offline replay)

        Raises:
            ResourceExhaustion: If the settings, vocabulary or map file cannot
                be loaded
        """
        if not isinstance(config, SLAMConfig):
            config = SLAMConfig.from_yaml(config)
        if not isinstance(vocabulary, VisualVocabulary):
            vocabulary = VisualVocabulary.load(vocabulary)
        self._config = config
        self._vocabulary = vocabulary

        self._camera = PinholeCamera(config.camera)
        detector = FeatureDetector(config.features)
        init_detector = None
        if config.is_monocular:
            init_detector = FeatureDetector(
                config.features,
                n_features=config.features.n_features * config.features.init_feature_factor,
            )
        self._frame_builder = FrameBuilder(config.sensor, self._camera, detector, init_detector)

        self._map = Map(pyramid=detector.pyramid)
        self._database = KeyFrameDatabase()
        self._pending = PendingRequests()

        self._tracker = Tracker(
            config,
            self._camera,
            self._map,
            self._database,
            vocabulary,
            detector.pyramid,
            init_pyramid=init_detector.pyramid if init_detector is not None else None,
            reset_callback=self._pending.request_reset,
        )
        self._local_mapper = LocalMapper(
            config,
            self._camera,
            self._map,
            vocabulary,
            self._database,
            self._new_matcher(detector),
        )
        self._loop_closer = LoopCloser(
            config,
            self._camera,
            self._map,
            self._database,
            self._new_matcher(detector),
            local_mapper=self._local_mapper,
        )
        self._tracker.set_local_mapper(self._local_mapper)
        if config.loop_closing.enabled:
            self._local_mapper.set_loop_closer(self._loop_closer)

        if map_path is not None:
            load_map(map_path, self._map, vocabulary, self._database)
            self._tracker.resume_from_map()

        self._track_lock = threading.Lock()
        self._shut_down = False
        if start_workers:
            self._local_mapper.start()
            if config.loop_closing.enabled:
                self._loop_closer.start()
        logger.info(
            "SLAM session started (%s, %d vocabulary words)",
            config.sensor.value,
            vocabulary.n_words,
        )

    def _new_matcher(self, detector: FeatureDetector) -> FeatureMatcher:
        tracking = self._config.tracking
        return FeatureMatcher(
            detector.pyramid,
            threshold_low=tracking.descriptor_threshold_low,
            threshold_high=tracking.descriptor_threshold_high,
            ratio=tracking.nn_ratio,
        )

    # Frame ingestion

    def track_stereo(self, left: np.ndarray, right: np.ndarray, timestamp: float) -> np.ndarray | None:
        """Track a rectified stereo pair.

        Returns:
            4x4 T_world_camera, or None while not initialized or lost
        """
        self._check_sensor(Sensor.STEREO)
        return self._track(lambda: self._frame_builder.stereo(left, right, timestamp))

    def track_rgbd(self, image: np.ndarray, depth: np.ndarray, timestamp: float) -> np.ndarray | None:
        """Track an intensity image with registered depth."""
        self._check_sensor(Sensor.RGBD)
        return self._track(lambda: self._frame_builder.rgbd(image, depth, timestamp))

    def track_monocular(self, image: np.ndarray, timestamp: float) -> np.ndarray | None:
        """Track a single image."""
        self._check_sensor(Sensor.MONOCULAR)
        return self._track(
            lambda: self._frame_builder.monocular(
                image, timestamp, initializing=self._tracker.needs_initialization_features
            )
        )

    def track_monocular_features(
        self,
        keypoints: np.ndarray,
        descriptors: np.ndarray,
        timestamp: float,
        octaves: np.ndarray | None = None,
    ) -> np.ndarray | None:
        """Track pre-extracted keypoints (Nx2, distorted pixels) and ORB descriptors."""
        self._check_sensor(Sensor.MONOCULAR)
        features = Features(points=keypoints, descriptors=descriptors, octaves=octaves)
        return self._track(lambda: self._frame_builder.from_features(features, timestamp))

    def track_stereo_features(
        self,
        keypoints: np.ndarray,
        descriptors: np.ndarray,
        right_u: np.ndarray,
        timestamp: float,
        octaves: np.ndarray | None = None,
    ) -> np.ndarray | None:
        """Track pre-extracted left keypoints with their right-image u coordinates.

        Keypoints without a stereo match carry a negative ``right_u``.
        """
        self._check_sensor(Sensor.STEREO)
        features = Features(points=keypoints, descriptors=descriptors, octaves=octaves)
        right_u = np.asarray(right_u, dtype=np.float64).reshape(-1)
        if len(right_u) != len(features):
            raise ValueError(f"Expected {len(features)} right coordinates, got {len(right_u)}")
        disparity = features.points[:, 0] - right_u
        depth = np.full(len(features), -1.0)
        valid = (right_u >= 0) & (disparity > 0)
        depth[valid] = self._camera.bf / disparity[valid]
        return self._track(
            lambda: self._frame_builder.from_features(features, timestamp, depth=depth, right_u=right_u)
        )

    def track_rgbd_features(
        self,
        keypoints: np.ndarray,
        descriptors: np.ndarray,
        depth: np.ndarray,
        timestamp: float,
        octaves: np.ndarray | None = None,
    ) -> np.ndarray | None:
        """Track pre-extracted keypoints with metric depth (non-positive = unknown)."""
        self._check_sensor(Sensor.RGBD)
        features = Features(points=keypoints, descriptors=descriptors, octaves=octaves)
        return self._track(lambda: self._frame_builder.from_features(features, timestamp, depth=depth))

    def _check_sensor(self, sensor: Sensor) -> None:
        if self._shut_down:
            raise SessionStateError("The session has been shut down")
        if self._config.sensor is not sensor:
            raise SessionStateError(
                f"Session configured for {self._config.sensor.value} input, "
                f"not {sensor.value}"
            )

    def _track(self, build_frame) -> np.ndarray | None:
        with self._track_lock:
            self.apply_pending_requests()
            frame: Frame = build_frame()
            pose: SE3 | None = self._tracker.track(frame)
        return None if pose is None else pose.to_matrix()

    # Mode control

    def activate_localization_mode(self) -> None:
        """Stop map growth from the next frame on; only the pose is tracked."""
        self._pending.request_localization(True)

    def deactivate_localization_mode(self) -> None:
        self._pending.request_localization(False)

    def reset(self) -> None:
        """Request an empty map and a NOT_INITIALIZED tracker at the next frame."""
        self._pending.request_reset()

    def apply_pending_requests(self) -> RequestSnapshot:
        """Apply queued reset and mode-switch requests.

        Called at the start of every tracking cycle. Exposed for callers that
        need the requests honored without feeding another frame.
        """
        requests = self._pending.take()
        if requests.reset:
            self._reset_session()
        if requests.localization is True and not self._tracker.localization_mode:
            self._local_mapper.request_stop()
            if not self._local_mapper.wait_until_stopped(self._config.local_mapping.stop_timeout_s):
                logger.warning("Local mapper still busy while entering localization mode")
            self._tracker.localization_mode = True
            logger.info("Localization mode activated")
        elif requests.localization is False and self._tracker.localization_mode:
            self._tracker.localization_mode = False
            self._local_mapper.release()
            logger.info("Localization mode deactivated")
        return requests

    def _reset_session(self) -> None:
        logger.info("Resetting session")
        self._loop_closer.global_ba.abort()
        self._local_mapper.request_reset()
        self._loop_closer.request_reset()
        self._database.clear()
        self._map.clear()
        self._tracker.reset()
        self._frame_builder.reset_ids()

    # Shutdown

    def shutdown(self) -> None:
        """Let the workers finish their queued items, then stop and join them."""
        if self._shut_down:
            return
        with self._track_lock:
            self._shut_down = True
        self._local_mapper.shutdown()
        self._loop_closer.shutdown()
        self._loop_closer.global_ba.abort()
        logger.info(
            "SLAM session shut down: %d keyframes, %d map points, %d loops",
            self._map.num_keyframes,
            self._map.num_map_points,
            self._loop_closer.num_loops,
        )

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    def __enter__(self) -> SLAMSystem:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # Export

    def _check_shut_down(self) -> None:
        if not self._shut_down:
            raise SessionStateError("Trajectories can only be exported after shutdown()")

    def get_trajectory(self) -> list[tuple[float, np.ndarray]]:
        """Return (timestamp, T_world_camera) for every tracked frame.

        Poses are expressed through each frame's reference keyframe, so they
        include every later correction of that keyframe. Lost frames are
        omitted.

        Raises:
            SessionStateError: If called before shutdown
        """
        self._check_shut_down()
        trajectory = []
        with self._map.lock:
            for record in self._tracker.trajectory:
                if record.lost:
                    continue
                reference = self._map.resolve_pose(record.reference_keyframe_id)
                if reference is None:
                    pose = record.absolute_pose
                else:
                    pose = reference @ record.relative_pose
                trajectory.append((record.timestamp, pose.to_matrix()))
        return trajectory

    def get_keyframe_trajectory(self) -> list[tuple[float, np.ndarray]]:
        """Return (timestamp, T_world_camera) for every keyframe, by timestamp.

        Raises:
            SessionStateError: If called before shutdown
        """
        self._check_shut_down()
        with self._map.lock:
            rows = [(kf.timestamp, kf.pose.to_matrix()) for kf in self._map.keyframes()]
        return sorted(rows, key=lambda row: row[0])

    def save_trajectory_tum(self, path: str | Path) -> int:
        return write_tum(path, self.get_trajectory())

    def save_keyframe_trajectory_tum(self, path: str | Path) -> int:
        return write_tum(path, self.get_keyframe_trajectory())

    def save_trajectory_kitti(self, path: str | Path) -> int:
        return write_kitti(path, self.get_trajectory())

    # Persistence

    def save_map(self, path: str | Path) -> Path:
        """Write the current map; may be called while the session runs."""
        return save_map(path, self._map)

    # Accessors

    @property
    def config(self) -> SLAMConfig:
        return self._config

    @property
    def camera(self) -> PinholeCamera:
        return self._camera

    @property
    def vocabulary(self) -> VisualVocabulary:
        return self._vocabulary

    @property
    def map(self) -> Map:
        return self._map

    @property
    def keyframe_database(self) -> KeyFrameDatabase:
        return self._database

    @property
    def tracker(self) -> Tracker:
        return self._tracker

    @property
    def local_mapper(self) -> LocalMapper:
        return self._local_mapper

    @property
    def loop_closer(self) -> LoopCloser:
        return self._loop_closer

    @property
    def tracking_state(self) -> TrackingState:
        return self._tracker.state

    @property
    def localization_mode(self) -> bool:
        return self._tracker.localization_mode

    def snapshot(self) -> MapSnapshot:
        """Consistent copy of the map for display."""
        return self._map.snapshot()
