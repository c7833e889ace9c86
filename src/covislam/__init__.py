"""covislam - concurrent keyframe-based visual SLAM in Python."""

import logging

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .config import (
    CameraConfig,
    FeatureConfig,
    LocalMappingConfig,
    LoopClosingConfig,
    Sensor,
    SLAMConfig,
    TrackingConfig,
)
from .errors import (
    InitializationFailed,
    MapInconsistency,
    RelocalizationFailed,
    ResourceExhaustion,
    SessionStateError,
    SLAMError,
    TrackingLost,
)
from .frontend import SE3, FeatureDetector, Frame, FrameBuilder, PinholeCamera, Sim3
from .frontend.tracking import Tracker, TrackingState, TrajectoryRecord
from .map import KeyFrame, Map, MapPoint, MapSnapshot
from .backend import LocalMapper, ScipyBundleAdjustment
from .loop_closure import (
    GlobalBundleAdjustment,
    KeyFrameDatabase,
    LoopCloser,
    PoseGraph,
    VisualVocabulary,
)
from .io import load_map, read_tum, save_map, write_kitti, write_tum
from .system import PendingRequests, SLAMSystem

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "__version__",
    # Session
    "SLAMSystem",
    "PendingRequests",
    # Configuration
    "SLAMConfig",
    "Sensor",
    "CameraConfig",
    "FeatureConfig",
    "TrackingConfig",
    "LocalMappingConfig",
    "LoopClosingConfig",
    # Errors
    "SLAMError",
    "TrackingLost",
    "InitializationFailed",
    "RelocalizationFailed",
    "MapInconsistency",
    "ResourceExhaustion",
    "SessionStateError",
    # Geometry / frontend
    "SE3",
    "Sim3",
    "PinholeCamera",
    "FeatureDetector",
    "Frame",
    "FrameBuilder",
    "Tracker",
    "TrackingState",
    "TrajectoryRecord",
    # Map
    "Map",
    "MapSnapshot",
    "KeyFrame",
    "MapPoint",
    # Backend
    "LocalMapper",
    "ScipyBundleAdjustment",
    # Loop Closure
    "LoopCloser",
    "KeyFrameDatabase",
    "VisualVocabulary",
    "PoseGraph",
    "GlobalBundleAdjustment",
    # I/O
    "save_map",
    "load_map",
    "write_tum",
    "write_kitti",
    "read_tum",
]
