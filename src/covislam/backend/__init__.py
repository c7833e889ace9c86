"""SLAM backend: local mapping worker and bundle adjustment."""

from .local_mapping import LocalMapper, LocalMappingResult
from .messages import SHUTDOWN, KeyFrameRequest, Shutdown
from .optimizer import BAProblem, BAResult, ScipyBundleAdjustment, problem_from_map
from .worker import BackgroundWorker

__all__ = [
    # Local Mapping
    "LocalMapper",
    "LocalMappingResult",
    # Workers
    "BackgroundWorker",
    # Bundle Adjustment
    "ScipyBundleAdjustment",
    "BAProblem",
    "BAResult",
    "problem_from_map",
    # Messages
    "KeyFrameRequest",
    "Shutdown",
    "SHUTDOWN",
]
