"""Configuration for the SLAM session.

Every empirically tuned threshold of the pipeline lives here instead of being
hard-coded in the components. Settings can be built in code or loaded from a
YAML file with one section per component:

    sensor: stereo
    camera:
      fx: 435.2
      fy: 435.2
      cx: 367.4
      cy: 252.2
      bf: 47.9
    tracking:
      min_inliers: 30
    loop_closing:
      covisibility_consistency_threshold: 3
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np
import yaml

from .errors import ResourceExhaustion


class Sensor(Enum):
    """Input sensor configuration."""

    MONOCULAR = "monocular"
    STEREO = "stereo"
    RGBD = "rgbd"


@dataclass
class CameraConfig:
    """Pinhole intrinsics, distortion and stereo/depth parameters."""

    fx: float = 500.0
    fy: float = 500.0
    cx: float = 320.0
    cy: float = 240.0
    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0
    width: int = 640
    height: int = 480
    fps: float = 30.0
    bf: float = 0.0  # stereo baseline (m) times fx (px)
    th_depth: float = 35.0  # close/far split, in baselines
    depth_map_factor: float = 1.0  # RGB-D raw depth units per metre

    def to_matrix(self) -> np.ndarray:
        """Return 3x3 camera intrinsic matrix K."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    @property
    def distortion(self) -> np.ndarray:
        """Return distortion coefficients as (5,) array for OpenCV."""
        return np.array([self.k1, self.k2, self.p1, self.p2, self.k3], dtype=np.float64)


@dataclass
class FeatureConfig:
    """ORB extractor and scale pyramid parameters."""

    n_features: int = 1000
    scale_factor: float = 1.2
    n_levels: int = 8
    fast_threshold: int = 20
    edge_threshold: int = 31
    init_feature_factor: int = 2  # monocular bootstrap extracts this many times more


@dataclass
class TrackingConfig:
    """Tracker thresholds (state machine, matching and keyframe decision)."""

    min_init_features: int = 500  # stereo/RGB-D bootstrap
    mono_init_min_features: int = 100
    mono_init_min_matches: int = 100
    mono_init_min_triangulated: int = 50
    mono_init_min_parallax_deg: float = 1.0
    mono_init_ransac_threshold: float = 1.0
    min_inliers: int = 30
    min_inliers_after_relocalization: int = 50
    motion_model_min_matches: int = 20
    reference_keyframe_min_matches: int = 15
    relocalization_min_matches: int = 15
    relocalization_min_inliers: int = 50
    relocalization_max_candidates: int = 10
    motion_search_radius_mono: float = 15.0
    motion_search_radius_stereo: float = 7.0
    local_map_search_radius: float = 1.0
    max_local_keyframes: int = 80
    descriptor_threshold_low: int = 50
    descriptor_threshold_high: int = 100
    nn_ratio: float = 0.75
    min_frames_between_keyframes: int = 0
    max_frames_between_keyframes: int | None = None  # defaults to camera fps
    tracked_ratio_monocular: float = 0.9
    tracked_ratio_stereo: float = 0.75
    tracked_ratio_single_keyframe: float = 0.4
    close_points_tracked_min: int = 100
    close_points_untracked_min: int = 70
    reset_if_lost_within_keyframes: int = 5
    pose_optimization_rounds: int = 4


@dataclass
class LocalMappingConfig:
    """Local Mapper thresholds (point creation/culling, local BA, keyframe culling)."""

    recent_point_min_found_ratio: float = 0.25
    recent_point_min_observers_mono: int = 2
    recent_point_min_observers_stereo: int = 3
    recent_point_grace_keyframes: int = 2
    recent_point_trusted_keyframes: int = 3
    triangulation_neighbors_mono: int = 20
    triangulation_neighbors_stereo: int = 10
    min_baseline_depth_ratio: float = 0.01
    max_parallax_cos: float = 0.9998
    scale_consistency_factor: float = 1.5
    fuse_neighbors_mono: int = 20
    fuse_neighbors_stereo: int = 10
    fuse_search_radius: float = 3.0
    local_ba_iterations: int = 10
    max_fixed_keyframes: int = 30
    redundant_observation_ratio: float = 0.9
    redundant_min_observers: int = 3
    stop_timeout_s: float = 2.0


@dataclass
class LoopClosingConfig:
    """Loop Closer thresholds (detection, verification, correction)."""

    enabled: bool = True
    min_keyframes_since_last_loop: int = 10
    min_keyframes_in_map: int = 10
    covisibility_consistency_threshold: int = 3
    common_words_ratio: float = 0.8
    accumulated_score_ratio: float = 0.75
    min_descriptor_matches: int = 20
    min_sim3_inliers: int = 20
    ransac_iterations: int = 300
    ransac_min_set: int = 3
    min_projection_matches: int = 40
    fuse_search_radius: float = 4.0
    run_global_ba: bool = True
    global_ba_iterations: int = 10


@dataclass
class SLAMConfig:
    """Aggregate configuration for a SLAM session."""

    sensor: Sensor = Sensor.STEREO
    camera: CameraConfig = field(default_factory=CameraConfig)
    features: FeatureConfig = field(default_factory=FeatureConfig)
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    local_mapping: LocalMappingConfig = field(default_factory=LocalMappingConfig)
    loop_closing: LoopClosingConfig = field(default_factory=LoopClosingConfig)

    @property
    def is_monocular(self) -> bool:
        """Return True for a single-camera session."""
        return self.sensor == Sensor.MONOCULAR

    @property
    def max_frames_between_keyframes(self) -> int:
        """Return the frame gap after which a keyframe is always considered."""
        if self.tracking.max_frames_between_keyframes is not None:
            return self.tracking.max_frames_between_keyframes
        return int(self.camera.fps)

    @property
    def depth_threshold(self) -> float:
        """Return the metric depth below which a stereo/RGB-D point is "close"."""
        if self.camera.fx <= 0:
            return 0.0
        return self.camera.bf * self.camera.th_depth / self.camera.fx

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SLAMConfig:
        """Build a configuration from nested dictionaries.

        Args:
            data: Mapping with optional keys ``sensor`` and one sub-mapping per
                component section

        Returns:
            Configured SLAMConfig

        Raises:
            ValueError: If a section or key is unknown or the sensor is invalid
        """
        sections = {
            "camera": CameraConfig,
            "features": FeatureConfig,
            "tracking": TrackingConfig,
            "local_mapping": LocalMappingConfig,
            "loop_closing": LoopClosingConfig,
        }
        kwargs: dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key == "sensor":
                try:
                    kwargs["sensor"] = (
                        value if isinstance(value, Sensor) else Sensor(str(value).lower())
                    )
                except ValueError as e:
                    raise ValueError(f"Invalid sensor: {value!r}") from e
            elif key in sections:
                kwargs[key] = _build_section(sections[key], value or {}, key)
            else:
                raise ValueError(f"Unknown configuration section: {key!r}")
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: str | Path) -> SLAMConfig:
        """Load configuration from a YAML settings file.

        Args:
            path: Path to the settings file

        Returns:
            Configured SLAMConfig

        Raises:
            ResourceExhaustion: If the file is missing or cannot be parsed
            ValueError: If the file contains unknown keys
        """
        path = Path(path)
        if not path.exists():
            raise ResourceExhaustion(f"Settings file not found: {path}")

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ResourceExhaustion(f"Invalid settings file {path}: {e}") from e

        if data is not None and not isinstance(data, dict):
            raise ResourceExhaustion(f"Settings file {path} must contain a mapping")

        return cls.from_dict(data or {})


def _build_section(section_cls: type, values: dict[str, Any], name: str) -> Any:
    known = {f.name for f in fields(section_cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown keys in section {name!r}: {sorted(unknown)}")
    return section_cls(**values)
