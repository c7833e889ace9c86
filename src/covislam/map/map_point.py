"""Map point (3D landmark) record."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from ..frontend.feature_detector import ScalePyramid


@dataclass
class MapPoint:
    """A 3D landmark in the map.

    Map points never own keyframes: ``observers`` maps observing keyframe ids
    to the feature slot holding the observation, and all navigation goes
    through the owning Map.

    Attributes:
        id: Stable handle
        position: 3D position in world frame
        descriptor: Representative ORB descriptor (32 bytes), the observation
            descriptor with least median Hamming distance to the others
        first_keyframe_id: Keyframe that created the point
        reference_keyframe_id: Keyframe used to correct the point after loops
        observers: keyframe id -> slot index
        n_obs: Observation weight (stereo observations count twice)
        normal: Mean unit viewing direction
        min_distance: Lower bound of the scale-invariance distance range
        max_distance: Upper bound of the scale-invariance distance range
        visible: Frames in which the point was predicted to be visible
        found: Frames in which the point was matched
    """

    id: int
    position: np.ndarray
    descriptor: np.ndarray
    first_keyframe_id: int
    reference_keyframe_id: int
    observers: dict[int, int] = field(default_factory=dict)
    n_obs: int = 0
    normal: np.ndarray = field(default_factory=lambda: np.zeros(3))
    min_distance: float = 0.0
    max_distance: float = 0.0
    visible: int = 1
    found: int = 1

    def __post_init__(self) -> None:
        self.position = np.asarray(self.position, dtype=np.float64).flatten()
        self.descriptor = np.asarray(self.descriptor, dtype=np.uint8).flatten()
        self.normal = np.asarray(self.normal, dtype=np.float64).flatten()

    @property
    def num_observers(self) -> int:
        return len(self.observers)

    @property
    def found_ratio(self) -> float:
        """Return the fraction of predicted sightings that were matched."""
        return self.found / self.visible if self.visible > 0 else 0.0

    def is_in_distance_range(self, distance: float) -> bool:
        return 0.8 * self.min_distance <= distance <= 1.2 * self.max_distance

    def predict_scale(self, distance: float, pyramid: ScalePyramid) -> int:
        """Predict the octave the point would be detected at from ``distance``."""
        return int(pyramid.predict_level(np.array([distance]), np.array([self.max_distance]))[0])

    def copy(self) -> MapPoint:
        return MapPoint(
            id=self.id,
            position=self.position.copy(),
            descriptor=self.descriptor.copy(),
            first_keyframe_id=self.first_keyframe_id,
            reference_keyframe_id=self.reference_keyframe_id,
            observers=dict(self.observers),
            n_obs=self.n_obs,
            normal=self.normal.copy(),
            min_distance=self.min_distance,
            max_distance=self.max_distance,
            visible=self.visible,
            found=self.found,
        )
