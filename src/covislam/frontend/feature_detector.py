"""ORB feature detection and scale-pyramid metadata."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from ..config import FeatureConfig


@dataclass
class Features:
    """Container for detected (or externally supplied) image features.

    Attributes:
        points: Nx2 array of keypoint (u, v) coordinates, distorted pixels
        descriptors: Nx32 array of ORB binary descriptors (uint8)
        octaves: N array of pyramid levels the keypoints were detected at
    """

    points: np.ndarray
    descriptors: np.ndarray
    octaves: np.ndarray

    def __post_init__(self) -> None:
        self.points = np.asarray(self.points, dtype=np.float64).reshape(-1, 2)
        if self.descriptors is None or len(self.points) == 0:
            self.descriptors = np.empty((0, 32), dtype=np.uint8)
        self.descriptors = np.ascontiguousarray(self.descriptors, dtype=np.uint8)
        if self.octaves is None:
            self.octaves = np.zeros(len(self.points), dtype=np.int32)
        self.octaves = np.asarray(self.octaves, dtype=np.int32).reshape(-1)

        if len(self.descriptors) != len(self.points) or len(self.octaves) != len(self.points):
            raise ValueError(
                f"Feature arrays disagree: {len(self.points)} points, "
                f"{len(self.descriptors)} descriptors, {len(self.octaves)} octaves"
            )

    @classmethod
    def empty(cls) -> Features:
        return cls(
            points=np.empty((0, 2)),
            descriptors=np.empty((0, 32), dtype=np.uint8),
            octaves=np.empty(0, dtype=np.int32),
        )

    @classmethod
    def from_keypoints(
        cls, keypoints: tuple[cv2.KeyPoint, ...], descriptors: np.ndarray | None
    ) -> Features:
        """Build from OpenCV keypoints and their descriptors."""
        if not keypoints or descriptors is None:
            return cls.empty()
        return cls(
            points=np.array([kp.pt for kp in keypoints], dtype=np.float64),
            descriptors=descriptors,
            octaves=np.array([kp.octave & 0xFF for kp in keypoints], dtype=np.int32),
        )

    def __len__(self) -> int:
        """Return number of features."""
        return len(self.points)


@dataclass
class ScalePyramid:
    """Per-level scale factors and measurement variances of the ORB pyramid."""

    scale_factor: float
    n_levels: int

    def __post_init__(self) -> None:
        levels = np.arange(self.n_levels)
        self.scale_factors = self.scale_factor**levels
        self.inv_scale_factors = 1.0 / self.scale_factors
        self.level_sigma2 = self.scale_factors**2
        self.inv_level_sigma2 = 1.0 / self.level_sigma2
        self.log_scale_factor = float(np.log(self.scale_factor))

    def sigma2(self, octaves: np.ndarray) -> np.ndarray:
        octaves = np.clip(np.asarray(octaves, dtype=np.int64), 0, self.n_levels - 1)
        return self.level_sigma2[octaves]

    def predict_level(self, distance: np.ndarray, max_distance: np.ndarray) -> np.ndarray:
        """Predict the octave a point at ``distance`` should be observed at."""
        ratio = np.asarray(max_distance, dtype=np.float64) / np.maximum(distance, 1e-9)
        level = np.ceil(np.log(np.maximum(ratio, 1e-9)) / self.log_scale_factor)
        return np.clip(level, 0, self.n_levels - 1).astype(np.int32)


class FeatureDetector:
    """ORB feature detector for sparse feature extraction.

    ORB (Oriented FAST and Rotated BRIEF) is a fast, rotation-invariant
    feature detector that produces binary descriptors suitable for
    real-time SLAM applications.
    """

    def __init__(self, config: FeatureConfig | None = None, n_features: int | None = None) -> None:
        """Initialize ORB detector.

        Args:
            config: Extractor parameters (defaults to FeatureConfig())
            n_features: Override for the maximum number of features, used to
                extract more features during monocular bootstrap
        """
        self._config = config or FeatureConfig()
        self._n_features = n_features or self._config.n_features
        self._orb = cv2.ORB_create(
            nfeatures=self._n_features,
            scaleFactor=self._config.scale_factor,
            nlevels=self._config.n_levels,
            edgeThreshold=self._config.edge_threshold,
            fastThreshold=self._config.fast_threshold,
        )
        self.pyramid = ScalePyramid(self._config.scale_factor, self._config.n_levels)

    def detect(self, image: np.ndarray, mask: np.ndarray | None = None) -> Features:
        """Detect ORB features in an image.

        Args:
            image: Grayscale image (uint8). Color images are converted.
            mask: Optional binary mask where 255 = detect, 0 = ignore

        Returns:
            Features with keypoint coordinates, descriptors and octaves
        """
        if image.ndim == 3:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        keypoints, descriptors = self._orb.detectAndCompute(image, mask)
        return Features.from_keypoints(tuple(keypoints or ()), descriptors)

    @property
    def n_features(self) -> int:
        """Return maximum number of features to detect."""
        return self._n_features


# Bit counts for every byte value
_POPCOUNT = np.array([bin(i).count("1") for i in range(256)], dtype=np.uint8)


def hamming_distance(a: np.ndarray, b: np.ndarray) -> int:
    """Return the Hamming distance between two 32-byte descriptors."""
    return int(_POPCOUNT[np.bitwise_xor(a, b)].sum())


def hamming_matrix(a: np.ndarray, b: np.ndarray, block: int = 256) -> np.ndarray:
    """Return the (N, M) matrix of Hamming distances between descriptor sets."""
    a = np.asarray(a, dtype=np.uint8).reshape(-1, 32)
    b = np.asarray(b, dtype=np.uint8).reshape(-1, 32)
    out = np.empty((len(a), len(b)), dtype=np.int32)
    for start in range(0, len(a), block):
        xor = np.bitwise_xor(a[start : start + block, None, :], b[None, :, :])
        out[start : start + block] = _POPCOUNT[xor].sum(axis=2, dtype=np.int32)
    return out
