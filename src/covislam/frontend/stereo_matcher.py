"""Sparse stereo matching and RGB-D depth association."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from .feature_detector import Features, ScalePyramid


@dataclass
class StereoDepth:
    """Per-left-keypoint stereo measurements.

    Attributes:
        right_u: N array of right-image u coordinates, -1 where unmatched
        depth: N array of metric depths, -1 where unknown
    """

    right_u: np.ndarray
    depth: np.ndarray

    @classmethod
    def unknown(cls, n: int) -> StereoDepth:
        return cls(right_u=-np.ones(n), depth=-np.ones(n))

    @property
    def n_valid(self) -> int:
        return int(np.count_nonzero(self.depth > 0))

    def __len__(self) -> int:
        return len(self.depth)


class StereoMatcher:
    """Sparse matcher for rectified stereo pairs using ORB descriptors.

    Candidates are brute-force Hamming matches filtered by descriptor
    distance, by the epipolar row band (scaled with the keypoint octave) and
    by the valid disparity range.
    """

    def __init__(
        self,
        bf: float,
        fx: float,
        pyramid: ScalePyramid,
        max_hamming_distance: int = 75,
        epipolar_threshold: float = 2.0,
        min_disparity: float = 0.0,
        max_disparity: float | None = None,
    ) -> None:
        """Initialize stereo matcher.

        Args:
            bf: Baseline times focal length
            fx: Horizontal focal length (pixels)
            pyramid: Scale pyramid used to widen the row band at coarse octaves
            max_hamming_distance: Maximum Hamming distance for a valid match
            epipolar_threshold: Row band (pixels) at octave 0
            min_disparity: Minimum disparity; zero disparity is always rejected
            max_disparity: Maximum disparity, defaults to fx (depth >= baseline)
        """
        self._bf_matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=True)
        self._bf = bf
        self._pyramid = pyramid
        self._max_distance = max_hamming_distance
        self._epipolar_threshold = epipolar_threshold
        self._min_disparity = min_disparity
        self._max_disparity = max_disparity if max_disparity is not None else fx

    def match(self, left: Features, right: Features) -> StereoDepth:
        """Associate each left keypoint with a right-image coordinate and depth."""
        result = StereoDepth.unknown(len(left))
        if len(left) == 0 or len(right) == 0:
            return result

        matches = self._bf_matcher.match(left.descriptors, right.descriptors)
        for match in matches:
            if match.distance > self._max_distance:
                continue
            i, j = match.queryIdx, match.trainIdx
            u_l, v_l = left.points[i]
            u_r, v_r = right.points[j]

            band = self._epipolar_threshold * self._pyramid.scale_factors[
                min(left.octaves[i], self._pyramid.n_levels - 1)
            ]
            if abs(v_l - v_r) > band:
                continue

            disparity = u_l - u_r
            if disparity <= max(self._min_disparity, 0.0) or disparity > self._max_disparity:
                continue

            result.right_u[i] = u_r
            result.depth[i] = self._bf / disparity

        return result


def depth_from_image(
    points: np.ndarray,
    depth_image: np.ndarray,
    depth_map_factor: float,
    bf: float,
) -> StereoDepth:
    """Look up registered depth for keypoints and synthesize a right coordinate.

    Args:
        points: Nx2 keypoint coordinates (distorted, as sampled in the image)
        depth_image: Registered depth image in raw units
        depth_map_factor: Raw units per metre
        bf: Virtual baseline times focal length

    Returns:
        StereoDepth with u_right = u - bf / depth for valid depths
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    result = StereoDepth.unknown(len(points))
    if len(points) == 0:
        return result

    h, w = depth_image.shape[:2]
    cols = np.round(points[:, 0]).astype(np.int64)
    rows = np.round(points[:, 1]).astype(np.int64)
    inside = (cols >= 0) & (cols < w) & (rows >= 0) & (rows < h)

    depth = np.full(len(points), -1.0)
    factor = depth_map_factor if depth_map_factor > 0 else 1.0
    depth[inside] = depth_image[rows[inside], cols[inside]].astype(np.float64) / factor
    valid = np.isfinite(depth) & (depth > 0)

    result.depth[valid] = depth[valid]
    result.right_u[valid] = points[valid, 0] - bf / depth[valid]
    return result
