"""Pose-graph correction for loop closures.

When a loop is accepted, the keyframes around the query keyframe (the
"current side") are known to be off by a similarity transform, while the
keyframes around the matched keyframe (the "loop side") are taken as
reference. The correction is distributed over the spanning tree in closed
form: every keyframe receives a fraction of the transform that grows with
its tree distance from the loop side and shrinks with its distance from the
current side. Map points follow their reference keyframe.

Unlike bundle adjustment this touches poses only through one pass over the
tree; the global bundle adjustment started afterwards refines the result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

import numpy as np

from ..frontend.pose import Sim3
from ..map import Map

logger = logging.getLogger(__name__)


@dataclass
class CorrectionResult:
    """Outcome of a pose-graph correction.

    Attributes:
        corrections: Keyframe id -> world-frame similarity applied to it
        weights: Keyframe id -> fraction of the loop correction applied
        corrected_points: Number of map points moved
    """

    corrections: dict[int, Sim3] = field(default_factory=dict)
    weights: dict[int, float] = field(default_factory=dict)
    corrected_points: int = 0


class PoseGraph:
    """Distributes a loop correction over the keyframes of a map."""

    def __init__(self, map_: Map) -> None:
        self._map = map_

    def correction_weights(
        self, current_side: Iterable[int], loop_side: Iterable[int]
    ) -> dict[int, float]:
        """Fraction of the correction for every keyframe, from 0 (loop side) to 1 (current side).

        A keyframe at tree distance ``d_cur`` from the current side and
        ``d_loop`` from the loop side gets ``d_loop / (d_loop + d_cur)``.
        """
        current_side = set(current_side)
        loop_side = set(loop_side) - current_side
        graph = self._map.graph
        d_cur = graph.tree_distances(*current_side) if current_side else {}
        d_loop = graph.tree_distances(*loop_side) if loop_side else {}

        weights: dict[int, float] = {}
        for kf_id in self._map.keyframe_ids():
            if kf_id in current_side:
                weights[kf_id] = 1.0
            elif kf_id in loop_side:
                weights[kf_id] = 0.0
            elif kf_id not in d_cur:
                weights[kf_id] = 0.0
            elif kf_id not in d_loop:
                weights[kf_id] = 1.0
            else:
                dc, dl = d_cur[kf_id], d_loop[kf_id]
                weights[kf_id] = dl / (dl + dc)
        return weights

    def correct(
        self,
        correction: Sim3,
        current_side: Iterable[int],
        loop_side: Iterable[int],
        pivot: np.ndarray,
    ) -> CorrectionResult:
        """Apply a loop correction to every keyframe and map point.

        Must be called inside a map transaction.

        Args:
            correction: World-frame similarity that moves the current side
                onto the loop side
            current_side: Query keyframe and its covisible neighbours
            loop_side: Matched keyframe and its covisible neighbours
            pivot: Fixed point of the partial corrections (the matched
                keyframe's camera centre), so that fractional rotations
                turn about the loop rather than the world origin

        Returns:
            The applied corrections
        """
        map_ = self._map
        weights = self.correction_weights(current_side, loop_side)
        to_pivot = Sim3(rotation=np.eye(3), translation=-np.asarray(pivot, dtype=np.float64))
        from_pivot = to_pivot.inverse()
        local = to_pivot @ correction @ from_pivot

        result = CorrectionResult(weights=weights)
        for kf_id, weight in weights.items():
            if weight <= 0.0:
                continue
            if weight >= 1.0:
                C = correction
            else:
                C = from_pivot @ local.power(weight) @ to_pivot
            result.corrections[kf_id] = C
            map_.set_keyframe_pose(kf_id, C.correct_pose(map_.keyframe(kf_id).pose))

        for mp in map_.map_points():
            ref = map_.resolve_keyframe(mp.reference_keyframe_id)
            if ref is None:
                ref = min(mp.observers)
            C = result.corrections.get(ref)
            if C is None:
                continue
            map_.set_point_position(mp.id, C.transform_point(mp.position))
            map_.update_point_geometry(mp.id)
            result.corrected_points += 1

        logger.info(
            "Pose graph: corrected %d keyframes and %d map points (scale %.3f)",
            len(result.corrections),
            result.corrected_points,
            correction.scale,
        )
        return result
