"""Keyframe insertion decision."""

from __future__ import annotations

from dataclasses import dataclass

from ..config import SLAMConfig


@dataclass
class TrackingQuality:
    """What the Tracker knows about the current frame when deciding.

    Attributes:
        frame_id: Id of the current frame
        num_inliers: Map point matches surviving pose refinement
        reference_matches: Points of the reference keyframe with enough
            observations to be considered stable
        tracked_close: Close-depth slots tracked to a map point
        untracked_close: Close-depth slots that could become new points
        num_keyframes: Keyframes in the map
    """

    frame_id: int
    num_inliers: int
    reference_matches: int
    tracked_close: int = 0
    untracked_close: int = 0
    num_keyframes: int = 0


@dataclass
class KeyframeDecision:
    """Outcome of the keyframe policy.

    Attributes:
        insert: A keyframe should be created from the current frame
        interrupt_mapping: The local mapper is busy; ask it to abandon its
            current local optimization so the keyframe is handled sooner
    """

    insert: bool
    interrupt_mapping: bool = False


class KeyframePolicy:
    """Decides when the current frame becomes a keyframe.

    A keyframe is requested when (a) enough frames have elapsed since the
    last keyframe or the local mapper is idle, and (b) the frame tracks
    clearly fewer points than the reference keyframe, or (stereo/RGB-D) few
    close points are tracked while many could be added.
    """

    def __init__(self, config: SLAMConfig) -> None:
        self._config = config
        self._tracking = config.tracking
        self._monocular = config.is_monocular
        self.last_keyframe_frame_id = 0
        self.last_relocalization_frame_id = -(10**9)

    def reset(self) -> None:
        self.last_keyframe_frame_id = 0
        self.last_relocalization_frame_id = -(10**9)

    def min_observations(self, num_keyframes: int) -> int:
        """Observation count a reference keyframe point needs to count as stable."""
        return 2 if num_keyframes <= 2 else 3

    def needs_close_points(self, quality: TrackingQuality) -> bool:
        if self._monocular:
            return False
        return (
            quality.tracked_close < self._tracking.close_points_tracked_min
            and quality.untracked_close > self._tracking.close_points_untracked_min
        )

    def decide(
        self,
        quality: TrackingQuality,
        mapper_idle: bool,
        mapper_queue_length: int,
        mapper_stopped: bool = False,
    ) -> KeyframeDecision:
        """Evaluate the insertion heuristic for a successfully tracked frame.

        Args:
            quality: Tracking statistics of the current frame
            mapper_idle: The local mapper accepts keyframes right now
            mapper_queue_length: Keyframes waiting in the local mapper queue
            mapper_stopped: The local mapper is paused (localization mode or
                loop correction)

        Returns:
            KeyframeDecision
        """
        if mapper_stopped:
            return KeyframeDecision(insert=False)

        max_frames = self._config.max_frames_between_keyframes
        min_frames = self._tracking.min_frames_between_keyframes

        # Right after relocalization the map around the camera is unreliable
        since_relocalization = quality.frame_id - self.last_relocalization_frame_id
        if since_relocalization < max_frames and quality.num_keyframes > max_frames:
            return KeyframeDecision(insert=False)

        if quality.num_keyframes < 2:
            ratio = self._tracking.tracked_ratio_single_keyframe
        elif self._monocular:
            ratio = self._tracking.tracked_ratio_monocular
        else:
            ratio = self._tracking.tracked_ratio_stereo

        need_close = self.needs_close_points(quality)
        since_keyframe = quality.frame_id - self.last_keyframe_frame_id

        timeout = since_keyframe >= max_frames
        idle = since_keyframe >= min_frames and mapper_idle
        weak = not self._monocular and (
            quality.num_inliers < 0.25 * quality.reference_matches or need_close
        )
        degraded = (
            quality.num_inliers < ratio * quality.reference_matches or need_close
        ) and quality.num_inliers > 15

        if not ((timeout or idle or weak) and degraded):
            return KeyframeDecision(insert=False)
        if mapper_idle:
            return KeyframeDecision(insert=True)
        # Busy mapper: stereo/RGB-D may still queue a few keyframes
        if not self._monocular and mapper_queue_length < 3:
            return KeyframeDecision(insert=True, interrupt_mapping=True)
        return KeyframeDecision(insert=False, interrupt_mapping=True)

    def keyframe_inserted(self, frame_id: int) -> None:
        self.last_keyframe_frame_id = frame_id

    def relocalized(self, frame_id: int) -> None:
        self.last_relocalization_frame_id = frame_id
