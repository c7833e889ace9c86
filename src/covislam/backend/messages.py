"""Messages exchanged between the Tracker and the background workers.

The Tracker never mutates map structure after bootstrap; everything it wants
added travels to the Local Mapper inside a KeyFrameRequest. The workers run
as threads sharing the Map, so messages carry handles (ids) and owned
arrays rather than serialized copies.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from ..map.keyframe import KeyFrame


@dataclass
class KeyFrameRequest:
    """Tracker -> Local Mapper: a keyframe to insert.

    Attributes:
        keyframe: The new keyframe; ``map_points`` holds the ids of the map
            points the frame was matched to (-1 for free slots)
        parent_id: Reference keyframe the new one was tracked against; it
            becomes the spanning-tree parent
        new_points: Provisional close-depth points as (slot, world position),
            created together with the keyframe
        visible: Buffered map point id -> frames in which it was predicted visible
        found: Buffered map point id -> frames in which it was matched
        epoch: Map epoch the request was built in; stale after a reset
        registered: The keyframe is already in the map (bootstrap keyframes);
            insertion only computes its bag-of-words vector
    """

    keyframe: KeyFrame
    parent_id: int | None
    new_points: list[tuple[int, np.ndarray]] = field(default_factory=list)
    visible: dict[int, int] = field(default_factory=dict)
    found: dict[int, int] = field(default_factory=dict)
    epoch: int = 0
    registered: bool = False

    @property
    def keyframe_id(self) -> int:
        return self.keyframe.id


class Shutdown:
    """Queue sentinel asking a worker thread to exit."""


SHUTDOWN = Shutdown()
