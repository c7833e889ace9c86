"""Shared map: keyframe and map point arenas with invariant-preserving mutators.

All access goes through the map's re-entrant lock. Single reads lock
internally; multi-step reads hold ``map.lock`` and multi-step mutations run
inside ``map.transaction()``, which journals undo actions so that an
exception raised midway rolls the map back to its state at entry.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

import numpy as np

from ..errors import MapInconsistency
from ..frontend.feature_detector import ScalePyramid, hamming_matrix
from ..frontend.pose import SE3
from .covisibility import CovisibilityGraph
from .keyframe import KeyFrame
from .map_point import MapPoint

logger = logging.getLogger(__name__)


@dataclass
class MapSnapshot:
    """Consistent copy of the map geometry for display or export."""

    revision: int
    big_change_index: int
    keyframe_ids: np.ndarray  # (K,)
    keyframe_timestamps: np.ndarray  # (K,)
    keyframe_poses: np.ndarray  # (K, 4, 4) T_world_camera
    point_ids: np.ndarray  # (P,)
    point_positions: np.ndarray  # (P, 3)
    spanning_edges: list[tuple[int, int]]
    covisibility_edges: list[tuple[int, int, int]]
    loop_edges: list[tuple[int, int]]


class Map:
    """Owner of all keyframes and map points.

    Cross references are integer handles. ``revision`` is incremented on every
    structural change (entities or edges added or removed), ``big_change_index``
    after loop corrections and global bundle adjustment, and ``epoch`` on
    every reset so that in-flight background work can detect staleness.
    """

    def __init__(
        self,
        pyramid: ScalePyramid | None = None,
        min_covisibility_weight: int = 15,
    ) -> None:
        self._lock = threading.RLock()
        self._pyramid = pyramid or ScalePyramid(1.2, 8)
        self._graph = CovisibilityGraph(min_covisibility_weight)

        self._keyframes: dict[int, KeyFrame] = {}
        self._points: dict[int, MapPoint] = {}
        # Erased keyframe -> (parent id, T_parent_keyframe) for pose resolution
        self._tombstones: dict[int, tuple[int, SE3]] = {}
        # Fused map point -> surviving map point
        self._replaced: dict[int, int] = {}
        # Both tables live until clear(): one small entry per erased entity

        self._keyframe_ids = itertools.count()
        self._point_ids = itertools.count()
        self._root_id: int | None = None
        self._journal: list[Callable[[], None]] | None = None

        self.revision = 0
        self.big_change_index = 0
        self.epoch = 0
        self.reference_keyframe_id: int | None = None

    # Locking

    @property
    def lock(self) -> threading.RLock:
        """Re-entrant lock guarding every read and write."""
        return self._lock

    @contextmanager
    def transaction(self) -> Iterator[Map]:
        """Scoped guard for a multi-step mutation.

        Nested transactions join the outermost one. If the body raises, every
        journaled change is undone in reverse order and the exception
        propagates.
        """
        with self._lock:
            if self._journal is not None:
                yield self
                return

            self._journal = []
            revision = self.revision
            try:
                yield self
            except BaseException:
                journal, self._journal = self._journal, None
                for undo in reversed(journal):
                    undo()
                self.revision = revision
                logger.debug("Rolled back map transaction (%d actions)", len(journal))
                raise
            self._journal = None

    def _record(self, undo: Callable[[], None]) -> None:
        if self._journal is not None:
            self._journal.append(undo)

    def _touch(self) -> None:
        self.revision += 1

    # Identity

    @property
    def pyramid(self) -> ScalePyramid:
        return self._pyramid

    def new_keyframe_id(self) -> int:
        with self._lock:
            return next(self._keyframe_ids)

    def advance_ids(self, next_keyframe_id: int, next_point_id: int) -> None:
        with self._lock:
            self._keyframe_ids = itertools.count(next_keyframe_id)
            self._point_ids = itertools.count(next_point_id)

    # Read access

    @property
    def graph(self) -> CovisibilityGraph:
        """Covisibility graph; hold ``map.lock`` while traversing it."""
        return self._graph

    @property
    def root_id(self) -> int | None:
        return self._root_id

    @property
    def num_keyframes(self) -> int:
        with self._lock:
            return len(self._keyframes)

    @property
    def num_map_points(self) -> int:
        with self._lock:
            return len(self._points)

    def keyframe(self, kf_id: int) -> KeyFrame:
        with self._lock:
            try:
                return self._keyframes[kf_id]
            except KeyError:
                raise KeyError(f"Keyframe {kf_id} not in map") from None

    def get_keyframe(self, kf_id: int | None) -> KeyFrame | None:
        with self._lock:
            return self._keyframes.get(kf_id) if kf_id is not None else None

    def map_point(self, mp_id: int) -> MapPoint:
        with self._lock:
            try:
                return self._points[mp_id]
            except KeyError:
                raise KeyError(f"Map point {mp_id} not in map") from None

    def get_map_point(self, mp_id: int) -> MapPoint | None:
        with self._lock:
            return self._points.get(mp_id)

    def has_keyframe(self, kf_id: int) -> bool:
        with self._lock:
            return kf_id in self._keyframes

    def has_map_point(self, mp_id: int) -> bool:
        with self._lock:
            return mp_id in self._points

    def keyframes(self) -> list[KeyFrame]:
        """Return all keyframes ordered by id."""
        with self._lock:
            return [self._keyframes[k] for k in sorted(self._keyframes)]

    def keyframe_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._keyframes)

    def map_points(self) -> list[MapPoint]:
        with self._lock:
            return [self._points[k] for k in sorted(self._points)]

    def map_point_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._points)

    @property
    def max_keyframe_id(self) -> int:
        with self._lock:
            return max(self._keyframes) if self._keyframes else -1

    def resolve_point(self, mp_id: int) -> int | None:
        """Follow fusion replacements; return the live id or None if culled.

        Replacement chains are acyclic: a point is only ever replaced by a
        live one and ids are never reused. Outside a transaction the visited
        chain is compressed to point straight at the result.
        """
        with self._lock:
            visited = []
            while mp_id not in self._points:
                visited.append(mp_id)
                mp_id = self._replaced.get(mp_id, -1)
                if mp_id < 0:
                    return None
            if len(visited) > 1 and self._journal is None:
                for old_id in visited:
                    self._replaced[old_id] = mp_id
            return mp_id

    def covisible_keyframes(self, kf_id: int, n: int | None = None) -> list[int]:
        """Return up to ``n`` covisible keyframes ordered by decreasing weight."""
        with self._lock:
            return self._graph.best_covisible(kf_id, n)

    def covisibility_weight(self, kf1_id: int, kf2_id: int) -> int:
        with self._lock:
            return self._graph.weight(kf1_id, kf2_id)

    def parent(self, kf_id: int) -> int | None:
        with self._lock:
            return self._graph.parent(kf_id)

    def children(self, kf_id: int) -> set[int]:
        with self._lock:
            return self._graph.children(kf_id)

    def loop_edges(self, kf_id: int) -> set[int]:
        with self._lock:
            return self._graph.loop_edges(kf_id)

    def tracked_point_count(self, kf_id: int, min_observations: int = 1) -> int:
        """Count map points of ``kf_id`` with at least ``min_observations`` weight."""
        with self._lock:
            kf = self._keyframes[kf_id]
            if min_observations <= 0:
                return int(np.count_nonzero(kf.map_points >= 0))
            return sum(
                1
                for mp_id in kf.map_points
                if mp_id >= 0 and self._points[int(mp_id)].n_obs >= min_observations
            )

    def point_positions(self, mp_ids: list[int] | np.ndarray) -> np.ndarray:
        with self._lock:
            if len(mp_ids) == 0:
                return np.empty((0, 3))
            return np.array([self._points[int(i)].position for i in mp_ids])

    def resolve_pose(self, kf_id: int) -> SE3 | None:
        """Return the pose of a keyframe, following culled keyframes to a live ancestor."""
        with self._lock:
            relative = SE3.identity()
            current = kf_id
            for _ in range(len(self._tombstones) + 1):
                kf = self._keyframes.get(current)
                if kf is not None:
                    return kf.pose @ relative
                if current not in self._tombstones:
                    return None
                parent_id, T_parent_kf = self._tombstones[current]
                relative = T_parent_kf @ relative
                current = parent_id
            return None

    def resolve_keyframe(self, kf_id: int | None) -> int | None:
        """Return ``kf_id`` if live, else its nearest live ancestor at culling time."""
        with self._lock:
            current = kf_id
            for _ in range(len(self._tombstones) + 1):
                if current is None or current in self._keyframes:
                    return current
                if current not in self._tombstones:
                    return None
                current = self._tombstones[current][0]
            return None

    def snapshot(self) -> MapSnapshot:
        """Copy keyframe poses, point positions and edges under the lock."""
        with self._lock:
            kf_ids = sorted(self._keyframes)
            mp_ids = sorted(self._points)
            covis = []
            for kf_id in kf_ids:
                for other, weight in self._graph.get_connected_keyframes(kf_id):
                    if other > kf_id:
                        covis.append((kf_id, other, weight))
            return MapSnapshot(
                revision=self.revision,
                big_change_index=self.big_change_index,
                keyframe_ids=np.array(kf_ids, dtype=np.int64),
                keyframe_timestamps=np.array(
                    [self._keyframes[k].timestamp for k in kf_ids], dtype=np.float64
                ),
                keyframe_poses=np.array(
                    [self._keyframes[k].pose.to_matrix() for k in kf_ids]
                ).reshape(-1, 4, 4),
                point_ids=np.array(mp_ids, dtype=np.int64),
                point_positions=np.array(
                    [self._points[i].position for i in mp_ids]
                ).reshape(-1, 3),
                spanning_edges=[
                    (self._graph.parent(k), k)
                    for k in kf_ids
                    if self._graph.parent(k) is not None
                ],
                covisibility_edges=covis,
                loop_edges=sorted(
                    {
                        (min(k, o), max(k, o))
                        for k in kf_ids
                        for o in self._graph.loop_edges(k)
                    }
                ),
            )

    # Keyframe mutation

    def add_keyframe(self, keyframe: KeyFrame, parent_id: int | None) -> None:
        """Register a keyframe and the observations listed in its slots.

        Slot associations to map points that no longer exist (culled since
        the keyframe was built) are dropped; fused points are followed to the
        surviving point.

        Raises:
            MapInconsistency: On duplicate id, missing parent, or a second root
        """
        with self._lock:
            if keyframe.id in self._keyframes:
                raise MapInconsistency(f"Keyframe {keyframe.id} already in map")
            if parent_id is None and self._keyframes:
                raise MapInconsistency("Only the first keyframe may be the root")
            if parent_id is not None and parent_id not in self._keyframes:
                raise MapInconsistency(f"Parent keyframe {parent_id} not in map")

            self._keyframes[keyframe.id] = keyframe
            self._graph.add_node(keyframe.id, parent_id)
            if parent_id is None:
                self._root_id = keyframe.id
            self._record(lambda: self._undo_add_keyframe(keyframe.id))

            slots = np.flatnonzero(keyframe.map_points >= 0)
            requested = keyframe.map_points[slots].copy()
            keyframe.map_points[slots] = -1
            for slot, mp_id in zip(slots, requested):
                live = self.resolve_point(int(mp_id))
                if live is not None and keyframe.id not in self._points[live].observers:
                    self._attach(live, keyframe.id, int(slot))
            self._touch()

    def _undo_add_keyframe(self, kf_id: int) -> None:
        self._graph.remove_node(kf_id)
        self._keyframes.pop(kf_id, None)
        if self._root_id == kf_id:
            self._root_id = None

    def set_keyframe_pose(self, kf_id: int, pose: SE3) -> None:
        with self._lock:
            kf = self._keyframes[kf_id]
            old = kf.pose
            kf.pose = pose.copy()
            self._record(lambda: setattr(kf, "pose", old))

    def set_keyframe_bow(self, kf_id: int, bow: np.ndarray) -> None:
        with self._lock:
            self._keyframes[kf_id].bow = bow

    def update_connections(self, kf_id: int) -> None:
        """Recompute the covisibility edges of a keyframe from shared observations."""
        with self._lock:
            kf = self._keyframes[kf_id]
            counts: dict[int, int] = defaultdict(int)
            for mp_id in kf.map_points:
                if mp_id < 0:
                    continue
                for other in self._points[int(mp_id)].observers:
                    if other != kf_id:
                        counts[other] += 1

            touched = self._graph.neighbours(kf_id) | set(counts) | {kf_id}
            rows = self._graph.rows(touched)
            self._graph.set_connections(kf_id, dict(counts))
            self._record(lambda: self._graph.restore_rows(rows))
            self._touch()

    def change_parent(self, kf_id: int, parent_id: int) -> None:
        """Re-attach ``kf_id`` below ``parent_id`` in the spanning tree.

        Raises:
            MapInconsistency: If the change would create a cycle
        """
        with self._lock:
            if kf_id not in self._keyframes or parent_id not in self._keyframes:
                raise MapInconsistency(f"Cannot re-parent {kf_id} to {parent_id}: unknown keyframe")
            if kf_id == parent_id or self._graph.is_descendant(parent_id, kf_id):
                raise MapInconsistency(f"Re-parenting {kf_id} to {parent_id} creates a cycle")
            old = self._graph.parent(kf_id)
            if old == parent_id:
                return
            if old is None:
                raise MapInconsistency(f"Cannot re-parent the root keyframe {kf_id}")
            self._graph.set_parent(kf_id, parent_id)
            self._record(lambda: self._graph.set_parent(kf_id, old))
            self._touch()

    def add_loop_edge(self, kf1_id: int, kf2_id: int) -> None:
        with self._lock:
            if kf1_id not in self._keyframes or kf2_id not in self._keyframes:
                raise MapInconsistency(f"Loop edge {kf1_id}-{kf2_id} references unknown keyframe")
            self._graph.add_loop_edge(kf1_id, kf2_id)
            self._record(lambda: self._graph.remove_loop_edge(kf1_id, kf2_id))
            self._touch()

    def pin(self, kf_id: int) -> None:
        """Protect a keyframe from culling while loop closing uses it."""
        with self._lock:
            kf = self._keyframes.get(kf_id)
            if kf is not None:
                kf.pin_count += 1

    def unpin(self, kf_id: int) -> None:
        """Release a pin; a deferred culling request is retried at zero pins."""
        with self._lock:
            kf = self._keyframes.get(kf_id)
            if kf is None:
                return
            kf.pin_count = max(0, kf.pin_count - 1)
            if kf.pin_count == 0 and kf.erase_requested:
                kf.erase_requested = False
                with self.transaction():
                    self.erase_keyframe(kf_id)

    def erase_keyframe(self, kf_id: int) -> bool:
        """Remove a redundant keyframe, re-parenting its children.

        Each child moves under the already-attached candidate (initially the
        erased keyframe's parent) it shares the strongest covisibility link
        with. The root, keyframes with loop edges, and keyframes with a child
        that has no covisible candidate are kept. Pinned keyframes are marked
        and erased when unpinned.

        Returns:
            True if the keyframe was erased
        """
        with self._lock:
            kf = self._keyframes.get(kf_id)
            if kf is None or kf_id == self._root_id or self._graph.loop_edges(kf_id):
                return False
            if kf.pin_count > 0:
                kf.erase_requested = True
                return False

            plan = self._plan_reparenting(kf_id)
            if plan is None:
                logger.debug("Keyframe %d kept: children cannot be re-parented", kf_id)
                return False

            parent_id = self._graph.parent(kf_id)
            for child_id, new_parent in plan:
                self.change_parent(child_id, new_parent)

            for mp_id in sorted(kf.observed_point_ids()):
                self.erase_observation(mp_id, kf_id)

            rows = self._graph.rows(self._graph.neighbours(kf_id) | {kf_id})
            T_parent_kf = self._keyframes[parent_id].pose.inverse() @ kf.pose
            self._graph.remove_node(kf_id)
            del self._keyframes[kf_id]
            self._tombstones[kf_id] = (parent_id, T_parent_kf)

            def undo() -> None:
                self._tombstones.pop(kf_id, None)
                self._keyframes[kf_id] = kf
                self._graph.add_node(kf_id, parent_id)
                self._graph.restore_rows(rows)

            self._record(undo)
            if self.reference_keyframe_id == kf_id:
                self.reference_keyframe_id = parent_id
            self._touch()
            return True

    def _plan_reparenting(self, kf_id: int) -> list[tuple[int, int]] | None:
        children = self._graph.children(kf_id)
        candidates = {self._graph.parent(kf_id)}
        plan = []
        while children:
            best: tuple[int, int, int] | None = None
            for child in sorted(children):
                for other, weight in self._graph.get_connected_keyframes(child):
                    if other in candidates and (best is None or weight > best[2]):
                        best = (child, other, weight)
            if best is None:
                return None
            plan.append((best[0], best[1]))
            candidates.add(best[0])
            children.discard(best[0])
        return plan

    # Map point mutation

    def create_map_point(
        self,
        position: np.ndarray,
        reference_keyframe_id: int,
        observations: dict[int, int],
    ) -> int:
        """Create a map point together with its first observations.

        Args:
            position: World position
            reference_keyframe_id: Keyframe creating the point
            observations: keyframe id -> free slot index (at least one)

        Returns:
            Id of the new map point

        Raises:
            MapInconsistency: If there are no observations or a slot is taken
        """
        with self._lock:
            if not observations:
                raise MapInconsistency("A map point needs at least one observer")
            for kf_id, slot in observations.items():
                kf = self._keyframes.get(kf_id)
                if kf is None:
                    raise MapInconsistency(f"Observer keyframe {kf_id} not in map")
                if kf.map_points[slot] >= 0:
                    raise MapInconsistency(f"Slot {slot} of keyframe {kf_id} already used")

            if reference_keyframe_id not in observations:
                raise MapInconsistency(
                    f"Reference keyframe {reference_keyframe_id} must observe the new point"
                )

            mp_id = next(self._point_ids)
            slot = observations[reference_keyframe_id]
            mp = MapPoint(
                id=mp_id,
                position=position,
                descriptor=self._keyframes[reference_keyframe_id].descriptors[slot],
                first_keyframe_id=reference_keyframe_id,
                reference_keyframe_id=reference_keyframe_id,
            )
            self._points[mp_id] = mp
            self._record(lambda: self._points.pop(mp_id, None))
            for kf_id, kf_slot in observations.items():
                self._attach(mp_id, kf_id, int(kf_slot))
            self.update_point_geometry(mp_id)
            self._touch()
            return mp_id

    def _attach(self, mp_id: int, kf_id: int, slot: int) -> None:
        mp = self._points[mp_id]
        kf = self._keyframes[kf_id]
        current = int(kf.map_points[slot])
        if current >= 0 and current != mp_id:
            raise MapInconsistency(f"Slot {slot} of keyframe {kf_id} holds map point {current}")
        weight = 2 if kf.right_u[slot] >= 0 else 1
        mp.observers[kf_id] = slot
        mp.n_obs += weight
        kf.map_points[slot] = mp_id

        def undo() -> None:
            mp.observers.pop(kf_id, None)
            mp.n_obs -= weight
            kf.map_points[slot] = -1

        self._record(undo)

    def add_observation(self, mp_id: int, kf_id: int, slot: int) -> None:
        """Associate a keyframe slot with an existing map point."""
        with self._lock:
            if mp_id not in self._points or kf_id not in self._keyframes:
                raise MapInconsistency(f"Observation {mp_id}@{kf_id} references unknown entity")
            if kf_id in self._points[mp_id].observers:
                raise MapInconsistency(f"Keyframe {kf_id} already observes map point {mp_id}")
            self._attach(mp_id, kf_id, slot)
            self._touch()

    def erase_observation(self, mp_id: int, kf_id: int) -> None:
        """Remove one observation; a map point left without observers is removed."""
        with self._lock:
            mp = self._points.get(mp_id)
            if mp is None or kf_id not in mp.observers:
                return
            slot = mp.observers.pop(kf_id)
            kf = self._keyframes.get(kf_id)
            weight = 1
            if kf is not None:
                weight = 2 if kf.right_u[slot] >= 0 else 1
                kf.map_points[slot] = -1
            mp.n_obs -= weight
            old_reference = mp.reference_keyframe_id
            if old_reference == kf_id and mp.observers:
                mp.reference_keyframe_id = min(mp.observers)

            def undo() -> None:
                mp.observers[kf_id] = slot
                mp.n_obs += weight
                mp.reference_keyframe_id = old_reference
                if kf is not None:
                    kf.map_points[slot] = mp_id

            self._record(undo)
            if not mp.observers:
                self._remove_point(mp_id)
            self._touch()

    def _remove_point(self, mp_id: int) -> None:
        mp = self._points.pop(mp_id)

        def undo() -> None:
            self._points[mp_id] = mp

        self._record(undo)

    def erase_map_point(self, mp_id: int) -> None:
        """Remove a map point and all its observations."""
        with self._lock:
            mp = self._points.get(mp_id)
            if mp is None:
                return
            for kf_id in sorted(mp.observers):
                self.erase_observation(mp_id, kf_id)

    def replace_map_point(self, old_id: int, new_id: int) -> None:
        """Fuse ``old_id`` into ``new_id``; observations move to the survivor."""
        with self._lock:
            if old_id == new_id or old_id not in self._points or new_id not in self._points:
                return
            old = self._points[old_id]
            new = self._points[new_id]
            visible, found = old.visible, old.found

            for kf_id, slot in sorted(old.observers.items()):
                self.erase_observation(old_id, kf_id)
                if kf_id in self._keyframes and kf_id not in new.observers:
                    self._attach(new_id, kf_id, slot)

            new.visible += visible
            new.found += found
            self._replaced[old_id] = new_id

            def undo() -> None:
                new.visible -= visible
                new.found -= found
                self._replaced.pop(old_id, None)

            self._record(undo)
            self.update_point_geometry(new_id)
            self._touch()

    def set_point_position(self, mp_id: int, position: np.ndarray) -> None:
        with self._lock:
            mp = self._points[mp_id]
            old = mp.position
            mp.position = np.asarray(position, dtype=np.float64).flatten().copy()
            self._record(lambda: setattr(mp, "position", old))

    def update_point_geometry(self, mp_id: int) -> None:
        """Refresh viewing normal, scale-invariance distances and descriptor."""
        with self._lock:
            mp = self._points.get(mp_id)
            if mp is None or not mp.observers:
                return
            state = (mp.normal, mp.min_distance, mp.max_distance, mp.descriptor)

            def undo() -> None:
                mp.normal, mp.min_distance, mp.max_distance, mp.descriptor = state

            self._record(undo)

            centers = np.array([self._keyframes[k].pose.translation for k in mp.observers])
            rays = mp.position - centers
            norms = np.linalg.norm(rays, axis=1, keepdims=True)
            rays = rays / np.maximum(norms, 1e-12)
            normal = rays.mean(axis=0)
            mp.normal = normal / max(np.linalg.norm(normal), 1e-12)

            ref_id = mp.reference_keyframe_id if mp.reference_keyframe_id in mp.observers else min(mp.observers)
            ref = self._keyframes[ref_id]
            distance = float(np.linalg.norm(mp.position - ref.pose.translation))
            level = min(int(ref.octaves[mp.observers[ref_id]]), self._pyramid.n_levels - 1)
            mp.max_distance = distance * self._pyramid.scale_factors[level]
            mp.min_distance = mp.max_distance / self._pyramid.scale_factors[-1]

            descriptors = np.array(
                [self._keyframes[k].descriptors[s] for k, s in mp.observers.items()]
            )
            if len(descriptors) > 2:
                distances = hamming_matrix(descriptors, descriptors)
                mp.descriptor = descriptors[int(np.argmin(np.median(distances, axis=1)))].copy()
            else:
                mp.descriptor = descriptors[0].copy()

    def apply_point_statistics(self, visible: dict[int, int], found: dict[int, int]) -> None:
        """Add buffered tracking statistics to the points that still exist."""
        with self._lock:
            for mp_id, count in visible.items():
                live = self.resolve_point(mp_id)
                if live is not None:
                    self._points[live].visible += count
            for mp_id, count in found.items():
                live = self.resolve_point(mp_id)
                if live is not None:
                    self._points[live].found += count

    def increment_big_change(self) -> None:
        with self._lock:
            self.big_change_index += 1

    def clear(self) -> None:
        """Drop every entity and start a new epoch."""
        with self._lock:
            if self._journal is not None:
                raise MapInconsistency("Cannot clear the map inside a transaction")
            self._keyframes.clear()
            self._points.clear()
            self._tombstones.clear()
            self._replaced.clear()
            self._graph.clear()
            self._root_id = None
            self.reference_keyframe_id = None
            self.epoch += 1
            self.revision += 1
            self.big_change_index += 1
            logger.info("Map cleared (epoch %d)", self.epoch)

    # Validation

    def check_invariants(self) -> None:
        """Verify cross-reference and spanning-tree invariants.

        Raises:
            MapInconsistency: Listing every violation found
        """
        with self._lock:
            problems = []
            for mp_id, mp in self._points.items():
                if not mp.observers:
                    problems.append(f"map point {mp_id} has no observers")
                for kf_id, slot in mp.observers.items():
                    kf = self._keyframes.get(kf_id)
                    if kf is None:
                        problems.append(f"map point {mp_id} observed by missing keyframe {kf_id}")
                    elif kf.map_points[slot] != mp_id:
                        problems.append(f"map point {mp_id} slot {slot} of keyframe {kf_id} mismatch")

            for kf_id, kf in self._keyframes.items():
                for slot in np.flatnonzero(kf.map_points >= 0):
                    mp = self._points.get(int(kf.map_points[slot]))
                    if mp is None:
                        problems.append(f"keyframe {kf_id} references missing map point {kf.map_points[slot]}")
                    elif mp.observers.get(kf_id) != slot:
                        problems.append(f"keyframe {kf_id} slot {slot} not registered on map point {mp.id}")

            if self._keyframes:
                roots = [k for k in self._keyframes if self._graph.parent(k) is None]
                if roots != [self._root_id]:
                    problems.append(f"expected single root {self._root_id}, found {roots}")
                for kf_id in self._keyframes:
                    parent_id = self._graph.parent(kf_id)
                    if parent_id is not None and parent_id not in self._keyframes:
                        problems.append(f"keyframe {kf_id} has missing parent {parent_id}")
                if self._root_id in self._keyframes:
                    reached = self._graph.tree_order(self._root_id)
                    if len(reached) != len(set(reached)) or set(reached) != set(self._keyframes):
                        problems.append("spanning tree is not connected and acyclic")

            if problems:
                raise MapInconsistency("; ".join(problems))
