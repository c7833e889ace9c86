"""Covisibility graph and spanning tree over keyframes.

The covisibility graph is a weighted undirected graph where:
- Nodes are keyframes
- Edges connect keyframes that share observations of the same map points
- Edge weights represent the number of shared map points

The spanning tree (parent/child edges) is a subgraph connecting every
keyframe to the root; it is used to propagate pose corrections. Loop edges
record accepted loop closures.

The graph holds no locking of its own; the owning Map serializes access.
"""

from __future__ import annotations

from collections import deque


class CovisibilityGraph:
    """Keyframe adjacency (weighted), spanning tree and loop edges."""

    def __init__(self, min_shared_points: int = 15) -> None:
        """Initialize covisibility graph.

        Args:
            min_shared_points: Minimum shared points to keep an edge. A
                keyframe whose best link is weaker still keeps that one edge.
        """
        self._min_shared = min_shared_points

        # kf_id -> {other_kf_id: weight}
        self._adjacency: dict[int, dict[int, int]] = {}
        self._ordered: dict[int, list[int]] = {}

        self._parent: dict[int, int | None] = {}
        self._children: dict[int, set[int]] = {}
        self._loop_edges: dict[int, set[int]] = {}

    @property
    def min_shared_points(self) -> int:
        return self._min_shared

    def __contains__(self, kf_id: int) -> bool:
        return kf_id in self._adjacency

    def add_node(self, kf_id: int, parent_id: int | None) -> None:
        """Register a keyframe with its spanning-tree parent (None for the root)."""
        self._adjacency[kf_id] = {}
        self._ordered[kf_id] = []
        self._parent[kf_id] = parent_id
        self._children[kf_id] = set()
        self._loop_edges[kf_id] = set()
        if parent_id is not None:
            self._children[parent_id].add(kf_id)

    def remove_node(self, kf_id: int) -> None:
        """Remove a keyframe and all its covisibility edges.

        The caller must have re-parented the children beforehand.
        """
        for other in list(self._adjacency.get(kf_id, {})):
            self._drop_edge(other, kf_id)
        parent_id = self._parent.get(kf_id)
        if parent_id is not None and parent_id in self._children:
            self._children[parent_id].discard(kf_id)
        for other in self._loop_edges.get(kf_id, set()):
            self._loop_edges[other].discard(kf_id)
        self._adjacency.pop(kf_id, None)
        self._ordered.pop(kf_id, None)
        self._parent.pop(kf_id, None)
        self._children.pop(kf_id, None)
        self._loop_edges.pop(kf_id, None)

    # Covisibility

    def set_connections(self, kf_id: int, shared_counts: dict[int, int]) -> None:
        """Replace the edges of ``kf_id`` given shared-observation counts."""
        kept = {k: w for k, w in shared_counts.items() if w >= self._min_shared and k != kf_id}
        if not kept and shared_counts:
            best = max(
                ((k, w) for k, w in shared_counts.items() if k != kf_id and w > 0),
                key=lambda item: (item[1], -item[0]),
                default=None,
            )
            if best is not None:
                kept = {best[0]: best[1]}

        for other in list(self._adjacency[kf_id]):
            if other not in kept:
                self._drop_edge(other, kf_id)
        self._adjacency[kf_id] = dict(kept)
        for other, weight in kept.items():
            self._adjacency[other][kf_id] = weight
            self._reorder(other)
        self._reorder(kf_id)

    def _drop_edge(self, kf_id: int, other: int) -> None:
        row = self._adjacency.get(kf_id)
        if row is not None and other in row:
            del row[other]
            self._reorder(kf_id)

    def _reorder(self, kf_id: int) -> None:
        row = self._adjacency[kf_id]
        self._ordered[kf_id] = sorted(row, key=lambda k: (-row[k], k))

    def get_connected_keyframes(self, kf_id: int, min_shared: int = 0) -> list[tuple[int, int]]:
        """Get keyframes connected to a given keyframe.

        Returns:
            List of (kf_id, weight) tuples, sorted by weight descending
        """
        row = self._adjacency.get(kf_id, {})
        return [(k, row[k]) for k in self._ordered.get(kf_id, []) if row[k] >= min_shared]

    def best_covisible(self, kf_id: int, n: int | None = None) -> list[int]:
        """Return up to ``n`` neighbours ordered by decreasing weight."""
        ordered = self._ordered.get(kf_id, [])
        return list(ordered if n is None else ordered[:n])

    def neighbours(self, kf_id: int) -> set[int]:
        return set(self._adjacency.get(kf_id, {}))

    def weight(self, kf1_id: int, kf2_id: int) -> int:
        """Return the number of shared map points (0 if not connected)."""
        return self._adjacency.get(kf1_id, {}).get(kf2_id, 0)

    def rows(self, kf_ids: set[int]) -> dict[int, dict[int, int]]:
        """Copy the adjacency rows of ``kf_ids`` (for undo journaling)."""
        return {k: dict(self._adjacency[k]) for k in kf_ids if k in self._adjacency}

    def restore_rows(self, rows: dict[int, dict[int, int]]) -> None:
        for kf_id, row in rows.items():
            if kf_id in self._adjacency:
                self._adjacency[kf_id] = dict(row)
                self._reorder(kf_id)

    # Spanning tree

    def parent(self, kf_id: int) -> int | None:
        return self._parent.get(kf_id)

    def children(self, kf_id: int) -> set[int]:
        return set(self._children.get(kf_id, set()))

    def set_parent(self, kf_id: int, parent_id: int) -> None:
        old = self._parent.get(kf_id)
        if old is not None and old in self._children:
            self._children[old].discard(kf_id)
        self._parent[kf_id] = parent_id
        self._children[parent_id].add(kf_id)

    def is_descendant(self, kf_id: int, ancestor_id: int) -> bool:
        """Return True if ``ancestor_id`` lies on the path from ``kf_id`` to the root."""
        current = self._parent.get(kf_id)
        seen = set()
        while current is not None and current not in seen:
            if current == ancestor_id:
                return True
            seen.add(current)
            current = self._parent.get(current)
        return False

    def tree_order(self, root_id: int) -> list[int]:
        """Return keyframes reachable from ``root_id`` in breadth-first order."""
        order = []
        queue = deque([root_id])
        while queue:
            kf_id = queue.popleft()
            order.append(kf_id)
            queue.extend(sorted(self._children.get(kf_id, ())))
        return order

    def tree_distances(self, *source_ids: int) -> dict[int, int]:
        """Return hop distances from the nearest source over undirected tree edges."""
        distances = {s: 0 for s in source_ids}
        queue = deque(source_ids)
        while queue:
            kf_id = queue.popleft()
            links = set(self._children.get(kf_id, ()))
            parent = self._parent.get(kf_id)
            if parent is not None:
                links.add(parent)
            for other in links:
                if other not in distances:
                    distances[other] = distances[kf_id] + 1
                    queue.append(other)
        return distances

    # Loop edges

    def add_loop_edge(self, kf1_id: int, kf2_id: int) -> None:
        self._loop_edges[kf1_id].add(kf2_id)
        self._loop_edges[kf2_id].add(kf1_id)

    def remove_loop_edge(self, kf1_id: int, kf2_id: int) -> None:
        self._loop_edges.get(kf1_id, set()).discard(kf2_id)
        self._loop_edges.get(kf2_id, set()).discard(kf1_id)

    def loop_edges(self, kf_id: int) -> set[int]:
        return set(self._loop_edges.get(kf_id, set()))

    @property
    def num_keyframes(self) -> int:
        return len(self._adjacency)

    @property
    def num_edges(self) -> int:
        # Each edge is counted twice in adjacency list
        return sum(len(adj) for adj in self._adjacency.values()) // 2

    def clear(self) -> None:
        self._adjacency.clear()
        self._ordered.clear()
        self._parent.clear()
        self._children.clear()
        self._loop_edges.clear()
