"""Place recognition index over keyframe bag-of-words vectors.

The database keeps an inverted index (visual word -> keyframes containing
it) so that a query only scores keyframes sharing words with it. It is used
for relocalization (Tracker) and loop detection (Loop Closer).

Locking: the database has its own lock and never acquires the map lock while
holding it, so callers may query it with the map lock held.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass

import numpy as np

from ..map import Map

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    """Result from a place recognition query.

    Attributes:
        keyframe_id: ID of the matching keyframe
        similarity: Cosine similarity score [0, 1]
        common_words: Number of visual words shared with the query
    """

    keyframe_id: int
    similarity: float
    common_words: int = 0


class KeyFrameDatabase:
    """Inverted-index database of keyframe BoW vectors."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._inverted: dict[int, set[int]] = defaultdict(set)
        self._bows: dict[int, np.ndarray] = {}
        self._words: dict[int, np.ndarray] = {}

    def add(self, keyframe_id: int, bow: np.ndarray) -> None:
        """Index a keyframe by its (normalized) BoW vector."""
        words = np.flatnonzero(bow > 0)
        with self._lock:
            self._bows[keyframe_id] = bow
            self._words[keyframe_id] = words
            for w in words:
                self._inverted[int(w)].add(keyframe_id)

    def erase(self, keyframe_id: int) -> None:
        with self._lock:
            words = self._words.pop(keyframe_id, None)
            self._bows.pop(keyframe_id, None)
            if words is None:
                return
            for w in words:
                entries = self._inverted.get(int(w))
                if entries is not None:
                    entries.discard(keyframe_id)
                    if not entries:
                        del self._inverted[int(w)]

    def clear(self) -> None:
        with self._lock:
            self._inverted.clear()
            self._bows.clear()
            self._words.clear()

    def __contains__(self, keyframe_id: int) -> bool:
        with self._lock:
            return keyframe_id in self._bows

    def __len__(self) -> int:
        with self._lock:
            return len(self._bows)

    @property
    def size(self) -> int:
        """Return number of entries in database."""
        return len(self)

    def query(
        self,
        bow: np.ndarray,
        exclude: set[int] | None = None,
        min_score: float = 0.0,
        max_results: int | None = None,
    ) -> list[QueryResult]:
        """Score keyframes sharing words with ``bow``.

        Args:
            bow: Query BoW vector
            exclude: Keyframe ids never returned (e.g. the covisible
                neighbourhood of the query)
            min_score: Minimum cosine similarity
            max_results: Maximum number of results

        Returns:
            Results sorted by similarity (highest first)
        """
        exclude = exclude or set()
        shared = self._shared_words(bow, exclude)
        results = [
            QueryResult(keyframe_id=k, similarity=float(np.dot(bow, b)), common_words=c)
            for k, (c, b) in shared.items()
        ]
        results = [r for r in results if r.similarity >= min_score]
        results.sort(key=lambda r: (-r.similarity, r.keyframe_id))
        return results if max_results is None else results[:max_results]

    def _shared_words(self, bow: np.ndarray, exclude: set[int]) -> dict[int, tuple[int, np.ndarray]]:
        words = np.flatnonzero(bow > 0)
        counts: dict[int, int] = defaultdict(int)
        with self._lock:
            for w in words:
                for kf_id in self._inverted.get(int(w), ()):
                    if kf_id not in exclude:
                        counts[kf_id] += 1
            return {k: (c, self._bows[k]) for k, c in counts.items()}

    def detect_loop_candidates(
        self,
        map_: Map,
        keyframe_id: int,
        bow: np.ndarray,
        min_score: float,
        common_words_ratio: float = 0.8,
        accumulated_score_ratio: float = 0.75,
    ) -> list[int]:
        """Find loop candidates for a keyframe, excluding its covisible neighbourhood.

        Candidates must share at least ``common_words_ratio`` of the best
        candidate's common words and score at least ``min_score``. Scores are
        then accumulated over each candidate's covisibility group, and the
        best keyframe of every group scoring above ``accumulated_score_ratio``
        of the best group is returned.
        """
        exclude = set(map_.covisible_keyframes(keyframe_id)) | {keyframe_id}
        return self._detect(map_, bow, exclude, min_score, common_words_ratio, accumulated_score_ratio)

    def detect_relocalization_candidates(
        self,
        map_: Map,
        bow: np.ndarray,
        common_words_ratio: float = 0.8,
        accumulated_score_ratio: float = 0.75,
    ) -> list[int]:
        """Find keyframes similar to a lost frame."""
        return self._detect(map_, bow, set(), 0.0, common_words_ratio, accumulated_score_ratio)

    def _detect(
        self,
        map_: Map,
        bow: np.ndarray,
        exclude: set[int],
        min_score: float,
        common_words_ratio: float,
        accumulated_score_ratio: float,
    ) -> list[int]:
        shared = self._shared_words(bow, exclude)
        shared = {k: v for k, v in shared.items() if map_.has_keyframe(k)}
        if not shared:
            return []

        max_common = max(c for c, _ in shared.values())
        min_common = common_words_ratio * max_common

        scores: dict[int, float] = {}
        for kf_id, (common, kf_bow) in shared.items():
            if common <= min_common and common != max_common:
                continue
            score = float(np.dot(bow, kf_bow))
            if score >= min_score:
                scores[kf_id] = score
        if not scores:
            return []

        groups: list[tuple[float, int]] = []
        for kf_id, score in scores.items():
            accumulated = score
            best_score, best_id = score, kf_id
            for neighbour in map_.covisible_keyframes(kf_id, 10):
                if neighbour in scores:
                    accumulated += scores[neighbour]
                    if scores[neighbour] > best_score:
                        best_score, best_id = scores[neighbour], neighbour
            groups.append((accumulated, best_id))

        best_accumulated = max(a for a, _ in groups)
        threshold = accumulated_score_ratio * best_accumulated
        candidates: list[int] = []
        for accumulated, best_id in sorted(groups, key=lambda g: (-g[0], g[1])):
            if accumulated > threshold or accumulated == best_accumulated:
                if best_id not in candidates:
                    candidates.append(best_id)
        logger.debug("Place recognition: %d candidates from %d scored", len(candidates), len(scores))
        return candidates
