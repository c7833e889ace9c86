"""Map persistence in a NumPy ``.npz`` container.

The file stores what is needed to rebuild a map satisfying every invariant:
keyframe poses and features, slot-to-point observations, point positions and
statistics, spanning-tree parents and loop edges. Covisibility weights,
point normals and representative descriptors are derived data and are
recomputed on load; bag-of-words vectors are recomputed with the session
vocabulary and re-indexed in the place-recognition database.
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from ..errors import MapInconsistency, ResourceExhaustion
from ..frontend.pose import SE3
from ..loop_closure.place_recognition import KeyFrameDatabase
from ..loop_closure.vocabulary import VisualVocabulary
from ..map import KeyFrame, Map

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

_REQUIRED_KEYS = (
    "format_version",
    "kf_ids",
    "kf_frame_ids",
    "kf_timestamps",
    "kf_poses",
    "kf_parents",
    "kf_offsets",
    "keypoints",
    "descriptors",
    "octaves",
    "right_u",
    "depth",
    "slot_points",
    "mp_ids",
    "mp_positions",
    "mp_reference",
    "mp_visible",
    "mp_found",
    "loop_edges",
)


def save_map(path: str | Path, map_: Map) -> Path:
    """Write the map to ``path`` (``.npz`` is appended by NumPy if missing).

    The map lock is held while the arrays are copied, not while writing.

    Returns:
        Path of the written file
    """
    with map_.lock:
        keyframes = map_.keyframes()
        points = map_.map_points()
        offsets = np.zeros(len(keyframes) + 1, dtype=np.int64)
        for i, kf in enumerate(keyframes):
            offsets[i + 1] = offsets[i] + len(kf)

        def stack(name: str, width: int | None, dtype) -> np.ndarray:
            shape = (0, width) if width else (0,)
            if not keyframes:
                return np.empty(shape, dtype=dtype)
            return np.concatenate([getattr(kf, name) for kf in keyframes]).astype(dtype)

        arrays = {
            "format_version": np.array(FORMAT_VERSION),
            "kf_ids": np.array([kf.id for kf in keyframes], dtype=np.int64),
            "kf_frame_ids": np.array([kf.frame_id for kf in keyframes], dtype=np.int64),
            "kf_timestamps": np.array([kf.timestamp for kf in keyframes], dtype=np.float64),
            "kf_poses": np.array([kf.pose.to_matrix() for kf in keyframes]).reshape(-1, 4, 4),
            "kf_parents": np.array(
                [-1 if map_.parent(kf.id) is None else map_.parent(kf.id) for kf in keyframes],
                dtype=np.int64,
            ),
            "kf_offsets": offsets,
            "keypoints": stack("keypoints", 2, np.float64),
            "descriptors": stack("descriptors", 32, np.uint8),
            "octaves": stack("octaves", None, np.int32),
            "right_u": stack("right_u", None, np.float64),
            "depth": stack("depth", None, np.float64),
            "slot_points": stack("map_points", None, np.int64),
            "mp_ids": np.array([mp.id for mp in points], dtype=np.int64),
            "mp_positions": np.array([mp.position for mp in points]).reshape(-1, 3),
            "mp_reference": np.array([mp.reference_keyframe_id for mp in points], dtype=np.int64),
            "mp_visible": np.array([mp.visible for mp in points], dtype=np.int64),
            "mp_found": np.array([mp.found for mp in points], dtype=np.int64),
            "loop_edges": np.array(map_.snapshot().loop_edges, dtype=np.int64).reshape(-1, 2),
        }

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(path, **arrays)
    if path.suffix != ".npz":
        path = path.with_name(path.name + ".npz")
    logger.info("Saved map with %d keyframes and %d points to %s", len(keyframes), len(points), path)
    return path


def load_map(
    path: str | Path,
    map_: Map,
    vocabulary: VisualVocabulary,
    database: KeyFrameDatabase,
) -> None:
    """Rebuild a saved map into the empty ``map_`` and index its keyframes.

    Raises:
        ResourceExhaustion: If the file is missing, malformed, or describes a
            map violating the invariants
    """
    path = Path(path)
    if not path.exists():
        raise ResourceExhaustion(f"Map file not found: {path}")
    if map_.num_keyframes > 0:
        raise ResourceExhaustion("A map can only be loaded into an empty session")

    try:
        with np.load(path, allow_pickle=False) as data:
            missing = [k for k in _REQUIRED_KEYS if k not in data.files]
            if missing:
                raise ResourceExhaustion(f"Map file {path} lacks {', '.join(missing)}")
            arrays = {k: data[k] for k in _REQUIRED_KEYS}
    except (OSError, ValueError) as e:
        raise ResourceExhaustion(f"Cannot read map file {path}: {e}") from e

    if int(arrays["format_version"]) != FORMAT_VERSION:
        raise ResourceExhaustion(
            f"Unsupported map format {int(arrays['format_version'])} (expected {FORMAT_VERSION})"
        )

    try:
        with map_.transaction():
            _rebuild(map_, arrays)
            map_.check_invariants()
    except (MapInconsistency, IndexError, KeyError, ValueError) as e:
        raise ResourceExhaustion(f"Map file {path} is inconsistent: {e}") from e

    with map_.lock:
        for kf in map_.keyframes():
            bow = vocabulary.describe(kf.descriptors)
            map_.set_keyframe_bow(kf.id, bow)
            database.add(kf.id, bow)
    logger.info(
        "Loaded map with %d keyframes and %d points from %s",
        map_.num_keyframes,
        map_.num_map_points,
        path,
    )


def _rebuild(map_: Map, arrays: dict[str, np.ndarray]) -> None:
    kf_ids = arrays["kf_ids"]
    offsets = arrays["kf_offsets"]
    if len(offsets) != len(kf_ids) + 1 or offsets[-1] != len(arrays["keypoints"]):
        raise MapInconsistency("feature offsets do not match the keyframe table")
    parents = {int(k): int(p) for k, p in zip(kf_ids, arrays["kf_parents"])}
    index = {int(k): i for i, k in enumerate(kf_ids)}

    roots = [k for k, p in parents.items() if p < 0]
    if len(kf_ids) and len(roots) != 1:
        raise MapInconsistency(f"expected one root keyframe, found {len(roots)}")

    children: dict[int, list[int]] = {}
    for k, p in parents.items():
        if p >= 0:
            children.setdefault(p, []).append(k)

    # Parents are inserted before their children
    order = list(roots)
    i = 0
    while i < len(order):
        order.extend(sorted(children.get(order[i], [])))
        i += 1
    if len(order) != len(kf_ids):
        raise MapInconsistency("spanning tree in file is not connected")

    slot_points = arrays["slot_points"]
    for kf_id in order:
        i = index[kf_id]
        lo, hi = int(offsets[i]), int(offsets[i + 1])
        keyframe = KeyFrame(
            id=kf_id,
            frame_id=int(arrays["kf_frame_ids"][i]),
            timestamp=float(arrays["kf_timestamps"][i]),
            pose=SE3.from_matrix(arrays["kf_poses"][i]),
            keypoints=arrays["keypoints"][lo:hi],
            descriptors=arrays["descriptors"][lo:hi],
            octaves=arrays["octaves"][lo:hi],
            right_u=arrays["right_u"][lo:hi],
            depth=arrays["depth"][lo:hi],
            map_points=np.full(hi - lo, -1, dtype=np.int64),
        )
        parent = parents[kf_id]
        map_.add_keyframe(keyframe, None if parent < 0 else parent)

    # Observations per saved point id
    observations: dict[int, dict[int, int]] = {}
    for kf_id in order:
        i = index[kf_id]
        lo, hi = int(offsets[i]), int(offsets[i + 1])
        for slot in np.flatnonzero(slot_points[lo:hi] >= 0):
            observations.setdefault(int(slot_points[lo + slot]), {})[kf_id] = int(slot)

    next_point_id = 0
    for j, saved_id in enumerate(arrays["mp_ids"]):
        observers = observations.get(int(saved_id))
        if not observers:
            raise MapInconsistency(f"map point {int(saved_id)} has no observers")
        reference = int(arrays["mp_reference"][j])
        if reference not in observers:
            reference = min(observers)
        mp_id = map_.create_map_point(arrays["mp_positions"][j], reference, observers)
        map_.apply_point_statistics(
            {mp_id: max(int(arrays["mp_visible"][j]) - 1, 0)},
            {mp_id: max(int(arrays["mp_found"][j]) - 1, 0)},
        )
        next_point_id = mp_id + 1

    unknown = set(observations) - {int(i) for i in arrays["mp_ids"]}
    if unknown:
        raise MapInconsistency(f"keyframe slots reference {len(unknown)} unknown map points")

    for kf_id in order:
        map_.update_connections(kf_id)
    for kf1, kf2 in arrays["loop_edges"]:
        map_.add_loop_edge(int(kf1), int(kf2))

    next_keyframe_id = int(kf_ids.max()) + 1 if len(kf_ids) else 0
    map_.advance_ids(next_keyframe_id, next_point_id)
