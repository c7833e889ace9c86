"""Trajectory export in the TUM RGB-D and KITTI text formats.

TUM: one line per pose, ``timestamp tx ty tz qx qy qz qw``.
KITTI: one line per pose, the first three rows of T_world_camera in
row-major order (12 values, no timestamp).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

import numpy as np

from ..errors import ResourceExhaustion
from ..frontend.pose import SE3

logger = logging.getLogger(__name__)

StampedPose = tuple[float, np.ndarray]


def _as_matrix(pose: SE3 | np.ndarray) -> np.ndarray:
    if isinstance(pose, SE3):
        return pose.to_matrix()
    T = np.asarray(pose, dtype=np.float64)
    if T.shape != (4, 4):
        raise ValueError(f"Pose must be a 4x4 matrix, got {T.shape}")
    return T


def format_tum_line(timestamp: float, pose: SE3 | np.ndarray) -> str:
    T = _as_matrix(pose)
    qx, qy, qz, qw = SE3.from_matrix(T).to_quaternion()
    tx, ty, tz = T[:3, 3]
    return (
        f"{timestamp:.6f} {tx:.9f} {ty:.9f} {tz:.9f} "
        f"{qx:.9f} {qy:.9f} {qz:.9f} {qw:.9f}"
    )


def format_kitti_line(pose: SE3 | np.ndarray) -> str:
    T = _as_matrix(pose)
    return " ".join(f"{v:.9e}" for v in T[:3, :4].reshape(-1))


def write_tum(path: str | Path, poses: Iterable[tuple[float, SE3 | np.ndarray]]) -> int:
    """Write stamped poses in TUM format, ordered by timestamp.

    Returns:
        Number of poses written
    """
    rows = sorted(poses, key=lambda p: p[0])
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for timestamp, pose in rows:
            f.write(format_tum_line(timestamp, pose) + "\n")
    logger.info("Wrote %d poses to %s (TUM)", len(rows), path)
    return len(rows)


def write_kitti(path: str | Path, poses: Iterable[tuple[float, SE3 | np.ndarray]]) -> int:
    """Write poses in KITTI format, ordered by timestamp.

    Returns:
        Number of poses written
    """
    rows = sorted(poses, key=lambda p: p[0])
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for _, pose in rows:
            f.write(format_kitti_line(pose) + "\n")
    logger.info("Wrote %d poses to %s (KITTI)", len(rows), path)
    return len(rows)


def read_tum(path: str | Path) -> list[StampedPose]:
    """Read a TUM trajectory file; comment lines start with ``#``.

    Raises:
        ResourceExhaustion: If the file is missing or malformed
    """
    path = Path(path)
    if not path.exists():
        raise ResourceExhaustion(f"Trajectory file not found: {path}")
    poses: list[StampedPose] = []
    with open(path, "r") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            values = line.split()
            if len(values) != 8:
                raise ResourceExhaustion(f"{path}:{line_no}: expected 8 values, got {len(values)}")
            ts, tx, ty, tz, qx, qy, qz, qw = (float(v) for v in values)
            pose = SE3.from_quaternion(qw, qx, qy, qz, np.array([tx, ty, tz]))
            poses.append((ts, pose.to_matrix()))
    return poses
