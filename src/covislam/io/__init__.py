"""I/O utilities: trajectory export and map persistence."""

from .map_store import FORMAT_VERSION, load_map, save_map
from .trajectory import format_kitti_line, format_tum_line, read_tum, write_kitti, write_tum

__all__ = [
    # Trajectories
    "write_tum",
    "write_kitti",
    "read_tum",
    "format_tum_line",
    "format_kitti_line",
    # Map persistence
    "save_map",
    "load_map",
    "FORMAT_VERSION",
]
