"""Rerun-based map viewer for covislam sessions."""

from __future__ import annotations

import numpy as np
import rerun as rr
import rerun.blueprint as rrb

from ..frontend.camera import PinholeCamera
from ..frontend.frame import Frame
from ..map import MapSnapshot


class RerunVisualizer:
    """Rerun-based visualization of the tracked frame and the shared map.

    The viewer only consumes :class:`MapSnapshot` copies and frames, so it
    never holds the map lock while logging.

    Entity hierarchy:
        camera/
            image       - Current input image
            features    - All keypoints of the current frame (green)
            tracked     - Keypoints matched to map points (red)
        world/
            camera      - Current camera pose and frustum
            trajectory  - Tracked camera centres (yellow)
            keyframes   - Keyframe centres (blue)
            map         - Map points (colored by height)
            graph/
                spanning     - Spanning-tree edges (white)
                covisibility - Strong covisibility edges (green)
                loops        - Loop edges (red)
    """

    def __init__(
        self,
        camera: PinholeCamera | None = None,
        app_name: str = "covislam",
        spawn: bool = True,
        min_covisibility_weight: int = 100,
    ) -> None:
        """Initialize Rerun visualization.

        Args:
            camera: Camera model used to draw the current frustum
            app_name: Name for the Rerun application window
            spawn: If True, automatically spawn the Rerun viewer
            min_covisibility_weight: Covisibility edges below this weight are
                not drawn
        """
        rr.init(app_name, spawn=spawn)
        self._camera = camera
        self._min_covisibility_weight = min_covisibility_weight
        self._positions: list[np.ndarray] = []
        self._last_revision = -1
        self._setup_coordinate_system()
        self._setup_layout()

    def _setup_coordinate_system(self) -> None:
        """Camera convention: X right, Y down, Z forward."""
        rr.log("world", rr.ViewCoordinates.RDF, static=True)

    def _setup_layout(self) -> None:
        blueprint = rrb.Blueprint(
            rrb.Horizontal(
                contents=[
                    rrb.Spatial2DView(name="Camera", origin="camera"),
                    rrb.Spatial3DView(name="Map", origin="world"),
                ]
            )
        )
        rr.send_blueprint(blueprint)

    def set_time(self, timestamp: float) -> None:
        rr.set_time("timestamp", duration=timestamp)

    def log_frame(self, frame: Frame, image: np.ndarray | None = None) -> None:
        """Log the keypoints of a processed frame, over its image if given."""
        self.set_time(frame.timestamp)
        if image is not None:
            rr.log("camera/image", rr.Image(image))
        if len(frame) == 0:
            return
        rr.log(
            "camera/features",
            rr.Points2D(frame.keypoints, colors=[[0, 255, 0]], radii=2.0),
        )
        tracked = frame.tracked_mask()
        if np.any(tracked):
            rr.log(
                "camera/tracked",
                rr.Points2D(frame.keypoints[tracked], colors=[[255, 0, 0]], radii=3.0),
            )

    def log_camera_pose(self, T_world_camera: np.ndarray, entity_path: str = "world/camera") -> None:
        """Log the current camera pose, with a frustum when the camera is known."""
        T = np.asarray(T_world_camera, dtype=np.float64)
        rr.log(entity_path, rr.Transform3D(translation=T[:3, 3], mat3x3=T[:3, :3]))
        if self._camera is not None:
            config = self._camera.config
            rr.log(
                entity_path,
                rr.Pinhole(
                    image_from_camera=self._camera.K,
                    resolution=[config.width, config.height],
                ),
            )
        self._positions.append(T[:3, 3].copy())
        self.log_trajectory(np.array(self._positions))

    def log_trajectory(self, positions: np.ndarray, entity_path: str = "world/trajectory") -> None:
        """Log camera positions as a 3D line strip."""
        if len(positions) < 2:
            return
        rr.log(
            entity_path,
            rr.LineStrips3D([positions], colors=[[255, 255, 0]], radii=0.01),
        )

    def log_snapshot(self, snapshot: MapSnapshot) -> bool:
        """Log keyframes, map points and graph edges of a map snapshot.

        Snapshots with an already logged revision are skipped.

        Returns:
            True if the snapshot was logged
        """
        if snapshot.revision == self._last_revision:
            return False
        self._last_revision = snapshot.revision

        centers = snapshot.keyframe_poses[:, :3, 3] if len(snapshot.keyframe_ids) else np.empty((0, 3))
        rr.log("world/keyframes", rr.Points3D(centers, colors=[[0, 128, 255]], radii=0.04))
        self.log_map_points(snapshot.point_positions)

        index = {int(k): i for i, k in enumerate(snapshot.keyframe_ids)}
        self._log_edges(
            "world/graph/spanning",
            centers,
            index,
            [(a, b) for a, b in snapshot.spanning_edges],
            [255, 255, 255],
        )
        self._log_edges(
            "world/graph/covisibility",
            centers,
            index,
            [(a, b) for a, b, w in snapshot.covisibility_edges if w >= self._min_covisibility_weight],
            [0, 200, 0],
        )
        self._log_edges(
            "world/graph/loops",
            centers,
            index,
            [(a, b) for a, b in snapshot.loop_edges],
            [255, 0, 0],
        )
        return True

    def _log_edges(
        self,
        entity_path: str,
        centers: np.ndarray,
        index: dict[int, int],
        edges: list[tuple[int, int]],
        color: list[int],
    ) -> None:
        strips = [
            [centers[index[a]], centers[index[b]]]
            for a, b in edges
            if a in index and b in index
        ]
        rr.log(entity_path, rr.LineStrips3D(strips, colors=[color], radii=0.005))

    def log_map_points(self, positions: np.ndarray, entity_path: str = "world/map") -> None:
        """Log map points colored by height."""
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        positions = positions[np.isfinite(positions).all(axis=1)]
        if len(positions) == 0:
            rr.log(entity_path, rr.Clear(recursive=False))
            return

        # Y points down in the camera convention
        heights = positions[:, 1]
        h_min, h_max = np.percentile(heights, [5, 95])
        h_range = max(h_max - h_min, 0.1)
        normalized = np.clip((heights - h_min) / h_range, 0, 1)

        colors = np.zeros((len(positions), 3), dtype=np.uint8)
        colors[:, 0] = (128 + normalized * 127).astype(np.uint8)
        colors[:, 1] = (normalized * 255).astype(np.uint8)
        colors[:, 2] = (255 - normalized * 127).astype(np.uint8)

        rr.log(entity_path, rr.Points3D(positions, colors=colors, radii=0.02))

    def log_ground_truth(self, positions: np.ndarray, entity_path: str = "world/ground_truth") -> None:
        """Log a reference trajectory (e.g. from :func:`covislam.io.read_tum`)."""
        if len(positions) < 2:
            return
        rr.log(
            entity_path,
            rr.LineStrips3D([positions], colors=[[0, 255, 0]], radii=0.01),
        )
