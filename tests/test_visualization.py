"""Tests for the Rerun viewer (skipped without the viz extra)."""

import numpy as np
import pytest

from covislam.map import Map

from .conftest import MapBuilder, pose_from

pytest.importorskip("rerun")

from covislam.visualization import RerunVisualizer  # noqa: E402


@pytest.fixture
def visualizer(camera) -> RerunVisualizer:
    return RerunVisualizer(camera, app_name="covislam-test", spawn=False)


class TestRerunVisualizer:
    """Test suite for snapshot logging."""

    def test_snapshot_logged_once_per_revision(
        self, visualizer: RerunVisualizer, map_: Map, builder: MapBuilder
    ):
        """Test that each map revision is logged once."""
        kf0 = builder.add_keyframe(pose_from())
        builder.add_keyframe(pose_from(translation=(0.1, 0, 0)), parent_id=kf0.id)
        snapshot = map_.snapshot()
        assert visualizer.log_snapshot(snapshot)
        assert not visualizer.log_snapshot(snapshot)

        builder.add_keyframe(pose_from(translation=(0.2, 0, 0)), parent_id=kf0.id)
        assert visualizer.log_snapshot(map_.snapshot())

    def test_empty_map(self, visualizer: RerunVisualizer, map_: Map):
        """Test that an empty map can be logged."""
        assert visualizer.log_snapshot(map_.snapshot())

    def test_camera_pose_accumulates_trajectory(self, visualizer: RerunVisualizer):
        """Test that camera poses and map points are logged."""
        for x in (0.0, 0.1, 0.2):
            visualizer.log_camera_pose(pose_from(translation=(x, 0, 0)).to_matrix())
        visualizer.log_map_points(np.array([[0.0, 0.0, 5.0], [np.nan, 0.0, 1.0]]))
