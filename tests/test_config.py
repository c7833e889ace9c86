"""Tests for SLAMConfig loading."""

from pathlib import Path

import pytest

from covislam.config import Sensor, SLAMConfig
from covislam.errors import ResourceExhaustion

SETTINGS = """\
sensor: RGBD
camera:
  fx: 517.3
  fy: 516.5
  cx: 318.6
  cy: 255.3
  fps: 30
  bf: 40.0
  depth_map_factor: 5000.0
tracking:
  min_inliers: 25
loop_closing:
  enabled: false
"""


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    path = tmp_path / "settings.yaml"
    path.write_text(SETTINGS)
    return path


class TestSLAMConfig:
    """Test suite for configuration parsing."""

    def test_defaults(self):
        """Test that the defaults describe a stereo session."""
        config = SLAMConfig()
        assert config.sensor == Sensor.STEREO
        assert config.tracking.min_inliers == 30
        assert config.loop_closing.covisibility_consistency_threshold == 3
        assert config.max_frames_between_keyframes == 30

    def test_from_yaml(self, settings_file: Path):
        """Test that a settings file overrides the defaults section by section."""
        config = SLAMConfig.from_yaml(settings_file)
        assert config.sensor == Sensor.RGBD
        assert config.camera.fx == pytest.approx(517.3)
        assert config.camera.depth_map_factor == pytest.approx(5000.0)
        assert config.tracking.min_inliers == 25
        # Untouched keys keep their defaults
        assert config.tracking.min_inliers_after_relocalization == 50
        assert config.loop_closing.enabled is False

    def test_depth_threshold(self):
        """Test that the close-point depth threshold is th_depth baselines."""
        config = SLAMConfig.from_dict({"camera": {"fx": 400.0, "bf": 80.0, "th_depth": 35.0}})
        assert config.depth_threshold == pytest.approx(7.0)

    def test_explicit_keyframe_gap(self):
        """Test that an explicit keyframe gap overrides the frame rate."""
        config = SLAMConfig.from_dict({"tracking": {"max_frames_between_keyframes": 5}})
        assert config.max_frames_between_keyframes == 5

    def test_unknown_key(self):
        """Test that an unknown key in a section is rejected."""
        with pytest.raises(ValueError, match="min_inlier"):
            SLAMConfig.from_dict({"tracking": {"min_inlier": 3}})

    def test_unknown_section(self):
        """Test that an unknown top-level section is rejected."""
        with pytest.raises(ValueError, match="imu"):
            SLAMConfig.from_dict({"imu": {}})

    def test_invalid_sensor(self):
        """Test that an unknown sensor name is rejected."""
        with pytest.raises(ValueError, match="Invalid sensor"):
            SLAMConfig.from_dict({"sensor": "lidar"})

    def test_missing_file(self, tmp_path: Path):
        """Test that a missing settings file is reported."""
        with pytest.raises(ResourceExhaustion):
            SLAMConfig.from_yaml(tmp_path / "missing.yaml")

    def test_non_mapping_file(self, tmp_path: Path):
        """Test that a settings file must hold a mapping."""
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ResourceExhaustion):
            SLAMConfig.from_yaml(path)

    def test_empty_file(self, tmp_path: Path):
        """Test that an empty settings file gives the defaults."""
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert SLAMConfig.from_yaml(path) == SLAMConfig()
