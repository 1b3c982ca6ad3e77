"""
Tests for calistrap.config (TOML).
"""

import pytest

from calistrap.config import create_default_config, load_config, save_config
from calistrap.types import BootstrapConfig, CalibrationConfig, PipelineConfig


class TestPipelineConfig:
    def test_save_and_load_roundtrip(self, temp_dir):
        """Config should survive save/load cycle."""
        original = PipelineConfig(
            calibration=CalibrationConfig(
                square_size=0.035,
                mode="inner_grids",
                distance=1.5,
                use_simple_pinhole=True,
                resection_iterations=500,
                min_board_corners=20,
            ),
            bootstrap=BootstrapConfig(
                max_epipolar_distance=2.0,
                min_angle_deg=3.0,
                max_workers=4,
                refine=True,
            ),
            seed=7,
            log_level="debug",
        )

        config_path = temp_dir / "nested" / "calistrap.toml"
        save_config(original, config_path)
        loaded = load_config(config_path)

        assert loaded == original

    def test_unset_values_are_omitted(self, temp_dir):
        config_path = temp_dir / "calistrap.toml"
        save_config(create_default_config(), config_path)

        keys = [line.split("=")[0].strip() for line in config_path.read_text().splitlines()]
        assert "distance" not in keys
        assert "max_workers" not in keys
        assert load_config(config_path) == create_default_config()

    def test_missing_keys_use_defaults(self, temp_dir):
        config_path = temp_dir / "partial.toml"
        config_path.write_text('seed = 3\n\n[calibration]\nsquare_size = 0.05\n')

        config = load_config(config_path)

        assert config.seed == 3
        assert config.calibration.square_size == 0.05
        assert config.calibration.mode == "basic"
        assert config.bootstrap == BootstrapConfig()

    def test_unknown_mode(self, temp_dir):
        config_path = temp_dir / "bad.toml"
        config_path.write_text('[calibration]\nmode = "stereo"\n')

        with pytest.raises(ValueError, match="calibration mode"):
            load_config(config_path)

    def test_unknown_log_level(self, temp_dir):
        config_path = temp_dir / "bad.toml"
        config_path.write_text('log_level = "loud"\n')

        with pytest.raises(ValueError, match="log level"):
            load_config(config_path)

    def test_default_config(self):
        config = create_default_config()

        assert config.calibration.square_size == 0.1
        assert config.calibration.mode == "basic"
        assert config.calibration.distance is None
        assert config.bootstrap.min_angle_deg == 5.0
        assert config.bootstrap.max_level == 16
        assert config.bootstrap.refine is False
        assert config.seed == 0
