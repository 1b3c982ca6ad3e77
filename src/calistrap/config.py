"""
Configuration loading/saving.

Pure functions operating on dataclasses, TOML via rtoml.
"""

from __future__ import annotations

from pathlib import Path

import rtoml

from .types import BootstrapConfig, CalibrationConfig, PipelineConfig


CALIBRATION_MODES = ("basic", "inner_grids")
LOG_LEVELS = ("fatal", "error", "warning", "info", "debug", "trace")


# ============================================================================
# TOML Pipeline Configuration
# ============================================================================


def load_config(path: Path) -> PipelineConfig:
    """
    Load pipeline configuration from TOML file.

    Missing keys take their dataclass defaults.

    Args:
        path: Path to a .toml file

    Returns:
        PipelineConfig dataclass

    Raises:
        ValueError: Unknown calibration mode or log level
    """
    data = rtoml.load(Path(path))

    def parse_calibration(section: dict) -> CalibrationConfig:
        default = CalibrationConfig()
        mode = section.get("mode", default.mode)
        if mode not in CALIBRATION_MODES:
            raise ValueError(
                f"Unknown calibration mode '{mode}', expected one of {CALIBRATION_MODES}"
            )
        return CalibrationConfig(
            square_size=float(section.get("square_size", default.square_size)),
            mode=mode,
            distance=section.get("distance", default.distance),
            use_simple_pinhole=bool(
                section.get("use_simple_pinhole", default.use_simple_pinhole)
            ),
            homography_iterations=int(
                section.get("homography_iterations", default.homography_iterations)
            ),
            resection_iterations=int(
                section.get("resection_iterations", default.resection_iterations)
            ),
            min_inliers=int(section.get("min_inliers", default.min_inliers)),
            min_board_corners=int(
                section.get("min_board_corners", default.min_board_corners)
            ),
        )

    def parse_bootstrap(section: dict) -> BootstrapConfig:
        default = BootstrapConfig()
        return BootstrapConfig(
            max_epipolar_distance=float(
                section.get("max_epipolar_distance", default.max_epipolar_distance)
            ),
            min_angle_deg=float(section.get("min_angle_deg", default.min_angle_deg)),
            min_tracks=int(section.get("min_tracks", default.min_tracks)),
            max_level=int(section.get("max_level", default.max_level)),
            max_workers=section.get("max_workers", default.max_workers),
            refine=bool(section.get("refine", default.refine)),
        )

    log_level = data.get("log_level", "info")
    if log_level not in LOG_LEVELS:
        raise ValueError(f"Unknown log level '{log_level}', expected one of {LOG_LEVELS}")

    return PipelineConfig(
        calibration=parse_calibration(data.get("calibration", {})),
        bootstrap=parse_bootstrap(data.get("bootstrap", {})),
        seed=int(data.get("seed", 0)),
        log_level=log_level,
    )


def save_config(config: PipelineConfig, path: Path) -> None:
    """
    Save pipeline configuration to TOML file.

    Optional values that are unset are left out of the file.

    Args:
        config: PipelineConfig dataclass
        path: Path to save the .toml file
    """
    def drop_none(section: dict) -> dict:
        return {k: v for k, v in section.items() if v is not None}

    calibration = config.calibration
    bootstrap = config.bootstrap

    data = {
        "seed": config.seed,
        "log_level": config.log_level,
        "calibration": drop_none({
            "square_size": calibration.square_size,
            "mode": calibration.mode,
            "distance": calibration.distance,
            "use_simple_pinhole": calibration.use_simple_pinhole,
            "homography_iterations": calibration.homography_iterations,
            "resection_iterations": calibration.resection_iterations,
            "min_inliers": calibration.min_inliers,
            "min_board_corners": calibration.min_board_corners,
        }),
        "bootstrap": drop_none({
            "max_epipolar_distance": bootstrap.max_epipolar_distance,
            "min_angle_deg": bootstrap.min_angle_deg,
            "min_tracks": bootstrap.min_tracks,
            "max_level": bootstrap.max_level,
            "max_workers": bootstrap.max_workers,
            "refine": bootstrap.refine,
        }),
    }

    # Ensure parent directory exists
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(data, f)


def create_default_config() -> PipelineConfig:
    """
    Create a default pipeline configuration.
    """
    return PipelineConfig(
        calibration=CalibrationConfig(),
        bootstrap=BootstrapConfig(),
    )
