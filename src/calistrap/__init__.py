# calistrap - Checkerboard calibration and reconstruction bootstrap

__version__ = "0.1.0"

# Errors
from calistrap.errors import (
    CalibrationError,
    InsufficientDataError,
    DegenerateGeometryError,
    NoModelFoundError,
    RefinementFailedError,
    UnsupportedCameraError,
)

# Core types
from calistrap.types import (
    CameraModel,
    Intrinsics,
    Pose,
    View,
    Observation,
    Landmark,
    Track,
    TrackItem,
    ReconstructedPair,
    BoardDetection,
    SceneGraph,
    RefineOptions,
    CalibrationConfig,
    BootstrapConfig,
    PipelineConfig,
    create_intrinsics,
    identity_pose,
)

# Configuration
from calistrap.config import (
    load_config,
    save_config,
    create_default_config,
)

# Input/output
from calistrap.dataio import (
    load_scene,
    save_scene,
    load_board_detections,
    load_tracks,
    load_pairs,
)

# Refinement
from calistrap.refinement import (
    Refiner,
    BundleAdjuster,
)

# Pipeline
from calistrap.pipeline import (
    BootstrapResult,
    run_calibration,
    run_bootstrap,
)

__all__ = [
    # Errors
    "CalibrationError",
    "InsufficientDataError",
    "DegenerateGeometryError",
    "NoModelFoundError",
    "RefinementFailedError",
    "UnsupportedCameraError",
    # Core types
    "CameraModel",
    "Intrinsics",
    "Pose",
    "View",
    "Observation",
    "Landmark",
    "Track",
    "TrackItem",
    "ReconstructedPair",
    "BoardDetection",
    "SceneGraph",
    "RefineOptions",
    "CalibrationConfig",
    "BootstrapConfig",
    "PipelineConfig",
    "create_intrinsics",
    "identity_pose",
    # Configuration
    "load_config",
    "save_config",
    "create_default_config",
    # Input/output
    "load_scene",
    "save_scene",
    "load_board_detections",
    "load_tracks",
    "load_pairs",
    # Refinement
    "Refiner",
    "BundleAdjuster",
    # Pipeline
    "BootstrapResult",
    "run_calibration",
    "run_bootstrap",
]
