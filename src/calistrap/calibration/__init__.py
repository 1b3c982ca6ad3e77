"""
Calibration module for calistrap.

Functions take a scene and board detections and return a calibrated copy
of the scene. Refinement is delegated to an injected Refiner.
"""

from .board import (
    board_cells,
    board_corner_count,
    planar_board_points,
    sort_boards_by_distance,
)

from .intrinsic import (
    calibrate_from_homographies,
    calibrate_scene,
    compute_v,
    estimate_board_homography,
    initial_poses,
    intrinsic_matrix_from_conic,
)

from .resection import (
    calibrate_inner_grids,
    observation_weights,
    resect_view,
)

__all__ = [
    # Board
    "board_cells",
    "board_corner_count",
    "planar_board_points",
    "sort_boards_by_distance",
    # Intrinsic
    "compute_v",
    "intrinsic_matrix_from_conic",
    "calibrate_from_homographies",
    "initial_poses",
    "estimate_board_homography",
    "calibrate_scene",
    # Resection
    "resect_view",
    "observation_weights",
    "calibrate_inner_grids",
]
