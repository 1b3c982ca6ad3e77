"""
Pose resection and single-view multi-board calibration.

resect_view poses a camera with known K from 2D-3D correspondences using
P3P inside a-contrario RANSAC. calibrate_inner_grids uses it to treat every
board seen by one image as its own virtual view and refines the lens model
from all of them at once.
"""

from __future__ import annotations

import logging
from dataclasses import replace

import numpy as np

from ..camera import ima2cam, remove_distortion, require_pinhole, undistort_pixels
from ..errors import InsufficientDataError, NoModelFoundError, RefinementFailedError
from ..refinement import Refiner
from ..robust import ResectionKernel, estimate, krt_from_projection
from ..types import (
    BoardDetection,
    CameraModel,
    Intrinsics,
    Landmark,
    Observation,
    Pose,
    RefineOptions,
    SceneGraph,
)
from .board import board_corner_count, planar_board_points, sort_boards_by_distance

logger = logging.getLogger(__name__)


def resect_view(
    points_2d: np.ndarray,
    points_3d: np.ndarray,
    K: np.ndarray,
    image_size: tuple[int, int],
    rng: np.random.Generator,
    weights: np.ndarray | None = None,
    max_iterations: int = 1000,
    min_inliers: int = 10,
) -> tuple[Pose, np.ndarray]:
    """
    Robust camera pose from 2D-3D correspondences with known intrinsics.

    Args:
        points_2d: (n, 2) undistorted pixel coordinates
        points_3d: (n, 3) world points
        K: 3x3 camera matrix
        image_size: (width, height), sets the a-contrario background model
        rng: Random generator for the robust estimator
        weights: Optional (n,) observation weights for the residuals
        max_iterations: RANSAC budget
        min_inliers: Minimum support for a valid pose

    Returns:
        (pose, inlier indices)

    Raises:
        NoModelFoundError: Fewer than min_inliers support the best pose
    """
    kernel = ResectionKernel(points_2d, points_3d, K, image_size, weights)
    result = estimate(kernel, rng, max_iterations=max_iterations)

    if not result.found or result.n_inliers < min_inliers:
        raise NoModelFoundError(
            f"Impossible to find pose ({result.n_inliers} inliers, "
            f"{min_inliers} required)"
        )

    _, R, t = krt_from_projection(result.model)
    logger.debug(
        "Resection: %d/%d inliers after %d iterations",
        result.n_inliers, len(kernel), result.iterations,
    )
    return Pose(rotation=R, translation=t), result.inliers


def observation_weights(
    intrinsics: Intrinsics,
    pixels: np.ndarray,
    floor: float = 0.4,
) -> np.ndarray:
    """
    Down-weight corners far from the optical axis: 1 / max(floor, |x|_inf)
    in undistorted camera coordinates.
    """
    campts = remove_distortion(intrinsics, ima2cam(intrinsics, pixels))
    scale = np.maximum(floor, np.max(np.abs(campts), axis=1))
    return 1.0 / scale


def calibrate_inner_grids(
    scene: SceneGraph,
    detections: dict[int, BoardDetection],
    refiner: Refiner | None,
    rng: np.random.Generator,
    use_simple_pinhole: bool = False,
    resection_iterations: int = 1000,
    min_inliers: int = 10,
    min_board_corners: int = 30,
    initial_square_size: float = 0.25,
) -> SceneGraph:
    """
    Calibrate the lens of a single image showing several boards.

    Boards are taken closest-to-center first. Each board with enough
    corners gets its own local frame, centered on the grid, and becomes a
    virtual view posed by resection. The square size of the local frames
    starts at initial_square_size and doubles after each of the first two
    boards. After refinement the scene keeps the real view with the pose of
    the first board and that board's landmarks.

    Args:
        scene: Input scene (left untouched)
        detections: Must hold exactly one view
        refiner: Refinement collaborator, or None to keep the resection poses
        rng: Random generator for the robust estimator
        use_simple_pinhole: Drop distortion, center the principal point,
            undistort the observations and force square pixels
        resection_iterations: RANSAC budget per board
        min_inliers: Minimum resection support per board
        min_board_corners: Boards with fewer defined corners are skipped
        initial_square_size: Square size of the first local board frame

    Returns:
        Calibrated copy of the scene

    Raises:
        InsufficientDataError: Not exactly one view, missing intrinsic, or
            no usable board
        UnsupportedCameraError: Non-pinhole intrinsic
        NoModelFoundError: A board could not be posed
        RefinementFailedError: The refiner reported failure
    """
    if len(detections) != 1:
        raise InsufficientDataError(
            f"Inner-grid calibration works with exactly one view, got {len(detections)}"
        )

    view_id, detection = next(iter(detections.items()))
    view = scene.views.get(view_id)
    if view is None:
        raise InsufficientDataError(f"View {view_id} is not in the scene")

    intrinsics = scene.intrinsics.get(view.intrinsic_id)
    if intrinsics is None:
        raise InsufficientDataError(f"Intrinsic {view.intrinsic_id} not found")
    require_pinhole(intrinsics)

    if detection.n_boards < 1:
        raise InsufficientDataError(f"View {view_id} has no checkerboards")

    center = np.array([0.5 * view.width, 0.5 * view.height])
    boards = sort_boards_by_distance(detection, center)

    work = scene.copy()
    work.views = {}
    work.poses = {}
    work.landmarks = {}

    square_size = initial_square_size
    n_valid = 0

    for board in boards:
        if board_corner_count(board) < min_board_corners:
            continue

        points_3d, corner_ids = planar_board_points(board, square_size, centered=True)
        pixels = detection.corners[corner_ids]
        undistorted = undistort_pixels(intrinsics, pixels)
        weights = observation_weights(intrinsics, pixels)
        observed = undistorted if use_simple_pinhole else pixels

        pose, inliers = resect_view(
            undistorted, points_3d, intrinsics.matrix, intrinsics.image_size, rng,
            weights=weights,
            max_iterations=resection_iterations, min_inliers=min_inliers,
        )
        logger.info(
            "Board %d: %d corners, %d inliers", n_valid, len(corner_ids), len(inliers)
        )

        for k in range(len(corner_ids)):
            landmark_id = len(work.landmarks)
            work.landmarks[landmark_id] = Landmark(
                X=points_3d[k].copy(),
                observations={
                    n_valid: Observation(
                        x=observed[k].copy(),
                        feature_id=landmark_id,
                        weight=float(weights[k]),
                    )
                },
                desc_type="checkerboard",
            )

        work.views[n_valid] = replace(view, view_id=n_valid, pose_id=n_valid)
        work.poses[n_valid] = pose

        if n_valid < 2:
            square_size *= 2.0
        n_valid += 1

    if n_valid == 0:
        raise InsufficientDataError(
            f"No checkerboard with at least {min_board_corners} corners"
        )

    if use_simple_pinhole:
        K = intrinsics.matrix.copy()
        K[0:2, 2] = center
        work.intrinsics[view.intrinsic_id] = replace(
            intrinsics,
            model=CameraModel.PINHOLE,
            matrix=K,
            distortion=np.zeros(0),
        )

    options = (
        RefineOptions.ROTATION
        | RefineOptions.TRANSLATION
        | RefineOptions.INTRINSICS_DISTORTION
    )
    _refine(work, refiner, options)

    if use_simple_pinhole:
        current = work.intrinsics[view.intrinsic_id]
        fx, fy = current.fx, current.fy
        ppy = current.principal_point[1]

        for landmark in work.landmarks.values():
            for key, obs in landmark.observations.items():
                x = obs.x.copy()
                x[1] = (x[1] - ppy) / fy * fx + ppy
                landmark.observations[key] = replace(obs, x=x)

        K = current.matrix.copy()
        K[1, 1] = fx
        work.intrinsics[view.intrinsic_id] = replace(current, matrix=K)
        _refine(work, refiner, options)

    # Consolidate the virtual views back into the real one
    result = scene.copy()
    result.intrinsics = work.intrinsics
    result.poses = dict(scene.poses)
    result.poses[view.pose_key] = work.poses[0]
    result.landmarks = {}
    for landmark_id, landmark in work.landmarks.items():
        if 0 not in landmark.observations:
            continue
        landmark.observations = {view_id: landmark.observations[0]}
        result.landmarks[landmark_id] = landmark

    return result


def _refine(scene: SceneGraph, refiner: Refiner | None, options: RefineOptions) -> None:
    if refiner is None:
        return
    if not refiner.refine(scene, options):
        raise RefinementFailedError("Failed to calibrate")
