"""
Intrinsic calibration from planar boards.

Zhang, "A Flexible New Technique for Camera Calibration", PAMI 2000.
Each board view gives a plane-to-image homography H = K [r1 r2 t]; the
orthonormality of r1, r2 yields two linear constraints per view on the
image of the absolute conic B = K^-T K^-1.
"""

from __future__ import annotations

import logging
from dataclasses import replace

import numpy as np

from ..camera import require_pinhole, undistort_pixels
from ..errors import (
    CalibrationError,
    DegenerateGeometryError,
    InsufficientDataError,
    RefinementFailedError,
)
from ..refinement import Refiner
from ..robust import HomographyKernel, estimate
from ..types import (
    BoardDetection,
    Intrinsics,
    Landmark,
    Observation,
    Pose,
    RefineOptions,
    SceneGraph,
    orthonormalize,
)
from .board import board_cells, planar_board_points

logger = logging.getLogger(__name__)


# ============================================================================
# Closed-Form Solution
# ============================================================================


def compute_v(H: np.ndarray, i: int, j: int) -> np.ndarray:
    """
    Row v_ij with h_i^T B h_j = v_ij . b, b = (B00, B01, B11, B02, B12, B22).
    """
    return np.array([
        H[0, i] * H[0, j],
        H[0, i] * H[1, j] + H[1, i] * H[0, j],
        H[1, i] * H[1, j],
        H[2, i] * H[0, j] + H[0, i] * H[2, j],
        H[2, i] * H[1, j] + H[1, i] * H[2, j],
        H[2, i] * H[2, j],
    ], dtype=np.float64)


def intrinsic_matrix_from_conic(b: np.ndarray) -> np.ndarray:
    """
    Recover K from the six entries of B (up to scale).

    Raises:
        DegenerateGeometryError: If B does not correspond to a real camera
    """
    b = np.asarray(b, dtype=np.float64)
    if b[0] < 0:
        b = -b

    B00, B01, B11, B02, B12, B22 = b

    denominator = B00 * B11 - B01 * B01
    if abs(B00) < 1e-300 or abs(denominator) < 1e-12 * max(1.0, B00 * B00):
        raise DegenerateGeometryError("Degenerate absolute conic (B00*B11 - B01^2 = 0)")

    v0 = (B01 * B02 - B00 * B12) / denominator
    lam = B22 - (B02 * B02 + v0 * (B01 * B02 - B00 * B12)) / B00
    if not lam > 0:
        raise DegenerateGeometryError(f"Non-positive conic scale (lambda = {lam:.3g})")

    alpha2 = lam / B00
    beta2 = lam * B00 / denominator
    if not (alpha2 > 0 and beta2 > 0):
        raise DegenerateGeometryError("Absolute conic is not positive definite")

    alpha = np.sqrt(alpha2)
    beta = np.sqrt(beta2)
    gamma = -B01 * alpha2 * beta / lam
    u0 = gamma * v0 / beta - B02 * alpha2 / lam

    K = np.array([
        [alpha, gamma, u0],
        [0.0, beta, v0],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)

    if not np.all(np.isfinite(K)):
        raise DegenerateGeometryError("Non-finite intrinsic parameters")
    return K


def calibrate_from_homographies(homographies: list[np.ndarray]) -> np.ndarray:
    """
    Closed-form intrinsic matrix from board homographies.

    Homographies are preconditioned by an isotropic pixel scaling so the
    linear system is well balanced; the result is scaled back.

    Args:
        homographies: Plane-to-pixel homographies, one per view

    Returns:
        3x3 upper-triangular K

    Raises:
        InsufficientDataError: Fewer than 2 homographies
        DegenerateGeometryError: Views do not determine K
    """
    if len(homographies) < 2:
        raise InsufficientDataError(
            f"At least 2 homographies are needed, got {len(homographies)}"
        )

    Hs = [np.asarray(H, dtype=np.float64) / np.linalg.norm(H) for H in homographies]

    # Pixel-scale normalization N = diag(1/s, 1/s, 1)
    scale = 1.0
    for H in Hs:
        if abs(H[2, 2]) > 1e-12:
            scale = max(scale, float(np.max(np.abs(H[0:2, 2] / H[2, 2]))))
    N = np.diag([1.0 / scale, 1.0 / scale, 1.0])

    rows = []
    for H in Hs:
        Hn = N @ H
        rows.append(compute_v(Hn, 0, 1))
        rows.append(compute_v(Hn, 0, 0) - compute_v(Hn, 1, 1))

    # Two views leave one degree of freedom: assume zero skew
    if len(Hs) == 2:
        rows.append(np.array([0.0, 1.0, 0.0, 0.0, 0.0, 0.0]))

    V = np.array(rows)
    _, _, Vt = np.linalg.svd(V, full_matrices=True)
    b = Vt[-1]

    K_normalized = intrinsic_matrix_from_conic(b)
    K = np.linalg.inv(N) @ K_normalized
    return K / K[2, 2]


def initial_poses(
    K: np.ndarray,
    homographies: dict[int, np.ndarray],
) -> dict[int, Pose]:
    """
    Board pose of every view from its homography and K.

    Columns of K^-1 H are scaled by 1 / ||K^-1 h1||, the sign is chosen so
    the board lies in front of the camera, r3 = r1 x r2 and the rotation is
    projected onto SO(3).
    """
    K_inv = np.linalg.inv(K)
    poses = {}

    for view_id, H in homographies.items():
        M = K_inv @ H
        lam = 1.0 / np.linalg.norm(M[:, 0])
        if lam * M[2, 2] < 0:
            lam = -lam

        r1 = lam * M[:, 0]
        r2 = lam * M[:, 1]
        r3 = np.cross(r1, r2)
        t = lam * M[:, 2]

        R = orthonormalize(np.column_stack([r1, r2, r3]))
        poses[view_id] = Pose(rotation=R, translation=t)

    return poses


# ============================================================================
# Board Homographies
# ============================================================================


def estimate_board_homography(
    board: np.ndarray,
    detection: BoardDetection,
    intrinsics: Intrinsics,
    square_size: float,
    rng: np.random.Generator,
    max_iterations: int = 1024,
    min_inliers: int = 10,
) -> np.ndarray | None:
    """
    Homography from the metric board plane to undistorted pixels.

    Returns:
        3x3 homography, or None if fewer than min_inliers support it
    """
    points, corner_ids = planar_board_points(board, square_size)
    if len(corner_ids) < HomographyKernel.sample_size + 1:
        return None

    pixels = undistort_pixels(intrinsics, detection.corners[corner_ids])
    kernel = HomographyKernel(points[:, 0:2], pixels, intrinsics.image_size)
    result = estimate(kernel, rng, max_iterations=max_iterations)

    logger.debug(
        "Homography: %d/%d inliers, threshold %.3g px^2",
        result.n_inliers, len(kernel), result.threshold,
    )

    if not result.found or result.n_inliers < min_inliers:
        return None
    return result.model


# ============================================================================
# Scene Calibration
# ============================================================================


def calibrate_scene(
    scene: SceneGraph,
    detections: dict[int, BoardDetection],
    square_size: float,
    refiner: Refiner | None,
    rng: np.random.Generator,
    homography_iterations: int = 1024,
    min_inliers: int = 10,
) -> SceneGraph:
    """
    Calibrate every intrinsic of the scene from single-board views.

    Views contribute only if exactly one board was detected in them. Each
    intrinsic is solved independently; all of them share one board landmark
    grid whose size must match across intrinsics.

    Args:
        scene: Input scene (left untouched)
        detections: view_id -> BoardDetection
        square_size: Board square edge length (world units)
        refiner: Refinement collaborator, or None to keep the linear solution
        rng: Random generator for the robust estimator
        homography_iterations: RANSAC budget per view
        min_inliers: Minimum homography support for a view to be used

    Returns:
        Calibrated copy of the scene

    Raises:
        InsufficientDataError: Fewer than 2 views with detections, or an
            intrinsic with fewer than 2 usable homographies
        UnsupportedCameraError: Non-pinhole intrinsic
        RefinementFailedError: The refiner reported failure
    """
    if len(detections) < 2:
        raise InsufficientDataError("At least 2 views with detections are needed")

    scene = scene.copy()
    scene.landmarks = {}
    landmark_index = None  # (rows, cols) grid of landmark ids

    for intrinsic_id in sorted(scene.intrinsics):
        view_ids = scene.views_of_intrinsic(intrinsic_id)
        if not view_ids:
            logger.debug("Intrinsic %d has no views, skipped", intrinsic_id)
            continue

        intrinsics = scene.intrinsics[intrinsic_id]
        require_pinhole(intrinsics)
        logger.info("Processing intrinsic %d", intrinsic_id)

        max_rows = 0
        max_cols = 0
        homographies = {}

        for view_id in view_ids:
            detection = detections.get(view_id)
            n_boards = 0 if detection is None else detection.n_boards
            if n_boards != 1:
                logger.error(
                    "The view %d has either 0 or more than 1 checkerboard found.", view_id
                )
                continue

            board = detection.boards[0]
            max_rows = max(max_rows, board.shape[0])
            max_cols = max(max_cols, board.shape[1])

            H = estimate_board_homography(
                board, detection, intrinsics, square_size, rng,
                max_iterations=homography_iterations, min_inliers=min_inliers,
            )
            if H is None:
                logger.warning("No homography for view %d", view_id)
                continue
            homographies[view_id] = H

        if len(homographies) < 2:
            raise InsufficientDataError(
                f"Insufficient calibration data for intrinsic {intrinsic_id}: "
                f"{len(homographies)} usable view(s)"
            )

        K = calibrate_from_homographies(list(homographies.values()))
        scene.intrinsics[intrinsic_id] = replace(intrinsics, matrix=K)
        logger.info(
            "Intrinsic %d: fx=%.2f fy=%.2f skew=%.3g pp=(%.2f, %.2f)",
            intrinsic_id, K[0, 0], K[1, 1], K[0, 1], K[0, 2], K[1, 2],
        )

        if landmark_index is None:
            landmark_index = np.arange(max_rows * max_cols).reshape(max_rows, max_cols)
            for i in range(max_rows):
                for j in range(max_cols):
                    scene.landmarks[int(landmark_index[i, j])] = Landmark(
                        X=np.array([square_size * j, square_size * i, 0.0]),
                        desc_type="checkerboard",
                    )
        elif landmark_index.shape != (max_rows, max_cols):
            raise CalibrationError(
                f"Inconsistent checkerboard size: {landmark_index.shape} vs "
                f"{(max_rows, max_cols)}"
            )

        for view_id, pose in initial_poses(K, homographies).items():
            scene.set_pose(view_id, pose)

        for view_id in homographies:
            detection = detections[view_id]
            rows, cols, corner_ids = board_cells(detection.boards[0])
            for i, j, corner_id in zip(rows, cols, corner_ids):
                landmark_id = int(landmark_index[i, j])
                scene.landmarks[landmark_id].observations[view_id] = Observation(
                    x=detection.corners[corner_id].copy(),
                    feature_id=landmark_id,
                    weight=1.0,
                )

        if refiner is None:
            continue

        options = (
            RefineOptions.ROTATION
            | RefineOptions.TRANSLATION
            | RefineOptions.INTRINSICS_ALL
        )
        if not refiner.refine(scene, options):
            raise RefinementFailedError(f"Failed to calibrate intrinsic {intrinsic_id}")

    return scene
