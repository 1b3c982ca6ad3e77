"""
Camera resection primitives: P3P minimal solver and projection matrix
decomposition.
"""

from __future__ import annotations

import cv2
import numpy as np
from scipy.linalg import rq


def solve_p3p(
    points_2d: np.ndarray,
    points_3d: np.ndarray,
    K: np.ndarray,
) -> list[np.ndarray]:
    """
    Minimal absolute pose from three 2D-3D correspondences.

    Args:
        points_2d: (3, 2) undistorted pixel coordinates
        points_3d: (3, 3) world points
        K: 3x3 camera matrix

    Returns:
        Up to four candidate 3x4 projection matrices K [R | t]
    """
    obj = np.ascontiguousarray(points_3d, dtype=np.float64).reshape(3, 3)
    img = np.ascontiguousarray(points_2d, dtype=np.float64).reshape(3, 2)

    try:
        n_solutions, rvecs, tvecs = cv2.solveP3P(
            obj, img, K, None, flags=cv2.SOLVEPNP_P3P
        )
    except cv2.error:
        return []

    models = []
    for rvec, tvec in zip(rvecs[:n_solutions], tvecs[:n_solutions]):
        R = cv2.Rodrigues(rvec)[0]
        Rt = np.hstack([R, np.asarray(tvec, dtype=np.float64).reshape(3, 1)])
        P = K @ Rt
        if np.all(np.isfinite(P)):
            models.append(P)

    return models


def resection_residuals(
    P: np.ndarray,
    points_2d: np.ndarray,
    points_3d: np.ndarray,
    weights: np.ndarray | None = None,
) -> np.ndarray:
    """
    Weighted squared reprojection error per correspondence.

    Points that project behind the camera get an infinite error.
    """
    homog = np.column_stack([points_3d, np.ones(len(points_3d))]) @ P.T
    depth = homog[:, 2]
    errors = np.full(len(points_3d), np.inf)

    in_front = depth > 0
    proj = homog[in_front, 0:2] / depth[in_front, None]
    errors[in_front] = np.sum((proj - points_2d[in_front]) ** 2, axis=1)

    if weights is not None:
        errors[in_front] *= weights[in_front] ** 2
    return errors


def krt_from_projection(P: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Decompose P = K [R | t] by RQ decomposition.

    Returns:
        (K with K[2, 2] = 1 and a positive diagonal, R in SO(3), t)
    """
    P = np.asarray(P, dtype=np.float64)
    if np.linalg.det(P[:, 0:3]) < 0:
        P = -P

    K, R = rq(P[:, 0:3])

    signs = np.sign(np.diag(K))
    signs[signs == 0] = 1.0
    S = np.diag(signs)
    K = K @ S
    R = S @ R

    t = np.linalg.solve(K, P[:, 3])
    K = K / K[2, 2]
    return K, R, t
