"""
Planar homography estimation.

Normalized DLT (Hartley & Zisserman, Alg. 4.2) for the 4-point minimal case
and for least-squares refits on inlier sets.
"""

from __future__ import annotations

from itertools import combinations

import numpy as np


def normalize_points(points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Normalize 2D points by centering and scaling.

    Args:
        points: Array of points (n, 2)

    Returns:
        (normalized_points, T) where T is the 3x3 similarity that maps
        points to normalized_points (mean distance sqrt(2) from origin)
    """
    mean = np.mean(points, axis=0)
    centered = points - mean
    mean_dist = np.mean(np.linalg.norm(centered, axis=1))
    scale = np.sqrt(2.0) / mean_dist if mean_dist > 0 else 1.0

    T = np.array([
        [scale, 0.0, -scale * mean[0]],
        [0.0, scale, -scale * mean[1]],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)

    return centered * scale, T


def has_collinear_triple(points: np.ndarray, tol: float = 1e-6) -> bool:
    """
    True if any three of the (normalized) points are collinear.
    """
    for a, b, c in combinations(range(len(points)), 3):
        ab = points[b] - points[a]
        ac = points[c] - points[a]
        area2 = abs(ab[0] * ac[1] - ab[1] * ac[0])
        if area2 < tol:
            return True
    return False


def fit_homography(src: np.ndarray, dst: np.ndarray) -> np.ndarray | None:
    """
    Estimate H with dst ~ H @ src from n >= 4 correspondences.

    Args:
        src: (n, 2) source points
        dst: (n, 2) target points

    Returns:
        3x3 homography scaled so H[2, 2] = 1 (unit norm if H[2, 2] vanishes),
        or None for degenerate input
    """
    src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
    dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)
    n = len(src)
    if n < 4 or len(dst) != n:
        return None

    src_n, T_src = normalize_points(src)
    dst_n, T_dst = normalize_points(dst)

    if n == 4 and (has_collinear_triple(src_n) or has_collinear_triple(dst_n)):
        return None

    A = np.zeros((2 * n, 9), dtype=np.float64)
    x, y = src_n[:, 0], src_n[:, 1]
    u, v = dst_n[:, 0], dst_n[:, 1]
    A[0::2, 0] = x
    A[0::2, 1] = y
    A[0::2, 2] = 1.0
    A[0::2, 6] = -u * x
    A[0::2, 7] = -u * y
    A[0::2, 8] = -u
    A[1::2, 3] = x
    A[1::2, 4] = y
    A[1::2, 5] = 1.0
    A[1::2, 6] = -v * x
    A[1::2, 7] = -v * y
    A[1::2, 8] = -v

    # full_matrices so the 8x9 minimal system still yields its null vector
    _, s, Vt = np.linalg.svd(A, full_matrices=True)

    # Rank of A must be 8
    if s[0] <= 0 or s[7] / s[0] < 1e-10:
        return None

    Hn = Vt[-1].reshape(3, 3)
    H = np.linalg.inv(T_dst) @ Hn @ T_src

    if not np.all(np.isfinite(H)):
        return None
    if abs(H[2, 2]) > 1e-12:
        return H / H[2, 2]
    return H / np.linalg.norm(H)


def transfer_points(H: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    Apply a homography to (n, 2) points. Points mapped to infinity become inf.
    """
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))
    homog = np.column_stack([points, np.ones(len(points))]) @ H.T
    w = homog[:, 2]
    out = np.full((len(points), 2), np.inf)
    valid = np.abs(w) > 1e-12
    out[valid] = homog[valid, 0:2] / w[valid, None]
    return out


def homography_residuals(H: np.ndarray, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """
    Squared transfer error ||H src - dst||^2 in the target image, per point.
    """
    diff = transfer_points(H, src) - dst
    errors = np.sum(diff**2, axis=1)
    errors[~np.isfinite(errors)] = np.inf
    return errors
