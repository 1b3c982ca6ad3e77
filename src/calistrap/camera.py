"""
Camera model operations.

Every function branches on Intrinsics.model. Pixel coordinates are (n, 2)
arrays; "camera" coordinates are normalized image coordinates (z = 1 plane).
"""

from __future__ import annotations

import numpy as np

from .errors import UnsupportedCameraError
from .types import CameraModel, Intrinsics, Pose


# ============================================================================
# Pixel <-> Camera Plane
# ============================================================================


def ima2cam(intrinsics: Intrinsics, points: np.ndarray) -> np.ndarray:
    """
    Map pixels to normalized camera coordinates (inverse of K).
    """
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))
    K = intrinsics.matrix

    y = (points[:, 1] - K[1, 2]) / K[1, 1]
    x = (points[:, 0] - K[0, 2] - K[0, 1] * y) / K[0, 0]
    return np.column_stack([x, y])


def cam2ima(intrinsics: Intrinsics, points: np.ndarray) -> np.ndarray:
    """
    Map normalized camera coordinates to pixels (apply K).
    """
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))
    K = intrinsics.matrix

    u = K[0, 0] * points[:, 0] + K[0, 1] * points[:, 1] + K[0, 2]
    v = K[1, 1] * points[:, 1] + K[1, 2]
    return np.column_stack([u, v])


# ============================================================================
# Distortion
# ============================================================================


def has_distortion(intrinsics: Intrinsics) -> bool:
    return intrinsics.distortion.size > 0 and bool(np.any(intrinsics.distortion != 0))


def add_distortion(intrinsics: Intrinsics, points: np.ndarray) -> np.ndarray:
    """
    Apply the lens model to normalized camera coordinates.
    """
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))

    if intrinsics.model is CameraModel.PINHOLE:
        return points.copy()

    if intrinsics.model is CameraModel.BROWN:
        k1, k2, p1, p2, k3 = intrinsics.distortion[:5]
        x, y = points[:, 0], points[:, 1]
        r2 = x**2 + y**2
        radial = 1 + k1 * r2 + k2 * r2**2 + k3 * r2**3
        delta_x = 2 * p1 * x * y + p2 * (r2 + 2 * x**2)
        delta_y = p1 * (r2 + 2 * y**2) + 2 * p2 * x * y
        return np.column_stack([x * radial + delta_x, y * radial + delta_y])

    if intrinsics.model is CameraModel.FISHEYE:
        k1, k2, k3, k4 = intrinsics.distortion[:4]
        r = np.linalg.norm(points, axis=1)
        theta = np.arctan(r)
        theta2 = theta**2
        theta_d = theta * (1 + k1 * theta2 + k2 * theta2**2 + k3 * theta2**3 + k4 * theta2**4)
        scale = np.ones_like(r)
        nonzero = r > 1e-8
        scale[nonzero] = theta_d[nonzero] / r[nonzero]
        return points * scale[:, None]

    raise UnsupportedCameraError(f"Unknown camera model: {intrinsics.model}")


def remove_distortion(
    intrinsics: Intrinsics,
    points: np.ndarray,
    iterations: int = 20,
) -> np.ndarray:
    """
    Invert the lens model on normalized camera coordinates.

    Brown distortion uses the fixed-point iteration from
    https://yangyushi.github.io/code/2020/03/04/opencv-undistort.html,
    fisheye distortion solves theta_d(theta) by Newton steps.
    """
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))
    if points.size == 0:
        return points.reshape(0, 2).copy()

    if intrinsics.model is CameraModel.PINHOLE:
        return points.copy()

    if intrinsics.model is CameraModel.BROWN:
        k1, k2, p1, p2, k3 = intrinsics.distortion[:5]
        x0, y0 = points[:, 0], points[:, 1]
        x, y = x0.copy(), y0.copy()

        for _ in range(iterations):
            r2 = x**2 + y**2
            k_inv = 1 / (1 + k1 * r2 + k2 * r2**2 + k3 * r2**3)
            delta_x = 2 * p1 * x * y + p2 * (r2 + 2 * x**2)
            delta_y = p1 * (r2 + 2 * y**2) + 2 * p2 * x * y
            x = (x0 - delta_x) * k_inv
            y = (y0 - delta_y) * k_inv

        return np.column_stack([x, y])

    if intrinsics.model is CameraModel.FISHEYE:
        k1, k2, k3, k4 = intrinsics.distortion[:4]
        theta_d = np.linalg.norm(points, axis=1)
        theta = theta_d.copy()

        for _ in range(iterations):
            t2 = theta**2
            f = theta * (1 + k1 * t2 + k2 * t2**2 + k3 * t2**3 + k4 * t2**4) - theta_d
            df = 1 + 3 * k1 * t2 + 5 * k2 * t2**2 + 7 * k3 * t2**3 + 9 * k4 * t2**4
            theta = theta - f / df

        scale = np.ones_like(theta_d)
        nonzero = theta_d > 1e-8
        scale[nonzero] = np.tan(theta[nonzero]) / theta_d[nonzero]
        return points * scale[:, None]

    raise UnsupportedCameraError(f"Unknown camera model: {intrinsics.model}")


def undistort_pixels(intrinsics: Intrinsics, points: np.ndarray) -> np.ndarray:
    """
    Undistort pixel coordinates, staying in pixel units.
    """
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))
    if points.size == 0:
        return points.reshape(0, 2).copy()
    if not has_distortion(intrinsics):
        return points.copy()
    return cam2ima(intrinsics, remove_distortion(intrinsics, ima2cam(intrinsics, points)))


def distort_pixels(intrinsics: Intrinsics, points: np.ndarray) -> np.ndarray:
    """
    Inverse of undistort_pixels.
    """
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))
    if not has_distortion(intrinsics):
        return points.copy()
    return cam2ima(intrinsics, add_distortion(intrinsics, ima2cam(intrinsics, points)))


# ============================================================================
# Projection
# ============================================================================


def project(
    intrinsics: Intrinsics,
    pose: Pose,
    points_3d: np.ndarray,
    distort: bool = True,
) -> np.ndarray:
    """
    Project (n, 3) world points to (n, 2) pixels.
    """
    cam = pose.transform(points_3d)
    normalized = cam[:, 0:2] / cam[:, 2:3]
    if distort:
        normalized = add_distortion(intrinsics, normalized)
    return cam2ima(intrinsics, normalized)


def unproject(intrinsics: Intrinsics, points: np.ndarray) -> np.ndarray:
    """
    Unit-norm bearing vectors (n, 3) of pixel observations.
    """
    normalized = remove_distortion(intrinsics, ima2cam(intrinsics, points))
    rays = np.column_stack([normalized, np.ones(len(normalized))])
    return rays / np.linalg.norm(rays, axis=1, keepdims=True)


def require_pinhole(intrinsics: Intrinsics) -> None:
    """
    Raise UnsupportedCameraError unless the model is pinhole-compatible.
    """
    if not intrinsics.model.is_pinhole:
        raise UnsupportedCameraError(
            f"Camera model '{intrinsics.model.value}' is not a pinhole model"
        )
