"""
Estimation kernels for the a-contrario RANSAC engine.

A kernel owns one correspondence set and knows how to fit minimal models,
score every correspondence and refit on inliers. The engine itself is model
agnostic.
"""

from __future__ import annotations

from typing import Protocol

import numpy as np

from .homography import fit_homography, homography_residuals
from .resection import resection_residuals, solve_p3p


class Kernel(Protocol):
    """
    Interface a model must implement to be usable by acransac.estimate.

    log_alpha0 is the log10 probability that a random point falls at unit
    error; mult_error scales log10(error) (1.0 for squared point-to-point
    distances).
    """

    sample_size: int
    max_models: int
    log_alpha0: float
    mult_error: float

    def __len__(self) -> int:
        ...

    def fit(self, sample: np.ndarray) -> list[np.ndarray]:
        """
        Fit from a minimal sample of indices.
        Return an empty list if the sample is degenerate.
        """
        ...

    def errors(self, model: np.ndarray) -> np.ndarray:
        """
        Residual of every correspondence under model. Shape (n,).
        """
        ...

    def fit_least_squares(self, indices: np.ndarray) -> np.ndarray | None:
        """
        Refit the model on an inlier set, or None if not supported.
        """
        ...


def point_to_point_log_alpha0(image_size: tuple[int, int]) -> float:
    """
    log10 of the probability that a uniform point lands within unit
    distance of its prediction in a w x h image.
    """
    w, h = image_size
    return float(np.log10(np.pi / (w * h)))


class HomographyKernel:
    """4-point homography from src (board plane) to dst (image)."""

    sample_size = 4
    max_models = 1
    mult_error = 1.0

    def __init__(
        self,
        src: np.ndarray,
        dst: np.ndarray,
        image_size: tuple[int, int],
    ):
        self.src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
        self.dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)
        if len(self.src) != len(self.dst):
            raise ValueError("src and dst must have the same length")
        self.log_alpha0 = point_to_point_log_alpha0(image_size)

    def __len__(self) -> int:
        return len(self.src)

    def fit(self, sample: np.ndarray) -> list[np.ndarray]:
        H = fit_homography(self.src[sample], self.dst[sample])
        return [] if H is None else [H]

    def errors(self, model: np.ndarray) -> np.ndarray:
        return homography_residuals(model, self.src, self.dst)

    def fit_least_squares(self, indices: np.ndarray) -> np.ndarray | None:
        return fit_homography(self.src[indices], self.dst[indices])


class ResectionKernel:
    """P3P camera resection with known intrinsics; models are 3x4 K [R | t]."""

    sample_size = 3
    max_models = 4
    mult_error = 1.0

    def __init__(
        self,
        points_2d: np.ndarray,
        points_3d: np.ndarray,
        K: np.ndarray,
        image_size: tuple[int, int],
        weights: np.ndarray | None = None,
    ):
        self.points_2d = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
        self.points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
        if len(self.points_2d) != len(self.points_3d):
            raise ValueError("points_2d and points_3d must have the same length")
        self.K = np.asarray(K, dtype=np.float64)
        self.weights = None if weights is None else np.asarray(weights, dtype=np.float64)
        self.log_alpha0 = point_to_point_log_alpha0(image_size)

    def __len__(self) -> int:
        return len(self.points_2d)

    def fit(self, sample: np.ndarray) -> list[np.ndarray]:
        return solve_p3p(self.points_2d[sample], self.points_3d[sample], self.K)

    def errors(self, model: np.ndarray) -> np.ndarray:
        return resection_residuals(model, self.points_2d, self.points_3d, self.weights)

    def fit_least_squares(self, indices: np.ndarray) -> np.ndarray | None:
        # Poses are polished by bundle adjustment afterwards
        return None
