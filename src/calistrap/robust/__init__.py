"""
Robust model estimation: a-contrario RANSAC and its kernels.
"""

from .acransac import RansacResult, estimate
from .homography import fit_homography, homography_residuals, transfer_points
from .kernels import HomographyKernel, Kernel, ResectionKernel
from .resection import krt_from_projection, resection_residuals, solve_p3p

__all__ = [
    # Engine
    "RansacResult",
    "estimate",
    # Kernels
    "Kernel",
    "HomographyKernel",
    "ResectionKernel",
    # Homography
    "fit_homography",
    "homography_residuals",
    "transfer_points",
    # Resection
    "solve_p3p",
    "resection_residuals",
    "krt_from_projection",
]
