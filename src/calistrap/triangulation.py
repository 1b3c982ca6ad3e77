"""
Linear triangulation.

DLT via SVD: each observation contributes x * P[2] - P[0] and
y * P[2] - P[1]; the point is the right singular vector of the smallest
singular value. Batch version is Numba-compiled.
"""

from __future__ import annotations

import numpy as np
from numba import jit

from .types import Pose


# ============================================================================
# Core Triangulation (adapted from Anipose)
# ============================================================================

#####################################################################################
# The following code is adapted from the `Anipose` project,
# in particular the `triangulate_simple` function of `aniposelib`
# Original author:  Lili Karashchuk
# Project: https://github.com/lambdaloop/aniposelib/
# Original Source Code:
#   https://github.com/lambdaloop/aniposelib/blob/d03b485c4e178d7cff076e9fe1ac36837db49158/aniposelib/cameras.py#L21
# This code is licensed under the BSD 2-Clause License
#
# BSD 2-Clause License
#
# Copyright (c) 2019, Lili Karashchuk
# All rights reserved.
#
# Redistribution and use in source and binary forms, with or without
# modification, are permitted provided that the following conditions are met:
#
# 1. Redistributions of source code must retain the above copyright notice, this
#    list of conditions and the following disclaimer.
#
# 2. Redistributions in binary form must reproduce the above copyright notice,
#    this list of conditions and the following disclaimer in the documentation
#    and/or other materials provided with the distribution.
#
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS IS"
# AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE
# IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE ARE
# DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR CONTRIBUTORS BE LIABLE
# FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR CONSEQUENTIAL
# DAMAGES (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF SUBSTITUTE GOODS OR
# SERVICES; LOSS OF USE, DATA, OR PROFITS; OR BUSINESS INTERRUPTION) HOWEVER
# CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER IN CONTRACT, STRICT LIABILITY,
# OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE) ARISING IN ANY WAY OUT OF THE USE
# OF THIS SOFTWARE, EVEN IF ADVISED OF THE POSSIBILITY OF SUCH DAMAGE.


@jit(nopython=True, cache=True)
def _triangulate_pairs(
    P1: np.ndarray,
    P2: np.ndarray,
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> np.ndarray:
    """
    Triangulate n two-view correspondences.

    Args:
        P1, P2: 3x4 projection matrices
        pts1, pts2: (n, 2) undistorted pixel coordinates

    Returns:
        (n, 3) points
    """
    n = pts1.shape[0]
    out = np.empty((n, 3))
    A = np.zeros((4, 4))

    for i in range(n):
        x1, y1 = pts1[i, 0], pts1[i, 1]
        x2, y2 = pts2[i, 0], pts2[i, 1]
        A[0] = x1 * P1[2] - P1[0]
        A[1] = y1 * P1[2] - P1[1]
        A[2] = x2 * P2[2] - P2[0]
        A[3] = y2 * P2[2] - P2[1]

        # SVD to find null space
        u, s, vh = np.linalg.svd(A, full_matrices=True)
        point_xyzw = vh[-1]
        out[i] = point_xyzw[:3] / point_xyzw[3]

    return out


# End of adapted code
#####################################################################################


def triangulate_dlt(
    P1: np.ndarray,
    x1: np.ndarray,
    P2: np.ndarray,
    x2: np.ndarray,
) -> np.ndarray:
    """
    Triangulate one point from two views.

    Args:
        P1, P2: 3x4 projection matrices
        x1, x2: (2,) undistorted pixel coordinates

    Returns:
        (3,) point; inaccurate but never failing for near-parallel rays
    """
    return triangulate_views([P1, P2], [x1, x2])


def triangulate_views(
    projections: list[np.ndarray],
    points: list[np.ndarray],
) -> np.ndarray:
    """
    Triangulate one point from any number (>= 2) of views.
    """
    A = np.zeros((2 * len(projections), 4), dtype=np.float64)
    for i, (P, (x, y)) in enumerate(zip(projections, points)):
        A[2 * i] = x * P[2] - P[0]
        A[2 * i + 1] = y * P[2] - P[1]

    _, _, vh = np.linalg.svd(A, full_matrices=True)
    point_xyzw = vh[-1]
    return point_xyzw[:3] / point_xyzw[3]


def triangulate_pairs(
    P1: np.ndarray,
    P2: np.ndarray,
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> np.ndarray:
    """
    Triangulate (n, 2) correspondences between two views into (n, 3) points.
    """
    pts1 = np.ascontiguousarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.ascontiguousarray(pts2, dtype=np.float64).reshape(-1, 2)
    if len(pts1) == 0:
        return np.zeros((0, 3), dtype=np.float64)

    return _triangulate_pairs(
        np.ascontiguousarray(P1, dtype=np.float64),
        np.ascontiguousarray(P2, dtype=np.float64),
        pts1,
        pts2,
    )


def point_depth(pose: Pose, points: np.ndarray) -> np.ndarray:
    """
    Depth (camera z) of (n, 3) or (3,) points; positive in front of the camera.
    """
    points = np.asarray(points, dtype=np.float64)
    depth = pose.transform(points)[:, 2]
    return depth if points.ndim > 1 else float(depth[0])
