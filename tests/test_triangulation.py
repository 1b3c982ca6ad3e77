"""
Tests for calistrap.triangulation.
"""

import numpy as np
import pytest

from calistrap.triangulation import (
    point_depth,
    triangulate_dlt,
    triangulate_pairs,
    triangulate_views,
)
from calistrap.types import Pose, compute_projection_matrix, identity_pose


def _project(P, X):
    x = np.column_stack([X, np.ones(len(X))]) @ P.T
    return x[:, 0:2] / x[:, 2:3]


@pytest.fixture
def two_cameras():
    """Normalized cameras (K = I) one unit apart."""
    P1 = compute_projection_matrix(np.eye(3), identity_pose())
    R = np.array([
        [np.cos(0.2), 0.0, np.sin(0.2)],
        [0.0, 1.0, 0.0],
        [-np.sin(0.2), 0.0, np.cos(0.2)],
    ])
    P2 = compute_projection_matrix(np.eye(3), Pose(rotation=R, translation=[-1.0, 0.0, 0.1]))
    return P1, P2


@pytest.fixture
def points_3d():
    generator = np.random.default_rng(5)
    return np.column_stack([
        generator.uniform(-1, 1, 20),
        generator.uniform(-1, 1, 20),
        generator.uniform(3, 6, 20),
    ])


class TestTriangulatePairs:
    def test_exact_on_noise_free_projections(self, two_cameras, points_3d):
        P1, P2 = two_cameras
        X = triangulate_pairs(P1, P2, _project(P1, points_3d), _project(P2, points_3d))

        assert X.shape == (20, 3)
        assert np.max(np.abs(X - points_3d)) < 1e-9

    def test_pixel_cameras(self, sample_intrinsics_matrix, points_3d):
        P1 = compute_projection_matrix(sample_intrinsics_matrix, identity_pose())
        P2 = compute_projection_matrix(
            sample_intrinsics_matrix, Pose(rotation=np.eye(3), translation=[-0.5, 0.0, 0.0])
        )
        X = triangulate_pairs(P1, P2, _project(P1, points_3d), _project(P2, points_3d))

        np.testing.assert_allclose(X, points_3d, atol=1e-6)

    def test_empty_input(self, two_cameras):
        X = triangulate_pairs(*two_cameras, np.zeros((0, 2)), np.zeros((0, 2)))
        assert X.shape == (0, 3)


class TestTriangulateViews:
    def test_single_point_two_views(self, two_cameras, points_3d):
        P1, P2 = two_cameras
        X = points_3d[:1]

        point = triangulate_dlt(P1, _project(P1, X)[0], P2, _project(P2, X)[0])

        np.testing.assert_allclose(point, X[0], atol=1e-9)

    def test_three_views(self, two_cameras, points_3d):
        P1, P2 = two_cameras
        P3 = compute_projection_matrix(
            np.eye(3), Pose(rotation=np.eye(3), translation=[0.0, -0.8, 0.0])
        )
        X = points_3d[3:4]

        point = triangulate_views(
            [P1, P2, P3], [_project(P, X)[0] for P in (P1, P2, P3)]
        )

        np.testing.assert_allclose(point, X[0], atol=1e-9)


class TestPointDepth:
    def test_depth_sign(self):
        pose = Pose(rotation=np.eye(3), translation=[0.0, 0.0, 1.0])
        depths = point_depth(pose, np.array([[0.0, 0.0, 2.0], [0.0, 0.0, -3.0]]))

        np.testing.assert_allclose(depths, [3.0, -2.0])
        assert point_depth(pose, np.array([0.0, 0.0, 0.0])) == pytest.approx(1.0)
