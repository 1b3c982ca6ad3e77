"""
Pytest configuration and shared fixtures.
"""

import tempfile
from pathlib import Path

import cv2
import numpy as np
import pytest


IMAGE_SIZE = (1280, 720)


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after test."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture
def rng():
    """Seeded generator for the robust estimators."""
    return np.random.default_rng(42)


@pytest.fixture
def sample_intrinsics_matrix():
    """Typical camera intrinsics matrix."""
    return np.array([
        [800.0, 0.0, 640.0],
        [0.0, 800.0, 360.0],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)


@pytest.fixture
def sample_distortion():
    """Typical distortion coefficients (k1, k2, p1, p2, k3)."""
    return np.array([0.1, -0.25, 0.001, -0.001, 0.1], dtype=np.float64)


@pytest.fixture
def pinhole_intrinsics():
    """Pinhole Intrinsics matching sample_intrinsics_matrix."""
    from calistrap.types import CameraModel, create_intrinsics
    return create_intrinsics(CameraModel.PINHOLE, *IMAGE_SIZE, fx=800.0)


@pytest.fixture
def brown_intrinsics(sample_distortion):
    """Brown Intrinsics with sample_distortion."""
    from calistrap.types import CameraModel, create_intrinsics
    return create_intrinsics(
        CameraModel.BROWN, *IMAGE_SIZE, fx=800.0, distortion=sample_distortion
    )


@pytest.fixture
def project_points():
    """Pinhole projection of (n, 3) world points with a 3x3 K and a Pose."""
    def _project(K, pose, points):
        cam = np.asarray(points, dtype=np.float64) @ pose.rotation.T + pose.translation
        pixels = cam @ K.T
        return pixels[:, 0:2] / pixels[:, 2:3]
    return _project


# ============================================================================
# Synthetic checkerboard views
# ============================================================================


@pytest.fixture
def board_shape():
    """(rows, cols) of board corners."""
    return (7, 9)


@pytest.fixture
def square_size():
    return 0.1


@pytest.fixture
def board_points(board_shape, square_size):
    """Board corners on the z = 0 plane, row-major, origin at the first corner."""
    rows, cols = board_shape
    ii, jj = np.mgrid[0:rows, 0:cols]
    return np.column_stack([
        jj.ravel() * square_size,
        ii.ravel() * square_size,
        np.zeros(rows * cols),
    ])


@pytest.fixture
def board_poses(board_shape, square_size):
    """Four tilted board poses, board center 2.5 units in front of the camera."""
    from calistrap.types import Pose

    rows, cols = board_shape
    center = np.array([(cols - 1) * square_size / 2, (rows - 1) * square_size / 2, 0.0])
    rvecs = [
        [0.3, 0.1, 0.0],
        [-0.2, 0.35, 0.1],
        [0.1, -0.3, -0.2],
        [0.25, 0.25, 0.05],
    ]

    poses = {}
    for view_id, rvec in enumerate(rvecs):
        R = cv2.Rodrigues(np.array(rvec, dtype=np.float64))[0]
        t = np.array([0.05 * view_id, -0.05, 2.5]) - R @ center
        poses[view_id] = Pose(rotation=R, translation=t)
    return poses


@pytest.fixture
def board_homographies(sample_intrinsics_matrix, board_poses):
    """Exact plane-to-pixel homographies K [r1 r2 t] of the board views."""
    homographies = {}
    for view_id, pose in board_poses.items():
        H = sample_intrinsics_matrix @ np.column_stack([
            pose.rotation[:, 0], pose.rotation[:, 1], pose.translation,
        ])
        homographies[view_id] = H / H[2, 2]
    return homographies


@pytest.fixture
def board_detections(
    sample_intrinsics_matrix, board_poses, board_points, board_shape, project_points
):
    """One fully detected board per view."""
    from calistrap.types import BoardDetection

    grid = np.arange(board_shape[0] * board_shape[1]).reshape(board_shape)
    return {
        view_id: BoardDetection(
            corners=project_points(sample_intrinsics_matrix, pose, board_points),
            boards=(grid.copy(),),
        )
        for view_id, pose in board_poses.items()
    }


@pytest.fixture
def board_scene(board_poses):
    """Scene with one view per board pose, sharing an uncalibrated pinhole."""
    from calistrap.types import CameraModel, SceneGraph, View, create_intrinsics

    scene = SceneGraph()
    scene.intrinsics[0] = create_intrinsics(CameraModel.PINHOLE, *IMAGE_SIZE, fx=1000.0)
    for view_id in board_poses:
        scene.views[view_id] = View(
            view_id=view_id, intrinsic_id=0, width=IMAGE_SIZE[0], height=IMAGE_SIZE[1]
        )
    return scene


# ============================================================================
# Synthetic two-view tracks
# ============================================================================


@pytest.fixture
def pair_points():
    """60 points in front of the reference camera (world = reference frame)."""
    generator = np.random.default_rng(7)
    xy = generator.uniform(-1.0, 1.0, size=(60, 2))
    z = generator.uniform(4.0, 6.0, size=(60, 1))
    return np.hstack([xy, z])


@pytest.fixture
def pair_baselines():
    """view_id -> sideways baseline to the reference view 0."""
    return {1: 0.6, 2: 2.0, 3: 0.25}


@pytest.fixture
def pair_scene(pair_baselines):
    """Unposed scene: reference view 0 and one view per baseline."""
    from calistrap.types import CameraModel, SceneGraph, View, create_intrinsics

    scene = SceneGraph()
    scene.intrinsics[0] = create_intrinsics(CameraModel.PINHOLE, *IMAGE_SIZE, fx=800.0)
    for view_id in [0, *pair_baselines]:
        scene.views[view_id] = View(
            view_id=view_id, intrinsic_id=0, width=IMAGE_SIZE[0], height=IMAGE_SIZE[1]
        )
    return scene


@pytest.fixture
def pair_tracks(sample_intrinsics_matrix, pair_points, pair_baselines, project_points):
    """One track per point, seen by every view, feature id = track id."""
    from calistrap.types import Pose, Track, TrackItem

    poses = {0: Pose(rotation=np.eye(3), translation=np.zeros(3))}
    for view_id, baseline in pair_baselines.items():
        poses[view_id] = Pose(rotation=np.eye(3), translation=[-baseline, 0.0, 0.0])

    coords = {
        view_id: project_points(sample_intrinsics_matrix, pose, pair_points)
        for view_id, pose in poses.items()
    }

    return {
        track_id: Track(
            desc_type="sift",
            items={
                view_id: TrackItem(coords=coords[view_id][track_id], feature_id=track_id)
                for view_id in poses
            },
        )
        for track_id in range(len(pair_points))
    }


@pytest.fixture
def candidate_pairs(pair_baselines):
    """(0, view) candidates with their exact relative poses."""
    from calistrap.types import ReconstructedPair

    return [
        ReconstructedPair(
            reference=0,
            next=view_id,
            rotation=np.eye(3),
            translation=np.array([-baseline, 0.0, 0.0]),
        )
        for view_id, baseline in pair_baselines.items()
    ]
