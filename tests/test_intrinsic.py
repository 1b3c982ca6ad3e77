"""
Tests for calistrap.calibration.intrinsic.
"""

import numpy as np
import pytest

from calistrap.calibration.intrinsic import (
    calibrate_from_homographies,
    calibrate_scene,
    compute_v,
    estimate_board_homography,
    initial_poses,
    intrinsic_matrix_from_conic,
)
from calistrap.errors import (
    CalibrationError,
    DegenerateGeometryError,
    InsufficientDataError,
    RefinementFailedError,
    UnsupportedCameraError,
)
from calistrap.robust import transfer_points
from calistrap.types import BoardDetection, CameraModel, RefineOptions, create_intrinsics


def _conic(K):
    B = np.linalg.inv(K).T @ np.linalg.inv(K)
    return np.array([B[0, 0], B[0, 1], B[1, 1], B[0, 2], B[1, 2], B[2, 2]])


class RecordingRefiner:
    """Refiner double that records its calls and returns a fixed status."""

    def __init__(self, status=True):
        self.status = status
        self.calls = []

    def refine(self, scene, options):
        self.calls.append(options)
        return self.status


class TestClosedForm:
    def test_compute_v(self):
        """h_i^T B h_j equals v_ij . b."""
        generator = np.random.default_rng(2)
        H = generator.standard_normal((3, 3))
        K = np.array([[700.0, 1.5, 320.0], [0.0, 650.0, 240.0], [0.0, 0.0, 1.0]])
        B = np.linalg.inv(K).T @ np.linalg.inv(K)

        for i, j in [(0, 0), (0, 1), (1, 1)]:
            assert compute_v(H, i, j) @ _conic(K) == pytest.approx(H[:, i] @ B @ H[:, j])

    def test_conic_recovers_matrix(self):
        K = np.array([[700.0, 1.5, 320.0], [0.0, 650.0, 240.0], [0.0, 0.0, 1.0]])
        b = _conic(K) * 3.7

        np.testing.assert_allclose(intrinsic_matrix_from_conic(b), K, rtol=1e-9)

    def test_conic_sign_is_irrelevant(self):
        K = np.array([[700.0, 0.0, 320.0], [0.0, 700.0, 240.0], [0.0, 0.0, 1.0]])
        np.testing.assert_allclose(intrinsic_matrix_from_conic(-1e3 * _conic(K)), K, rtol=1e-9)

    def test_negative_scale_is_degenerate(self):
        with pytest.raises(DegenerateGeometryError):
            intrinsic_matrix_from_conic(np.array([1.0, 0.0, 1.0, 0.0, 0.0, -1.0]))

    def test_singular_conic_is_degenerate(self):
        with pytest.raises(DegenerateGeometryError):
            intrinsic_matrix_from_conic(np.array([1.0, 1.0, 1.0, 0.0, 0.0, 1.0]))


class TestCalibrateFromHomographies:
    def test_recovers_matrix(self, board_homographies, sample_intrinsics_matrix):
        """Exact homographies give K to within 1e-6 relative error."""
        K = calibrate_from_homographies(list(board_homographies.values()))

        np.testing.assert_allclose(K, sample_intrinsics_matrix, rtol=1e-6, atol=1e-6)

    def test_scale_of_homographies_is_irrelevant(self, board_homographies, sample_intrinsics_matrix):
        scaled = [H * s for H, s in zip(board_homographies.values(), [1.0, -2.0, 0.01, 50.0])]
        K = calibrate_from_homographies(scaled)

        np.testing.assert_allclose(K, sample_intrinsics_matrix, rtol=1e-6, atol=1e-6)

    def test_two_views_assume_zero_skew(self, board_homographies, sample_intrinsics_matrix):
        K = calibrate_from_homographies([board_homographies[0], board_homographies[1]])

        assert abs(K[0, 1]) < 1e-6
        np.testing.assert_allclose(K, sample_intrinsics_matrix, rtol=1e-6, atol=1e-6)

    def test_single_view_is_insufficient(self, board_homographies):
        with pytest.raises(InsufficientDataError, match="2 homographies"):
            calibrate_from_homographies([board_homographies[0]])


class TestInitialPoses:
    def test_recovers_board_poses(self, board_homographies, board_poses, sample_intrinsics_matrix):
        poses = initial_poses(sample_intrinsics_matrix, board_homographies)

        for view_id, pose in board_poses.items():
            np.testing.assert_allclose(poses[view_id].rotation, pose.rotation, atol=1e-9)
            np.testing.assert_allclose(poses[view_id].translation, pose.translation, atol=1e-9)

    def test_board_is_in_front_for_negated_homography(
        self, board_homographies, board_poses, sample_intrinsics_matrix
    ):
        poses = initial_poses(sample_intrinsics_matrix, {0: -3.0 * board_homographies[0]})

        assert poses[0].translation[2] > 0
        np.testing.assert_allclose(poses[0].rotation, board_poses[0].rotation, atol=1e-9)


class TestEstimateBoardHomography:
    def test_maps_board_to_pixels(
        self, board_detections, board_homographies, pinhole_intrinsics, square_size, rng
    ):
        detection = board_detections[2]
        H = estimate_board_homography(
            detection.boards[0], detection, pinhole_intrinsics, square_size, rng
        )

        assert H is not None
        np.testing.assert_allclose(H, board_homographies[2], rtol=1e-6, atol=1e-9)

    def test_missing_corners_are_skipped(self, board_detections, pinhole_intrinsics, square_size, rng):
        detection = board_detections[0]
        board = detection.boards[0].copy()
        board[0, :] = -1
        board[:, 0] = -1

        H = estimate_board_homography(board, detection, pinhole_intrinsics, square_size, rng)

        grid = np.array([[square_size * 3, square_size * 2]])
        expected = detection.corners[board[2, 3]]
        np.testing.assert_allclose(transfer_points(H, grid)[0], expected, atol=1e-6)

    def test_too_few_inliers(self, board_detections, pinhole_intrinsics, square_size, rng):
        detection = board_detections[0]
        H = estimate_board_homography(
            detection.boards[0], detection, pinhole_intrinsics, square_size, rng,
            min_inliers=100,
        )
        assert H is None


class TestCalibrateScene:
    def test_linear_calibration(
        self, board_scene, board_detections, board_poses, sample_intrinsics_matrix,
        square_size, board_shape, rng,
    ):
        result = calibrate_scene(board_scene, board_detections, square_size, None, rng)

        np.testing.assert_allclose(
            result.intrinsics[0].matrix, sample_intrinsics_matrix, rtol=1e-5, atol=1e-4
        )
        for view_id, pose in board_poses.items():
            np.testing.assert_allclose(result.poses[view_id].rotation, pose.rotation, atol=1e-6)
            np.testing.assert_allclose(
                result.poses[view_id].translation, pose.translation, atol=1e-5
            )

        rows, cols = board_shape
        assert len(result.landmarks) == rows * cols
        landmark = result.landmarks[cols + 2]
        assert landmark.desc_type == "checkerboard"
        np.testing.assert_allclose(landmark.X, [2 * square_size, square_size, 0.0])
        assert sorted(landmark.observations) == [0, 1, 2, 3]
        assert landmark.observations[1].feature_id == cols + 2

    def test_input_scene_is_untouched(self, board_scene, board_detections, square_size, rng):
        calibrate_scene(board_scene, board_detections, square_size, None, rng)

        assert board_scene.poses == {}
        assert board_scene.landmarks == {}
        assert board_scene.intrinsics[0].fx == 1000.0

    def test_refined_calibration(
        self, board_scene, board_detections, sample_intrinsics_matrix, square_size, rng
    ):
        from calistrap.refinement import BundleAdjuster

        result = calibrate_scene(board_scene, board_detections, square_size, BundleAdjuster(), rng)

        np.testing.assert_allclose(
            result.intrinsics[0].matrix, sample_intrinsics_matrix, rtol=1e-5, atol=1e-4
        )

    def test_refiner_options(self, board_scene, board_detections, square_size, rng):
        refiner = RecordingRefiner()
        calibrate_scene(board_scene, board_detections, square_size, refiner, rng)

        assert refiner.calls == [
            RefineOptions.ROTATION | RefineOptions.TRANSLATION | RefineOptions.INTRINSICS_ALL
        ]

    def test_refiner_failure(self, board_scene, board_detections, square_size, rng):
        with pytest.raises(RefinementFailedError):
            calibrate_scene(
                board_scene, board_detections, square_size, RecordingRefiner(False), rng
            )

    def test_views_without_single_board_are_skipped(
        self, board_scene, board_detections, square_size, rng
    ):
        detections = dict(board_detections)
        detections[3] = BoardDetection(corners=np.zeros((0, 2)))

        result = calibrate_scene(board_scene, detections, square_size, None, rng)

        assert not result.is_posed(3)
        assert all(3 not in lm.observations for lm in result.landmarks.values())

    def test_needs_two_detections(self, board_scene, board_detections, square_size, rng):
        with pytest.raises(InsufficientDataError):
            calibrate_scene(board_scene, {0: board_detections[0]}, square_size, None, rng)

    def test_needs_two_homographies_per_intrinsic(
        self, board_scene, board_detections, square_size, rng
    ):
        detections = dict(board_detections)
        for view_id in (1, 2, 3):
            detections[view_id] = BoardDetection(corners=np.zeros((0, 2)))

        with pytest.raises(InsufficientDataError, match="intrinsic 0"):
            calibrate_scene(board_scene, detections, square_size, None, rng)

    def test_fisheye_is_unsupported(self, board_scene, board_detections, square_size, rng):
        board_scene.intrinsics[0] = create_intrinsics(CameraModel.FISHEYE, 1280, 720, fx=800.0)

        with pytest.raises(UnsupportedCameraError):
            calibrate_scene(board_scene, board_detections, square_size, None, rng)

    def test_inconsistent_board_sizes(
        self, board_scene, board_detections, square_size, rng
    ):
        """All intrinsics share one landmark grid."""
        from calistrap.types import View

        board_scene.intrinsics[1] = board_scene.intrinsics[0]
        for view_id in (2, 3):
            board_scene.views[view_id] = View(
                view_id=view_id, intrinsic_id=1, width=1280, height=720
            )

        detections = dict(board_detections)
        for view_id in (2, 3):
            detection = board_detections[view_id]
            detections[view_id] = BoardDetection(
                corners=detection.corners, boards=(detection.boards[0][:, 0:6],)
            )

        with pytest.raises(CalibrationError, match="Inconsistent"):
            calibrate_scene(board_scene, detections, square_size, None, rng)
