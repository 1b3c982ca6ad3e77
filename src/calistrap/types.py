"""
Core data structures for calistrap.

Value types are frozen dataclasses with slots. The scene graph and landmarks
are the only mutable containers; everything that computes on them lives in
separate pure functions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, Flag
from typing import Literal

import numpy as np


UNDEFINED_INDEX = -1  # empty cell in a detected board grid


# ============================================================================
# Camera Models
# ============================================================================


class CameraModel(str, Enum):
    """Closed set of supported camera models."""

    PINHOLE = "pinhole"  # no distortion
    BROWN = "brown"  # k1, k2, p1, p2, k3
    FISHEYE = "fisheye"  # equidistant k1, k2, k3, k4

    @property
    def distortion_size(self) -> int:
        return {"pinhole": 0, "brown": 5, "fisheye": 4}[self.value]

    @property
    def is_pinhole(self) -> bool:
        """True for models whose undistorted image follows a pinhole projection."""
        return self is not CameraModel.FISHEYE


@dataclass(frozen=True, slots=True)
class Intrinsics:
    """
    Intrinsic parameters of a camera.

    matrix is upper triangular: [[fx, skew, u0], [0, fy, v0], [0, 0, 1]].
    """

    model: CameraModel
    width: int
    height: int
    matrix: np.ndarray  # 3x3
    distortion: np.ndarray  # (model.distortion_size,)
    locked: bool = False

    @property
    def fx(self) -> float:
        return float(self.matrix[0, 0])

    @property
    def fy(self) -> float:
        return float(self.matrix[1, 1])

    @property
    def skew(self) -> float:
        return float(self.matrix[0, 1])

    @property
    def principal_point(self) -> np.ndarray:
        return self.matrix[0:2, 2].copy()

    @property
    def image_size(self) -> tuple[int, int]:
        return (self.width, self.height)


def create_intrinsics(
    model: CameraModel,
    width: int,
    height: int,
    fx: float,
    fy: float | None = None,
    principal_point: tuple[float, float] | None = None,
    skew: float = 0.0,
    distortion: np.ndarray | None = None,
    locked: bool = False,
) -> Intrinsics:
    """
    Build Intrinsics from scalar parameters.

    The principal point defaults to the image center and distortion to zeros.
    """
    if fy is None:
        fy = fx
    if principal_point is None:
        principal_point = (width / 2.0, height / 2.0)
    if distortion is None:
        distortion = np.zeros(model.distortion_size, dtype=np.float64)

    matrix = np.array([
        [fx, skew, principal_point[0]],
        [0.0, fy, principal_point[1]],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)

    distortion = np.asarray(distortion, dtype=np.float64).ravel()
    if distortion.size != model.distortion_size:
        raise ValueError(
            f"{model.value} model expects {model.distortion_size} distortion "
            f"parameters, got {distortion.size}"
        )

    return Intrinsics(
        model=model,
        width=int(width),
        height=int(height),
        matrix=matrix,
        distortion=distortion,
        locked=locked,
    )


# ============================================================================
# Poses and Views
# ============================================================================


def orthonormalize(rotation: np.ndarray) -> np.ndarray:
    """
    Project a 3x3 matrix onto SO(3) by SVD polar decomposition.
    """
    U, _, Vt = np.linalg.svd(np.asarray(rotation, dtype=np.float64))
    R = U @ Vt
    if np.linalg.det(R) < 0:
        U[:, -1] *= -1
        R = U @ Vt
    return R


@dataclass(frozen=True, slots=True)
class Pose:
    """
    Camera pose mapping world points into the camera: x_cam = R @ X + t.

    The rotation is always stored orthonormalized.
    """

    rotation: np.ndarray  # 3x3
    translation: np.ndarray  # (3,)
    locked: bool = False

    def __post_init__(self):
        object.__setattr__(self, "rotation", orthonormalize(self.rotation))
        object.__setattr__(
            self,
            "translation",
            np.asarray(self.translation, dtype=np.float64).reshape(3),
        )

    @property
    def center(self) -> np.ndarray:
        """Camera center in world coordinates."""
        return -self.rotation.T @ self.translation

    def transform(self, points: np.ndarray) -> np.ndarray:
        """Map (n, 3) world points into camera coordinates."""
        return np.atleast_2d(points) @ self.rotation.T + self.translation


def identity_pose(locked: bool = False) -> Pose:
    return Pose(rotation=np.eye(3), translation=np.zeros(3), locked=locked)


@dataclass(frozen=True, slots=True)
class View:
    """
    One image of the scene.

    pose_id defaults to the view id; several views can share a pose (rigs).
    """

    view_id: int
    intrinsic_id: int
    width: int
    height: int
    pose_id: int | None = None
    image_path: str = ""

    @property
    def pose_key(self) -> int:
        return self.view_id if self.pose_id is None else self.pose_id


# ============================================================================
# Structure
# ============================================================================


@dataclass(frozen=True, slots=True)
class Observation:
    """2D measurement of a landmark in one view."""

    x: np.ndarray  # (2,) pixel coordinates
    feature_id: int
    weight: float = 1.0  # confidence, inverse of the observation scale


@dataclass(slots=True)
class Landmark:
    """3D point with its observations, keyed by view id."""

    X: np.ndarray  # (3,)
    observations: dict[int, Observation] = field(default_factory=dict)
    desc_type: str = "unknown"

    def copy(self) -> Landmark:
        return Landmark(
            X=self.X.copy(),
            observations=dict(self.observations),
            desc_type=self.desc_type,
        )


@dataclass(frozen=True, slots=True)
class TrackItem:
    """One feature of a track as seen in a single view."""

    coords: np.ndarray  # (2,) pixel coordinates
    scale: float = 1.0
    feature_id: int | None = None


@dataclass(frozen=True, slots=True)
class Track:
    """Feature track across views. Read-only input to the bootstrap."""

    desc_type: str
    items: dict[int, TrackItem]  # view_id -> TrackItem


@dataclass(frozen=True, slots=True)
class ReconstructedPair:
    """
    Candidate seed pair with its relative pose.

    rotation/translation map reference-camera coordinates into the next camera.
    """

    reference: int
    next: int
    rotation: np.ndarray  # 3x3
    translation: np.ndarray  # (3,)


@dataclass(frozen=True, slots=True)
class BoardDetection:
    """
    Checkerboard detections of a single image.

    Each board is an integer grid (rows, cols) of indices into corners,
    with UNDEFINED_INDEX for cells that were not detected.
    """

    corners: np.ndarray  # (m, 2) corner centers in pixels
    boards: tuple[np.ndarray, ...] = ()

    @property
    def n_boards(self) -> int:
        return len(self.boards)


# ============================================================================
# Scene Graph
# ============================================================================


@dataclass
class SceneGraph:
    """
    Views, intrinsics, poses and landmarks of a reconstruction.

    Poses are keyed by View.pose_key. Algorithms work on a copy and hand the
    updated scene back to the caller.
    """

    views: dict[int, View] = field(default_factory=dict)
    intrinsics: dict[int, Intrinsics] = field(default_factory=dict)
    poses: dict[int, Pose] = field(default_factory=dict)
    landmarks: dict[int, Landmark] = field(default_factory=dict)

    def copy(self) -> SceneGraph:
        return SceneGraph(
            views=dict(self.views),
            intrinsics=dict(self.intrinsics),
            poses=dict(self.poses),
            landmarks={k: lm.copy() for k, lm in self.landmarks.items()},
        )

    def intrinsics_for_view(self, view_id: int) -> Intrinsics | None:
        view = self.views.get(view_id)
        if view is None:
            return None
        return self.intrinsics.get(view.intrinsic_id)

    def pose_for_view(self, view_id: int) -> Pose | None:
        view = self.views.get(view_id)
        if view is None:
            return None
        return self.poses.get(view.pose_key)

    def set_pose(self, view_id: int, pose: Pose) -> None:
        self.poses[self.views[view_id].pose_key] = pose

    def is_posed(self, view_id: int) -> bool:
        return self.pose_for_view(view_id) is not None

    def valid_views(self) -> list[int]:
        """Sorted ids of views that have both intrinsics and a pose."""
        return sorted(
            view_id
            for view_id in self.views
            if self.intrinsics_for_view(view_id) is not None
            and self.pose_for_view(view_id) is not None
        )

    def views_of_intrinsic(self, intrinsic_id: int) -> list[int]:
        return sorted(
            view_id
            for view_id, view in self.views.items()
            if view.intrinsic_id == intrinsic_id
        )


# ============================================================================
# Pipeline Configuration
# ============================================================================


@dataclass(frozen=True, slots=True)
class CalibrationConfig:
    """
    Settings of the board calibration step.
    Corresponds to TOML [calibration] section.
    """

    square_size: float = 0.1  # Board square edge, world units
    mode: Literal["basic", "inner_grids"] = "basic"
    distance: float | None = None  # Camera-to-grid prior (inner grids only)
    use_simple_pinhole: bool = False
    homography_iterations: int = 1024
    resection_iterations: int = 1000
    min_inliers: int = 10
    min_board_corners: int = 30


@dataclass(frozen=True, slots=True)
class BootstrapConfig:
    """
    Settings of the seed pair selection.
    Corresponds to TOML [bootstrap] section.
    """

    max_epipolar_distance: float = 4.0  # pixels
    min_angle_deg: float = 5.0
    min_tracks: int = 10
    max_level: int = 16  # coverage pyramid depth
    max_workers: int | None = None  # None scores pairs sequentially
    refine: bool = False  # Bundle adjust the seeded scene


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """
    Complete configuration, loaded from a TOML file.
    """

    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    bootstrap: BootstrapConfig = field(default_factory=BootstrapConfig)
    seed: int = 0
    log_level: str = "info"


# ============================================================================
# Refinement Options
# ============================================================================


class RefineOptions(Flag):
    """Which parameter blocks a refiner may change."""

    NONE = 0
    ROTATION = 1
    TRANSLATION = 2
    INTRINSICS_FOCAL = 4
    INTRINSICS_PRINCIPAL_POINT = 8
    INTRINSICS_DISTORTION = 16
    STRUCTURE = 32

    INTRINSICS_ALL = (
        INTRINSICS_FOCAL | INTRINSICS_PRINCIPAL_POINT | INTRINSICS_DISTORTION
    )


# ============================================================================
# Pure functions for computed properties
# ============================================================================


def compute_transformation_matrix(pose: Pose) -> np.ndarray:
    """
    Compute 4x4 homogeneous transformation matrix from a pose.
    """
    t = np.eye(4, dtype=np.float64)
    t[0:3, 0:3] = pose.rotation
    t[0:3, 3] = pose.translation
    return t


def compute_projection_matrix(matrix: np.ndarray, pose: Pose) -> np.ndarray:
    """
    Compute 3x4 projection matrix K [R | t].
    """
    t = compute_transformation_matrix(pose)
    return matrix @ t[0:3, :]


def pose_to_vector(pose: Pose) -> np.ndarray:
    """
    Convert a pose to a 6-element vector for refinement.
    [rodrigues_x, rodrigues_y, rodrigues_z, tx, ty, tz]
    """
    import cv2

    rodrigues = cv2.Rodrigues(pose.rotation)[0][:, 0]
    return np.hstack([rodrigues, pose.translation])


def pose_from_vector(vector: np.ndarray, locked: bool = False) -> Pose:
    """
    Create a pose from a 6-element vector.
    """
    import cv2

    rotation = cv2.Rodrigues(np.asarray(vector[0:3], dtype=np.float64))[0]
    translation = np.asarray(vector[3:6], dtype=np.float64)
    return Pose(rotation=rotation, translation=translation, locked=locked)


def skew_symmetric(v: np.ndarray) -> np.ndarray:
    """Cross-product matrix [v]x."""
    return np.array([
        [0.0, -v[2], v[1]],
        [v[2], 0.0, -v[0]],
        [-v[1], v[0], 0.0],
    ], dtype=np.float64)
