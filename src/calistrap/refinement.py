"""
Nonlinear refinement of a scene graph.

Calibration and bootstrap only talk to a Refiner through
refine(scene, options) -> bool. BundleAdjuster is the default
implementation, a sparse scipy least_squares over the parameter blocks
selected by RefineOptions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Protocol

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from .camera import project
from .histogram import Histogram
from .types import (
    Intrinsics,
    Pose,
    RefineOptions,
    SceneGraph,
    pose_from_vector,
    pose_to_vector,
)

logger = logging.getLogger(__name__)


class Refiner(Protocol):
    """Anything that can polish a scene in place."""

    def refine(self, scene: SceneGraph, options: RefineOptions) -> bool:
        """
        Refine the parameter blocks selected by options.

        Returns:
            True on success; the scene is only updated on success
        """
        ...


# ============================================================================
# Problem Layout
# ============================================================================


@dataclass
class _Problem:
    """
    Flattened observations and the parameter vector layout.

    Every *_offset dict maps an id to the start of its block in the
    parameter vector; ids missing from a dict are held constant.
    """

    view_ids: np.ndarray  # (n,) view of each observation
    landmark_ids: np.ndarray  # (n,) landmark of each observation
    img_points: np.ndarray  # (n, 2)
    weights: np.ndarray  # (n,)
    rotation_offset: dict[int, int]  # pose_key -> offset
    translation_offset: dict[int, int]  # pose_key -> offset
    focal_offset: dict[int, int]  # intrinsic_id -> offset
    principal_offset: dict[int, int]
    distortion_offset: dict[int, int]
    structure_offset: dict[int, int]  # landmark_id -> offset
    x0: np.ndarray
    prior_pose: int | None = None

    @property
    def n_img_points(self) -> int:
        return len(self.view_ids)

    @property
    def n_params(self) -> int:
        return len(self.x0)


def _build_problem(
    scene: SceneGraph,
    options: RefineOptions,
    with_prior: bool,
) -> _Problem:
    view_ids = []
    landmark_ids = []
    img_points = []
    weights = []

    for landmark_id in sorted(scene.landmarks):
        landmark = scene.landmarks[landmark_id]
        for view_id in sorted(landmark.observations):
            if scene.intrinsics_for_view(view_id) is None:
                continue
            if scene.pose_for_view(view_id) is None:
                continue
            obs = landmark.observations[view_id]
            view_ids.append(view_id)
            landmark_ids.append(landmark_id)
            img_points.append(obs.x)
            weights.append(obs.weight)

    blocks = []
    size = 0

    def add_block(values: np.ndarray) -> int:
        nonlocal size
        offset = size
        blocks.append(np.asarray(values, dtype=np.float64).ravel())
        size += blocks[-1].size
        return offset

    observed_views = sorted(set(view_ids))
    pose_keys = sorted({scene.views[v].pose_key for v in observed_views})
    intrinsic_ids = sorted({scene.views[v].intrinsic_id for v in observed_views})

    rotation_offset = {}
    translation_offset = {}
    for key in pose_keys:
        pose = scene.poses[key]
        if pose.locked:
            continue
        vector = pose_to_vector(pose)
        if RefineOptions.ROTATION in options:
            rotation_offset[key] = add_block(vector[0:3])
        if RefineOptions.TRANSLATION in options:
            translation_offset[key] = add_block(vector[3:6])

    focal_offset = {}
    principal_offset = {}
    distortion_offset = {}
    for intrinsic_id in intrinsic_ids:
        intrinsics = scene.intrinsics[intrinsic_id]
        if intrinsics.locked:
            continue
        if RefineOptions.INTRINSICS_FOCAL in options:
            focal_offset[intrinsic_id] = add_block([intrinsics.fx, intrinsics.fy])
        if RefineOptions.INTRINSICS_PRINCIPAL_POINT in options:
            principal_offset[intrinsic_id] = add_block(intrinsics.principal_point)
        if RefineOptions.INTRINSICS_DISTORTION in options and intrinsics.distortion.size > 0:
            distortion_offset[intrinsic_id] = add_block(intrinsics.distortion)

    structure_offset = {}
    if RefineOptions.STRUCTURE in options:
        for landmark_id in sorted(set(landmark_ids)):
            structure_offset[landmark_id] = add_block(scene.landmarks[landmark_id].X)

    prior_pose = None
    if with_prior:
        free = [k for k in pose_keys if k in rotation_offset or k in translation_offset]
        prior_pose = free[0] if free else None

    return _Problem(
        view_ids=np.array(view_ids, dtype=np.int64),
        landmark_ids=np.array(landmark_ids, dtype=np.int64),
        img_points=np.array(img_points, dtype=np.float64).reshape(-1, 2),
        weights=np.array(weights, dtype=np.float64),
        rotation_offset=rotation_offset,
        translation_offset=translation_offset,
        focal_offset=focal_offset,
        principal_offset=principal_offset,
        distortion_offset=distortion_offset,
        structure_offset=structure_offset,
        x0=np.concatenate(blocks) if blocks else np.zeros(0),
        prior_pose=prior_pose,
    )


# ============================================================================
# Parameter Unpacking
# ============================================================================


def _pose_at(scene: SceneGraph, problem: _Problem, key: int, params: np.ndarray) -> Pose:
    pose = scene.poses[key]
    if key not in problem.rotation_offset and key not in problem.translation_offset:
        return pose

    vector = pose_to_vector(pose)
    if key in problem.rotation_offset:
        o = problem.rotation_offset[key]
        vector[0:3] = params[o : o + 3]
    if key in problem.translation_offset:
        o = problem.translation_offset[key]
        vector[3:6] = params[o : o + 3]
    return pose_from_vector(vector, locked=pose.locked)


def _intrinsics_at(
    scene: SceneGraph,
    problem: _Problem,
    intrinsic_id: int,
    params: np.ndarray,
) -> Intrinsics:
    intrinsics = scene.intrinsics[intrinsic_id]
    matrix = intrinsics.matrix.copy()
    distortion = intrinsics.distortion.copy()
    changed = False

    if intrinsic_id in problem.focal_offset:
        o = problem.focal_offset[intrinsic_id]
        matrix[0, 0], matrix[1, 1] = params[o], params[o + 1]
        changed = True
    if intrinsic_id in problem.principal_offset:
        o = problem.principal_offset[intrinsic_id]
        matrix[0, 2], matrix[1, 2] = params[o], params[o + 1]
        changed = True
    if intrinsic_id in problem.distortion_offset:
        o = problem.distortion_offset[intrinsic_id]
        distortion = params[o : o + distortion.size].copy()
        changed = True

    if not changed:
        return intrinsics
    return replace(intrinsics, matrix=matrix, distortion=distortion)


def _landmark_points(scene: SceneGraph, problem: _Problem, params: np.ndarray) -> np.ndarray:
    points = np.zeros((problem.n_img_points, 3), dtype=np.float64)
    for i, landmark_id in enumerate(problem.landmark_ids):
        landmark_id = int(landmark_id)
        if landmark_id in problem.structure_offset:
            o = problem.structure_offset[landmark_id]
            points[i] = params[o : o + 3]
        else:
            points[i] = scene.landmarks[landmark_id].X
    return points


# ============================================================================
# Residuals and Sparsity
# ============================================================================


def _xy_reprojection_error(
    params: np.ndarray,
    scene: SceneGraph,
    problem: _Problem,
    distance: float | None,
    distance_weight: float,
) -> np.ndarray:
    """
    Weighted reprojection error of every observation, plus the distance prior.
    """
    points_3d = _landmark_points(scene, problem, params)
    projected = np.zeros((problem.n_img_points, 2), dtype=np.float64)

    for view_id in np.unique(problem.view_ids):
        view = scene.views[int(view_id)]
        mask = problem.view_ids == view_id
        pose = _pose_at(scene, problem, view.pose_key, params)
        intrinsics = _intrinsics_at(scene, problem, view.intrinsic_id, params)
        projected[mask] = project(intrinsics, pose, points_3d[mask])

    error = ((projected - problem.img_points) * problem.weights[:, None]).ravel()

    if problem.prior_pose is not None:
        pose = _pose_at(scene, problem, problem.prior_pose, params)
        prior = distance_weight * (np.linalg.norm(pose.center) - distance)
        error = np.append(error, prior)

    return error


def _get_sparsity_pattern(scene: SceneGraph, problem: _Problem) -> lil_matrix:
    """
    Build sparse Jacobian pattern for least_squares.
    """
    m = problem.n_img_points * 2 + (1 if problem.prior_pose is not None else 0)
    A = lil_matrix((m, problem.n_params), dtype=int)

    def mark(row: int, offset: int | None, count: int) -> None:
        if offset is None:
            return
        A[2 * row, offset : offset + count] = 1
        A[2 * row + 1, offset : offset + count] = 1

    for i in range(problem.n_img_points):
        view = scene.views[int(problem.view_ids[i])]
        intrinsics = scene.intrinsics[view.intrinsic_id]
        mark(i, problem.rotation_offset.get(view.pose_key), 3)
        mark(i, problem.translation_offset.get(view.pose_key), 3)
        mark(i, problem.focal_offset.get(view.intrinsic_id), 2)
        mark(i, problem.principal_offset.get(view.intrinsic_id), 2)
        mark(i, problem.distortion_offset.get(view.intrinsic_id), intrinsics.distortion.size)
        mark(i, problem.structure_offset.get(int(problem.landmark_ids[i])), 3)

    if problem.prior_pose is not None:
        for offsets in (problem.rotation_offset, problem.translation_offset):
            o = offsets.get(problem.prior_pose)
            if o is not None:
                A[m - 1, o : o + 3] = 1

    return A


def _write_back(scene: SceneGraph, problem: _Problem, params: np.ndarray) -> None:
    for key in set(problem.rotation_offset) | set(problem.translation_offset):
        scene.poses[key] = _pose_at(scene, problem, key, params)

    intrinsic_ids = (
        set(problem.focal_offset)
        | set(problem.principal_offset)
        | set(problem.distortion_offset)
    )
    updated = {i: _intrinsics_at(scene, problem, i, params) for i in intrinsic_ids}
    scene.intrinsics.update(updated)

    for landmark_id, o in problem.structure_offset.items():
        scene.landmarks[landmark_id].X = params[o : o + 3].copy()


def _observation_errors(residuals: np.ndarray, problem: _Problem) -> np.ndarray:
    xy = residuals[: problem.n_img_points * 2].reshape(-1, 2)
    return np.sqrt(np.sum(xy**2, axis=1))


# ============================================================================
# Bundle Adjuster
# ============================================================================


class BundleAdjuster:
    """
    Sparse bundle adjustment with scipy.optimize.least_squares.

    Args:
        distance: If set, the first free pose's camera center is pulled to
            this distance from the world origin
        distance_weight: Weight of the distance prior residual
        loss: least_squares loss ("linear", "huber", "soft_l1", ...)
        ftol: Relative cost tolerance
        max_nfev: Evaluation budget (None for the scipy default)
    """

    def __init__(
        self,
        distance: float | None = None,
        distance_weight: float = 1.0,
        loss: str = "linear",
        ftol: float = 1e-8,
        max_nfev: int | None = None,
    ):
        self.distance = distance
        self.distance_weight = distance_weight
        self.loss = loss
        self.ftol = ftol
        self.max_nfev = max_nfev

    def refine(self, scene: SceneGraph, options: RefineOptions) -> bool:
        problem = _build_problem(scene, options, with_prior=self.distance is not None)

        if problem.n_img_points == 0 or problem.n_params == 0:
            logger.info("Nothing to refine (%d observations, %d parameters)",
                        problem.n_img_points, problem.n_params)
            return True

        args = (scene, problem, self.distance, self.distance_weight)
        initial = _xy_reprojection_error(problem.x0, *args)
        if not np.all(np.isfinite(initial)):
            logger.error("Non-finite initial residuals, refinement aborted")
            return False

        initial_rmse = float(np.sqrt(np.mean(_observation_errors(initial, problem) ** 2)))
        logger.info(
            "Bundle adjustment: %d observations, %d parameters, initial RMSE %.4f px",
            problem.n_img_points, problem.n_params, initial_rmse,
        )

        sparsity = _get_sparsity_pattern(scene, problem)

        try:
            result = least_squares(
                _xy_reprojection_error,
                problem.x0,
                jac_sparsity=sparsity,
                verbose=0,
                x_scale="jac",
                loss=self.loss,
                ftol=self.ftol,
                method="trf",
                max_nfev=self.max_nfev,
                args=args,
            )
        except (ValueError, np.linalg.LinAlgError) as e:
            logger.error("Bundle adjustment failed: %s", e)
            return False

        if result.status < 0 or not np.all(np.isfinite(result.x)):
            logger.error("Bundle adjustment failed: %s", result.message)
            return False
        if result.status == 0:
            logger.warning("Bundle adjustment stopped early: %s", result.message)

        errors = _observation_errors(result.fun, problem)
        if not np.all(np.isfinite(errors)):
            logger.error("Non-finite residuals after refinement")
            return False

        _write_back(scene, problem, result.x)

        final_rmse = float(np.sqrt(np.mean(errors**2)))
        histogram = Histogram(0.0, max(1.0, float(np.ceil(errors.max()))), 10)
        histogram.add(errors)
        logger.info("Bundle adjustment: final RMSE %.4f px", final_rmse)
        logger.debug(histogram.to_string("Residual histogram (px)"))

        return True
