"""
Pipeline orchestration.

Glue between the loaded inputs, the configuration and the calibration and
bootstrap algorithms. Every step works on a copy of the scene.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from .bootstrap import PairScore, build_initial_scene, select_best_pair
from .calibration import calibrate_inner_grids, calibrate_scene
from .errors import RefinementFailedError
from .refinement import BundleAdjuster, Refiner
from .types import (
    BoardDetection,
    PipelineConfig,
    ReconstructedPair,
    RefineOptions,
    SceneGraph,
    Track,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BootstrapResult:
    """Outcome of run_bootstrap."""

    scene: SceneGraph
    best: PairScore | None = None  # None when the scene was already initialized

    @property
    def initialized(self) -> bool:
        return self.best is not None


# ============================================================================
# Calibration
# ============================================================================


def run_calibration(
    scene: SceneGraph,
    detections: dict[int, BoardDetection],
    config: PipelineConfig,
    refiner: Refiner | None = None,
    rng: np.random.Generator | None = None,
) -> SceneGraph:
    """
    Calibrate the scene's intrinsics from checkerboard detections.

    Args:
        scene: Input scene (left untouched)
        detections: view_id -> BoardDetection
        config: Pipeline configuration, mode from config.calibration.mode
        refiner: Refinement collaborator; a BundleAdjuster when None
        rng: Random generator; seeded from config.seed when None

    Returns:
        Calibrated copy of the scene
    """
    calibration = config.calibration
    if rng is None:
        rng = np.random.default_rng(config.seed)

    logger.info(
        "Calibrating %d views with %d detections (%s mode)",
        len(scene.views), len(detections), calibration.mode,
    )

    if calibration.mode == "inner_grids":
        if refiner is None:
            refiner = BundleAdjuster(distance=calibration.distance)
        return calibrate_inner_grids(
            scene,
            detections,
            refiner,
            rng,
            use_simple_pinhole=calibration.use_simple_pinhole,
            resection_iterations=calibration.resection_iterations,
            min_inliers=calibration.min_inliers,
            min_board_corners=calibration.min_board_corners,
        )

    if calibration.mode != "basic":
        raise ValueError(f"Unknown calibration mode: {calibration.mode}")

    if refiner is None:
        refiner = BundleAdjuster()
    return calibrate_scene(
        scene,
        detections,
        calibration.square_size,
        refiner,
        rng,
        homography_iterations=calibration.homography_iterations,
        min_inliers=calibration.min_inliers,
    )


# ============================================================================
# Bootstrap
# ============================================================================


def run_bootstrap(
    scene: SceneGraph,
    tracks: dict[int, Track],
    pairs: Sequence[ReconstructedPair],
    config: PipelineConfig,
    refiner: Refiner | None = None,
) -> BootstrapResult:
    """
    Seed an uninitialized scene from the best candidate pair.

    A scene that already has two or more posed views is returned unchanged.
    With config.bootstrap.refine set, the seeded scene is bundle adjusted
    (poses and structure).

    Raises:
        NoModelFoundError: No candidate pair passes the gates
        RefinementFailedError: Refinement of the seeded scene failed
    """
    valid = scene.valid_views()
    if len(valid) >= 2:
        logger.info("Scene already initialized with %d posed views", len(valid))
        return BootstrapResult(scene=scene)

    settings = config.bootstrap
    best = select_best_pair(
        scene,
        pairs,
        tracks,
        max_epipolar_distance=settings.max_epipolar_distance,
        min_angle_deg=settings.min_angle_deg,
        min_tracks=settings.min_tracks,
        max_level=settings.max_level,
        max_workers=settings.max_workers,
    )
    seeded = build_initial_scene(scene, best.pair, tracks, best.used_tracks)

    if settings.refine:
        if refiner is None:
            refiner = BundleAdjuster()
        options = RefineOptions.ROTATION | RefineOptions.TRANSLATION | RefineOptions.STRUCTURE
        if not refiner.refine(seeded, options):
            raise RefinementFailedError("Bundle adjustment of the initial pair failed")

    return BootstrapResult(scene=seeded, best=best)
