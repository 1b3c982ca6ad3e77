"""
Seed pair selection and initial scene construction.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from functools import partial

import numpy as np

from ..camera import undistort_pixels
from ..errors import InsufficientDataError, NoModelFoundError
from ..triangulation import triangulate_pairs
from ..types import (
    Landmark,
    Observation,
    Pose,
    ReconstructedPair,
    SceneGraph,
    Track,
    compute_projection_matrix,
    identity_pose,
)
from .scoring import (
    PairScore,
    compute_tracks_per_view,
    pair_intrinsics,
    score_pair,
    track_coords,
)

logger = logging.getLogger(__name__)


def select_best_pair(
    scene: SceneGraph,
    pairs: Sequence[ReconstructedPair],
    tracks: dict[int, Track],
    max_epipolar_distance: float = 4.0,
    min_angle_deg: float = 5.0,
    min_tracks: int = 10,
    max_level: int = 16,
    max_workers: int | None = None,
) -> PairScore:
    """
    Pick the candidate pair with the highest score.

    Pairs below min_angle_deg or supported by fewer than min_tracks tracks
    are discarded; any pair passing both gates can win, even with a zero
    coverage score. Ties keep the earliest candidate. Scoring may run on a
    thread pool; the reduction always follows candidate order.

    Args:
        scene: Scene holding the views and intrinsics of every pair
        pairs: Candidate pairs in a deterministic order
        tracks: track_id -> Track
        max_epipolar_distance: Epipolar consistency gate in pixels
        min_angle_deg: Minimum median parallax
        min_tracks: Minimum number of supporting tracks
        max_level: Depth of the coverage pyramid
        max_workers: Thread pool size; None or 1 scores sequentially

    Returns:
        PairScore of the selected pair

    Raises:
        NoModelFoundError: No candidate passes both gates
    """
    tracks_per_view = compute_tracks_per_view(tracks)
    evaluate = partial(
        score_pair,
        scene,
        tracks=tracks,
        tracks_per_view=tracks_per_view,
        max_epipolar_distance=max_epipolar_distance,
        max_level=max_level,
    )

    if max_workers is not None and max_workers > 1 and len(pairs) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            scores = list(executor.map(evaluate, pairs))
    else:
        scores = [evaluate(pair) for pair in pairs]

    best = None
    best_score = -np.inf

    for pair, result in zip(pairs, scores):
        if result is None:
            logger.debug("Pair (%d, %d): no supporting track", pair.reference, pair.next)
            continue

        if result.angle_deg < min_angle_deg:
            logger.debug(
                "Pair (%d, %d): angle %.2f deg below %.2f",
                pair.reference, pair.next, result.angle_deg, min_angle_deg,
            )
            continue

        if len(result.used_tracks) < min_tracks:
            logger.debug(
                "Pair (%d, %d): %d tracks below %d",
                pair.reference, pair.next, len(result.used_tracks), min_tracks,
            )
            continue

        if result.score > best_score:
            best = result
            best_score = result.score

    if best is None:
        raise NoModelFoundError(
            f"None of the {len(pairs)} candidate pairs passes the angle "
            f"({min_angle_deg} deg) and track count ({min_tracks}) gates"
        )

    logger.info(
        "Best pair: (%d, %d), angle %.2f deg, %d tracks, score %.1f",
        best.pair.reference, best.pair.next, best.angle_deg,
        len(best.used_tracks), best.score,
    )
    return best


def build_initial_scene(
    scene: SceneGraph,
    pair: ReconstructedPair,
    tracks: dict[int, Track],
    used_tracks: np.ndarray,
) -> SceneGraph:
    """
    Seed a scene from a selected pair.

    The reference view gets the locked identity pose, the next view the
    pair's relative pose. Every used track that triangulates in front of
    both cameras becomes a landmark with the track id.

    Raises:
        InsufficientDataError: A used track lacks a feature id in either view
    """
    ref_intrinsics, next_intrinsics = pair_intrinsics(scene, pair)

    used_tracks = np.asarray(used_tracks, dtype=np.int64)
    for track_id in used_tracks:
        items = tracks[int(track_id)].items
        for view_id in (pair.reference, pair.next):
            if items[view_id].feature_id is None:
                raise InsufficientDataError(
                    f"Track {track_id} has no feature id in view {view_id}"
                )

    scene = scene.copy()
    ref_pose = identity_pose(locked=True)
    next_pose = Pose(rotation=pair.rotation, translation=pair.translation)
    scene.set_pose(pair.reference, ref_pose)
    scene.set_pose(pair.next, next_pose)

    P1 = compute_projection_matrix(ref_intrinsics.matrix, ref_pose)
    P2 = compute_projection_matrix(next_intrinsics.matrix, next_pose)

    ref_coords = track_coords(tracks, used_tracks, pair.reference)
    next_coords = track_coords(tracks, used_tracks, pair.next)
    X = triangulate_pairs(
        P1,
        P2,
        undistort_pixels(ref_intrinsics, ref_coords),
        undistort_pixels(next_intrinsics, next_coords),
    )

    depth_next = next_pose.transform(X)[:, 2]
    in_front = np.all(np.isfinite(X), axis=1) & (X[:, 2] > 0) & (depth_next > 0)

    for k, track_id in enumerate(used_tracks):
        if not in_front[k]:
            continue

        track = tracks[int(track_id)]
        observations = {}
        for view_id in (pair.reference, pair.next):
            item = track.items[view_id]
            weight = 1.0 / item.scale if item.scale > 0 else 1.0
            observations[view_id] = Observation(
                x=np.asarray(item.coords, dtype=np.float64).copy(),
                feature_id=int(item.feature_id),
                weight=weight,
            )

        scene.landmarks[int(track_id)] = Landmark(
            X=X[k].copy(),
            observations=observations,
            desc_type=track.desc_type,
        )

    logger.info(
        "Initial scene: %d landmarks from %d used tracks",
        int(np.count_nonzero(in_front)), len(used_tracks),
    )
    return scene
