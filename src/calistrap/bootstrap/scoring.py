"""
Candidate pair scoring.

A pair is good for seeding a reconstruction when its shared tracks agree
with its relative pose, see each other under a wide parallax angle, and are
spread over both images.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ..camera import require_pinhole, undistort_pixels
from ..errors import InsufficientDataError
from ..triangulation import triangulate_pairs
from ..types import (
    Intrinsics,
    ReconstructedPair,
    SceneGraph,
    Track,
    skew_symmetric,
)


@dataclass(frozen=True, slots=True)
class PairAngle:
    """Median parallax of a pair and the tracks that support it."""

    angle: float  # radians
    used_tracks: np.ndarray  # (k,) sorted track ids


@dataclass(frozen=True, slots=True)
class PairScore:
    """
    Evaluation of one candidate pair.
    """

    pair: ReconstructedPair
    angle: float  # radians
    used_tracks: np.ndarray  # (k,) sorted track ids
    reference_score: float
    next_score: float
    score: float  # min(reference_score, next_score) * angle in degrees

    @property
    def angle_deg(self) -> float:
        return float(np.degrees(self.angle))


# ============================================================================
# Tracks
# ============================================================================


def compute_tracks_per_view(tracks: dict[int, Track]) -> dict[int, np.ndarray]:
    """
    Sorted ids of the tracks visible in each view.
    """
    per_view: dict[int, list[int]] = {}
    for track_id, track in tracks.items():
        for view_id in track.items:
            per_view.setdefault(view_id, []).append(track_id)
    return {
        view_id: np.array(sorted(ids), dtype=np.int64)
        for view_id, ids in per_view.items()
    }


def common_tracks(
    tracks_per_view: dict[int, np.ndarray],
    view_a: int,
    view_b: int,
) -> np.ndarray:
    empty = np.array([], dtype=np.int64)
    return np.intersect1d(
        tracks_per_view.get(view_a, empty),
        tracks_per_view.get(view_b, empty),
    )


def track_coords(
    tracks: dict[int, Track],
    track_ids: np.ndarray,
    view_id: int,
) -> np.ndarray:
    """(k, 2) pixel coordinates of the given tracks in one view."""
    if len(track_ids) == 0:
        return np.zeros((0, 2), dtype=np.float64)
    return np.array(
        [tracks[int(t)].items[view_id].coords for t in track_ids],
        dtype=np.float64,
    ).reshape(-1, 2)


# ============================================================================
# Epipolar Geometry
# ============================================================================


def pair_intrinsics(
    scene: SceneGraph,
    pair: ReconstructedPair,
) -> tuple[Intrinsics, Intrinsics]:
    ref_intrinsics = scene.intrinsics_for_view(pair.reference)
    next_intrinsics = scene.intrinsics_for_view(pair.next)
    if ref_intrinsics is None or next_intrinsics is None:
        raise InsufficientDataError(
            f"Pair ({pair.reference}, {pair.next}) references a view without intrinsics"
        )
    require_pinhole(ref_intrinsics)
    require_pinhole(next_intrinsics)
    return ref_intrinsics, next_intrinsics


def fundamental_from_pair(
    K_ref: np.ndarray,
    K_next: np.ndarray,
    rotation: np.ndarray,
    translation: np.ndarray,
) -> np.ndarray:
    """F = K_next^-T [t]x R K_ref^-1, so that x_next^T F x_ref = 0."""
    return (
        np.linalg.inv(K_next).T
        @ skew_symmetric(translation)
        @ rotation
        @ np.linalg.inv(K_ref)
    )


def epipolar_distances(
    F: np.ndarray,
    ref_points: np.ndarray,
    next_points: np.ndarray,
) -> np.ndarray:
    """
    Unsigned distance of each next-view point to the epipolar line of its
    reference-view match, in pixels.

    The absolute value is taken so a track far on either side of its line is
    rejected; a signed test would keep every track on the negative side.
    """
    ones = np.ones((len(ref_points), 1))
    lines = np.hstack([ref_points, ones]) @ F.T
    norms = np.linalg.norm(lines[:, 0:2], axis=1)

    distances = np.full(len(ref_points), np.inf)
    valid = norms > 0
    signed = np.sum(np.hstack([next_points, ones]) * lines, axis=1)
    distances[valid] = np.abs(signed[valid]) / norms[valid]
    return distances


def parallax_angles(points: np.ndarray, center: np.ndarray) -> np.ndarray:
    """
    Angle at each point between the rays to the origin and to center.
    """
    ray1 = -points
    ray2 = center - points
    ray1 = ray1 / np.linalg.norm(ray1, axis=1, keepdims=True)
    ray2 = ray2 / np.linalg.norm(ray2, axis=1, keepdims=True)
    cosines = np.clip(np.sum(ray1 * ray2, axis=1), -1.0, 1.0)
    return np.arccos(cosines)


# ============================================================================
# Scoring
# ============================================================================


def estimate_pair_angle(
    scene: SceneGraph,
    pair: ReconstructedPair,
    tracks: dict[int, Track],
    tracks_per_view: dict[int, np.ndarray],
    max_epipolar_distance: float = 4.0,
) -> PairAngle | None:
    """
    Median parallax angle over the tracks consistent with the pair's pose.

    Tracks are kept when their next-view point lies within
    max_epipolar_distance pixels of the epipolar line and their
    triangulation is in front of both cameras.

    Returns:
        PairAngle, or None if no track survives

    Raises:
        InsufficientDataError: A view of the pair has no intrinsics
        UnsupportedCameraError: A view of the pair is not a pinhole camera
    """
    ref_intrinsics, next_intrinsics = pair_intrinsics(scene, pair)

    candidates = common_tracks(tracks_per_view, pair.reference, pair.next)
    if len(candidates) == 0:
        return None

    ref_points = undistort_pixels(
        ref_intrinsics, track_coords(tracks, candidates, pair.reference)
    )
    next_points = undistort_pixels(
        next_intrinsics, track_coords(tracks, candidates, pair.next)
    )

    R = np.asarray(pair.rotation, dtype=np.float64)
    t = np.asarray(pair.translation, dtype=np.float64)

    F = fundamental_from_pair(ref_intrinsics.matrix, next_intrinsics.matrix, R, t)
    consistent = epipolar_distances(F, ref_points, next_points) <= max_epipolar_distance
    if not np.any(consistent):
        return None

    P1 = ref_intrinsics.matrix @ np.hstack([np.eye(3), np.zeros((3, 1))])
    P2 = next_intrinsics.matrix @ np.hstack([R, t.reshape(3, 1)])
    X = triangulate_pairs(P1, P2, ref_points[consistent], next_points[consistent])

    depth_ref = X[:, 2]
    depth_next = (X @ R.T + t)[:, 2]
    in_front = np.all(np.isfinite(X), axis=1) & (depth_ref > 0) & (depth_next > 0)
    if not np.any(in_front):
        return None

    center = -R.T @ t
    angles = parallax_angles(X[in_front], center)

    median_index = len(angles) // 2
    median = float(np.partition(angles, median_index)[median_index])

    used = candidates[consistent][in_front]
    return PairAngle(angle=median, used_tracks=used)


def coverage_score(
    tracks: dict[int, Track],
    used_tracks: np.ndarray,
    view_id: int,
    max_level: int = 16,
) -> float:
    """
    Spatial spread of the used tracks in one view.

    Pixel coordinates are binned in a dyadic pyramid (cell size 2^level for
    level = 1..max_level-1); each level with more than one occupied cell
    adds 2^(max_level - level) times its count of distinct occupied cells.
    """
    coords = track_coords(tracks, used_tracks, view_id)
    if len(coords) == 0:
        return 0.0

    pixels = np.maximum(np.trunc(coords), 0).astype(np.int64)

    total = 0.0
    for shift in range(1, max_level):
        cells = np.unique(pixels >> shift, axis=0)
        if len(cells) <= 1:
            continue
        total += 2.0 ** (max_level - shift) * len(cells)
    return total


def score_pair(
    scene: SceneGraph,
    pair: ReconstructedPair,
    tracks: dict[int, Track],
    tracks_per_view: dict[int, np.ndarray],
    max_epipolar_distance: float = 4.0,
    max_level: int = 16,
) -> PairScore | None:
    """
    Full evaluation of a candidate pair, or None if no track supports it.
    """
    result = estimate_pair_angle(scene, pair, tracks, tracks_per_view, max_epipolar_distance)
    if result is None:
        return None

    reference_score = coverage_score(tracks, result.used_tracks, pair.reference, max_level)
    next_score = coverage_score(tracks, result.used_tracks, pair.next, max_level)

    return PairScore(
        pair=pair,
        angle=result.angle,
        used_tracks=result.used_tracks,
        reference_score=reference_score,
        next_score=next_score,
        score=min(reference_score, next_score) * float(np.degrees(result.angle)),
    )