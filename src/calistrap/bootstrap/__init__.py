"""
Two-view bootstrap: score candidate pairs, pick the best one and seed the
scene with its landmarks.
"""

from .scoring import (
    PairAngle,
    PairScore,
    common_tracks,
    compute_tracks_per_view,
    coverage_score,
    epipolar_distances,
    estimate_pair_angle,
    fundamental_from_pair,
    score_pair,
)

from .selection import (
    build_initial_scene,
    select_best_pair,
)

__all__ = [
    # Scoring
    "PairAngle",
    "PairScore",
    "compute_tracks_per_view",
    "common_tracks",
    "fundamental_from_pair",
    "epipolar_distances",
    "estimate_pair_angle",
    "coverage_score",
    "score_pair",
    # Selection
    "select_best_pair",
    "build_initial_scene",
]
