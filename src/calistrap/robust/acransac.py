"""
A-contrario RANSAC.

Moisan, Moulon & Monasse, "Automatic Homographic Registration of a Pair of
Images, with A Contrario Elimination of Outliers", IPOL 2012.

Instead of a fixed inlier threshold, every hypothesis is scored by its
Number of False Alarms over all possible inlier counts; the best NFA picks
both the inlier set and the threshold. A hypothesis is meaningful when
log10(NFA) < 0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy.special import gammaln

from .kernels import Kernel

logger = logging.getLogger(__name__)

_EPSILON = float(np.finfo(np.float32).eps)
_LN10 = np.log(10.0)


@dataclass(frozen=True, slots=True)
class RansacResult:
    """
    Outcome of a robust estimation.

    threshold is expressed in the kernel's error units (squared pixels for
    point-to-point kernels).
    """

    model: np.ndarray | None
    inliers: np.ndarray  # (k,) sorted indices into the correspondence set
    log_nfa: float
    threshold: float
    iterations: int

    @property
    def found(self) -> bool:
        return self.model is not None

    @property
    def n_inliers(self) -> int:
        return len(self.inliers)


def _not_found(iterations: int) -> RansacResult:
    return RansacResult(
        model=None,
        inliers=np.array([], dtype=np.int64),
        log_nfa=np.inf,
        threshold=np.inf,
        iterations=iterations,
    )


# ============================================================================
# NFA Computation
# ============================================================================


def log10_combinations(n: int, k: np.ndarray) -> np.ndarray:
    """log10 C(n, k), vectorized over k."""
    k = np.asarray(k, dtype=np.float64)
    return (gammaln(n + 1) - gammaln(k + 1) - gammaln(n - k + 1)) / _LN10


def nfa_tables(n: int, sample_size: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Precompute log10 C(n, k) and log10 C(k, s) for k = 0..n.
    """
    ks = np.arange(n + 1)
    logc_n = log10_combinations(n, ks)
    logc_k = np.full(n + 1, -np.inf)
    valid = ks >= sample_size
    logc_k[valid] = np.array([log10_combinations(int(k), sample_size) for k in ks[valid]])
    return logc_n, logc_k


def best_nfa(
    errors: np.ndarray,
    sample_size: int,
    log_e0: float,
    log_alpha0: float,
    mult_error: float,
    logc_n: np.ndarray,
    logc_k: np.ndarray,
    max_threshold: float = np.inf,
) -> tuple[float, int, float, np.ndarray]:
    """
    Minimum log10 NFA over inlier counts k = s+1..n.

    Returns:
        (log_nfa, k, threshold, sorted_inlier_indices); k is 0 and log_nfa
        inf when no count is admissible
    """
    n = len(errors)
    s = sample_size
    order = np.argsort(errors, kind="stable")
    sorted_errors = errors[order]

    ks = np.arange(s + 1, n + 1)
    e = sorted_errors[s:n]  # e[k-1] for each k in ks

    admissible = np.isfinite(e) & (e <= max_threshold)
    if not np.any(admissible):
        return np.inf, 0, np.inf, np.array([], dtype=np.int64)

    ks = ks[admissible]
    e = e[admissible]
    nfa = (
        log_e0
        + (log_alpha0 + mult_error * np.log10(e + _EPSILON)) * (ks - s)
        + logc_n[ks]
        + logc_k[ks]
    )

    idx = int(np.argmin(nfa))
    k = int(ks[idx])
    inliers = np.sort(order[:k])
    return float(nfa[idx]), k, float(e[idx]), inliers


def required_iterations(
    inlier_ratio: float,
    sample_size: int,
    confidence: float,
    max_iterations: int,
) -> int:
    """
    Trials needed to draw one all-inlier sample with the given confidence.
    """
    if inlier_ratio <= 0:
        return max_iterations
    p_good = inlier_ratio**sample_size
    if p_good >= 1.0 - 1e-12:
        return 1
    n_trials = np.log(1.0 - confidence) / np.log(1.0 - p_good)
    return int(min(max_iterations, max(1, np.ceil(n_trials))))


# ============================================================================
# Estimation
# ============================================================================


def estimate(
    kernel: Kernel,
    rng: np.random.Generator,
    max_iterations: int = 1024,
    adaptive: bool = True,
    max_threshold: float = np.inf,
    min_inliers: int = 0,
    confidence: float = 0.99,
) -> RansacResult:
    """
    Robustly fit a model to the kernel's correspondences.

    Args:
        kernel: Estimation kernel owning the correspondences
        rng: Random generator, the only source of randomness
        max_iterations: Upper bound on the number of trials
        adaptive: Select threshold by NFA; if False, use max_threshold as a
            fixed inlier threshold and maximize the inlier count
        max_threshold: Largest admissible residual (kernel error units)
        min_inliers: Minimum support required for a result
        confidence: Probability of drawing at least one all-inlier sample

    Returns:
        RansacResult; found is False when no meaningful model exists
    """
    n = len(kernel)
    s = kernel.sample_size

    if n <= s:
        logger.debug("Not enough correspondences (%d) for sample size %d", n, s)
        return _not_found(0)

    if not adaptive and not np.isfinite(max_threshold):
        raise ValueError("Fixed-threshold estimation requires a finite max_threshold")

    if adaptive:
        logc_n, logc_k = nfa_tables(n, s)
        log_e0 = float(np.log10(kernel.max_models * (n - s)))

    best_model = None
    best_inliers = np.array([], dtype=np.int64)
    best_score = np.inf
    best_threshold = np.inf

    n_trials = max_iterations
    iteration = 0

    while iteration < n_trials:
        iteration += 1
        sample = rng.choice(n, size=s, replace=False)

        improved = False
        for model in kernel.fit(sample):
            errors = kernel.errors(model)

            if adaptive:
                log_nfa, k, threshold, inliers = best_nfa(
                    errors, s, log_e0, kernel.log_alpha0, kernel.mult_error,
                    logc_n, logc_k, max_threshold,
                )
                if k == 0 or log_nfa >= best_score:
                    continue
                best_score = log_nfa
                improved = log_nfa < 0
            else:
                inliers = np.flatnonzero(errors <= max_threshold)
                if len(inliers) <= len(best_inliers):
                    continue
                threshold = max_threshold
                best_score = -float(len(inliers))
                improved = True

            best_model = model
            best_inliers = inliers
            best_threshold = threshold

        if improved:
            n_trials = max(
                iteration,
                required_iterations(len(best_inliers) / n, s, confidence, max_iterations),
            )

    if best_model is None:
        logger.debug("No non-degenerate model after %d iterations", iteration)
        return _not_found(iteration)

    if adaptive and best_score >= 0:
        logger.debug("Best model not meaningful (log10 NFA = %.2f)", best_score)
        return _not_found(iteration)

    if len(best_inliers) < max(min_inliers, s + 1 if adaptive else 1):
        logger.debug(
            "Best model has %d inliers, %d required", len(best_inliers), min_inliers
        )
        return _not_found(iteration)

    refined = kernel.fit_least_squares(best_inliers)
    if refined is not None and np.all(np.isfinite(refined)):
        best_model = refined

    return RansacResult(
        model=best_model,
        inliers=best_inliers,
        log_nfa=best_score if adaptive else np.nan,
        threshold=best_threshold,
        iterations=iteration,
    )
