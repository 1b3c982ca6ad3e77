"""
Tests for calistrap.robust.acransac.
"""

import numpy as np
import pytest

from calistrap.robust import HomographyKernel, estimate, transfer_points
from calistrap.robust.acransac import (
    log10_combinations,
    nfa_tables,
    required_iterations,
)


H_TRUE = np.array([
    [1.1, 0.05, 40.0],
    [-0.02, 0.95, 25.0],
    [5e-5, -1e-4, 1.0],
])


@pytest.fixture
def contaminated():
    """70 exact correspondences followed by 30 random outliers."""
    generator = np.random.default_rng(3)
    src = generator.uniform(0, 600, size=(100, 2))
    dst = transfer_points(H_TRUE, src)
    dst[70:] = generator.uniform(0, 700, size=(30, 2))
    return src, dst


class TestCombinatorics:
    def test_log10_combinations(self):
        np.testing.assert_allclose(log10_combinations(5, [0, 2, 5]), [0.0, 1.0, 0.0], atol=1e-12)

    def test_nfa_tables(self):
        logc_n, logc_k = nfa_tables(10, 4)

        assert logc_n.shape == (11,) and logc_k.shape == (11,)
        assert np.all(np.isneginf(logc_k[:4]))
        assert logc_k[4] == pytest.approx(0.0, abs=1e-12)
        assert logc_n[3] == pytest.approx(np.log10(120.0))

    def test_required_iterations(self):
        assert required_iterations(1.0, 4, 0.99, 1000) == 1
        assert required_iterations(0.0, 4, 0.99, 1000) == 1000
        # 0.5^4 = 1/16 -> log(0.01) / log(15/16) = 71.4
        assert required_iterations(0.5, 4, 0.99, 1000) == 72


class TestEstimate:
    def test_exact_correspondences_are_all_inliers(self, rng):
        """Noise-free data: H recovered up to scale, every point supports it."""
        src = np.random.default_rng(11).uniform(0, 600, size=(40, 2))
        kernel = HomographyKernel(src, transfer_points(H_TRUE, src), (700, 700))

        result = estimate(kernel, rng)

        assert result.found
        assert result.n_inliers == len(kernel)
        np.testing.assert_allclose(result.model / result.model[2, 2], H_TRUE, rtol=1e-8, atol=1e-10)

    def test_recovers_inliers_and_model(self, contaminated, rng):
        src, dst = contaminated
        kernel = HomographyKernel(src, dst, (700, 700))

        result = estimate(kernel, rng)

        assert result.found
        np.testing.assert_array_equal(result.inliers, np.arange(70))
        np.testing.assert_allclose(result.model, H_TRUE, rtol=1e-6, atol=1e-9)
        assert result.log_nfa < 0

    def test_fixed_threshold(self, contaminated, rng):
        src, dst = contaminated
        kernel = HomographyKernel(src, dst, (700, 700))

        result = estimate(kernel, rng, adaptive=False, max_threshold=4.0)

        assert result.found
        np.testing.assert_array_equal(result.inliers, np.arange(70))
        assert result.threshold == 4.0

    def test_fixed_threshold_needs_finite_bound(self, contaminated, rng):
        kernel = HomographyKernel(*contaminated, (700, 700))
        with pytest.raises(ValueError, match="finite"):
            estimate(kernel, rng, adaptive=False)

    def test_deterministic_for_a_seed(self, contaminated):
        """Same seed, same correspondences: identical result."""
        kernel = HomographyKernel(*contaminated, (700, 700))

        first = estimate(kernel, np.random.default_rng(11), max_iterations=50)
        second = estimate(kernel, np.random.default_rng(11), max_iterations=50)

        assert first.iterations == second.iterations
        np.testing.assert_array_equal(first.inliers, second.inliers)
        np.testing.assert_array_equal(first.model, second.model)

    def test_collinear_input_has_no_model(self, rng):
        """Points on one line cannot determine a homography."""
        t = np.linspace(0, 100, 20)
        src = np.column_stack([t, 2 * t + 1])
        dst = np.column_stack([3 * t, t - 5])

        result = estimate(HomographyKernel(src, dst, (640, 480)), rng, max_iterations=100)

        assert not result.found
        assert result.model is None
        assert result.n_inliers == 0

    def test_too_few_correspondences(self, rng):
        src = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
        result = estimate(HomographyKernel(src, src, (640, 480)), rng)

        assert not result.found
        assert result.iterations == 0

    def test_min_inliers(self, contaminated, rng):
        kernel = HomographyKernel(*contaminated, (700, 700))
        result = estimate(kernel, rng, min_inliers=80)
        assert not result.found
