"""
Tests for calistrap.histogram.
"""

import numpy as np
import pytest

from calistrap.histogram import Histogram


class TestHistogram:
    def test_counts_and_out_of_range(self):
        histogram = Histogram(0.0, 10.0, 5)
        histogram.add([0.0, 1.9, 2.0, 9.99, 10.0, -0.5, 10.5, 12.0])

        np.testing.assert_array_equal(histogram.counts, [2, 1, 0, 0, 2])
        assert histogram.underflow == 1
        assert histogram.overflow == 2
        assert histogram.total_count == 5

    def test_scalar_and_nan(self):
        histogram = Histogram(0.0, 1.0, 2)
        histogram.add(0.75)
        histogram.add(np.nan)

        np.testing.assert_array_equal(histogram.counts, [0, 1])

    def test_bin_values(self):
        np.testing.assert_allclose(Histogram(0.0, 1.0, 5).bin_values(), [0, 0.25, 0.5, 0.75, 1.0])
        np.testing.assert_allclose(Histogram(2.0, 3.0, 1).bin_values(), [2.0])

    def test_to_string(self):
        histogram = Histogram(0.0, 4.0, 2)
        histogram.add([0.5, 3.0, 3.5])

        text = histogram.to_string("Residuals")

        assert "Residuals" in text
        assert "0\t|\t1" in text
        assert "2\t|\t2" in text

    def test_invalid_range(self):
        with pytest.raises(ValueError, match="empty"):
            Histogram(1.0, 1.0, 3)
        with pytest.raises(ValueError, match="bin"):
            Histogram(0.0, 1.0, 0)
