"""
Fixed-range histogram used to summarize residual distributions in logs.
"""

from __future__ import annotations

from collections.abc import Iterable

import numpy as np


class Histogram:
    """
    Tally of values within [start, end] split into n_bins bins.

    Values outside the range go to the underflow/overflow counters;
    a value equal to end falls in the last bin.
    """

    def __init__(self, start: float = 0.0, end: float = 1.0, n_bins: int = 10):
        if end <= start:
            raise ValueError(f"Histogram range is empty: [{start}, {end}]")
        if n_bins < 1:
            raise ValueError("Histogram needs at least one bin")

        self.start = float(start)
        self.end = float(end)
        self.n_bins = int(n_bins)
        self.counts = np.zeros(self.n_bins, dtype=np.int64)
        self.underflow = 0
        self.overflow = 0

    def add(self, values: float | Iterable[float]) -> None:
        values = np.atleast_1d(np.asarray(values, dtype=np.float64)).ravel()
        values = values[~np.isnan(values)]

        below = values < self.start
        above = values > self.end
        self.underflow += int(np.count_nonzero(below))
        self.overflow += int(np.count_nonzero(above))

        inside = values[~below & ~above]
        bins_per_unit = self.n_bins / (self.end - self.start)
        idx = ((inside - self.start) * bins_per_unit).astype(np.int64)
        np.add.at(self.counts, np.minimum(idx, self.n_bins - 1), 1)

    @property
    def total_count(self) -> int:
        """Count of in-range values (excludes under/overflow)."""
        return int(self.counts.sum())

    def bin_values(self) -> np.ndarray:
        """
        Evenly spaced x values from start to end, one per bin.
        """
        if self.n_bins == 1:
            return np.array([self.start])
        step = (self.end - self.start) / (self.n_bins - 1)
        return self.start + step * np.arange(self.n_bins)

    def to_string(self, title: str = "", precision: int = 3) -> str:
        """
        Text table with the lower edge of each bin and its count.
        """
        width = (self.end - self.start) / self.n_bins
        lines = ["", title]
        for i, count in enumerate(self.counts):
            lines.append(f"{self.start + width * i:.{precision}g}\t|\t{count}")
        lines.append(f"{self.end:.{precision}g}")
        return "\n".join(lines) + "\n"
