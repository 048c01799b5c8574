"""Summary statistics for benchmark samples.

Only descriptive statistics are computed: mean, median, population
variance, min and max.  Values are durations in seconds.
"""

from __future__ import annotations

import statistics
from dataclasses import dataclass
from typing import Any, Sequence


@dataclass
class BenchmarkComputations:
    """Summary statistics for one set of measured durations."""

    mean: float
    median: float
    variance: float
    min: float
    max: float

    def to_dict(self) -> dict[str, float]:
        """Serialize to a JSON-compatible dict."""
        return {
            "mean": self.mean,
            "median": self.median,
            "variance": self.variance,
            "min": self.min,
            "max": self.max,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BenchmarkComputations:
        """Deserialize from a dict, ignoring unknown fields."""
        return cls(
            mean=float(data["mean"]),
            median=float(data["median"]),
            variance=float(data["variance"]),
            min=float(data["min"]),
            max=float(data["max"]),
        )


def compute(values: Sequence[float]) -> BenchmarkComputations:
    """Compute summary statistics for a sample.

    Args:
        values: Durations in seconds.

    Returns:
        BenchmarkComputations.  Every field is NaN when *values* is empty;
        variance is 0.0 for a single value.
    """
    if not values:
        nan = float("nan")
        return BenchmarkComputations(mean=nan, median=nan, variance=nan, min=nan, max=nan)

    sorted_v = sorted(values)
    mean = statistics.fmean(sorted_v)
    # fmean can land a rounding step outside [min, max] for equal samples.
    mean = min(max(mean, sorted_v[0]), sorted_v[-1])

    return BenchmarkComputations(
        mean=mean,
        median=statistics.median(sorted_v),
        variance=statistics.pvariance(sorted_v),
        min=sorted_v[0],
        max=sorted_v[-1],
    )
