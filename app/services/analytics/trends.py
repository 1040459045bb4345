"""Small statistics helpers shared by the analytics, aggregation and cost passes."""

import math
from collections import Counter
from collections.abc import Iterable, Sequence
from typing import Literal

Trend = Literal["increasing", "decreasing", "stable"]

# A half-over-half change inside this band is "stable"
TREND_BAND = 0.10


def mean(values: Sequence[float]) -> float:
    """Arithmetic mean, 0 for an empty series."""
    return sum(values) / len(values) if values else 0.0


def variance(values: Sequence[float]) -> float:
    """Population variance, 0 for an empty series."""
    if not values:
        return 0.0
    avg = mean(values)
    return sum((v - avg) ** 2 for v in values) / len(values)


def percentile_95(values: Iterable[float]) -> float:
    """95th percentile by sorted-array index ``ceil(n * 0.95) - 1``."""
    ordered = sorted(values)
    if not ordered:
        return 0.0
    return ordered[max(0, math.ceil(len(ordered) * 0.95) - 1)]


def classify_change(first: float, second: float, band: float = TREND_BAND) -> Trend:
    """Label the move from an older average to a recent one."""
    if second > first * (1 + band):
        return "increasing"
    if second < first * (1 - band):
        return "decreasing"
    return "stable"


def classify_trend(series: Sequence[float], band: float = TREND_BAND) -> Trend:
    """Compare the recent half of a chronological series with the older half."""
    if len(series) < 2:
        return "stable"
    middle = len(series) // 2
    return classify_change(mean(series[:middle]), mean(series[middle:]), band)


def top_counts(values: Iterable[str], limit: int) -> list[tuple[str, int]]:
    """The ``limit`` most frequent values with their counts, most frequent first."""
    return Counter(values).most_common(limit)


def percentage(part: float, whole: float) -> float:
    """``part`` as a percentage of ``whole``, 0 when ``whole`` is 0."""
    return part / whole * 100 if whole else 0.0
