from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Sequence, Union
import math
import numpy as np

Number = Union[int, float, Decimal]


class TrendCategory(str, Enum):
    UPWARD = "UPWARD"
    DOWNWARD = "DOWNWARD"
    STABLE = "STABLE"
    VOLATILE = "VOLATILE"
    UNKNOWN = "UNKNOWN"  # not enough data points


# classification policy
UPWARD_SLOPE = 0.05
DOWNWARD_SLOPE = -0.05
VOLATILITY_THRESHOLD = 0.10  # max relative deviation from the window mean
MIN_DATA_POINTS = 3


@dataclass(frozen=True)
class WindowTrend:
    slope: float
    category: TrendCategory
    avg_epc: float


def _as_array(values: Sequence[Number]) -> np.ndarray:
    arr = np.asarray([float(v) for v in values], dtype=float)
    if arr.size and not np.all(np.isfinite(arr)):
        raise ValueError("EPC values must be finite")
    if arr.size and (arr < 0).any():
        raise ValueError("EPC values must be non-negative")
    return arr


def max_deviation(values: Sequence[Number], avg: float) -> float:
    """
    Largest |v - avg| / avg over the window.

    A zero average has no relative scale: an all-zero window deviates by 0,
    any non-zero value against a zero mean counts as infinitely volatile.
    """
    arr = np.asarray([float(v) for v in values], dtype=float)
    if arr.size == 0:
        return 0.0
    if avg == 0:
        return 0.0 if not arr.any() else math.inf
    return float(np.max(np.abs(arr - avg) / avg))


def classify(slope: float, deviation: float) -> TrendCategory:
    if slope > UPWARD_SLOPE:
        return TrendCategory.UPWARD
    if slope < DOWNWARD_SLOPE:
        return TrendCategory.DOWNWARD
    if deviation > VOLATILITY_THRESHOLD:
        return TrendCategory.VOLATILE
    return TrendCategory.STABLE


def calculate_trend(values: Sequence[Number]) -> WindowTrend:
    """
    Slope, category and mean of one window of daily EPC values (oldest first).

    Missing days are expected as 0 so the day index stays aligned with the
    calendar. Fewer than MIN_DATA_POINTS values yields UNKNOWN with slope 0.
    """
    y = _as_array(values)
    n = len(y)

    if n < MIN_DATA_POINTS:
        avg = float(y.mean()) if n > 0 else 0.0
        return WindowTrend(slope=0.0, category=TrendCategory.UNKNOWN, avg_epc=avg)

    x = np.arange(n, dtype=float)
    slope = float(np.polyfit(x, y, 1)[0])
    avg = float(y.mean())

    return WindowTrend(
        slope=slope,
        category=classify(slope, max_deviation(y, avg)),
        avg_epc=avg,
    )
