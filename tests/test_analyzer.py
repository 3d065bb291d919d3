"""
Tests for the windowed trend calculator

Covers slope classification, volatility detection, short windows and the
zero-average policy.
"""

import math
from decimal import Decimal

import pytest

from epc_trends.analyzer import (
    MIN_DATA_POINTS,
    TrendCategory,
    WindowTrend,
    calculate_trend,
    classify,
    max_deviation,
)


def test_increasing_sequence_is_upward():
    result = calculate_trend([0, 1, 2, 3, 4, 5, 6])

    assert result.category == TrendCategory.UPWARD
    assert result.slope == pytest.approx(1.0)
    assert result.avg_epc == pytest.approx(3.0)


def test_decreasing_sequence_is_downward():
    result = calculate_trend([6, 5, 4, 3, 2, 1, 0])

    assert result.category == TrendCategory.DOWNWARD
    assert result.slope == pytest.approx(-1.0)


def test_flat_sequence_is_stable():
    result = calculate_trend([2, 2, 2, 2, 2, 2, 2])

    assert result.category == TrendCategory.STABLE
    assert result.slope == pytest.approx(0.0, abs=1e-12)
    assert result.avg_epc == pytest.approx(2.0)


def test_too_few_points_is_unknown():
    result = calculate_trend([1, 2])

    assert result == WindowTrend(slope=0.0, category=TrendCategory.UNKNOWN, avg_epc=1.5)


def test_empty_window_is_unknown_with_zero_average():
    result = calculate_trend([])

    assert result.category == TrendCategory.UNKNOWN
    assert result.slope == 0.0
    assert result.avg_epc == 0.0


def test_minimum_points_are_classified():
    result = calculate_trend([1.0] * MIN_DATA_POINTS)

    assert result.category == TrendCategory.STABLE


def test_oscillation_without_slope_is_volatile():
    result = calculate_trend([5, 0, 5, 0, 5, 0, 5])

    assert result.category == TrendCategory.VOLATILE
    assert result.slope == pytest.approx(0.0, abs=1e-12)
    assert result.avg_epc == pytest.approx(20 / 7)


def test_small_wiggle_stays_stable():
    # max deviation 0.3 / 10.2 ~ 3% < 10%
    result = calculate_trend([10, 10.5, 10, 10.5, 10])

    assert result.category == TrendCategory.STABLE


def test_wiggle_above_ten_percent_is_volatile():
    # max deviation 1.2 / 10.8 ~ 11% > 10%
    result = calculate_trend([10, 12, 10, 12, 10])

    assert result.category == TrendCategory.VOLATILE


def test_slope_wins_over_volatility():
    result = calculate_trend([0, 0, 0, 10, 10, 10, 10])

    assert result.category == TrendCategory.UPWARD


def test_same_input_same_result():
    values = [0.31, 0.28, 0.0, 0.45, 0.39, 0.41, 0.52, 0.0, 0.47, 0.5, 0.33, 0.36, 0.4, 0.44]

    first = calculate_trend(values)
    for _ in range(5):
        assert calculate_trend(list(values)) == first


def test_all_zero_window_is_stable():
    result = calculate_trend([0, 0, 0, 0, 0, 0, 0])

    assert result.category == TrendCategory.STABLE
    assert result.avg_epc == 0.0
    assert result.slope == pytest.approx(0.0, abs=1e-12)


def test_decimal_values_are_accepted():
    result = calculate_trend([Decimal("1.50"), Decimal("1.50"), Decimal("1.50")])

    assert result.category == TrendCategory.STABLE
    assert result.avg_epc == pytest.approx(1.5)


@pytest.mark.parametrize("values", [[1, -1, 2], [1, float("nan"), 2], [1, float("inf"), 2]])
def test_invalid_values_are_rejected(values):
    with pytest.raises(ValueError):
        calculate_trend(values)


def test_max_deviation_relative_to_mean():
    assert max_deviation([5, 0, 5], 10 / 3) == pytest.approx(1.0)


def test_max_deviation_with_zero_mean():
    assert max_deviation([0, 0, 0], 0.0) == 0.0
    assert math.isinf(max_deviation([0, 1], 0.0))
    assert max_deviation([], 0.0) == 0.0


@pytest.mark.parametrize(
    "slope, deviation, expected",
    [
        (0.0501, 0.0, TrendCategory.UPWARD),
        (0.05, 0.0, TrendCategory.STABLE),
        (-0.0501, 0.0, TrendCategory.DOWNWARD),
        (-0.05, 0.0, TrendCategory.STABLE),
        (0.0, 0.10, TrendCategory.STABLE),
        (0.0, 0.1001, TrendCategory.VOLATILE),
        (0.0, math.inf, TrendCategory.VOLATILE),
        (0.2, 5.0, TrendCategory.UPWARD),
    ],
)
def test_classify_thresholds(slope, deviation, expected):
    assert classify(slope, deviation) == expected
