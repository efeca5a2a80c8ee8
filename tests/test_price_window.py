"""Tests for price window selection."""

from __future__ import annotations

import math
import random
from datetime import datetime, timedelta, timezone

import pytest

from custom_components.battery_scheduler.price_window import (
    InvalidPriceDataError,
    future_prices,
    highest_window,
    lowest_window,
    slot_interval,
    window_average,
)

TZ = timezone(timedelta(hours=1))
DAY = datetime(2026, 2, 9, 0, 0, tzinfo=TZ)


def _hourly(prices: dict[int, float], base: float = 0.30) -> dict[datetime, float]:
    return {DAY + timedelta(hours=h): prices.get(h, base) for h in range(24)}


def test_lowest_window_three_hours() -> None:
    """The cheapest three consecutive hours are chosen."""
    series = _hourly({1: 0.10, 2: 0.11, 3: 0.12, 14: 0.05})

    start, end = lowest_window(series, 3)

    assert start == DAY + timedelta(hours=1)
    assert end == DAY + timedelta(hours=4)


def test_highest_window_prefers_earliest_on_tie() -> None:
    """Equal peaks resolve to the earliest window."""
    series = _hourly({8: 0.50, 19: 0.50})

    start, end = highest_window(series, 1)

    assert start == DAY + timedelta(hours=8)
    assert end == DAY + timedelta(hours=9)


def test_sub_hour_duration_uses_single_interval() -> None:
    """Durations below one hour pick one interval and keep the exact length."""
    series = _hourly({6: 0.05})

    start, end = lowest_window(series, 0.5)

    assert start == DAY + timedelta(hours=6)
    assert end == DAY + timedelta(hours=6, minutes=30)


def test_fractional_duration_ends_at_exact_length() -> None:
    """A 1.5h window covers two hourly intervals but ends after 90 minutes."""
    series = _hourly({10: 0.05, 11: 0.06})

    start, end = lowest_window(series, 1.5)

    assert start == DAY + timedelta(hours=10)
    assert end == DAY + timedelta(hours=11, minutes=30)


def test_quarter_hour_series() -> None:
    """Quarter-hour prices are detected and one hour spans four intervals."""
    series = {DAY + timedelta(minutes=15 * i): 0.30 for i in range(96)}
    for i in range(8, 12):
        series[DAY + timedelta(minutes=15 * i)] = 0.10

    assert slot_interval(series) == timedelta(minutes=15)
    start, end = lowest_window(series, 1)

    assert start == DAY + timedelta(hours=2)
    assert end == DAY + timedelta(hours=3)


def test_window_longer_than_series_returns_full_span() -> None:
    """A duration beyond the available data spans the whole series."""
    series = {DAY + timedelta(hours=h): 0.2 for h in (20, 21)}

    start, end = lowest_window(series, 3)

    assert start == DAY + timedelta(hours=20)
    assert end == DAY + timedelta(hours=22)


def test_single_point_defaults_to_hourly_interval() -> None:
    """A single price point is treated as one hour long."""
    series = {DAY + timedelta(hours=5): 0.2}

    assert slot_interval(series) == timedelta(hours=1)
    assert highest_window(series, 1) == (
        DAY + timedelta(hours=5),
        DAY + timedelta(hours=6),
    )


@pytest.mark.parametrize(
    ("series", "duration"),
    [
        ({}, 1.0),
        (None, 1.0),
        ({DAY: 0.1, DAY + timedelta(hours=1): 0.2}, 0),
        ({DAY: 0.1, DAY + timedelta(hours=1): 0.2}, -1),
    ],
)
def test_invalid_input_raises(series: dict | None, duration: float) -> None:
    """Empty series and non-positive durations are rejected."""
    with pytest.raises(InvalidPriceDataError):
        lowest_window(series, duration)


def test_window_average_and_future_prices() -> None:
    """Averages cover intervals starting inside the window; elapsed ones drop."""
    series = _hourly({1: 0.10, 2: 0.20, 3: 0.30})

    average = window_average(
        series, DAY + timedelta(hours=1), DAY + timedelta(hours=4)
    )
    assert average == pytest.approx(0.20)
    assert window_average(series, DAY - timedelta(hours=2), DAY) is None

    now = DAY + timedelta(hours=2, minutes=30)
    upcoming = future_prices(series, now)
    assert min(upcoming) == DAY + timedelta(hours=2)
    assert len(upcoming) == 22


def _random_series(
    seed: int, interval_minutes: int, points: int
) -> dict[datetime, float]:
    rng = random.Random(seed)
    return {
        DAY + timedelta(minutes=interval_minutes * i): round(rng.uniform(0.05, 0.45), 3)
        for i in range(points)
    }


def _brute_force_start(
    series: dict[datetime, float], slots: int, *, lowest: bool
) -> tuple[datetime, float]:
    """Earliest start of the best window of ``slots`` consecutive intervals."""
    ordered = sorted(series.items())
    sums = [
        (sum(price for _, price in ordered[i : i + slots]), ordered[i][0])
        for i in range(len(ordered) - slots + 1)
    ]
    best = min(s for s, _ in sums) if lowest else max(s for s, _ in sums)
    return next(start for s, start in sums if s == best), best


@pytest.mark.parametrize("seed", [1, 7, 42])
@pytest.mark.parametrize(
    ("interval_minutes", "points", "duration"),
    [
        (60, 24, 1.0),
        (60, 24, 2.5),
        (60, 24, 95 / 60),
        (15, 96, 1.0),
        (15, 96, 2.25),
        (15, 96, 3.1),
    ],
)
def test_windows_match_brute_force(
    seed: int, interval_minutes: int, points: int, duration: float
) -> None:
    """No other window of the same length is cheaper or more expensive."""
    series = _random_series(seed, interval_minutes, points)
    slots = math.ceil(round(duration * 60 / interval_minutes, 6))
    length = timedelta(minutes=math.ceil(round(duration * 60, 6)))

    for search, lowest in ((lowest_window, True), (highest_window, False)):
        start, end = search(series, duration)
        expected_start, best_sum = _brute_force_start(series, slots, lowest=lowest)

        assert start == expected_start
        assert end == start + length
        chosen = [price for ts, price in sorted(series.items()) if ts >= start][:slots]
        assert sum(chosen) == best_sum


@pytest.mark.parametrize("seed", [3, 11])
def test_short_window_picks_extreme_interval(seed: int) -> None:
    """Below one hour a single interval with the extreme price is chosen."""
    series = _random_series(seed, 15, 96)
    cheapest = min(series.items(), key=lambda item: (item[1], item[0]))[0]
    dearest = min(series.items(), key=lambda item: (-item[1], item[0]))[0]

    assert lowest_window(series, 0.5) == (cheapest, cheapest + timedelta(minutes=30))
    assert highest_window(series, 0.5) == (dearest, dearest + timedelta(minutes=30))
