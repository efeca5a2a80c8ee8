"""
Price window selection over a price series.

A price series maps the start of each price interval (usually one hour,
sometimes 15 minutes) to its price. The helpers here find the contiguous
window with the lowest or highest summed price for a requested duration.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta

from .models import PriceSeries

DEFAULT_INTERVAL = timedelta(hours=1)


class InvalidPriceDataError(ValueError):
    """Raised for an empty price series or a non-positive window duration."""


def slot_interval(series: PriceSeries) -> timedelta:
    """Return the interval length of a series (smallest gap between points)."""
    ordered = sorted(series)
    gaps = [b - a for a, b in zip(ordered, ordered[1:], strict=False) if b > a]
    return min(gaps) if gaps else DEFAULT_INTERVAL


def _duration_minutes(duration_hours: float) -> int:
    # Rounding first keeps 95/60 h from becoming 96 minutes.
    return math.ceil(round(duration_hours * 60, 6))


def _validated(series: PriceSeries | None, duration_hours: float) -> PriceSeries:
    if not series:
        msg = "Price series is empty"
        raise InvalidPriceDataError(msg)
    if duration_hours <= 0:
        msg = f"Window duration must be positive, got {duration_hours}h"
        raise InvalidPriceDataError(msg)
    return series


def _extreme_window(
    series: PriceSeries | None, duration_hours: float, *, lowest: bool
) -> tuple[datetime, datetime]:
    """Shared implementation of the lowest and highest window search."""
    series = _validated(series, duration_hours)
    ordered = sorted(series.items())
    interval = slot_interval(series)
    duration = timedelta(minutes=_duration_minutes(duration_hours))
    sign = 1 if lowest else -1

    if duration_hours < 1:
        # Single interval; ties go to the earliest timestamp.
        start, _ = min(ordered, key=lambda item: (sign * item[1], item[0]))
        return start, start + duration

    slots_needed = math.ceil(round(duration / interval, 6))
    if slots_needed >= len(ordered):
        return ordered[0][0], ordered[-1][0] + interval

    best_start = ordered[0][0]
    best_sum: float | None = None
    for i in range(len(ordered) - slots_needed + 1):
        window_sum = sum(price for _, price in ordered[i : i + slots_needed])
        if best_sum is None or sign * window_sum < sign * best_sum:
            best_sum = window_sum
            best_start = ordered[i][0]

    return best_start, best_start + duration


def lowest_window(
    series: PriceSeries | None, duration_hours: float
) -> tuple[datetime, datetime]:
    """Find the cheapest contiguous window of ``duration_hours``."""
    return _extreme_window(series, duration_hours, lowest=True)


def highest_window(
    series: PriceSeries | None, duration_hours: float
) -> tuple[datetime, datetime]:
    """Find the most expensive contiguous window of ``duration_hours``."""
    return _extreme_window(series, duration_hours, lowest=False)


def window_average(series: PriceSeries, start: datetime, end: datetime) -> float | None:
    """Average price of the intervals starting inside ``[start, end)``."""
    prices = [price for ts, price in series.items() if start <= ts < end]
    if not prices:
        return None
    return sum(prices) / len(prices)


def future_prices(series: PriceSeries, now: datetime) -> PriceSeries:
    """Keep the intervals that have not fully elapsed at ``now``."""
    interval = slot_interval(series) if series else DEFAULT_INTERVAL
    return {ts: price for ts, price in series.items() if ts + interval > now}
