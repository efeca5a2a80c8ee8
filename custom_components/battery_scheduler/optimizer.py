"""
Cross-day charge window optimization.

By default the battery charges in today's cheapest three hours and
discharges in the most expensive remaining hour. With a well charged
battery and tomorrow's prices published, charging can instead be moved
to a cheaper window later today or tomorrow, provided the battery can
bridge the gap without dropping below its minimum SOC.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime

from .const import (
    BASELINE_CHARGE_HOURS,
    CROSS_DAY_DISCHARGE_PREMIUM,
    CROSS_DAY_MIN_SAVINGS,
    DISCHARGE_WINDOW_HOURS,
)
from .models import BatterySettings, PriceSeries
from .price_window import (
    future_prices,
    highest_window,
    lowest_window,
    window_average,
)

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChargeWindowPlan:
    """Chosen charge and discharge windows for the day."""

    charge_start: datetime
    charge_end: datetime
    discharge_start: datetime
    discharge_end: datetime
    cross_day: bool = False
    reason: str = ""


def required_charge_minutes(soc_percent: float, settings: BatterySettings) -> int:
    """
    Minutes needed to charge from ``soc_percent`` to full at max inverter power.

    A battery that is not full always gets at least the configured
    minimum buffer so rounding never trims away a small top-up.
    """
    missing = min(1.0, max(0.0, (100.0 - soc_percent) / 100.0))
    hours = settings.capacity_wh * missing / max(1, settings.max_inverter_power_w)
    minutes = math.ceil(round(hours * 60.0, 6))
    if missing > 0 and minutes < settings.min_charge_buffer_minutes:
        minutes = settings.min_charge_buffer_minutes
    return minutes


def projected_soc(
    soc_percent: float,
    charge_start: datetime,
    now: datetime,
    settings: BatterySettings,
) -> float:
    """
    Estimate the SOC left when charging starts.

    Linear consumption model: the battery loses the configured daily
    consumption share spread evenly over 24 hours. This is a coarse
    approximation, not a measured forecast.
    """
    hours_until_charge = max(0.0, (charge_start - now).total_seconds() / 3600)
    return soc_percent - hours_until_charge / 24 * settings.daily_consumption_soc


def bridging_feasible(
    soc_percent: float,
    charge_start: datetime,
    now: datetime,
    settings: BatterySettings,
) -> bool:
    """Return True if the battery stays above minimum SOC until ``charge_start``."""
    return (
        projected_soc(soc_percent, charge_start, now, settings) >= settings.minimum_soc
    )


def optimize_charge_window(
    prices_today: PriceSeries,
    prices_tomorrow: PriceSeries | None,
    soc_percent: float,
    now: datetime,
    settings: BatterySettings,
) -> ChargeWindowPlan:
    """Pick today's charge and discharge windows, possibly across midnight."""
    charge_start, charge_end = lowest_window(prices_today, BASELINE_CHARGE_HOURS)
    upcoming_today = future_prices(prices_today, now)
    discharge_start, discharge_end = highest_window(
        upcoming_today or prices_today, DISCHARGE_WINDOW_HOURS
    )
    baseline = ChargeWindowPlan(
        charge_start=charge_start,
        charge_end=charge_end,
        discharge_start=discharge_start,
        discharge_end=discharge_end,
        reason="cheapest 3h window today",
    )

    if soc_percent <= settings.high_soc_threshold:
        return baseline

    if not prices_tomorrow:
        return replace(baseline, reason="no prices for tomorrow yet")

    required = required_charge_minutes(soc_percent, settings)
    if required <= 0:
        return replace(baseline, reason="battery full")

    combined: PriceSeries = {**upcoming_today, **prices_tomorrow}
    duration_hours = required / 60
    cross_start, cross_end = lowest_window(combined, duration_hours)
    today_start, today_end = lowest_window(prices_today, duration_hours)
    today_avg = window_average(prices_today, today_start, today_end)
    cross_avg = window_average(combined, cross_start, cross_end)

    if today_avg is None or cross_avg is None or today_avg <= 0:
        _LOGGER.info("Cross-day optimization skipped: no comparable price average")
        return replace(baseline, reason="no comparable price average")

    savings = (today_avg - cross_avg) / today_avg
    if savings <= CROSS_DAY_MIN_SAVINGS:
        _LOGGER.info(
            "Cross-day window %s rejected: savings %.1f%% <= %.0f%%",
            cross_start.isoformat(),
            savings * 100,
            CROSS_DAY_MIN_SAVINGS * 100,
        )
        return replace(baseline, reason=f"savings {savings:.1%} too small")

    projected = projected_soc(soc_percent, cross_start, now, settings)
    if projected < settings.minimum_soc:
        _LOGGER.info(
            "Cross-day window %s rejected: projected SOC %.1f%% < minimum %.1f%%",
            cross_start.isoformat(),
            projected,
            settings.minimum_soc,
        )
        return replace(baseline, reason=f"projected SOC {projected:.1f}% too low")

    candidates = {
        ts: price
        for ts, price in future_prices(combined, now).items()
        if price > cross_avg * CROSS_DAY_DISCHARGE_PREMIUM
    }
    if candidates:
        discharge_start, discharge_end = highest_window(
            candidates, DISCHARGE_WINDOW_HOURS
        )

    _LOGGER.info(
        "Cross-day charge window %s-%s accepted (savings %.1f%%, projected SOC %.1f%%)",
        cross_start.isoformat(),
        cross_end.isoformat(),
        savings * 100,
        projected,
    )
    return ChargeWindowPlan(
        charge_start=cross_start,
        charge_end=cross_end,
        discharge_start=discharge_start,
        discharge_end=discharge_end,
        cross_day=True,
        reason=f"cross-day window saves {savings:.1%}",
    )
