"""
Daily schedule construction (3-checkpoint strategy).

1. Morning discharge: with enough SOC, sell the most expensive morning
   hour before the charge window starts.
2. Charge: always charge in the window picked by the optimizer.
3. Evening discharge: sized by how far SOC is above the evening target.
   Shortly before it starts, the evening shift check may move it to
   tomorrow morning when that peak pays more.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from .const import (
    EVENING_CHECK_LEAD_MINUTES,
    MAX_DISCHARGE_HOURS,
    MIN_DISCHARGE_HOURS,
    MIN_PRICE_POINTS,
    MORNING_DISCHARGE_HOURS,
)
from .models import (
    ALL_WEEKDAYS,
    LAST_MINUTE_OF_DAY,
    BatterySettings,
    ChargeType,
    ChargingPeriod,
    ChargingSchema,
    PriceSeries,
    minutes_to_time,
    single_weekday,
)
from .optimizer import ChargeWindowPlan, optimize_charge_window
from .overlap import resolve_overlaps

_LOGGER = logging.getLogger(__name__)


class InsufficientPriceDataError(Exception):
    """Raised when there are too few prices to build a schedule."""


@dataclass(frozen=True)
class DailyPlan:
    """A built schema plus the moment the evening shift should be evaluated."""

    schema: ChargingSchema
    window_plan: ChargeWindowPlan
    evening_check_at: datetime | None


@dataclass(frozen=True)
class EveningShiftDecision:
    """Outcome of comparing tonight's peak with tomorrow morning's peak."""

    shift: bool
    evening_peak: datetime
    evening_price: float
    morning_peak: datetime
    morning_price: float


def discharge_duration_hours(soc_percent: float, settings: BatterySettings) -> float:
    """Hours needed to discharge down to the evening target SOC."""
    if soc_percent <= settings.evening_target_soc:
        return 0.0
    hours = (
        (soc_percent - settings.evening_target_soc)
        / 100
        * settings.capacity_wh
        / max(1, settings.effective_discharge_power_w)
    )
    return min(MAX_DISCHARGE_HOURS, max(MIN_DISCHARGE_HOURS, hours))


def periods_for_window(
    charge_type: ChargeType,
    start: datetime,
    end: datetime,
    power_w: int,
    today: date,
) -> list[ChargingPeriod]:
    """
    Convert an absolute window into time-of-day periods.

    A window crossing midnight is split per day. Periods on ``today`` run
    every day; periods on a later date only run on that weekday.
    """
    periods: list[ChargingPeriod] = []
    cursor = start
    while cursor < end:
        next_midnight = datetime.combine(
            cursor.date() + timedelta(days=1), time(), tzinfo=cursor.tzinfo
        )
        segment_end = min(end, next_midnight)
        start_minute = cursor.hour * 60 + cursor.minute
        end_minute = (
            LAST_MINUTE_OF_DAY
            if segment_end == next_midnight
            else segment_end.hour * 60 + segment_end.minute
        )
        weekdays = (
            ALL_WEEKDAYS
            if cursor.date() <= today
            else single_weekday(cursor.weekday())
        )
        period = ChargingPeriod(
            charge_type=charge_type,
            start=minutes_to_time(start_minute),
            end=minutes_to_time(end_minute),
            power_w=power_w,
            weekdays=weekdays,
        )
        if period.is_valid:
            periods.append(period)
        cursor = segment_end
    return periods


def _peak(series: PriceSeries) -> tuple[datetime, float]:
    """Highest price, earliest timestamp on ties."""
    return max(series.items(), key=lambda item: (item[1], -item[0].timestamp()))


def _morning_discharge(
    prices_today: PriceSeries,
    plan: ChargeWindowPlan,
    soc_percent: float,
    now: datetime,
    settings: BatterySettings,
) -> list[ChargingPeriod]:
    """Checkpoint 1: discharge at the morning peak before charging starts."""
    window_start = time(settings.morning_window_start_hour)
    morning_check = plan.charge_start - timedelta(
        hours=settings.morning_check_offset_hours
    )
    if not (
        soc_percent > settings.morning_soc_threshold
        and morning_check.time() > window_start
        and now < plan.charge_start
    ):
        return []

    charge_time = plan.charge_start.time()
    morning_prices = {
        ts: price
        for ts, price in prices_today.items()
        if window_start <= ts.time() < charge_time
    }
    if not morning_prices:
        return []

    peak, price = _peak(morning_prices)
    end = peak + timedelta(hours=MORNING_DISCHARGE_HOURS)
    if now >= end:
        return []

    start = max(peak, now.replace(second=0, microsecond=0))
    _LOGGER.debug(
        "Morning discharge at %s (SOC %.1f%% > %.1f%%, price %.3f)",
        start.strftime("%H:%M"),
        soc_percent,
        settings.morning_soc_threshold,
        price,
    )
    return periods_for_window(
        ChargeType.DISCHARGE,
        start,
        end,
        settings.effective_discharge_power_w,
        now.date(),
    )


def build_daily_plan(
    prices_today: PriceSeries | None,
    prices_tomorrow: PriceSeries | None,
    soc_percent: float,
    now: datetime,
    settings: BatterySettings,
) -> DailyPlan:
    """Build today's schema and the time of the evening shift check."""
    if not prices_today or len(prices_today) < MIN_PRICE_POINTS:
        count = len(prices_today) if prices_today else 0
        msg = f"Need at least {MIN_PRICE_POINTS} prices for today, got {count}"
        raise InsufficientPriceDataError(msg)

    plan = optimize_charge_window(
        prices_today, prices_tomorrow, soc_percent, now, settings
    )
    today = now.date()

    periods = _morning_discharge(prices_today, plan, soc_percent, now, settings)
    periods.extend(
        periods_for_window(
            ChargeType.CHARGE,
            plan.charge_start,
            plan.charge_end,
            settings.effective_charge_power_w,
            today,
        )
    )

    discharge_hours = discharge_duration_hours(soc_percent, settings)
    if discharge_hours > 0:
        periods.extend(
            periods_for_window(
                ChargeType.DISCHARGE,
                plan.discharge_start,
                plan.discharge_start + timedelta(hours=discharge_hours),
                settings.effective_discharge_power_w,
                today,
            )
        )
    else:
        _LOGGER.debug(
            "No evening discharge: SOC %.1f%% <= target %.1f%%",
            soc_percent,
            settings.evening_target_soc,
        )

    schema = ChargingSchema(
        periods=resolve_overlaps(periods),
        created_at=now,
        source="cross_day" if plan.cross_day else "daily",
    )
    _LOGGER.debug("Built schema (%s): %s", plan.reason, schema.to_log_string())

    return DailyPlan(
        schema=schema,
        window_plan=plan,
        evening_check_at=plan.discharge_start
        - timedelta(minutes=EVENING_CHECK_LEAD_MINUTES),
    )


def build_daily_schema(
    prices_today: PriceSeries | None,
    prices_tomorrow: PriceSeries | None,
    soc_percent: float,
    now: datetime,
    settings: BatterySettings,
) -> ChargingSchema:
    """Build today's schema from the three checkpoints."""
    return build_daily_plan(
        prices_today, prices_tomorrow, soc_percent, now, settings
    ).schema


def evaluate_evening_shift(
    prices_today: PriceSeries | None,
    prices_tomorrow: PriceSeries | None,
    settings: BatterySettings,
) -> EveningShiftDecision | None:
    """
    Compare tonight's peak price with tomorrow morning's peak price.

    Returns None when either side has no prices. ``shift`` is True only
    when tomorrow morning is strictly more expensive.
    """
    if not prices_today or not prices_tomorrow:
        return None

    evening = {
        ts: price
        for ts, price in prices_today.items()
        if ts.hour >= settings.evening_threshold_hour
    }
    morning = {
        ts: price
        for ts, price in prices_tomorrow.items()
        if settings.morning_window_start_hour
        <= ts.hour
        < settings.morning_window_end_hour
    }
    if not evening or not morning:
        return None

    evening_peak, evening_price = _peak(evening)
    morning_peak, morning_price = _peak(morning)
    return EveningShiftDecision(
        shift=morning_price > evening_price,
        evening_peak=evening_peak,
        evening_price=evening_price,
        morning_peak=morning_peak,
        morning_price=morning_price,
    )


def drop_evening_discharges(
    schema: ChargingSchema, evening_threshold_hour: int
) -> ChargingSchema:
    """Remove discharge periods starting at or after the evening threshold."""
    keep = [
        p
        for p in schema.periods
        if p.is_charge or p.start.hour < evening_threshold_hour
    ]
    return schema.copy(periods=keep)


def morning_discharge_schema(
    peak: datetime, settings: BatterySettings, now: datetime
) -> ChargingSchema:
    """One-off schema holding a single one hour discharge at ``peak``."""
    return ChargingSchema(
        periods=periods_for_window(
            ChargeType.DISCHARGE,
            peak,
            peak + timedelta(hours=MORNING_DISCHARGE_HOURS),
            settings.effective_discharge_power_w,
            peak.date(),
        ),
        created_at=now,
        source="morning_discharge",
    )
