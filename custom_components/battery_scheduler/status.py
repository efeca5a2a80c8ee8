"""Human readable text for the dashboard sensors."""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import datetime, time, timedelta

from .models import ChargingPeriod, ChargingSchema

NO_ACTIVITY_TEXT = "No battery activity planned today"


def format_scheduled_time(target: datetime, now: datetime) -> str:
    """
    Describe ``target`` relative to ``now``.

    Examples: ``now``, ``in 25m (19:55)``, ``in 2h 15m (19:55)``,
    ``in 14h (08:00)``, ``tomorrow at 02:30``, ``Feb 12 at 02:30``.
    """
    until = target - now
    clock = target.strftime("%H:%M")

    if until < timedelta(minutes=1):
        return "now"

    hours = until.total_seconds() / 3600
    if hours < 1:
        return f"in {math.ceil(until.total_seconds() / 60)}m ({clock})"
    if hours < 12:  # noqa: PLR2004
        whole_hours = int(hours)
        minutes = int(until.total_seconds() // 60 % 60)
        if minutes:
            return f"in {whole_hours}h {minutes}m ({clock})"
        return f"in {whole_hours}h ({clock})"
    if hours < 24:  # noqa: PLR2004
        return f"in {math.ceil(hours)}h ({clock})"

    if target.date() == now.date() + timedelta(days=1):
        return f"tomorrow at {clock}"
    return f"{target:%b %d} at {clock}"


def format_scheduled_action(
    action: str, target: datetime, now: datetime, context: str = ""
) -> str:
    """``"<action> scheduled <when> (<context>)"``."""
    suffix = f" ({context})" if context else ""
    return f"{action} scheduled {format_scheduled_time(target, now)}{suffix}"


def _at_today(period_time: time, now: datetime) -> datetime:
    return datetime.combine(now.date(), period_time, tzinfo=now.tzinfo)


def next_event_summary(schema: ChargingSchema | None, now: datetime) -> str:
    """Summarize the running or next period of today."""
    if schema is None:
        return NO_ACTIVITY_TEXT

    today = [
        p for p in schema.periods if p.is_valid and p.active_on(now.weekday())
    ]
    today.sort(key=lambda p: p.start_minute)
    current = now.time().replace(tzinfo=None)

    for period in today:
        if period.start <= current < period.end:
            action = "Charging" if period.is_charge else "Discharging"
            ends = format_scheduled_time(_at_today(period.end, now), now)
            return f"{action} now - ends {ends}"

    for period in today:
        if period.start > current:
            action = "Charging" if period.is_charge else "Discharging"
            starts = format_scheduled_time(_at_today(period.start, now), now)
            return f"Next: {action} {starts}"

    return NO_ACTIVITY_TEXT


def schedule_text(periods: Iterable[ChargingPeriod]) -> str | None:
    """``"HH:MM-HH:MM"`` from the first start to the last end, or None."""
    periods = list(periods)
    if not periods:
        return None
    start = min(p.start for p in periods)
    end = max(p.end for p in periods)
    return f"{start:%H:%M}-{end:%H:%M}"
