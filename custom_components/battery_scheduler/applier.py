"""
Apply a prepared schema to the battery.

Before writing, charge periods are trimmed to what the live SOC still
needs, and the write is skipped when the battery already holds an
identical schedule.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

import aiohttp

from .models import BatterySettings, ChargingPeriod, ChargingSchema
from .optimizer import required_charge_minutes
from .saj_api import SajApiError

if TYPE_CHECKING:
    from .saj_api import SajApiClient
    from .storage import ScheduleStore

_LOGGER = logging.getLogger(__name__)


class ApplyOutcome(StrEnum):
    """Result category of an apply attempt."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of an apply attempt plus the schema that was (or would be) sent."""

    outcome: ApplyOutcome
    reason: str
    schema: ChargingSchema | None = None


def _now_minute(now: datetime) -> int:
    return now.hour * 60 + now.minute


def _remaining_minutes(period: ChargingPeriod, now: datetime) -> int:
    """Minutes of ``period`` still ahead; periods not running today count fully."""
    if not period.active_on(now.weekday()):
        return max(0, period.duration_minutes)
    return max(0, period.end_minute - max(period.start_minute, _now_minute(now)))


def remaining_charge_minutes(schema: ChargingSchema, now: datetime) -> int:
    """Sum of charge minutes that have not elapsed yet."""
    return sum(_remaining_minutes(p, now) for p in schema.charge_periods)


def _trim_order(period: ChargingPeriod, now: datetime) -> tuple[int, int]:
    # Periods for a later day come after everything running today.
    later_day = 0 if period.active_on(now.weekday()) else 1
    return (later_day, period.start_minute)


def trim_charge_periods(
    schema: ChargingSchema, required_minutes: int, now: datetime
) -> tuple[ChargingSchema, str | None]:
    """
    Cut future charge time down to ``required_minutes``.

    Minutes are removed from the latest charge periods first: a period
    whose remaining time fits in the excess is dropped, the next one is
    shortened at its end. Returns the schema unchanged and None when
    nothing needs trimming.
    """
    remaining = remaining_charge_minutes(schema, now)
    required_minutes = max(0, required_minutes)
    if remaining <= required_minutes:
        return schema, None

    excess = remaining - required_minutes
    replacements: dict[int, ChargingPeriod | None] = {}
    candidates = sorted(
        (i for i, p in enumerate(schema.periods) if p.is_charge),
        key=lambda i: _trim_order(schema.periods[i], now),
        reverse=True,
    )

    for index in candidates:
        if excess <= 0:
            break
        period = schema.periods[index]
        available = _remaining_minutes(period, now)
        if available <= 0:
            continue
        if available <= excess:
            replacements[index] = None
            excess -= available
            _LOGGER.debug("Trim: dropping %s", period.describe())
        else:
            shortened = period.with_minutes(
                period.start_minute, period.end_minute - excess
            )
            replacements[index] = shortened
            _LOGGER.debug(
                "Trim: shortening %s to %s", period.describe(), shortened.describe()
            )
            excess = 0

    periods = [
        replacements.get(i, p)
        for i, p in enumerate(schema.periods)
        if replacements.get(i, p) is not None
    ]
    summary = (
        f"Charge trimmed from {remaining} to {required_minutes} minutes "
        f"(SOC based requirement)"
    )
    return schema.copy(periods=periods), summary


def order_for_gateway(periods: list[ChargingPeriod]) -> list[ChargingPeriod]:
    """Charge periods first, then discharge periods, each by start time."""
    return sorted(periods, key=lambda p: (0 if p.is_charge else 1, p.start_minute))


class ScheduleApplier:
    """Write schemas to the battery through the SAJ gateway."""

    def __init__(
        self,
        gateway: SajApiClient | None,
        store: ScheduleStore,
        settings: BatterySettings,
    ) -> None:
        """Initialize the applier."""
        self.gateway = gateway
        self.store = store
        self.settings = settings

    async def async_apply(
        self,
        schema: ChargingSchema,
        soc_percent: float,
        now: datetime,
        *,
        simulate_only: bool,
        schedule_retry: Callable[[], bool],
    ) -> ApplyResult:
        """
        Trim, deduplicate and write ``schema``.

        ``schedule_retry`` requests the shared 5-minute retry when the
        battery is in EMS mode; it returns False if one is already pending.
        """
        if not schema.periods:
            _LOGGER.warning("Refusing to apply an empty schema")
            return ApplyResult(ApplyOutcome.FAILED, "schema has no periods")

        if not simulate_only and self.gateway is not None:
            try:
                mode = await self.gateway.async_get_user_mode()
            except (SajApiError, aiohttp.ClientError, TimeoutError):
                _LOGGER.warning(
                    "Could not read battery mode, applying anyway", exc_info=True
                )
            else:
                if mode.is_ems:
                    scheduled = schedule_retry()
                    _LOGGER.info(
                        "Battery is in %s, apply deferred%s",
                        mode,
                        "" if scheduled else " (retry already pending)",
                    )
                    return ApplyResult(ApplyOutcome.SKIPPED, "deferred", schema)

        required = required_charge_minutes(soc_percent, self.settings)
        schema, summary = trim_charge_periods(schema, required, now)
        if summary:
            _LOGGER.info("%s", summary)
        if not schema.periods:
            return ApplyResult(
                ApplyOutcome.SKIPPED, "nothing left after trimming", schema
            )

        if not simulate_only and schema.is_equivalent_to(self.store.applied_schema):
            _LOGGER.info("Schedule unchanged, skipping battery write")
            return ApplyResult(ApplyOutcome.SKIPPED, "unchanged", schema)

        ordered = schema.copy(periods=order_for_gateway(schema.periods))

        if simulate_only:
            _LOGGER.info("Simulation: would apply %s", ordered.to_log_string())
            return ApplyResult(ApplyOutcome.APPLIED, "simulated", ordered)

        if self.gateway is None:
            return ApplyResult(ApplyOutcome.FAILED, "gateway not configured", ordered)

        try:
            success = await self.gateway.async_save_schedule(ordered.periods)
        except (SajApiError, aiohttp.ClientError, TimeoutError) as err:
            _LOGGER.error("Failed to apply schedule: %s", err)  # noqa: TRY400
            return ApplyResult(ApplyOutcome.FAILED, str(err), ordered)

        if not success:
            return ApplyResult(ApplyOutcome.FAILED, "rejected by battery", ordered)

        applied = ordered.copy(applied_at=now)
        await self.store.async_save_applied(applied)
        _LOGGER.info("Applied schedule: %s", applied.to_log_string())
        return ApplyResult(ApplyOutcome.APPLIED, "applied", applied)
