"""Data model for battery charge and discharge schedules."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, time
from enum import StrEnum
from typing import Any

from .const import (
    CONF_BATTERY_CAPACITY,
    CONF_CHARGE_POWER,
    CONF_DAILY_CONSUMPTION_SOC,
    CONF_DISCHARGE_POWER,
    CONF_EMS_PREP_MINUTES,
    CONF_EMS_RESTORE_MINUTES,
    CONF_EVENING_TARGET_SOC,
    CONF_EVENING_THRESHOLD,
    CONF_HIGH_SOC_THRESHOLD,
    CONF_MAX_INVERTER_POWER,
    CONF_MIN_CHARGE_BUFFER,
    CONF_MINIMUM_SOC,
    CONF_MORNING_CHECK_OFFSET,
    CONF_MORNING_SOC_THRESHOLD,
    CONF_MORNING_WINDOW_END,
    CONF_MORNING_WINDOW_START,
    CONF_SIMULATION_MODE,
    DEFAULT_OPTIONS,
)

PriceSeries = dict[datetime, float]

MINUTES_PER_DAY = 24 * 60
LAST_MINUTE_OF_DAY = MINUTES_PER_DAY - 1
ALL_WEEKDAYS: tuple[bool, ...] = (True,) * 7


class ChargeType(StrEnum):
    """Direction of a scheduled battery period."""

    CHARGE = "charge"
    DISCHARGE = "discharge"


def time_to_minutes(value: time) -> int:
    """Return the minute of the day for a time-of-day."""
    return value.hour * 60 + value.minute


def minutes_to_time(minutes: int) -> time:
    """Convert a minute of the day back to a time, clamped to the day."""
    minutes = max(0, min(LAST_MINUTE_OF_DAY, minutes))
    return time(minutes // 60, minutes % 60)


def single_weekday(weekday: int) -> tuple[bool, ...]:
    """Return a mask with only ``weekday`` (Monday=0) active."""
    return tuple(day == weekday for day in range(7))


@dataclass(frozen=True)
class ChargingPeriod:
    """
    A single charge or discharge period of the battery schedule.

    Attributes:
        charge_type: Charge or discharge.
        start: Start time-of-day (minute resolution).
        end: End time-of-day, exclusive.
        power_w: Charge or discharge power in watts.
        weekdays: Seven flags, Monday first, marking the active days.

    """

    charge_type: ChargeType
    start: time
    end: time
    power_w: int
    weekdays: tuple[bool, ...] = ALL_WEEKDAYS

    @property
    def start_minute(self) -> int:
        """Minute of the day the period starts."""
        return time_to_minutes(self.start)

    @property
    def end_minute(self) -> int:
        """Minute of the day the period ends."""
        return time_to_minutes(self.end)

    @property
    def duration_minutes(self) -> int:
        """Length of the period in minutes (negative when inverted)."""
        return self.end_minute - self.start_minute

    @property
    def is_valid(self) -> bool:
        """Return True if the period has a positive length and an active day."""
        return self.duration_minutes > 0 and any(self.weekdays)

    @property
    def is_charge(self) -> bool:
        """Return True for charge periods."""
        return self.charge_type is ChargeType.CHARGE

    @property
    def weekday_mask(self) -> str:
        """Weekday flags as the comma separated 0/1 string the gateway expects."""
        return ",".join("1" if active else "0" for active in self.weekdays)

    def active_on(self, weekday: int) -> bool:
        """Return True if the period runs on ``weekday`` (Monday=0)."""
        return self.weekdays[weekday]

    def with_minutes(self, start_minute: int, end_minute: int) -> ChargingPeriod:
        """Return a copy with new start and end minutes."""
        return replace(
            self,
            start=minutes_to_time(start_minute),
            end=minutes_to_time(end_minute),
        )

    def to_api_format(self) -> str:
        """Serialize as ``HH:MM|HH:MM|power_mask``."""
        return (
            f"{self.start:%H:%M}|{self.end:%H:%M}|{self.power_w}_{self.weekday_mask}"
        )

    def describe(self) -> str:
        """Short human readable description used in logs."""
        return (
            f"{self.charge_type.value.capitalize()} "
            f"{self.start:%H:%M}-{self.end:%H:%M} @ {self.power_w}W"
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dict for persistence."""
        return {
            "type": self.charge_type.value,
            "start": self.start.strftime("%H:%M"),
            "end": self.end.strftime("%H:%M"),
            "power_w": self.power_w,
            "weekdays": [int(day) for day in self.weekdays],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ChargingPeriod:
        """Deserialize from a dict."""
        weekdays = data.get("weekdays")
        return cls(
            charge_type=ChargeType(data["type"]),
            start=time.fromisoformat(data["start"]),
            end=time.fromisoformat(data["end"]),
            power_w=int(data["power_w"]),
            weekdays=tuple(bool(d) for d in weekdays) if weekdays else ALL_WEEKDAYS,
        )


def _period_key(period: ChargingPeriod) -> tuple[int, int, str, int, str]:
    return (
        period.start_minute,
        period.end_minute,
        period.charge_type.value,
        period.power_w,
        period.weekday_mask,
    )


@dataclass
class ChargingSchema:
    """An ordered collection of periods plus bookkeeping metadata."""

    periods: list[ChargingPeriod] = field(default_factory=list)
    created_at: datetime | None = None
    applied_at: datetime | None = None
    source: str = "unknown"

    @property
    def charge_periods(self) -> list[ChargingPeriod]:
        """Charge periods ordered by start time."""
        return sorted(
            (p for p in self.periods if p.is_charge), key=lambda p: p.start_minute
        )

    @property
    def discharge_periods(self) -> list[ChargingPeriod]:
        """Discharge periods ordered by start time."""
        return sorted(
            (p for p in self.periods if not p.is_charge), key=lambda p: p.start_minute
        )

    def is_equivalent_to(self, other: ChargingSchema | None) -> bool:
        """
        Compare periods field by field, ignoring their order.

        Only type, start, end, power and weekdays matter; metadata such as
        ``created_at`` or ``source`` never makes two schemas different.
        """
        if other is None or len(self.periods) != len(other.periods):
            return False
        return sorted(map(_period_key, self.periods)) == sorted(
            map(_period_key, other.periods)
        )

    def copy(self, **changes: Any) -> ChargingSchema:
        """Return a shallow copy with its own period list."""
        changes.setdefault("periods", list(self.periods))
        return replace(self, **changes)

    def to_log_string(self) -> str:
        """Describe all periods in start order."""
        ordered = sorted(self.periods, key=lambda p: p.start_minute)
        return ", ".join(p.describe() for p in ordered) or "no periods"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dict for persistence."""
        return {
            "periods": [p.to_dict() for p in self.periods],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ChargingSchema:
        """Deserialize from a dict."""
        created = data.get("created_at")
        applied = data.get("applied_at")
        return cls(
            periods=[ChargingPeriod.from_dict(p) for p in data.get("periods", [])],
            created_at=datetime.fromisoformat(created) if created else None,
            applied_at=datetime.fromisoformat(applied) if applied else None,
            source=data.get("source", "unknown"),
        )


@dataclass(frozen=True)
class BatteryState:
    """Live battery readings, never persisted with a schema."""

    soc_percent: float
    capacity_wh: int
    max_inverter_power_w: int


@dataclass(frozen=True)
class EmsWindow:
    """Absolute time span during which the EMS must be switched off."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class BatterySettings:
    """Battery capabilities and scheduling tunables."""

    ems_prep_minutes: int = 5
    ems_restore_minutes: int = 1
    morning_check_offset_hours: int = 2
    morning_window_start_hour: int = 6
    morning_window_end_hour: int = 12
    evening_threshold_hour: int = 17
    max_inverter_power_w: int = 8000
    capacity_wh: int = 25000
    charge_power_w: int = 8000
    discharge_power_w: int = 8000
    min_charge_buffer_minutes: int = 10
    morning_soc_threshold: float = 40.0
    high_soc_threshold: float = 70.0
    minimum_soc: float = 10.0
    evening_target_soc: float = 30.0
    daily_consumption_soc: float = 15.0
    simulation_mode: bool = False

    @property
    def effective_charge_power_w(self) -> int:
        """Charge power clamped to the inverter capability."""
        return min(self.charge_power_w, self.max_inverter_power_w)

    @property
    def effective_discharge_power_w(self) -> int:
        """Discharge power clamped to the inverter capability."""
        return min(self.discharge_power_w, self.max_inverter_power_w)

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> BatterySettings:
        """Build settings from config entry options, falling back to defaults."""
        merged = {**DEFAULT_OPTIONS, **options}
        return cls(
            ems_prep_minutes=int(merged[CONF_EMS_PREP_MINUTES]),
            ems_restore_minutes=int(merged[CONF_EMS_RESTORE_MINUTES]),
            morning_check_offset_hours=int(merged[CONF_MORNING_CHECK_OFFSET]),
            morning_window_start_hour=int(merged[CONF_MORNING_WINDOW_START]),
            morning_window_end_hour=int(merged[CONF_MORNING_WINDOW_END]),
            evening_threshold_hour=int(merged[CONF_EVENING_THRESHOLD]),
            max_inverter_power_w=int(merged[CONF_MAX_INVERTER_POWER]),
            capacity_wh=int(merged[CONF_BATTERY_CAPACITY]),
            charge_power_w=int(merged[CONF_CHARGE_POWER]),
            discharge_power_w=int(merged[CONF_DISCHARGE_POWER]),
            min_charge_buffer_minutes=int(merged[CONF_MIN_CHARGE_BUFFER]),
            morning_soc_threshold=float(merged[CONF_MORNING_SOC_THRESHOLD]),
            high_soc_threshold=float(merged[CONF_HIGH_SOC_THRESHOLD]),
            minimum_soc=float(merged[CONF_MINIMUM_SOC]),
            evening_target_soc=float(merged[CONF_EVENING_TARGET_SOC]),
            daily_consumption_soc=float(merged[CONF_DAILY_CONSUMPTION_SOC]),
            simulation_mode=bool(merged[CONF_SIMULATION_MODE]),
        )
