"""EMS window derivation, retry scheduling and EMS switch control."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from homeassistant.const import STATE_OFF, STATE_ON, STATE_UNAVAILABLE, STATE_UNKNOWN
from homeassistant.core import CALLBACK_TYPE, HomeAssistant, callback
from homeassistant.helpers.event import async_track_point_in_time

from .const import (
    EMS_SETTLE_SECONDS,
    EMS_WINDOW_MERGE_GAP_MINUTES,
    RETRY_BOUNDARY_MINUTES,
)
from .models import ChargingPeriod, ChargingSchema, EmsWindow

if TYPE_CHECKING:
    from .saj_api import SajApiClient

_LOGGER = logging.getLogger(__name__)

BLOCK_NOT_CONFIGURED = "Mode unknown (API not configured)"
BLOCK_EMS_MODE = "EMS Mode active"
BLOCK_MODE_UNKNOWN = "Mode unknown"
BLOCK_QUERY_FAILED = "Mode unknown (query failed)"


def round_up_to_next_five_minutes(moment: datetime) -> datetime:
    """Return the next 5-minute clock boundary strictly after ``moment``."""
    truncated = moment.replace(second=0, microsecond=0)
    step = RETRY_BOUNDARY_MINUTES - truncated.minute % RETRY_BOUNDARY_MINUTES
    return truncated + timedelta(minutes=step)


def _anchor_date(period: ChargingPeriod, today: date) -> date:
    """First date from ``today`` on which the period is active."""
    for offset in range(7):
        candidate = today + timedelta(days=offset)
        if period.active_on(candidate.weekday()):
            return candidate
    return today


def _period_span(
    period: ChargingPeriod,
    now: datetime,
    prep_minutes: int,
    restore_minutes: int,
) -> EmsWindow:
    """Widened span of ``period`` on its next active day."""
    day = _anchor_date(period, now.date())
    return EmsWindow(
        start=datetime.combine(day, period.start, tzinfo=now.tzinfo)
        - timedelta(minutes=prep_minutes),
        end=datetime.combine(day, period.end, tzinfo=now.tzinfo)
        + timedelta(minutes=restore_minutes),
    )


def window_active_at(
    schema: ChargingSchema | None,
    now: datetime,
    prep_minutes: int,
    restore_minutes: int,
) -> bool:
    """Return True when ``now`` falls inside a widened period of ``schema``."""
    if schema is None:
        return False
    for period in schema.periods:
        if not period.is_valid:
            continue
        span = _period_span(period, now, prep_minutes, restore_minutes)
        if span.start <= now < span.end:
            return True
    return False


def build_ems_windows(
    schema: ChargingSchema,
    now: datetime,
    prep_minutes: int,
    restore_minutes: int,
) -> list[EmsWindow]:
    """
    Derive the absolute spans during which EMS must be off.

    Each period is widened by ``prep_minutes`` before and
    ``restore_minutes`` after. Spans that already ended are skipped,
    spans that already started are clamped to one second from now, and
    spans closer than a minute apart are merged.
    """
    candidates: list[EmsWindow] = []

    for period in schema.periods:
        if not period.is_valid:
            continue
        span = _period_span(period, now, prep_minutes, restore_minutes)
        start, end = span.start, span.end
        if end <= now:
            _LOGGER.debug("Skipping past window for %s", period.describe())
            continue
        if start < now:
            start = now + timedelta(seconds=1)
        candidates.append(EmsWindow(start=start, end=end))

    merged: list[EmsWindow] = []
    gap = timedelta(minutes=EMS_WINDOW_MERGE_GAP_MINUTES)
    for window in sorted(candidates, key=lambda w: w.start):
        if merged and window.start <= merged[-1].end + gap:
            last = merged[-1]
            merged[-1] = EmsWindow(start=last.start, end=max(last.end, window.end))
        else:
            merged.append(window)

    return merged


class RetryGuard:
    """
    Single-slot retry channel.

    At most one retry is pending at a time. All access happens on the
    event loop, so the check and the set cannot interleave.
    """

    def __init__(self, hass: HomeAssistant) -> None:
        """Initialize the guard."""
        self._hass = hass
        self._unsub: CALLBACK_TYPE | None = None
        self.scheduled_for: datetime | None = None

    @property
    def pending(self) -> bool:
        """Return True while a retry is waiting to fire."""
        return self._unsub is not None

    @callback
    def async_schedule(
        self,
        when: datetime,
        action: Callable[[], Coroutine[Any, Any, Any]],
    ) -> bool:
        """Schedule ``action`` at ``when`` unless a retry is already pending."""
        if self._unsub is not None:
            _LOGGER.info(
                "Retry already scheduled for %s, not scheduling another",
                self.scheduled_for,
            )
            return False

        @callback
        def _fire(_now: datetime) -> None:
            self._unsub = None
            self.scheduled_for = None
            self._hass.async_create_task(action())

        self._unsub = async_track_point_in_time(self._hass, _fire, when)
        self.scheduled_for = when
        _LOGGER.info("Retry scheduled for %s", when.strftime("%H:%M"))
        return True

    @callback
    def cancel(self) -> None:
        """Drop a pending retry."""
        if self._unsub is not None:
            self._unsub()
            self._unsub = None
            self.scheduled_for = None


class EmsController:
    """Switch the EMS off for manual windows and back on afterwards."""

    def __init__(
        self,
        hass: HomeAssistant,
        ems_switch: str,
        gateway: SajApiClient | None,
    ) -> None:
        """Initialize the controller."""
        self.hass = hass
        self.ems_switch = ems_switch
        self.gateway = gateway

    def _switch_state(self) -> str | None:
        state = self.hass.states.get(self.ems_switch)
        return state.state if state else None

    async def _async_switch(self, service: str) -> None:
        await self.hass.services.async_call(
            "switch", service, {"entity_id": self.ems_switch}, blocking=True
        )

    async def async_block_reason(self) -> str | None:
        """
        Check whether the battery allows turning EMS off.

        Returns None when it is safe, otherwise a human readable reason.
        """
        if self.gateway is None:
            return BLOCK_NOT_CONFIGURED

        try:
            mode = await self.gateway.async_get_user_mode()
        except Exception:  # noqa: BLE001
            _LOGGER.warning("Battery mode query failed", exc_info=True)
            return BLOCK_QUERY_FAILED

        if mode.is_ems:
            return BLOCK_EMS_MODE
        if mode.is_unknown:
            return BLOCK_MODE_UNKNOWN
        return None

    async def async_suspend(self) -> str | None:
        """
        Turn EMS off before a manual window.

        Returns None when EMS is off (already or now), otherwise the
        reason the switch was left alone.
        """
        state = self._switch_state()
        if state in (None, STATE_UNAVAILABLE, STATE_UNKNOWN):
            _LOGGER.warning(
                "EMS switch %s is %s, treating it as off",
                self.ems_switch,
                state or "missing",
            )
            return None
        if state != STATE_ON:
            _LOGGER.debug("EMS switch %s already off", self.ems_switch)
            return None

        reason = await self.async_block_reason()
        if reason is not None:
            _LOGGER.warning("Not turning EMS off: %s", reason)
            return reason

        _LOGGER.info("Turning EMS off (%s)", self.ems_switch)
        await self._async_switch("turn_off")
        await asyncio.sleep(EMS_SETTLE_SECONDS)
        return None

    async def async_restore(self) -> None:
        """Turn EMS back on after a manual window."""
        if self._switch_state() != STATE_OFF:
            _LOGGER.debug("EMS switch %s not off, nothing to restore", self.ems_switch)
            return
        _LOGGER.info("Turning EMS back on (%s)", self.ems_switch)
        await self._async_switch("turn_on")
        await asyncio.sleep(1)

