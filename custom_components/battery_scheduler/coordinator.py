"""Coordinator that builds, schedules and applies the daily battery schedule."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import aiohttp
from homeassistant.config_entries import ConfigEntry
from homeassistant.const import STATE_UNAVAILABLE, STATE_UNKNOWN
from homeassistant.core import CALLBACK_TYPE, HomeAssistant, callback
from homeassistant.helpers.aiohttp_client import async_get_clientsession
from homeassistant.helpers.event import (
    async_call_later,
    async_track_point_in_time,
    async_track_time_change,
    async_track_time_interval,
)
from homeassistant.helpers.update_coordinator import DataUpdateCoordinator, UpdateFailed
from homeassistant.util import dt as dt_util

from .applier import ApplyOutcome, ApplyResult, ScheduleApplier
from .const import (
    CONF_BASE_URL,
    CONF_DEVICE_SN,
    CONF_EMS_SWITCH,
    CONF_PASSWORD,
    CONF_PLANT_UID,
    CONF_PRICE_ENTITY,
    CONF_SOC_ENTITY,
    CONF_USERNAME,
    DAILY_BUILD_HOUR,
    DAILY_BUILD_MINUTE,
    DOMAIN,
    INSUFFICIENT_DATA_RETRY_MINUTES,
    MODE_ERROR_TEXT,
    MORNING_DISCHARGE_HOURS,
    SAJ_DEFAULT_BASE_URL,
    SOC_FALLBACK_PERCENT,
)
from .ems import (
    EmsController,
    RetryGuard,
    build_ems_windows,
    round_up_to_next_five_minutes,
    window_active_at,
)
from .models import BatterySettings, ChargingSchema, EmsWindow, PriceSeries
from .saj_api import SajApiClient, SajApiError
from .schedule_builder import (
    InsufficientPriceDataError,
    build_daily_plan,
    drop_evening_discharges,
    evaluate_evening_shift,
    morning_discharge_schema,
)
from .status import (
    format_scheduled_action,
    format_scheduled_time,
    next_event_summary,
    schedule_text,
)
from .storage import ScheduleStore

_LOGGER = logging.getLogger(__name__)

PRICE_UPDATE_INTERVAL = timedelta(minutes=15)
MODE_CHECK_INTERVAL = timedelta(minutes=5)

ATTR_RAW_TODAY = "raw_today"
ATTR_RAW_TOMORROW = "raw_tomorrow"


@dataclass
class PriceData:
    """Prices for today and tomorrow, keyed by local interval start."""

    today: PriceSeries = field(default_factory=dict)
    tomorrow: PriceSeries = field(default_factory=dict)


def parse_price_series(raw: Any) -> PriceSeries:
    """
    Parse a ``raw_today``/``raw_tomorrow`` attribute.

    Each item is a mapping with ``start`` (datetime or ISO string) and
    ``value``. Items without a usable start or value are skipped.
    """
    series: PriceSeries = {}
    if not isinstance(raw, list):
        return series

    for item in raw:
        if not isinstance(item, Mapping):
            continue
        start = item.get("start")
        value = item.get("value")
        if start is None or value is None:
            continue
        ts = start if isinstance(start, datetime) else dt_util.parse_datetime(str(start))
        if ts is None:
            continue
        try:
            series[dt_util.as_local(ts)] = float(value)
        except (TypeError, ValueError):
            continue
    return series


def _create_gateway(hass: HomeAssistant, data: Mapping[str, Any]) -> SajApiClient | None:
    """Build the SAJ client when every credential is present."""
    required = (CONF_USERNAME, CONF_PASSWORD, CONF_DEVICE_SN, CONF_PLANT_UID)
    if not all(data.get(key) for key in required):
        return None
    return SajApiClient(
        async_get_clientsession(hass),
        data[CONF_USERNAME],
        data[CONF_PASSWORD],
        data[CONF_DEVICE_SN],
        data[CONF_PLANT_UID],
        data.get(CONF_BASE_URL) or SAJ_DEFAULT_BASE_URL,
    )


class BatteryCoordinator(DataUpdateCoordinator[PriceData]):
    """
    Own the prepared schema and every timer that acts on it.

    Prices are read from the configured price sensor every 15 minutes.
    Once a day (and on startup) a schema is built, EMS windows are
    derived from it and one timer pair per window turns EMS off and
    applies the schema at the window start, then turns EMS back on at
    the window end. Timer callbacks always read the prepared schema when
    they fire. A rebuild replaces the pending windows, while a running
    window keeps its end timer; that end leaves EMS off only if the new
    schema still covers it.
    """

    config_entry: ConfigEntry

    def __init__(self, hass: HomeAssistant, entry: ConfigEntry) -> None:
        """Initialize the coordinator."""
        super().__init__(
            hass,
            _LOGGER,
            name=f"{DOMAIN}_coordinator",
            update_interval=PRICE_UPDATE_INTERVAL,
            config_entry=entry,
        )
        self.settings = BatterySettings.from_options(entry.options)
        self.price_entity: str = entry.data[CONF_PRICE_ENTITY]
        self.soc_entity: str = entry.data[CONF_SOC_ENTITY]
        self.ems_switch: str = entry.data[CONF_EMS_SWITCH]

        self.gateway = _create_gateway(hass, entry.data)
        self.store = ScheduleStore(hass, entry.entry_id)
        self.retry = RetryGuard(hass)
        self.ems = EmsController(hass, self.ems_switch, self.gateway)
        self.applier = ScheduleApplier(self.gateway, self.store, self.settings)

        self._schema_lock = asyncio.Lock()
        self.prepared_schema: ChargingSchema | None = None
        self.last_apply: ApplyResult | None = None
        self._enabled = True

        self.status: str = "Starting"
        self.status_detail: str | None = None
        self.battery_mode: str | None = None
        self.charge_schedule_text: str | None = None
        self.discharge_schedule_text: str | None = None

        self._window_timers: list[tuple[EmsWindow, CALLBACK_TYPE, CALLBACK_TYPE]] = []
        self._running_ends: list[tuple[EmsWindow, CALLBACK_TYPE]] = []
        self._morning_unsubs: list[CALLBACK_TYPE] = []
        self._evening_unsub: CALLBACK_TYPE | None = None
        self._data_retry_unsub: CALLBACK_TYPE | None = None
        self._daily_unsub: CALLBACK_TYPE | None = None
        self._mode_unsub: CALLBACK_TYPE | None = None

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    async def _async_update_data(self) -> PriceData:
        """Read today's and tomorrow's prices from the price sensor."""
        state = self.hass.states.get(self.price_entity)
        if state is None:
            msg = f"Price sensor {self.price_entity} not found"
            raise UpdateFailed(msg)
        if state.state in (STATE_UNKNOWN, STATE_UNAVAILABLE):
            msg = f"Price sensor {self.price_entity} is {state.state}"
            raise UpdateFailed(msg)

        return PriceData(
            today=parse_price_series(state.attributes.get(ATTR_RAW_TODAY)),
            tomorrow=parse_price_series(state.attributes.get(ATTR_RAW_TOMORROW)),
        )

    def current_soc(self) -> float:
        """Live SOC from the SOC sensor, with a fallback when unreadable."""
        state = self.hass.states.get(self.soc_entity)
        if state is not None and state.state not in (STATE_UNKNOWN, STATE_UNAVAILABLE):
            try:
                return float(state.state)
            except ValueError:
                pass
        _LOGGER.warning(
            "SOC sensor %s unreadable, assuming %.0f%%",
            self.soc_entity,
            SOC_FALLBACK_PERCENT,
        )
        return SOC_FALLBACK_PERCENT

    @property
    def simulation_mode(self) -> bool:
        """Return True when schedules are only logged, never written."""
        return self.settings.simulation_mode

    @property
    def gateway_configured(self) -> bool:
        """Return True when SAJ credentials are configured."""
        return self.gateway is not None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @callback
    def async_set_status(self, dashboard: str, detail: str | None = None) -> None:
        """Update the status text and log the transition."""
        self.status = dashboard
        self.status_detail = detail
        if detail:
            _LOGGER.info("%s | %s", dashboard, detail)
        else:
            _LOGGER.info("%s", dashboard)
        self.async_update_listeners()

    def next_event(self) -> str:
        """Running or next period of the prepared schema."""
        return next_event_summary(self.prepared_schema, dt_util.now())

    @property
    def enabled(self) -> bool:
        """Return whether scheduling is enabled."""
        return self._enabled

    @callback
    def async_set_enabled(self, *, enabled: bool) -> None:
        """Enable or pause scheduling; paused window starts only log."""
        self._enabled = enabled
        _LOGGER.info("Battery scheduling %s", "enabled" if enabled else "paused")
        self.async_update_listeners()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def async_start(self) -> None:
        """Load stored state, start the recurring timers and resume or build."""
        await self.store.async_load()
        self.battery_mode = self.store.last_known_mode

        self._daily_unsub = async_track_time_change(
            self.hass,
            self._on_daily_build,
            hour=DAILY_BUILD_HOUR,
            minute=DAILY_BUILD_MINUTE,
            second=0,
        )
        if self.gateway is not None:
            self._mode_unsub = async_track_time_interval(
                self.hass, self._on_mode_check, MODE_CHECK_INTERVAL
            )
            self.hass.async_create_task(self.async_check_battery_mode())

        now = dt_util.now()
        stored = self.store.prepared_schema_for(now.date())
        if stored is not None:
            windows = build_ems_windows(
                stored,
                now,
                self.settings.ems_prep_minutes,
                self.settings.ems_restore_minutes,
            )
            if windows:
                async with self._schema_lock:
                    self.prepared_schema = stored
                    self._schedule_ems_windows(stored, now)
                self.async_set_status(
                    "Schedule resumed", f"{stored.to_log_string()}; {self.next_event()}"
                )
                return
            _LOGGER.info("Stored schema for today has no upcoming windows, rebuilding")

        await self.async_prepare_schedule()

    async def async_shutdown(self) -> None:
        """Cancel every timer owned by the coordinator."""
        await super().async_shutdown()
        self.retry.cancel()
        self._cancel_windows()
        self._cancel_morning()
        for unsub in (
            self._evening_unsub,
            self._data_retry_unsub,
            self._daily_unsub,
            self._mode_unsub,
        ):
            if unsub is not None:
                unsub()
        self._evening_unsub = None
        self._data_retry_unsub = None
        self._daily_unsub = None
        self._mode_unsub = None

    @callback
    def _on_daily_build(self, _now: datetime) -> None:
        self.hass.async_create_task(self.async_prepare_schedule())

    @callback
    def _schedule_data_retry(self) -> None:
        if self._data_retry_unsub is not None:
            return

        @callback
        def _on_retry(_now: datetime) -> None:
            self._data_retry_unsub = None
            self.hass.async_create_task(self.async_prepare_schedule())

        self._data_retry_unsub = async_call_later(
            self.hass, timedelta(minutes=INSUFFICIENT_DATA_RETRY_MINUTES), _on_retry
        )

    # ------------------------------------------------------------------
    # Schedule building
    # ------------------------------------------------------------------

    async def async_prepare_schedule(self) -> ChargingSchema | None:
        """Build today's schema and schedule its EMS windows."""
        await self.async_refresh()
        now = dt_util.now()
        data = self.data if self.last_update_success else None

        try:
            plan = build_daily_plan(
                data.today if data else None,
                data.tomorrow if data else None,
                self.current_soc(),
                now,
                self.settings,
            )
        except InsufficientPriceDataError as err:
            self._schedule_data_retry()
            self.async_set_status(
                "Waiting for price data",
                f"{err}; retrying in {INSUFFICIENT_DATA_RETRY_MINUTES} minutes",
            )
            return None

        async with self._schema_lock:
            self.prepared_schema = plan.schema
            await self.store.async_save_prepared(plan.schema, now.date())
            self._schedule_ems_windows(plan.schema, now)

        self._schedule_evening_check(plan.evening_check_at, now)
        self.async_set_status(
            "Schedule prepared", f"{plan.schema.to_log_string()}; {self.next_event()}"
        )

        if self.simulation_mode:
            await self.async_run_window_start()

        return plan.schema

    @callback
    def _cancel_windows(self) -> None:
        for _window, start_unsub, end_unsub in self._window_timers:
            start_unsub()
            end_unsub()
        self._window_timers.clear()
        for _window, end_unsub in self._running_ends:
            end_unsub()
        self._running_ends.clear()

    @callback
    def _schedule_ems_windows(self, schema: ChargingSchema, now: datetime) -> None:
        """
        Replace the window timers with timers for ``schema``.

        A window that is already running keeps its end timer, so EMS is
        restored even when the new schema no longer covers it.
        """
        self._running_ends = [
            (window, end_unsub)
            for window, end_unsub in self._running_ends
            if window.end > now
        ]
        for window, start_unsub, end_unsub in self._window_timers:
            start_unsub()
            if window.start <= now < window.end:
                _LOGGER.debug(
                    "Keeping EMS restore at %s for the running window",
                    window.end.strftime("%H:%M"),
                )
                self._running_ends.append((window, end_unsub))
            else:
                end_unsub()
        self._window_timers.clear()

        windows = build_ems_windows(
            schema,
            now,
            self.settings.ems_prep_minutes,
            self.settings.ems_restore_minutes,
        )
        for window in windows:
            self._window_timers.append(
                (
                    window,
                    async_track_point_in_time(
                        self.hass, self._on_window_start, window.start
                    ),
                    async_track_point_in_time(
                        self.hass, self._on_window_end, window.end
                    ),
                )
            )
            _LOGGER.debug(
                "EMS window %s-%s scheduled",
                window.start.strftime("%H:%M"),
                window.end.strftime("%H:%M"),
            )

    @callback
    def _on_window_start(self, _now: datetime) -> None:
        self.hass.async_create_task(self.async_run_window_start())

    @callback
    def _on_window_end(self, _now: datetime) -> None:
        self.hass.async_create_task(self.async_run_window_end())

    # ------------------------------------------------------------------
    # Window execution
    # ------------------------------------------------------------------

    def _retry_later(
        self, action: Callable[[], Coroutine[Any, Any, Any]]
    ) -> Callable[[], bool]:
        """Return a callable that books ``action`` on the shared retry slot."""

        def _schedule() -> bool:
            when = round_up_to_next_five_minutes(dt_util.now())
            return self.retry.async_schedule(when, action)

        return _schedule

    async def _async_suspend_and_apply(
        self,
        schema: ChargingSchema,
        action: Callable[[], Coroutine[Any, Any, Any]],
    ) -> ApplyResult | None:
        """Turn EMS off (unless simulating) and apply ``schema``."""
        schedule_retry = self._retry_later(action)
        if not self.simulation_mode:
            reason = await self.ems.async_suspend()
            if reason is not None:
                retry_at = self.retry.scheduled_for if schedule_retry() else None
                retry = (
                    f"retry {format_scheduled_time(retry_at, dt_util.now())}"
                    if retry_at
                    else "retry already scheduled"
                )
                self.async_set_status("Waiting for EMS", f"{reason}; {retry}")
                return None

        result = await self.applier.async_apply(
            schema,
            self.current_soc(),
            dt_util.now(),
            simulate_only=self.simulation_mode,
            schedule_retry=schedule_retry,
        )
        self._handle_apply_result(result)
        return result

    async def async_run_window_start(self) -> ApplyResult | None:
        """Turn EMS off and apply the prepared schema."""
        if not self._enabled:
            _LOGGER.info("Scheduling paused, ignoring window start")
            return None

        schema = self.prepared_schema
        if schema is None or not schema.periods:
            _LOGGER.info("No prepared schema at window start")
            return None

        return await self._async_suspend_and_apply(schema, self.async_run_window_start)

    async def async_run_window_end(self) -> None:
        """Turn EMS back on after a window."""
        now = dt_util.now()
        if window_active_at(
            self.prepared_schema,
            now,
            self.settings.ems_prep_minutes,
            self.settings.ems_restore_minutes,
        ):
            _LOGGER.info(
                "Prepared schema still covers %s, EMS stays off", now.strftime("%H:%M")
            )
            return
        if not self.simulation_mode:
            await self.ems.async_restore()
        self.async_set_status("Window finished", self.next_event())

    @callback
    def _handle_apply_result(self, result: ApplyResult) -> None:
        self.last_apply = result
        if result.outcome is ApplyOutcome.APPLIED:
            if result.reason != "simulated" and result.schema is not None:
                self._update_schedule_text(result.schema)
            self.async_set_status("Schedule applied", self.next_event())
        elif result.outcome is ApplyOutcome.SKIPPED:
            self.async_set_status(f"Apply skipped ({result.reason})", self.next_event())
        else:
            self.async_set_status("Apply failed", result.reason)

    @callback
    def _update_schedule_text(self, schema: ChargingSchema) -> None:
        self.charge_schedule_text = schedule_text(schema.charge_periods)
        self.discharge_schedule_text = schedule_text(schema.discharge_periods)

    # ------------------------------------------------------------------
    # Evening shift
    # ------------------------------------------------------------------

    @callback
    def _schedule_evening_check(self, when: datetime | None, now: datetime) -> None:
        if self._evening_unsub is not None:
            self._evening_unsub()
            self._evening_unsub = None
        if when is None or when <= now:
            return

        @callback
        def _on_evening_check(_now: datetime) -> None:
            self._evening_unsub = None
            self.hass.async_create_task(self.async_run_evening_check())

        self._evening_unsub = async_track_point_in_time(
            self.hass, _on_evening_check, when
        )
        _LOGGER.debug("Evening shift check scheduled at %s", when.strftime("%H:%M"))

    async def async_run_evening_check(self) -> None:
        """Move tonight's discharge to tomorrow morning when that pays more."""
        await self.async_refresh()
        data = self.data if self.last_update_success else None
        decision = evaluate_evening_shift(
            data.today if data else None,
            data.tomorrow if data else None,
            self.settings,
        )
        if decision is None:
            _LOGGER.info("Evening shift check: no comparable prices, keeping schedule")
            return
        if not decision.shift:
            _LOGGER.info(
                "Keeping evening discharge (%.3f at %s >= morning %.3f at %s)",
                decision.evening_price,
                decision.evening_peak.strftime("%H:%M"),
                decision.morning_price,
                decision.morning_peak.strftime("%H:%M"),
            )
            return

        now = dt_util.now()
        async with self._schema_lock:
            if self.prepared_schema is None:
                return
            updated = drop_evening_discharges(
                self.prepared_schema, self.settings.evening_threshold_hour
            )
            self.prepared_schema = updated
            await self.store.async_save_prepared(updated, now.date())
            self._schedule_ems_windows(updated, now)

        self._schedule_morning_discharge(decision.morning_peak, now)
        self.async_set_status(
            "Evening discharge moved",
            format_scheduled_action(
                "Discharge",
                decision.morning_peak,
                now,
                f"{decision.morning_price:.3f} > {decision.evening_price:.3f}",
            ),
        )

    @callback
    def _cancel_morning(self) -> None:
        for unsub in self._morning_unsubs:
            unsub()
        self._morning_unsubs.clear()

    @callback
    def _schedule_morning_discharge(self, peak: datetime, now: datetime) -> None:
        """Book the one-off morning discharge and the EMS restore after it."""
        self._cancel_morning()
        start_at = peak - timedelta(minutes=self.settings.ems_prep_minutes)
        end_at = peak + timedelta(
            hours=MORNING_DISCHARGE_HOURS,
            minutes=self.settings.ems_restore_minutes,
        )
        if end_at <= now:
            return

        @callback
        def _on_start(_now: datetime) -> None:
            self.hass.async_create_task(self.async_run_morning_discharge(peak))

        self._morning_unsubs.append(
            async_track_point_in_time(self.hass, _on_start, max(start_at, now))
        )
        self._morning_unsubs.append(
            async_track_point_in_time(self.hass, self._on_window_end, end_at)
        )

    async def async_run_morning_discharge(self, peak: datetime) -> ApplyResult | None:
        """Apply the one-off morning discharge."""
        if not self._enabled:
            _LOGGER.info("Scheduling paused, ignoring morning discharge")
            return None

        schema = morning_discharge_schema(peak, self.settings, dt_util.now())

        async def _retry() -> None:
            await self.async_run_morning_discharge(peak)

        return await self._async_suspend_and_apply(schema, _retry)

    # ------------------------------------------------------------------
    # Battery mode
    # ------------------------------------------------------------------

    @callback
    def _on_mode_check(self, _now: datetime) -> None:
        self.hass.async_create_task(self.async_check_battery_mode())

    async def async_check_battery_mode(self) -> None:
        """Refresh the battery mode and persist changes."""
        if self.gateway is None:
            return
        try:
            mode = await self.gateway.async_get_user_mode()
        except (SajApiError, aiohttp.ClientError, TimeoutError):
            _LOGGER.warning("Battery mode check failed", exc_info=True)
            self.battery_mode = MODE_ERROR_TEXT
            self.async_update_listeners()
            return

        self.battery_mode = mode.value
        previous = self.store.last_known_mode
        if previous != mode.value:
            if previous is None:
                _LOGGER.info("Battery mode: %s", mode.value)
            else:
                _LOGGER.info("Battery mode changed from %s to %s", previous, mode.value)
            await self.store.async_save_last_mode(mode.value, dt_util.now())
        self.async_update_listeners()

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    async def async_clear_schedule(self) -> bool:
        """Disable the schedule on the battery and forget the applied snapshot."""
        if self.gateway is None:
            _LOGGER.warning("Cannot clear schedule: SAJ gateway not configured")
            return False

        if not await self.gateway.async_clear_schedule():
            self.async_set_status("Clearing schedule failed")
            return False

        await self.store.async_clear_applied()
        self.charge_schedule_text = None
        self.discharge_schedule_text = None
        self.async_set_status("Schedule cleared")
        return True
