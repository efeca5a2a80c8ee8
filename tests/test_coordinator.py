"""Tests for the Battery Scheduler coordinator."""

from __future__ import annotations

from datetime import datetime, time, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest
from freezegun.api import FrozenDateTimeFactory
from homeassistant.config_entries import ConfigEntryState
from homeassistant.core import HomeAssistant
from homeassistant.exceptions import HomeAssistantError
from homeassistant.util import dt as dt_util
from pytest_homeassistant_custom_component.common import (
    MockConfigEntry,
    async_fire_time_changed,
    async_mock_service,
)

from custom_components.battery_scheduler.applier import ApplyOutcome
from custom_components.battery_scheduler.const import (
    CONF_SIMULATION_MODE,
    DEFAULT_OPTIONS,
    DOMAIN,
    MODE_ERROR_TEXT,
)
from custom_components.battery_scheduler.coordinator import parse_price_series
from custom_components.battery_scheduler.models import (
    ChargeType,
    ChargingPeriod,
    ChargingSchema,
)
from custom_components.battery_scheduler.saj_api import BatteryUserMode, SajApiError

from .conftest import (
    DEFAULT_PRICES,
    EMS_SWITCH,
    ENTITY_DATA,
    SAJ_DATA,
    SOC_ENTITY,
    async_setup_integration,
    make_raw_prices,
    set_battery_states,
    set_price_state,
)

CHARGE = ChargingPeriod(ChargeType.CHARGE, time(2, 0), time(5, 0), 8000)
DISCHARGE = ChargingPeriod(ChargeType.DISCHARGE, time(19, 0), time(19, 56), 8000)


def _storage_key(entry: MockConfigEntry) -> str:
    return f"{DOMAIN}.{entry.entry_id}"


# ---------------------------------------------------------------------------
# Price parsing
# ---------------------------------------------------------------------------


def test_parse_price_series_skips_bad_items(hass: HomeAssistant) -> None:
    """Items without a usable start or value are ignored."""
    start = dt_util.start_of_local_day()
    raw: list[Any] = [
        {"start": start.isoformat(), "value": 0.21},
        {"start": start + timedelta(hours=1), "value": "0.22"},
        {"start": "not a date", "value": 0.3},
        {"start": (start + timedelta(hours=3)).isoformat(), "value": None},
        {"start": (start + timedelta(hours=4)).isoformat(), "value": "n/a"},
        "garbage",
    ]

    series = parse_price_series(raw)

    assert series == {start: 0.21, start + timedelta(hours=1): 0.22}
    assert parse_price_series(None) == {}


# ---------------------------------------------------------------------------
# Setup and schedule building
# ---------------------------------------------------------------------------


async def test_setup_prepares_schedule(
    hass: HomeAssistant,
    hass_storage: dict[str, Any],
    mock_config_entry: MockConfigEntry,
    default_states: None,
) -> None:
    """Setup builds and persists today's schema."""
    coordinator = await async_setup_integration(hass, mock_config_entry)

    assert mock_config_entry.state is ConfigEntryState.LOADED
    assert coordinator.status == "Schedule prepared"
    assert coordinator.prepared_schema is not None
    assert coordinator.prepared_schema.periods == [CHARGE, DISCHARGE]
    assert coordinator.prepared_schema.source == "daily"

    stored = hass_storage[_storage_key(mock_config_entry)]["data"]
    assert stored["prepared_date"] == "2026-02-09"
    assert len(stored["prepared"]["periods"]) == 2

    await hass.config_entries.async_unload(mock_config_entry.entry_id)


async def test_setup_retries_without_price_sensor(
    hass: HomeAssistant, mock_config_entry: MockConfigEntry, day_start: datetime
) -> None:
    """A missing price sensor puts the entry into setup retry."""
    set_battery_states(hass)

    await hass.config_entries.async_setup(mock_config_entry.entry_id)
    await hass.async_block_till_done()

    assert mock_config_entry.state is ConfigEntryState.SETUP_RETRY


async def test_insufficient_prices_wait_for_data(
    hass: HomeAssistant, mock_config_entry: MockConfigEntry, day_start: datetime
) -> None:
    """Too few prices leave no schema and a waiting status."""
    set_price_state(hass, make_raw_prices(day_start)[:2])
    set_battery_states(hass)

    coordinator = await async_setup_integration(hass, mock_config_entry)

    assert coordinator.prepared_schema is None
    assert coordinator.status == "Waiting for price data"
    assert "retrying in 10 minutes" in (coordinator.status_detail or "")

    await hass.config_entries.async_unload(mock_config_entry.entry_id)


async def test_setup_resumes_stored_schema(
    hass: HomeAssistant,
    hass_storage: dict[str, Any],
    mock_config_entry: MockConfigEntry,
    day_start: datetime,
) -> None:
    """A schema stored for today with upcoming windows is reused."""
    stored = ChargingSchema(
        periods=[
            ChargingPeriod(ChargeType.DISCHARGE, time(20, 0), time(21, 0), 8000)
        ],
        created_at=day_start,
        source="daily",
    )
    hass_storage[_storage_key(mock_config_entry)] = {
        "version": 1,
        "minor_version": 1,
        "key": _storage_key(mock_config_entry),
        "data": {"prepared": stored.to_dict(), "prepared_date": "2026-02-09"},
    }
    set_price_state(hass, make_raw_prices(day_start, DEFAULT_PRICES))
    set_battery_states(hass)

    coordinator = await async_setup_integration(hass, mock_config_entry)

    assert coordinator.status == "Schedule resumed"
    assert coordinator.prepared_schema is not None
    assert coordinator.prepared_schema.periods == stored.periods

    await hass.config_entries.async_unload(mock_config_entry.entry_id)


async def test_stale_stored_schema_is_rebuilt(
    hass: HomeAssistant,
    hass_storage: dict[str, Any],
    mock_config_entry: MockConfigEntry,
    day_start: datetime,
) -> None:
    """A schema from yesterday is ignored."""
    stored = ChargingSchema(
        periods=[
            ChargingPeriod(ChargeType.DISCHARGE, time(20, 0), time(21, 0), 8000)
        ],
        source="daily",
    )
    hass_storage[_storage_key(mock_config_entry)] = {
        "version": 1,
        "minor_version": 1,
        "key": _storage_key(mock_config_entry),
        "data": {"prepared": stored.to_dict(), "prepared_date": "2026-02-08"},
    }
    set_price_state(hass, make_raw_prices(day_start, DEFAULT_PRICES))
    set_battery_states(hass)

    coordinator = await async_setup_integration(hass, mock_config_entry)

    assert coordinator.status == "Schedule prepared"
    assert coordinator.prepared_schema is not None
    assert coordinator.prepared_schema.periods == [CHARGE, DISCHARGE]

    await hass.config_entries.async_unload(mock_config_entry.entry_id)


async def test_simulation_applies_without_gateway_write(
    hass: HomeAssistant,
    mock_saj_api: AsyncMock,
    day_start: datetime,
) -> None:
    """In simulation mode the schema is applied right after building."""
    entry = MockConfigEntry(
        domain=DOMAIN,
        title="Battery Scheduler",
        data={**ENTITY_DATA, **SAJ_DATA},
        options={**DEFAULT_OPTIONS, CONF_SIMULATION_MODE: True},
        unique_id=EMS_SWITCH,
    )
    entry.add_to_hass(hass)
    set_price_state(hass, make_raw_prices(day_start, DEFAULT_PRICES))
    set_battery_states(hass)

    coordinator = await async_setup_integration(hass, entry)

    assert coordinator.last_apply is not None
    assert coordinator.last_apply.outcome is ApplyOutcome.APPLIED
    assert coordinator.last_apply.reason == "simulated"
    mock_saj_api.async_save_schedule.assert_not_called()
    assert hass.states.get(EMS_SWITCH).state == "on"

    await hass.config_entries.async_unload(entry.entry_id)


# ---------------------------------------------------------------------------
# Window execution
# ---------------------------------------------------------------------------


async def test_window_start_turns_ems_off_and_applies(
    hass: HomeAssistant,
    mock_config_entry_with_saj: MockConfigEntry,
    mock_saj_api: AsyncMock,
    default_states: None,
) -> None:
    """The window start switches EMS off and writes the schema."""
    coordinator = await async_setup_integration(hass, mock_config_entry_with_saj)
    turn_off = async_mock_service(hass, "switch", "turn_off")

    result = await coordinator.async_run_window_start()

    assert result is not None
    assert result.outcome is ApplyOutcome.APPLIED
    assert len(turn_off) == 1
    assert turn_off[0].data["entity_id"] == EMS_SWITCH
    mock_saj_api.async_save_schedule.assert_awaited_once_with([CHARGE, DISCHARGE])
    assert coordinator.status == "Schedule applied"
    assert coordinator.charge_schedule_text == "02:00-05:00"
    assert coordinator.discharge_schedule_text == "19:00-19:56"

    await hass.config_entries.async_unload(mock_config_entry_with_saj.entry_id)


async def test_window_start_twice_writes_once(
    hass: HomeAssistant,
    mock_config_entry_with_saj: MockConfigEntry,
    mock_saj_api: AsyncMock,
    default_states: None,
) -> None:
    """Re-applying an unchanged schema skips the battery write."""
    coordinator = await async_setup_integration(hass, mock_config_entry_with_saj)
    async_mock_service(hass, "switch", "turn_off")

    await coordinator.async_run_window_start()
    second = await coordinator.async_run_window_start()

    assert second is not None
    assert second.outcome is ApplyOutcome.SKIPPED
    assert mock_saj_api.async_save_schedule.await_count == 1
    assert coordinator.status == "Apply skipped (unchanged)"

    await hass.config_entries.async_unload(mock_config_entry_with_saj.entry_id)


async def test_window_start_blocked_in_ems_mode(
    hass: HomeAssistant,
    mock_config_entry_with_saj: MockConfigEntry,
    mock_saj_api: AsyncMock,
    day_start: datetime,
    default_states: None,
) -> None:
    """EMS mode blocks the window and books a single retry."""
    coordinator = await async_setup_integration(hass, mock_config_entry_with_saj)
    turn_off = async_mock_service(hass, "switch", "turn_off")
    mock_saj_api.async_get_user_mode.return_value = BatteryUserMode.EMS

    assert await coordinator.async_run_window_start() is None
    assert await coordinator.async_run_window_start() is None

    assert turn_off == []
    mock_saj_api.async_save_schedule.assert_not_called()
    assert coordinator.status == "Waiting for EMS"
    assert coordinator.retry.pending
    assert coordinator.retry.scheduled_for == day_start + timedelta(hours=12, minutes=5)
    assert coordinator.status_detail == "EMS Mode active; retry already scheduled"

    await hass.config_entries.async_unload(mock_config_entry_with_saj.entry_id)
    assert not coordinator.retry.pending



async def test_window_start_without_gateway_waits(
    hass: HomeAssistant,
    mock_config_entry: MockConfigEntry,
    default_states: None,
) -> None:
    """Without SAJ credentials EMS is never turned off."""
    coordinator = await async_setup_integration(hass, mock_config_entry)
    turn_off = async_mock_service(hass, "switch", "turn_off")

    assert await coordinator.async_run_window_start() is None

    assert turn_off == []
    assert coordinator.status == "Waiting for EMS"
    assert (coordinator.status_detail or "").startswith(
        "Mode unknown (API not configured)"
    )

    await hass.config_entries.async_unload(mock_config_entry.entry_id)


async def test_window_start_paused(
    hass: HomeAssistant,
    mock_config_entry_with_saj: MockConfigEntry,
    mock_saj_api: AsyncMock,
    default_states: None,
) -> None:
    """A paused scheduler ignores window starts."""
    coordinator = await async_setup_integration(hass, mock_config_entry_with_saj)
    coordinator.async_set_enabled(enabled=False)

    assert await coordinator.async_run_window_start() is None
    mock_saj_api.async_save_schedule.assert_not_called()

    await hass.config_entries.async_unload(mock_config_entry_with_saj.entry_id)


async def test_window_end_restores_ems(
    hass: HomeAssistant,
    mock_config_entry_with_saj: MockConfigEntry,
    mock_saj_api: AsyncMock,
    default_states: None,
) -> None:
    """The window end switches EMS back on."""
    coordinator = await async_setup_integration(hass, mock_config_entry_with_saj)
    turn_on = async_mock_service(hass, "switch", "turn_on")
    hass.states.async_set(EMS_SWITCH, "off")

    await coordinator.async_run_window_end()

    assert len(turn_on) == 1
    assert coordinator.status == "Window finished"

    await hass.config_entries.async_unload(mock_config_entry_with_saj.entry_id)


async def test_rebuild_keeps_restore_of_running_window(
    hass: HomeAssistant,
    freezer: FrozenDateTimeFactory,
    mock_config_entry_with_saj: MockConfigEntry,
    mock_saj_api: AsyncMock,
    day_start: datetime,
    default_states: None,
) -> None:
    """A rebuild during a window still turns EMS back on at its end."""
    coordinator = await async_setup_integration(hass, mock_config_entry_with_saj)
    turn_off = async_mock_service(hass, "switch", "turn_off")
    turn_on = async_mock_service(hass, "switch", "turn_on")

    during = day_start + timedelta(hours=19, minutes=10)
    freezer.move_to(during)
    async_fire_time_changed(hass, during)
    await hass.async_block_till_done()

    assert len(turn_off) == 1
    mock_saj_api.async_save_schedule.assert_awaited_once_with([CHARGE, DISCHARGE])

    hass.states.async_set(EMS_SWITCH, "off")
    hass.states.async_set(SOC_ENTITY, "20")
    await hass.services.async_call(DOMAIN, "recalculate_schedule", blocking=True)

    assert coordinator.prepared_schema is not None
    assert coordinator.prepared_schema.discharge_periods == []
    assert turn_on == []

    after = day_start + timedelta(hours=19, minutes=58)
    freezer.move_to(after)
    async_fire_time_changed(hass, after)
    await hass.async_block_till_done()

    assert len(turn_on) == 1
    assert turn_on[0].data["entity_id"] == EMS_SWITCH
    assert coordinator.status == "Window finished"

    await hass.config_entries.async_unload(mock_config_entry_with_saj.entry_id)


async def test_window_end_keeps_ems_off_inside_prepared_window(
    hass: HomeAssistant,
    freezer: FrozenDateTimeFactory,
    mock_config_entry_with_saj: MockConfigEntry,
    mock_saj_api: AsyncMock,
    day_start: datetime,
    default_states: None,
) -> None:
    """An end timer firing inside a prepared window leaves EMS off."""
    coordinator = await async_setup_integration(hass, mock_config_entry_with_saj)
    turn_on = async_mock_service(hass, "switch", "turn_on")
    freezer.move_to(day_start + timedelta(hours=19, minutes=10))
    hass.states.async_set(EMS_SWITCH, "off")

    await coordinator.async_run_window_end()

    assert turn_on == []
    assert coordinator.status == "Schedule prepared"

    await hass.config_entries.async_unload(mock_config_entry_with_saj.entry_id)


async def test_soc_fallback(
    hass: HomeAssistant, mock_config_entry: MockConfigEntry, default_states: None
) -> None:
    """An unreadable SOC sensor falls back to 50%."""
    coordinator = await async_setup_integration(hass, mock_config_entry)

    hass.states.async_set(SOC_ENTITY, "unavailable")
    assert coordinator.current_soc() == 50.0
    hass.states.async_set(SOC_ENTITY, "82.5")
    assert coordinator.current_soc() == 82.5

    await hass.config_entries.async_unload(mock_config_entry.entry_id)


# ---------------------------------------------------------------------------
# Evening shift
# ---------------------------------------------------------------------------


async def test_evening_check_moves_discharge(
    hass: HomeAssistant,
    hass_storage: dict[str, Any],
    mock_config_entry_with_saj: MockConfigEntry,
    mock_saj_api: AsyncMock,
    day_start: datetime,
    default_states: None,
) -> None:
    """A pricier morning tomorrow removes tonight's discharge."""
    coordinator = await async_setup_integration(hass, mock_config_entry_with_saj)
    tomorrow = day_start + timedelta(days=1)
    set_price_state(
        hass,
        make_raw_prices(day_start, DEFAULT_PRICES),
        make_raw_prices(tomorrow, {8: 0.60}),
    )

    await coordinator.async_run_evening_check()

    assert coordinator.prepared_schema is not None
    assert coordinator.prepared_schema.periods == [CHARGE]
    assert coordinator.status == "Evening discharge moved"
    assert (coordinator.status_detail or "").startswith("Discharge scheduled")
    stored = hass_storage[_storage_key(mock_config_entry_with_saj)]["data"]
    assert len(stored["prepared"]["periods"]) == 1

    await hass.config_entries.async_unload(mock_config_entry_with_saj.entry_id)


async def test_evening_check_keeps_discharge(
    hass: HomeAssistant,
    mock_config_entry_with_saj: MockConfigEntry,
    mock_saj_api: AsyncMock,
    day_start: datetime,
    default_states: None,
) -> None:
    """A cheaper morning keeps the evening discharge."""
    coordinator = await async_setup_integration(hass, mock_config_entry_with_saj)
    set_price_state(
        hass,
        make_raw_prices(day_start, DEFAULT_PRICES),
        make_raw_prices(day_start + timedelta(days=1), {8: 0.40}),
    )

    await coordinator.async_run_evening_check()

    assert coordinator.prepared_schema is not None
    assert coordinator.prepared_schema.periods == [CHARGE, DISCHARGE]

    await hass.config_entries.async_unload(mock_config_entry_with_saj.entry_id)


async def test_morning_discharge_applies_single_period(
    hass: HomeAssistant,
    mock_config_entry_with_saj: MockConfigEntry,
    mock_saj_api: AsyncMock,
    day_start: datetime,
    default_states: None,
) -> None:
    """The one-off morning discharge writes a single discharge period."""
    coordinator = await async_setup_integration(hass, mock_config_entry_with_saj)
    async_mock_service(hass, "switch", "turn_off")

    result = await coordinator.async_run_morning_discharge(
        day_start + timedelta(hours=13)
    )

    assert result is not None
    assert result.outcome is ApplyOutcome.APPLIED
    mock_saj_api.async_save_schedule.assert_awaited_once_with(
        [ChargingPeriod(ChargeType.DISCHARGE, time(13, 0), time(14, 0), 8000)]
    )

    await hass.config_entries.async_unload(mock_config_entry_with_saj.entry_id)


# ---------------------------------------------------------------------------
# Battery mode
# ---------------------------------------------------------------------------


async def test_mode_check_persists_changes(
    hass: HomeAssistant,
    hass_storage: dict[str, Any],
    mock_config_entry_with_saj: MockConfigEntry,
    mock_saj_api: AsyncMock,
    default_states: None,
) -> None:
    """The mode read at startup is stored and later changes are tracked."""
    coordinator = await async_setup_integration(hass, mock_config_entry_with_saj)
    assert coordinator.battery_mode == BatteryUserMode.TIME_OF_USE.value

    mock_saj_api.async_get_user_mode.return_value = BatteryUserMode.EMS
    await coordinator.async_check_battery_mode()

    assert coordinator.battery_mode == "EMS Mode"
    stored = hass_storage[_storage_key(mock_config_entry_with_saj)]["data"]
    assert stored["last_known_mode"] == "EMS Mode"
    assert stored["last_mode_change"] is not None

    await hass.config_entries.async_unload(mock_config_entry_with_saj.entry_id)


async def test_mode_check_failure(
    hass: HomeAssistant,
    mock_config_entry_with_saj: MockConfigEntry,
    mock_saj_api: AsyncMock,
    default_states: None,
) -> None:
    """A failed mode query shows the error text."""
    coordinator = await async_setup_integration(hass, mock_config_entry_with_saj)

    mock_saj_api.async_get_user_mode.side_effect = SajApiError("timeout")
    await coordinator.async_check_battery_mode()

    assert coordinator.battery_mode == MODE_ERROR_TEXT

    await hass.config_entries.async_unload(mock_config_entry_with_saj.entry_id)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


async def test_clear_schedule_service(
    hass: HomeAssistant,
    mock_config_entry_with_saj: MockConfigEntry,
    mock_saj_api: AsyncMock,
    default_states: None,
) -> None:
    """The clear service disables the battery schedule."""
    coordinator = await async_setup_integration(hass, mock_config_entry_with_saj)

    await hass.services.async_call(DOMAIN, "clear_schedule", blocking=True)

    mock_saj_api.async_clear_schedule.assert_awaited_once()
    assert coordinator.status == "Schedule cleared"

    await hass.config_entries.async_unload(mock_config_entry_with_saj.entry_id)


async def test_clear_schedule_service_failure(
    hass: HomeAssistant,
    mock_config_entry_with_saj: MockConfigEntry,
    mock_saj_api: AsyncMock,
    default_states: None,
) -> None:
    """A rejected clear raises an error to the caller."""
    await async_setup_integration(hass, mock_config_entry_with_saj)
    mock_saj_api.async_clear_schedule.return_value = False

    with pytest.raises(HomeAssistantError):
        await hass.services.async_call(DOMAIN, "clear_schedule", blocking=True)

    await hass.config_entries.async_unload(mock_config_entry_with_saj.entry_id)


async def test_recalculate_service_rebuilds(
    hass: HomeAssistant,
    mock_config_entry: MockConfigEntry,
    day_start: datetime,
    default_states: None,
) -> None:
    """The recalculate service picks up new prices."""
    coordinator = await async_setup_integration(hass, mock_config_entry)
    set_price_state(hass, make_raw_prices(day_start, {6: 0.05, 7: 0.05, 8: 0.05}))
    hass.states.async_set(SOC_ENTITY, "20")

    await hass.services.async_call(DOMAIN, "recalculate_schedule", blocking=True)

    assert coordinator.prepared_schema is not None
    assert coordinator.prepared_schema.periods == [
        ChargingPeriod(ChargeType.CHARGE, time(6, 0), time(9, 0), 8000)
    ]

    await hass.config_entries.async_unload(mock_config_entry.entry_id)


async def test_unload_removes_services(
    hass: HomeAssistant, mock_config_entry: MockConfigEntry, default_states: None
) -> None:
    """Services go away with the last entry."""
    await async_setup_integration(hass, mock_config_entry)
    assert hass.services.has_service(DOMAIN, "apply_schedule")

    assert await hass.config_entries.async_unload(mock_config_entry.entry_id)

    assert mock_config_entry.state is ConfigEntryState.NOT_LOADED
    assert not hass.services.has_service(DOMAIN, "apply_schedule")
    assert DOMAIN not in hass.data or not hass.data[DOMAIN]
