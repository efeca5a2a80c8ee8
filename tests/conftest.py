"""Fixtures for Battery Scheduler tests."""

from __future__ import annotations

from collections.abc import Generator
from datetime import date, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from freezegun.api import FrozenDateTimeFactory
from homeassistant import loader
from homeassistant.core import HomeAssistant
from homeassistant.util import dt as dt_util
from pytest_homeassistant_custom_component.common import MockConfigEntry

from custom_components.battery_scheduler.const import (
    CONF_DEVICE_SN,
    CONF_EMS_SWITCH,
    CONF_PASSWORD,
    CONF_PLANT_UID,
    CONF_PRICE_ENTITY,
    CONF_SOC_ENTITY,
    CONF_USERNAME,
    DEFAULT_OPTIONS,
    DOMAIN,
)
from custom_components.battery_scheduler.coordinator import BatteryCoordinator
from custom_components.battery_scheduler.saj_api import BatteryUserMode

PRICE_ENTITY = "sensor.electricity_price"
SOC_ENTITY = "sensor.battery_soc"
EMS_SWITCH = "switch.battery_ems"

ENTITY_DATA = {
    CONF_PRICE_ENTITY: PRICE_ENTITY,
    CONF_SOC_ENTITY: SOC_ENTITY,
    CONF_EMS_SWITCH: EMS_SWITCH,
}

SAJ_DATA = {
    CONF_USERNAME: "user@example.com",
    CONF_PASSWORD: "secret",
    CONF_DEVICE_SN: "HST2083J2446E06861",
    CONF_PLANT_UID: "plant-123",
}

# A Monday.
MONDAY = date(2026, 2, 9)

# Cheap 02:00-05:00, peak at 19:00.
DEFAULT_PRICES = {2: 0.10, 3: 0.10, 4: 0.10, 19: 0.50}


@pytest.fixture(autouse=True)
def auto_enable_custom_integrations(hass: HomeAssistant) -> None:
    """Enable custom integrations in all tests."""
    hass.data.pop(loader.DATA_CUSTOM_COMPONENTS)


@pytest.fixture(autouse=True)
def _no_settle_delay() -> Generator[None]:
    """Skip the EMS settle delays."""
    with patch("custom_components.battery_scheduler.ems.asyncio.sleep"):
        yield


def make_raw_prices(
    day_start: datetime, prices: dict[int, float] | None = None, base: float = 0.25
) -> list[dict[str, Any]]:
    """Hourly ``raw_today`` style items; ``prices`` overrides single hours."""
    prices = prices or {}
    return [
        {
            "start": (day_start + timedelta(hours=hour)).isoformat(),
            "end": (day_start + timedelta(hours=hour + 1)).isoformat(),
            "value": prices.get(hour, base),
        }
        for hour in range(24)
    ]


def set_price_state(
    hass: HomeAssistant,
    today: list[dict[str, Any]],
    tomorrow: list[dict[str, Any]] | None = None,
) -> None:
    """Publish a price sensor state with raw price attributes."""
    hass.states.async_set(
        PRICE_ENTITY,
        str(today[0]["value"]) if today else "unknown",
        {"raw_today": today, "raw_tomorrow": tomorrow or []},
    )


@pytest.fixture
def mock_config_entry(hass: HomeAssistant) -> MockConfigEntry:
    """Create a config entry without SAJ credentials."""
    entry = MockConfigEntry(
        domain=DOMAIN,
        title="Battery Scheduler",
        data=dict(ENTITY_DATA),
        options=dict(DEFAULT_OPTIONS),
        unique_id=EMS_SWITCH,
    )
    entry.add_to_hass(hass)
    return entry


@pytest.fixture
def mock_config_entry_with_saj(hass: HomeAssistant) -> MockConfigEntry:
    """Create a config entry with SAJ credentials."""
    entry = MockConfigEntry(
        domain=DOMAIN,
        title="Battery Scheduler",
        data={**ENTITY_DATA, **SAJ_DATA},
        options=dict(DEFAULT_OPTIONS),
        unique_id=EMS_SWITCH,
    )
    entry.add_to_hass(hass)
    return entry


@pytest.fixture
def mock_setup_entry() -> Generator[None]:
    """Override async_setup_entry."""
    with patch(
        "custom_components.battery_scheduler.async_setup_entry",
        return_value=True,
    ):
        yield


@pytest.fixture
def mock_saj_api() -> Generator[AsyncMock]:
    """Mock the SajApiClient used by the coordinator."""
    mock_client = AsyncMock()
    mock_client.async_get_user_mode = AsyncMock(
        return_value=BatteryUserMode.TIME_OF_USE
    )
    mock_client.async_save_schedule = AsyncMock(return_value=True)
    mock_client.async_clear_schedule = AsyncMock(return_value=True)

    with patch(
        "custom_components.battery_scheduler.coordinator.SajApiClient",
        return_value=mock_client,
    ):
        yield mock_client


@pytest.fixture
def day_start(hass: HomeAssistant, freezer: FrozenDateTimeFactory) -> datetime:
    """Freeze time at noon on a Monday and return that day's local midnight."""
    start = dt_util.start_of_local_day(MONDAY)
    freezer.move_to(start + timedelta(hours=12))
    return start


def set_battery_states(hass: HomeAssistant, soc: str = "60", ems: str = "on") -> None:
    """Publish the SOC sensor and EMS switch states."""
    hass.states.async_set(SOC_ENTITY, soc)
    hass.states.async_set(EMS_SWITCH, ems)


async def async_setup_integration(
    hass: HomeAssistant, entry: MockConfigEntry
) -> BatteryCoordinator:
    """Set up the config entry and return its coordinator."""
    await hass.config_entries.async_setup(entry.entry_id)
    await hass.async_block_till_done()
    return hass.data[DOMAIN][entry.entry_id]


@pytest.fixture
def default_states(hass: HomeAssistant, day_start: datetime) -> None:
    """Prices for Monday, 60% SOC and EMS switched on."""
    set_price_state(hass, make_raw_prices(day_start, DEFAULT_PRICES))
    set_battery_states(hass)
