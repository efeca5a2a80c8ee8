"""Switch platform for Battery Scheduler."""

from __future__ import annotations

from typing import Any

from homeassistant.components.switch import SwitchEntity
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant, callback
from homeassistant.helpers.entity_platform import AddConfigEntryEntitiesCallback
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .const import DOMAIN
from .coordinator import BatteryCoordinator
from .entity import device_info


async def async_setup_entry(
    hass: HomeAssistant,
    entry: ConfigEntry,
    async_add_entities: AddConfigEntryEntitiesCallback,
) -> None:
    """Set up Battery Scheduler switch entities."""
    coordinator: BatteryCoordinator = hass.data[DOMAIN][entry.entry_id]
    async_add_entities([BatterySchedulingSwitch(coordinator, entry)])


class BatterySchedulingSwitch(CoordinatorEntity[BatteryCoordinator], SwitchEntity):
    """Master switch to pause or resume applying schedules."""

    _attr_has_entity_name = True
    _attr_translation_key = "scheduling"

    def __init__(self, coordinator: BatteryCoordinator, entry: ConfigEntry) -> None:
        """Initialize the scheduling switch."""
        super().__init__(coordinator)
        self._attr_unique_id = f"{entry.entry_id}_scheduling"
        self._attr_device_info = device_info(entry)
        self._attr_is_on = coordinator.enabled

    @property
    def icon(self) -> str:
        """Return the icon."""
        return "mdi:calendar-check" if self.is_on else "mdi:calendar-remove"

    async def async_turn_on(self, **_kwargs: Any) -> None:
        """Resume scheduling."""
        self.coordinator.async_set_enabled(enabled=True)
        self._attr_is_on = True
        self.async_write_ha_state()

    async def async_turn_off(self, **_kwargs: Any) -> None:
        """Pause scheduling."""
        self.coordinator.async_set_enabled(enabled=False)
        self._attr_is_on = False
        self.async_write_ha_state()

    @callback
    def _handle_coordinator_update(self) -> None:
        """Sync state with coordinator."""
        self._attr_is_on = self.coordinator.enabled
        self.async_write_ha_state()
