"""Button platform for Battery Scheduler."""

from __future__ import annotations

from homeassistant.components.button import ButtonEntity
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
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
    """Set up Battery Scheduler button entities."""
    coordinator: BatteryCoordinator = hass.data[DOMAIN][entry.entry_id]
    async_add_entities([BatteryRecalculateButton(coordinator, entry)])


class BatteryRecalculateButton(CoordinatorEntity[BatteryCoordinator], ButtonEntity):
    """Rebuild today's schedule from the current prices and SOC."""

    _attr_has_entity_name = True
    _attr_translation_key = "recalculate"
    _attr_icon = "mdi:refresh"

    def __init__(self, coordinator: BatteryCoordinator, entry: ConfigEntry) -> None:
        """Initialize the recalculate button."""
        super().__init__(coordinator)
        self._attr_unique_id = f"{entry.entry_id}_recalculate"
        self._attr_device_info = device_info(entry)

    async def async_press(self) -> None:
        """Rebuild the schedule."""
        await self.coordinator.async_prepare_schedule()
