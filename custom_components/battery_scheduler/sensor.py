"""Sensor platform for Battery Scheduler."""

from __future__ import annotations

from typing import Any

from homeassistant.components.sensor import SensorEntity
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
    """Set up Battery Scheduler sensor entities."""
    coordinator: BatteryCoordinator = hass.data[DOMAIN][entry.entry_id]

    entities: list[SensorEntity] = [
        BatteryStatusSensor(coordinator, entry),
        BatteryNextEventSensor(coordinator, entry),
        BatteryScheduleTextSensor(coordinator, entry, charge=True),
        BatteryScheduleTextSensor(coordinator, entry, charge=False),
    ]
    if coordinator.gateway_configured:
        entities.append(BatteryModeSensor(coordinator, entry))

    async_add_entities(entities)


class _BatterySensor(CoordinatorEntity[BatteryCoordinator], SensorEntity):
    """Base for text sensors that mirror coordinator state."""

    _attr_has_entity_name = True

    def __init__(
        self, coordinator: BatteryCoordinator, entry: ConfigEntry, key: str
    ) -> None:
        """Initialize the sensor."""
        super().__init__(coordinator)
        self._attr_translation_key = key
        self._attr_unique_id = f"{entry.entry_id}_{key}"
        self._attr_device_info = device_info(entry)
        self._update_from_coordinator()

    @callback
    def _handle_coordinator_update(self) -> None:
        """Handle updated data from the coordinator."""
        self._update_from_coordinator()
        self.async_write_ha_state()

    @callback
    def _update_from_coordinator(self) -> None:
        raise NotImplementedError


class BatteryStatusSensor(_BatterySensor):
    """Dashboard status plus the prepared periods as attributes."""

    _attr_icon = "mdi:battery-clock"

    def __init__(self, coordinator: BatteryCoordinator, entry: ConfigEntry) -> None:
        """Initialize the status sensor."""
        super().__init__(coordinator, entry, "status")

    @callback
    def _update_from_coordinator(self) -> None:
        coordinator = self.coordinator
        self._attr_native_value = coordinator.status

        schema = coordinator.prepared_schema
        attrs: dict[str, Any] = {
            "detail": coordinator.status_detail,
            "scheduling_enabled": coordinator.enabled,
            "simulation_mode": coordinator.simulation_mode,
            "periods": [p.to_dict() for p in schema.periods] if schema else [],
        }
        if schema is not None and schema.created_at is not None:
            attrs["prepared_at"] = schema.created_at.isoformat()
        if coordinator.last_apply is not None:
            attrs["last_apply"] = coordinator.last_apply.outcome.value
            attrs["last_apply_reason"] = coordinator.last_apply.reason
        if coordinator.retry.scheduled_for is not None:
            attrs["retry_at"] = coordinator.retry.scheduled_for.isoformat()
        self._attr_extra_state_attributes = attrs


class BatteryNextEventSensor(_BatterySensor):
    """Running or next charge/discharge period."""

    _attr_icon = "mdi:calendar-clock"

    def __init__(self, coordinator: BatteryCoordinator, entry: ConfigEntry) -> None:
        """Initialize the next event sensor."""
        super().__init__(coordinator, entry, "next_event")

    @callback
    def _update_from_coordinator(self) -> None:
        self._attr_native_value = self.coordinator.next_event()


class BatteryScheduleTextSensor(_BatterySensor):
    """Applied charge or discharge span as ``HH:MM-HH:MM``."""

    def __init__(
        self, coordinator: BatteryCoordinator, entry: ConfigEntry, *, charge: bool
    ) -> None:
        """Initialize the schedule text sensor."""
        self._charge = charge
        self._attr_icon = "mdi:battery-charging" if charge else "mdi:battery-arrow-down"
        super().__init__(
            coordinator, entry, "charge_schedule" if charge else "discharge_schedule"
        )

    @callback
    def _update_from_coordinator(self) -> None:
        self._attr_native_value = (
            self.coordinator.charge_schedule_text
            if self._charge
            else self.coordinator.discharge_schedule_text
        )


class BatteryModeSensor(_BatterySensor):
    """Battery user mode reported by the inverter."""

    _attr_icon = "mdi:home-battery"

    def __init__(self, coordinator: BatteryCoordinator, entry: ConfigEntry) -> None:
        """Initialize the battery mode sensor."""
        super().__init__(coordinator, entry, "battery_mode")

    @callback
    def _update_from_coordinator(self) -> None:
        self._attr_native_value = self.coordinator.battery_mode
