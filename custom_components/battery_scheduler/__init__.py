"""The Battery Scheduler integration."""

from __future__ import annotations

import logging

import aiohttp
from homeassistant.config_entries import ConfigEntry
from homeassistant.const import Platform
from homeassistant.core import HomeAssistant, ServiceCall, callback
from homeassistant.exceptions import HomeAssistantError

from .const import DOMAIN
from .coordinator import BatteryCoordinator
from .saj_api import SajApiError

_LOGGER = logging.getLogger(__name__)

PLATFORMS: list[Platform] = [Platform.SENSOR, Platform.SWITCH, Platform.BUTTON]

SERVICE_RECALCULATE_SCHEDULE = "recalculate_schedule"
SERVICE_APPLY_SCHEDULE = "apply_schedule"
SERVICE_CLEAR_SCHEDULE = "clear_schedule"


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up Battery Scheduler from a config entry."""
    hass.data.setdefault(DOMAIN, {})

    coordinator = BatteryCoordinator(hass, entry)
    await coordinator.async_config_entry_first_refresh()
    await coordinator.async_start()

    hass.data[DOMAIN][entry.entry_id] = coordinator

    await hass.config_entries.async_forward_entry_setups(entry, PLATFORMS)

    _async_register_services(hass)

    # Option changes rebuild the coordinator with the new settings.
    entry.async_on_unload(entry.add_update_listener(_async_update_listener))

    return True


async def _async_update_listener(hass: HomeAssistant, entry: ConfigEntry) -> None:
    """Reload the entry when its options change."""
    await hass.config_entries.async_reload(entry.entry_id)


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload a config entry."""
    unload_ok = await hass.config_entries.async_unload_platforms(entry, PLATFORMS)
    if unload_ok:
        coordinator: BatteryCoordinator = hass.data[DOMAIN].pop(entry.entry_id)
        await coordinator.async_shutdown()

    if not hass.data[DOMAIN]:
        hass.services.async_remove(DOMAIN, SERVICE_RECALCULATE_SCHEDULE)
        hass.services.async_remove(DOMAIN, SERVICE_APPLY_SCHEDULE)
        hass.services.async_remove(DOMAIN, SERVICE_CLEAR_SCHEDULE)

    return unload_ok


@callback
def _async_register_services(hass: HomeAssistant) -> None:
    """Register Battery Scheduler services (idempotent)."""
    if hass.services.has_service(DOMAIN, SERVICE_RECALCULATE_SCHEDULE):
        return

    def _get_coordinators() -> list[BatteryCoordinator]:
        return list(hass.data.get(DOMAIN, {}).values())

    async def async_handle_recalculate(call: ServiceCall) -> None:  # noqa: ARG001
        """Rebuild today's schedule."""
        for coordinator in _get_coordinators():
            await coordinator.async_prepare_schedule()

    async def async_handle_apply(call: ServiceCall) -> None:  # noqa: ARG001
        """Turn EMS off and apply the prepared schedule now."""
        for coordinator in _get_coordinators():
            await coordinator.async_run_window_start()

    async def async_handle_clear(call: ServiceCall) -> None:  # noqa: ARG001
        """Disable the schedule stored on the battery."""
        for coordinator in _get_coordinators():
            try:
                cleared = await coordinator.async_clear_schedule()
            except (SajApiError, aiohttp.ClientError, TimeoutError) as err:
                msg = f"Clearing the battery schedule failed: {err}"
                raise HomeAssistantError(msg) from err
            if not cleared:
                msg = "Clearing the battery schedule failed, see the log"
                raise HomeAssistantError(msg)

    hass.services.async_register(
        DOMAIN, SERVICE_RECALCULATE_SCHEDULE, async_handle_recalculate
    )
    hass.services.async_register(DOMAIN, SERVICE_APPLY_SCHEDULE, async_handle_apply)
    hass.services.async_register(DOMAIN, SERVICE_CLEAR_SCHEDULE, async_handle_clear)
