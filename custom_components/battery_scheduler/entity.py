"""Shared entity helpers for Battery Scheduler."""

from __future__ import annotations

from homeassistant.config_entries import ConfigEntry
from homeassistant.helpers.device_registry import DeviceEntryType, DeviceInfo

from .const import DOMAIN


def device_info(entry: ConfigEntry) -> DeviceInfo:
    """Return the shared Battery Scheduler device info."""
    return DeviceInfo(
        identifiers={(DOMAIN, entry.entry_id)},
        name="Battery Scheduler",
        manufacturer="Battery Scheduler",
        entry_type=DeviceEntryType.SERVICE,
    )
