"""Persistent schedule state for the Battery Scheduler integration."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from homeassistant.core import HomeAssistant
from homeassistant.exceptions import HomeAssistantError
from homeassistant.helpers.storage import Store

from .const import DOMAIN
from .models import ChargingSchema

_LOGGER = logging.getLogger(__name__)

STORAGE_VERSION = 1


class ScheduleStore:
    """
    Keep the prepared and applied schemas plus the last seen battery mode.

    Stored layout::

        {
            "prepared": {...} | None,
            "prepared_date": "2026-02-09" | None,
            "applied": {...} | None,
            "last_known_mode": "EMS Mode" | None,
            "last_mode_change": "2026-02-09T10:00:00+01:00" | None,
        }
    """

    def __init__(self, hass: HomeAssistant, entry_id: str) -> None:
        """Initialize the store."""
        self._store: Store[dict[str, Any]] = Store(
            hass, STORAGE_VERSION, f"{DOMAIN}.{entry_id}"
        )
        self._data: dict[str, Any] = {}

    async def async_load(self) -> None:
        """Load stored state; failures leave an empty state."""
        try:
            stored = await self._store.async_load()
        except (HomeAssistantError, OSError, ValueError):
            _LOGGER.warning("Could not load stored schedule state", exc_info=True)
            stored = None
        self._data = dict(stored) if stored else {}

    async def _async_save(self) -> None:
        try:
            await self._store.async_save(self._data)
        except (HomeAssistantError, OSError):
            _LOGGER.warning("Could not save schedule state", exc_info=True)

    def _schema(self, key: str) -> ChargingSchema | None:
        raw = self._data.get(key)
        if not raw:
            return None
        try:
            return ChargingSchema.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            _LOGGER.warning("Discarding unreadable stored %s schema", key)
            return None

    def prepared_schema_for(self, day: date) -> ChargingSchema | None:
        """Return the prepared schema if it was prepared for ``day``."""
        if self._data.get("prepared_date") != day.isoformat():
            return None
        return self._schema("prepared")

    async def async_save_prepared(self, schema: ChargingSchema, day: date) -> None:
        """Persist the prepared schema for ``day``."""
        self._data["prepared"] = schema.to_dict()
        self._data["prepared_date"] = day.isoformat()
        await self._async_save()

    @property
    def applied_schema(self) -> ChargingSchema | None:
        """Last schema that was written to the battery."""
        return self._schema("applied")

    async def async_save_applied(self, schema: ChargingSchema) -> None:
        """Persist the snapshot of a successful write."""
        self._data["applied"] = schema.to_dict()
        await self._async_save()

    async def async_clear_applied(self) -> None:
        """Forget the applied snapshot."""
        if self._data.pop("applied", None) is not None:
            await self._async_save()

    @property
    def last_known_mode(self) -> str | None:
        """Battery mode seen by the previous mode check."""
        return self._data.get("last_known_mode")

    @property
    def last_mode_change(self) -> datetime | None:
        """Time the battery mode last changed."""
        raw = self._data.get("last_mode_change")
        return datetime.fromisoformat(raw) if raw else None

    async def async_save_last_mode(self, mode: str, changed_at: datetime) -> None:
        """Remember a new battery mode and when it changed."""
        self._data["last_known_mode"] = mode
        self._data["last_mode_change"] = changed_at.isoformat()
        await self._async_save()
