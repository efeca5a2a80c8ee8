"""Config flow for the Battery Scheduler integration."""

from __future__ import annotations

import logging
from typing import Any

import aiohttp
import voluptuous as vol
from homeassistant.config_entries import (
    ConfigEntry,
    ConfigFlow,
    ConfigFlowResult,
    OptionsFlow,
)
from homeassistant.core import callback
from homeassistant.helpers.aiohttp_client import async_get_clientsession
from homeassistant.helpers.selector import (
    BooleanSelector,
    EntitySelector,
    EntitySelectorConfig,
    NumberSelector,
    NumberSelectorConfig,
    NumberSelectorMode,
    TextSelector,
    TextSelectorConfig,
    TextSelectorType,
)

from .const import (
    CONF_BASE_URL,
    CONF_BATTERY_CAPACITY,
    CONF_CHARGE_POWER,
    CONF_DAILY_CONSUMPTION_SOC,
    CONF_DEVICE_SN,
    CONF_DISCHARGE_POWER,
    CONF_EMS_PREP_MINUTES,
    CONF_EMS_RESTORE_MINUTES,
    CONF_EMS_SWITCH,
    CONF_EVENING_TARGET_SOC,
    CONF_EVENING_THRESHOLD,
    CONF_HIGH_SOC_THRESHOLD,
    CONF_MAX_INVERTER_POWER,
    CONF_MIN_CHARGE_BUFFER,
    CONF_MINIMUM_SOC,
    CONF_MORNING_CHECK_OFFSET,
    CONF_MORNING_SOC_THRESHOLD,
    CONF_MORNING_WINDOW_END,
    CONF_MORNING_WINDOW_START,
    CONF_PASSWORD,
    CONF_PLANT_UID,
    CONF_PRICE_ENTITY,
    CONF_SIMULATION_MODE,
    CONF_SOC_ENTITY,
    CONF_USERNAME,
    DEFAULT_OPTIONS,
    DOMAIN,
    SAJ_DEFAULT_BASE_URL,
)
from .saj_api import SajApiClient, SajApiError, SajAuthError

_LOGGER = logging.getLogger(__name__)

STEP_USER_DATA_SCHEMA = vol.Schema(
    {
        vol.Required(CONF_PRICE_ENTITY): EntitySelector(
            EntitySelectorConfig(domain="sensor")
        ),
        vol.Required(CONF_SOC_ENTITY): EntitySelector(
            EntitySelectorConfig(domain="sensor", device_class="battery")
        ),
        vol.Required(CONF_EMS_SWITCH): EntitySelector(
            EntitySelectorConfig(domain=["switch", "input_boolean"])
        ),
    }
)

STEP_SAJ_DATA_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_USERNAME): str,
        vol.Optional(CONF_PASSWORD): TextSelector(
            TextSelectorConfig(type=TextSelectorType.PASSWORD)
        ),
        vol.Optional(CONF_DEVICE_SN): str,
        vol.Optional(CONF_PLANT_UID): str,
        vol.Optional(CONF_BASE_URL, default=SAJ_DEFAULT_BASE_URL): TextSelector(
            TextSelectorConfig(type=TextSelectorType.URL)
        ),
    }
)

SAJ_CREDENTIAL_KEYS = (CONF_USERNAME, CONF_PASSWORD, CONF_DEVICE_SN, CONF_PLANT_UID)


def _number(
    minimum: float, maximum: float, step: float = 1, unit: str | None = None
) -> NumberSelector:
    return NumberSelector(
        NumberSelectorConfig(
            min=minimum,
            max=maximum,
            step=step,
            unit_of_measurement=unit,
            mode=NumberSelectorMode.BOX,
        )
    )


OPTION_SELECTORS: dict[str, Any] = {
    CONF_SIMULATION_MODE: BooleanSelector(),
    CONF_EMS_PREP_MINUTES: _number(0, 30, unit="min"),
    CONF_EMS_RESTORE_MINUTES: _number(0, 30, unit="min"),
    CONF_MORNING_CHECK_OFFSET: _number(0, 12, unit="h"),
    CONF_MORNING_WINDOW_START: _number(0, 23, unit="h"),
    CONF_MORNING_WINDOW_END: _number(1, 24, unit="h"),
    CONF_EVENING_THRESHOLD: _number(0, 23, unit="h"),
    CONF_MAX_INVERTER_POWER: _number(100, 50000, 100, "W"),
    CONF_BATTERY_CAPACITY: _number(1000, 200000, 100, "Wh"),
    CONF_CHARGE_POWER: _number(100, 50000, 100, "W"),
    CONF_DISCHARGE_POWER: _number(100, 50000, 100, "W"),
    CONF_MIN_CHARGE_BUFFER: _number(0, 120, unit="min"),
    CONF_MORNING_SOC_THRESHOLD: _number(0, 100, 0.5, "%"),
    CONF_HIGH_SOC_THRESHOLD: _number(0, 100, 0.5, "%"),
    CONF_MINIMUM_SOC: _number(0, 100, 0.5, "%"),
    CONF_EVENING_TARGET_SOC: _number(0, 100, 0.5, "%"),
    CONF_DAILY_CONSUMPTION_SOC: _number(0, 100, 0.5, "%"),
}


class BatterySchedulerConfigFlow(ConfigFlow, domain=DOMAIN):
    """Handle a config flow for Battery Scheduler."""

    VERSION = 1

    def __init__(self) -> None:
        """Initialize the config flow."""
        self._entities: dict[str, Any] = {}

    async def async_step_user(
        self, user_input: dict[str, Any] | None = None
    ) -> ConfigFlowResult:
        """Handle the initial step: pick the price, SOC and EMS entities."""
        if user_input is not None:
            await self.async_set_unique_id(user_input[CONF_EMS_SWITCH])
            self._abort_if_unique_id_configured()
            self._entities = user_input
            return await self.async_step_saj()

        return self.async_show_form(step_id="user", data_schema=STEP_USER_DATA_SCHEMA)

    async def async_step_saj(
        self, user_input: dict[str, Any] | None = None
    ) -> ConfigFlowResult:
        """Handle optional SAJ Elekeeper credentials."""
        errors: dict[str, str] = {}

        if user_input is not None:
            credentials = {k: user_input.get(k) for k in SAJ_CREDENTIAL_KEYS}
            if not any(credentials.values()):
                return self._create_entry({})

            if not all(credentials.values()):
                errors["base"] = "incomplete_credentials"
            else:
                client = SajApiClient(
                    async_get_clientsession(self.hass),
                    user_input[CONF_USERNAME],
                    user_input[CONF_PASSWORD],
                    user_input[CONF_DEVICE_SN],
                    user_input[CONF_PLANT_UID],
                    user_input.get(CONF_BASE_URL) or SAJ_DEFAULT_BASE_URL,
                )
                try:
                    await client.async_login()
                except SajAuthError:
                    errors["base"] = "invalid_auth"
                except (SajApiError, aiohttp.ClientError, TimeoutError):
                    errors["base"] = "cannot_connect"
                except Exception:
                    _LOGGER.exception("Unexpected error validating SAJ credentials")
                    errors["base"] = "unknown"
                else:
                    return self._create_entry(user_input)

        return self.async_show_form(
            step_id="saj",
            data_schema=self.add_suggested_values_to_schema(
                STEP_SAJ_DATA_SCHEMA, user_input or {}
            ),
            errors=errors,
        )

    def _create_entry(self, saj: dict[str, Any]) -> ConfigFlowResult:
        return self.async_create_entry(
            title="Battery Scheduler",
            data={**self._entities, **saj},
            options=dict(DEFAULT_OPTIONS),
        )

    @staticmethod
    @callback
    def async_get_options_flow(config_entry: ConfigEntry) -> OptionsFlow:  # noqa: ARG004
        """Return the options flow."""
        return BatterySchedulerOptionsFlow()


class BatterySchedulerOptionsFlow(OptionsFlow):
    """Tune battery capabilities and scheduling thresholds."""

    async def async_step_init(
        self, user_input: dict[str, Any] | None = None
    ) -> ConfigFlowResult:
        """Manage the options."""
        errors: dict[str, str] = {}

        if user_input is not None:
            if (
                user_input[CONF_MORNING_WINDOW_START]
                >= user_input[CONF_MORNING_WINDOW_END]
            ):
                errors["base"] = "invalid_morning_window"
            else:
                return self.async_create_entry(title="", data=user_input)

        current = {**DEFAULT_OPTIONS, **self.config_entry.options}
        schema = vol.Schema(
            {
                vol.Required(key, default=current[key]): selector
                for key, selector in OPTION_SELECTORS.items()
            }
        )
        return self.async_show_form(step_id="init", data_schema=schema, errors=errors)
