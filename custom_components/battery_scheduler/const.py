"""Constants for the Battery Scheduler integration."""

DOMAIN = "battery_scheduler"

# Entity config keys
CONF_PRICE_ENTITY = "price_entity"
CONF_SOC_ENTITY = "soc_entity"
CONF_EMS_SWITCH = "ems_switch"

# SAJ Elekeeper gateway config keys
CONF_USERNAME = "username"
CONF_PASSWORD = "password"  # noqa: S105
CONF_DEVICE_SN = "device_serial_number"
CONF_PLANT_UID = "plant_uid"
CONF_BASE_URL = "base_url"

SAJ_DEFAULT_BASE_URL = "https://eop.saj-electric.com"

# Option keys (battery and timing tunables)
CONF_SIMULATION_MODE = "simulation_mode"
CONF_EMS_PREP_MINUTES = "ems_prep_minutes_before"
CONF_EMS_RESTORE_MINUTES = "ems_restore_minutes_after"
CONF_MORNING_CHECK_OFFSET = "morning_check_offset_hours"
CONF_MORNING_WINDOW_START = "morning_window_start_hour"
CONF_MORNING_WINDOW_END = "morning_window_end_hour"
CONF_EVENING_THRESHOLD = "evening_threshold_hour"
CONF_MAX_INVERTER_POWER = "max_inverter_power_w"
CONF_BATTERY_CAPACITY = "battery_capacity_wh"
CONF_CHARGE_POWER = "charge_power_w"
CONF_DISCHARGE_POWER = "discharge_power_w"
CONF_MIN_CHARGE_BUFFER = "min_charge_buffer_minutes"
CONF_MORNING_SOC_THRESHOLD = "morning_soc_threshold"
CONF_HIGH_SOC_THRESHOLD = "high_soc_threshold"
CONF_MINIMUM_SOC = "minimum_soc"
CONF_EVENING_TARGET_SOC = "evening_target_soc"
CONF_DAILY_CONSUMPTION_SOC = "daily_consumption_soc"

DEFAULT_OPTIONS: dict[str, float | int | bool] = {
    CONF_SIMULATION_MODE: False,
    CONF_EMS_PREP_MINUTES: 5,
    CONF_EMS_RESTORE_MINUTES: 1,
    CONF_MORNING_CHECK_OFFSET: 2,
    CONF_MORNING_WINDOW_START: 6,
    CONF_MORNING_WINDOW_END: 12,
    CONF_EVENING_THRESHOLD: 17,
    CONF_MAX_INVERTER_POWER: 8000,
    CONF_BATTERY_CAPACITY: 25000,
    CONF_CHARGE_POWER: 8000,
    CONF_DISCHARGE_POWER: 8000,
    CONF_MIN_CHARGE_BUFFER: 10,
    CONF_MORNING_SOC_THRESHOLD: 40.0,
    CONF_HIGH_SOC_THRESHOLD: 70.0,
    CONF_MINIMUM_SOC: 10.0,
    CONF_EVENING_TARGET_SOC: 30.0,
    CONF_DAILY_CONSUMPTION_SOC: 15.0,
}

# Scheduling
BASELINE_CHARGE_HOURS = 3.0
DISCHARGE_WINDOW_HOURS = 1.0
MIN_DISCHARGE_HOURS = 0.25
MAX_DISCHARGE_HOURS = 3.0
MIN_PRICE_POINTS = 3
CROSS_DAY_MIN_SAVINGS = 0.05
CROSS_DAY_DISCHARGE_PREMIUM = 1.15
EVENING_CHECK_LEAD_MINUTES = 30
MORNING_DISCHARGE_HOURS = 1.0
SOC_FALLBACK_PERCENT = 50.0

# Timers
DAILY_BUILD_HOUR = 0
DAILY_BUILD_MINUTE = 5
INSUFFICIENT_DATA_RETRY_MINUTES = 10
RETRY_BOUNDARY_MINUTES = 5
EMS_SETTLE_SECONDS = 5
EMS_WINDOW_MERGE_GAP_MINUTES = 1

MODE_ERROR_TEXT = "Error - Check Logs"
