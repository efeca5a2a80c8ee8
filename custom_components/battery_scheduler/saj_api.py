"""
SAJ Elekeeper cloud API client.

Writes charge/discharge schedules to an SAJ hybrid inverter and reads the
battery user mode. Requests are signed the way the Elekeeper web portal
signs them and the login password is AES encrypted before it is sent.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import string
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

import aiohttp
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .const import SAJ_DEFAULT_BASE_URL
from .models import ChargingPeriod

_LOGGER = logging.getLogger(__name__)

LOGIN_PATH = "/dev-api/api/v1/sys/login"
ENERGY_FLOW_PATH = "/dev-api/api/v1/monitor/home/getDeviceEneryFlowData"
SAVE_SETTING_PATH = "/dev-api/api/v1/remote/client/saveCommonParaRemoteSetting"

APP_PROJECT_NAME = "elekeeper"
CLIENT_ID = "esolar-monitor-admin"
LANG = "en"
SIGN_KEY = "ktoKRLgQPjvNyUZO8lVc9kU1Bsip6XIe"
PASSWORD_KEY = bytes.fromhex("ec1840a7c53cf0709eb784be480379b6")
OPER_TYPE = 15

# Register layout of the schedule table: one enable register, then three
# registers per slot (start, end, power/weekdays).
ENABLE_ADDRESS = 0x3647
CHARGE_SLOT_BASE = 0x3606
DISCHARGE_SLOT_BASE = 0x361B
REGISTERS_PER_SLOT = 3
MAX_SLOTS_PER_TYPE = 7

CLEAR_COMM_ADDRESS = "3647|3647"
CLEAR_COMPONENT_ID = "|0"
CLEAR_TRANSFER_ID = "|"
CLEAR_VALUE = "0|0"

REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=15)
TOKEN_EXPIRY_MARGIN = timedelta(minutes=5)


class SajApiError(Exception):
    """Base exception for SAJ API errors."""


class SajAuthError(SajApiError):
    """Authentication failed."""


class BatteryUserMode(StrEnum):
    """Working mode reported by the inverter."""

    UNKNOWN = "Unknown"
    EMS = "EMS Mode"
    SELF_USE = "Self-Use Mode"
    TIME_OF_USE = "Time-of-Use Mode"
    BACKUP = "Backup Mode"
    FEED_IN_PRIORITY = "Feed-in Priority Mode"
    MANUAL = "Manual Mode"
    OFF_GRID = "Off-Grid Mode"

    @property
    def is_ems(self) -> bool:
        """Return True for the automatic EMS mode."""
        return self is BatteryUserMode.EMS

    @property
    def is_unknown(self) -> bool:
        """Return True when the mode could not be determined."""
        return self is BatteryUserMode.UNKNOWN

    @property
    def supports_automated_scheduling(self) -> bool:
        """Return True for modes that follow an uploaded schedule."""
        return self in (BatteryUserMode.EMS, BatteryUserMode.TIME_OF_USE)

    @classmethod
    def from_api_string(cls, value: str | None) -> BatteryUserMode:
        """
        Parse the ``userModeName`` string of the energy flow endpoint.

        Known spellings are matched exactly (case-insensitive), anything
        else falls back to keyword matching.
        """
        if not value or not value.strip():
            return cls.UNKNOWN

        text = value.strip().lower()
        exact = _EXACT_MODE_NAMES.get(text)
        if exact is not None:
            return exact

        if "ems" in text:
            return cls.EMS
        if "self" in text and "use" in text:
            return cls.SELF_USE
        if "time" in text and "use" in text:
            return cls.TIME_OF_USE
        if "backup" in text:
            return cls.BACKUP
        if "feed" in text and "priority" in text:
            return cls.FEED_IN_PRIORITY
        if "manual" in text:
            return cls.MANUAL
        if "off" in text and "grid" in text:
            return cls.OFF_GRID
        return cls.UNKNOWN


_EXACT_MODE_NAMES: dict[str, BatteryUserMode] = {
    **dict.fromkeys(("ems mode", "ems", "ems-mode"), BatteryUserMode.EMS),
    **dict.fromkeys(
        ("self-use mode", "self use mode", "self-use", "self use", "selfuse"),
        BatteryUserMode.SELF_USE,
    ),
    **dict.fromkeys(
        (
            "time-of-use mode",
            "time of use mode",
            "time-of-use",
            "time of use",
            "tou mode",
            "tou",
        ),
        BatteryUserMode.TIME_OF_USE,
    ),
    **dict.fromkeys(("backup mode", "backup"), BatteryUserMode.BACKUP),
    **dict.fromkeys(
        (
            "feed-in priority mode",
            "feed in priority mode",
            "feed-in priority",
            "feed in priority",
        ),
        BatteryUserMode.FEED_IN_PRIORITY,
    ),
    **dict.fromkeys(("manual mode", "manual"), BatteryUserMode.MANUAL),
    **dict.fromkeys(
        ("off-grid mode", "off grid mode", "off-grid", "off grid"),
        BatteryUserMode.OFF_GRID,
    ),
}


@dataclass(frozen=True)
class ScheduleParameters:
    """Form fields of a schedule write."""

    comm_address: str
    component_id: str
    transfer_id: str
    value: str


def _slot_addresses(base: int, index: int) -> str:
    first = base + index * REGISTERS_PER_SLOT
    return f"{first:X}|{first + 1:X}|{first + 2:X}_{first + 2:X}"


def build_schedule_parameters(periods: Iterable[ChargingPeriod]) -> ScheduleParameters:
    """
    Build the register addresses and value string for a list of periods.

    Charge periods occupy the charge slots and discharge periods the
    discharge slots, in the order given. The value string lists the
    periods in that same order after the enable flag.
    """
    periods = list(periods)
    if not periods:
        msg = "At least one charge or discharge period is required"
        raise SajApiError(msg)

    comm = [f"{ENABLE_ADDRESS:X}"]
    charge_index = 0
    discharge_index = 0
    for period in periods:
        if period.is_charge:
            comm.append(_slot_addresses(CHARGE_SLOT_BASE, charge_index))
            charge_index += 1
        else:
            comm.append(_slot_addresses(DISCHARGE_SLOT_BASE, discharge_index))
            discharge_index += 1

    if max(charge_index, discharge_index) > MAX_SLOTS_PER_TYPE:
        msg = (
            f"Inverter supports at most {MAX_SLOTS_PER_TYPE} periods per type, "
            f"got {charge_index} charge and {discharge_index} discharge"
        )
        raise SajApiError(msg)

    count = len(periods)
    return ScheduleParameters(
        comm_address="|".join(comm),
        component_id="|30|30|30_30" * count,
        transfer_id="|5|5|2_1" * count,
        value="|".join(["1", *(p.to_api_format() for p in periods)]),
    )


def encrypt_password(password: str) -> str:
    """AES-128-ECB encrypt the password with PKCS7 padding, hex encoded."""
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(password.encode()) + padder.finalize()
    encryptor = Cipher(algorithms.AES(PASSWORD_KEY), modes.ECB()).encryptor()  # noqa: S305
    return (encryptor.update(padded) + encryptor.finalize()).hex()


def sign_params(params: Mapping[str, str]) -> dict[str, str]:
    """Return ``params`` plus the ``signParams`` and ``signature`` fields."""
    keys = sorted(params)
    sign_string = "&".join(f"{key}={params[key]}" for key in keys)
    sign_string += f"&key={SIGN_KEY}"
    md5_hex = hashlib.md5(sign_string.encode("latin-1")).hexdigest()  # noqa: S324
    signature = hashlib.sha1(md5_hex.encode()).hexdigest().upper()  # noqa: S324
    return {**params, "signParams": ",".join(keys), "signature": signature}


def _random_token(length: int = 32) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def base_params() -> dict[str, str]:
    """Common parameters every signed request carries."""
    now = datetime.now(UTC)
    return {
        "appProjectName": APP_PROJECT_NAME,
        "clientDate": now.strftime("%Y-%m-%d"),
        "lang": LANG,
        "timeStamp": str(int(time.time() * 1000)),
        "random": _random_token(),
        "clientId": CLIENT_ID,
    }


class SajApiClient:
    """Client for the SAJ Elekeeper cloud portal."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        username: str,
        password: str,
        device_sn: str,
        plant_uid: str,
        base_url: str = SAJ_DEFAULT_BASE_URL,
    ) -> None:
        """Initialize the SAJ API client."""
        self._session = session
        self._username = username
        self._password = password
        self._device_sn = device_sn
        self._plant_uid = plant_uid
        self._base_url = base_url.rstrip("/")
        self._token: str | None = None
        self._token_expires: datetime | None = None

    @property
    def token_valid(self) -> bool:
        """Return True while the cached token has not expired."""
        return (
            self._token is not None
            and self._token_expires is not None
            and datetime.now(UTC) + TOKEN_EXPIRY_MARGIN < self._token_expires
        )

    def _auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Cookie": f"SAJ-token={self._token}",
            "lang": LANG,
            "Accept": "application/json, text/plain, */*",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        data: Mapping[str, str] | None = None,
        authenticated: bool = True,
    ) -> dict[str, Any]:
        """Send a request and return the decoded JSON body."""
        headers = self._auth_headers() if authenticated else {"lang": LANG}
        try:
            async with self._session.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                data=data,
                headers=headers,
                timeout=REQUEST_TIMEOUT,
            ) as resp:
                if resp.status == 401:  # noqa: PLR2004
                    self._token = None
                    msg = "SAJ portal rejected the credentials"
                    raise SajAuthError(msg)
                if resp.status != 200:  # noqa: PLR2004
                    msg = f"SAJ API returned HTTP {resp.status}"
                    raise SajApiError(msg)
                body = await resp.json(content_type=None)
        except aiohttp.ClientError as err:
            msg = f"Connection error to SAJ API: {err}"
            raise SajApiError(msg) from err

        if not isinstance(body, dict):
            msg = "Unexpected response from SAJ API"
            raise SajApiError(msg)
        return body

    async def async_login(self) -> None:
        """Log in and cache the bearer token."""
        params = base_params()
        signed = sign_params(params)
        form = {
            "lang": LANG,
            "password": encrypt_password(self._password),
            "rememberMe": "true",
            "username": self._username,
            "loginType": "1",
            **signed,
        }
        body = await self._request("POST", LOGIN_PATH, data=form, authenticated=False)

        data = body.get("data") or {}
        token = data.get("token")
        if not token:
            msg = body.get("errMsg") or "Login failed: no token returned"
            raise SajAuthError(msg)

        head = data.get("tokenHead") or ""
        # The head is usually "Bearer ", which the auth header adds itself.
        if head.strip().lower().startswith("bearer"):
            head = ""
        self._token = f"{head}{token}"
        expires_in = int(data.get("expiresIn") or 0)
        self._token_expires = datetime.now(UTC) + timedelta(seconds=expires_in)
        _LOGGER.debug("Logged in to SAJ portal, token valid for %ss", expires_in)

    async def _async_ensure_token(self) -> None:
        if not self.token_valid:
            await self.async_login()

    async def async_get_user_mode(self) -> BatteryUserMode:
        """Read the battery user mode from the energy flow endpoint."""
        await self._async_ensure_token()
        params = sign_params(
            {
                "plantUid": self._plant_uid,
                "deviceSn": self._device_sn,
                **base_params(),
            }
        )
        body = await self._request("GET", ENERGY_FLOW_PATH, params=params)
        if body.get("errCode") != 0:
            msg = f"Failed to read user mode: {body.get('errMsg', 'unknown error')}"
            raise SajApiError(msg)

        name = (body.get("data") or {}).get("userModeName")
        mode = BatteryUserMode.from_api_string(name)
        _LOGGER.debug("Battery user mode: %s (%s)", mode, name)
        return mode

    async def _async_save_setting(
        self, comm_address: str, component_id: str, transfer_id: str, value: str
    ) -> bool:
        await self._async_ensure_token()
        form = {
            **sign_params(base_params()),
            "deviceSn": self._device_sn,
            "isParallelBatchSetting": "0",
            "commAddress": comm_address,
            "componentId": component_id,
            "operType": str(OPER_TYPE),
            "transferId": transfer_id,
            "value": value,
        }
        body = await self._request("POST", SAVE_SETTING_PATH, data=form)
        if body.get("errCode") == 0:
            return True
        _LOGGER.error(
            "SAJ rejected the setting (errCode %s): %s",
            body.get("errCode"),
            body.get("errMsg"),
        )
        return False

    async def async_save_schedule(self, periods: Iterable[ChargingPeriod]) -> bool:
        """Upload a schedule. Returns False when the portal rejects it."""
        parameters = build_schedule_parameters(periods)
        _LOGGER.debug("Saving schedule value %s", parameters.value)
        return await self._async_save_setting(
            parameters.comm_address,
            parameters.component_id,
            parameters.transfer_id,
            parameters.value,
        )

    async def async_clear_schedule(self) -> bool:
        """Disable the uploaded schedule."""
        return await self._async_save_setting(
            CLEAR_COMM_ADDRESS, CLEAR_COMPONENT_ID, CLEAR_TRANSFER_ID, CLEAR_VALUE
        )
