"""Tapo plug and bulb device.

A :class:`TapoDevice` wraps a :class:`SmartProtocol` talking KLAP to a single
host and exposes the handful of commands plugs and bulbs understand.

>>> from tapoklap import Credentials, DeviceConfig, TapoDevice
>>> config = DeviceConfig("127.0.0.1", credentials=Credentials("a@b.com", "pw"))
>>> dev = await TapoDevice.connect(config=config)
>>> dev.is_on
False
>>> await dev.turn_on()
>>> await dev.set_brightness(150)  # clamped to 100
>>> (await dev.get_device_info()).brightness
100
"""

from __future__ import annotations

import base64
import binascii
import colorsys
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, NamedTuple

from .deviceconfig import DeviceConfig
from .exceptions import KlapException
from .json import DataClassJSONMixin
from .protocols import BaseProtocol, SmartProtocol
from .transports import KlapTransport

_LOGGER = logging.getLogger(__name__)

BRIGHTNESS_MIN = 1
BRIGHTNESS_MAX = 100
COLOR_TEMP_MIN = 2000
COLOR_TEMP_MAX = 9000
HUE_MAX = 360
SATURATION_MAX = 100


class HSV(NamedTuple):
    """Hue and saturation of a color bulb."""

    hue: int
    saturation: int


def decode_nickname(nickname: str | None) -> str:
    """Decode the base64 encoded nickname returned by the device."""
    if not nickname:
        return "Unnamed Device"
    try:
        return base64.b64decode(nickname, validate=True).decode()
    except (binascii.Error, UnicodeDecodeError):
        return nickname


def hex_to_hsv(color: str) -> HSV:
    """Convert a ``#rrggbb`` string to hue (0-360) and saturation (0-100)."""
    value = color.strip().removeprefix("#")
    try:
        if len(value) != 6:
            raise ValueError
        red, green, blue = (int(value[i : i + 2], 16) / 255 for i in (0, 2, 4))
    except ValueError as ex:
        raise ValueError(f"Invalid hex color: {color}") from ex
    hue, saturation, _ = colorsys.rgb_to_hsv(red, green, blue)
    return HSV(round(hue * HUE_MAX) % HUE_MAX, round(saturation * SATURATION_MAX))


def _clamp(value: int, minimum: int, maximum: int) -> int:
    return max(minimum, min(maximum, value))


def clamp_brightness(brightness: int) -> int:
    """Return the brightness the device is sent for the requested value."""
    return _clamp(int(brightness), BRIGHTNESS_MIN, BRIGHTNESS_MAX)


def clamp_color_temp(temp: int) -> int:
    """Return the color temperature the device is sent for the requested value."""
    return _clamp(int(temp), COLOR_TEMP_MIN, COLOR_TEMP_MAX)


@dataclass
class DeviceInfo(DataClassJSONMixin):
    """Snapshot of the state reported by get_device_info."""

    device_id: str | None
    name: str
    model: str | None
    device_type: str | None
    is_on: bool
    brightness: int | None = None
    color_temp: int | None = None
    hue: int | None = None
    saturation: int | None = None
    signal_level: int | None = None
    overheated: bool | None = None

    @classmethod
    def from_info(cls, info: dict[str, Any]) -> DeviceInfo:
        """Create a snapshot from a raw get_device_info result."""
        return cls(
            device_id=info.get("device_id"),
            name=decode_nickname(info.get("nickname")),
            model=info.get("model"),
            device_type=info.get("type"),
            is_on=bool(info.get("device_on")),
            brightness=info.get("brightness"),
            color_temp=info.get("color_temp"),
            hue=info.get("hue"),
            saturation=info.get("saturation"),
            signal_level=info.get("signal_level"),
            overheated=info.get("overheated"),
        )


class TapoDevice:
    """A Tapo plug or bulb reachable over KLAP."""

    def __init__(
        self,
        host: str,
        *,
        config: DeviceConfig | None = None,
        protocol: BaseProtocol | None = None,
    ) -> None:
        """Create a new device instance.

        :param str host: host name or IP address of the device
        :param DeviceConfig config: device configuration
        :param BaseProtocol protocol: protocol for communicating with the device
        """
        self.host = host
        self.protocol: BaseProtocol = protocol or SmartProtocol(
            transport=KlapTransport(config=config or DeviceConfig(host=host)),
        )
        self._info: dict[str, Any] = {}
        _LOGGER.debug("Initializing %s", host)

    @classmethod
    async def connect(
        cls,
        *,
        host: str | None = None,
        config: DeviceConfig | None = None,
    ) -> TapoDevice:
        """Connect to the device, perform the handshake and fetch its state."""
        if host and config:
            raise KlapException("Pass either host or config, not both")
        if config is None:
            if host is None:
                raise KlapException("host or config must be provided")
            config = DeviceConfig(host=host)

        dev = cls(config.host, config=config)
        try:
            await dev.update()
        except Exception:
            await dev.disconnect()
            raise
        return dev

    @property
    def config(self) -> DeviceConfig:
        """Return the device configuration."""
        return self.protocol.config

    async def _query_helper(self, method: str, params: dict | None = None) -> Any:
        res = await self.protocol.query({method: params})
        return res[method]

    async def update(self) -> None:
        """Fetch the latest device state."""
        self._info = await self._query_helper("get_device_info")

    async def get_device_info(self) -> DeviceInfo:
        """Query the device and return a snapshot of its state."""
        await self.update()
        return DeviceInfo.from_info(self._info)

    @property
    def internal_state(self) -> dict[str, Any]:
        """Return the raw device info of the last update."""
        return self._info

    @property
    def device_id(self) -> str | None:
        """Return the device id."""
        return self._info.get("device_id")

    @property
    def alias(self) -> str | None:
        """Return the decoded device nickname."""
        if not self._info:
            return None
        return decode_nickname(self._info.get("nickname"))

    @property
    def model(self) -> str | None:
        """Return the device model."""
        return self._info.get("model")

    @property
    def is_on(self) -> bool:
        """Return true if the device is on."""
        return bool(self._info.get("device_on"))

    @property
    def brightness(self) -> int | None:
        """Return the brightness in percent, None for plugs."""
        return self._info.get("brightness")

    @property
    def color_temp(self) -> int | None:
        """Return the color temperature in kelvin, 0 when a color is set."""
        return self._info.get("color_temp")

    @property
    def hsv(self) -> HSV | None:
        """Return the current hue and saturation, None for non-color devices."""
        if "hue" not in self._info:
            return None
        return HSV(self._info.get("hue", 0), self._info.get("saturation", 0))

    async def _set_device_info(self, params: dict[str, Any]) -> Any:
        return await self._query_helper("set_device_info", params)

    async def set_state(self, on: bool) -> Any:
        """Set the device state."""
        res = await self._set_device_info({"device_on": on})
        self._info["device_on"] = on
        return res

    async def turn_on(self) -> Any:
        """Turn the device on."""
        return await self.set_state(True)

    async def turn_off(self) -> Any:
        """Turn the device off."""
        return await self.set_state(False)

    async def set_brightness(self, brightness: int) -> Any:
        """Set the brightness, values outside 1-100 are clamped."""
        brightness = clamp_brightness(brightness)
        return await self._set_device_info({"brightness": brightness})

    async def set_hsv(self, hue: int, saturation: int) -> Any:
        """Set a new color.

        :param int hue: hue in degrees [0, 360]
        :param int saturation: saturation in percentage [0, 100]
        """
        if not isinstance(hue, int):
            raise TypeError("Hue must be an integer")
        if not (0 <= hue <= HUE_MAX):
            raise ValueError(f"Invalid hue value: {hue} (valid range: 0-{HUE_MAX})")

        if not isinstance(saturation, int):
            raise TypeError("Saturation must be an integer")
        if not (0 <= saturation <= SATURATION_MAX):
            raise ValueError(
                f"Invalid saturation value: {saturation} (valid range: 0-100%)"
            )

        return await self._set_device_info(
            {
                "hue": hue,
                "saturation": saturation,
                "color_temp": 0,  # If set, color_temp takes precedence over hue&sat
            }
        )

    async def set_color(
        self, color: str | HSV | tuple[int, int] | Mapping[str, int]
    ) -> Any:
        """Set a color given as a hex string, a (hue, saturation) pair or mapping.

        A mapping without a saturation uses full saturation.
        """
        if isinstance(color, str):
            hsv = hex_to_hsv(color)
        elif isinstance(color, Mapping):
            hsv = HSV(color["hue"], color.get("saturation", SATURATION_MAX))
        else:
            hsv = HSV(*color)
        return await self.set_hsv(hsv.hue, hsv.saturation)

    async def set_color_temp(self, temp: int) -> Any:
        """Set the color temperature, values outside 2000-9000K are clamped."""
        temp = clamp_color_temp(temp)
        return await self._set_device_info({"color_temp": temp})

    async def disconnect(self) -> None:
        """Disconnect and close any underlying connection resources."""
        await self.protocol.close()

    def __repr__(self) -> str:
        if not self._info:
            return f"<{self.__class__.__name__} at {self.host} - update() needed>"
        return f"<{self.__class__.__name__} {self.model} at {self.host} - {self.alias}>"
