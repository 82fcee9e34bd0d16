"""Client tying sessions, the device registry and discovery together.

Handles returned by :meth:`TapoClient.connect` are the device hosts, the
client looks up (and if needed re-creates) the live session for every call:

>>> from tapoklap import Credentials, TapoClient
>>> async with TapoClient(credentials=Credentials("a@b.com", "pw")) as client:
>>>     handle = await client.connect("10.0.0.5")
>>>     await client.turn_on(handle)
>>>     await client.set_brightness(handle, 150)
>>>     info = await client.get_device_info(handle)
>>> info.is_on, info.brightness
(True, 100)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from types import TracebackType
from typing import Any, Self, TypeVar

from aiohttp import ClientSession

from .credentials import Credentials
from .device import (
    HSV,
    DeviceInfo,
    TapoDevice,
    clamp_brightness,
    clamp_color_temp,
)
from .discover import DiscoveryResult, OnProgressCallable, SubnetScanner
from .exceptions import DeviceCommandError, KlapException
from .json import DataClassJSONMixin
from .registry import (
    Capability,
    DeviceRecord,
    DeviceRegistry,
    DeviceRepository,
    InMemoryDeviceRepository,
    capabilities_for_model,
)
from .sessioncache import SessionCache

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")

DEFAULT_DEVICE_NAME = "Tapo Device"
UNKNOWN_MODEL = "Unknown"


def _is_generic_name(name: str | None) -> bool:
    """Return True for blank or placeholder names that should not be kept."""
    if not name or not name.strip():
        return True
    lowered = name.lower()
    return "new tapo" in lowered or "unknown" in lowered or name == DEFAULT_DEVICE_NAME


@dataclass
class DeviceStatus(DataClassJSONMixin):
    """A configured device together with its last known state."""

    host: str
    name: str
    model: str
    capabilities: list[Capability]
    online: bool = False
    info: DeviceInfo | None = None
    last_seen: datetime | None = None
    error: str | None = None

    @classmethod
    def from_record(cls, record: DeviceRecord) -> DeviceStatus:
        """Create an offline status from a registry record."""
        return cls(
            host=record.host,
            name=record.name,
            model=record.model,
            capabilities=list(record.capabilities),
        )


class TapoClient:
    """Control configured Tapo devices and discover new ones."""

    def __init__(
        self,
        *,
        credentials: Credentials | None = None,
        repository: DeviceRepository | None = None,
        timeout: int | None = None,
        session_ttl: float = SessionCache.DEFAULT_TTL,
        http_client: ClientSession | None = None,
    ) -> None:
        self._credentials = credentials
        self._timeout = timeout
        self._http_client = http_client
        self._registry = DeviceRegistry(repository or InMemoryDeviceRepository())
        self._sessions = SessionCache(
            credentials=credentials,
            timeout=timeout,
            ttl=session_ttl,
            http_client=http_client,
        )
        self._states: dict[str, DeviceStatus] = {}

    @property
    def registry(self) -> DeviceRegistry:
        """Return the device registry."""
        return self._registry

    @property
    def sessions(self) -> SessionCache:
        """Return the session cache."""
        return self._sessions

    async def connect(self, host: str) -> str:
        """Establish a session with host and return the handle to use for it."""
        await self._sessions.get(host)
        return host

    async def _run(
        self, host: str, action: Callable[[TapoDevice], Awaitable[_T]]
    ) -> _T:
        dev = await self._sessions.get(host)
        try:
            return await action(dev)
        except DeviceCommandError:
            raise
        except KlapException:
            # The protocol already retried once, start clean next time
            await self._sessions.invalidate(host, device=dev)
            raise

    def _remember(self, host: str, **changes: Any) -> None:
        cached = self._states.get(host)
        if cached is None and (record := self._registry.get(host)):
            cached = DeviceStatus.from_record(record)
        if cached:
            self._states[host] = replace(
                cached, online=True, last_seen=datetime.now(UTC), **changes
            )

    async def get_device_info(self, handle: str) -> DeviceInfo:
        """Return the current state of the device."""
        info = await self._run(handle, lambda dev: dev.get_device_info())
        self._remember(handle, info=info, error=None)
        return info

    async def _set_on(self, handle: str, on: bool) -> None:
        await self._run(handle, lambda dev: dev.set_state(on))
        _LOGGER.info("Tapo device %s turned %s", handle, "ON" if on else "OFF")
        if (cached := self._states.get(handle)) and cached.info:
            self._remember(handle, info=replace(cached.info, is_on=on))

    async def turn_on(self, handle: str) -> None:
        """Turn the device on."""
        await self._set_on(handle, True)

    async def turn_off(self, handle: str) -> None:
        """Turn the device off."""
        await self._set_on(handle, False)

    async def set_brightness(self, handle: str, brightness: int) -> None:
        """Set the brightness, clamped to 1-100."""
        brightness = clamp_brightness(brightness)
        await self._run(handle, lambda dev: dev.set_brightness(brightness))
        _LOGGER.info("Tapo device %s brightness set to %s%%", handle, brightness)

    async def set_hsv(self, handle: str, hue: int, saturation: int) -> None:
        """Set hue (0-360) and saturation (0-100)."""
        await self._run(handle, lambda dev: dev.set_hsv(hue, saturation))
        _LOGGER.info("Tapo device %s color set", handle)

    async def set_color(
        self, handle: str, color: str | HSV | tuple[int, int] | Mapping[str, int]
    ) -> None:
        """Set a color given as hex string or hue and saturation."""
        await self._run(handle, lambda dev: dev.set_color(color))
        _LOGGER.info("Tapo device %s color set", handle)

    async def set_color_temp(self, handle: str, temp: int) -> None:
        """Set the color temperature, clamped to 2000-9000K."""
        temp = clamp_color_temp(temp)
        await self._run(handle, lambda dev: dev.set_color_temp(temp))
        _LOGGER.info("Tapo device %s color temp set to %sK", handle, temp)

    async def get_devices(self) -> list[DeviceStatus]:
        """Return configured devices with their cached state, without connecting."""
        records = await self._registry.load()
        return [
            self._states.get(record.host) or DeviceStatus.from_record(record)
            for record in records
        ]

    async def _get_device_info_with_retry(self, host: str) -> DeviceInfo:
        try:
            return await self.get_device_info(host)
        except KlapException as ex:
            # _run already dropped a session that failed at the transport level
            _LOGGER.debug(
                "Tapo %s: first attempt failed, retrying with fresh session: %s",
                host,
                ex,
            )
            return await self.get_device_info(host)

    async def _refresh(self, record: DeviceRecord) -> DeviceStatus:
        try:
            info = await self._get_device_info_with_retry(record.host)
        except KlapException as ex:
            _LOGGER.warning(
                "Tapo device %s offline or unreachable: %s", record.host, ex
            )
            cached = self._states.get(record.host) or DeviceStatus.from_record(record)
            status = replace(cached, online=False, error=str(ex))
        else:
            status = DeviceStatus(
                host=record.host,
                name=record.name or info.name,
                model=info.model or record.model,
                capabilities=capabilities_for_model(info.model or record.model),
                online=True,
                info=info,
                last_seen=datetime.now(UTC),
            )
        self._states[record.host] = status
        return status

    async def refresh_devices(self) -> list[DeviceStatus]:
        """Query every configured device concurrently."""
        records = await self._registry.load()
        return list(await asyncio.gather(*(self._refresh(rec) for rec in records)))

    async def add_device(
        self, host: str, name: str | None = None, model: str | None = None
    ) -> DeviceRecord:
        """Add a device to the registry.

        The device is queried for its nickname and model, an unreachable
        device is added anyway.
        """
        await self._registry.load()
        if host in self._registry:
            raise KlapException(f"Device with IP {host} already configured")

        info: DeviceInfo | None = None
        try:
            info = await self.get_device_info(host)
        except KlapException as ex:
            _LOGGER.warning(
                "Could not connect to device at %s, adding anyway: %s", host, ex
            )

        reported_model = info.model if info else None
        # Prefer the device nickname unless a real name was given
        if _is_generic_name(name) and info:
            name = info.name
        record = DeviceRecord(
            host=host,
            name=name or DEFAULT_DEVICE_NAME,
            model=model or reported_model or UNKNOWN_MODEL,
            capabilities=capabilities_for_model(reported_model or model),
        )
        return await self._registry.add(record)

    async def remove_device(self, host: str) -> None:
        """Remove a device from the registry and drop its session."""
        await self._registry.load()
        await self._registry.remove(host)
        self._states.pop(host, None)
        await self._sessions.invalidate(host)

    async def discover(
        self,
        subnets: Iterable[str] | None = None,
        on_progress: OnProgressCallable | None = None,
    ) -> list[DiscoveryResult]:
        """Scan the local, configured and given subnets for devices."""
        await self._registry.load()
        scanner = SubnetScanner(
            credentials=self._credentials,
            registry=self._registry,
            timeout=self._timeout,
            http_client=self._http_client,
        )
        return await scanner.discover_all(subnets, on_progress)

    async def close(self) -> None:
        """Disconnect all sessions."""
        await self._sessions.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
