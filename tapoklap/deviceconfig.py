"""Configuration for connecting directly to a device.

>>> from tapoklap import Credentials, DeviceConfig, TapoDevice
>>> config = DeviceConfig(
>>>     "127.0.0.3",
>>>     credentials=Credentials("user@example.com", "great_password"),
>>> )
>>> device = await TapoDevice.connect(config=config)
>>> print(device.alias)
Living Room Bulb

:meth:`DeviceConfig.to_dict` can be used to store the configuration for later,
the http client is never serialized.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Self

from aiohttp import ClientSession
from mashumaro import field_options
from mashumaro.config import BaseConfig
from mashumaro.types import SerializationStrategy

from .credentials import Credentials
from .json import DataClassJSONMixin

_LOGGER = logging.getLogger(__name__)


class _DeviceConfigBaseMixin(DataClassJSONMixin):
    """Base class for serialization mixin."""

    class Config(BaseConfig):
        """Serialization config."""

        omit_none = True


class _DoNotSerialize(SerializationStrategy):
    def serialize(self, value: Any) -> None:
        return None

    def deserialize(self, value: Any) -> None:
        return None


@dataclass
class DeviceConfig(_DeviceConfigBaseMixin):
    """Class to represent paramaters that determine how to connect to devices."""

    DEFAULT_TIMEOUT = 10
    #: IP address or hostname
    host: str
    #: Timeout for querying the device
    timeout: int | None = DEFAULT_TIMEOUT
    #: Override the default 80 port to support port forwarding
    port_override: int | None = None
    #: Credentials for devices requiring authentication
    credentials: Credentials | None = None

    # compare=False will be excluded from object comparison.
    #: Set a custom http_client for the device to use.
    http_client: ClientSession | None = field(
        default=None,
        compare=False,
        metadata=field_options(serialization_strategy=_DoNotSerialize()),
    )

    def __pre_serialize__(self) -> Self:
        return replace(self, http_client=None)

    def to_dict_control_credentials(
        self, *, exclude_credentials: bool = False
    ) -> dict[str, Any]:
        """Convert deviceconfig to dict controlling whether to keep credentials."""
        if not exclude_credentials:
            return self.to_dict()
        return replace(self, credentials=None).to_dict()
