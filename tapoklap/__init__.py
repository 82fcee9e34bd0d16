"""Python client for Tapo plugs and bulbs speaking the KLAP protocol.

Devices are controlled through :class:`TapoClient`, which caches one
authenticated session per host::

>>> from tapoklap import Credentials, TapoClient
>>> client = TapoClient(credentials=Credentials("user@example.com", "pw"))
>>> handle = await client.connect("192.168.1.23")
>>> await client.turn_on(handle)

Errors are raised as :class:`KlapException` subclasses and are expected
to be handled by the user of the library.
"""

from importlib.metadata import PackageNotFoundError, version

from tapoklap.client import DeviceStatus, TapoClient
from tapoklap.credentials import Credentials
from tapoklap.device import HSV, DeviceInfo, TapoDevice
from tapoklap.deviceconfig import DeviceConfig
from tapoklap.discover import DiscoveryResult, ScanProgress, SubnetScanner
from tapoklap.exceptions import (
    AuthenticationError,
    DecryptError,
    DeviceCommandError,
    DeviceError,
    DiscoveryTimeout,
    HandshakeError,
    KlapException,
    RequestError,
    SessionExpiredError,
    SmartErrorCode,
    TimeoutError,
)
from tapoklap.protocols import BaseProtocol, SmartProtocol
from tapoklap.registry import (
    Capability,
    DeviceRecord,
    DeviceRegistry,
    DeviceRepository,
    InMemoryDeviceRepository,
)
from tapoklap.sessioncache import SessionCache
from tapoklap.transports import KlapEncryptionSession, KlapTransport

try:
    __version__ = version("python-tapoklap")
except PackageNotFoundError:
    from tapoklap.version import __version__


__all__ = [
    "TapoClient",
    "DeviceStatus",
    "TapoDevice",
    "DeviceInfo",
    "HSV",
    "SubnetScanner",
    "DiscoveryResult",
    "ScanProgress",
    "SessionCache",
    "DeviceRegistry",
    "DeviceRecord",
    "DeviceRepository",
    "InMemoryDeviceRepository",
    "Capability",
    "BaseProtocol",
    "SmartProtocol",
    "KlapTransport",
    "KlapEncryptionSession",
    "Credentials",
    "DeviceConfig",
    "KlapException",
    "AuthenticationError",
    "DeviceError",
    "DeviceCommandError",
    "DecryptError",
    "HandshakeError",
    "RequestError",
    "SessionExpiredError",
    "DiscoveryTimeout",
    "SmartErrorCode",
    "TimeoutError",
]
