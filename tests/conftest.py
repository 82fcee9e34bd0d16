from __future__ import annotations

import aiohttp
import pytest

from tapoklap import Credentials, DeviceConfig

from .fakeklapdevice import FakeKlapDevice

DEVICE_HOST = "10.0.0.5"
DEVICE_CREDENTIALS = Credentials("a@b.com", "pw")


@pytest.fixture
def fake_device(mocker):
    """Return a fake KLAP device at DEVICE_HOST owned by DEVICE_CREDENTIALS."""
    device = FakeKlapDevice(DEVICE_HOST, credentials=DEVICE_CREDENTIALS)
    mocker.patch.object(aiohttp.ClientSession, "post", side_effect=device.post)
    return device


@pytest.fixture
def device_config():
    """Return a config with the credentials of the fake device."""
    return DeviceConfig(DEVICE_HOST, credentials=DEVICE_CREDENTIALS)


@pytest.fixture
async def dummy_protocol():
    """Return a SmartProtocol over a KLAP transport to a dummy host."""
    from tapoklap.protocols import SmartProtocol
    from tapoklap.transports import KlapTransport

    protocol = SmartProtocol(transport=KlapTransport(config=DeviceConfig("127.0.0.1")))
    yield protocol
    await protocol.close()
