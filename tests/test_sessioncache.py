import asyncio

import pytest

from tapoklap import Credentials, SessionCache, TapoDevice
from tapoklap.exceptions import AuthenticationError

from .conftest import DEVICE_CREDENTIALS, DEVICE_HOST


@pytest.fixture
def mock_time(mocker):
    mocked = mocker.patch("tapoklap.sessioncache.time")
    mocked.time.return_value = 1000.0
    return mocked.time


@pytest.fixture
async def cache(fake_device, mock_time):
    cache = SessionCache(credentials=DEVICE_CREDENTIALS, ttl=300)
    yield cache
    await cache.close()


async def test_get_reuses_session(fake_device, cache):
    dev = await cache.get(DEVICE_HOST)

    assert isinstance(dev, TapoDevice)
    assert dev.alias == "Living Room Bulb"
    assert DEVICE_HOST in cache
    assert await cache.get(DEVICE_HOST) is dev
    assert fake_device.handshake1_count == 1
    assert len(cache) == 1


async def test_concurrent_get_creates_one_session(fake_device, cache):
    devices = await asyncio.gather(*(cache.get(DEVICE_HOST) for _ in range(5)))

    assert all(dev is devices[0] for dev in devices)
    assert fake_device.handshake1_count == 1


async def test_expired_session_is_replaced(mocker, fake_device, cache, mock_time):
    dev = await cache.get(DEVICE_HOST)
    disconnect = mocker.spy(dev, "disconnect")

    mock_time.return_value = 1000.0 + 299
    assert await cache.get(DEVICE_HOST) is dev

    mock_time.return_value = 1000.0 + 300
    new_dev = await cache.get(DEVICE_HOST)

    assert new_dev is not dev
    assert disconnect.call_count == 1
    assert fake_device.handshake1_count == 2


async def test_invalidate(fake_device, cache):
    dev = await cache.get(DEVICE_HOST)

    await cache.invalidate(DEVICE_HOST)

    assert DEVICE_HOST not in cache
    assert await cache.get(DEVICE_HOST) is not dev
    assert fake_device.handshake1_count == 2


async def test_invalidate_unknown_host(cache):
    await cache.invalidate("10.0.0.99")

    assert len(cache) == 0


async def test_failed_session_not_cached(fake_device, mock_time):
    cache = SessionCache(credentials=Credentials("wrong", "creds"))
    fake_device.auth_hash = b"\x00" * 32

    with pytest.raises(AuthenticationError):
        await cache.get(DEVICE_HOST)

    assert DEVICE_HOST not in cache


async def test_uses_configured_timeout(fake_device, mock_time):
    cache = SessionCache(credentials=DEVICE_CREDENTIALS, timeout=3)

    dev = await cache.get(DEVICE_HOST)

    assert dev.config.timeout == 3
    assert dev.config.credentials == DEVICE_CREDENTIALS
    await cache.close()


async def test_close(fake_device, cache):
    await cache.get(DEVICE_HOST)

    await cache.close()

    assert len(cache) == 0


async def test_invalidate_stale_device_keeps_replacement(
    mocker, fake_device, cache, mock_time
):
    stale = await cache.get(DEVICE_HOST)
    mock_time.return_value = 1000.0 + 300
    fresh = await cache.get(DEVICE_HOST)
    disconnect = mocker.spy(fresh, "disconnect")

    await cache.invalidate(DEVICE_HOST, device=stale)

    assert DEVICE_HOST in cache
    assert await cache.get(DEVICE_HOST) is fresh
    assert disconnect.call_count == 0
    assert fake_device.handshake1_count == 2


async def test_invalidate_current_device(fake_device, cache):
    dev = await cache.get(DEVICE_HOST)

    await cache.invalidate(DEVICE_HOST, device=dev)

    assert DEVICE_HOST not in cache
