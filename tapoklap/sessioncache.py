"""Cache of authenticated device sessions keyed by host."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass

from aiohttp import ClientSession

from .credentials import Credentials
from .deviceconfig import DeviceConfig
from .device import TapoDevice

_LOGGER = logging.getLogger(__name__)


@dataclass
class CachedSession:
    """A live device session and its lifetime."""

    device: TapoDevice
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        """Return True once the session must not be reused."""
        return now >= self.expires_at


class SessionCache:
    """Hold at most one live session per host.

    Sessions are created lazily on :meth:`get` and replaced once their ttl
    lapsed or after :meth:`invalidate`.
    """

    DEFAULT_TTL = 5 * 60

    def __init__(
        self,
        *,
        credentials: Credentials | None = None,
        timeout: int | None = None,
        ttl: float = DEFAULT_TTL,
        http_client: ClientSession | None = None,
    ) -> None:
        self._credentials = credentials
        self._timeout = timeout
        self._ttl = ttl
        self._http_client = http_client
        self._sessions: dict[str, CachedSession] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __contains__(self, host: object) -> bool:
        return host in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def _create_config(self, host: str) -> DeviceConfig:
        return DeviceConfig(
            host=host,
            timeout=self._timeout or DeviceConfig.DEFAULT_TIMEOUT,
            credentials=self._credentials,
            http_client=self._http_client,
        )

    async def get(self, host: str) -> TapoDevice:
        """Return the live session for host, performing a handshake if needed."""
        async with self._locks[host]:
            now = time.time()
            if (cached := self._sessions.get(host)) and not cached.is_expired(now):
                return cached.device

            if cached:
                _LOGGER.debug("Session for %s expired, creating a new one", host)
                await self._drop(host)

            _LOGGER.debug("Creating KLAP session for %s", host)
            device = await TapoDevice.connect(config=self._create_config(host))
            now = time.time()
            self._sessions[host] = CachedSession(device, now, now + self._ttl)
            return device

    async def invalidate(self, host: str, device: TapoDevice | None = None) -> None:
        """Drop the session for host so the next get performs a fresh handshake.

        When device is given the entry is only dropped if it still holds that
        device, a session created in the meantime is kept.
        """
        async with self._locks[host]:
            cached = self._sessions.get(host)
            if device is not None and (cached is None or cached.device is not device):
                _LOGGER.debug("Not dropping session for %s, it was replaced", host)
                return
            await self._drop(host)

    async def _drop(self, host: str) -> None:
        if cached := self._sessions.pop(host, None):
            _LOGGER.debug("Dropping session for %s", host)
            await cached.device.disconnect()

    async def close(self) -> None:
        """Disconnect all cached sessions."""
        for host in list(self._sessions):
            await self.invalidate(host)
