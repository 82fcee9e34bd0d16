"""Http exchange of raw KLAP payloads with a single device."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, NamedTuple

import aiohttp
from yarl import URL

from .deviceconfig import DeviceConfig
from .exceptions import (
    KlapException,
    TimeoutError,
    _ConnectionError,
)

_LOGGER = logging.getLogger(__name__)


def get_cookie_jar() -> aiohttp.CookieJar:
    """Return a cookie jar accepting the cookies devices set on ip addresses."""
    return aiohttp.CookieJar(unsafe=True, quote_cookie=False)


class HttpResponse(NamedTuple):
    """Status and body of a device response."""

    status: int
    body: bytes | None


class HttpClient:
    """Post opaque bytes to a device and keep the cookies it hands out.

    The session id and lifetime cookies of the last response are available
    through :meth:`get_cookie`, they are cleared before every request so a
    stale session cookie is never sent unless passed explicitly.
    """

    # Some devices drop the connection after every request, once that was
    # seen requests to the device are spaced by this delay.
    OSERROR_REQUEST_DELAY = 0.25

    def __init__(self, config: DeviceConfig) -> None:
        self._config = config
        self._host = config.host
        self._own_session: aiohttp.ClientSession | None = None
        self._last_url = URL(f"http://{self._host}/")

        self._request_delay = 0.0
        self._last_request_at = 0.0

    @property
    def client(self) -> aiohttp.ClientSession:
        """Return the shared session from the config or a session of our own."""
        if isinstance(self._config.http_client, aiohttp.ClientSession):
            return self._config.http_client

        if self._own_session is None:
            self._own_session = aiohttp.ClientSession(cookie_jar=get_cookie_jar())
        return self._own_session

    async def _wait_for_request_slot(self) -> None:
        if not self._request_delay:
            return
        remaining = self._request_delay - (time.monotonic() - self._last_request_at)
        if remaining > 0:
            _LOGGER.debug("Waiting %.2fs before posting to %s", remaining, self._host)
            await asyncio.sleep(remaining)

    def _enable_request_delay(self, ex: Exception) -> None:
        if not self._request_delay:
            _LOGGER.debug(
                "Connection to %s dropped, spacing out requests: %s", self._host, ex
            )
            self._request_delay = self.OSERROR_REQUEST_DELAY

    async def post(
        self,
        url: URL,
        *,
        params: dict[str, Any] | None = None,
        data: bytes | None = None,
        cookies_dict: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> HttpResponse:
        """Post data to the device and return the status and raw body.

        timeout overrides the timeout of the device config, probes use it to
        give up on silent hosts quickly.
        """
        await self._wait_for_request_slot()

        if timeout is None:
            timeout = self._config.timeout
        _LOGGER.debug("Posting to %s with timeout %s", url, timeout)
        self._last_url = url
        self.client.cookie_jar.clear()

        try:
            resp = await self.client.post(
                url,
                params=params,
                data=data,
                timeout=aiohttp.ClientTimeout(total=timeout),
                cookies=cookies_dict,
            )
            async with resp:
                body = await resp.read()
        except (aiohttp.ServerDisconnectedError, aiohttp.ClientOSError) as ex:
            self._enable_request_delay(ex)
            self._last_request_at = time.monotonic()
            raise _ConnectionError(
                f"Device connection error: {self._host}: {ex}", ex
            ) from ex
        except (aiohttp.ServerTimeoutError, asyncio.TimeoutError) as ex:
            raise TimeoutError(
                f"Unable to query the device, timed out: {self._host}: {ex}", ex
            ) from ex
        except Exception as ex:
            raise KlapException(
                f"Unable to query the device: {self._host}: {ex}", ex
            ) from ex

        if self._request_delay:
            self._last_request_at = time.monotonic()

        if resp.status != 200:
            _LOGGER.debug(
                "Device %s answered %s with status %s",
                self._host,
                url.path,
                resp.status,
            )
        return HttpResponse(resp.status, body)

    def get_cookie(self, cookie_name: str) -> str | None:
        """Return the value of a cookie set by the last response."""
        cookies = self.client.cookie_jar.filter_cookies(self._last_url)
        if cookie := cookies.get(cookie_name):
            return cookie.value
        return None

    async def close(self) -> None:
        """Close the session if it is our own."""
        session, self._own_session = self._own_session, None
        if session:
            await session.close()
