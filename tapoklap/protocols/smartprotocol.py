"""Implementation of the Tapo SMART request protocol.

Requests are json envelopes of the form ``{"method": ..., "params": ...}``
handed to the transport, responses are ``{"error_code": ..., "result": ...}``.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import time
import uuid
from pprint import pformat as pf
from typing import TYPE_CHECKING, Any

from ..exceptions import (
    DeviceCommandError,
    KlapException,
    SessionExpiredError,
    SmartErrorCode,
)
from ..json import dumps as json_dumps
from .protocol import REDACTORS, BaseProtocol, redact_data

if TYPE_CHECKING:
    from ..transports import BaseTransport


_LOGGER = logging.getLogger(__name__)


class SmartProtocol(BaseProtocol):
    """Class for the Tapo SMART protocol."""

    #: A request is re-sent at most this many times after a session expired
    SESSION_EXPIRED_RETRIES = 1

    def __init__(
        self,
        *,
        transport: BaseTransport,
    ) -> None:
        """Create a protocol object."""
        super().__init__(transport=transport)
        self._terminal_uuid: str = base64.b64encode(
            hashlib.md5(uuid.uuid4().bytes).digest()  # noqa: S324
        ).decode()
        self._query_lock = asyncio.Lock()

    def get_smart_request(self, method: str, params: dict | None = None) -> str:
        """Get a request message as a string."""
        request: dict[str, Any] = {
            "method": method,
            "request_time_milis": round(time.time() * 1000),
            "terminal_uuid": self._terminal_uuid,
        }
        if params:
            request["params"] = params
        return json_dumps(request)

    async def query(
        self, request: str | dict, retry_count: int = SESSION_EXPIRED_RETRIES
    ) -> dict:
        """Query the device, re-handshaking retry_count times on session expiry.

        Requests are serialized so the sequence numbers of concurrent callers
        never interleave.
        """
        async with self._query_lock:
            return await self._query(request, retry_count)

    async def _query(self, request: str | dict, retry_count: int) -> dict:
        for retry in range(retry_count + 1):
            try:
                return await self._execute_query(request)
            except SessionExpiredError as ex:
                await self._transport.reset()
                if retry >= retry_count:
                    _LOGGER.debug("Giving up on %s after %s retries", self._host, retry)
                    raise ex
                _LOGGER.debug(
                    "Session with %s expired, retrying with a new handshake: %s",
                    self._host,
                    ex,
                )
                continue
            except DeviceCommandError:
                raise
            except KlapException as ex:
                await self._transport.reset()
                _LOGGER.debug(
                    "Unable to query the device: %s, not retrying: %s",
                    self._host,
                    ex,
                )
                raise ex

        # make mypy happy, this should never be reached..
        raise KlapException("Query reached somehow to unreachable")

    async def _execute_query(self, request: str | dict) -> dict:
        debug_enabled = _LOGGER.isEnabledFor(logging.DEBUG)

        if isinstance(request, dict):
            if len(request) != 1:
                raise KlapException(
                    f"Only single method requests are supported: {list(request)}"
                )
            smart_method = next(iter(request))
            smart_params = request[smart_method]
        else:
            smart_method = request
            smart_params = None

        smart_request = self.get_smart_request(smart_method, smart_params)
        if debug_enabled:
            _LOGGER.debug(
                "%s >> %s",
                self._host,
                pf(smart_request),
            )
        response_data = await self._transport.send(smart_request)

        if debug_enabled:
            _LOGGER.debug(
                "%s << %s",
                self._host,
                pf(redact_data(response_data, REDACTORS)),
            )

        self._handle_response_error_code(response_data, smart_method)

        # Single set_ requests do not return a result
        return {smart_method: response_data.get("result")}

    def _handle_response_error_code(self, resp_dict: dict, method: str) -> None:
        error_code_raw = resp_dict.get("error_code")
        try:
            error_code = SmartErrorCode.from_int(error_code_raw)
        except ValueError:
            _LOGGER.warning(
                "Device %s received unknown error code: %s", self._host, error_code_raw
            )
            error_code = SmartErrorCode.INTERNAL_UNKNOWN_ERROR

        if error_code is SmartErrorCode.SUCCESS:
            return

        msg = (
            f"Error querying device: {self._host}: "
            + f"{error_code.name}({error_code_raw})"
            + f" for method: {method}"
        )
        raise DeviceCommandError(msg, error_code=error_code, code=error_code_raw)

    async def close(self) -> None:
        """Close the underlying transport."""
        await self._transport.close()
