"""python-tapoklap exceptions."""

from __future__ import annotations

from asyncio import TimeoutError as _asyncioTimeoutError
from enum import IntEnum
from functools import cache
from typing import Any


class KlapException(Exception):
    """Base exception for library errors."""


class TimeoutError(KlapException, _asyncioTimeoutError):
    """Timeout exception for device errors."""

    def __repr__(self) -> str:
        return KlapException.__repr__(self)

    def __str__(self) -> str:
        return KlapException.__str__(self)


class DiscoveryTimeout(TimeoutError):
    """No answer from a host within the probe window."""


class _ConnectionError(KlapException):
    """Connection exception for device errors."""


class HandshakeError(KlapException):
    """A handshake step failed at the transport level."""


class DecryptError(KlapException):
    """The response payload could not be decrypted."""


class RequestError(KlapException):
    """The device answered an encrypted request with a non-success status."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.status: int | None = kwargs.get("status")
        super().__init__(*args)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(status={self.status})"


class SessionExpiredError(RequestError):
    """The device no longer accepts the current session."""


class DeviceError(KlapException):
    """Base exception for device errors."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.error_code: SmartErrorCode | None = kwargs.get("error_code")
        super().__init__(*args)

    def __repr__(self) -> str:
        err_code = self.error_code.__repr__() if self.error_code else ""
        return f"{self.__class__.__name__}({err_code})"

    def __str__(self) -> str:
        err_code = f" (error_code={self.error_code.name})" if self.error_code else ""
        return super().__str__() + err_code


class AuthenticationError(DeviceError):
    """No known credentials match the device challenge."""


class DeviceCommandError(DeviceError):
    """The device accepted the request but reported a failure code."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        #: Raw code as returned by the device
        self.code: int | None = kwargs.get("code")
        super().__init__(*args, **kwargs)


class SmartErrorCode(IntEnum):
    """Enum for SMART Error Codes."""

    def __str__(self) -> str:
        return f"{self.name}({self.value})"

    @staticmethod
    @cache
    def from_int(value: int) -> SmartErrorCode:
        """Convert an integer to a SmartErrorCode."""
        return SmartErrorCode(value)

    SUCCESS = 0

    # Transport Errors
    SESSION_TIMEOUT_ERROR = 9999
    MULTI_REQUEST_FAILED_ERROR = 1200
    HTTP_TRANSPORT_FAILED_ERROR = 1112
    LOGIN_FAILED_ERROR = 1111
    HAND_SHAKE_FAILED_ERROR = 1100
    TRANSPORT_UNKNOWN_CREDENTIALS_ERROR = 1003
    TRANSPORT_NOT_AVAILABLE_ERROR = 1002
    CMD_COMMAND_CANCEL_ERROR = 1001
    NULL_TRANSPORT_ERROR = 1000

    # Common Method Errors
    COMMON_FAILED_ERROR = -1
    UNSPECIFIC_ERROR = -1001
    UNKNOWN_METHOD_ERROR = -1002
    JSON_DECODE_FAIL_ERROR = -1003
    JSON_ENCODE_FAIL_ERROR = -1004
    AES_DECODE_FAIL_ERROR = -1005
    REQUEST_LEN_ERROR_ERROR = -1006
    CLOUD_FAILED_ERROR = -1007
    PARAMS_ERROR = -1008
    SESSION_PARAM_ERROR = -1101

    # Method Specific Errors
    QUICK_SETUP_ERROR = -1201
    DEVICE_ERROR = -1301
    DEVICE_NEXT_EVENT_ERROR = -1302
    FIRMWARE_ERROR = -1401
    FIRMWARE_VER_ERROR_ERROR = -1402
    LOGIN_ERROR = -1501
    TIME_ERROR = -1601
    TIME_SYS_ERROR = -1602
    TIME_SAVE_ERROR = -1603
    WIRELESS_ERROR = -1701
    WIRELESS_UNSUPPORTED_ERROR = -1702
    SCHEDULE_ERROR = -1801
    COUNTDOWN_ERROR = -1901
    ANTITHEFT_ERROR = -2001
    ACCOUNT_ERROR = -2101
    STAT_ERROR = -2201
    DST_ERROR = -2301

    SYSTEM_ERROR = -40101
    INVALID_ARGUMENTS = -40209

    # Library internal for unknown error codes
    INTERNAL_UNKNOWN_ERROR = -100_000

