"""Centralized error codes and client exception types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Final, Optional


class ErrorCode(str, Enum):
    """Stable error identifiers surfaced to callers and logs."""

    # network (ERR100x)
    NETWORK_TIMEOUT = "ERR1001"
    NETWORK_UNREACHABLE = "ERR1002"

    # auth (ERR200x)
    AUTH_NO_REFRESH_TOKEN = "ERR2001"
    AUTH_REFRESH_FAILED = "ERR2002"
    AUTH_REJECTED_AFTER_REFRESH = "ERR2003"
    AUTH_LOGIN_FAILED = "ERR2004"

    # server (ERR300x)
    SERVER_ERROR = "ERR3001"
    REQUEST_REJECTED = "ERR3002"

    # usage (ERR400x)
    LIMIT_REACHED = "ERR4001"

    # voice (ERR500x)
    TRANSPORT_FAILED = "ERR5001"
    TRANSPORT_NOT_OPEN = "ERR5002"
    VOICE_SERVER_ERROR = "ERR5003"
    INVALID_TRANSITION = "ERR5004"


@dataclass(frozen=True)
class ErrorSpec:
    """Maps an error code to its HTTP status and default message."""

    code: ErrorCode
    http_status: int
    message: str
    user_retry: bool = False


ERROR_SPECS: Final[dict[ErrorCode, ErrorSpec]] = {
    ErrorCode.NETWORK_TIMEOUT: ErrorSpec(
        ErrorCode.NETWORK_TIMEOUT, 0, "request timed out", user_retry=True
    ),
    ErrorCode.NETWORK_UNREACHABLE: ErrorSpec(
        ErrorCode.NETWORK_UNREACHABLE, 0, "server unreachable", user_retry=True
    ),
    ErrorCode.AUTH_NO_REFRESH_TOKEN: ErrorSpec(
        ErrorCode.AUTH_NO_REFRESH_TOKEN, 401, "no refresh token stored"
    ),
    ErrorCode.AUTH_REFRESH_FAILED: ErrorSpec(
        ErrorCode.AUTH_REFRESH_FAILED, 401, "token refresh failed"
    ),
    ErrorCode.AUTH_REJECTED_AFTER_REFRESH: ErrorSpec(
        ErrorCode.AUTH_REJECTED_AFTER_REFRESH,
        401,
        "request rejected after token refresh",
    ),
    ErrorCode.AUTH_LOGIN_FAILED: ErrorSpec(
        ErrorCode.AUTH_LOGIN_FAILED, 401, "login failed"
    ),
    ErrorCode.SERVER_ERROR: ErrorSpec(
        ErrorCode.SERVER_ERROR, 500, "server error"
    ),
    ErrorCode.REQUEST_REJECTED: ErrorSpec(
        ErrorCode.REQUEST_REJECTED, 400, "request rejected"
    ),
    ErrorCode.LIMIT_REACHED: ErrorSpec(
        ErrorCode.LIMIT_REACHED, 429, "usage limit reached"
    ),
    ErrorCode.TRANSPORT_FAILED: ErrorSpec(
        ErrorCode.TRANSPORT_FAILED, 0, "voice connection lost", user_retry=True
    ),
    ErrorCode.TRANSPORT_NOT_OPEN: ErrorSpec(
        ErrorCode.TRANSPORT_NOT_OPEN, 0, "voice connection is not open"
    ),
    ErrorCode.VOICE_SERVER_ERROR: ErrorSpec(
        ErrorCode.VOICE_SERVER_ERROR, 0, "voice server error", user_retry=True
    ),
    ErrorCode.INVALID_TRANSITION: ErrorSpec(
        ErrorCode.INVALID_TRANSITION, 0, "invalid voice state transition"
    ),
}


def spec_for(code: ErrorCode) -> ErrorSpec:
    """Return the ErrorSpec for a given error code."""
    return ERROR_SPECS[code]


def format_error(code: ErrorCode, detail: Optional[str] = None) -> str:
    """Format an error code and optional detail into a message."""
    spec = ERROR_SPECS[code]
    message = detail if detail else spec.message
    return f"{spec.code.value} {message}"


class ClientError(RuntimeError):
    """Base class for errors raised by the client layer."""

    default_code: ErrorCode = ErrorCode.SERVER_ERROR

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        code: Optional[ErrorCode] = None,
        http_status: Optional[int] = None,
    ) -> None:
        self.code = code or self.default_code
        spec = ERROR_SPECS[self.code]
        self.detail = detail or spec.message
        self.http_status = spec.http_status if http_status is None else http_status
        self.user_retry = spec.user_retry
        super().__init__(format_error(self.code, detail))


class NetworkError(ClientError):
    """Timeout or connectivity failure; the user may retry."""

    default_code = ErrorCode.NETWORK_UNREACHABLE


class AuthError(ClientError):
    """Credentials are missing, expired or rejected; forces logout."""

    default_code = ErrorCode.AUTH_REFRESH_FAILED


class ServerError(ClientError):
    """5xx response, surfaced verbatim and never retried automatically."""

    default_code = ErrorCode.SERVER_ERROR

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        http_status: int = 500,
        body: Any = None,
    ) -> None:
        self.body = body
        super().__init__(detail, http_status=http_status)


class RequestRejectedError(ClientError):
    """4xx response other than 401 and 429."""

    default_code = ErrorCode.REQUEST_REJECTED

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        http_status: int = 400,
        body: Any = None,
    ) -> None:
        self.body = body
        super().__init__(detail, http_status=http_status)


class LimitReachedError(ClientError):
    """Quota exhausted; carries the server-supplied reset time."""

    default_code = ErrorCode.LIMIT_REACHED

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        reset_time: Optional[datetime] = None,
        remaining: Optional[int] = None,
        resource: Optional[str] = None,
    ) -> None:
        self.reset_time = reset_time
        self.remaining = remaining
        self.resource = resource
        super().__init__(detail)


class TransportError(ClientError):
    """Voice channel dropped or refused a send; recoverable via reconnect."""

    default_code = ErrorCode.TRANSPORT_FAILED


class InvalidTransitionError(ClientError):
    """Raised when a voice state transition is not in the transition table."""

    default_code = ErrorCode.INVALID_TRANSITION


def payload_for(error: ClientError) -> Dict[str, Any]:
    """Build a structured payload describing an error for display."""
    payload: Dict[str, Any] = {"code": error.code.value, "message": error.detail}
    if isinstance(error, LimitReachedError):
        payload["resetTime"] = (
            error.reset_time.isoformat() if error.reset_time else None
        )
        payload["remaining"] = error.remaining
    return payload


__all__ = [
    "AuthError",
    "ClientError",
    "ERROR_SPECS",
    "ErrorCode",
    "ErrorSpec",
    "InvalidTransitionError",
    "LimitReachedError",
    "NetworkError",
    "RequestRejectedError",
    "ServerError",
    "TransportError",
    "format_error",
    "payload_for",
    "spec_for",
]
