"""Error taxonomy for the connection layer.

NetworkError is always propagated. ClientError and ServerError are raised
only when fail-on-error mode is enabled; otherwise the decoded body is kept
as the connection's last error and the verb returns False.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any


class NetworkErrorCode(IntEnum):
    """Numeric codes carried by NetworkError.

    Transport codes follow libcurl numbering so callers that already switch
    on curl error numbers keep working.
    """

    UNKNOWN = 0
    UNSUPPORTED_PROTOCOL = 1
    COULDNT_RESOLVE_PROXY = 5
    COULDNT_CONNECT = 7
    OPERATION_TIMEDOUT = 28
    TOO_MANY_REDIRECTS = 47
    SEND_ERROR = 55
    RECV_ERROR = 56
    RATE_LIMIT_EXHAUSTED = 1000


class BigcommerceError(Exception):
    """Base class for connection errors."""


class NetworkError(BigcommerceError):
    """Raised when the transport fails or a retry/redirect bound is hit."""

    def __init__(self, message: str, code: int = NetworkErrorCode.UNKNOWN) -> None:
        super().__init__(message)
        self.message = message
        self.code = int(code)

    def __str__(self) -> str:
        return f"{self.message} (code {self.code})"


class HttpError(BigcommerceError):
    """An HTTP error status carrying the decoded response body."""

    def __init__(self, body: Any, status_code: int) -> None:
        super().__init__(body, status_code)
        self.body = body
        self.status_code = status_code

    def __str__(self) -> str:
        return f"HTTP {self.status_code}: {self.body!r}"


class ClientError(HttpError):
    """Raised for 4xx responses when fail-on-error is enabled."""


class ServerError(HttpError):
    """Raised for 5xx responses when fail-on-error is enabled."""


class ConfigError(BigcommerceError):
    """Raised when connection configuration is invalid or incomplete."""
