"""Data models for the connection layer.

All models use Pydantic v2. Requests and responses are frozen values: a
request is built once per call from session configuration, and a response
is captured once after the call completes.
"""

from __future__ import annotations

from typing import Any, Iterable, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


HTTP_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "HEAD"})


# =============================================================================
# Configuration
# =============================================================================


class ConnectionConfig(BaseModel):
    """Session configuration for a Connection.

    verify_peer defaults to False. Production callers must turn it on.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    timeout: float = Field(default=60.0, gt=0, description="Connect and total timeout in seconds")
    proxy_host: str | None = Field(default=None, description="Proxy server host or URL")
    proxy_port: int | None = Field(default=None, ge=1, le=65535, description="Proxy server port")
    verify_peer: bool = Field(default=False, description="Verify the TLS peer certificate")
    use_xml: bool = Field(default=False, description="Send and accept XML instead of JSON")
    fail_on_error: bool = Field(default=False, description="Raise on 4xx/5xx instead of returning False")
    follow_location: bool = Field(
        default=True,
        description="Follow 301/302 in the response policy; when False httpx follows redirects",
    )
    max_redirects: int = Field(default=20, ge=1, description="Maximum chained redirects")
    max_rate_limit_retries: int = Field(
        default=10, ge=0, description="Maximum consecutive X-Retry-After replays per call"
    )
    max_retry_after: float = Field(
        default=300.0, gt=0, description="Upper bound for a single rate-limit sleep in seconds"
    )
    headers: dict[str, str] = Field(default_factory=dict, description="Initial session headers")

    @model_validator(mode="after")
    def check_proxy(self) -> Self:
        if self.proxy_port is not None and not self.proxy_host:
            raise ValueError("proxy_port requires proxy_host")
        return self


# =============================================================================
# Request / Response
# =============================================================================


class RequestDescriptor(BaseModel):
    """The logical request a verb was called with.

    Kept so a rate-limited call can be replayed with the same method, URL
    and payload. The payload is the value the caller passed (query mapping
    for GET, body for POST/PUT), before any serialization.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    method: str = Field(description="HTTP method")
    url: str = Field(description="URL as passed by the caller")
    payload: Any = Field(default=None, description="Query mapping or request body")

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        method = v.upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {v}")
        return method


class ResponseSnapshot(BaseModel):
    """One response, fully read.

    Header keys keep the case they were received with. A repeated header
    keeps its last value.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    status_code: int = Field(description="HTTP status code")
    status_line: str | None = Field(default=None, description="Raw status line, e.g. 'HTTP/1.1 200 OK'")
    headers: dict[str, str] = Field(default_factory=dict, description="Response headers")
    body: str = Field(default="", description="Raw response body")
    url: str = Field(description="Effective URL the response came from")


def parse_header_lines(lines: Iterable[str]) -> tuple[str | None, dict[str, str]]:
    """Parse raw header lines into a status line and a header map.

    The first line starting with ``HTTP/`` is the status line. Any other
    line containing ``": "`` is split once into name and value; lines without
    the separator (blank lines, folded continuations) are ignored. The last
    occurrence of a repeated name wins.

    Returns:
        Tuple of (status_line, headers).
    """
    status_line: str | None = None
    headers: dict[str, str] = {}

    for raw in lines:
        line = raw.rstrip("\r\n")
        if status_line is None and line.startswith("HTTP/"):
            status_line = line
            continue
        name, sep, value = line.partition(": ")
        if sep:
            headers[name] = value.strip()

    return status_line, headers
