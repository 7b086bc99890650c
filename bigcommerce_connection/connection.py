"""Connection - HTTP transport for the BigCommerce API client.

A Connection owns one httpx.Client, holds session configuration (content
mode, auth, timeout, proxy, session headers), executes one request at a
time and keeps the last response for the accessor methods.

Every verb runs the same lifecycle: record the logical request, build the
per-call headers, execute, capture the response, then apply the response
policy. The policy runs as a loop with two independent bounds:

- rate limit: a response carrying X-Retry-After is slept on and the same
  request is replayed, at most max_rate_limit_retries times per call.
- redirect: a 301/302 is reissued as a GET to the resolved Location, at
  most max_redirects - 1 times in a chain.

A Connection is not thread-safe. Use one per thread.
"""

from __future__ import annotations

import json
import math
import tempfile
import time
from contextlib import contextmanager
from typing import IO, Any, Iterator, Mapping
from urllib.parse import urljoin, urlsplit

import httpx

from bigcommerce_connection.errors import (
    ClientError,
    HttpError,
    NetworkError,
    NetworkErrorCode,
    ServerError,
)
from bigcommerce_connection.logging import get_logger, redact_headers, redact_url_credentials
from bigcommerce_connection.models import (
    ConnectionConfig,
    RequestDescriptor,
    ResponseSnapshot,
    parse_header_lines,
)


CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_XML = "application/xml"

RETRY_AFTER_HEADER = "X-Retry-After"
LOCATION_HEADER = "Location"

REDIRECT_STATUSES = frozenset({301, 302})

# Checked in order; the first matching class wins. TimeoutException must come
# before ConnectError because ConnectTimeout is both.
_NETWORK_ERROR_CODES: tuple[tuple[type[httpx.RequestError], NetworkErrorCode], ...] = (
    (httpx.TooManyRedirects, NetworkErrorCode.TOO_MANY_REDIRECTS),
    (httpx.TimeoutException, NetworkErrorCode.OPERATION_TIMEDOUT),
    (httpx.ProxyError, NetworkErrorCode.COULDNT_RESOLVE_PROXY),
    (httpx.ConnectError, NetworkErrorCode.COULDNT_CONNECT),
    (httpx.UnsupportedProtocol, NetworkErrorCode.UNSUPPORTED_PROTOCOL),
    (httpx.WriteError, NetworkErrorCode.SEND_ERROR),
    (httpx.ReadError, NetworkErrorCode.RECV_ERROR),
    (httpx.RemoteProtocolError, NetworkErrorCode.RECV_ERROR),
)


class Connection:
    """HTTP connection with JSON/XML decoding, error classification,
    redirect following and rate-limit replay.

    Usage:
        with Connection() as connection:
            connection.authenticate_oauth(client_id, token)
            connection.fail_on_error()
            products = connection.get("https://api.example.com/v2/products", {"limit": 5})

    Verbs return the decoded body: a JSON value, raw XML text in XML mode,
    or None when a JSON body cannot be parsed. With fail-on-error off, 4xx
    and 5xx responses return False and the decoded body is available from
    get_last_error().
    """

    def __init__(
        self,
        config: ConnectionConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the connection and create its httpx client.

        Args:
            config: Session configuration. Defaults to ConnectionConfig().
            transport: Optional httpx transport, e.g. httpx.MockTransport.
        """
        self._config = (config or ConnectionConfig()).model_copy(deep=True)
        self._transport = transport
        self._headers: dict[str, str] = dict(self._config.headers)
        self._basic_auth: tuple[str, str] | None = None
        self._client_id: str | None = None
        self._oauth_token: str | None = None

        self._response: ResponseSnapshot | None = None
        self._last_error: Any = None
        self._last_request: RequestDescriptor | None = None

        self._log = get_logger(component="connection")
        self._closed = False
        self._client = httpx.Client(**self._build_client_kwargs())

    @classmethod
    def from_config(
        cls,
        config: ConnectionConfig,
        transport: httpx.BaseTransport | None = None,
    ) -> "Connection":
        return cls(config=config, transport=transport)

    def __enter__(self) -> "Connection":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying httpx client. Safe to call more than once."""
        if not self._closed:
            self._client.close()
            self._closed = True

    @property
    def config(self) -> ConnectionConfig:
        """The live session configuration."""
        return self._config

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def use_xml(self, option: bool = True) -> None:
        """Send and accept XML instead of JSON. XML bodies are returned as raw text."""
        self._config.use_xml = option

    def fail_on_error(self, option: bool = True) -> None:
        """Raise ClientError/ServerError on 4xx/5xx instead of returning False.

        Error bodies and headers stay readable through the accessors either way.
        """
        self._config.fail_on_error = option

    def follow_location(self, option: bool = True) -> None:
        """Follow 301/302 redirects in the response policy.

        When off, httpx follows redirects itself, bounded by max_redirects.
        """
        self._config.follow_location = option

    def set_max_redirects(self, max_redirects: int) -> None:
        self._config.max_redirects = max_redirects
        self._client.max_redirects = max_redirects

    def set_max_rate_limit_retries(self, retries: int) -> None:
        self._config.max_rate_limit_retries = retries

    def authenticate_basic(self, username: str, password: str) -> None:
        """Use HTTP basic authentication for every request."""
        self._basic_auth = (username, password)

    def authenticate_oauth(self, client_id: str, oauth_token: str) -> None:
        """Send X-Auth-Client and X-Auth-Token on every request."""
        self._client_id = client_id
        self._oauth_token = oauth_token

    def set_timeout(self, timeout: float) -> None:
        """Set the request timeout in seconds.

        The value bounds each phase separately: connecting, each read, each
        write and waiting for a pooled connection. It is not a deadline for
        the whole call, so a server that keeps trickling bytes can hold a
        request open longer than *timeout*.

        Args:
            timeout: Number of seconds to wait on each phase.
        """
        self._config.timeout = timeout

    def use_proxy(self, server: str, port: int | None = None) -> None:
        """Tunnel requests through a proxy server. Rebuilds the httpx client."""
        self._config.proxy_host = server
        self._config.proxy_port = port
        self._rebuild_client()

    def verify_peer(self, option: bool = False) -> None:
        """Toggle TLS peer verification. Rebuilds the httpx client.

        Verification is off by default; production callers should enable it.
        """
        self._config.verify_peer = option
        self._rebuild_client()

    def add_header(self, header: str, value: str) -> None:
        """Add or replace a header sent with every subsequent request."""
        self._headers[header] = str(value)

    # -------------------------------------------------------------------------
    # Verbs
    # -------------------------------------------------------------------------

    def get(self, url: str, query: Mapping[str, Any] | None = None) -> Any:
        """Make an HTTP GET request.

        A mapping *query* is encoded into the URL. Booleans are sent as 1 and
        0; keys whose value is None are left out.
        """
        return self._dispatch(RequestDescriptor(method="GET", url=url, payload=query))

    def post(self, url: str, body: Any) -> Any:
        """Make an HTTP POST request. Non-string bodies are sent as JSON."""
        return self._dispatch(RequestDescriptor(method="POST", url=url, payload=body))

    def put(self, url: str, body: Any) -> Any:
        """Make an HTTP PUT request.

        The serialized body is written to a temporary file and streamed from
        there. The file is closed after the request whether or not it succeeds.
        """
        return self._dispatch(RequestDescriptor(method="PUT", url=url, payload=body))

    def delete(self, url: str) -> Any:
        """Make an HTTP DELETE request."""
        return self._dispatch(RequestDescriptor(method="DELETE", url=url))

    def head(self, url: str) -> Any:
        """Make an HTTP HEAD request."""
        return self._dispatch(RequestDescriptor(method="HEAD", url=url))

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    def get_status(self) -> int:
        """Status code of the last response, or 0 if there is none."""
        return self._response.status_code if self._response else 0

    def get_status_message(self) -> str | None:
        """Status line of the last response, e.g. ``HTTP/1.1 404 Not Found``."""
        return self._response.status_line if self._response else None

    def get_body(self) -> str:
        """Raw body of the last response."""
        return self._response.body if self._response else ""

    def get_header(self, header: str) -> str | None:
        """Value of a response header, or None if it is missing.

        Exact-case match first, then a case-insensitive match.
        """
        if self._response is None:
            return None
        headers = self._response.headers
        if header in headers:
            return headers[header]
        lowered = header.lower()
        for name, value in headers.items():
            if name.lower() == lowered:
                return value
        return None

    def get_headers(self) -> dict[str, str]:
        """All headers of the last response."""
        return dict(self._response.headers) if self._response else {}

    def get_last_error(self) -> Any:
        """Decoded body of the last 4xx/5xx response absorbed with fail-on-error off.

        None if the last request did not fail.
        """
        return self._last_error

    def get_last_request(self) -> RequestDescriptor | None:
        """The last request issued, as replayed after a rate limit."""
        return self._last_request

    # -------------------------------------------------------------------------
    # Request lifecycle
    # -------------------------------------------------------------------------

    def _dispatch(self, request: RequestDescriptor) -> Any:
        """Execute *request* and apply the response policy until it settles.

        Raises:
            NetworkError: Transport failure, redirect limit, or rate-limit cap.
            ClientError: 4xx with fail-on-error enabled.
            ServerError: 5xx with fail-on-error enabled.
        """
        rate_limit_retries = 0
        redirects = 0

        while True:
            self._last_request = request
            response = self._execute(request)

            # Rate limit takes priority over any status handling
            retry_after = self._retry_after()
            if retry_after is not None:
                if rate_limit_retries >= self._config.max_rate_limit_retries:
                    self._log.warning(
                        "rate_limit_exhausted",
                        method=request.method,
                        url=redact_url_credentials(request.url),
                        retries=rate_limit_retries,
                    )
                    raise NetworkError(
                        f"Still rate limited after {rate_limit_retries} retries.",
                        NetworkErrorCode.RATE_LIMIT_EXHAUSTED,
                    )
                rate_limit_retries += 1
                delay = min(retry_after + 1, self._config.max_retry_after)
                self._log.info(
                    "rate_limited",
                    method=request.method,
                    url=redact_url_credentials(request.url),
                    retry_after=retry_after,
                    sleep_seconds=delay,
                    attempt=rate_limit_retries,
                )
                time.sleep(delay)
                continue

            body = self._decode_body(response)
            status = response.status_code

            if self._config.follow_location and status in REDIRECT_STATUSES:
                location = self.get_header(LOCATION_HEADER)
                if location:
                    redirects += 1
                    request = self._redirect_request(location, response, redirects)
                    continue

            if 400 <= status <= 499:
                return self._handle_error(ClientError, body, status)
            if 500 <= status <= 599:
                return self._handle_error(ServerError, body, status)

            return body

    def _redirect_request(
        self, location: str, response: ResponseSnapshot, redirects: int
    ) -> RequestDescriptor:
        """Build the GET that follows the *redirects*-th redirect of a call.

        Redirects from POST and PUT become GET.

        Raises:
            NetworkError: If the redirect limit is reached.
        """
        if redirects >= self._config.max_redirects:
            self._log.warning("too_many_redirects", redirects=redirects, location=location)
            raise NetworkError(
                "Too many redirects when trying to follow location.",
                NetworkErrorCode.TOO_MANY_REDIRECTS,
            )

        url = self._resolve_location(location, response.url)
        self._log.info(
            "redirect_followed",
            status=response.status_code,
            location=redact_url_credentials(url),
            redirects=redirects,
        )
        return RequestDescriptor(method="GET", url=url)

    @staticmethod
    def _resolve_location(location: str, effective_url: str) -> str:
        """Resolve a Location header against the URL that returned it.

        Absolute locations are used as-is. Absolute paths keep the scheme and
        host of the effective URL; other relative references are joined to it.
        """
        forward_to = urlsplit(location)
        if forward_to.scheme and forward_to.netloc:
            return location

        if location.startswith("/") and not location.startswith("//"):
            forward_from = urlsplit(effective_url)
            return f"{forward_from.scheme}://{forward_from.netloc}{location}"

        return urljoin(effective_url, location)

    def _handle_error(self, error_class: type[HttpError], body: Any, status: int) -> Any:
        """Raise *error_class* or absorb the error into get_last_error()."""
        self._log.info(
            "http_error",
            status=status,
            error=error_class.__name__,
            raised=self._config.fail_on_error,
        )
        if self._config.fail_on_error:
            raise error_class(body, status)

        self._last_error = body
        return False

    def _execute(self, request: RequestDescriptor) -> ResponseSnapshot:
        """Send one request and capture its response.

        Raises:
            NetworkError: If the transport fails.
        """
        self._reset_response_state()

        headers = self._build_headers(request.method)
        params: dict[str, Any] | None = None
        content: str | bytes | None = None

        if request.method == "GET" and isinstance(request.payload, Mapping):
            params = _query_params(request.payload)
        elif request.method in ("POST", "PUT"):
            content = self._serialize_body(request.payload)

        self._log.debug(
            "request_sent",
            method=request.method,
            url=redact_url_credentials(request.url),
            headers=redact_headers(headers),
        )

        try:
            if request.method == "PUT":
                with self._spooled_body(content or b"") as (handle, size):
                    headers["Content-Length"] = str(size)
                    http_response = self._send(request.method, request.url, headers, params, handle)
            else:
                http_response = self._send(request.method, request.url, headers, params, content)
        except httpx.RequestError as e:
            code = self._network_error_code(e)
            self._log.warning(
                "network_error",
                method=request.method,
                url=redact_url_credentials(request.url),
                code=int(code),
                message=str(e),
            )
            raise NetworkError(str(e) or type(e).__name__, code) from e

        self._response = self._capture(http_response)
        self._log.debug(
            "response_received",
            status=self._response.status_code,
            bytes=len(http_response.content),
        )
        return self._response

    def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        params: dict[str, Any] | None,
        content: str | bytes | IO[bytes] | None,
    ) -> httpx.Response:
        return self._client.request(
            method=method,
            url=url,
            params=params,
            headers=headers,
            content=content,
            auth=self._basic_auth,
            timeout=httpx.Timeout(self._config.timeout),
            follow_redirects=not self._config.follow_location,
        )

    @staticmethod
    @contextmanager
    def _spooled_body(content: str | bytes) -> Iterator[tuple[IO[bytes], int]]:
        """Write *content* to a temporary file and yield it rewound, with its size."""
        data = content.encode("utf-8") if isinstance(content, str) else content
        with tempfile.TemporaryFile() as handle:
            handle.write(data)
            handle.seek(0)
            yield handle, len(data)

    def _reset_response_state(self) -> None:
        self._response = None
        self._last_error = None

    def _content_type(self) -> str:
        return CONTENT_TYPE_XML if self._config.use_xml else CONTENT_TYPE_JSON

    def _build_headers(self, method: str) -> dict[str, str]:
        """Build this call's headers from session state.

        Returns a new dict each call so Content-Type set for a POST never
        leaks into a later GET.
        """
        headers = dict(self._headers)
        content_type = self._content_type()

        _set_header(headers, "Accept", content_type)

        if self._client_id is not None and self._oauth_token is not None:
            _set_header(headers, "X-Auth-Client", self._client_id)
            _set_header(headers, "X-Auth-Token", self._oauth_token)

        if method in ("POST", "PUT"):
            _set_header(headers, "Content-Type", content_type)

        return headers

    @staticmethod
    def _serialize_body(body: Any) -> str | bytes:
        if isinstance(body, (str, bytes)):
            return body
        return json.dumps(body)

    @staticmethod
    def _capture(http_response: httpx.Response) -> ResponseSnapshot:
        """Read an httpx response into a snapshot via raw header lines."""
        lines = [
            f"{http_response.http_version} {http_response.status_code} "
            f"{http_response.reason_phrase}".rstrip()
        ]
        lines.extend(
            f"{name.decode('latin-1')}: {value.decode('latin-1')}"
            for name, value in http_response.headers.raw
        )
        status_line, headers = parse_header_lines(lines)

        return ResponseSnapshot(
            status_code=http_response.status_code,
            status_line=status_line,
            headers=headers,
            body=http_response.text,
            url=str(http_response.request.url),
        )

    def _decode_body(self, response: ResponseSnapshot) -> Any:
        """Raw text in XML mode; parsed JSON otherwise, None if unparseable."""
        if self._config.use_xml:
            return response.body
        try:
            return json.loads(response.body)
        except ValueError:
            return None

    def _retry_after(self) -> float | None:
        """Seconds requested by X-Retry-After, or None if the header is absent.

        A value that is not a finite number counts as 0.
        """
        value = self.get_header(RETRY_AFTER_HEADER)
        if value is None:
            return None
        try:
            seconds = float(value)
        except ValueError:
            return 0.0
        if not math.isfinite(seconds):
            return 0.0
        return max(seconds, 0.0)

    @staticmethod
    def _network_error_code(error: httpx.RequestError) -> NetworkErrorCode:
        for error_class, code in _NETWORK_ERROR_CODES:
            if isinstance(error, error_class):
                return code
        return NetworkErrorCode.UNKNOWN

    # -------------------------------------------------------------------------
    # httpx client
    # -------------------------------------------------------------------------

    def _proxy_url(self) -> str | None:
        host = self._config.proxy_host
        if not host:
            return None
        url = host if "://" in host else f"http://{host}"
        if self._config.proxy_port:
            url = f"{url.rstrip('/')}:{self._config.proxy_port}"
        return url

    def _build_client_kwargs(self) -> dict[str, Any]:
        """Build kwargs for the httpx.Client constructor."""
        kwargs: dict[str, Any] = {
            "timeout": httpx.Timeout(self._config.timeout),
            "verify": self._config.verify_peer,
            "max_redirects": self._config.max_redirects,
        }

        proxy = self._proxy_url()
        if proxy:
            kwargs["proxy"] = proxy

        if self._transport is not None:
            kwargs["transport"] = self._transport

        return kwargs

    def _rebuild_client(self) -> None:
        """Replace the httpx client after a construction-time setting changed."""
        if self._closed:
            return
        self._client.close()
        self._client = httpx.Client(**self._build_client_kwargs())


def _set_header(headers: dict[str, str], name: str, value: str) -> None:
    """Set *name* in *headers*, replacing any key that differs only in case."""
    for key in [k for k in headers if k.lower() == name.lower()]:
        del headers[key]
    headers[name] = value


def _query_params(query: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize a GET query: booleans are sent as 1 and 0, None values are left out."""
    params: dict[str, Any] = {}
    for key, value in query.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            params[key] = [_query_value(item) for item in value if item is not None]
        else:
            params[key] = _query_value(value)
    return params


def _query_value(value: Any) -> Any:
    return int(value) if isinstance(value, bool) else value
