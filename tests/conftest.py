"""Pytest configuration and fixtures for bigcommerce-connection tests.

This file provides:
- make_connection / make_json_response: Connection over httpx.MockTransport
- PortReservation: Race-free port allocation for the mock API server
- MockServer: Subprocess management for the mock API server
- Fixtures: Shared test infrastructure
"""

from __future__ import annotations

import json
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Callable, Generator
from unittest.mock import patch

import httpx
import pytest

from bigcommerce_connection.connection import Connection
from bigcommerce_connection.models import ConnectionConfig

# Project root for subprocess cwd
PROJECT_ROOT = Path(__file__).parent.parent
MOCK_SERVER_MODULE = "tests.integration.mock_server"

Handler = Callable[[httpx.Request], httpx.Response]


def make_json_response(
    status_code: int = 200,
    body: Any = None,
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    """Create an httpx.Response with a JSON body.

    Prefer this over constructing httpx.Response directly - it serializes the
    body and sets the content type the way the API does.
    """
    response_headers = {"Content-Type": "application/json"}
    response_headers.update(headers or {})
    content = b"" if body is None else json.dumps(body).encode("utf-8")
    return httpx.Response(status_code, headers=response_headers, content=content)


def make_connection(handler: Handler, **config: Any) -> Connection:
    """Create a Connection whose requests are answered by *handler*."""
    return Connection(ConnectionConfig(**config), transport=httpx.MockTransport(handler))


class RecordingHandler:
    """MockTransport handler that replays queued responses and records requests.

    The last queued response is repeated once the queue runs out.
    """

    def __init__(self, *responses: httpx.Response) -> None:
        self._responses = list(responses) or [make_json_response(200, {})]
        self.requests: list[httpx.Request] = []
        self.bodies: list[bytes] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.bodies.append(request.read())
        if len(self._responses) > 1:
            return self._responses.pop(0)
        return self._responses[0]


class PortReservation:
    """Holds a reserved port with socket kept open to prevent races.

    Usage:
        reservation = PortReservation()
        # port is held exclusively until release()
        server = MockServer(reservation)
        server.start()  # calls release() internally, then binds
    """

    def __init__(self) -> None:
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind(("127.0.0.1", 0))  # Port 0 = OS assigns ephemeral port
        self._port = self._socket.getsockname()[1]
        self._released = False

    @property
    def port(self) -> int:
        return self._port

    def release(self) -> int:
        """Release the socket and return the port for server use.

        Safe to call multiple times - subsequent calls are no-ops.
        """
        if not self._released:
            self._socket.close()
            self._released = True
        return self._port

    def __enter__(self) -> PortReservation:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


def wait_for_server_ready(host: str, port: int, timeout: float = 10.0) -> bool:
    """Block until server accepts TCP connections, or timeout expires."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except (ConnectionRefusedError, socket.timeout, OSError):
            time.sleep(0.1)
    return False


class MockServer:
    """Manages the mock API server subprocess for integration tests.

    Runs tests/integration/mock_server.py as a subprocess under uvicorn.
    """

    def __init__(self, port: int | PortReservation) -> None:
        if isinstance(port, PortReservation):
            self._reservation: PortReservation | None = port
            self.port = port.port
        else:
            self._reservation = None
            self.port = port
        self.host = "127.0.0.1"
        self.base_url = f"http://{self.host}:{self.port}"
        self._process: subprocess.Popen | None = None

    def start(self) -> None:
        """Start the mock server subprocess.

        Raises:
            RuntimeError: If server fails to start within 10 seconds.
        """
        if self._reservation:
            self._reservation.release()

        self._process = subprocess.Popen(
            [
                sys.executable, "-m", MOCK_SERVER_MODULE,
                "--host", self.host,
                "--port", str(self.port),
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=PROJECT_ROOT,
        )

        if not wait_for_server_ready(self.host, self.port):
            stderr = ""
            if self._process and self._process.stderr:
                stderr = self._process.stderr.read().decode(errors="replace")
            self.stop()
            raise RuntimeError(
                f"MockServer failed to start on port {self.port}. "
                f"stderr: {stderr or '(empty)'}"
            )

    def stop(self) -> None:
        """Stop the mock server subprocess with graceful shutdown.

        Uses SIGTERM first, then SIGKILL after 5s if process doesn't exit.
        Safe to call multiple times or if server was never started.
        """
        if self._process:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                try:
                    self._process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    pass
            self._process = None

    def __enter__(self) -> MockServer:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()


# =============================================================================
# Pytest Fixtures
# =============================================================================


@pytest.fixture
def no_sleep() -> Generator[Any, None, None]:
    """Patch time.sleep in the connection module and yield the mock."""
    with patch("bigcommerce_connection.connection.time.sleep") as mock_sleep:
        yield mock_sleep


@pytest.fixture(scope="session")
def mock_api_server() -> Generator[MockServer, None, None]:
    """Start the mock API server once per test session."""
    with MockServer(PortReservation()) as server:
        yield server


@pytest.fixture
def live_connection(mock_api_server: MockServer) -> Generator[Connection, None, None]:
    """A Connection with default config, closed after the test."""
    with Connection() as connection:
        yield connection


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Automatically apply markers based on test location.

    Enables running subsets via:
        pytest -m integration  # only integration tests
        pytest -m unit         # only unit tests
    """
    for item in items:
        test_path = Path(item.fspath)
        if "integration" in test_path.parts:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
