"""Structured logging for the connection layer.

The connection logs through structlog. Applications that want the
package's output formatted call configure_logging() once at startup;
otherwise structlog's default rendering applies, with debug events dropped.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Mapping, TextIO

import structlog


# Headers whose values must never appear in logs
SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "proxy-authorization",
        "x-auth-token",
        "x-api-key",
    }
)

REDACTED_VALUE = "[REDACTED]"

_URL_CREDENTIALS = re.compile(r"(https?://)([^:/@]+):([^@/]+)@")


def configure_logging(
    level: int = logging.INFO,
    output: TextIO = sys.stderr,
    json_format: bool = True,
) -> None:
    """Configure structlog with timestamps, levels and a JSON or console renderer.

    Args:
        level: Minimum log level.
        output: Stream to write to.
        json_format: Render JSON lines when True, colored console output otherwise.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=True,
    )


def get_logger(**initial_values: object) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound with *initial_values*.

    Until the application configures structlog, debug events are dropped so
    the library stays quiet under structlog's defaults.
    """
    if structlog.is_configured():
        logger = structlog.get_logger()
    else:
        logger = structlog.wrap_logger(
            None, wrapper_class=structlog.make_filtering_bound_logger(logging.INFO)
        )
    bound: structlog.stdlib.BoundLogger = logger.bind(**initial_values)
    return bound


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of *headers* with sensitive values replaced by [REDACTED]."""
    return {
        key: REDACTED_VALUE if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def redact_url_credentials(url: str) -> str:
    """Redact ``user:password@`` userinfo in a URL."""
    return _URL_CREDENTIALS.sub(r"\1[REDACTED]:[REDACTED]@", url)
