"""Config Loader - Builds ConnectionConfig from mappings or the environment.

Mappings may reference environment variables as ${ENV_VAR}; the variable
must be set. config_from_env() reads BIGCOMMERCE_* variables directly.
"""

from __future__ import annotations

import os
import re
from typing import Any, Mapping

from pydantic import ValidationError

from bigcommerce_connection.errors import ConfigError
from bigcommerce_connection.models import ConnectionConfig


ENV_PREFIX = "BIGCOMMERCE_"

# Environment variable suffix -> ConnectionConfig field
ENV_FIELDS = {
    "TIMEOUT": "timeout",
    "PROXY_HOST": "proxy_host",
    "PROXY_PORT": "proxy_port",
    "VERIFY_PEER": "verify_peer",
    "USE_XML": "use_xml",
    "FAIL_ON_ERROR": "fail_on_error",
    "FOLLOW_LOCATION": "follow_location",
    "MAX_REDIRECTS": "max_redirects",
    "MAX_RATE_LIMIT_RETRIES": "max_rate_limit_retries",
    "MAX_RETRY_AFTER": "max_retry_after",
}

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_connection_config(
    data: Mapping[str, Any],
    environ: Mapping[str, str] | None = None,
) -> ConnectionConfig:
    """Validate a config mapping after ${ENV_VAR} substitution.

    Raises:
        ConfigError: If a referenced variable is unset or the mapping is invalid.
    """
    if not isinstance(data, Mapping):
        raise ConfigError("Connection config must be a mapping")

    env = os.environ if environ is None else environ
    raw_config = _substitute_env_vars(dict(data), env)

    try:
        return ConnectionConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid connection config: {e}") from e


def config_from_env(environ: Mapping[str, str] | None = None) -> ConnectionConfig:
    """Build a ConnectionConfig from BIGCOMMERCE_* environment variables.

    Unset or empty variables keep the model defaults.
    """
    env = os.environ if environ is None else environ
    raw_config: dict[str, Any] = {}
    for suffix, field_name in ENV_FIELDS.items():
        value = env.get(f"{ENV_PREFIX}{suffix}")
        if value:
            raw_config[field_name] = value

    try:
        return ConnectionConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid connection config in environment: {e}") from e


def _substitute_env_vars(data: Any, environ: Mapping[str, str]) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in strings within data."""
    if isinstance(data, str):
        return _substitute_string(data, environ)
    elif isinstance(data, dict):
        return {k: _substitute_env_vars(v, environ) for k, v in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item, environ) for item in data]
    return data


def _substitute_string(s: str, environ: Mapping[str, str]) -> str:
    """Substitute ${ENV_VAR} patterns. Raises ConfigError if env var is not set."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = environ.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set")
        return value

    return _ENV_PATTERN.sub(replacer, s)
