"""Proxy configuration loader and validator.

Guard credentials and application identity come from the environment and,
optionally, from a YAML file. Environment variables win over file values.

Environment::

    CS_AIDR_TOKEN               (required) AI Guard API token
    CS_AIDR_BASE_URL_TEMPLATE   (required) e.g. https://api.crowdstrike.com/aidr/{SERVICE_NAME}
    APP_ID                      (optional) application ID
    APP_NAME                    (optional) application name

Config shape::

    guard:
      token: "${CS_AIDR_TOKEN}"
      base_url_template: https://api.crowdstrike.com/aidr/{SERVICE_NAME}
      app_id: my-app
      app_name: My App
      timeout: 30
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

logger = logging.getLogger("aidr_proxy.config")

ENV_TOKEN = "CS_AIDR_TOKEN"
ENV_BASE_URL_TEMPLATE = "CS_AIDR_BASE_URL_TEMPLATE"
ENV_APP_ID = "APP_ID"
ENV_APP_NAME = "APP_NAME"

# File key -> environment variable that overrides it
_ENV_OVERRIDES = {
    "token": ENV_TOKEN,
    "base_url_template": ENV_BASE_URL_TEMPLATE,
    "app_id": ENV_APP_ID,
    "app_name": ENV_APP_NAME,
}

_KNOWN_GUARD_FIELDS = frozenset({*_ENV_OVERRIDES, "timeout"})

# Pattern for ${VAR_NAME} interpolation
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ProxyConfigError(Exception):
    """Raised when the proxy configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class ProxyConfig:
    """Settings for the guard gateway."""
    token: str
    base_url_template: str
    app_id: str | None = None
    app_name: str | None = None
    timeout: float = 30.0


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def load_proxy_config(
    config_path: str | None = None,
    env: Mapping[str, str] | None = None,
) -> ProxyConfig:
    """Resolve the proxy configuration.

    Args:
        config_path: Optional YAML file with a ``guard`` section.
        env: Environment to read; defaults to ``os.environ``.

    Raises:
        ProxyConfigError: If the file is invalid or a required value is
            missing from both the file and the environment.
    """
    env = os.environ if env is None else env

    values: dict[str, Any] = {}
    if config_path is not None:
        values.update(_load_guard_section(config_path, env))

    for key, var_name in _ENV_OVERRIDES.items():
        if env.get(var_name):
            values[key] = env[var_name]

    if not values.get("token"):
        raise ProxyConfigError(f"Missing environment variable: {ENV_TOKEN}")
    if not values.get("base_url_template"):
        raise ProxyConfigError(
            f"Missing environment variable: {ENV_BASE_URL_TEMPLATE}"
        )

    timeout_raw = values.get("timeout", 30.0)
    try:
        timeout = float(timeout_raw)
    except (TypeError, ValueError) as e:
        raise ProxyConfigError(
            f"guard.timeout must be a number, got {timeout_raw!r}"
        ) from e
    if timeout <= 0:
        raise ProxyConfigError("guard.timeout must be positive")

    return ProxyConfig(
        token=str(values["token"]),
        base_url_template=str(values["base_url_template"]),
        app_id=_optional_str(values.get("app_id")),
        app_name=_optional_str(values.get("app_name")),
        timeout=timeout,
    )


def _load_guard_section(
    config_path: str, env: Mapping[str, str],
) -> dict[str, Any]:
    config_file = Path(config_path).expanduser().resolve()
    if not config_file.is_file():
        raise ProxyConfigError(f"Config file not found: {config_path}")

    try:
        raw = yaml.load(config_file.read_text(), Loader=_StrictLoader)
    except yaml.YAMLError as e:
        raise ProxyConfigError(f"Invalid YAML in config file: {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ProxyConfigError(
            "Config file must contain a YAML mapping (got "
            f"{type(raw).__name__})"
        )

    guard_raw = raw.get("guard") or {}
    if not isinstance(guard_raw, dict):
        raise ProxyConfigError("guard: expected a mapping")

    for field_name in guard_raw:
        if field_name not in _KNOWN_GUARD_FIELDS:
            logger.warning(
                "Unknown config field 'guard.%s' will be ignored.", field_name,
            )

    section: dict[str, Any] = {}
    for key in _KNOWN_GUARD_FIELDS:
        value = guard_raw.get(key)
        if value is None:
            continue
        if isinstance(value, str):
            value = _interpolate_env(value, f"guard.{key}", env)
        section[key] = value
    return section


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


# ---------------------------------------------------------------------------
# Environment variable interpolation
# ---------------------------------------------------------------------------

def _interpolate_env(
    value: str, field_path: str, env: Mapping[str, str],
) -> str:
    """Resolve ``${VAR_NAME}`` patterns from *env*.

    Raises:
        ProxyConfigError: If a referenced env var is not set.
    """
    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        resolved = env.get(var_name)
        if resolved is None:
            raise ProxyConfigError(
                f"{field_path}: environment variable "
                f"'{var_name}' is not set"
            )
        return resolved

    return _ENV_VAR_PATTERN.sub(_replacer, value)


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------

class _StrictLoader(yaml.SafeLoader):
    """SafeLoader that rejects a key repeated within one mapping."""

    def construct_mapping(self, node, deep=False):
        if isinstance(node, yaml.MappingNode):
            seen: set[str] = set()
            for key_node, _ in node.value:
                if not isinstance(key_node, yaml.ScalarNode) or key_node.value == "<<":
                    continue
                if key_node.value in seen:
                    raise yaml.constructor.ConstructorError(
                        "while constructing a mapping",
                        node.start_mark,
                        f"Duplicate YAML key: {key_node.value!r}",
                        key_node.start_mark,
                    )
                seen.add(key_node.value)
        return super().construct_mapping(node, deep=deep)
