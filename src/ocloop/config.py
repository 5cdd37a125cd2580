"""Harness configuration: defaults, JSON file, environment and CLI overrides.

Precedence (highest to lowest): CLI options > ``OCLOOP_*`` env vars > JSON
config file > hardcoded defaults. Empty env vars are treated as unset.
"""

import json
import os
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict

from ocloop.constants import (
    CONFIG_FILE,
    DEFAULT_COLS,
    DEFAULT_PLAN_FILE,
    DEFAULT_PROMPT_FILE,
    DEFAULT_ROWS,
    LOG_FILE,
    SERVER_HOSTNAME,
    SERVER_PORT,
    SERVER_STARTUP_TIMEOUT,
)

ENV_PREFIX = "OCLOOP_"

VALID_TOP_LEVEL_KEYS = frozenset({
    "port", "hostname", "model", "prompt_file", "plan_file", "run", "debug",
    "attach", "verbose", "log_file", "server", "channel",
})

# (json_dotted_path, env_var_suffix, field_name, hardcoded_default, value_type)
_CONFIG_KEYS: list[tuple[str, str, str, object, type]] = [
    ("port",                    "PORT",            "port",            SERVER_PORT,            int),
    ("hostname",                "HOSTNAME",        "hostname",        SERVER_HOSTNAME,        str),
    ("model",                   "MODEL",           "model",           "",                     str),
    ("prompt_file",             "PROMPT_FILE",     "prompt_file",     DEFAULT_PROMPT_FILE,    str),
    ("plan_file",               "PLAN_FILE",       "plan_file",       DEFAULT_PLAN_FILE,      str),
    ("run",                     "RUN",             "run",             False,                  bool),
    ("debug",                   "DEBUG",           "debug",           False,                  bool),
    ("attach",                  "ATTACH",          "attach",          False,                  bool),
    ("verbose",                 "VERBOSE",         "verbose",         False,                  bool),
    ("log_file",                "LOG_FILE",        "log_file",        LOG_FILE,               str),
    ("server.startup_timeout",  "STARTUP_TIMEOUT", "startup_timeout", SERVER_STARTUP_TIMEOUT, float),
    ("channel.cols",            "COLS",            "channel_cols",    DEFAULT_COLS,           int),
    ("channel.rows",            "ROWS",            "channel_rows",    DEFAULT_ROWS,           int),
]


class ConfigError(Exception):
    """Raised for unreadable or invalid configuration."""

    pass


class HarnessConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    port: int = SERVER_PORT
    hostname: str = SERVER_HOSTNAME
    model: str = ""
    prompt_file: str = DEFAULT_PROMPT_FILE
    plan_file: str = DEFAULT_PLAN_FILE
    run: bool = False
    debug: bool = False
    attach: bool = False
    verbose: bool = False
    log_file: str = LOG_FILE
    startup_timeout: float = SERVER_STARTUP_TIMEOUT
    channel_cols: int = DEFAULT_COLS
    channel_rows: int = DEFAULT_ROWS


def _get_json_value(data: dict, dotted_key: str) -> object | None:
    """Retrieve a value from nested JSON using dotted key (e.g., 'server.startup_timeout')."""
    obj: object = data
    for part in dotted_key.split("."):
        if not isinstance(obj, dict) or part not in obj:
            return None
        obj = obj[part]
    return obj


def _coerce(value: object, typ: type, source: str) -> object:
    if typ is bool:
        return bool(value)
    try:
        return typ(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for {source}: {value!r}")


def _parse_env(env_var: str, typ: type) -> object | None:
    """Read env var; return None if unset or empty string (treated as unset)."""
    raw = os.environ.get(env_var)
    if raw is None or raw == "":
        return None
    if typ is bool:
        return raw == "1"
    return _coerce(raw, typ, env_var)


def read_config_file(config_path: Path) -> dict:
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config file {config_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a JSON object")

    unknown = set(data.keys()) - VALID_TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
    return data


def load_config(
    config_path: Path | None = None, overrides: Mapping[str, Any] | None = None
) -> HarnessConfig:
    """Build the harness configuration.

    An explicit ``config_path`` must exist; the default user config file is
    optional. ``overrides`` maps field names to CLI values, None meaning
    "not given".
    """
    if config_path is not None:
        if not config_path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")
        json_data = read_config_file(config_path)
    elif CONFIG_FILE.is_file():
        json_data = read_config_file(CONFIG_FILE)
    else:
        json_data = {}

    values: dict[str, object] = {}
    for json_path, env_suffix, field, default, typ in _CONFIG_KEYS:
        value = default
        json_val = _get_json_value(json_data, json_path)
        if json_val is not None:
            value = _coerce(json_val, typ, json_path)
        env_val = _parse_env(f"{ENV_PREFIX}{env_suffix}", typ)
        if env_val is not None:
            value = env_val
        values[field] = value

    for field, value in (overrides or {}).items():
        if value is not None:
            values[field] = value

    return HarnessConfig(**values)
