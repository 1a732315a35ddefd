"""Configuration loading utilities.

Supports YAML and JSON configuration files with schema validation, overlaid
with the environment variables the agent container is usually configured with.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from komari_agent.core.schemas import AgentConfig, MetricsConfig


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# env var -> (section, field, converter); section None means top level
_ENV_FIELDS: dict[str, tuple[str | None, str, Any]] = {
    "KOMARI_ENDPOINT": (None, "endpoint", str),
    "KOMARI_TOKEN": (None, "token", str),
    "REPORT_INTERVAL_MS": (None, "report_interval_seconds", lambda v: float(v) / 1000),
    "INFO_INTERVAL_MS": (None, "info_interval_seconds", lambda v: float(v) / 1000),
    "RECONNECT_INTERVAL_MS": (None, "reconnect_delay_seconds", lambda v: float(v) / 1000),
    "AGENT_VERSION": (None, "agent_version", str),
    "DISK_PATH": ("metrics", "disk_path", str),
    "UPTIME_SOURCE": ("metrics", "uptime_policy", str),
    "RAM_TOTAL_FALLBACK": ("metrics", "memory_limit_fallback", str),
    "INCLUDE_LOOPBACK": ("metrics", "exclude_loopback", lambda v: not _parse_bool(v)),
    "LOG_LEVEL": ("diagnostics", "log_level", str),
    "LOG_PAYLOAD": ("diagnostics", "log_payload", _parse_bool),
    "LOG_WS_SEND": ("diagnostics", "log_ws_send", _parse_bool),
    "LOG_WS_EVERY": ("diagnostics", "log_ws_every", int),
    "LOG_WS_MAXLEN": ("diagnostics", "log_ws_max_length", int),
}


def read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    suffix = path.suffix.lower()
    with open(path, encoding="utf-8") as f:
        if suffix in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        elif suffix == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config format: {suffix}. Use .yaml, .yml, or .json")

    return data or {}


def apply_env_overrides(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """Overlay environment variables onto raw config data.

    Empty variables are ignored so that ``FOO=`` does not wipe a file value.

    Raises:
        ValueError: If a numeric variable cannot be converted
    """
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in data.items()}
    for name, (section, field, convert) in _ENV_FIELDS.items():
        raw = env.get(name)
        if raw is None or raw.strip() == "":
            continue
        try:
            value = convert(raw)
        except ValueError as e:
            raise ValueError(f"Invalid value for {name}: {raw!r}") from e
        if section is None:
            merged[field] = value
        else:
            merged.setdefault(section, {})[field] = value
    return merged


def load_config(
    path: Path | str | None = None,
    env: Mapping[str, str] | None = None,
) -> AgentConfig:
    """Load and validate the agent configuration.

    Args:
        path: Optional path to a YAML or JSON configuration file
        env: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated AgentConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or an env value is malformed
        pydantic.ValidationError: If config is invalid (e.g. endpoint/token missing)
    """
    data: dict[str, Any] = {}
    if path is not None:
        data = read_config_file(Path(path))

    data = apply_env_overrides(data, os.environ if env is None else env)
    return AgentConfig.model_validate(data)


def load_metrics_config(
    path: Path | str | None = None,
    env: Mapping[str, str] | None = None,
) -> MetricsConfig:
    """Load only the sampler settings (endpoint/token are not required).

    Used by the offline CLI commands that sample without reporting.
    """
    data: dict[str, Any] = {}
    if path is not None:
        data = read_config_file(Path(path))
    data = apply_env_overrides(data, os.environ if env is None else env)
    return MetricsConfig.model_validate(data.get("metrics", {}))
