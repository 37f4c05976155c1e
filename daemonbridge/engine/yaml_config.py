"""YAML configuration loader.

Overlays a YAML file on top of the env-derived BridgeConfig. Every
section and key is optional; unknown keys are logged and ignored.

Example YAML:
    sockets:
      base_dir: ~/.hecate
      env_var: HECATE_SOCKET_PATH
      system_socket: /run/hecate/daemon.sock
      plugin_dir_prefix: hecate-app-

    client:
      request_timeout: 30
      health_timeout: 2

    liveness:
      startup_retries: 10
      retry_delay: 0.5
      recheck_interval: 30
      debounce: 0.5
      plugins: [weather, llm]

    relay:
      enabled: true
      path: /api/events
      reconnect_delay: 3
      events:
        realm_join_status: daemon-realm-join-status

    server:
      host: 127.0.0.1
      port: 0
      log_level: DEBUG
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import BridgeConfig

logger = logging.getLogger(__name__)


# section -> {yaml key: BridgeConfig attribute}
_SECTION_KEYS: dict[str, dict[str, str]] = {
    "sockets": {
        "base_dir": "base_dir",
        "env_var": "socket_env_var",
        "system_socket": "system_socket_path",
        "primary_dir": "primary_dir_name",
        "socket_name": "socket_name",
        "plugin_dir_prefix": "plugin_dir_prefix",
        "legacy_plugin_dir_prefix": "legacy_plugin_dir_prefix",
        "plugin_dir_suffix": "plugin_dir_suffix",
    },
    "client": {
        "request_timeout": "request_timeout_seconds",
        "health_timeout": "health_timeout_seconds",
        "connect_timeout": "connect_timeout_seconds",
        "health_path": "health_path",
    },
    "liveness": {
        "startup_retries": "startup_retries",
        "retry_delay": "retry_delay_seconds",
        "recheck_interval": "recheck_interval_seconds",
        "debounce": "debounce_seconds",
        "plugins": "watch_plugins",
    },
    "relay": {
        "enabled": "relay_enabled",
        "path": "relay_path",
        "reconnect_delay": "relay_reconnect_seconds",
        "events": "relay_event_map",
    },
    "server": {
        "host": "host",
        "port": "port",
        "keepalive": "sse_keepalive_seconds",
        "event_queue_size": "event_queue_size",
        "log_level": "log_level",
    },
}

_FLOAT_FIELDS = {
    "request_timeout_seconds",
    "health_timeout_seconds",
    "connect_timeout_seconds",
    "retry_delay_seconds",
    "recheck_interval_seconds",
    "debounce_seconds",
    "relay_reconnect_seconds",
    "sse_keepalive_seconds",
}
_INT_FIELDS = {"startup_retries", "port", "event_queue_size"}


def _coerce(attr: str, value: Any) -> Any:
    if attr in _FLOAT_FIELDS:
        return float(value)
    if attr in _INT_FIELDS:
        return int(value)
    if attr == "watch_plugins":
        if isinstance(value, str):
            return [p.strip() for p in value.split(",") if p.strip()]
        return [str(p) for p in (value or [])]
    if attr == "relay_event_map":
        return {str(k): str(v) for k, v in (value or {}).items()}
    if attr == "relay_enabled":
        if isinstance(value, str):
            return value.lower() in {"1", "true", "yes", "on"}
        return bool(value)
    return str(value)


def apply_yaml_overrides(config: BridgeConfig, raw: dict[str, Any]) -> BridgeConfig:
    """Apply parsed YAML sections onto *config* in place and return it."""
    for section, keys in _SECTION_KEYS.items():
        section_raw = raw.get(section) or {}
        if not isinstance(section_raw, dict):
            logger.warning(
                "apply_yaml_overrides: section %r is not a mapping, ignoring",
                section,
            )
            continue
        for key, value in section_raw.items():
            attr = keys.get(key)
            if attr is None:
                logger.warning(
                    "apply_yaml_overrides: unknown key %s.%s, ignoring",
                    section, key,
                )
                continue
            try:
                setattr(config, attr, _coerce(attr, value))
            except (TypeError, ValueError) as exc:
                logger.warning(
                    "apply_yaml_overrides: bad value for %s.%s (%r): %s",
                    section, key, value, exc,
                )
    unknown = sorted(set(raw) - set(_SECTION_KEYS))
    if unknown:
        logger.warning(
            "apply_yaml_overrides: unknown sections ignored: %s",
            ", ".join(unknown),
        )
    return config


def load_yaml_config(
    path: str | Path,
    base: BridgeConfig | None = None,
) -> BridgeConfig:
    """Load a YAML config file and overlay it on *base* (or the env config)."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        logger.info("load_yaml_config: successfully read and parsed %s", path)
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc,
        )
        raise

    if not isinstance(raw, dict):
        raise yaml.YAMLError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s - sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )
    config = base if base is not None else BridgeConfig.from_env()
    return apply_yaml_overrides(config, raw)
