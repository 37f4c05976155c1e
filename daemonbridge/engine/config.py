"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via BRIDGE_* env vars
or a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


def _default_base_dir() -> str:
    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".hecate")
    return "/run/hecate"


def _default_event_map() -> dict[str, str]:
    return {
        "realm_join_status": "daemon-realm-join-status",
        "identity_changed": "daemon-identity-changed",
        "settings_changed": "daemon-settings-changed",
    }


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass
class BridgeConfig:
    """Daemon bridge configuration."""

    # Socket layout. Per-user sockets live under base_dir.
    base_dir: str = field(default_factory=_default_base_dir)
    socket_env_var: str = "HECATE_SOCKET_PATH"
    system_socket_path: str = "/run/hecate/daemon.sock"
    primary_dir_name: str = "hecate-daemon"
    socket_name: str = "api.sock"
    # Plugin daemon dirs: <prefix><name><suffix>, e.g. hecate-app-weatherd
    plugin_dir_prefix: str = "hecate-app-"
    legacy_plugin_dir_prefix: str = "hecate-"
    plugin_dir_suffix: str = "d"

    # Request/response client
    request_timeout_seconds: float = 30.0
    health_timeout_seconds: float = 2.0
    connect_timeout_seconds: float = 30.0
    health_path: str = "/health"

    # Liveness watcher
    startup_retries: int = 10
    retry_delay_seconds: float = 0.5
    recheck_interval_seconds: float = 30.0
    debounce_seconds: float = 0.5
    watch_plugins: list[str] = field(default_factory=list)

    # Daemon event relay
    relay_enabled: bool = True
    relay_path: str = "/api/events"
    relay_reconnect_seconds: float = 3.0
    relay_event_map: dict[str, str] = field(default_factory=_default_event_map)

    # UI host surface
    host: str = "127.0.0.1"
    port: int = 0
    sse_keepalive_seconds: float = 30.0
    event_queue_size: int = 5000

    # Logging
    log_level: str = "INFO"

    @property
    def base_path(self) -> Path:
        return Path(self.base_dir).expanduser()

    @property
    def log_dir(self) -> Path:
        return self.base_path / "logs"

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from BRIDGE_* environment variables."""
        bridge_vars = {
            k: v for k, v in os.environ.items() if k.startswith("BRIDGE_")
        }
        if bridge_vars:
            logger.info(
                "BridgeConfig.from_env: BRIDGE_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(bridge_vars.items())),
            )
        else:
            logger.debug("BridgeConfig.from_env: no BRIDGE_* env vars set, using defaults")

        defaults = cls()
        plugins_raw = os.getenv("BRIDGE_WATCH_PLUGINS", "")
        config = cls(
            base_dir=os.getenv("BRIDGE_BASE_DIR", defaults.base_dir),
            socket_env_var=os.getenv(
                "BRIDGE_SOCKET_ENV_VAR", cls.socket_env_var
            ),
            system_socket_path=os.getenv(
                "BRIDGE_SYSTEM_SOCKET", cls.system_socket_path
            ),
            request_timeout_seconds=float(os.getenv(
                "BRIDGE_REQUEST_TIMEOUT", str(cls.request_timeout_seconds)
            )),
            health_timeout_seconds=float(os.getenv(
                "BRIDGE_HEALTH_TIMEOUT", str(cls.health_timeout_seconds)
            )),
            startup_retries=int(os.getenv(
                "BRIDGE_STARTUP_RETRIES", str(cls.startup_retries)
            )),
            recheck_interval_seconds=float(os.getenv(
                "BRIDGE_RECHECK_INTERVAL", str(cls.recheck_interval_seconds)
            )),
            watch_plugins=[
                p.strip() for p in plugins_raw.split(",") if p.strip()
            ],
            relay_enabled=_env_bool("BRIDGE_RELAY_ENABLED", cls.relay_enabled),
            host=os.getenv("BRIDGE_HOST", cls.host),
            port=int(os.getenv("BRIDGE_PORT", str(cls.port))),
            log_level=os.getenv("BRIDGE_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "BridgeConfig.from_env: base_dir=%s system_socket=%s log_level=%s",
            config.base_dir, config.system_socket_path, config.log_level,
        )
        return config
