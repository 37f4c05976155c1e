"""Socket path resolution for the primary and plugin daemons.

Resolution only looks at what exists on disk. It never creates or
removes a socket and never fails: a daemon that is not running is
discovered at connect time, where it becomes a clean ConnectError.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path

from .config import BridgeConfig
from .models import SocketTarget

logger = logging.getLogger(__name__)


class SocketResolver:
    """Maps a SocketTarget to a Unix socket path, recomputed per call."""

    def __init__(self, config: BridgeConfig | None = None) -> None:
        self._config = config or BridgeConfig()

    @property
    def config(self) -> BridgeConfig:
        return self._config

    def resolve(self, target: SocketTarget) -> str:
        if target.is_primary:
            return self.resolve_primary()
        return self.resolve_plugin(target.name)

    def resolve_primary(self) -> str:
        """Priority: env override > system socket > per-user socket.

        The per-user path is returned even when it does not exist yet.
        """
        cfg = self._config
        override = os.getenv(cfg.socket_env_var, "")
        if override and Path(override).exists():
            return override
        if override:
            logger.debug(
                "Ignoring %s=%s: path does not exist",
                cfg.socket_env_var, override,
            )
        if Path(cfg.system_socket_path).exists():
            return cfg.system_socket_path
        return str(self.primary_user_socket())

    def resolve_plugin(self, name: str) -> str:
        """New ``<prefix><name><suffix>`` dir first, then the legacy prefix."""
        current = self.plugin_socket(name, legacy=False)
        if current.exists():
            return str(current)
        legacy = self.plugin_socket(name, legacy=True)
        if legacy.exists():
            logger.debug("Plugin %s resolved via legacy layout: %s", name, legacy)
            return str(legacy)
        return str(current)

    def primary_user_socket(self) -> Path:
        cfg = self._config
        return cfg.base_path / cfg.primary_dir_name / "sockets" / cfg.socket_name

    def plugin_socket(self, name: str, *, legacy: bool = False) -> Path:
        cfg = self._config
        prefix = cfg.legacy_plugin_dir_prefix if legacy else cfg.plugin_dir_prefix
        dir_name = f"{prefix}{name}{cfg.plugin_dir_suffix}"
        return cfg.base_path / dir_name / "sockets" / cfg.socket_name
