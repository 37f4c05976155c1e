from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

import pytest
import yaml

from daemonbridge.app import _configure_logging, _resolve_config_path, build_config
from daemonbridge.engine.config import BridgeConfig
from daemonbridge.engine.yaml_config import apply_yaml_overrides, load_yaml_config


@pytest.fixture
def clean_env(monkeypatch, short_tmp):
    for key in list(os.environ):
        if key.startswith("BRIDGE_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("HOME", str(short_tmp))
    return short_tmp


def _args(**overrides) -> argparse.Namespace:
    values = dict(config=None, host=None, port=None, log_level=None, no_relay=False, plugin=None)
    values.update(overrides)
    return argparse.Namespace(**values)


def test_defaults(clean_env):
    config = BridgeConfig.from_env()
    assert config.base_dir == str(clean_env / ".hecate")
    assert config.socket_env_var == "HECATE_SOCKET_PATH"
    assert config.system_socket_path == "/run/hecate/daemon.sock"
    assert config.startup_retries == 10
    assert config.retry_delay_seconds == 0.5
    assert config.recheck_interval_seconds == 30.0
    assert config.debounce_seconds == 0.5
    assert config.relay_reconnect_seconds == 3.0
    assert config.relay_event_map["identity_changed"] == "daemon-identity-changed"
    assert config.log_dir == clean_env / ".hecate" / "logs"


def test_env_overrides(clean_env, monkeypatch):
    monkeypatch.setenv("BRIDGE_BASE_DIR", "/srv/hecate")
    monkeypatch.setenv("BRIDGE_REQUEST_TIMEOUT", "5")
    monkeypatch.setenv("BRIDGE_WATCH_PLUGINS", "weather, llm ,")
    monkeypatch.setenv("BRIDGE_RELAY_ENABLED", "no")
    monkeypatch.setenv("BRIDGE_PORT", "8123")

    config = BridgeConfig.from_env()
    assert config.base_dir == "/srv/hecate"
    assert config.request_timeout_seconds == 5.0
    assert config.watch_plugins == ["weather", "llm"]
    assert config.relay_enabled is False
    assert config.port == 8123


def test_yaml_overlay(clean_env):
    path = clean_env / "bridge.yaml"
    path.write_text(
        "sockets:\n"
        "  base_dir: /opt/hecate\n"
        "  plugin_dir_prefix: acme-\n"
        "client:\n"
        "  request_timeout: 12\n"
        "liveness:\n"
        "  plugins: [weather]\n"
        "  debounce: 1\n"
        "relay:\n"
        "  enabled: false\n"
        "  events:\n"
        "    build_finished: ci-build-finished\n"
        "server:\n"
        "  port: 9000\n",
        encoding="utf-8",
    )
    config = load_yaml_config(path)
    assert config.base_dir == "/opt/hecate"
    assert config.plugin_dir_prefix == "acme-"
    assert config.request_timeout_seconds == 12.0
    assert config.watch_plugins == ["weather"]
    assert config.debounce_seconds == 1.0
    assert config.relay_enabled is False
    assert config.relay_event_map == {"build_finished": "ci-build-finished"}
    assert config.port == 9000


def test_unknown_and_bad_keys_are_ignored(clean_env, caplog):
    config = apply_yaml_overrides(
        BridgeConfig(),
        {
            "client": {"request_timeout": "soon", "colour": "blue"},
            "mystery": {},
            "liveness": "not a mapping",
        },
    )
    assert config.request_timeout_seconds == 30.0
    assert "unknown key client.colour" in caplog.text
    assert "mystery" in caplog.text


def test_empty_yaml_keeps_defaults(clean_env):
    path = clean_env / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_yaml_config(path, base=BridgeConfig(port=7)).port == 7


def test_missing_yaml_raises(clean_env):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(clean_env / "nope.yaml")


def test_non_mapping_yaml_raises(clean_env):
    path = clean_env / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(yaml.YAMLError):
        load_yaml_config(path)


def test_config_autodiscovery(clean_env):
    config = BridgeConfig.from_env()
    assert _resolve_config_path(None, config) is None

    discovered = config.base_path / "bridge.yaml"
    discovered.parent.mkdir(parents=True)
    discovered.write_text("server:\n  port: 9100\n", encoding="utf-8")
    assert _resolve_config_path(None, config) == discovered
    assert _resolve_config_path("/etc/bridge.yaml", config) == Path("/etc/bridge.yaml")


def test_cli_flags_override_file(clean_env):
    path = clean_env / "bridge.yaml"
    path.write_text("server:\n  port: 9000\nliveness:\n  plugins: [weather]\n", encoding="utf-8")

    config = build_config(_args(
        config=str(path), port=0, host="0.0.0.0", no_relay=True, plugin=["llm", "weather"],
    ))
    assert config.port == 0
    assert config.host == "0.0.0.0"
    assert config.relay_enabled is False
    assert config.watch_plugins == ["weather", "llm"]


def test_logging_writes_rotating_file_under_base_dir(clean_env):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        config = BridgeConfig(base_dir=str(clean_env / "base"), log_level="warning")
        log_file = _configure_logging(config)
        assert log_file == clean_env / "base" / "logs" / "bridge.log"
        assert root.level == logging.WARNING

        logging.getLogger("daemonbridge.test").warning("hello from the bridge")
        for handler in root.handlers:
            handler.flush()
        assert "hello from the bridge" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in root.handlers:
            if handler not in saved_handlers:
                handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
