from __future__ import annotations

import shutil
import tempfile
from pathlib import Path

import pytest

from daemonbridge.engine.config import BridgeConfig
from daemonbridge.engine.resolver import SocketResolver


@pytest.fixture
def short_tmp():
    # AF_UNIX paths are limited to ~108 bytes; pytest's tmp_path is too deep.
    path = tempfile.mkdtemp(prefix="db-", dir="/tmp")
    yield Path(path)
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def bridge_config(short_tmp, monkeypatch) -> BridgeConfig:
    monkeypatch.delenv("HECATE_SOCKET_PATH", raising=False)
    return BridgeConfig(
        base_dir=str(short_tmp),
        system_socket_path=str(short_tmp / "no-system.sock"),
        request_timeout_seconds=2.0,
        health_timeout_seconds=1.0,
        connect_timeout_seconds=2.0,
        startup_retries=3,
        retry_delay_seconds=0.05,
        recheck_interval_seconds=30.0,
        debounce_seconds=0.5,
        relay_reconnect_seconds=0.05,
        sse_keepalive_seconds=0.2,
    )


@pytest.fixture
def resolver(bridge_config) -> SocketResolver:
    return SocketResolver(bridge_config)


@pytest.fixture
def primary_socket(resolver) -> Path:
    return resolver.primary_user_socket()
