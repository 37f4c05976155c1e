"""Always-on relay of the primary daemon's domain events.

Keeps one SSE connection to the daemon's event endpoint open for the
life of the process, reconnecting after a fixed delay whenever it drops.
Each SSE event type is mapped to a host event name; unmapped types are
logged and dropped.
"""
from __future__ import annotations

import asyncio
import json
import logging

from .config import BridgeConfig
from .errors import BridgeError
from .models import SocketTarget, SSEEventFrame
from .multiplexer import EventSink, SSEConnection
from .resolver import SocketResolver

logger = logging.getLogger(__name__)


class DaemonEventRelay:
    """Background task forwarding typed daemon events to the host."""

    def __init__(
        self,
        emit: EventSink,
        resolver: SocketResolver | None = None,
        config: BridgeConfig | None = None,
        target: SocketTarget | None = None,
    ) -> None:
        self._emit = emit
        self._config = config or (resolver.config if resolver else BridgeConfig())
        self._resolver = resolver or SocketResolver(self._config)
        self._target = target or SocketTarget.primary()
        self._event_map = dict(self._config.relay_event_map)
        self._task: asyncio.Task | None = None
        self._stopping = False
        self.connections = 0
        self.relayed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._loop(), name="daemon-event-relay")
        logger.info(
            "Daemon event relay started target=%s path=%s",
            self._target, self._config.relay_path,
        )

    async def stop(self) -> None:
        self._stopping = True
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        delay = self._config.relay_reconnect_seconds
        while not self._stopping:
            try:
                await self._connect_and_relay()
                logger.info("Daemon event stream ended cleanly, reconnecting in %.1fs", delay)
            except BridgeError as exc:
                logger.info("Daemon event stream error: %s, retrying in %.1fs", exc, delay)
            except Exception:
                logger.exception("Daemon event relay crashed, retrying in %.1fs", delay)
            await asyncio.sleep(delay)

    async def _connect_and_relay(self) -> None:
        connection = SSEConnection(
            self._resolver,
            self._target,
            self._config.relay_path,
            connect_timeout=self._config.connect_timeout_seconds,
            error_body_timeout=self._config.request_timeout_seconds,
        )
        async with connection:
            self.connections += 1
            logger.info(
                "Daemon event stream connected (%s, chunked=%s)",
                connection.socket_path,
                connection.head.chunked if connection.head else False,
            )
            async for frame in connection.frames():
                self.dispatch(frame)

    def dispatch(self, frame: SSEEventFrame) -> bool:
        """Emit *frame* under its mapped host name. False if dropped."""
        name = self._event_map.get(frame.event_type)
        if name is None:
            logger.debug("Unknown daemon event type: %r", frame.event_type)
            return False
        try:
            payload = json.loads(frame.data)
        except ValueError as exc:
            logger.warning("JSON parse error for %s: %s", name, exc)
            return False
        self.relayed += 1
        self._emit(name, payload)
        return True
