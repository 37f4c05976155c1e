"""Daemon liveness watching.

One background task per watched daemon keeps a cached LivenessSnapshot
up to date from two independent signals:

1. Filesystem notifications (watchdog) on the socket's directory.
   Create/modify of the socket file triggers a probe sequence; removal
   caches "unreachable" at once, without probing.
2. A periodic recheck that probes regardless, to catch stale sockets and
   daemons that restart on the same path without a visible fs event.

The snapshot cell is written only by the watcher's own task and read
by anyone through ``snapshot()``, which hands out a deep copy.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import math
import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import BridgeConfig
from .errors import BridgeError
from .http_client import UnixHttpClient
from .models import LivenessSnapshot, SocketTarget
from .multiplexer import EventSink

logger = logging.getLogger(__name__)

DAEMON_HEALTH_EVENT = "daemon-health"
PLUGIN_HEALTH_EVENT = "plugin-health"

# Signature: async def probe(target) -> health dict; raises on failure
HealthProbe = Callable[[SocketTarget], Awaitable[dict[str, Any]]]


class SocketEventKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class SocketEvent:
    kind: SocketEventKind
    path: str
    at: float = 0.0


class SocketDirHandler(FileSystemEventHandler):
    """Forwards events for one file name in a watched directory."""

    def __init__(self, socket_name: str, notify: Callable[[SocketEvent], None]) -> None:
        super().__init__()
        self.socket_name = socket_name
        self._notify = notify

    def _forward(self, kind: SocketEventKind, raw_path: str | bytes) -> None:
        path = os.fsdecode(raw_path)
        if Path(path).name != self.socket_name:
            return
        self._notify(SocketEvent(kind, path, time.monotonic()))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(SocketEventKind.CREATED, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(SocketEventKind.MODIFIED, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(SocketEventKind.DELETED, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._forward(SocketEventKind.DELETED, event.src_path)
        self._forward(SocketEventKind.CREATED, event.dest_path)


class LivenessWatcher:
    """Caches the health of one daemon. See module docstring."""

    def __init__(
        self,
        target: SocketTarget,
        client: UnixHttpClient,
        emit: EventSink | None = None,
        config: BridgeConfig | None = None,
        *,
        probe: HealthProbe | None = None,
        observe: bool = True,
    ) -> None:
        self._target = target
        self._client = client
        self._emit = emit
        self._config = config or client.resolver.config
        self._probe = probe or client.check_health
        self._observe = observe

        self._lock = threading.Lock()
        self._snapshot = LivenessSnapshot(health=None, socket_path=self.socket_path())

        self._loop: asyncio.AbstractEventLoop | None = None
        self._events: asyncio.Queue[SocketEvent] | None = None
        self._task: asyncio.Task | None = None
        self._observer: Any = None
        self._watch: Any = None
        self._handler: SocketDirHandler | None = None
        self._watched_dir: Path | None = None
        self._last_trigger_at = -math.inf
        self.probes = 0

    @property
    def target(self) -> SocketTarget:
        return self._target

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def socket_path(self) -> str:
        return self._client.resolver.resolve(self._target)

    # ── Readers ──

    def snapshot(self) -> LivenessSnapshot:
        """Last cached state. No socket I/O, never blocks on the watcher."""
        with self._lock:
            return copy.deepcopy(self._snapshot)

    # ── Lifecycle ──

    def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        if self._observe:
            self._observer = Observer()
            self._observer.daemon = True
            self._observer.start()
        self._task = asyncio.create_task(
            self._run(), name=f"liveness-{self._target}",
        )
        logger.info("Liveness watcher started for %s", self._target)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._observer is not None:
            self._observer.stop()
            await asyncio.to_thread(self._observer.join, 2.0)
            self._observer = None
            self._watch = None
            self._watched_dir = None
        logger.info("Liveness watcher stopped for %s", self._target)

    def notify(self, event: SocketEvent) -> None:
        """Hand a filesystem event to the watcher task. Safe from any thread."""
        if self._loop is None or self._events is None:
            return
        self._loop.call_soon_threadsafe(self._events.put_nowait, event)

    # ── Watcher task ──

    async def _run(self) -> None:
        assert self._events is not None
        path = self.socket_path()
        self._ensure_watch(path)
        if Path(path).exists():
            logger.info("[%s] socket exists at startup: %s", self._target, path)
            await self._wait_for_healthy(path)
        else:
            logger.info("[%s] socket not found at startup: %s", self._target, path)
            self._store(None, path, force_emit=True)

        interval = self._config.recheck_interval_seconds
        loop = asyncio.get_running_loop()
        # Fs events must not push the recheck back.
        next_recheck_at = loop.time() + interval
        while True:
            try:
                remaining = next_recheck_at - loop.time()
                if remaining <= 0:
                    next_recheck_at = loop.time() + interval
                    await self._periodic_recheck()
                    continue
                try:
                    event = await asyncio.wait_for(self._events.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    continue
                await self._handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[%s] liveness watcher iteration failed", self._target)

    async def _handle_event(self, event: SocketEvent) -> None:
        path = self.socket_path()
        if Path(event.path).name != Path(path).name:
            return
        logger.debug("[%s] fs event %s %s", self._target, event.kind.value, event.path)

        if event.kind is SocketEventKind.DELETED:
            # A later create must always probe again.
            self._last_trigger_at = -math.inf
            self._store(None, path, force_emit=True)
            return

        if event.at - self._last_trigger_at < self._config.debounce_seconds:
            logger.debug("[%s] debounced %s", self._target, event.kind.value)
            return
        self._last_trigger_at = event.at
        await self._wait_for_healthy(path)

    async def _wait_for_healthy(self, path: str) -> None:
        retries = max(1, self._config.startup_retries)
        for attempt in range(retries):
            if not Path(path).exists():
                logger.info("[%s] socket disappeared while probing", self._target)
                self._store(None, path, force_emit=True)
                return
            logger.debug(
                "[%s] wait_for_healthy attempt %d/%d",
                self._target, attempt + 1, retries,
            )
            health = await self._probe_once()
            if health is not None:
                self._store(health, path, force_emit=True)
                return
            if attempt < retries - 1:
                await asyncio.sleep(self._config.retry_delay_seconds)
        logger.info("[%s] gave up waiting for healthy", self._target)
        self._store(None, path, force_emit=True)

    async def _periodic_recheck(self) -> None:
        path = self.socket_path()
        self._ensure_watch(path)
        exists = Path(path).exists()
        logger.debug("[%s] periodic recheck (socket exists: %s)", self._target, exists)
        health = await self._probe_once() if exists else None
        self._store(health, path, force_emit=False)

    async def _probe_once(self) -> dict[str, Any] | None:
        self.probes += 1
        try:
            health = await self._probe(self._target)
        except BridgeError as exc:
            logger.debug("[%s] health check failed: %s", self._target, exc)
            return None
        except Exception:
            logger.warning("[%s] health probe raised", self._target, exc_info=True)
            return None
        logger.debug("[%s] health check OK", self._target)
        return health

    def _store(
        self,
        health: dict[str, Any] | None,
        socket_path: str,
        *,
        force_emit: bool,
    ) -> None:
        fresh = LivenessSnapshot(
            health=copy.deepcopy(health),
            socket_path=socket_path,
            updated_at=time.time(),
        )
        with self._lock:
            previous = self._snapshot
            self._snapshot = fresh
        if force_emit or previous.health != health:
            self._publish(health)

    def _publish(self, health: dict[str, Any] | None) -> None:
        label = "connected" if health is not None else "unavailable"
        logger.info("[%s] health: %s", self._target, label)
        if self._emit is None:
            return
        if self._target.is_primary:
            self._emit(DAEMON_HEALTH_EVENT, copy.deepcopy(health))
        else:
            self._emit(
                PLUGIN_HEALTH_EVENT,
                {"plugin": self._target.name, "health": copy.deepcopy(health)},
            )

    def _ensure_watch(self, socket_path: str) -> None:
        """(Re)point the fs watch at the socket's directory, creating it if needed."""
        directory = Path(socket_path).parent
        if self._handler is not None:
            self._handler.socket_name = Path(socket_path).name
        if directory == self._watched_dir:
            return
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("[%s] cannot create %s: %s", self._target, directory, exc)
        if self._observer is None:
            self._watched_dir = directory
            return
        if self._watch is not None:
            self._observer.unschedule(self._watch)
            self._watch = None
        self._handler = SocketDirHandler(Path(socket_path).name, self.notify)
        try:
            self._watch = self._observer.schedule(
                self._handler, str(directory), recursive=False,
            )
        except OSError as exc:
            logger.warning(
                "[%s] failed to watch %s: %s (periodic recheck only)",
                self._target, directory, exc,
            )
            return
        self._watched_dir = directory
        logger.info("[%s] watching %s", self._target, directory)


class LivenessRegistry:
    """All liveness watchers of this process, one per target."""

    def __init__(
        self,
        client: UnixHttpClient,
        emit: EventSink | None = None,
        config: BridgeConfig | None = None,
        *,
        observe: bool = True,
    ) -> None:
        self._client = client
        self._emit = emit
        self._config = config or client.resolver.config
        self._observe = observe
        self._watchers: dict[SocketTarget, LivenessWatcher] = {}

    def watch(self, target: SocketTarget) -> LivenessWatcher:
        """Start watching *target* (idempotent) and return its watcher."""
        watcher = self._watchers.get(target)
        if watcher is None:
            watcher = LivenessWatcher(
                target,
                self._client,
                self._emit,
                self._config,
                observe=self._observe,
            )
            self._watchers[target] = watcher
        watcher.start()
        return watcher

    def watcher(self, target: SocketTarget) -> LivenessWatcher | None:
        return self._watchers.get(target)

    def targets(self) -> list[SocketTarget]:
        return list(self._watchers)

    def cached(self, target: SocketTarget) -> LivenessSnapshot | None:
        """Cached snapshot for *target*, or None when it is not watched."""
        watcher = self._watchers.get(target)
        if watcher is None:
            return None
        return watcher.snapshot()

    async def stop_all(self) -> None:
        for watcher in list(self._watchers.values()):
            await watcher.stop()
