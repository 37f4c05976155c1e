"""Core data models for the daemon bridge.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


PRIMARY = "primary"
PLUGIN_PREFIX = "plugin:"


class TargetKind(str, Enum):
    """Which kind of daemon a target points at."""
    PRIMARY = "primary"
    PLUGIN = "plugin"


@dataclass(frozen=True)
class SocketTarget:
    """Identifies a daemon: the primary one or a named plugin daemon.

    Carries no path. Resolution happens per call because sockets come
    and go.
    """
    kind: TargetKind = TargetKind.PRIMARY
    name: str = ""

    @classmethod
    def primary(cls) -> SocketTarget:
        return cls(TargetKind.PRIMARY)

    @classmethod
    def plugin(cls, name: str) -> SocketTarget:
        if not name:
            raise ValueError("plugin target requires a name")
        return cls(TargetKind.PLUGIN, name)

    @classmethod
    def parse(cls, raw: str) -> SocketTarget:
        """Parse ``"primary"`` or ``"plugin:<name>"``."""
        value = (raw or "").strip()
        if value == PRIMARY:
            return cls.primary()
        if value.startswith(PLUGIN_PREFIX):
            return cls.plugin(value[len(PLUGIN_PREFIX):].strip())
        raise ValueError(f"Unknown socket target: {raw!r}")

    @property
    def is_primary(self) -> bool:
        return self.kind is TargetKind.PRIMARY

    def __str__(self) -> str:
        if self.is_primary:
            return PRIMARY
        return f"{PLUGIN_PREFIX}{self.name}"


@dataclass
class PendingRequest:
    """One proxied call. Lives only for the duration of that call."""
    method: str
    path: str
    query: str = ""
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def full_path(self) -> str:
        if self.query:
            return f"{self.path}?{self.query}"
        return self.path

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass(frozen=True)
class RawResponse:
    """Status, content type and body of a daemon response."""
    status: int
    content_type: str = "application/json"
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text())


@dataclass(frozen=True)
class ResponseHead:
    """Status line and the headers the bridge cares about."""
    status: int
    content_type: str | None = None
    content_length: int | None = None
    chunked: bool = False


@dataclass(frozen=True)
class SSEEventFrame:
    """One dispatched SSE event. ``event_type`` is ``""`` when unnamed."""
    event_type: str
    data: str


@dataclass(frozen=True)
class StreamChannels:
    """Host event names one stream emits on."""
    chunk: str
    done: str
    error: str

    @classmethod
    def for_stream(cls, prefix: str, stream_id: str) -> StreamChannels:
        return cls(
            chunk=f"{prefix}-chunk-{stream_id}",
            done=f"{prefix}-done-{stream_id}",
            error=f"{prefix}-error-{stream_id}",
        )

    def as_dict(self) -> dict[str, str]:
        return {"chunk": self.chunk, "done": self.done, "error": self.error}


@dataclass
class LivenessSnapshot:
    """Last known health of one daemon. ``health is None`` means unreachable."""
    health: dict[str, Any] | None = None
    socket_path: str = ""
    updated_at: float = field(default_factory=time.time)

    @property
    def reachable(self) -> bool:
        return self.health is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "health": self.health,
            "reachable": self.reachable,
            "socket_path": self.socket_path,
            "updated_at": self.updated_at,
        }
