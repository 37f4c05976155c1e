"""Events emitted to the UI host.

Every outbound event is a name plus a JSON-serialisable payload. Names
are either fixed per event class (``daemon-health``) or carry the
caller's stream id (``chat-chunk-<id>``) so concurrent streams never
collide.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any


@dataclass
class HostEvent:
    """One named event for the UI host."""
    name: str
    payload: Any = None
    timestamp: float = field(default_factory=time.time)


def encode_sse(event: HostEvent) -> bytes:
    """SSE wire form of *event* for the host-facing /events stream."""
    data = json.dumps(event.payload)
    return f"event: {event.name}\ndata: {data}\n\n".encode("utf-8")
