"""Incremental Server-Sent Events decoder.

Handles the subset of SSE the daemons emit:

    event: <type>     sets the pending event type (trimmed)
    data: <payload>   sets the pending payload; the last data line wins
    : comment         heartbeat, ignored
    <blank line>      dispatches (type or "", payload) if a payload is pending

Repeated ``data:`` lines replace each other instead of being joined
with newlines. Bytes are buffered until a newline arrives, so a read
boundary may fall anywhere, including inside a multi-byte character.
"""
from __future__ import annotations

from .models import SSEEventFrame


class SSEDecoder:
    """Feed de-chunked bytes in, get complete events out."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._event_type: str | None = None
        self._data: str | None = None

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes | str) -> list[SSEEventFrame]:
        """Append *data* and return the events completed by it."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._buffer.extend(data)
        frames: list[SSEEventFrame] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            raw = bytes(self._buffer[:newline])
            del self._buffer[:newline + 1]
            if raw.endswith(b"\r"):
                raw = raw[:-1]
            frame = self.process_line(raw.decode("utf-8", errors="replace"))
            if frame is not None:
                frames.append(frame)
        return frames

    def process_line(self, line: str) -> SSEEventFrame | None:
        """Apply one complete line to the decoder state."""
        if not line:
            frame = None
            if self._data is not None:
                frame = SSEEventFrame(self._event_type or "", self._data)
            self._event_type = None
            self._data = None
            return frame
        if line.startswith(":"):
            return None
        if line.startswith("event:"):
            self._event_type = line[len("event:"):].strip()
        elif line.startswith("data: "):
            self._data = line[len("data: "):]
        elif line.startswith("data:"):
            self._data = line[len("data:"):].strip()
        return None

    def reset(self) -> None:
        self._buffer.clear()
        self._event_type = None
        self._data = None
