"""Exception hierarchy for the daemon bridge.

One exception per failure mode so callers can tell a missing daemon
from a broken one. Never collapse these into a generic failure.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class ConnectError(BridgeError):
    """Socket missing, refused, timed out, or lost mid-exchange."""
    def __init__(self, socket_path: str, reason: str):
        self.socket_path = socket_path
        self.reason = reason
        super().__init__(f"Cannot reach daemon at {socket_path}: {reason}")


class ParseError(BridgeError):
    """Malformed status line, chunk size, or response payload."""
    def __init__(self, what: str, raw: str = ""):
        self.what = what
        self.raw = raw
        detail = f": {raw!r}" if raw else ""
        super().__init__(f"Invalid {what}{detail}")


class UpstreamError(BridgeError):
    """Daemon answered with status >= 400."""
    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"daemon returned {status}: {body}")


class DecodeSkip(BridgeError):
    """A single SSE payload could not be decoded. Never fatal to a stream."""
    def __init__(self, data: str, reason: str):
        self.data = data
        self.reason = reason
        super().__init__(f"Skipping undecodable payload ({reason})")


class StreamAlreadyActiveError(BridgeError):
    """A stream with this id is still running."""
    def __init__(self, stream_id: str):
        self.stream_id = stream_id
        super().__init__(f"Stream already active: {stream_id}")
