"""Bridge core: socket resolution, HTTP/Unix client, SSE streams, liveness."""
from .config import BridgeConfig
from .errors import (
    BridgeError,
    ConnectError,
    DecodeSkip,
    ParseError,
    StreamAlreadyActiveError,
    UpstreamError,
)
from .http_client import UnixHttpClient
from .liveness import LivenessRegistry, LivenessWatcher
from .models import (
    LivenessSnapshot,
    PendingRequest,
    RawResponse,
    SocketTarget,
    SSEEventFrame,
    StreamChannels,
)
from .multiplexer import StreamMultiplexer
from .relay import DaemonEventRelay
from .resolver import SocketResolver
from .sse import SSEDecoder

__all__ = [
    # Config
    "BridgeConfig",
    # Components
    "DaemonEventRelay",
    "LivenessRegistry",
    "LivenessWatcher",
    "SSEDecoder",
    "SocketResolver",
    "StreamMultiplexer",
    "UnixHttpClient",
    # Models
    "LivenessSnapshot",
    "PendingRequest",
    "RawResponse",
    "SSEEventFrame",
    "SocketTarget",
    "StreamChannels",
    # Errors
    "BridgeError",
    "ConnectError",
    "DecodeSkip",
    "ParseError",
    "StreamAlreadyActiveError",
    "UpstreamError",
]
