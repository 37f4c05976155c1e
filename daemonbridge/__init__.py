"""daemonbridge: HTTP/SSE bridge between a UI host and Unix-socket daemons."""

__version__ = "0.1.0"
