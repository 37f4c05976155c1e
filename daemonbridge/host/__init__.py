"""HTTP + SSE surface the UI host talks to."""
