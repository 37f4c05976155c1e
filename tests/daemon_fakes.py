"""Scripted Unix-socket daemons for tests."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from daemonbridge.engine.chunked import encode_chunk


@dataclass
class RecordedRequest:
    method: str
    target: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


Responder = Callable[[RecordedRequest, asyncio.StreamWriter], Awaitable[None]]

SSE_HEAD = (
    b"HTTP/1.1 200 OK\r\n"
    b"Content-Type: text/event-stream\r\n"
    b"Transfer-Encoding: chunked\r\n\r\n"
)


async def _read_request(reader: asyncio.StreamReader) -> RecordedRequest:
    head = await reader.readuntil(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    method, target, _ = lines[0].split(" ", 2)
    headers: dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        key, _, value = line.partition(":")
        headers[key.strip().lower()] = value.strip()
    length = int(headers.get("content-length", "0"))
    body = await reader.readexactly(length) if length else b""
    return RecordedRequest(method, target, headers, body)


class FakeDaemon:
    """A Unix-socket HTTP server driven by a responder coroutine.

    The responder writes whatever raw bytes the test wants. With
    ``hold_open`` the connection stays up until the client hangs up.
    """

    def __init__(self, path: str | Path, responder: Responder, *, hold_open: bool = False):
        self.path = str(path)
        self.requests: list[RecordedRequest] = []
        self.connections = 0
        self._responder = responder
        self._hold_open = hold_open
        self._server: asyncio.AbstractServer | None = None
        self._writers: list[asyncio.StreamWriter] = []

    async def __aenter__(self) -> FakeDaemon:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._server = await asyncio.start_unix_server(self._handle, path=self.path)
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for writer in self._writers:
            writer.close()
        await self._server.wait_closed()
        self._server = None
        Path(self.path).unlink(missing_ok=True)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.append(writer)
        self.connections += 1
        try:
            request = await _read_request(reader)
            self.requests.append(request)
            await self._responder(request, writer)
            await writer.drain()
            if self._hold_open:
                await reader.read()
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()


def http_response(
    status: int,
    body: bytes = b"",
    *,
    content_type: str | None = "application/json",
    headers: dict[str, str] | None = None,
    content_length: bool = True,
) -> bytes:
    lines = [f"HTTP/1.1 {status} Whatever"]
    if content_type:
        lines.append(f"Content-Type: {content_type}")
    if content_length:
        lines.append(f"Content-Length: {len(body)}")
    for key, value in (headers or {}).items():
        lines.append(f"{key}: {value}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body


def static_responder(raw: bytes) -> Responder:
    async def _respond(request: RecordedRequest, writer: asyncio.StreamWriter) -> None:
        writer.write(raw)

    return _respond


def sse_responder(
    pieces: list[bytes],
    *,
    delay: float = 0.0,
    terminate: bool = True,
) -> Responder:
    """Chunked SSE body, one chunk per piece."""

    async def _respond(request: RecordedRequest, writer: asyncio.StreamWriter) -> None:
        writer.write(SSE_HEAD)
        for piece in pieces:
            writer.write(encode_chunk(piece))
            await writer.drain()
            if delay:
                await asyncio.sleep(delay)
        if terminate:
            writer.write(b"0\r\n\r\n")

    return _respond


class EventRecorder:
    """EventSink that records (name, payload) pairs."""

    def __init__(self) -> None:
        self.events: list[tuple[str, object]] = []
        self._changed = asyncio.Event()

    def __call__(self, name: str, payload: object = None) -> None:
        self.events.append((name, payload))
        self._changed.set()

    def named(self, name: str) -> list[object]:
        return [payload for event, payload in self.events if event == name]

    def names(self) -> list[str]:
        return [event for event, _ in self.events]

    async def wait_for(self, predicate: Callable[[], bool], timeout: float = 3.0) -> None:
        async def _wait() -> None:
            while not predicate():
                self._changed.clear()
                await self._changed.wait()

        await asyncio.wait_for(_wait(), timeout=timeout)
