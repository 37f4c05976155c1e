"""SSE streams from daemons, one background task per stream.

Every stream gets its own connection and its own asyncio task. The task
body is wrapped so that however it ends (terminal chunk, ``[DONE]``,
wire error, internal fault, cancellation) exactly one terminal event is
emitted: either on the stream's done channel or on its error channel.
Nothing is emitted on any of its channels after that.

Channel names carry the caller's stream id::

    <prefix>-chunk-<stream_id>
    <prefix>-done-<stream_id>
    <prefix>-error-<stream_id>
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Callable

from . import traffic
from .chunked import iter_chunks
from .config import BridgeConfig
from .errors import BridgeError, DecodeSkip, StreamAlreadyActiveError, UpstreamError
from .http_client import (
    READ_BLOCK,
    SocketReader,
    build_request_head,
    close_writer,
    open_connection,
    read_response_head,
    send_bytes,
)
from .models import ResponseHead, SocketTarget, SSEEventFrame, StreamChannels
from .payloads import PayloadKind, PayloadParser, get_parser
from .resolver import SocketResolver
from .sse import SSEDecoder

logger = logging.getLogger(__name__)

# Signature: emit(event_name, payload) -> None
EventSink = Callable[[str, Any], None]

EVENT_STREAM = "text/event-stream"


def done_payload() -> dict[str, Any]:
    return {"type": "done"}


def error_payload(message: str) -> dict[str, Any]:
    return {"type": "error", "error": message}


async def _read_error_body(reader: SocketReader, head: ResponseHead) -> str:
    if head.content_length is not None:
        raw = await reader.readexactly(max(head.content_length, 0))
    elif head.chunked:
        raw = b"".join([chunk async for chunk in iter_chunks(reader)])
    else:
        raw = await reader.read_to_eof()
    return raw.decode("utf-8", errors="replace")


class SSEConnection:
    """One SSE request over a daemon socket, as an async context manager.

    Entering connects, sends the request and reads the response head;
    a status >= 400 raises UpstreamError carrying the daemon's body.
    ``frames()`` then yields decoded events until the body ends.
    Reads have no timeout: an idle stream is not a dead one.
    """

    def __init__(
        self,
        resolver: SocketResolver,
        target: SocketTarget,
        path: str,
        *,
        method: str = "GET",
        body: bytes = b"",
        connect_timeout: float | None = 30.0,
        error_body_timeout: float | None = 30.0,
    ) -> None:
        self._resolver = resolver
        self._target = target
        self._path = path
        self._method = method
        self._body = body
        self._connect_timeout = connect_timeout
        self._error_body_timeout = error_body_timeout
        self._reader: SocketReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self.socket_path = ""
        self.head: ResponseHead | None = None

    async def __aenter__(self) -> SSEConnection:
        self.socket_path = self._resolver.resolve(self._target)
        self._reader, self._writer = await open_connection(
            self.socket_path,
            connect_timeout=self._connect_timeout,
            read_timeout=None,
        )
        try:
            await self._send_request()
            self.head = await read_response_head(self._reader)
            logger.debug(
                "SSE %s %s status=%d chunked=%s",
                self._target, self._path, self.head.status, self.head.chunked,
            )
            if self.head.status >= 400:
                raise UpstreamError(self.head.status, await self._error_body())
        except BaseException:
            await self._close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self._close()

    async def _send_request(self) -> None:
        assert self._writer is not None
        head = build_request_head(
            self._method,
            self._path,
            body_length=len(self._body),
            accept=EVENT_STREAM,
            connection="keep-alive",
        )
        await send_bytes(self._writer, head, self.socket_path, self._connect_timeout)
        if self._body:
            await send_bytes(
                self._writer, self._body, self.socket_path, self._connect_timeout,
            )

    async def _error_body(self) -> str:
        assert self._reader is not None and self.head is not None
        try:
            return await asyncio.wait_for(
                _read_error_body(self._reader, self.head),
                timeout=self._error_body_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out reading error body from %s (status %d)",
                self.socket_path, self.head.status,
            )
            return ""

    async def _close(self) -> None:
        if self._writer is not None:
            await close_writer(self._writer)
            self._writer = None

    async def _blocks(self) -> AsyncIterator[bytes]:
        assert self._reader is not None and self.head is not None
        reader = self._reader
        if self.head.chunked:
            async for chunk in iter_chunks(reader):
                yield chunk
            return
        remaining = self.head.content_length
        while remaining is None or remaining > 0:
            size = READ_BLOCK if remaining is None else min(READ_BLOCK, remaining)
            block = await reader.read(size)
            if not block:
                return
            if remaining is not None:
                remaining -= len(block)
            yield block

    async def frames(self) -> AsyncIterator[SSEEventFrame]:
        """Decoded SSE events, in wire order."""
        decoder = SSEDecoder()
        async for block in self._blocks():
            traffic.record_rx(len(block))
            for frame in decoder.feed(block):
                yield frame
        if decoder.pending_bytes:
            logger.debug(
                "SSE body ended with %d bytes of incomplete line",
                decoder.pending_bytes,
            )


@dataclass
class StreamSession:
    """A running stream. Emits at most one terminal event."""

    stream_id: str
    target: SocketTarget
    path: str
    channels: StreamChannels
    emit: EventSink = field(repr=False)
    parser: PayloadParser = field(repr=False)
    method: str = "GET"
    body: bytes = field(default=b"", repr=False)
    task: asyncio.Task | None = field(default=None, repr=False)
    chunks_sent: int = 0
    _terminated: bool = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    def send_chunk(self, payload: Any) -> None:
        if self._terminated:
            logger.debug("Dropping chunk for finished stream %s", self.stream_id)
            return
        self.chunks_sent += 1
        self.emit(self.channels.chunk, payload)

    def finish(self, payload: Any = None) -> bool:
        """Emit the done event. False if a terminal event already went out."""
        if self._terminated:
            return False
        self._terminated = True
        self.emit(self.channels.done, payload if payload is not None else done_payload())
        return True

    def fail(self, message: str) -> bool:
        """Emit the error event. False if a terminal event already went out."""
        if self._terminated:
            return False
        self._terminated = True
        self.emit(self.channels.error, error_payload(message))
        return True


class StreamMultiplexer:
    """Runs one decode task per open stream and routes its events."""

    def __init__(
        self,
        emit: EventSink,
        resolver: SocketResolver | None = None,
        config: BridgeConfig | None = None,
    ) -> None:
        self._emit = emit
        self._config = config or (resolver.config if resolver else BridgeConfig())
        self._resolver = resolver or SocketResolver(self._config)
        self._sessions: dict[str, StreamSession] = {}

    def active_streams(self) -> list[str]:
        return list(self._sessions)

    def session(self, stream_id: str) -> StreamSession | None:
        return self._sessions.get(stream_id)

    def open_stream(
        self,
        target: SocketTarget,
        path: str,
        stream_id: str,
        *,
        prefix: str = "stream",
        method: str = "GET",
        body: bytes = b"",
        parser: str | PayloadParser = "json",
    ) -> StreamChannels:
        """Start streaming *path* from *target* in the background.

        Returns the channel names immediately. Must be called from a
        running event loop.
        """
        if not stream_id:
            raise ValueError("stream_id is required")
        if stream_id in self._sessions:
            raise StreamAlreadyActiveError(stream_id)
        parse = get_parser(parser) if isinstance(parser, str) else parser

        session = StreamSession(
            stream_id=stream_id,
            target=target,
            path=path,
            channels=StreamChannels.for_stream(prefix, stream_id),
            emit=self._emit,
            parser=parse,
            method=method,
            body=body,
        )
        self._sessions[stream_id] = session
        session.task = asyncio.create_task(
            self._run(session), name=f"stream-{stream_id}",
        )
        session.task.add_done_callback(
            lambda task, s=session: self._finalize(s, task)
        )
        logger.info(
            "Stream %s opened target=%s path=%s active=%d",
            stream_id, target, path, len(self._sessions),
        )
        return session.channels

    async def shutdown(self) -> None:
        """Cancel every running stream; each still emits its terminal event."""
        tasks = [s.task for s in self._sessions.values() if s.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, session: StreamSession) -> None:
        try:
            await self._pump(session)
        except asyncio.CancelledError:
            session.fail("stream cancelled")
            raise
        except BridgeError as exc:
            logger.warning("Stream %s error: %s", session.stream_id, exc)
            session.fail(str(exc))
        except Exception as exc:
            logger.exception("Stream %s crashed", session.stream_id)
            session.fail(f"Internal error: {exc}")
        else:
            if session.finish():
                logger.info(
                    "Stream %s completed after %d chunks",
                    session.stream_id, session.chunks_sent,
                )

    def _finalize(self, session: StreamSession, task: asyncio.Task) -> None:
        # Runs however the task ended, including cancellation before its
        # first step, when _run never got to execute.
        if self._sessions.get(session.stream_id) is session:
            del self._sessions[session.stream_id]
        if session.terminated:
            return
        if task.cancelled():
            session.fail("stream cancelled")
        else:
            session.fail("stream ended without a terminal event")

    async def _pump(self, session: StreamSession) -> None:
        connection = SSEConnection(
            self._resolver,
            session.target,
            session.path,
            method=session.method,
            body=session.body,
            connect_timeout=self._config.connect_timeout_seconds,
            error_body_timeout=self._config.request_timeout_seconds,
        )
        async with connection:
            async for frame in connection.frames():
                try:
                    parsed = session.parser(frame)
                except DecodeSkip as exc:
                    logger.debug("Stream %s: %s", session.stream_id, exc)
                    continue
                if parsed.kind is PayloadKind.DONE:
                    session.finish(parsed.payload)
                    logger.info(
                        "Stream %s received done marker after %d chunks",
                        session.stream_id, session.chunks_sent,
                    )
                    return
                if parsed.kind is PayloadKind.ERROR:
                    logger.warning(
                        "Stream %s: daemon reported error: %s",
                        session.stream_id, parsed.error,
                    )
                    session.fail(parsed.error or "unknown stream error")
                    return
                session.send_chunk(parsed.payload)
