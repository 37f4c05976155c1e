"""HTTP/1.1 over Unix domain sockets.

A deliberately small client: it hand-builds the request head, then
parses the status line, the handful of headers that decide body
framing, and the body itself (Content-Length, chunked, or read to EOF).
Header parsing is lenient on purpose; the daemons are trusted and local.

Failure modes stay distinguishable:
    ConnectError  socket missing/refused/timed out, or lost mid-read
    ParseError    malformed status line or chunk size
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any

from . import traffic
from .chunked import read_chunked_body
from .config import BridgeConfig
from .errors import ConnectError, ParseError, UpstreamError
from .models import PendingRequest, RawResponse, ResponseHead, SocketTarget
from .resolver import SocketResolver

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/json"
# StreamReader line limit; chunk-size and header lines are tiny but SSE
# bodies read line-by-line may carry large JSON payloads.
READER_LIMIT = 4 * 1024 * 1024
READ_BLOCK = 64 * 1024


class SocketReader:
    """StreamReader wrapper that applies an optional per-read timeout.

    Translates timeouts and short reads into ConnectError so callers
    see one error type for "the socket let us down". ``timeout=None``
    means reads may block forever (SSE).
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        socket_path: str,
        timeout: float | None = None,
    ) -> None:
        self._reader = reader
        self._socket_path = socket_path
        self._timeout = timeout

    async def _guard(self, coro):
        try:
            if self._timeout is None:
                return await coro
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise ConnectError(
                self._socket_path, f"read timed out after {self._timeout}s",
            ) from None
        except asyncio.IncompleteReadError as exc:
            raise ConnectError(
                self._socket_path,
                f"connection closed after {len(exc.partial)} of "
                f"{exc.expected} bytes",
            ) from None
        except (asyncio.LimitOverrunError, ValueError):
            raise ParseError(
                "response line", f"longer than {READER_LIMIT} bytes",
            ) from None
        except (ConnectionError, OSError) as exc:
            raise ConnectError(self._socket_path, str(exc) or type(exc).__name__) from exc

    async def readline(self) -> bytes:
        return await self._guard(self._reader.readline())

    async def readexactly(self, n: int) -> bytes:
        return await self._guard(self._reader.readexactly(n))

    async def read(self, n: int = READ_BLOCK) -> bytes:
        return await self._guard(self._reader.read(n))

    async def read_to_eof(self) -> bytes:
        return await self._guard(self._reader.read(-1))


async def open_connection(
    socket_path: str,
    *,
    connect_timeout: float | None,
    read_timeout: float | None,
) -> tuple[SocketReader, asyncio.StreamWriter]:
    """Connect to *socket_path*. Any failure becomes ConnectError."""
    try:
        coro = asyncio.open_unix_connection(socket_path, limit=READER_LIMIT)
        if connect_timeout is None:
            reader, writer = await coro
        else:
            reader, writer = await asyncio.wait_for(coro, timeout=connect_timeout)
    except asyncio.TimeoutError:
        raise ConnectError(socket_path, f"connect timed out after {connect_timeout}s") from None
    except FileNotFoundError:
        raise ConnectError(socket_path, "socket not found") from None
    except ConnectionRefusedError:
        raise ConnectError(socket_path, "connection refused") from None
    except OSError as exc:
        raise ConnectError(socket_path, str(exc) or type(exc).__name__) from exc
    return SocketReader(reader, socket_path, read_timeout), writer


async def close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError) as exc:
        logger.debug("Ignoring error while closing socket: %s", exc)


async def send_bytes(
    writer: asyncio.StreamWriter,
    data: bytes,
    socket_path: str,
    timeout: float | None,
) -> None:
    try:
        writer.write(data)
        if timeout is None:
            await writer.drain()
        else:
            await asyncio.wait_for(writer.drain(), timeout=timeout)
    except asyncio.TimeoutError:
        raise ConnectError(socket_path, f"write timed out after {timeout}s") from None
    except (ConnectionError, OSError) as exc:
        raise ConnectError(socket_path, str(exc) or type(exc).__name__) from exc
    traffic.record_tx(len(data))


def build_request_head(
    method: str,
    full_path: str,
    *,
    body_length: int = 0,
    accept: str | None = None,
    connection: str = "close",
    content_type: str = DEFAULT_CONTENT_TYPE,
) -> bytes:
    """Minimal HTTP/1.1 request head, terminated by the blank line."""
    lines = [
        f"{method.upper()} {full_path} HTTP/1.1",
        "Host: localhost",
        f"Connection: {connection}",
    ]
    if body_length:
        lines.append(f"Content-Type: {content_type}")
        lines.append(f"Content-Length: {body_length}")
    if accept:
        lines.append(f"Accept: {accept}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8")


def parse_status_line(line: bytes) -> int:
    """``HTTP/1.1 200 OK`` -> 200."""
    text = line.decode("latin-1").strip()
    parts = text.split()
    if len(parts) < 2:
        raise ParseError("status line", text)
    try:
        return int(parts[1])
    except ValueError:
        raise ParseError("status code", text) from None


async def read_response_head(reader: SocketReader) -> ResponseHead:
    """Read the status line and headers up to the blank line."""
    status = parse_status_line(await reader.readline())
    content_type: str | None = None
    content_length: int | None = None
    chunked = False
    while True:
        line = await reader.readline()
        if not line:
            break
        stripped = line.decode("latin-1").strip()
        if not stripped:
            break
        key, sep, value = stripped.partition(":")
        if not sep:
            continue
        key = key.strip().lower()
        value = value.strip()
        if key == "content-type":
            content_type = value
        elif key == "content-length":
            try:
                content_length = int(value)
            except ValueError:
                content_length = None
        elif key == "transfer-encoding":
            chunked = "chunked" in value.lower()
    return ResponseHead(
        status=status,
        content_type=content_type,
        content_length=content_length,
        chunked=chunked,
    )


async def read_body(reader: SocketReader, head: ResponseHead) -> bytes:
    """Content-Length wins over chunked; otherwise read until the peer closes."""
    if head.content_length is not None:
        if head.content_length <= 0:
            return b""
        return await reader.readexactly(head.content_length)
    if head.chunked:
        return await read_chunked_body(reader)
    return await reader.read_to_eof()


class UnixHttpClient:
    """Issues one HTTP/1.1 request per connection over a daemon's socket.

    Not retried here: retries are a watcher-level policy.
    """

    def __init__(
        self,
        resolver: SocketResolver | None = None,
        config: BridgeConfig | None = None,
    ) -> None:
        self._config = config or (resolver.config if resolver else BridgeConfig())
        self._resolver = resolver or SocketResolver(self._config)

    @property
    def resolver(self) -> SocketResolver:
        return self._resolver

    async def request(
        self,
        target: SocketTarget,
        method: str,
        path: str,
        query: str = "",
        body: bytes = b"",
        headers: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> RawResponse:
        pending = PendingRequest(
            method=method,
            path=path,
            query=query,
            body=body or b"",
            headers=dict(headers or {}),
        )
        return await self.send(target, pending, timeout=timeout)

    async def send(
        self,
        target: SocketTarget,
        pending: PendingRequest,
        *,
        timeout: float | None = None,
    ) -> RawResponse:
        if timeout is None:
            timeout = self._config.request_timeout_seconds
        socket_path = self._resolver.resolve(target)
        logger.debug(
            "Proxy %s %s -> %s (%s)",
            pending.method, pending.full_path, target, socket_path,
        )
        reader, writer = await open_connection(
            socket_path,
            connect_timeout=timeout,
            read_timeout=timeout,
        )
        try:
            head = build_request_head(
                pending.method,
                pending.full_path,
                body_length=len(pending.body),
                accept=pending.header("accept"),
            )
            await send_bytes(writer, head, socket_path, timeout)
            if pending.body:
                await send_bytes(writer, pending.body, socket_path, timeout)

            response_head = await read_response_head(reader)
            body = await read_body(reader, response_head)
        finally:
            await close_writer(writer)

        traffic.record_rx(len(body))
        logger.debug(
            "Proxy %s %s <- %d (%d bytes)",
            pending.method, pending.full_path, response_head.status, len(body),
        )
        return RawResponse(
            status=response_head.status,
            content_type=response_head.content_type or DEFAULT_CONTENT_TYPE,
            body=body,
        )

    async def check_health(self, target: SocketTarget) -> dict[str, Any]:
        """GET the health endpoint with the short health timeout.

        Returns the decoded JSON object; raises ConnectError, UpstreamError
        or ParseError otherwise.
        """
        response = await self.request(
            target,
            "GET",
            self._config.health_path,
            headers={"Accept": "application/json"},
            timeout=self._config.health_timeout_seconds,
        )
        if not response.ok:
            raise UpstreamError(response.status, response.text())
        try:
            payload = response.json()
        except ValueError:
            raise ParseError("health payload", response.text()[:200]) from None
        if not isinstance(payload, dict):
            raise ParseError("health payload", json.dumps(payload)[:200])
        return payload
