"""HTTP chunked transfer-encoding.

Two decode flavours share one frame reader:

- ``read_chunked_body`` for bounded request/response bodies. A size
  line that is not hex is a ParseError.
- ``iter_chunks`` for long-lived SSE bodies. Non-hex lines (stray
  whitespace, heartbeats) are skipped so they cannot kill a healthy
  connection, and EOF simply ends the body.

The reader only needs ``readline()`` and ``readexactly(n)`` coroutines;
see ``SocketReader`` in http_client.py.
"""
from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Iterable
from typing import Protocol

from .errors import ParseError

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


class LineReader(Protocol):
    async def readline(self) -> bytes: ...

    async def readexactly(self, n: int) -> bytes: ...


def parse_chunk_size(line: bytes) -> int | None:
    """Hex size from a chunk-size line, ignoring extensions. None if not hex."""
    text = line.decode("latin-1").strip()
    text = text.split(";", 1)[0].strip()
    if not _HEX_RE.match(text):
        return None
    return int(text, 16)


async def _read_frame(reader: LineReader, size: int) -> bytes:
    data = await reader.readexactly(size)
    # CRLF after every chunk payload
    await reader.readline()
    return data


async def read_chunked_body(reader: LineReader) -> bytes:
    """Read a complete chunked body and return the de-chunked payload."""
    body = bytearray()
    while True:
        size_line = await reader.readline()
        if not size_line:
            raise ParseError("chunked body", "connection closed before terminal chunk")
        size = parse_chunk_size(size_line)
        if size is None:
            raise ParseError("chunk size", size_line.decode("latin-1").strip())
        if size == 0:
            await reader.readline()
            break
        body.extend(await _read_frame(reader, size))
    return bytes(body)


async def iter_chunks(reader: LineReader) -> AsyncIterator[bytes]:
    """Yield chunk payloads as they arrive until the terminal chunk or EOF."""
    count = 0
    while True:
        size_line = await reader.readline()
        if not size_line:
            logger.debug("EOF reading chunk size after %d chunks", count)
            return
        size = parse_chunk_size(size_line)
        if size is None:
            if size_line.strip():
                logger.debug("Skipping malformed chunk size line: %r", size_line.strip())
            continue
        if size == 0:
            logger.debug("Terminal chunk after %d chunks", count)
            await reader.readline()
            return
        count += 1
        yield await _read_frame(reader, size)


def encode_chunk(data: bytes) -> bytes:
    """One chunk frame. Empty input encodes nothing (it would terminate the body)."""
    if not data:
        return b""
    return f"{len(data):x}\r\n".encode("ascii") + data + b"\r\n"


def encode_chunked(chunks: Iterable[bytes]) -> bytes:
    """A full chunked body, terminal chunk included."""
    out = bytearray()
    for chunk in chunks:
        out.extend(encode_chunk(chunk))
    out.extend(b"0\r\n\r\n")
    return bytes(out)
