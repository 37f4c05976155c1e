from __future__ import annotations

import asyncio
import json

import pytest

from daemon_fakes import (
    SSE_HEAD,
    EventRecorder,
    FakeDaemon,
    http_response,
    sse_responder,
    static_responder,
)
from daemonbridge.engine.chunked import encode_chunk
from daemonbridge.engine.errors import StreamAlreadyActiveError
from daemonbridge.engine.models import SocketTarget
from daemonbridge.engine.multiplexer import StreamMultiplexer
from daemonbridge.engine.payloads import ParsedPayload

PRIMARY = SocketTarget.primary()


def _event(data: str, event_type: str = "") -> bytes:
    head = f"event: {event_type}\n" if event_type else ""
    return f"{head}data: {data}\n\n".encode("utf-8")


def _terminal_count(recorder: EventRecorder, stream_id: str, prefix: str = "stream") -> int:
    return sum(
        1 for name in recorder.names()
        if name in (f"{prefix}-done-{stream_id}", f"{prefix}-error-{stream_id}")
    )


async def _run_stream(mux: StreamMultiplexer, recorder: EventRecorder, stream_id: str, **kwargs):
    channels = mux.open_stream(PRIMARY, "/api/stream", stream_id, **kwargs)
    await recorder.wait_for(lambda: _terminal_count(recorder, stream_id, kwargs.get("prefix", "stream")) > 0)
    await asyncio.sleep(0.05)
    return channels


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def mux(recorder, resolver, bridge_config) -> StreamMultiplexer:
    return StreamMultiplexer(recorder, resolver, bridge_config)


@pytest.mark.asyncio
async def test_chunks_then_done_marker(mux, recorder, primary_socket):
    pieces = [_event('{"n": 1}'), _event('{"n": 2}'), _event("[DONE]"), _event('{"n": 3}')]
    async with FakeDaemon(primary_socket, sse_responder(pieces)) as daemon:
        channels = await _run_stream(mux, recorder, "s1")

    assert recorder.named(channels.chunk) == [{"n": 1}, {"n": 2}]
    assert recorder.named(channels.done) == [{"type": "done"}]
    assert recorder.named(channels.error) == []
    assert daemon.requests[0].headers["accept"] == "text/event-stream"
    assert mux.active_streams() == []


@pytest.mark.asyncio
async def test_body_end_without_marker_is_done(mux, recorder, primary_socket):
    async with FakeDaemon(primary_socket, sse_responder([_event('{"n": 1}')])):
        channels = await _run_stream(mux, recorder, "s2")

    assert recorder.named(channels.chunk) == [{"n": 1}]
    assert recorder.named(channels.done) == [{"type": "done"}]
    assert _terminal_count(recorder, "s2") == 1


@pytest.mark.asyncio
async def test_event_split_across_chunks(mux, recorder, primary_socket):
    raw = _event('{"text": "split across chunks"}')
    pieces = [raw[:7], raw[7:19], raw[19:]]
    async with FakeDaemon(primary_socket, sse_responder(pieces, delay=0.01)):
        channels = await _run_stream(mux, recorder, "split")
    assert recorder.named(channels.chunk) == [{"text": "split across chunks"}]


@pytest.mark.asyncio
async def test_malformed_payload_is_skipped(mux, recorder, primary_socket):
    pieces = [_event("{broken"), _event('{"ok": true}')]
    async with FakeDaemon(primary_socket, sse_responder(pieces)):
        channels = await _run_stream(mux, recorder, "s3")

    assert recorder.named(channels.chunk) == [{"ok": True}]
    assert recorder.named(channels.done) == [{"type": "done"}]


@pytest.mark.asyncio
async def test_upstream_status_is_error_with_body(mux, recorder, primary_socket):
    raw = http_response(500, b"model exploded", content_type="text/plain")
    async with FakeDaemon(primary_socket, static_responder(raw)):
        channels = await _run_stream(mux, recorder, "s4")

    errors = recorder.named(channels.error)
    assert len(errors) == 1
    assert errors[0]["type"] == "error"
    assert "500" in errors[0]["error"]
    assert "model exploded" in errors[0]["error"]
    assert recorder.named(channels.done) == []


@pytest.mark.asyncio
async def test_connection_lost_mid_chunk_is_single_error(mux, recorder, primary_socket):
    raw = SSE_HEAD + encode_chunk(_event('{"n": 1}')) + b"40\r\ndata: {\"n\""
    async with FakeDaemon(primary_socket, static_responder(raw)):
        channels = await _run_stream(mux, recorder, "cut")

    assert recorder.named(channels.chunk) == [{"n": 1}]
    assert recorder.named(channels.done) == []
    errors = recorder.named(channels.error)
    assert len(errors) == 1
    assert "connection closed" in errors[0]["error"]
    assert mux.active_streams() == []


@pytest.mark.asyncio
async def test_missing_socket_is_error(mux, recorder):
    channels = await _run_stream(mux, recorder, "s5")
    errors = recorder.named(channels.error)
    assert len(errors) == 1
    assert "Cannot reach daemon" in errors[0]["error"]
    assert recorder.named(channels.chunk) == []


@pytest.mark.asyncio
async def test_chat_error_payload_is_terminal(mux, recorder, primary_socket):
    pieces = [
        _event('{"content": "Hi"}'),
        _event('{"error": "context too long"}'),
        _event('{"content": "never"}'),
    ]
    async with FakeDaemon(primary_socket, sse_responder(pieces)):
        channels = await _run_stream(mux, recorder, "c1", prefix="chat", parser="chat")

    assert channels.chunk == "chat-chunk-c1"
    assert recorder.named("chat-chunk-c1") == [{"content": "Hi", "done": False}]
    assert recorder.named("chat-error-c1") == [{"type": "error", "error": "context too long"}]
    assert _terminal_count(recorder, "c1", "chat") == 1


@pytest.mark.asyncio
async def test_chat_done_chunk_is_done_payload(mux, recorder, primary_socket):
    pieces = [
        _event('{"content": "Hi", "model": "m"}'),
        _event('{"content": "", "done": true, "model": "m", "eval_count": 7}'),
    ]
    async with FakeDaemon(primary_socket, sse_responder(pieces)) as daemon:
        await _run_stream(
            mux, recorder, "c2", prefix="chat", parser="chat",
            method="POST", body=json.dumps({"prompt": "hi"}).encode(),
        )

    done = recorder.named("chat-done-c2")
    assert done == [{
        "content": "",
        "done": True,
        "model": "m",
        "usage": {"prompt_tokens": None, "completion_tokens": 7},
    }]
    assert daemon.requests[0].method == "POST"
    assert json.loads(daemon.requests[0].body) == {"prompt": "hi"}


@pytest.mark.asyncio
async def test_parser_fault_is_internal_error(mux, recorder, primary_socket):
    def _explode(frame):
        raise RuntimeError("kaboom")

    async with FakeDaemon(primary_socket, sse_responder([_event("{}")])):
        channels = await _run_stream(mux, recorder, "s6", parser=_explode)

    assert recorder.named(channels.error) == [{"type": "error", "error": "Internal error: kaboom"}]
    assert recorder.named(channels.done) == []


@pytest.mark.asyncio
async def test_shutdown_cancels_with_single_error(mux, recorder, primary_socket):
    async with FakeDaemon(primary_socket, sse_responder([_event("{}")], terminate=False), hold_open=True):
        channels = mux.open_stream(PRIMARY, "/api/stream", "long")
        await recorder.wait_for(lambda: len(recorder.named(channels.chunk)) == 1)
        await mux.shutdown()

    assert recorder.named(channels.error) == [{"type": "error", "error": "stream cancelled"}]
    assert _terminal_count(recorder, "long") == 1
    assert mux.active_streams() == []


@pytest.mark.asyncio
async def test_cancel_before_first_step_still_terminates(mux, recorder):
    channels = mux.open_stream(PRIMARY, "/api/stream", "early")
    mux.session("early").task.cancel()
    await asyncio.sleep(0.05)
    assert recorder.named(channels.error) == [{"type": "error", "error": "stream cancelled"}]
    assert mux.active_streams() == []


@pytest.mark.asyncio
async def test_duplicate_stream_id_is_rejected(mux, recorder, primary_socket):
    async with FakeDaemon(primary_socket, sse_responder([], terminate=False), hold_open=True):
        mux.open_stream(PRIMARY, "/api/stream", "dup")
        with pytest.raises(StreamAlreadyActiveError):
            mux.open_stream(PRIMARY, "/api/stream", "dup")
        await mux.shutdown()

    assert _terminal_count(recorder, "dup") == 1


@pytest.mark.asyncio
async def test_stream_id_is_reusable_after_completion(mux, recorder, primary_socket):
    async with FakeDaemon(primary_socket, sse_responder([_event("[DONE]")])):
        await _run_stream(mux, recorder, "again")
        mux.open_stream(PRIMARY, "/api/stream", "again")
        await recorder.wait_for(lambda: _terminal_count(recorder, "again") == 2)


def test_empty_stream_id_is_rejected(mux):
    with pytest.raises(ValueError):
        mux.open_stream(PRIMARY, "/api/stream", "")


@pytest.mark.asyncio
async def test_concurrent_streams_do_not_mix(mux, recorder, resolver, primary_socket):
    async def _numbered(request, writer):
        tag = request.target.rsplit("/", 1)[-1]
        writer.write(b"HTTP/1.1 200 OK\r\nContent-Type: text/event-stream\r\nTransfer-Encoding: chunked\r\n\r\n")
        for n in range(5):
            payload = _event(json.dumps({"tag": tag, "n": n}))
            writer.write(f"{len(payload):x}\r\n".encode() + payload + b"\r\n")
            await writer.drain()
            await asyncio.sleep(0.005)
        writer.write(b"0\r\n\r\n")

    async with FakeDaemon(primary_socket, _numbered):
        for tag in ("a", "b", "c"):
            mux.open_stream(PRIMARY, f"/api/stream/{tag}", tag)
        await recorder.wait_for(
            lambda: all(_terminal_count(recorder, tag) == 1 for tag in ("a", "b", "c"))
        )

    for tag in ("a", "b", "c"):
        chunks = recorder.named(f"stream-chunk-{tag}")
        assert [c["n"] for c in chunks] == [0, 1, 2, 3, 4]
        assert {c["tag"] for c in chunks} == {tag}


@pytest.mark.asyncio
async def test_custom_parser_done_payload(mux, recorder, primary_socket):
    def _first_is_final(frame):
        return ParsedPayload.done({"final": frame.data})

    async with FakeDaemon(primary_socket, sse_responder([_event("bye"), _event("ignored")])):
        channels = await _run_stream(mux, recorder, "s7", parser=_first_is_final)
    assert recorder.named(channels.done) == [{"final": "bye"}]
