"""Structured decoding of SSE data payloads.

A parser turns one SSE frame into a ParsedPayload: a content chunk, the
terminal done signal (optionally carrying a final payload), or a
terminal error reported by the daemon inside the stream. Undecodable
payloads raise DecodeSkip and are dropped by the caller.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable

from .errors import DecodeSkip
from .models import SSEEventFrame

DONE_MARKER = "[DONE]"


class PayloadKind(str, Enum):
    CHUNK = "chunk"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class ParsedPayload:
    kind: PayloadKind
    payload: Any = None
    error: str | None = None

    @classmethod
    def chunk(cls, payload: Any) -> ParsedPayload:
        return cls(PayloadKind.CHUNK, payload)

    @classmethod
    def done(cls, payload: Any = None) -> ParsedPayload:
        return cls(PayloadKind.DONE, payload)

    @classmethod
    def failed(cls, error: str) -> ParsedPayload:
        return cls(PayloadKind.ERROR, error=error)


PayloadParser = Callable[[SSEEventFrame], ParsedPayload]


def _decode_json(data: str) -> Any:
    try:
        return json.loads(data)
    except ValueError as exc:
        raise DecodeSkip(data, f"invalid JSON: {exc}") from None


def parse_json_payload(frame: SSEEventFrame) -> ParsedPayload:
    """Generic plugin/IRC/game streams: forward any JSON value."""
    data = frame.data.strip()
    if not data or data == DONE_MARKER:
        return ParsedPayload.done()
    value = _decode_json(data)
    if frame.event_type and isinstance(value, dict):
        value = {"event": frame.event_type, **value}
    return ParsedPayload.chunk(value)


@dataclass
class Usage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


@dataclass
class ChatChunk:
    content: str = ""
    done: bool = False
    model: str | None = None
    usage: Usage | None = None
    tool_use: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _token_count(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


def extract_usage(message: dict[str, Any]) -> Usage | None:
    """OpenAI-style ``usage`` block, falling back to Ollama eval counts."""
    usage = message.get("usage")
    usage = usage if isinstance(usage, dict) else {}
    prompt = _token_count(usage.get("prompt_tokens"))
    if prompt is None:
        prompt = _token_count(message.get("prompt_eval_count"))
    completion = _token_count(usage.get("completion_tokens"))
    if completion is None:
        completion = _token_count(message.get("eval_count"))
    if prompt is None and completion is None:
        return None
    return Usage(prompt_tokens=prompt, completion_tokens=completion)


def parse_chat_payload(frame: SSEEventFrame) -> ParsedPayload:
    """LLM chat streams: content deltas, a final done chunk with usage."""
    data = frame.data.strip()
    if not data or data == DONE_MARKER:
        return ParsedPayload.done(ChatChunk(done=True).to_dict())
    message = _decode_json(data)
    if not isinstance(message, dict):
        raise DecodeSkip(data, "chat payload is not an object")

    error = message.get("error")
    if isinstance(error, str):
        return ParsedPayload.failed(error)

    content = message.get("content")
    done = message.get("done") is True
    model = message.get("model")
    chunk = ChatChunk(
        content=content if isinstance(content, str) else "",
        done=done,
        model=model if isinstance(model, str) and model else None,
        usage=extract_usage(message) if done else None,
        tool_use=message.get("tool_use"),
    )
    if done:
        return ParsedPayload.done(chunk.to_dict())
    return ParsedPayload.chunk(chunk.to_dict())


PARSERS: dict[str, PayloadParser] = {
    "json": parse_json_payload,
    "chat": parse_chat_payload,
}


def get_parser(name: str) -> PayloadParser:
    try:
        return PARSERS[name]
    except KeyError:
        raise ValueError(
            f"Unknown payload parser {name!r} (available: {', '.join(sorted(PARSERS))})"
        ) from None
