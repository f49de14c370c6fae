"""Decoder for newline-delimited JSON streams returned by the generation endpoints.

Both ``/api/generate`` and ``/api/chat`` stream one JSON object per line. Reads
from the network rarely align with line boundaries, so the decoder buffers the
trailing partial line until the next read (or :meth:`StreamDecoder.flush`).
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

LOGGER = logging.getLogger(__name__)

TOKEN = "token"
TOOL_CALLS = "tool_calls"
DONE = "done"
ERROR = "error"


@dataclass(slots=True)
class NativeToolCall:
    """A structured tool call taken from ``message.tool_calls``."""

    name: str
    arguments: dict[str, Any]
    call_id: str


@dataclass(slots=True)
class StreamEvent:
    """Normalized representation of one decoded stream object."""

    type: str
    content: str | None = None
    tool_calls: list[NativeToolCall] = field(default_factory=list)
    raw_tool_calls: list[Mapping[str, Any]] = field(default_factory=list)
    error: str | None = None


class StreamDecoder:
    """Incrementally decodes NDJSON chunks into :class:`StreamEvent` objects."""

    def __init__(self) -> None:
        self._buffer = b""

    def reset(self) -> None:
        self._buffer = b""

    def feed(self, data: bytes | str) -> list[StreamEvent]:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        return self._decode_lines(lines)

    def flush(self) -> list[StreamEvent]:
        """Decode whatever remains buffered once the stream has ended."""

        remainder, self._buffer = self._buffer, b""
        return self._decode_lines([remainder])

    def _decode_lines(self, lines: Iterable[bytes]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for raw in lines:
            line = raw.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                LOGGER.warning("Skipping malformed stream line (%s): %.200r", exc, line)
                continue
            if not isinstance(payload, Mapping):
                LOGGER.warning("Skipping non-object stream line: %.200r", line)
                continue
            events.extend(decode_object(payload))
        return events


def decode_object(payload: Mapping[str, Any]) -> list[StreamEvent]:
    """Translate one decoded JSON object into zero or more events."""

    if "error" in payload:
        error = payload.get("error")
        return [StreamEvent(type=ERROR, error=str(error) if error is not None else "Unknown backend error")]

    events: list[StreamEvent] = []
    message = payload.get("message")
    if isinstance(message, Mapping):
        raw_calls = message.get("tool_calls")
        if isinstance(raw_calls, list) and raw_calls:
            calls = [call for call in raw_calls if isinstance(call, Mapping)]
            events.append(
                StreamEvent(
                    type=TOOL_CALLS,
                    tool_calls=parse_native_tool_calls(calls),
                    raw_tool_calls=calls,
                )
            )
            # a tool call consumes the rest of this chunk
            return events
        content = message.get("content")
        if isinstance(content, str) and content:
            events.append(StreamEvent(type=TOKEN, content=content))

    response = payload.get("response")
    if isinstance(response, str) and response:
        events.append(StreamEvent(type=TOKEN, content=response))

    if payload.get("done") is True:
        events.append(StreamEvent(type=DONE))
    return events


def parse_native_tool_calls(calls: Iterable[Mapping[str, Any]]) -> list[NativeToolCall]:
    parsed: list[NativeToolCall] = []
    for call in calls:
        function = call.get("function")
        if not isinstance(function, Mapping):
            LOGGER.debug("Ignoring tool call without a function block: %r", call)
            continue
        name = str(function.get("name") or "").strip()
        if not name:
            LOGGER.debug("Ignoring tool call without a name: %r", call)
            continue
        parsed.append(
            NativeToolCall(
                name=name,
                arguments=_coerce_arguments(function.get("arguments")),
                call_id=str(call.get("id") or new_call_id()),
            )
        )
    return parsed


def new_call_id() -> str:
    return uuid.uuid4().hex[:8]


def _coerce_arguments(arguments: Any) -> dict[str, Any]:
    if isinstance(arguments, Mapping):
        return dict(arguments)
    if isinstance(arguments, str) and arguments.strip():
        try:
            decoded = json.loads(arguments)
        except json.JSONDecodeError:
            LOGGER.warning("Tool call arguments are not valid JSON: %.200r", arguments)
            return {}
        if isinstance(decoded, Mapping):
            return dict(decoded)
    return {}


__all__ = [
    "StreamDecoder",
    "StreamEvent",
    "NativeToolCall",
    "decode_object",
    "parse_native_tool_calls",
    "new_call_id",
    "TOKEN",
    "TOOL_CALLS",
    "DONE",
    "ERROR",
]
