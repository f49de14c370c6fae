"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Iterable, Sequence, Type, TypeVar

import httpx

from qtbot.ai.events import EventBus, RuntimeEvent

E = TypeVar("E", bound=RuntimeEvent)


class EventRecorder:
    """Collects every event published on a bus, in order."""

    def __init__(self, bus: EventBus) -> None:
        self.events: list[RuntimeEvent] = []
        bus.subscribe(RuntimeEvent, self.events.append)

    def of_type(self, event_type: Type[E]) -> list[E]:
        return [event for event in self.events if isinstance(event, event_type)]

    def types(self) -> list[str]:
        return [type(event).__name__ for event in self.events]


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered in the exact pieces given, like a slow socket."""

    def __init__(self, chunks: Iterable[bytes | str]) -> None:
        self._chunks = [chunk.encode("utf-8") if isinstance(chunk, str) else chunk for chunk in chunks]

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk


class SleepRecorder:
    """Async stand-in for :func:`asyncio.sleep` that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeEmbeddings:
    """Embedding provider returning canned vectors keyed by a word in the text."""

    def __init__(self, vectors: dict[str, Sequence[float]], default: Sequence[float] = (0.0, 0.0)) -> None:
        self.vectors = {key: list(value) for key, value in vectors.items()}
        self.default = list(default)
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        for key, vector in self.vectors.items():
            if key in text:
                return list(vector)
        return list(self.default)


def ndjson(*objects: dict[str, Any]) -> bytes:
    return b"".join(json.dumps(obj).encode("utf-8") + b"\n" for obj in objects)


def make_client(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content.decode("utf-8"))
