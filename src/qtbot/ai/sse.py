"""Server-Sent-Events decoding and a streaming client built on httpx."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping, Protocol

import httpx

LOGGER = logging.getLogger(__name__)

DEFAULT_EVENT_TYPE = "message"


@dataclass(slots=True, frozen=True)
class SSEEvent:
    """One dispatched event: ``data`` lines are joined with newlines."""

    event_type: str = DEFAULT_EVENT_TYPE
    data: str = ""
    id: str = ""
    retry: int = -1


class SSEDecoder:
    """Reassembles ``event:``/``data:``/``id:``/``retry:`` blocks from arbitrary reads."""

    def __init__(self) -> None:
        self._buffer = b""
        self.last_event_id = ""
        self._reset_event()

    def reset(self) -> None:
        self._buffer = b""
        self._reset_event()

    def feed(self, data: bytes | str) -> list[SSEEvent]:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._buffer = (self._buffer + data).replace(b"\r\n", b"\n")
        events: list[SSEEvent] = []
        while b"\n\n" in self._buffer:
            block, self._buffer = self._buffer.split(b"\n\n", 1)
            event = self._parse_block(block)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[SSEEvent]:
        """Parse the trailing block left over when the stream closes."""

        if not self._buffer:
            return []
        block, self._buffer = self._buffer, b""
        event = self._parse_block(block)
        return [event] if event is not None else []

    def _parse_block(self, block: bytes) -> SSEEvent | None:
        text = block.decode("utf-8", errors="replace")
        for line in text.split("\n"):
            if not line:
                continue
            if line.startswith(":"):
                LOGGER.debug("SSE comment: %s", line[1:])
                continue
            field_name, sep, value = line.partition(":")
            if not sep:
                LOGGER.warning("SSE: invalid line (no colon): %s", line)
                continue
            if value.startswith(" "):
                value = value[1:]
            if field_name == "event":
                self._event_type = value
            elif field_name == "data":
                self._data.append(value)
            elif field_name == "id":
                self._event_id = value
            elif field_name == "retry":
                try:
                    self._retry = int(value)
                except ValueError:
                    LOGGER.debug("SSE: ignoring non-integer retry %r", value)
            else:
                LOGGER.debug("SSE: unknown field %r: %s", field_name, value)

        if not (self._data or self._event_type or self._event_id):
            return None
        event = SSEEvent(
            event_type=self._event_type or DEFAULT_EVENT_TYPE,
            data="\n".join(self._data),
            id=self._event_id,
            retry=self._retry,
        )
        if event.id:
            self.last_event_id = event.id
        self._reset_event()
        return event

    def _reset_event(self) -> None:
        self._event_type = ""
        self._event_id = ""
        self._data: list[str] = []
        self._retry = -1


class SSEListener(Protocol):
    """Callback protocol for stream lifecycle notifications."""

    def on_event(self, event: SSEEvent) -> None:
        ...

    def on_error(self, message: str) -> None:
        ...

    def on_disconnected(self) -> None:
        ...


class SSEClient:
    """Holds one event stream open at a time and forwards decoded events to a listener."""

    def __init__(
        self,
        listener: SSEListener,
        *,
        client: httpx.AsyncClient | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self._listener = listener
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))
        self._extra_headers = dict(headers or {})
        self._decoder = SSEDecoder()
        self._task: asyncio.Task[None] | None = None
        self._generation = 0
        self._stream_url = ""

    @property
    def stream_url(self) -> str:
        return self._stream_url

    @property
    def last_event_id(self) -> str:
        return self._decoder.last_event_id

    @property
    def is_connected(self) -> bool:
        return self._task is not None and not self._task.done()

    def connect(self, url: str, *, last_event_id: str = "") -> None:
        """Open ``url`` as an event stream, dropping any stream already open."""

        if self._task is not None:
            LOGGER.warning("SSEClient: already connected, disconnecting first")
            self.disconnect()

        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache", **self._extra_headers}
        if last_event_id:
            headers["Last-Event-ID"] = last_event_id
            LOGGER.debug("SSEClient: reconnecting from event id %s", last_event_id)

        self._generation += 1
        self._stream_url = url
        self._decoder.reset()
        LOGGER.info("SSEClient: connecting to %s", url)
        self._task = asyncio.get_running_loop().create_task(self._run(url, headers, self._generation))

    def disconnect(self) -> None:
        task, self._task = self._task, None
        self._generation += 1
        self._stream_url = ""
        self._decoder.reset()
        if task is None:
            return
        LOGGER.info("SSEClient: disconnecting from stream")
        if not task.done():
            task.cancel()
        self._notify("on_disconnected")

    async def wait_closed(self) -> None:
        """Wait for the current stream, if any, to finish on its own."""

        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def aclose(self) -> None:
        task = self._task
        self.disconnect()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_client:
            await self._client.aclose()

    async def _run(self, url: str, headers: Mapping[str, str], generation: int) -> None:
        try:
            async with self._client.stream("GET", url, headers=headers) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    for event in self._decoder.feed(chunk):
                        self._deliver(event, generation)
            for event in self._decoder.flush():
                self._deliver(event, generation)
            LOGGER.info("SSEClient: stream finished")
        except httpx.HTTPError as exc:
            if generation == self._generation:
                message = f"SSE error: {exc}"
                LOGGER.error(message)
                self._notify("on_error", message)
        finally:
            if generation == self._generation:
                self._task = None
                self._stream_url = ""
                self._notify("on_disconnected")

    def _deliver(self, event: SSEEvent, generation: int) -> None:
        if generation != self._generation:
            return
        LOGGER.debug(
            "SSE event type=%s id=%s data length=%d", event.event_type, event.id, len(event.data)
        )
        self._notify("on_event", event)

    def _notify(self, method: str, *args: object) -> None:
        callback = getattr(self._listener, method, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            LOGGER.debug("SSE listener %s failed", method, exc_info=True)


__all__ = ["SSEClient", "SSEDecoder", "SSEEvent", "SSEListener", "DEFAULT_EVENT_TYPE"]
