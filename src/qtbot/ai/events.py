"""Runtime event bus used to deliver session, tool, and retrieval notifications."""

from __future__ import annotations

import logging
from threading import RLock
from typing import Any, Callable, List, Mapping, MutableMapping, Sequence, Type

_LOGGER = logging.getLogger(__name__)


class RuntimeEvent:
    """Base class for everything published on the :class:`EventBus`."""

    __slots__ = ("source",)

    def __init__(self, *, source: str | None = None) -> None:
        self.source = source

    def __repr__(self) -> str:
        values = ", ".join(
            f"{name}={getattr(self, name)!r}" for name in _all_slots(type(self)) if name != "source"
        )
        return f"{type(self).__name__}({values})"


# ----------------------------------------------------------------------
# Session client events
# ----------------------------------------------------------------------


class TokenReceived(RuntimeEvent):
    """A streamed fragment of the assistant reply."""

    __slots__ = ("token",)

    def __init__(self, token: str, *, source: str | None = None) -> None:
        super().__init__(source=source)
        self.token = token


class ResponseReceived(RuntimeEvent):
    """The complete assistant reply for a turn."""

    __slots__ = ("text",)

    def __init__(self, text: str, *, source: str | None = None) -> None:
        super().__init__(source=source)
        self.text = text


class ErrorOccurred(RuntimeEvent):
    """A turn ended with an error instead of a reply."""

    __slots__ = ("message", "category")

    def __init__(self, message: str, *, category: str | None = None, source: str | None = None) -> None:
        super().__init__(source=source)
        self.message = message
        self.category = category


class RetryAttempt(RuntimeEvent):
    """Published before the backoff delay of each resend."""

    __slots__ = ("attempt", "max_attempts", "delay")

    def __init__(self, attempt: int, max_attempts: int, *, delay: float = 0.0, source: str | None = None) -> None:
        super().__init__(source=source)
        self.attempt = attempt
        self.max_attempts = max_attempts
        self.delay = delay


class ToolCallRequested(RuntimeEvent):
    """The model asked for a tool to be executed."""

    __slots__ = ("tool_name", "arguments", "call_id")

    def __init__(
        self,
        tool_name: str,
        arguments: Mapping[str, Any],
        call_id: str,
        *,
        source: str | None = None,
    ) -> None:
        super().__init__(source=source)
        self.tool_name = tool_name
        self.arguments = dict(arguments)
        self.call_id = call_id


class CapabilitiesDetected(RuntimeEvent):
    """Capability probing finished for ``model``."""

    __slots__ = ("model", "dialect")

    def __init__(self, model: str, dialect: Any, *, source: str | None = None) -> None:
        super().__init__(source=source)
        self.model = model
        self.dialect = dialect


# ----------------------------------------------------------------------
# Tool dispatcher events
# ----------------------------------------------------------------------


class ToolCallEvent(RuntimeEvent):
    """Base class for dispatcher notifications keyed by call id."""

    __slots__ = ("call_id", "tool_name")

    def __init__(self, call_id: str, tool_name: str, *, source: str | None = None) -> None:
        super().__init__(source=source)
        self.call_id = call_id
        self.tool_name = tool_name


class ToolCallCompleted(ToolCallEvent):
    __slots__ = ("result",)

    def __init__(self, call_id: str, tool_name: str, result: Any, *, source: str | None = None) -> None:
        super().__init__(call_id, tool_name, source=source)
        self.result = result


class ToolCallProgress(ToolCallEvent):
    """Incremental result forwarded from a streaming tool."""

    __slots__ = ("result", "event_type")

    def __init__(
        self,
        call_id: str,
        tool_name: str,
        result: Any,
        *,
        event_type: str = "message",
        source: str | None = None,
    ) -> None:
        super().__init__(call_id, tool_name, source=source)
        self.result = result
        self.event_type = event_type


class ToolCallFailed(ToolCallEvent):
    __slots__ = ("error",)

    def __init__(self, call_id: str, tool_name: str, error: Any, *, source: str | None = None) -> None:
        super().__init__(call_id, tool_name, source=source)
        self.error = error

    @property
    def message(self) -> str:
        return str(getattr(self.error, "message", self.error))


# ----------------------------------------------------------------------
# Retrieval events
# ----------------------------------------------------------------------


class IngestionProgress(RuntimeEvent):
    __slots__ = ("current", "total")

    def __init__(self, current: int, total: int, *, source: str | None = None) -> None:
        super().__init__(source=source)
        self.current = current
        self.total = total


class DocumentIngested(RuntimeEvent):
    __slots__ = ("path", "chunk_count")

    def __init__(self, path: str, chunk_count: int, *, source: str | None = None) -> None:
        super().__init__(source=source)
        self.path = path
        self.chunk_count = chunk_count


class IngestionFailed(RuntimeEvent):
    __slots__ = ("path", "error")

    def __init__(self, path: str, error: str, *, source: str | None = None) -> None:
        super().__init__(source=source)
        self.path = path
        self.error = error


class EmbeddingGenerated(RuntimeEvent):
    __slots__ = ("chunk_index",)

    def __init__(self, chunk_index: int, *, source: str | None = None) -> None:
        super().__init__(source=source)
        self.chunk_index = chunk_index


class ContextRetrieved(RuntimeEvent):
    __slots__ = ("chunks",)

    def __init__(self, chunks: Sequence[str], *, source: str | None = None) -> None:
        super().__init__(source=source)
        self.chunks = list(chunks)


class QueryFailed(RuntimeEvent):
    __slots__ = ("error",)

    def __init__(self, error: str, *, source: str | None = None) -> None:
        super().__init__(source=source)
        self.error = error


Subscriber = Callable[[Any], None]


class EventBus:
    """Synchronous pub/sub bus; handlers subscribed to a base class see every subclass."""

    def __init__(self) -> None:
        self._subscribers: MutableMapping[Type[RuntimeEvent], List[Subscriber]] = {}
        self._lock = RLock()

    def subscribe(self, event_type: Type[RuntimeEvent], handler: Subscriber) -> None:
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Type[RuntimeEvent], handler: Subscriber) -> None:
        with self._lock:
            subscribers = self._subscribers.get(event_type)
            if not subscribers:
                return
            subscribers[:] = [sub for sub in subscribers if sub != handler]
            if not subscribers:
                self._subscribers.pop(event_type, None)

    def publish(self, event: RuntimeEvent) -> None:
        with self._lock:
            to_invoke = [
                handler
                for event_type, subscribers in self._subscribers.items()
                if isinstance(event, event_type)
                for handler in subscribers
            ]
        for callback in to_invoke:
            try:
                callback(event)
            except Exception:  # pragma: no cover - subscriber isolation
                _LOGGER.exception("Event subscriber failed for %s", type(event).__name__)


def _all_slots(cls: type) -> list[str]:
    names: list[str] = []
    for klass in reversed(cls.__mro__):
        names.extend(getattr(klass, "__slots__", ()))
    return names


__all__ = [
    "EventBus",
    "RuntimeEvent",
    "TokenReceived",
    "ResponseReceived",
    "ErrorOccurred",
    "RetryAttempt",
    "ToolCallRequested",
    "CapabilitiesDetected",
    "ToolCallEvent",
    "ToolCallCompleted",
    "ToolCallProgress",
    "ToolCallFailed",
    "IngestionProgress",
    "DocumentIngested",
    "IngestionFailed",
    "EmbeddingGenerated",
    "ContextRetrieved",
    "QueryFailed",
]
