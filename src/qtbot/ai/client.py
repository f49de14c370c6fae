"""Async session client for Ollama-style generate/chat endpoints.

The client owns the conversation history and drives one turn at a time:
capability detection (queued requests wait for it), payload construction,
streamed decoding, tool-call detection and retries. Callers never await a
turn; every outcome is published on the :class:`~qtbot.ai.events.EventBus`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Iterable, Mapping, Sequence

import httpx

from ..services.settings import Settings
from ..utils.logging import log_payload
from .ai_types import Dialect, Message, PendingRequest, Role, ToolCallResult
from .capabilities import CapabilityDetector
from .context_budget import ContextBudgeter
from .errors import ChatCoreError, ErrorCategory, ProtocolError
from .events import (
    CapabilitiesDetected,
    ErrorOccurred,
    EventBus,
    ResponseReceived,
    RetryAttempt,
    TokenReceived,
    ToolCallRequested,
)
from .orchestration.tool_call_parser import detect_prompt_tool_call
from .request_builder import GenerationOptions, RequestFormatter, backend_endpoint
from .retry import RetryController, classify_failure
from .streaming import DONE, ERROR, TOKEN, TOOL_CALLS, StreamDecoder, StreamEvent

LOGGER = logging.getLogger(__name__)
_SOURCE = "session"

SIMPLE_TOOLS = frozenset({"datetime", "calculator"})
_TOOL_RESULTS_PREAMBLE = (
    "Here are the tool call results. Please provide a clear, natural language summary "
    "of this information:\n\n"
)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the session client."""

    model: str
    api_url: str = "http://localhost:11434/api/generate"
    api_key: str = ""
    system_prompt: str = ""
    context_window_size: int = 4096
    options: GenerationOptions = field(default_factory=GenerationOptions)
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_base_seconds: float = 1.0
    debug_logging: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClientSettings":
        options = GenerationOptions(
            temperature=settings.temperature if settings.override_temperature else None,
            top_p=settings.top_p if settings.override_top_p else None,
            top_k=settings.top_k if settings.override_top_k else None,
            num_ctx=settings.context_window_size if settings.override_context_window_size else None,
            num_predict=settings.max_tokens if settings.override_max_tokens else None,
        )
        return cls(
            model=settings.model,
            api_url=settings.api_url,
            api_key=settings.api_key,
            system_prompt=settings.system_prompt,
            context_window_size=settings.context_window_size,
            options=options,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_base_seconds=settings.retry_base_seconds,
            debug_logging=settings.debug_logging,
        )

    @property
    def chat_url(self) -> str:
        return backend_endpoint(self.api_url, "/api/chat")

    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_CAPABILITIES = "awaiting_capabilities"
    SENDING = "sending"
    STREAMING = "streaming"
    TOOL_CALL_PENDING = "tool_call_pending"
    COMPLETE = "complete"


@dataclass(slots=True)
class _TurnBuffer:
    """Per-exchange accumulation, reset at the start of every attempt."""

    chat: bool
    tools: tuple[Mapping[str, Any], ...] | None = None
    parts: list[str] = field(default_factory=list)
    native_tool_call: bool = False
    done: bool = False

    def reset(self) -> None:
        self.parts.clear()
        self.native_tool_call = False
        self.done = False

    @property
    def text(self) -> str:
        return "".join(self.parts)


class SessionClient:
    """Conversational façade over the backend with queued capability detection."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        bus: EventBus | None = None,
        client: httpx.AsyncClient | None = None,
        detector: CapabilityDetector | None = None,
        retry: RetryController | None = None,
        budgeter: ContextBudgeter | None = None,
    ) -> None:
        self._settings = settings
        self._bus = bus or EventBus()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(settings.request_timeout))
        self._detector = detector or CapabilityDetector(
            self._client, api_url=settings.api_url, headers=self._auth_headers()
        )
        self._retry = retry or RetryController(
            max_retries=settings.max_retries, base_delay=settings.retry_base_seconds
        )
        self._budgeter = budgeter or ContextBudgeter(settings.context_window_size)
        self._history: list[Message] = []
        self._dialect: Dialect | None = None
        self._pending: deque[PendingRequest] = deque()
        self._detection_task: asyncio.Task[None] | None = None
        self._exchange_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._state = TurnState.IDLE

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def dialect(self) -> Dialect | None:
        """Detected dialect, or ``None`` while detection has not completed."""

        return self._dialect

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def history(self) -> tuple[Message, ...]:
        return tuple(self._history)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def send_prompt(self, text: str, context: str = "") -> None:
        """Stream a plain completion for *text*; results arrive on the bus."""

        self._submit(PendingRequest(prompt=text, context=context, wants_tools=False))

    def send_prompt_with_tools(
        self,
        text: str,
        tools: Sequence[Mapping[str, Any]],
        context: str = "",
    ) -> None:
        """Stream a completion that may answer with a call to one of *tools*."""

        self._submit(
            PendingRequest(prompt=text, tools=tuple(tools), context=context, wants_tools=True)
        )

    def send_tool_results(self, results: Iterable[ToolCallResult | Mapping[str, Any]]) -> None:
        """Fold tool output back into the conversation.

        Results from tools other than the built-in ``datetime``/``calculator`` are
        sent back to the model for summarising when it speaks the native dialect;
        everything else is phrased locally and published as the final response.
        """

        normalized = [_coerce_result(item) for item in results]
        if not normalized:
            return
        LOGGER.info("Processing tool results (%d result(s))", len(normalized))
        needs_model = any(item.tool_name not in SIMPLE_TOOLS for item in normalized)

        if needs_model and self._dialect is Dialect.NATIVE:
            content = format_tool_results_message(normalized)
            pruned = self._budgeter.prune_history(
                self._history,
                system_prompt=self._settings.system_prompt,
                current_message=content,
            )
            message = Message(Role.USER, content)
            self._history.append(message)
            payload = self._formatter().build_chat_request([*pruned, message])
            self._start_exchange(self._exchange(self._settings.chat_url, payload, chat=True))
            return

        text = "\n\n".join(format_tool_result(item) for item in normalized)
        LOGGER.info("Formatted tool response: %.100s", text)
        self._state = TurnState.COMPLETE
        self._publish(ResponseReceived(text, source=_SOURCE))
        self._state = TurnState.IDLE

    def clear_history(self) -> None:
        self._history.clear()
        LOGGER.info("Conversation history cleared")

    def set_model(self, model: str) -> None:
        """Switch models; the next request re-runs capability detection."""

        if model == self._settings.model:
            return
        self._settings = replace(self._settings, model=model)
        self._dialect = None
        if self._detection_task is not None and not self._detection_task.done():
            self._detection_task.cancel()
        self._detection_task = None
        LOGGER.info("Model changed to %s; capabilities will be re-detected", model)
        if self._pending:
            self.detect_capabilities()

    def detect_capabilities(self) -> asyncio.Task[None]:
        """Start capability detection unless it is already running."""

        if self._detection_task is None or self._detection_task.done():
            self._detection_task = self._spawn(self._detect_and_drain())
        return self._detection_task

    async def join(self) -> None:
        """Wait until detection, queued replays and the current exchange have finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Turn scheduling
    # ------------------------------------------------------------------

    def _submit(self, request: PendingRequest) -> None:
        if not request.prompt.strip():
            LOGGER.error("Prompt cannot be empty")
            self._publish(ErrorOccurred("Prompt cannot be empty", category=ErrorCategory.PROTOCOL, source=_SOURCE))
            return
        if self._dialect is None or self._pending:
            self._pending.append(request)
            self._state = TurnState.AWAITING_CAPABILITIES
            LOGGER.info("Queueing request until model capabilities are known (%d pending)", len(self._pending))
            self.detect_capabilities()
            return
        self._start_exchange(self._run_turn(request))

    async def _detect_and_drain(self) -> None:
        if self._dialect is None:
            model = self._settings.model
            report = await self._detector.detect(model)
            if model != self._settings.model:
                return
            self._dialect = report.dialect
            self._publish(CapabilitiesDetected(model, report.dialect, source=_SOURCE))
        if self._pending:
            LOGGER.info("Processing %d pending request(s) after capability detection", len(self._pending))
        while self._pending:
            request = self._pending.popleft()
            self._start_exchange(self._run_turn(request))
            # a prompt sent once the queue is empty supersedes this replay
            await asyncio.wait({self._exchange_task})

    def _start_exchange(self, coro: Awaitable[None]) -> None:
        previous = self._exchange_task
        if previous is not None and not previous.done():
            LOGGER.debug("Superseding in-flight exchange")
            previous.cancel()
        self._exchange_task = self._spawn(coro)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_finished)
        return task

    def _task_finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Session task failed", exc_info=exc)

    async def _run_turn(self, request: PendingRequest) -> None:
        prompt = request.prompt
        if request.context:
            prompt = f"Context: {request.context}\n\nPrompt: {request.prompt}"
        formatter = self._formatter()
        dialect = self._dialect or Dialect.UNKNOWN
        tools = request.tools if request.wants_tools else None

        if tools is not None and dialect.uses_chat_history:
            pruned = self._budgeter.prune_history(
                self._history,
                system_prompt=self._settings.system_prompt,
                current_message=prompt,
            )
            payload = formatter.build_native_tool_request(prompt, tools, pruned)
            self._history.append(Message(Role.USER, prompt))
            await self._exchange(self._settings.chat_url, payload, chat=True, tools=tools)
        elif tools is not None:
            payload = formatter.build_prompt_tool_request(prompt, tools)
            await self._exchange(self._settings.api_url, payload, chat=False, tools=tools)
        else:
            payload = formatter.build_generate_request(prompt)
            await self._exchange(self._settings.api_url, payload, chat=False)

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    async def _exchange(
        self,
        url: str,
        payload: Mapping[str, Any],
        *,
        chat: bool,
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> None:
        turn = _TurnBuffer(chat=chat, tools=None if tools is None else tuple(tools))
        if self._settings.debug_logging:
            log_payload(LOGGER, f"Request payload for {url}", payload)

        async def _attempt() -> None:
            turn.reset()
            self._state = TurnState.SENDING
            try:
                await asyncio.wait_for(
                    self._stream(url, payload, turn), timeout=self._settings.request_timeout
                )
            except ChatCoreError:
                raise
            except (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError) as exc:
                raise classify_failure(exc) from exc

        try:
            await self._retry.run(_attempt, on_retry=self._publish_retry)
        except ChatCoreError as exc:
            LOGGER.error("Request to %s failed: %s", url, exc)
            self._state = TurnState.IDLE
            self._publish(ErrorOccurred(str(exc), category=exc.category, source=_SOURCE))
            return
        self._finish_turn(turn)

    async def _stream(self, url: str, payload: Mapping[str, Any], turn: _TurnBuffer) -> None:
        decoder = StreamDecoder()
        async with self._client.stream("POST", url, json=payload, headers=self._settings.headers()) as response:
            if response.is_error:
                await response.aread()
                LOGGER.debug("Backend error body: %.500s", response.text)
                response.raise_for_status()
            self._state = TurnState.STREAMING
            async for chunk in response.aiter_bytes():
                self._handle_events(decoder.feed(chunk), turn)
        self._handle_events(decoder.flush(), turn)

    def _handle_events(self, events: Iterable[StreamEvent], turn: _TurnBuffer) -> None:
        for event in events:
            if event.type == ERROR:
                raise ProtocolError(f"Backend error: {event.error}")
            if event.type == TOOL_CALLS:
                self._emit_native_tool_calls(event, turn)
            elif event.type == TOKEN and event.content:
                if turn.native_tool_call:
                    continue
                turn.parts.append(event.content)
                self._publish(TokenReceived(event.content, source=_SOURCE))
            elif event.type == DONE:
                turn.done = True

    def _emit_native_tool_calls(self, event: StreamEvent, turn: _TurnBuffer) -> None:
        if not event.tool_calls:
            return
        LOGGER.info("Native tool call(s) detected: %s", ", ".join(call.name for call in event.tool_calls))
        if turn.chat:
            self._history.append(
                Message(Role.ASSISTANT, turn.text, tool_calls=tuple(event.raw_tool_calls))
            )
        turn.native_tool_call = True
        self._state = TurnState.TOOL_CALL_PENDING
        for call in event.tool_calls:
            self._publish(ToolCallRequested(call.name, call.arguments, call.call_id, source=_SOURCE))

    def _finish_turn(self, turn: _TurnBuffer) -> None:
        if turn.native_tool_call:
            return
        response = turn.text
        if not response:
            LOGGER.error("No response received from LLM")
            self._state = TurnState.IDLE
            self._publish(
                ErrorOccurred("No response received from LLM", category=ErrorCategory.PROTOCOL, source=_SOURCE)
            )
            return

        if turn.tools is not None:
            detected = detect_prompt_tool_call(response, turn.tools)
            if detected is not None:
                self._state = TurnState.TOOL_CALL_PENDING
                self._publish(
                    ToolCallRequested(detected.name, detected.arguments, detected.call_id, source=_SOURCE)
                )
                return

        if turn.chat and self._dialect is Dialect.NATIVE:
            self._history.append(Message(Role.ASSISTANT, response))
        self._state = TurnState.COMPLETE
        self._publish(ResponseReceived(response, source=_SOURCE))
        self._state = TurnState.IDLE

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _formatter(self) -> RequestFormatter:
        return RequestFormatter(
            model=self._settings.model,
            system_prompt=self._settings.system_prompt,
            options=self._settings.options,
        )

    def _auth_headers(self) -> dict[str, str]:
        headers = self._settings.headers()
        headers.pop("Content-Type", None)
        return headers

    def _publish_retry(self, attempt: int, max_attempts: int, delay: float) -> None:
        self._publish(RetryAttempt(attempt, max_attempts, delay=delay, source=_SOURCE))

    def _publish(self, event: Any) -> None:
        self._bus.publish(event)


def _coerce_result(item: ToolCallResult | Mapping[str, Any]) -> ToolCallResult:
    if isinstance(item, ToolCallResult):
        return item
    return ToolCallResult(
        tool_name=str(item.get("tool_name") or ""),
        result=item.get("result"),
        call_id=str(item.get("call_id") or ""),
    )


def format_tool_results_message(results: Sequence[ToolCallResult]) -> str:
    """User message asking the model to summarise raw tool output."""

    parts = [_TOOL_RESULTS_PREAMBLE]
    for item in results:
        parts.append(f"Tool: {item.tool_name}\n")
        parts.append(f"Result: {json.dumps(item.result, separators=(',', ':'), ensure_ascii=False, default=str)}\n\n")
    return "".join(parts)


def format_tool_result(item: ToolCallResult) -> str:
    """Phrase a single tool result without a model round-trip."""

    data = item.result if isinstance(item.result, Mapping) else {"result": item.result}
    if item.tool_name == "datetime":
        if "datetime" in data:
            return f"The current date and time is {data['datetime']}."
        if "timestamp" in data:
            return f"The current timestamp is {data['timestamp']}."
        date, time, zone = data.get("date", ""), data.get("time", ""), data.get("timezone", "")
        if zone:
            return f"It's currently {time} on {date} ({zone})."
        return f"It's currently {time} on {date}."
    if item.tool_name == "calculator":
        if "error" in data:
            return f"The calculation failed: {data['error']}."
        return f"The answer is {_format_number(data.get('result'))}."
    return "Tool result:\n" + json.dumps(data, indent=4, ensure_ascii=False, default=str)


def _format_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


__all__ = [
    "ClientSettings",
    "SessionClient",
    "TurnState",
    "SIMPLE_TOOLS",
    "format_tool_result",
    "format_tool_results_message",
]
