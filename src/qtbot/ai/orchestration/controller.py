"""Conversation controller wiring retrieval, the session client and tool dispatch."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from ..ai_types import ToolCallResult
from ..client import SessionClient
from ..errors import ErrorCategory, RetrievalError
from ..events import (
    ErrorOccurred,
    EventBus,
    ToolCallCompleted,
    ToolCallFailed,
    ToolCallProgress,
    ToolCallRequested,
)
from ..memory.retrieval import RetrievalEngine
from ..tools.dispatcher import ToolDispatcher

LOGGER = logging.getLogger(__name__)
_SOURCE = "controller"

RAG_CONTEXT_HEADER = "CONTEXT FROM DOCUMENTS:\n\n"
RAG_CONTEXT_FOOTER = "\nPlease use the above context to answer the user's question.\n\n"


def build_rag_prompt(chunks: Sequence[str], prompt: str) -> str:
    """Prefix *prompt* with numbered document chunks."""

    parts = [RAG_CONTEXT_HEADER]
    for number, chunk in enumerate(chunks, start=1):
        parts.append(f"--- Document Chunk {number} ---\n{chunk}\n\n")
    parts.append(RAG_CONTEXT_FOOTER)
    parts.append(f"USER QUESTION: {prompt}")
    return "".join(parts)


@dataclass(slots=True)
class ConversationController:
    """High-level interface invoked by the host application.

    Tool calls requested by the model are executed on the dispatcher; once every
    call of a turn has settled, the successful results are folded back through
    :meth:`SessionClient.send_tool_results`.
    """

    session: SessionClient
    dispatcher: ToolDispatcher
    retrieval: RetrievalEngine | None = None
    rag_enabled: bool = False
    rag_top_k: int = 3
    _bus: EventBus = field(init=False, repr=False)
    _outstanding: dict[str, str] = field(default_factory=dict, init=False, repr=False)
    _results: list[ToolCallResult] = field(default_factory=list, init=False, repr=False)
    _failures: list[str] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        self._bus = self.session.bus
        self._bus.subscribe(ToolCallRequested, self._handle_tool_request)
        self._bus.subscribe(ToolCallCompleted, self._handle_tool_completed)
        self._bus.subscribe(ToolCallProgress, self._handle_tool_progress)
        self._bus.subscribe(ToolCallFailed, self._handle_tool_failed)

    @property
    def outstanding_calls(self) -> dict[str, str]:
        """Dispatcher call ids mapped to the call ids the model issued."""
        return dict(self._outstanding)

    async def submit(self, prompt: str) -> str:
        """Send *prompt* with document context and the enabled tools.

        Returns:
            The prompt text actually handed to the session client.
        """
        text = await self._augment(prompt)
        tools = self.dispatcher.registry.tools_for_llm()
        if tools:
            self.session.send_prompt_with_tools(text, tools)
        else:
            self.session.send_prompt(text)
        return text

    def close(self) -> None:
        self._bus.unsubscribe(ToolCallRequested, self._handle_tool_request)
        self._bus.unsubscribe(ToolCallCompleted, self._handle_tool_completed)
        self._bus.unsubscribe(ToolCallProgress, self._handle_tool_progress)
        self._bus.unsubscribe(ToolCallFailed, self._handle_tool_failed)

    async def _augment(self, prompt: str) -> str:
        engine = self.retrieval
        if not self.rag_enabled or engine is None or not engine.has_chunks:
            return prompt
        try:
            chunks = await engine.query(prompt, self.rag_top_k)
        except RetrievalError as exc:
            LOGGER.warning("RAG context unavailable, sending plain prompt: %s", exc)
            return prompt
        if not chunks:
            return prompt
        LOGGER.info("Augmenting prompt with %d document chunk(s)", len(chunks))
        return build_rag_prompt(chunks, prompt)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _handle_tool_request(self, event: ToolCallRequested) -> None:
        call_id = self.dispatcher.execute(event.tool_name, event.arguments)
        self._outstanding[call_id] = event.call_id
        LOGGER.info("Dispatched %s as call %s", event.tool_name, call_id)

    def _handle_tool_completed(self, event: ToolCallCompleted) -> None:
        origin = self._outstanding.pop(event.call_id, None)
        if origin is None:
            return
        self._results.append(ToolCallResult(event.tool_name, event.result, call_id=origin))
        self._maybe_fold()

    def _handle_tool_progress(self, event: ToolCallProgress) -> None:
        if event.call_id in self._outstanding:
            LOGGER.debug("Progress from %s (%s)", event.tool_name, event.event_type)

    def _handle_tool_failed(self, event: ToolCallFailed) -> None:
        if self._outstanding.pop(event.call_id, None) is None:
            return
        LOGGER.warning("Tool call %s (%s) failed: %s", event.call_id, event.tool_name, event.error)
        self._failures.append(f"{event.tool_name}: {event.message}")
        self._maybe_fold()

    def _maybe_fold(self) -> None:
        if self._outstanding:
            return
        results, self._results = self._results, []
        failures, self._failures = self._failures, []
        if results:
            self.session.send_tool_results(results)
        elif failures:
            self._bus.publish(
                ErrorOccurred(
                    "Tool call failed: " + "; ".join(failures),
                    category=ErrorCategory.TOOL,
                    source=_SOURCE,
                )
            )


__all__ = ["ConversationController", "build_rag_prompt"]
