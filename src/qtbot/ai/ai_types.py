"""Shared typing contracts for the agent runtime."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol, Sequence


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic estimate for *text*."""
        ...


class Dialect(str, Enum):
    """Tool-calling convention preferred by the backend model."""

    NATIVE = "native"
    PROMPT_INJECTED = "prompt_injected"
    UNKNOWN = "unknown"

    @property
    def uses_chat_history(self) -> bool:
        return self is Dialect.NATIVE


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class Message:
    """One entry of the conversation history."""

    role: Role
    content: str
    tool_calls: tuple[Mapping[str, Any], ...] = ()

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [dict(call) for call in self.tool_calls]
        return payload


@dataclass(slots=True)
class ToolCallRequest:
    """A dispatched tool invocation and its eventual outcome."""

    call_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: Any = None
    error: str | None = None

    def complete(self, result: Any) -> None:
        if self.status is not ToolCallStatus.PENDING:
            raise RuntimeError(f"Tool call {self.call_id} already {self.status.value}")
        self.status = ToolCallStatus.COMPLETED
        self.result = result

    def fail(self, error: str) -> None:
        if self.status is not ToolCallStatus.PENDING:
            raise RuntimeError(f"Tool call {self.call_id} already {self.status.value}")
        self.status = ToolCallStatus.FAILED
        self.error = error


@dataclass(slots=True, frozen=True)
class ToolCallResult:
    """Outcome handed back to the session client for folding into the conversation."""

    tool_name: str
    result: Any
    call_id: str = ""


@dataclass(slots=True, frozen=True)
class PendingRequest:
    """A prompt queued while capability detection is outstanding."""

    prompt: str
    tools: Sequence[Mapping[str, Any]] = ()
    context: str = ""
    wants_tools: bool = False
