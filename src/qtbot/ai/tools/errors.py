"""Standardized error types for tool execution.

Tool faults never escape the dispatcher; they are converted into one of the
classes below and delivered through a ``ToolCallFailed`` event.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes used in tool failures."""

    # Lookup errors
    TOOL_NOT_FOUND = "tool_not_found"
    INVALID_TOOL = "invalid_tool"

    # Execution errors
    EXECUTION_FAILED = "execution_failed"
    REMOTE_ERROR = "remote_error"

    # Transport errors
    TRANSPORT_ERROR = "transport_error"
    STREAM_CLOSED = "stream_closed"
    SUPERSEDED = "superseded"
    TIMEOUT = "timeout"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class ToolError(Exception):
    """Base exception class for all tool errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for JSON tool responses."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Concrete Errors
# -----------------------------------------------------------------------------

@dataclass
class ToolNotFoundError(ToolError):
    """No tool with the requested name is registered."""

    error_code: str = field(default=ErrorCode.TOOL_NOT_FOUND)
    message: str = field(default="Tool not found")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Check the registered tool names or rerun server discovery")

    tool_name: str = ""

    @classmethod
    def for_name(cls, tool_name: str) -> "ToolNotFoundError":
        return cls(message=f"Tool not found: {tool_name}", tool_name=tool_name, details={"tool": tool_name})


@dataclass
class ToolExecutionError(ToolError):
    """A local invoker raised, or a remote server answered with a JSON-RPC error."""

    error_code: str = field(default=ErrorCode.EXECUTION_FAILED)
    message: str = field(default="Tool execution failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""


@dataclass
class ToolTransportError(ToolError):
    """The HTTP or SSE exchange with a tool server failed."""

    error_code: str = field(default=ErrorCode.TRANSPORT_ERROR)
    message: str = field(default="Tool transport failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Verify the tool server is reachable")

    status_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


@dataclass
class StreamClosedError(ToolTransportError):
    """An SSE stream ended while a call was still outstanding."""

    error_code: str = field(default=ErrorCode.STREAM_CLOSED)
    message: str = field(default="SSE connection closed unexpectedly")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Retry the call once the server is reachable again")


__all__ = [
    "ErrorCode",
    "ToolError",
    "ToolNotFoundError",
    "ToolExecutionError",
    "ToolTransportError",
    "StreamClosedError",
]
