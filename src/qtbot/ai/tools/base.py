"""Tool definitions for the three supported transports.

A tool is described by its name, description and parameter schema; the
variant decides how a call reaches it: an in-process callable, a JSON-RPC
``tools/call`` POST, or a Server-Sent-Events stream.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, ClassVar, Mapping

ToolInvoker = Callable[[Mapping[str, Any]], Any]


class ToolTransport(str, Enum):
    LOCAL = "local"
    HTTP = "http"
    SSE = "sse"


@dataclass(slots=True)
class ToolDefinition:
    """Fields shared by every tool variant.

    Attributes:
        name: Unique identifier within the registry.
        description: Human-readable description shown to the model.
        parameters: Either the simplified ``{param: "type: description"}`` map
            or a JSON-Schema object.
        enabled: Whether the tool is offered to the model.
        server: Name of the MCP server the tool was discovered on, if any.
    """

    name: str
    description: str = ""
    parameters: Mapping[str, Any] = field(default_factory=dict)
    enabled: bool = True
    server: str = ""

    transport: ClassVar[ToolTransport] = ToolTransport.LOCAL

    @property
    def networked(self) -> bool:
        return self.transport is not ToolTransport.LOCAL

    def validate(self) -> bool:
        return bool(self.name and self.name.strip())

    def to_llm_dict(self) -> dict[str, Any]:
        """Serialize name, description and parameters for request payloads."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters),
        }


@dataclass(slots=True)
class LocalTool(ToolDefinition):
    """A tool executed in-process by calling ``invoker(arguments)``."""

    invoker: ToolInvoker | None = None

    transport: ClassVar[ToolTransport] = ToolTransport.LOCAL

    def validate(self) -> bool:
        return ToolDefinition.validate(self) and callable(self.invoker)


@dataclass(slots=True)
class HttpTool(ToolDefinition):
    """A tool reached through a JSON-RPC 2.0 ``tools/call`` request to ``url``."""

    url: str = ""

    transport: ClassVar[ToolTransport] = ToolTransport.HTTP

    def validate(self) -> bool:
        return ToolDefinition.validate(self) and bool(self.url.strip())


@dataclass(slots=True)
class SseTool(ToolDefinition):
    """A tool whose results arrive as Server-Sent Events from ``url``."""

    url: str = ""

    transport: ClassVar[ToolTransport] = ToolTransport.SSE

    def validate(self) -> bool:
        return ToolDefinition.validate(self) and bool(self.url.strip())


__all__ = [
    "ToolInvoker",
    "ToolTransport",
    "ToolDefinition",
    "LocalTool",
    "HttpTool",
    "SseTool",
]
