"""Tool definitions, registry, dispatcher and MCP discovery."""

from .base import HttpTool, LocalTool, SseTool, ToolDefinition, ToolTransport
from .builtin import register_builtin_tools
from .dispatcher import ToolDispatcher
from .errors import (
    ErrorCode,
    StreamClosedError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTransportError,
)
from .mcp import McpDiscovery
from .registry import ToolRegistry

__all__ = [
    "ErrorCode",
    "HttpTool",
    "LocalTool",
    "McpDiscovery",
    "SseTool",
    "StreamClosedError",
    "ToolDefinition",
    "ToolDispatcher",
    "ToolError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolRegistry",
    "ToolTransport",
    "ToolTransportError",
    "register_builtin_tools",
]
