"""Local tools registered on every runtime."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping

from .base import LocalTool
from .registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

CALCULATOR_PARAMETERS = {
    "operation": "string: add, subtract, multiply, or divide",
    "a": "number: first operand",
    "b": "number: second operand",
}
DATETIME_PARAMETERS = {
    "format": "string: 'short', 'long', 'iso', or 'timestamp' (default: long)",
}


def calculator_tool(arguments: Mapping[str, Any]) -> dict[str, Any]:
    """Apply a basic arithmetic operation to ``a`` and ``b``."""

    operation = str(arguments.get("operation") or "")
    try:
        a = float(arguments.get("a", 0) or 0)
        b = float(arguments.get("b", 0) or 0)
    except (TypeError, ValueError):
        return {"error": "Operands must be numbers"}

    if operation == "add":
        result = a + b
    elif operation == "subtract":
        result = a - b
    elif operation == "multiply":
        result = a * b
    elif operation == "divide":
        if b == 0:
            return {"error": "Division by zero"}
        result = a / b
    else:
        return {"error": f"Unknown operation: {operation}"}
    return {"result": result, "operation": operation, "a": a, "b": b}


def datetime_tool(arguments: Mapping[str, Any], now: datetime | None = None) -> dict[str, Any]:
    """Report the current local date and time in the requested ``format``."""

    current = (now or datetime.now()).astimezone()
    fmt = str(arguments.get("format") or "long")
    if fmt == "short":
        return {"date": current.strftime("%Y-%m-%d"), "time": current.strftime("%H:%M:%S")}
    if fmt == "iso":
        return {"datetime": current.replace(microsecond=0).isoformat()}
    if fmt == "timestamp":
        return {"timestamp": int(current.timestamp() * 1000)}
    hour = current.hour % 12 or 12
    return {
        "date": f"{current.strftime('%A, %B')} {current.day}, {current.year}",
        "time": f"{hour}:{current.strftime('%M:%S')} {'AM' if current.hour < 12 else 'PM'}",
        "timezone": current.tzname() or "",
    }


def builtin_tools() -> list[LocalTool]:
    return [
        LocalTool(
            name="calculator",
            description="Performs basic arithmetic operations (add, subtract, multiply, divide)",
            parameters=CALCULATOR_PARAMETERS,
            invoker=calculator_tool,
        ),
        LocalTool(
            name="datetime",
            description="Get current date and time in various formats",
            parameters=DATETIME_PARAMETERS,
            invoker=datetime_tool,
        ),
    ]


def register_builtin_tools(registry: ToolRegistry) -> int:
    """Install the built-in tools; returns how many were registered."""

    count = sum(1 for tool in builtin_tools() if registry.register(tool))
    LOGGER.debug("Registered %d built-in tool(s)", count)
    return count


__all__ = [
    "builtin_tools",
    "calculator_tool",
    "datetime_tool",
    "register_builtin_tools",
]
