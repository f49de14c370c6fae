"""Registry of tool definitions keyed by unique name."""

from __future__ import annotations

import logging
from typing import Any, Iterator

from ..request_builder import to_native_tools
from .base import ToolDefinition

LOGGER = logging.getLogger(__name__)


class ToolRegistry:
    """Owns the tool definitions offered to the model.

    Registration order is preserved; it decides tie-breaks when a response is
    matched against tool parameters heuristically.

    Example:
        registry = ToolRegistry()
        registry.register(LocalTool("echo", invoker=lambda args: dict(args)))
        payload_tools = registry.tools_for_llm_native()
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, tool: ToolDefinition) -> bool:
        """Add *tool*, replacing any definition with the same name.

        Returns:
            False when the definition is invalid and was not registered.
        """
        if not tool.validate():
            LOGGER.warning("Rejected invalid %s tool definition: %r", tool.transport.value, tool.name)
            return False
        if tool.name in self._tools:
            LOGGER.warning("Tool '%s' already registered; replacing", tool.name)
            del self._tools[tool.name]
        self._tools[tool.name] = tool
        LOGGER.debug("Registered tool: %s (transport=%s)", tool.name, tool.transport.value)
        return True

    def unregister(self, name: str) -> bool:
        tool = self._tools.pop(name, None)
        if tool is None:
            return False
        LOGGER.debug("Unregistered tool: %s", name)
        return True

    def clear_networked(self) -> int:
        """Remove every HTTP and SSE tool, keeping local ones.

        Returns:
            Number of tools removed.
        """
        doomed = [name for name, tool in self._tools.items() if tool.networked]
        for name in doomed:
            del self._tools[name]
        if doomed:
            LOGGER.info("Cleared %d networked tool(s)", len(doomed))
        return len(doomed)

    def set_enabled(self, name: str, enabled: bool) -> bool:
        tool = self._tools.get(name)
        if tool is None:
            return False
        tool.enabled = enabled
        return True

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def list_tools(self, *, enabled_only: bool = False) -> list[ToolDefinition]:
        return [tool for tool in self._tools.values() if tool.enabled or not enabled_only]

    def names(self) -> list[str]:
        return list(self._tools)

    def tools_for_llm(self, *, enabled_only: bool = True) -> list[dict[str, Any]]:
        """Simplified ``{name, description, parameters}`` entries for prompt injection."""
        return [tool.to_llm_dict() for tool in self.list_tools(enabled_only=enabled_only)]

    def tools_for_llm_native(self, *, enabled_only: bool = True) -> list[dict[str, Any]]:
        """Entries wrapped as ``{"type": "function", "function": ...}`` for the chat endpoint."""
        return to_native_tools(self.tools_for_llm(enabled_only=enabled_only))

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(list(self._tools.values()))

    def __len__(self) -> int:
        return len(self._tools)


__all__ = ["ToolRegistry"]
