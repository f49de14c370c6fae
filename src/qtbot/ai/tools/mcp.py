"""MCP tool discovery over JSON-RPC 2.0.

Discovery is the two-step handshake ``initialize`` then ``tools/list``; every
tool a server lists is registered as an :class:`~qtbot.ai.tools.base.HttpTool`
bound to that server's URL.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Iterable, Mapping

import httpx

from .base import HttpTool
from .registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "qtbot"
CLIENT_VERSION = "1.0.0"
DEFAULT_DISCOVERY_TIMEOUT = 5.0

MCP_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json, text/event-stream",
}


class McpError(Exception):
    """A JSON-RPC exchange with an MCP server failed or returned garbage."""


def unwrap_sse_envelope(body: str) -> str:
    """Strip a single ``event: ...\\ndata: {...}`` frame down to its JSON payload."""

    if body.startswith("event:"):
        start = body.find("data: ")
        if start != -1:
            return body[start + len("data: "):].strip()
    return body


def decode_rpc_body(body: bytes | str) -> dict[str, Any]:
    """Parse a JSON-RPC reply that may arrive SSE-framed."""

    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    try:
        payload = json.loads(unwrap_sse_envelope(text))
    except json.JSONDecodeError as exc:
        raise McpError(f"Malformed JSON-RPC body: {exc}") from exc
    if not isinstance(payload, dict):
        raise McpError("JSON-RPC body is not an object")
    return payload


def rpc_error_message(error: Any) -> str:
    if isinstance(error, Mapping) and error.get("message"):
        return str(error["message"])
    return json.dumps(error, separators=(",", ":"), ensure_ascii=False, default=str)


class McpDiscovery:
    """Registers the tools exposed by MCP servers into a :class:`ToolRegistry`."""

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_DISCOVERY_TIMEOUT,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self._registry = registry
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._timeout = timeout
        self._headers = {**MCP_HEADERS, **dict(headers or {})}

    async def discover(self, server_name: str, url: str, transport_hint: str = "http") -> int:
        """Register the tools listed by the server at *url*.

        Returns:
            The number of tools registered (zero is valid), or ``-1`` when the
            handshake failed.
        """
        LOGGER.info("Discovering tools from MCP server: %s (%s) at %s", server_name, transport_hint.upper(), url)
        try:
            httpx.URL(url)
        except httpx.InvalidURL:
            LOGGER.error("Invalid server URL: %s", url)
            return -1

        try:
            await self._rpc(url, 1, "initialize", {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
            })
            listing = await self._rpc(url, 2, "tools/list", None)
        except McpError as exc:
            LOGGER.error("MCP discovery failed for %s: %s", server_name, exc)
            return -1

        result = listing.get("result")
        tools = result.get("tools") if isinstance(result, Mapping) else None
        if not isinstance(tools, list) or not tools:
            LOGGER.info("MCP server %s has no tools", server_name)
            return 0

        LOGGER.info("Discovered %d tools from MCP server: %s", len(tools), server_name)
        registered = 0
        for entry in tools:
            if not isinstance(entry, Mapping):
                continue
            name = str(entry.get("name") or "")
            if not name:
                LOGGER.warning("Skipping tool with empty name from server: %s", server_name)
                continue
            schema = entry.get("inputSchema")
            tool = HttpTool(
                name=name,
                description=str(entry.get("description") or "") or f"Tool from {server_name}",
                parameters=dict(schema) if isinstance(schema, Mapping) else {},
                server=server_name,
                url=url,
            )
            if self._registry.register(tool):
                registered += 1
                LOGGER.debug("Registered tool '%s' from MCP server: %s", name, server_name)
            else:
                LOGGER.warning("Failed to register tool '%s' from MCP server: %s", name, server_name)

        LOGGER.info("Successfully registered %d/%d tools from MCP server: %s", registered, len(tools), server_name)
        return registered

    async def discover_configured(self, servers: Iterable[Mapping[str, Any]]) -> dict[str, int]:
        """Run :meth:`discover` for every enabled ``{name, url, type, enabled}`` entry."""

        counts: dict[str, int] = {}
        for server in servers:
            if not server.get("enabled", True):
                LOGGER.debug("Skipping disabled MCP server: %s", server.get("name", ""))
                continue
            name = str(server.get("name") or "")
            url = str(server.get("url") or "")
            if not name or not url:
                LOGGER.warning("Skipping MCP server entry without name or url: %r", dict(server))
                continue
            count = await self.discover(name, url, str(server.get("type") or "http"))
            if count < 0:
                LOGGER.warning("Failed to discover tools from MCP server: %s", name)
            counts[name] = count
        return counts

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _rpc(self, url: str, request_id: int, method: str, params: Any) -> dict[str, Any]:
        body: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            body["params"] = params
        try:
            response = await asyncio.wait_for(
                self._client.post(url, json=body, headers=self._headers, timeout=self._timeout),
                timeout=self._timeout,
            )
            response.raise_for_status()
        except asyncio.TimeoutError as exc:
            raise McpError(f"{method} timed out after {self._timeout:.1f}s") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise McpError(f"{method} failed: {exc}") from exc

        payload = decode_rpc_body(response.content)
        if "error" in payload:
            raise McpError(f"{method} returned error: {rpc_error_message(payload['error'])}")
        return payload


__all__ = [
    "McpDiscovery",
    "McpError",
    "PROTOCOL_VERSION",
    "MCP_HEADERS",
    "decode_rpc_body",
    "rpc_error_message",
    "unwrap_sse_envelope",
]
