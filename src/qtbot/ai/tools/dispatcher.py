"""Tool Dispatcher.

Routes a tool call to the transport of its definition and reports the outcome
on the event bus. :meth:`ToolDispatcher.execute` never blocks on the tool: it
hands back a call id straight away and the result follows as a
``ToolCallCompleted``, ``ToolCallProgress`` or ``ToolCallFailed`` event.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Mapping

import httpx

from ..ai_types import ToolCallRequest, ToolCallStatus
from ..events import EventBus, ToolCallCompleted, ToolCallFailed, ToolCallProgress
from ..sse import SSEClient, SSEEvent
from ..streaming import new_call_id
from .base import HttpTool, LocalTool, SseTool
from .errors import (
    ErrorCode,
    StreamClosedError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTransportError,
)
from .mcp import MCP_HEADERS, McpDiscovery, McpError, decode_rpc_body, rpc_error_message
from .registry import ToolRegistry

LOGGER = logging.getLogger(__name__)
_SOURCE = "dispatcher"

COMPLETION_EVENT_TYPES = frozenset({"done", "complete", "end"})
DEFAULT_TOOL_TIMEOUT = 30.0


class _SseCallListener:
    """Binds one tool's SSE stream callbacks back to the dispatcher."""

    def __init__(self, dispatcher: "ToolDispatcher", tool_name: str) -> None:
        self._dispatcher = dispatcher
        self._tool_name = tool_name

    def on_event(self, event: SSEEvent) -> None:
        self._dispatcher._on_sse_event(self._tool_name, event)

    def on_error(self, message: str) -> None:
        self._dispatcher._on_sse_closed(self._tool_name, message)

    def on_disconnected(self) -> None:
        self._dispatcher._on_sse_closed(self._tool_name, None)


class ToolDispatcher:
    """Executes registered tools over local, HTTP and SSE transports.

    Example:
        dispatcher = ToolDispatcher(registry, bus=bus)
        call_id = dispatcher.execute("calculator", {"operation": "add", "a": 1, "b": 2})
        await dispatcher.join()
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        bus: EventBus | None = None,
        client: httpx.AsyncClient | None = None,
        sse_client: httpx.AsyncClient | None = None,
        discovery: McpDiscovery | None = None,
        timeout: float = DEFAULT_TOOL_TIMEOUT,
        discovery_timeout: float = 5.0,
    ) -> None:
        self._registry = registry
        self._bus = bus or EventBus()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._sse_http_client = sse_client
        self._timeout = timeout
        self._discovery = discovery or McpDiscovery(registry, client=self._client, timeout=discovery_timeout)
        self._pending: dict[str, ToolCallRequest] = {}
        self._http_calls: dict[int, ToolCallRequest] = {}
        self._sse_calls: dict[str, ToolCallRequest] = {}
        self._sse_clients: dict[str, SSEClient] = {}
        self._sse_idle = asyncio.Event()
        self._sse_idle.set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._rpc_id = 0

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def pending(self) -> dict[str, ToolCallRequest]:
        """Outstanding calls keyed by call id."""
        return dict(self._pending)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, name: str, arguments: Mapping[str, Any] | None = None) -> str:
        """Start a call to tool *name* and return its call id.

        Must be called from a running event loop; outcomes are published after
        this method has returned.
        """
        call_id = self._new_call_id()
        request = ToolCallRequest(call_id=call_id, tool_name=name, arguments=dict(arguments or {}))
        self._pending[call_id] = request

        tool = self._registry.get(name)
        if tool is None:
            LOGGER.warning("Tool not found: %s", name)
            self._defer(self._fail, request, ToolNotFoundError.for_name(name))
            return call_id

        LOGGER.info("Executing %s tool: %s (call %s)", tool.transport.value, name, call_id)
        if isinstance(tool, LocalTool):
            self._execute_local(tool, request)
        elif isinstance(tool, HttpTool):
            self._execute_http(tool, request)
        elif isinstance(tool, SseTool):
            self._execute_sse(tool, request)
        else:
            self._defer(
                self._fail,
                request,
                ToolExecutionError(error_code=ErrorCode.INVALID_TOOL, message=f"Unsupported tool type: {type(tool).__name__}"),
            )
        return call_id

    async def discover(self, server_name: str, url: str, transport_hint: str = "http") -> int:
        """Register the tools of an MCP server; ``-1`` when the handshake failed."""
        return await self._discovery.discover(server_name, url, transport_hint)

    @property
    def discovery(self) -> McpDiscovery:
        return self._discovery

    async def join(self) -> None:
        """Wait for every outstanding HTTP call and SSE call to settle.

        Streams with no call in flight are left open.
        """
        await asyncio.sleep(0)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._sse_idle.wait()

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        clients, self._sse_clients = self._sse_clients, {}
        for client in clients.values():
            await client.aclose()
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Local tools
    # ------------------------------------------------------------------

    def _execute_local(self, tool: LocalTool, request: ToolCallRequest) -> None:
        if tool.invoker is None:
            error = ToolExecutionError(
                error_code=ErrorCode.INVALID_TOOL,
                message=f"Local tool has no invoker: {tool.name}",
            )
            self._defer(self._fail, request, error)
            return
        try:
            result = tool.invoker(request.arguments)
        except Exception as exc:
            LOGGER.warning("Local tool %s raised: %s", tool.name, exc, exc_info=True)
            error = ToolExecutionError(
                message=f"Tool execution failed: {exc}",
                details={"tool": tool.name, "exception": type(exc).__name__},
            )
            self._defer(self._fail, request, error)
            return
        self._defer(self._complete, request, result)

    # ------------------------------------------------------------------
    # HTTP tools
    # ------------------------------------------------------------------

    def _execute_http(self, tool: HttpTool, request: ToolCallRequest) -> None:
        self._rpc_id += 1
        rpc_id = self._rpc_id
        body = {
            "jsonrpc": "2.0",
            "id": rpc_id,
            "method": "tools/call",
            "params": {"name": tool.name, "arguments": request.arguments},
        }
        self._http_calls[rpc_id] = request
        task = asyncio.ensure_future(self._call_http(tool, rpc_id, body))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _call_http(self, tool: HttpTool, rpc_id: int, body: Mapping[str, Any]) -> None:
        error: ToolError | None = None
        payload: dict[str, Any] = {}
        try:
            response = await self._client.post(tool.url, json=body, headers=MCP_HEADERS, timeout=self._timeout)
            response.raise_for_status()
            payload = decode_rpc_body(response.content)
        except httpx.HTTPStatusError as exc:
            error = ToolTransportError(
                message=f"HTTP request failed: {exc}",
                status_code=exc.response.status_code,
            )
        except httpx.TimeoutException as exc:
            error = ToolTransportError(error_code=ErrorCode.TIMEOUT, message=f"HTTP request timed out: {exc}")
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            error = ToolTransportError(message=f"HTTP request failed: {exc}")
        except McpError as exc:
            error = ToolExecutionError(
                error_code=ErrorCode.REMOTE_ERROR,
                message="Invalid JSON response from tool server",
                details={"reason": str(exc)},
            )

        request = self._http_calls.pop(rpc_id, None)
        if request is None:
            LOGGER.warning("Received response for unknown tool request id %s", rpc_id)
            return
        if error is not None:
            LOGGER.warning("Tool %s failed: %s", tool.name, error.message)
            self._fail(request, error)
        elif "result" in payload:
            self._complete(request, payload["result"])
        elif "error" in payload:
            message = rpc_error_message(payload["error"])
            LOGGER.warning("Tool %s returned error: %s", tool.name, message)
            self._fail(request, ToolExecutionError(error_code=ErrorCode.REMOTE_ERROR, message=message))
        else:
            self._complete(request, payload)

    # ------------------------------------------------------------------
    # SSE tools
    # ------------------------------------------------------------------

    def _execute_sse(self, tool: SseTool, request: ToolCallRequest) -> None:
        previous = self._pop_sse_call(tool.name)
        if previous is not None:
            self._fail(
                previous,
                ToolTransportError(
                    error_code=ErrorCode.SUPERSEDED,
                    message="Superseded by a newer call to the same tool",
                    suggestion="",
                ),
            )
        client = self._sse_clients.get(tool.name)
        if client is None:
            client = SSEClient(_SseCallListener(self, tool.name), client=self._sse_http_client)
            self._sse_clients[tool.name] = client
        url = build_stream_url(tool.url, request.arguments)
        try:
            client.connect(str(url))
        except httpx.InvalidURL as exc:
            self._defer(self._fail, request, ToolTransportError(message=f"Invalid stream URL: {exc}"))
            return
        self._sse_calls[tool.name] = request
        self._sse_idle.clear()

    def _on_sse_event(self, tool_name: str, event: SSEEvent) -> None:
        request = self._sse_calls.get(tool_name)
        if request is None:
            LOGGER.debug("Ignoring SSE event for %s with no outstanding call", tool_name)
            return
        result = parse_event_data(event)
        if event.event_type in COMPLETION_EVENT_TYPES:
            self._pop_sse_call(tool_name)
            self._complete(request, result)
            return
        self._publish(
            ToolCallProgress(request.call_id, tool_name, result, event_type=event.event_type, source=_SOURCE)
        )

    def _on_sse_closed(self, tool_name: str, reason: str | None) -> None:
        request = self._pop_sse_call(tool_name)
        if request is None:
            return
        details = {"reason": reason} if reason else {}
        LOGGER.warning("SSE stream for %s closed with call %s outstanding", tool_name, request.call_id)
        self._fail(request, StreamClosedError(details=details))

    def _pop_sse_call(self, tool_name: str) -> ToolCallRequest | None:
        request = self._sse_calls.pop(tool_name, None)
        if not self._sse_calls:
            self._sse_idle.set()
        return request

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _complete(self, request: ToolCallRequest, result: Any) -> None:
        if request.status is not ToolCallStatus.PENDING:
            return
        request.complete(result)
        self._pending.pop(request.call_id, None)
        LOGGER.info("Tool %s completed (call %s)", request.tool_name, request.call_id)
        self._publish(ToolCallCompleted(request.call_id, request.tool_name, result, source=_SOURCE))

    def _fail(self, request: ToolCallRequest, error: ToolError) -> None:
        if request.status is not ToolCallStatus.PENDING:
            return
        request.fail(error.message)
        self._pending.pop(request.call_id, None)
        self._publish(ToolCallFailed(request.call_id, request.tool_name, error, source=_SOURCE))

    def _defer(self, callback: Any, *args: Any) -> None:
        asyncio.get_running_loop().call_soon(callback, *args)

    def _publish(self, event: Any) -> None:
        self._bus.publish(event)

    def _new_call_id(self) -> str:
        call_id = new_call_id()
        while call_id in self._pending:
            call_id = new_call_id()
        return call_id


def build_stream_url(url: str, arguments: Mapping[str, Any]) -> httpx.URL:
    """Append *arguments* to *url* as query parameters."""

    params: dict[str, str] = {}
    for key, value in arguments.items():
        if isinstance(value, str):
            params[key] = value
        elif isinstance(value, bool):
            params[key] = "true" if value else "false"
        elif isinstance(value, (int, float)):
            params[key] = str(value)
        else:
            params[key] = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return httpx.URL(url).copy_merge_params(params)


def parse_event_data(event: SSEEvent) -> Any:
    """Decode an event's data as a JSON object, or wrap the raw fields."""

    try:
        decoded = json.loads(event.data)
    except json.JSONDecodeError:
        decoded = None
    if isinstance(decoded, dict):
        return decoded
    return {"data": event.data, "eventType": event.event_type, "id": event.id}


__all__ = [
    "ToolDispatcher",
    "COMPLETION_EVENT_TYPES",
    "build_stream_url",
    "parse_event_data",
]
