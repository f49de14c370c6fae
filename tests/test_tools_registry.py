"""Tests for the tool registry and tool definitions."""

from __future__ import annotations

from qtbot.ai.tools import HttpTool, LocalTool, SseTool, ToolRegistry, ToolTransport


def _echo(arguments):
    return dict(arguments)


def test_register_and_lookup() -> None:
    registry = ToolRegistry()
    tool = LocalTool(name="echo", description="Echo", parameters={"text": "string"}, invoker=_echo)

    assert registry.register(tool)

    assert registry.get("echo") is tool
    assert "echo" in registry
    assert len(registry) == 1
    assert registry.names() == ["echo"]


def test_invalid_definitions_are_rejected() -> None:
    registry = ToolRegistry()

    assert not registry.register(LocalTool(name="", invoker=_echo))
    assert not registry.register(LocalTool(name="no-invoker"))
    assert not registry.register(HttpTool(name="remote", url=""))
    assert not registry.register(SseTool(name="stream", url="   "))
    assert len(registry) == 0


def test_reregistering_replaces_definition() -> None:
    registry = ToolRegistry()
    registry.register(LocalTool(name="first", invoker=_echo))
    registry.register(LocalTool(name="echo", description="old", invoker=_echo))
    registry.register(LocalTool(name="echo", description="new", invoker=_echo))

    assert len(registry) == 2
    assert registry.get("echo").description == "new"
    assert registry.names() == ["first", "echo"]


def test_unregister() -> None:
    registry = ToolRegistry()
    registry.register(LocalTool(name="echo", invoker=_echo))
    assert registry.unregister("echo")
    assert not registry.unregister("echo")
    assert registry.get("echo") is None


def test_clear_networked_keeps_local_tools() -> None:
    registry = ToolRegistry()
    registry.register(LocalTool(name="echo", invoker=_echo))
    registry.register(HttpTool(name="search", url="http://mcp.test/rpc", server="mcp"))
    registry.register(SseTool(name="feed", url="http://mcp.test/stream"))

    assert registry.clear_networked() == 2
    assert registry.names() == ["echo"]


def test_disabled_tools_are_not_offered() -> None:
    registry = ToolRegistry()
    registry.register(LocalTool(name="echo", invoker=_echo))
    registry.register(LocalTool(name="hidden", invoker=_echo))

    assert registry.set_enabled("hidden", False)
    assert not registry.set_enabled("missing", False)

    assert [tool["name"] for tool in registry.tools_for_llm()] == ["echo"]
    assert [tool.name for tool in registry.list_tools()] == ["echo", "hidden"]
    assert [tool["name"] for tool in registry.tools_for_llm(enabled_only=False)] == ["echo", "hidden"]


def test_llm_views() -> None:
    registry = ToolRegistry()
    registry.register(
        HttpTool(
            name="search",
            description="Search the web",
            parameters={"type": "object", "properties": {"q": {"type": "string"}}},
            url="http://mcp.test/rpc",
        )
    )

    assert registry.tools_for_llm() == [
        {
            "name": "search",
            "description": "Search the web",
            "parameters": {"type": "object", "properties": {"q": {"type": "string"}}},
        }
    ]
    native = registry.tools_for_llm_native()
    assert native[0]["type"] == "function"
    assert native[0]["function"]["parameters"]["properties"] == {"q": {"type": "string"}}


def test_transport_flags() -> None:
    assert LocalTool(name="a", invoker=_echo).transport is ToolTransport.LOCAL
    assert not LocalTool(name="a", invoker=_echo).networked
    assert HttpTool(name="b", url="http://x").networked
    assert SseTool(name="c", url="http://x").transport is ToolTransport.SSE
