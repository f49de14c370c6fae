"""Tests for request payload construction and tool-schema conversion."""

from __future__ import annotations

from qtbot.ai.ai_types import Message, Role
from qtbot.ai.request_builder import (
    GenerationOptions,
    RequestFormatter,
    backend_endpoint,
    convert_tool_schema,
    describe_tools_for_prompt,
    to_native_tools,
)

CALCULATOR = {
    "name": "calculator",
    "description": "Perform basic arithmetic operations",
    "parameters": {
        "operation": "string: add, subtract, multiply, or divide",
        "a": "number: first operand",
        "b": "number: second operand",
    },
}


def test_generate_request_includes_system_prompt_and_options() -> None:
    formatter = RequestFormatter(
        model="llama3",
        system_prompt="Be brief.",
        options=GenerationOptions(temperature=0.2, top_k=40, num_predict=128),
    )

    payload = formatter.build_generate_request("Hello")

    assert payload == {
        "model": "llama3",
        "prompt": "Hello",
        "stream": True,
        "system": "Be brief.",
        "options": {"temperature": 0.2, "top_k": 40},
        "num_predict": 128,
    }


def test_generate_request_without_overrides_has_no_options() -> None:
    payload = RequestFormatter(model="llama3").build_generate_request("Hi")
    assert "options" not in payload
    assert "system" not in payload
    assert "num_predict" not in payload


def test_prompt_tool_request_appends_catalogue_to_system_prompt() -> None:
    formatter = RequestFormatter(model="llama3", system_prompt="Base.")

    payload = formatter.build_prompt_tool_request("What is 2+3?", [CALCULATOR])

    system = payload["system"]
    assert system.startswith("Base.\n\nAVAILABLE TOOLS:\n")
    assert "Tool: calculator\n" in system
    assert "Description: Perform basic arithmetic operations\n" in system
    assert '"a":"number: first operand"' in system
    assert '{"tool_call": {"name": "tool_name", "parameters": {}}}' in system
    assert payload["prompt"] == "What is 2+3?"


def test_native_tool_request_orders_messages() -> None:
    formatter = RequestFormatter(model="llama3", system_prompt="Sys")
    history = [Message(Role.USER, "earlier"), Message(Role.ASSISTANT, "reply")]

    payload = formatter.build_native_tool_request("now", [CALCULATOR], history)

    assert [entry["role"] for entry in payload["messages"]] == ["system", "user", "assistant", "user"]
    assert payload["messages"][-1]["content"] == "now"
    tool = payload["tools"][0]
    assert tool["type"] == "function"
    assert tool["function"]["name"] == "calculator"
    assert tool["function"]["parameters"]["properties"]["a"] == {
        "type": "number",
        "description": "first operand",
    }


def test_chat_request_carries_assistant_tool_calls() -> None:
    calls = ({"function": {"name": "datetime", "arguments": {}}},)
    payload = RequestFormatter(model="m").build_chat_request([Message(Role.ASSISTANT, "", tool_calls=calls)])
    assert payload["messages"] == [
        {"role": "assistant", "content": "", "tool_calls": [{"function": {"name": "datetime", "arguments": {}}}]}
    ]


def test_convert_tool_schema_maps_type_tokens() -> None:
    schema = convert_tool_schema(
        {
            "flag": "boolean: toggle",
            "count": "integer: how many",
            "label": "free text without a type",
            "nested": {"type": "array"},
        }
    )
    properties = schema["properties"]
    assert properties["flag"]["type"] == "boolean"
    assert properties["count"]["type"] == "number"
    assert properties["label"] == {"type": "string", "description": "free text without a type"}
    assert properties["nested"] == {"type": "array"}
    assert schema["required"] == []


def test_convert_tool_schema_passes_json_schema_through() -> None:
    schema = {"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]}
    assert convert_tool_schema(schema) == schema
    assert convert_tool_schema(None) == {"type": "object", "properties": {}, "required": []}


def test_to_native_tools_keeps_existing_envelopes() -> None:
    wrapped = {"type": "function", "function": {"name": "x"}}
    assert to_native_tools([wrapped]) == [wrapped]


def test_describe_tools_for_empty_catalogue() -> None:
    text = describe_tools_for_prompt([])
    assert "AVAILABLE TOOLS" in text
    assert "Tool:" not in text


def test_backend_endpoint_keeps_scheme_host_and_port() -> None:
    assert backend_endpoint("http://localhost:11434/api/generate", "/api/chat") == "http://localhost:11434/api/chat"
    assert backend_endpoint("https://llm.example.com/v1/api/generate", "/api/show") == "https://llm.example.com/api/show"
