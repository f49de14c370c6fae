"""Tests for prompt-injected tool call detection."""

from __future__ import annotations

from qtbot.ai.orchestration.tool_call_parser import (
    detect_prompt_tool_call,
    extract_balanced_object,
    tool_parameter_names,
)

CALCULATOR = {
    "name": "calculator",
    "description": "Perform basic arithmetic operations",
    "parameters": {"operation": "string", "a": "number", "b": "number"},
}
WEATHER = {
    "name": "weather",
    "description": "Look up weather",
    "parameters": {"type": "object", "properties": {"city": {"type": "string"}}},
}


def test_marker_inside_prose_is_detected() -> None:
    response = (
        'Let me calculate that. {"tool_call": {"name": "calculator", '
        '"parameters": {"operation": "add", "a": 2, "b": 3}}} Done.'
    )

    call = detect_prompt_tool_call(response, [CALCULATOR])

    assert call is not None
    assert call.name == "calculator"
    assert call.arguments == {"operation": "add", "a": 2, "b": 3}
    assert call.strategy == "marker"
    assert len(call.call_id) == 8


def test_marker_with_braces_inside_strings() -> None:
    response = '{"tool_call": {"name": "echo", "parameters": {"text": "a } b {"}}}'
    call = detect_prompt_tool_call(response)
    assert call is not None
    assert call.arguments == {"text": "a } b {"}


def test_unclosed_marker_is_not_a_call() -> None:
    assert detect_prompt_tool_call('{"tool_call": {"name": "calculator"') is None


def test_unwrapped_name_and_parameters() -> None:
    call = detect_prompt_tool_call('  {"name": "datetime", "parameters": {"format": "iso"}}  ')
    assert call is not None
    assert call.name == "datetime"
    assert call.arguments == {"format": "iso"}
    assert call.strategy == "unwrapped"


def test_parameter_match_picks_first_registered_tool() -> None:
    call = detect_prompt_tool_call('{"operation": "multiply", "a": 4, "b": 5}', [WEATHER, CALCULATOR])
    assert call is not None
    assert call.name == "calculator"
    assert call.arguments == {"operation": "multiply", "a": 4, "b": 5}
    assert call.strategy == "parameter_match"


def test_parameter_match_uses_json_schema_properties() -> None:
    call = detect_prompt_tool_call('{"city": "Oslo"}', [CALCULATOR, WEATHER])
    assert call is not None
    assert call.name == "weather"


def test_weak_parameter_overlap_is_ignored() -> None:
    assert detect_prompt_tool_call('{"a": 1, "x": 2, "y": 3}', [CALCULATOR]) is None


def _tool(name: str, *parameters: str) -> dict:
    return {"name": name, "description": name, "parameters": {key: "string" for key in parameters}}


def _payload(*keys: str) -> str:
    return "{" + ", ".join(f'"{key}": 1' for key in keys) + "}"


def test_seven_of_ten_known_keys_is_enough() -> None:
    known = [f"k{i}" for i in range(7)]
    tool = _tool("wide", *known)

    call = detect_prompt_tool_call(_payload(*known, "x1", "x2", "x3"), [tool])

    assert call is not None
    assert call.name == "wide"
    assert len(call.arguments) == 10
    assert detect_prompt_tool_call(_payload(*known[:6], "x1", "x2", "x3", "x4"), [tool]) is None


def test_two_of_three_known_keys_is_not_enough() -> None:
    tool = _tool("pair", "left", "right")
    assert detect_prompt_tool_call(_payload("left", "right", "extra"), [tool]) is None
    assert detect_prompt_tool_call(_payload("left", "right"), [tool]) is not None


def test_equal_matches_go_to_the_earlier_tool() -> None:
    first = _tool("first", "query", "limit")
    second = _tool("second", "query", "limit", "offset")

    assert detect_prompt_tool_call(_payload("query", "limit"), [first, second]).name == "first"
    assert detect_prompt_tool_call(_payload("query", "limit"), [second, first]).name == "second"


def test_plain_answers_are_not_calls() -> None:
    assert detect_prompt_tool_call("The answer is 5.", [CALCULATOR]) is None
    assert detect_prompt_tool_call("", [CALCULATOR]) is None
    assert detect_prompt_tool_call("{not json}", [CALCULATOR]) is None


def test_extract_balanced_object_honours_escapes() -> None:
    text = 'x {"a": "quote \\" }"} tail'
    assert extract_balanced_object(text, 2) == '{"a": "quote \\" }"}'


def test_tool_parameter_names_from_native_envelope() -> None:
    tool = {"type": "function", "function": {"name": "f", "parameters": {"type": "object", "properties": {"q": {}}}}}
    assert tool_parameter_names(tool) == {"q"}
