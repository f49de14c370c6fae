"""Tests for the streaming session client."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import httpx
import pytest

from qtbot.ai.ai_types import Dialect, Role, ToolCallResult
from qtbot.ai.client import ClientSettings, SessionClient, TurnState, format_tool_result
from qtbot.ai.errors import ErrorCategory
from qtbot.ai.events import (
    CapabilitiesDetected,
    ErrorOccurred,
    ResponseReceived,
    RetryAttempt,
    TokenReceived,
    ToolCallRequested,
)
from qtbot.ai.retry import RetryController

from tests.helpers import ChunkedStream, make_client, ndjson, request_json

API_URL = "http://ollama.test:11434/api/generate"
NATIVE_INFO = {"template": "{{ if .Tools }}{{ .Tools }}{{ end }}"}
PLAIN_INFO = {"template": "{{ .Prompt }}"}


class FakeBackend:
    """Routes /api/show, /api/generate and /api/chat to canned replies."""

    def __init__(
        self,
        *,
        show: dict[str, Any] | int = PLAIN_INFO,
        generate: Callable[[dict[str, Any]], httpx.Response] | None = None,
        chat: Callable[[dict[str, Any]], httpx.Response] | None = None,
    ) -> None:
        self.show = show
        self.generate = generate
        self.chat = chat
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/api/show":
            if isinstance(self.show, int):
                return httpx.Response(self.show)
            return httpx.Response(200, json=self.show)
        handler = self.generate if path == "/api/generate" else self.chat
        assert handler is not None, f"unexpected request to {path}"
        return handler(request_json(request))

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]

    def payloads(self, path: str) -> list[dict[str, Any]]:
        return [request_json(request) for request in self.requests if request.url.path == path]


def _generate_reply(*parts: str) -> httpx.Response:
    objects = [{"response": part, "done": False} for part in parts] + [{"response": "", "done": True}]
    return httpx.Response(200, content=ndjson(*objects))


def _chat_reply(*parts: str) -> httpx.Response:
    objects = [{"message": {"role": "assistant", "content": part}, "done": False} for part in parts]
    objects.append({"message": {"role": "assistant", "content": ""}, "done": True})
    return httpx.Response(200, content=ndjson(*objects))


def _session(backend: FakeBackend, bus, *, sleeper=None, **overrides: Any) -> SessionClient:
    settings = ClientSettings(model="llama3", api_url=API_URL, system_prompt="Be brief.", **overrides)
    retry = RetryController(max_retries=settings.max_retries, base_delay=1.0, sleep=sleeper) if sleeper else None
    return SessionClient(settings, bus=bus, client=make_client(backend), retry=retry)


@pytest.mark.asyncio
async def test_plain_prompt_streams_tokens_then_response(bus, recorder) -> None:
    backend = FakeBackend(generate=lambda payload: _generate_reply("Hello", " there"))
    session = _session(backend, bus)

    session.send_prompt("Hi")
    await session.join()

    assert backend.paths() == ["/api/show", "/api/generate"]
    payload = backend.payloads("/api/generate")[0]
    assert payload["prompt"] == "Hi"
    assert payload["system"] == "Be brief."
    assert payload["stream"] is True
    assert [event.token for event in recorder.of_type(TokenReceived)] == ["Hello", " there"]
    assert [event.text for event in recorder.of_type(ResponseReceived)] == ["Hello there"]
    assert recorder.of_type(CapabilitiesDetected)[0].dialect is Dialect.PROMPT_INJECTED
    assert session.history == ()
    assert session.state is TurnState.IDLE
    await session.aclose()


@pytest.mark.asyncio
async def test_split_lines_are_reassembled(bus, recorder) -> None:
    body = ndjson({"response": "Par"}, {"response": "tial"}, {"response": "", "done": True})
    backend = FakeBackend(
        generate=lambda payload: httpx.Response(200, stream=ChunkedStream([body[:7], body[7:30], body[30:]]))
    )
    session = _session(backend, bus)

    session.send_prompt("x")
    await session.join()

    assert [event.text for event in recorder.of_type(ResponseReceived)] == ["Partial"]
    await session.aclose()


@pytest.mark.asyncio
async def test_context_is_prefixed_to_prompt(bus) -> None:
    backend = FakeBackend(generate=lambda payload: _generate_reply("ok"))
    session = _session(backend, bus)

    session.send_prompt("Summarise", context="Some notes")
    await session.join()

    assert backend.payloads("/api/generate")[0]["prompt"] == "Context: Some notes\n\nPrompt: Summarise"
    await session.aclose()


@pytest.mark.asyncio
async def test_requests_queued_during_detection_replay_in_order(bus, recorder) -> None:
    backend = FakeBackend(generate=lambda payload: _generate_reply(f"echo:{payload['prompt']}"))
    session = _session(backend, bus)

    session.send_prompt("first")
    session.send_prompt("second")
    assert session.pending_count == 2
    assert session.state is TurnState.AWAITING_CAPABILITIES
    await session.join()

    assert [event.text for event in recorder.of_type(ResponseReceived)] == ["echo:first", "echo:second"]
    assert backend.paths().count("/api/show") == 1
    assert session.pending_count == 0
    await session.aclose()


@pytest.mark.asyncio
async def test_empty_prompt_is_rejected_without_network(bus, recorder) -> None:
    backend = FakeBackend()
    session = _session(backend, bus)

    session.send_prompt("   ")
    await session.join()

    errors = recorder.of_type(ErrorOccurred)
    assert [error.message for error in errors] == ["Prompt cannot be empty"]
    assert errors[0].category == ErrorCategory.PROTOCOL
    assert backend.requests == []
    await session.aclose()


@pytest.mark.asyncio
async def test_empty_reply_is_an_error(bus, recorder) -> None:
    backend = FakeBackend(generate=lambda payload: _generate_reply())
    session = _session(backend, bus)

    session.send_prompt("Hi")
    await session.join()

    assert [error.message for error in recorder.of_type(ErrorOccurred)] == ["No response received from LLM"]
    assert recorder.of_type(ResponseReceived) == []
    await session.aclose()


@pytest.mark.asyncio
async def test_native_tools_use_chat_endpoint_and_history(bus, recorder) -> None:
    backend = FakeBackend(show=NATIVE_INFO, chat=lambda payload: _chat_reply("It is ", "sunny."))
    session = _session(backend, bus)
    tools = [{"name": "weather", "description": "Weather lookup", "parameters": {"city": "string: city name"}}]

    session.send_prompt_with_tools("Weather?", tools)
    await session.join()
    session.send_prompt_with_tools("And tomorrow?", tools)
    await session.join()

    payloads = backend.payloads("/api/chat")
    assert payloads[0]["tools"][0]["function"]["name"] == "weather"
    assert [message["role"] for message in payloads[0]["messages"]] == ["system", "user"]
    assert [message["content"] for message in payloads[1]["messages"]] == [
        "Be brief.",
        "Weather?",
        "It is sunny.",
        "And tomorrow?",
    ]
    assert [(message.role, message.content) for message in session.history] == [
        (Role.USER, "Weather?"),
        (Role.ASSISTANT, "It is sunny."),
        (Role.USER, "And tomorrow?"),
        (Role.ASSISTANT, "It is sunny."),
    ]
    assert session.dialect is Dialect.NATIVE
    await session.aclose()


@pytest.mark.asyncio
async def test_native_tool_call_short_circuits_the_turn(bus, recorder) -> None:
    def chat(payload: dict[str, Any]) -> httpx.Response:
        return httpx.Response(
            200,
            content=ndjson(
                {
                    "message": {
                        "role": "assistant",
                        "content": "",
                        "tool_calls": [{"function": {"name": "datetime", "arguments": {"format": "iso"}}}],
                    }
                },
                {"message": {"role": "assistant", "content": "ignored"}, "done": True},
            ),
        )

    backend = FakeBackend(show=NATIVE_INFO, chat=chat)
    session = _session(backend, bus)

    session.send_prompt_with_tools("What time is it?", [{"name": "datetime", "parameters": {}}])
    await session.join()

    calls = recorder.of_type(ToolCallRequested)
    assert len(calls) == 1
    assert calls[0].tool_name == "datetime"
    assert calls[0].arguments == {"format": "iso"}
    assert recorder.of_type(TokenReceived) == []
    assert recorder.of_type(ResponseReceived) == []
    assert session.state is TurnState.TOOL_CALL_PENDING
    last = session.history[-1]
    assert last.role is Role.ASSISTANT
    assert last.tool_calls[0]["function"]["name"] == "datetime"
    await session.aclose()


@pytest.mark.asyncio
async def test_prompt_injected_tool_call_is_detected(bus, recorder) -> None:
    reply = '{"tool_call": {"name": "calculator", "parameters": {"operation": "add", "a": 2, "b": 3}}}'
    backend = FakeBackend(generate=lambda payload: _generate_reply(reply[:20], reply[20:]))
    session = _session(backend, bus)
    tools = [{"name": "calculator", "description": "math", "parameters": {"operation": "string", "a": "number"}}]

    session.send_prompt_with_tools("2+3?", tools)
    await session.join()

    system = backend.payloads("/api/generate")[0]["system"]
    assert "AVAILABLE TOOLS" in system
    calls = recorder.of_type(ToolCallRequested)
    assert [(call.tool_name, call.arguments) for call in calls] == [
        ("calculator", {"operation": "add", "a": 2, "b": 3})
    ]
    assert recorder.of_type(ResponseReceived) == []
    await session.aclose()


CALCULATOR = {"name": "calculator", "description": "math", "parameters": {"operation": "string", "a": "number"}}
UNWRAPPED_CALL = '{"name":"calculator","parameters":{"operation":"add","a":1,"b":2}}'


@pytest.mark.asyncio
async def test_new_prompt_supersedes_replayed_turn(bus, recorder) -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/show":
            return httpx.Response(200, json=PLAIN_INFO)
        if request_json(request)["prompt"] == "first":
            started.set()
            await release.wait()
            return _generate_reply(UNWRAPPED_CALL)
        return _generate_reply("second-reply")

    session = SessionClient(ClientSettings(model="llama3", api_url=API_URL), bus=bus, client=make_client(handler))

    session.send_prompt_with_tools("first", [CALCULATOR])
    await started.wait()
    session.send_prompt("second")
    release.set()
    await session.join()

    assert [event.text for event in recorder.of_type(ResponseReceived)] == ["second-reply"]
    assert recorder.of_type(ToolCallRequested) == []
    await session.aclose()


@pytest.mark.asyncio
async def test_tool_detection_belongs_to_each_queued_turn(bus, recorder) -> None:
    def generate(payload: dict[str, Any]) -> httpx.Response:
        return _generate_reply(UNWRAPPED_CALL if payload["prompt"] == "first" else "plain answer")

    session = _session(FakeBackend(generate=generate), bus)

    session.send_prompt_with_tools("first", [CALCULATOR])
    session.send_prompt("second")
    await session.join()

    calls = recorder.of_type(ToolCallRequested)
    assert [(call.tool_name, call.arguments) for call in calls] == [
        ("calculator", {"operation": "add", "a": 1, "b": 2})
    ]
    assert [event.text for event in recorder.of_type(ResponseReceived)] == ["plain answer"]
    await session.aclose()


@pytest.mark.asyncio
async def test_unknown_dialect_falls_back_to_generate(bus, recorder) -> None:
    backend = FakeBackend(show=500, generate=lambda payload: _generate_reply("fine"))
    session = _session(backend, bus)

    session.send_prompt_with_tools("Hi", [{"name": "calculator", "parameters": {}}])
    await session.join()

    assert session.dialect is Dialect.UNKNOWN
    assert backend.paths() == ["/api/show", "/api/generate"]
    assert [event.text for event in recorder.of_type(ResponseReceived)] == ["fine"]
    assert session.history == ()
    await session.aclose()


@pytest.mark.asyncio
async def test_transient_failures_retry_with_backoff(bus, recorder, sleeper) -> None:
    attempts: list[int] = []

    def generate(payload: dict[str, Any]) -> httpx.Response:
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(503, text="loading")
        return _generate_reply("recovered")

    backend = FakeBackend(generate=generate)
    session = _session(backend, bus, sleeper=sleeper)

    session.send_prompt("Hi")
    await session.join()

    assert len(attempts) == 3
    retries = recorder.of_type(RetryAttempt)
    assert [(event.attempt, event.max_attempts, event.delay) for event in retries] == [(1, 3, 1.0), (2, 3, 2.0)]
    assert sleeper.delays == [1.0, 2.0]
    assert [event.text for event in recorder.of_type(ResponseReceived)] == ["recovered"]
    assert [event.token for event in recorder.of_type(TokenReceived)] == ["recovered"]
    await session.aclose()


@pytest.mark.asyncio
async def test_terminal_status_is_not_retried(bus, recorder, sleeper) -> None:
    backend = FakeBackend(generate=lambda payload: httpx.Response(400, json={"error": "bad"}))
    session = _session(backend, bus, sleeper=sleeper)

    session.send_prompt("Hi")
    await session.join()

    assert backend.paths().count("/api/generate") == 1
    errors = recorder.of_type(ErrorOccurred)
    assert [error.message for error in errors] == ["Backend returned HTTP 400"]
    assert errors[0].category == ErrorCategory.TERMINAL_NETWORK
    assert sleeper.delays == []
    await session.aclose()


@pytest.mark.asyncio
async def test_exhausted_retries_publish_transient_error(bus, recorder, sleeper) -> None:
    def generate(payload: dict[str, Any]) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    backend = FakeBackend(generate=generate)
    session = _session(backend, bus, sleeper=sleeper, max_retries=2)

    session.send_prompt("Hi")
    await session.join()

    assert backend.paths().count("/api/generate") == 3
    errors = recorder.of_type(ErrorOccurred)
    assert len(errors) == 1
    assert errors[0].category == ErrorCategory.TRANSIENT_NETWORK
    assert len(recorder.of_type(RetryAttempt)) == 2
    await session.aclose()


@pytest.mark.asyncio
async def test_backend_error_field_is_a_protocol_error(bus, recorder, sleeper) -> None:
    backend = FakeBackend(generate=lambda payload: httpx.Response(200, content=ndjson({"error": "model not loaded"})))
    session = _session(backend, bus, sleeper=sleeper)

    session.send_prompt("Hi")
    await session.join()

    errors = recorder.of_type(ErrorOccurred)
    assert [error.message for error in errors] == ["Backend error: model not loaded"]
    assert errors[0].category == ErrorCategory.PROTOCOL
    assert sleeper.delays == []
    await session.aclose()


@pytest.mark.asyncio
async def test_api_key_is_sent_as_bearer_token(bus) -> None:
    backend = FakeBackend(generate=lambda payload: _generate_reply("ok"))
    session = _session(backend, bus, api_key="sk-test")

    session.send_prompt("Hi")
    await session.join()

    assert all(request.headers["Authorization"] == "Bearer sk-test" for request in backend.requests)
    await session.aclose()


@pytest.mark.asyncio
async def test_simple_tool_results_are_phrased_locally(bus, recorder) -> None:
    backend = FakeBackend(show=NATIVE_INFO)
    session = _session(backend, bus)
    await session.detect_capabilities()

    session.send_tool_results([ToolCallResult("calculator", {"result": 5.0, "operation": "add", "a": 2.0, "b": 3.0})])
    await session.join()

    assert [event.text for event in recorder.of_type(ResponseReceived)] == ["The answer is 5."]
    assert backend.paths() == ["/api/show"]
    await session.aclose()


@pytest.mark.asyncio
async def test_other_tool_results_go_back_to_native_model(bus, recorder) -> None:
    backend = FakeBackend(show=NATIVE_INFO, chat=lambda payload: _chat_reply("Oslo is 12C."))
    session = _session(backend, bus)
    await session.detect_capabilities()

    session.send_tool_results([{"tool_name": "weather", "result": {"temp": 12}, "call_id": "c1"}])
    await session.join()

    message = backend.payloads("/api/chat")[0]["messages"][-1]
    assert message["role"] == "user"
    assert message["content"].startswith("Here are the tool call results.")
    assert 'Tool: weather\nResult: {"temp":12}' in message["content"]
    assert [event.text for event in recorder.of_type(ResponseReceived)] == ["Oslo is 12C."]
    assert session.history[0].content == message["content"]
    assert session.history[-1].content == "Oslo is 12C."
    await session.aclose()


@pytest.mark.asyncio
async def test_other_tool_results_without_native_model_are_formatted(bus, recorder) -> None:
    backend = FakeBackend()
    session = _session(backend, bus)
    await session.detect_capabilities()

    session.send_tool_results([ToolCallResult("weather", {"temp": 12})])
    await session.join()

    assert [event.text for event in recorder.of_type(ResponseReceived)] == ['Tool result:\n{\n    "temp": 12\n}']
    await session.aclose()


@pytest.mark.asyncio
async def test_set_model_triggers_new_detection(bus, recorder) -> None:
    backend = FakeBackend(generate=lambda payload: _generate_reply(payload["model"]))
    session = _session(backend, bus)
    await session.detect_capabilities()

    session.set_model("mistral")
    assert session.dialect is None
    session.send_prompt("Hi")
    await session.join()

    shows = backend.payloads("/api/show")
    assert [payload["name"] for payload in shows] == ["llama3", "mistral"]
    assert [event.text for event in recorder.of_type(ResponseReceived)] == ["mistral"]
    await session.aclose()


@pytest.mark.asyncio
async def test_clear_history(bus) -> None:
    backend = FakeBackend(show=NATIVE_INFO, chat=lambda payload: _chat_reply("ok"))
    session = _session(backend, bus)
    session.send_prompt_with_tools("Hi", [{"name": "t", "parameters": {}}])
    await session.join()
    assert len(session.history) == 2

    session.clear_history()

    assert session.history == ()
    await session.aclose()


class TestFormatToolResult:
    def test_datetime_variants(self) -> None:
        assert format_tool_result(ToolCallResult("datetime", {"datetime": "2024-05-01T10:00:00"})) == (
            "The current date and time is 2024-05-01T10:00:00."
        )
        assert format_tool_result(ToolCallResult("datetime", {"timestamp": 1714557600000})) == (
            "The current timestamp is 1714557600000."
        )
        assert format_tool_result(
            ToolCallResult("datetime", {"date": "Wednesday, May 1, 2024", "time": "10:00:00 AM", "timezone": "UTC"})
        ) == "It's currently 10:00:00 AM on Wednesday, May 1, 2024 (UTC)."
        assert format_tool_result(ToolCallResult("datetime", {"date": "2024-05-01", "time": "10:00:00"})) == (
            "It's currently 10:00:00 on 2024-05-01."
        )

    def test_calculator_variants(self) -> None:
        assert format_tool_result(ToolCallResult("calculator", {"result": 2.5})) == "The answer is 2.5."
        assert format_tool_result(ToolCallResult("calculator", {"error": "Division by zero"})) == (
            "The calculation failed: Division by zero."
        )
