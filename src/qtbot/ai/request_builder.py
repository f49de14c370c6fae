"""Payload builders for the generate and chat endpoints, plus tool-schema conversion."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

import httpx

from .ai_types import Message, Role

__all__ = [
    "GenerationOptions",
    "RequestFormatter",
    "backend_endpoint",
    "convert_tool_schema",
    "to_native_tools",
    "describe_tools_for_prompt",
]

_TOOL_INSTRUCTIONS_HEADER = (
    "\n\nAVAILABLE TOOLS:\n"
    "You have access to the following tools to help answer questions:\n\n"
)
_TOOL_INSTRUCTIONS_FOOTER = (
    "\nTo use a tool, respond with JSON in this format:\n"
    '{"tool_call": {"name": "tool_name", "parameters": {}}}\n\n'
    'Or just: {"name": "tool_name", "parameters": {}}\n\n'
    "If you don't need a tool, respond normally.\n\n"
)


@dataclass(slots=True, frozen=True)
class GenerationOptions:
    """Sampling overrides; ``None`` means the backend default is used."""

    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    num_ctx: int | None = None
    num_predict: int | None = None

    def apply(self, payload: dict[str, Any]) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.temperature is not None:
            options["temperature"] = self.temperature
        if self.top_p is not None:
            options["top_p"] = self.top_p
        if self.top_k is not None:
            options["top_k"] = self.top_k
        if self.num_ctx is not None:
            options["num_ctx"] = self.num_ctx
        if options:
            payload["options"] = options
        if self.num_predict is not None:
            payload["num_predict"] = self.num_predict
        return payload


def backend_endpoint(api_url: str, path: str) -> str:
    """Return ``scheme://host[:port]{path}`` derived from the configured generate URL."""

    url = httpx.URL(api_url)
    base = f"{url.scheme}://{url.host}"
    if url.port:
        base += f":{url.port}"
    return base + path


def convert_tool_schema(parameters: Mapping[str, Any] | None) -> dict[str, Any]:
    """Turn ``{"param": "type: description"}`` into a JSON-Schema object.

    Parameters already expressed as JSON-Schema (a top-level ``type`` key) are
    returned unchanged.
    """

    if not parameters:
        return {"type": "object", "properties": {}, "required": []}
    if "type" in parameters:
        return dict(parameters)

    properties: dict[str, Any] = {}
    for key, spec in parameters.items():
        if isinstance(spec, Mapping):
            properties[key] = dict(spec)
            continue
        text = str(spec)
        type_token, sep, description = text.partition(":")
        if not sep:
            properties[key] = {"type": "string", "description": text}
            continue
        properties[key] = {
            "type": _json_type(type_token),
            "description": description.strip(),
        }
    return {"type": "object", "properties": properties, "required": []}


def _json_type(token: str) -> str:
    lowered = token.strip().lower()
    if "string" in lowered:
        return "string"
    if "number" in lowered or "int" in lowered or "float" in lowered or "double" in lowered:
        return "number"
    if "bool" in lowered:
        return "boolean"
    return "string"


def to_native_tools(tools: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Wrap tool descriptions in the ``{"type": "function", "function": ...}`` envelope."""

    native: list[dict[str, Any]] = []
    for tool in tools:
        if "type" in tool and "function" in tool:
            native.append(dict(tool))
            continue
        native.append(
            {
                "type": "function",
                "function": {
                    "name": tool.get("name", ""),
                    "description": tool.get("description", ""),
                    "parameters": convert_tool_schema(tool.get("parameters")),
                },
            }
        )
    return native


def describe_tools_for_prompt(tools: Iterable[Mapping[str, Any]]) -> str:
    """Render the tool catalogue and call convention appended to the system prompt."""

    parts = [_TOOL_INSTRUCTIONS_HEADER]
    for tool in tools:
        params = json.dumps(tool.get("parameters") or {}, separators=(",", ":"), ensure_ascii=False)
        parts.append(f"Tool: {tool.get('name', '')}\n")
        parts.append(f"Description: {tool.get('description', '')}\n")
        parts.append(f"Parameters: {params}\n\n")
    parts.append(_TOOL_INSTRUCTIONS_FOOTER)
    return "".join(parts)


class RequestFormatter:
    """Builds the three request bodies understood by the backend."""

    def __init__(
        self,
        *,
        model: str,
        system_prompt: str = "",
        options: GenerationOptions | None = None,
    ) -> None:
        self.model = model
        self.system_prompt = system_prompt
        self.options = options or GenerationOptions()

    def build_generate_request(self, prompt: str) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": self.model, "prompt": prompt, "stream": True}
        if self.system_prompt:
            payload["system"] = self.system_prompt
        return self.options.apply(payload)

    def build_prompt_tool_request(
        self, prompt: str, tools: Sequence[Mapping[str, Any]]
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "system": self.system_prompt + describe_tools_for_prompt(tools),
            "stream": True,
        }
        return self.options.apply(payload)

    def build_native_tool_request(
        self,
        prompt: str,
        tools: Sequence[Mapping[str, Any]],
        history: Sequence[Message],
    ) -> dict[str, Any]:
        """Chat request: system prompt, the (already pruned) history, then the user turn."""

        messages = [*history, Message(Role.USER, prompt)]
        payload = self.build_chat_request(messages)
        if tools:
            payload["tools"] = to_native_tools(tools)
        return payload

    def build_chat_request(self, messages: Sequence[Message]) -> dict[str, Any]:
        entries: list[dict[str, Any]] = []
        if self.system_prompt:
            entries.append(Message(Role.SYSTEM, self.system_prompt).to_payload())
        entries.extend(message.to_payload() for message in messages)
        payload: dict[str, Any] = {"model": self.model, "stream": True, "messages": entries}
        return self.options.apply(payload)
