"""Tool call detection for models that answer with JSON in plain text.

Models driven through system-prompt instructions are asked to reply with
``{"tool_call": {"name": ..., "parameters": {...}}}``. In practice they often
drop the wrapper or emit only the arguments, so detection falls back to two
heuristics once the marker is missing.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from ..streaming import new_call_id

__all__ = [
    "TOOL_CALL_MARKER_RE",
    "PARAMETER_MATCH_THRESHOLD",
    "DetectedToolCall",
    "detect_prompt_tool_call",
    "extract_balanced_object",
    "tool_parameter_names",
    "try_parse_json_block",
]

LOGGER = logging.getLogger(__name__)

TOOL_CALL_MARKER_RE = re.compile(r'\{\s?"tool_call"\s*:')

# Known weak point: a JSON reply whose keys merely overlap a tool's parameters
# is treated as a call. Candidate for strict-schema validation.
PARAMETER_MATCH_THRESHOLD = 0.7


@dataclass(slots=True)
class DetectedToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str = field(default_factory=new_call_id)
    strategy: str = "marker"


def detect_prompt_tool_call(
    response: str,
    tools: Sequence[Mapping[str, Any]] = (),
) -> DetectedToolCall | None:
    """Return the tool call embedded in *response*, or ``None`` for a plain answer.

    Strategies, in order: the ``tool_call`` marker, a bare ``{"name", "parameters"}``
    object, then a parameter-name vote against *tools* in registration order.
    """

    if not response:
        return None
    marker = TOOL_CALL_MARKER_RE.search(response)
    if marker is not None:
        return _from_marker(response, marker.start())

    trimmed = response.strip()
    if not (trimmed.startswith("{") and trimmed.endswith("}")):
        return None
    payload = try_parse_json_block(trimmed)
    if payload is None:
        return None

    if "name" in payload and "parameters" in payload:
        name = str(payload.get("name") or "")
        if name:
            LOGGER.warning("Heuristic match: tool call without wrapper for '%s'", name)
            return DetectedToolCall(
                name=name,
                arguments=_as_dict(payload.get("parameters")),
                strategy="unwrapped",
            )

    keys = list(payload)
    for tool in tools:
        names = tool_parameter_names(tool)
        matches = sum(1 for key in keys if key in names)
        if matches > 0 and matches >= len(keys) * PARAMETER_MATCH_THRESHOLD:
            tool_name = str(tool.get("name") or "")
            LOGGER.warning(
                "Heuristic match: malformed tool call for '%s' (matched %d/%d params)",
                tool_name,
                matches,
                len(keys),
            )
            return DetectedToolCall(name=tool_name, arguments=dict(payload), strategy="parameter_match")
    return None


def _from_marker(response: str, start: int) -> DetectedToolCall | None:
    block = extract_balanced_object(response, start)
    if block is None:
        LOGGER.debug("tool_call marker found but the object never closes")
        return None
    payload = try_parse_json_block(block)
    if payload is None:
        return None
    call = payload.get("tool_call")
    if not isinstance(call, Mapping):
        return None
    name = str(call.get("name") or "")
    if not name:
        return None
    LOGGER.info("Tool call detected: %s", name)
    return DetectedToolCall(name=name, arguments=_as_dict(call.get("parameters")))


def extract_balanced_object(text: str, start: int) -> str | None:
    """Return the ``{...}`` starting at *start*, honouring braces inside strings."""

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def tool_parameter_names(tool: Mapping[str, Any]) -> set[str]:
    parameters = tool.get("parameters")
    if not isinstance(parameters, Mapping):
        function = tool.get("function")
        parameters = function.get("parameters") if isinstance(function, Mapping) else None
    if not isinstance(parameters, Mapping):
        return set()
    properties = parameters.get("properties")
    if "type" in parameters and isinstance(properties, Mapping):
        return set(properties)
    return set(parameters)


def try_parse_json_block(text: str) -> dict[str, Any] | None:
    """Attempt to parse text as a JSON object, returning None on failure."""
    if not text:
        return None
    try:
        result = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return result if isinstance(result, dict) else None


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}
