"""Turn-level orchestration: tool call parsing and the conversation controller."""

from .tool_call_parser import DetectedToolCall, detect_prompt_tool_call

__all__ = ["DetectedToolCall", "detect_prompt_tool_call"]
