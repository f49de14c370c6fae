"""Heuristic token estimation used for context budgeting."""

from __future__ import annotations

import math

from .ai_types import TokenCounterProtocol

_CHARS_PER_TOKEN = 4
_WHITESPACE_PER_TOKEN = 10


def estimate_tokens(text: str) -> int:
    """Return ``ceil(chars / 4) + floor(whitespace / 10)`` for *text*."""

    if not text:
        return 0
    whitespace = sum(1 for char in text if char.isspace())
    return math.ceil(len(text) / _CHARS_PER_TOKEN) + whitespace // _WHITESPACE_PER_TOKEN


class HeuristicTokenCounter(TokenCounterProtocol):
    """Deterministic counter matching the backend's rough character-to-token ratio."""

    def __init__(self, *, model_name: str | None = None) -> None:
        self.model_name = model_name

    def count(self, text: str) -> int:
        return estimate_tokens(text)

    def estimate(self, text: str) -> int:
        return estimate_tokens(text)


__all__ = ["estimate_tokens", "HeuristicTokenCounter"]
