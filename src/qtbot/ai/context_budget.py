"""Context-window budgeting for chat history."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from .ai_types import Message, TokenCounterProtocol
from .tokens import HeuristicTokenCounter

LOGGER = logging.getLogger(__name__)

REPLY_RESERVE_RATIO = 0.2
TOOL_DEFINITION_OVERHEAD = 200
PER_MESSAGE_OVERHEAD = 20


@dataclass(slots=True)
class PruneDecision:
    """Outcome of fitting history into the remaining prompt budget."""

    messages: list[Message] = field(default_factory=list)
    available_tokens: int = 0
    used_tokens: int = 0
    dropped: int = 0

    @property
    def over_budget(self) -> bool:
        return self.available_tokens <= 0


@dataclass(slots=True)
class ContextBudgeter:
    """Keeps the newest history that fits beside the system prompt and current message."""

    context_window: int
    counter: TokenCounterProtocol = field(default_factory=HeuristicTokenCounter)
    last_decision: PruneDecision | None = None

    def available_for_history(self, system_prompt: str, current_message: str) -> int:
        prompt_budget = int(self.context_window * (1.0 - REPLY_RESERVE_RATIO))
        return (
            prompt_budget
            - self.counter.estimate(system_prompt)
            - self.counter.estimate(current_message)
            - TOOL_DEFINITION_OVERHEAD
        )

    def evaluate(
        self,
        history: Sequence[Message],
        *,
        system_prompt: str,
        current_message: str,
    ) -> PruneDecision:
        available = self.available_for_history(system_prompt, current_message)
        if available <= 0:
            LOGGER.warning(
                "Context window (%d tokens) exhausted by system prompt and current message; "
                "sending without history",
                self.context_window,
            )
            decision = PruneDecision(available_tokens=available, dropped=len(history))
            self.last_decision = decision
            return decision

        used = 0
        start = len(history)
        for index in range(len(history) - 1, -1, -1):
            cost = self.counter.estimate(history[index].content) + PER_MESSAGE_OVERHEAD
            if used + cost > available:
                break
            used += cost
            start = index

        kept = list(history[start:])
        decision = PruneDecision(
            messages=kept,
            available_tokens=available,
            used_tokens=used,
            dropped=start,
        )
        if start:
            LOGGER.debug(
                "Pruned %d of %d history message(s) to fit %d/%d tokens",
                start,
                len(history),
                used,
                available,
            )
        self.last_decision = decision
        return decision

    def prune_history(
        self,
        history: Sequence[Message],
        *,
        system_prompt: str,
        current_message: str,
    ) -> list[Message]:
        """Return the contiguous newest suffix of *history* that fits the budget."""

        return self.evaluate(
            history, system_prompt=system_prompt, current_message=current_message
        ).messages


__all__ = [
    "ContextBudgeter",
    "PruneDecision",
    "REPLY_RESERVE_RATIO",
    "TOOL_DEFINITION_OVERHEAD",
    "PER_MESSAGE_OVERHEAD",
]
