"""Tests for the heuristic token estimator."""

from __future__ import annotations

from qtbot.ai.tokens import HeuristicTokenCounter, estimate_tokens


def test_empty_text_costs_nothing() -> None:
    assert estimate_tokens("") == 0


def test_characters_round_up_to_whole_tokens() -> None:
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_whitespace_adds_one_token_per_ten() -> None:
    text = "a " * 10  # 20 chars, 10 spaces
    assert estimate_tokens(text) == 5 + 1


def test_newlines_and_tabs_count_as_whitespace() -> None:
    text = "\n\t" * 5 + "xx"  # 12 chars, 10 whitespace
    assert estimate_tokens(text) == 3 + 1


def test_counter_is_deterministic() -> None:
    counter = HeuristicTokenCounter(model_name="llama3")
    sample = "The quick brown fox jumps over the lazy dog."
    assert counter.count(sample) == counter.estimate(sample) == estimate_tokens(sample)
    assert counter.model_name == "llama3"
