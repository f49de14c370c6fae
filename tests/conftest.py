"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from qtbot.ai.events import EventBus

from tests.helpers import EventRecorder, SleepRecorder


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()
