"""Session client, tool dispatch and retrieval for the agent runtime."""

from .client import ClientSettings, SessionClient
from .events import EventBus

__all__ = ["ClientSettings", "EventBus", "SessionClient"]
