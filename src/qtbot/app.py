"""Composition root: builds the agent runtime from persisted settings."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import httpx

from .ai.client import ClientSettings, SessionClient
from .ai.events import EventBus
from .ai.memory.retrieval import RetrievalEngine, RetrievalSettings
from .ai.orchestration.controller import ConversationController
from .ai.tools.builtin import register_builtin_tools
from .ai.tools.dispatcher import ToolDispatcher
from .ai.tools.registry import ToolRegistry
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Container returned by :func:`build_runtime`."""

    settings: Settings
    bus: EventBus
    http_client: httpx.AsyncClient
    registry: ToolRegistry
    dispatcher: ToolDispatcher
    session: SessionClient
    retrieval: RetrievalEngine
    controller: ConversationController

    async def discover_servers(self) -> dict[str, int]:
        """Register tools from every enabled MCP server in the settings."""

        return await self.dispatcher.discovery.discover_configured(self.settings.mcp_servers)

    async def aclose(self) -> None:
        """Release background tasks and network resources."""

        self.controller.close()
        results = await asyncio.gather(
            self.session.aclose(),
            self.dispatcher.aclose(),
            self.retrieval.aclose(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                _LOGGER.debug("Runtime shutdown step failed: %s", result)
        await self.http_client.aclose()


def configure_logging(debug: bool = False, *, force: bool = False, log_dir: Path | str | None = None) -> Path:
    """Configure structured logging for the runtime."""

    level = logging.DEBUG if debug else logging.INFO
    path = logging_utils.setup_logging(level, log_dir=log_dir, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))
    return path


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_runtime(
    settings: Settings | None = None,
    *,
    store: SettingsStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    configure_logs: bool = True,
) -> Runtime:
    """Wire the bus, tools, session client, retrieval engine and controller."""

    if configure_logs:
        configure_logging(_env_flag("QTBOT_DEBUG_LOGGING"))
    if settings is None:
        settings = load_settings(store=store)
    if configure_logs and settings.debug_logging:
        configure_logging(True, force=True)

    _LOGGER.info(
        "Building runtime: model=%s api_url=%s api_key=%s",
        settings.model,
        settings.api_url,
        redact_secret(settings.api_key),
    )
    client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(settings.request_timeout))
    bus = EventBus()

    registry = ToolRegistry()
    register_builtin_tools(registry)
    dispatcher = ToolDispatcher(
        registry,
        bus=bus,
        client=client,
        discovery_timeout=settings.discovery_timeout,
    )
    session = SessionClient(ClientSettings.from_settings(settings), bus=bus, client=client)
    retrieval = RetrievalEngine(RetrievalSettings.from_settings(settings), bus=bus, client=client)
    controller = ConversationController(
        session=session,
        dispatcher=dispatcher,
        retrieval=retrieval,
        rag_enabled=settings.rag_enabled,
        rag_top_k=settings.rag_top_k,
    )
    return Runtime(
        settings=settings,
        bus=bus,
        http_client=client,
        registry=registry,
        dispatcher=dispatcher,
        session=session,
        retrieval=retrieval,
        controller=controller,
    )


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


__all__ = ["Runtime", "build_runtime", "configure_logging", "load_settings"]
