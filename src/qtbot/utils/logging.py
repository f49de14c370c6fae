"""Logging setup for the qtbot runtime.

Everything goes to a size-rotated ``qtbot.log`` (``~/.qtbot/logs`` unless
``QTBOT_LOG_DIR`` says otherwise) and, optionally, to stderr. ``QTBOT_LOG_LEVEL``
raises or lowers the level chosen by the caller.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, Mapping

__all__ = ["LOG_FILE_NAME", "setup_logging", "log_payload", "get_log_path"]

LOG_FILE_NAME = "qtbot.log"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
MAX_PAYLOAD_CHARS = 16_000

_DEFAULT_LOG_DIR = Path.home() / ".qtbot" / "logs"
_LOG_DIR_ENV = "QTBOT_LOG_DIR"
_LOG_LEVEL_ENV = "QTBOT_LOG_LEVEL"
# httpcore logs every socket event at DEBUG
_CHATTY_LIBRARIES: tuple[str, ...] = ("asyncio", "httpx", "httpcore")
_LOG_PATH: Path | None = None


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the root handlers once and return the log file path.

    Later calls are no-ops unless *force* is set, which replaces the handlers
    (used when ``debug_logging`` is switched on after settings load).
    """

    global _LOG_PATH
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    level = _level_from_env(level)
    directory = Path(log_dir or os.environ.get(_LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / LOG_FILE_NAME

    handlers = _build_handlers(log_path, console=console, max_bytes=max_bytes, backup_count=backup_count)
    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)

    library_level = max(level, logging.WARNING)
    for name in _CHATTY_LIBRARIES:
        logging.getLogger(name).setLevel(library_level)

    _LOG_PATH = log_path
    return log_path


def log_payload(logger: logging.Logger, label: str, payload: Mapping[str, Any]) -> None:
    """Dump a request body as indented JSON when *logger* is at DEBUG."""

    if not logger.isEnabledFor(logging.DEBUG):
        return
    try:
        text = json.dumps(payload, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        logger.debug("%s (unserializable): %s", label, payload)
        return
    if len(text) > MAX_PAYLOAD_CHARS:
        omitted = len(text) - MAX_PAYLOAD_CHARS
        text = f"{text[:MAX_PAYLOAD_CHARS]}\n... ({omitted} more characters)"
    logger.debug("%s:\n%s", label, text)


def get_log_path() -> Path | None:
    return _LOG_PATH


def _build_handlers(
    log_path: Path, *, console: bool, max_bytes: int, backup_count: int
) -> list[logging.Handler]:
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def _level_from_env(default: int) -> int:
    raw = os.environ.get(_LOG_LEVEL_ENV, "").strip().upper()
    if not raw:
        return default
    value = logging.getLevelName(raw)
    return value if isinstance(value, int) else default
