"""Exception hierarchy for backend and retrieval failures."""

from __future__ import annotations

__all__ = [
    "ErrorCategory",
    "ChatCoreError",
    "TransientNetworkError",
    "TerminalNetworkError",
    "ProtocolError",
    "RetrievalError",
    "EmbeddingDimensionError",
]


class ErrorCategory:
    """Constants describing how a failure should be handled."""

    TRANSIENT_NETWORK = "transient_network"
    TERMINAL_NETWORK = "terminal_network"
    PROTOCOL = "protocol"
    RETRIEVAL = "retrieval"
    TOOL = "tool"
    CONFIGURATION = "configuration"


class ChatCoreError(Exception):
    """Base class for runtime errors surfaced to the host application."""

    category: str = ErrorCategory.TERMINAL_NETWORK

    def __init__(self, message: str, *, category: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category

    def __str__(self) -> str:
        return self.message


class TransientNetworkError(ChatCoreError):
    """Network failure worth retrying (refused, timeout, remote closed...)."""

    category = ErrorCategory.TRANSIENT_NETWORK


class TerminalNetworkError(ChatCoreError):
    """Network failure that will not improve on resend."""

    category = ErrorCategory.TERMINAL_NETWORK

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(ChatCoreError):
    """Backend replied with malformed JSON or an explicit error field."""

    category = ErrorCategory.PROTOCOL


class RetrievalError(ChatCoreError):
    """Ingestion or query could not be served by the retrieval engine."""

    category = ErrorCategory.RETRIEVAL


class EmbeddingDimensionError(RetrievalError):
    """An embedding's length disagrees with the dimensionality fixed for the session."""

    category = ErrorCategory.CONFIGURATION

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Embedding dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual
