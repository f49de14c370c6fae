"""Failure classification and exponential-backoff resend for backend requests."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import ChatCoreError, ProtocolError, TerminalNetworkError, TransientNetworkError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
RetryNotifier = Callable[[int, int, float], None]

# Upstream gateways report a backend that is restarting or overloaded this way.
_TRANSIENT_STATUS_CODES = frozenset({502, 503, 504})


def classify_failure(exc: BaseException) -> ChatCoreError:
    """Map a transport exception onto the transient/terminal/protocol taxonomy."""

    if isinstance(exc, ChatCoreError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        message = f"Backend returned HTTP {status}"
        if status in _TRANSIENT_STATUS_CODES:
            return TransientNetworkError(message)
        return TerminalNetworkError(message, status_code=status)
    if isinstance(exc, httpx.TimeoutException) or isinstance(exc, asyncio.TimeoutError):
        return TransientNetworkError("Request timed out")
    if isinstance(exc, httpx.ConnectError):
        return TransientNetworkError(f"Connection failed: {exc}")
    if isinstance(exc, httpx.RemoteProtocolError):
        return TransientNetworkError(f"Remote host closed the connection: {exc}")
    if isinstance(exc, (httpx.NetworkError, httpx.ProxyError)):
        return TransientNetworkError(f"Network error: {exc}")
    if isinstance(exc, httpx.DecodingError):
        return ProtocolError(f"Could not decode backend reply: {exc}")
    if isinstance(exc, (httpx.UnsupportedProtocol, httpx.InvalidURL)):
        return TerminalNetworkError(f"Invalid backend URL: {exc}")
    if isinstance(exc, httpx.HTTPError):
        return TerminalNetworkError(str(exc) or type(exc).__name__)
    return TerminalNetworkError(f"{type(exc).__name__}: {exc}")


def is_retryable(exc: BaseException) -> bool:
    return isinstance(classify_failure(exc), TransientNetworkError)


class RetryController:
    """Resends a request after ``base * 2^(attempt-1)`` seconds on transient failures."""

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.max_retries = max(0, int(max_retries))
        self.base_delay = max(0.0, float(base_delay))
        self._sleep = sleep or asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (1-based)."""

        return self.base_delay * (2 ** (max(1, attempt) - 1))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        on_retry: RetryNotifier | None = None,
    ) -> T:
        """Await *operation* until it succeeds, fails terminally, or retries run out.

        The operation raises :class:`TransientNetworkError` for resendable
        failures; anything else propagates immediately.
        """

        def _before_sleep(state: RetryCallState) -> None:
            attempt = state.attempt_number
            delay = state.next_action.sleep if state.next_action else self.delay_for(attempt)
            exc = state.outcome.exception() if state.outcome else None
            LOGGER.warning(
                "Retrying request (attempt %d/%d) in %.1fs after: %s",
                attempt,
                self.max_retries,
                delay,
                exc,
            )
            if on_retry is not None:
                try:
                    on_retry(attempt, self.max_retries, delay)
                except Exception:
                    LOGGER.debug("Retry notifier failed", exc_info=True)

        retrying = AsyncRetrying(
            sleep=self._sleep,
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.base_delay),
            retry=retry_if_exception_type(TransientNetworkError),
            before_sleep=_before_sleep,
        )
        async for attempt in retrying:
            with attempt:
                return await operation()
        raise RuntimeError("retry loop exited without a result")  # pragma: no cover


__all__ = ["RetryController", "classify_failure", "is_retryable"]
