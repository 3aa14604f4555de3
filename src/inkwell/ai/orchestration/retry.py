"""Bounded retries with backoff for rate-limited backend calls."""

from __future__ import annotations

import asyncio
import logging
import math
import re
from typing import Any, Awaitable, Callable, TypeVar

from openai import RateLimitError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from ..errors import StreamProtocolError, TransientBackendError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_RATE_LIMIT_CODES = frozenset({"rate_limit_exceeded", "rate_limit_error"})
_RATE_LIMIT_PHRASES = ("rate limit reached", "rate limit exceeded", "too many requests")
_WAIT_MS_RE = re.compile(r"try again in\s+(\d+(?:\.\d+)?)\s*ms\b", re.IGNORECASE)
_WAIT_SECONDS_RE = re.compile(r"try again in\s+(\d+(?:\.\d+)?)\s*s\b", re.IGNORECASE)
_SAFETY_MARGIN = 1.1
_FIXED_PAD_MS = 100


def is_transient_error(error: BaseException) -> bool:
    """Return whether ``error`` signals rate limiting and is worth retrying."""

    if isinstance(error, StreamProtocolError):
        return False
    if isinstance(error, (TransientBackendError, RateLimitError)):
        return True
    for attribute in ("status_code", "status"):
        if getattr(error, attribute, None) == 429:
            return True
    for attribute in ("code", "type"):
        value = getattr(error, attribute, None)
        if isinstance(value, str) and value.lower() in _RATE_LIMIT_CODES:
            return True
    message = str(getattr(error, "message", None) or error).lower()
    return any(phrase in message for phrase in _RATE_LIMIT_PHRASES)


def explicit_wait_ms(error: BaseException) -> int | None:
    """Extract a server-suggested wait such as ``try again in 718ms`` or ``2.5s``."""

    message = str(getattr(error, "message", None) or error)
    match = _WAIT_MS_RE.search(message)
    if match:
        return math.ceil(float(match.group(1)))
    match = _WAIT_SECONDS_RE.search(message)
    if match:
        return math.ceil(float(match.group(1)) * 1000)
    return None


class RetryPolicy:
    """Retry a fallible coroutine on transient failures with backoff.

    ``fn`` is invoked at most ``max_retries + 1`` times. Non-transient errors
    propagate from the first attempt without any delay. Once retries are
    exhausted the last underlying error propagates unchanged.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.max_retries = max(0, int(max_retries))
        self.initial_delay = max(0.0, float(initial_delay))
        self._sleep = sleep or asyncio.sleep

    def compute_delay(self, error: BaseException, attempt: int) -> float:
        """Return the delay in seconds before retry number ``attempt`` (0-based)."""

        waited = explicit_wait_ms(error)
        if waited is not None:
            return (math.ceil(waited * _SAFETY_MARGIN) + _FIXED_PAD_MS) / 1000.0
        return self.initial_delay * (2 ** attempt)

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            sleep=self._sleep,
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(is_transient_error),
            before_sleep=self._log_retry,
        )
        async for attempt in retrying:
            with attempt:
                result = await fn()
        return result

    def _wait(self, retry_state: RetryCallState) -> float:
        error = _outcome_error(retry_state)
        if error is None:
            return 0.0
        return self.compute_delay(error, retry_state.attempt_number - 1)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        LOGGER.warning(
            "Rate limit hit, retrying in %.0fms (attempt %s/%s): %s",
            delay * 1000,
            retry_state.attempt_number,
            self.max_retries,
            _outcome_error(retry_state),
        )


def _outcome_error(retry_state: RetryCallState) -> BaseException | None:
    outcome = retry_state.outcome
    if outcome is None or not outcome.failed:
        return None
    return outcome.exception()


__all__ = ["RetryPolicy", "is_transient_error", "explicit_wait_ms"]
