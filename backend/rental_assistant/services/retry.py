"""
Retry policy for chat-completion calls.

Tenacity-based exponential backoff that honours provider ``Retry-After``
guidance. Retries cover:
- Timeouts
- Rate limiting (``RateLimited``)
- Server errors (5xx) and connection failures

Client errors (4xx other than 429) fail immediately.

Example:
    >>> policy = create_generation_retry_policy(max_retries=2)
    >>> async for attempt in policy:
    ...     with attempt:
    ...         result = await llm.chat_complete(messages)
"""

import logging
from typing import Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from ..errors import GenerationFailure, RateLimited

logger = logging.getLogger(__name__)


def is_retryable(exc: BaseException) -> bool:
    """Whether a generation error is worth another attempt."""
    if isinstance(exc, RateLimited):
        return True
    if isinstance(exc, GenerationFailure):
        return not exc.is_client_error
    return False


class _RetryAfterOrBackoff(wait_base):
    """Wait strategy that honours Retry-After before falling back to backoff."""

    def __init__(self, fallback_wait: wait_base, max_delay_seconds: float) -> None:
        self._fallback_wait = fallback_wait
        self._max_delay_seconds = max_delay_seconds

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self._retry_after_delay(retry_state)
        if delay is not None:
            return min(delay, float(self._max_delay_seconds))
        return float(self._fallback_wait(retry_state))

    @staticmethod
    def _retry_after_delay(retry_state: RetryCallState) -> Optional[float]:
        outcome = retry_state.outcome
        if outcome is None:
            return None
        exc = outcome.exception()
        if isinstance(exc, RateLimited) and exc.retry_after is not None:
            return max(0.0, exc.retry_after)
        return None


def create_generation_retry_policy(
    max_retries: int = 2,
    backoff_seconds: float = 0.5,
    max_backoff_seconds: float = 4.0,
) -> AsyncRetrying:
    """
    Create the Tenacity policy wrapped around chat-completion calls.

    Args:
        max_retries: Retries after the first attempt
        backoff_seconds: Initial backoff; doubles per attempt
        max_backoff_seconds: Cap for any single wait, Retry-After included

    Returns:
        Configured AsyncRetrying; the last error is re-raised when exhausted
    """
    fallback = wait_exponential(multiplier=backoff_seconds, min=backoff_seconds, max=max_backoff_seconds)

    return AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=_RetryAfterOrBackoff(fallback, max_backoff_seconds),
        retry=retry_if_exception(is_retryable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
