"""Tenacity retry policy for archive jobs, driven by RetryConfig."""

from __future__ import annotations

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig
from .errors import NonRetryableError

logger = structlog.get_logger()


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "job_attempt_failed",
        attempt=retry_state.attempt_number,
        retry_in_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(exc),
    )


def job_retrying(config: RetryConfig) -> AsyncRetrying:
    """Return an :class:`AsyncRetrying` configured from *config*.

    :class:`NonRetryableError` ends the loop on the first attempt; anything
    else is retried up to ``max_attempts`` with exponential backoff, and the
    last exception is re-raised.

    Usage::

        async for attempt in job_retrying(config.retry):
            with attempt:
                await pipeline(uid, attempt.retry_state.attempt_number)
    """
    return AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_not_exception_type(NonRetryableError),
        before_sleep=_log_retry,
        reraise=True,
    )
