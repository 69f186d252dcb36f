"""Inline retries for transient fetch errors.

A fetch that times out or loses its connection is retried a small, fixed
number of times with a fixed pause. When attempts run out the last error is
re-raised and the caller's task fails like any other.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from statcrawl.main.exceptions import TransientFetchError
from statcrawl.main.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientFetchError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Transient fetch error, retrying",
        extra={
            "attempt": retry_state.attempt_number,
            "error": str(exc),
            "error_type": type(exc).__name__ if exc else None,
        },
    )


async def fetch_with_retry(
    fetch: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    delay_seconds: float = 2.0,
) -> T:
    """Await ``fetch()`` retrying transient errors up to ``attempts`` times in total."""
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay_seconds),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            return await fetch()
    raise AssertionError("unreachable")  # pragma: no cover
