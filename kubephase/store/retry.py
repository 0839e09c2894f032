"""Bounded optimistic-concurrency retry."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_random

from kubephase.observability.metrics import conflict_retries_total
from kubephase.store.errors import ConflictError

_log = structlog.get_logger(component="store.retry")

T = TypeVar("T")

DEFAULT_ATTEMPTS = 5
_BASE_DELAY_SECONDS = 0.01
_JITTER = 0.1


def _before_sleep(state: RetryCallState) -> None:
    conflict_retries_total.inc()
    exc = state.outcome.exception() if state.outcome is not None else None
    _log.debug("conflict_retry", attempt=state.attempt_number, error=str(exc))


async def retry_on_conflict(
    fn: Callable[[], Awaitable[T]],
    attempts: int = DEFAULT_ATTEMPTS,
    base_delay: float = _BASE_DELAY_SECONDS,
) -> T:
    """Run a read-modify-write *fn*, re-running it after each ConflictError.

    *fn* must re-read the object it writes on every call so that each attempt
    applies its change on top of the latest resourceVersion.

    Raises:
        ConflictError: when every attempt conflicted.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(ConflictError),
        stop=stop_after_attempt(attempts),
        wait=wait_random(base_delay, base_delay * (1 + _JITTER)),
        before_sleep=_before_sleep,
        reraise=True,
    )
    try:
        return await retrying(fn)
    except ConflictError as exc:
        _log.warning("conflict_retries_exhausted", attempts=attempts, error=str(exc))
        raise
