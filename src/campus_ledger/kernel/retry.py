"""
Retry logic with exponential backoff for transient failures.

Two kinds of transient failure show up in Campus Ledger:

- SQLite lock contention ("database is locked") - retried by a decorator
  around the raw store calls.
- Optimistic write conflicts - a version precondition failed because another
  writer got there first. The whole read-decide-write cycle is retried with
  randomized exponential backoff, and once the attempt budget is spent the
  conflict becomes a ConcurrencyExhaustedError.
"""

import sqlite3
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

from campus_ledger.kernel.errors import ConcurrencyExhaustedError, WriteConflict
from campus_ledger.kernel.logging import get_logger
from campus_ledger.kernel.metrics import write_conflicts_total

logger = get_logger(__name__)

T = TypeVar("T")


def retry_on_sqlite_lock(
    max_attempts: int = 3,
    min_wait_ms: int = 100,
    max_wait_ms: int = 1000,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator for SQLite lock contention (OperationalError).

    SQLite uses file-based locking and can encounter "database is locked"
    errors under concurrent access. This decorator retries with exponential
    backoff to handle transient locking issues.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        min_wait_ms: Minimum wait time in milliseconds (default: 100)
        max_wait_ms: Maximum wait time in milliseconds (default: 1000)

    Returns:
        Decorated function that retries on sqlite3.OperationalError
    """
    return retry(
        retry=retry_if_exception_type(sqlite3.OperationalError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=min_wait_ms / 1000.0,
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=lambda retry_state: logger.warning(
            "SQLite lock detected, retrying",
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
        reraise=True,
    )


def _log_conflict(operation: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        collection = getattr(exc, "collection", "unknown")
        write_conflicts_total.labels(operation=operation, collection=collection).inc()
        logger.debug(
            "Write conflict, retrying",
            operation=operation,
            attempt=retry_state.attempt_number,
            conflict=str(exc),
        )

    return before_sleep


def run_with_conflict_retry(
    fn: Callable[[], T],
    *,
    operation: str,
    max_attempts: int = 5,
    min_wait_ms: int = 5,
    max_wait_ms: int = 200,
) -> T:
    """
    Run a read-decide-write cycle, retrying on optimistic write conflicts.

    `fn` must re-read everything it depends on each time it is called, since
    a WriteConflict means the previous read is stale.

    Args:
        fn: Zero-argument callable performing one full attempt
        operation: Operation name for logs and metrics
        max_attempts: Attempt budget before giving up
        min_wait_ms: Lower bound of the randomized backoff window
        max_wait_ms: Upper bound of the randomized backoff window

    Returns:
        Whatever `fn` returns on its first non-conflicting attempt

    Raises:
        ConcurrencyExhaustedError: Every attempt hit a WriteConflict
    """
    retrying = Retrying(
        retry=retry_if_exception_type(WriteConflict),
        stop=stop_after_attempt(max_attempts),
        wait=wait_random_exponential(
            multiplier=min_wait_ms / 1000.0,
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=_log_conflict(operation),
    )
    try:
        return retrying(fn)
    except RetryError as exc:
        write_conflicts_total.labels(
            operation=operation,
            collection=getattr(exc.last_attempt.exception(), "collection", "unknown"),
        ).inc()
        logger.error(
            "Write conflicts exhausted retry budget",
            operation=operation,
            attempts=max_attempts,
        )
        raise ConcurrencyExhaustedError(operation, max_attempts) from exc.last_attempt.exception()
