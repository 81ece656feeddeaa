"""
Retry logic with exponential backoff for transient failures.

Two concerns share the same tenacity machinery:
- SQLite lock contention on ledger writes ("database is locked")
- Outbound notification delivery, bounded by attempts and a total deadline
"""

import sqlite3
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from public_works_ledger.kernel.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def retry_on_sqlite_lock(
    max_attempts: int = 3,
    min_wait_ms: int = 100,
    max_wait_ms: int = 1000,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator for SQLite lock contention (OperationalError).

    Every ledger mutation takes a write lock with BEGIN IMMEDIATE, so two
    writers racing on the same file can see "database is locked". The whole
    transaction is retried; nothing was committed by the failed attempt.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        min_wait_ms: Minimum wait time in milliseconds (default: 100)
        max_wait_ms: Maximum wait time in milliseconds (default: 1000)

    Example:
        @retry_on_sqlite_lock()
        def insert_expense(...):
            ...
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


def retry_notification(
    timeout_seconds: float = 5.0,
    max_attempts: int = 3,
    min_wait_ms: int = 200,
    max_wait_ms: int = 2000,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator for notifier delivery.

    Stops at whichever comes first: `max_attempts` tries or `timeout_seconds`
    since the first try. The last exception is re-raised so the dispatcher
    can log and count it.

    Args:
        timeout_seconds: Total time budget for all attempts
        max_attempts: Maximum number of attempts
        min_wait_ms: Minimum backoff in milliseconds
        max_wait_ms: Maximum backoff in milliseconds
    """
    return retry(
        retry=retry_if_exception_type(Exception),
        stop=stop_after_attempt(max_attempts) | stop_after_delay(timeout_seconds),
        wait=wait_exponential(
            multiplier=1,
            min=min_wait_ms / 1000.0,
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=lambda retry_state: logger.warning(
            "Notification delivery failed, retrying",
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
        reraise=True,
    )
