"""Retry-with-backoff for transient SQLite lock contention.

Several short-lived processes share one database file, so a write can
briefly find the file locked even with a busy timeout configured. Those
errors are retried here; every other error propagates unchanged.
"""

from __future__ import annotations

import functools
import logging
import sqlite3
import time
from collections.abc import Callable
from typing import TypeVar

from session_ledger.constants import (
    RETRY_INITIAL_DELAY_SECONDS,
    RETRY_MAX_RETRIES,
    SQLITE_RETRYABLE_ERROR_NAMES,
    SQLITE_RETRYABLE_MESSAGES,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_error(error: BaseException) -> bool:
    """Check whether an exception is a transient SQLite lock error.

    Args:
        error: Exception raised by a storage operation.

    Returns:
        True for busy / busy-recovery / locked conditions.
    """
    if not isinstance(error, sqlite3.OperationalError):
        return False
    # Python 3.11+ exposes the primary result code name
    error_name = getattr(error, "sqlite_errorname", None)
    if error_name in SQLITE_RETRYABLE_ERROR_NAMES:
        return True
    message = str(error).lower()
    return any(fragment in message for fragment in SQLITE_RETRYABLE_MESSAGES)


def retry_with_backoff(
    operation: Callable[[], T],
    max_retries: int = RETRY_MAX_RETRIES,
    initial_delay: float = RETRY_INITIAL_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Execute an operation, retrying transient lock errors.

    The delay doubles after each failed attempt (50ms, 100ms, 200ms with the
    defaults). Sleeping blocks; callers are short-lived processes.

    Args:
        operation: Zero-argument callable performing the storage work.
        max_retries: Retries allowed after the first attempt.
        initial_delay: Delay in seconds before the first retry.
        sleep: Sleep function, injectable for tests.

    Returns:
        Whatever ``operation`` returns.

    Raises:
        sqlite3.Error: The original error when it is not transient or when
            retries are exhausted.
    """
    delay = initial_delay
    for attempt in range(max_retries + 1):
        try:
            return operation()
        except sqlite3.OperationalError as e:
            if not is_retryable_error(e) or attempt >= max_retries:
                if attempt > 0:
                    logger.warning(f"Storage operation failed after {attempt + 1} attempts: {e}")
                raise
            logger.debug(
                f"Transient storage error (attempt {attempt + 1}/{max_retries + 1}), "
                f"retrying in {delay * 1000:.0f}ms: {e}"
            )
            sleep(delay)
            delay *= 2
    # Unreachable: the loop either returns or raises
    raise RuntimeError("retry_with_backoff exited without a result")


def with_retry(func: Callable[..., T]) -> Callable[..., T]:
    """Decorate a store operation so each call runs through :func:`retry_with_backoff`."""

    @functools.wraps(func)
    def wrapper(*args: object, **kwargs: object) -> T:
        return retry_with_backoff(lambda: func(*args, **kwargs))

    return wrapper
