"""
Backoff for SQLite write contention

Several actors completing quotations at the same moment all write to the
same database file. "database is locked" and "database is busy" go away on
their own; every other OperationalError (missing table, disk I/O) is a real
failure and is raised at once.
"""

import sqlite3
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from procurement_flow.kernel.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def is_lock_contention(error: BaseException) -> bool:
    if not isinstance(error, sqlite3.OperationalError):
        return False
    message = str(error).lower()
    return "locked" in message or "busy" in message


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "SQLite write contention, backing off",
        function=getattr(retry_state.fn, "__name__", None),
        attempt=retry_state.attempt_number,
        error=str(error),
    )


def retry_on_sqlite_lock(
    max_attempts: int = 3,
    min_wait_ms: int = 100,
    max_wait_ms: int = 1000,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry a storage write while the database file is locked by another writer

    Example:
        @retry_on_sqlite_lock()
        def upsert(self, object_type, persistence_id, data): ...
    """
    return retry(
        retry=retry_if_exception(is_lock_contention),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(min=min_wait_ms / 1000.0, max=max_wait_ms / 1000.0),
        before_sleep=_log_retry,
        reraise=True,
    )
