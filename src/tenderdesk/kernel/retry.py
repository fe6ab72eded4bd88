"""
Retry logic with exponential backoff for transient failures.

Two kinds of contention show up in tenderdesk:
- SQLite "database is locked" when the scheduler thread and an API
  request write at the same moment.
- VersionConflict when a compare-and-set loses to another writer of the
  same tender. The wrapped function must re-read the tender on every
  attempt, otherwise retrying is pointless.
"""

import sqlite3
from collections.abc import Callable
from typing import Any, TypeVar

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from tenderdesk.kernel.errors import VersionConflict
from tenderdesk.kernel.logging import get_logger
from tenderdesk.kernel.metrics import cas_conflicts_total

logger = get_logger(__name__)

T = TypeVar("T")


def _outcome_error(retry_state: RetryCallState) -> str | None:
    if retry_state.outcome is None:
        return None
    return str(retry_state.outcome.exception())


def retry_on_sqlite_lock(
    max_attempts: int = 3,
    min_wait_ms: int = 100,
    max_wait_ms: int = 1000,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator for SQLite lock contention (OperationalError).

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        min_wait_ms: Minimum backoff in milliseconds
        max_wait_ms: Maximum backoff in milliseconds

    Example:
        @retry_on_sqlite_lock()
        def compare_and_set(self, tender, expected_version):
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
            exception=_outcome_error(retry_state),
        ),
        reraise=True,
    )


def _log_version_conflict(retry_state: RetryCallState) -> None:
    exc: Any = retry_state.outcome.exception() if retry_state.outcome else None
    cas_conflicts_total.inc()
    logger.info(
        "Compare-and-set lost, re-reading tender",
        attempt=retry_state.attempt_number,
        tender_id=getattr(exc, "tender_id", None),
        expected_version=getattr(exc, "expected_version", None),
        actual_version=getattr(exc, "actual_version", None),
    )


def retry_on_version_conflict(
    max_attempts: int = 5,
    max_jitter_ms: int = 20,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry a read-check-write cycle when the compare-and-set loses.

    Only VersionConflict is retried. A TransitionRejected raised by the
    re-check on the next attempt propagates immediately, which is how a
    losing concurrent reveal turns into ALREADY_REVEALED.

    Args:
        max_attempts: Total attempts before the conflict is re-raised
        max_jitter_ms: Random wait between attempts
    """
    return retry(
        retry=retry_if_exception_type(VersionConflict),
        stop=stop_after_attempt(max_attempts),
        wait=wait_random(0, max_jitter_ms / 1000.0),
        before_sleep=_log_version_conflict,
        reraise=True,
    )
