"""
Timeout handling for scheduler passes.

timeout_context uses SIGALRM and therefore only works on the main thread
of a Unix process - the CLI's one-shot `scheduler scan` runs there.
The background scheduler threads cannot receive signals, so they use
ScanWatchdog, a cooperative budget checked between tenders.
"""

import signal
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from typing import Any

from tenderdesk.kernel.logging import get_logger

logger = get_logger(__name__)


class TimeoutError(Exception):
    """Raised when an operation exceeds its timeout."""

    pass


@contextmanager
def timeout_context(seconds: int, operation_name: str = "operation") -> Generator[None, None, None]:
    """
    Raise TimeoutError if the block runs longer than `seconds`.

    Example:
        with timeout_context(SCAN_EXECUTION_TIMEOUT, "deadline_scan"):
            scheduler.run_deadline_scan()
    """

    def _timeout_handler(signum: int, frame: Any) -> None:
        logger.error(
            "Operation exceeded timeout",
            operation=operation_name,
            timeout_seconds=seconds,
        )
        raise TimeoutError(f"{operation_name} exceeded timeout of {seconds} seconds")

    old_handler = signal.signal(signal.SIGALRM, _timeout_handler)
    signal.alarm(seconds)

    try:
        yield
    finally:
        signal.alarm(0)
        signal.signal(signal.SIGALRM, old_handler)


class ScanWatchdog:
    """
    Cooperative time budget for a scan running off the main thread

    The scan asks `expired()` before each tender and stops early when the
    budget is spent. Whatever is left is found again on the next pass,
    since the scan query is driven by state, not by a cursor.
    """

    def __init__(
        self,
        budget_seconds: float,
        operation_name: str = "scan",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.budget_seconds = budget_seconds
        self.operation_name = operation_name
        self._clock = clock
        self._started = clock()
        self._reported = False

    def elapsed(self) -> float:
        return self._clock() - self._started

    def expired(self) -> bool:
        over = self.elapsed() >= self.budget_seconds
        if over and not self._reported:
            self._reported = True
            logger.warning(
                "Scan budget exhausted, deferring remaining tenders",
                operation=self.operation_name,
                budget_seconds=self.budget_seconds,
            )
        return over


SCAN_EXECUTION_TIMEOUT = 30  # seconds


@contextmanager
def scan_execution_timeout(operation_name: str = "deadline_scan") -> Generator[None, None, None]:
    """Main-thread timeout for a one-shot scheduler pass"""
    with timeout_context(SCAN_EXECUTION_TIMEOUT, operation_name):
        yield
