"""
Deadline Scheduler

Two periodic passes over the store:
- deadline scan (default every minute): tenders in published/locked
  whose deadline has elapsed get their deadline transition, one at a time,
  each in its own compare-and-set.
- stuck-reveal check (default every five minutes): closed-workflow
  tenders sitting in deadline_reached without a reveal produce a
  REVEAL_PENDING notification for their owner. The scheduler never
  reveals anything itself.

Each pass is single-flight: a pass triggered while the previous one is
still running is skipped, not queued. No state lives here between
passes; a restart resumes from whatever the store holds.
"""

import threading
import time
from collections.abc import Callable
from datetime import datetime

from tenderdesk.kernel.bus import REVEAL_PENDING
from tenderdesk.kernel.ids import generate_id
from tenderdesk.kernel.logging import (
    LogOperation,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)
from tenderdesk.kernel.metrics import (
    scan_duration_seconds,
    scan_failures_total,
    scans_total,
    update_status_counts,
)
from tenderdesk.kernel.policy import LifecyclePolicy
from tenderdesk.kernel.tender_store import TenderQuery
from tenderdesk.kernel.timeout import ScanWatchdog
from tenderdesk.tender.lifecycle import LifecycleEngine
from tenderdesk.tender.models import SUBMISSION_STATUSES, TenderStatus, WorkflowType

logger = get_logger(__name__)

DEADLINE_SCAN = "deadline"
REVEAL_CHECK = "reveal_check"


class ScanResult:
    """
    What one scheduler pass did

    Callers are free to ignore it; the CLI prints it and tests assert on it.
    """

    def __init__(self, kind: str, started_at: datetime | None = None, ran: bool = True):
        self.scan_id = generate_id("scan")
        self.kind = kind
        self.started_at = started_at
        self.ran = ran
        self.matched = 0
        self.transitioned: list[str] = []
        self.skipped: list[str] = []
        self.failed: dict[str, str] = {}
        self.notified: list[str] = []
        self.days_refreshed = 0
        self.truncated = False

    @property
    def outcome(self) -> str:
        if not self.ran:
            return "skipped"
        if self.truncated:
            return "truncated"
        return "completed"

    def summary(self) -> str:
        if not self.ran:
            return f"{self.kind} pass skipped: previous pass still running"
        parts = [f"{self.kind} pass {self.scan_id}", f"matched {self.matched}"]
        if self.kind == DEADLINE_SCAN:
            parts.append(f"transitioned {len(self.transitioned)}")
            parts.append(f"skipped {len(self.skipped)}")
            parts.append(f"days refreshed {self.days_refreshed}")
        else:
            parts.append(f"notified {len(self.notified)}")
        if self.failed:
            parts.append(f"failed {len(self.failed)}")
        if self.truncated:
            parts.append("time budget exhausted")
        return " | ".join(parts)


class DeadlineScheduler:
    """
    Runs the deadline scan and the stuck-reveal check

    Call the run_* methods directly for one-shot passes, or start() to run
    both on background daemon threads.
    """

    def __init__(
        self,
        engine: LifecycleEngine,
        policy: LifecyclePolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.policy = policy or engine.policy
        self._clock = clock
        self._scan_lock = threading.Lock()
        self._reveal_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    # ========================================================================
    # Deadline scan
    # ========================================================================

    def run_deadline_scan(self) -> ScanResult:
        """
        Apply every due deadline transition

        Returns immediately with an unrun result if another scan holds
        the guard.
        """
        if not self._scan_lock.acquire(blocking=False):
            scans_total.labels(kind=DEADLINE_SCAN, outcome="skipped").inc()
            logger.warning("Deadline scan already in progress, skipping")
            return ScanResult(DEADLINE_SCAN, ran=False)
        try:
            return self._deadline_scan()
        finally:
            self._scan_lock.release()

    def _deadline_scan(self) -> ScanResult:
        set_correlation_id(generate_correlation_id())
        now = self.engine.time_provider.now()
        result = ScanResult(DEADLINE_SCAN, started_at=now)
        watchdog = ScanWatchdog(self.policy.scan_timeout_seconds, "deadline_scan", self._clock)
        started = time.perf_counter()

        with LogOperation(logger, "deadline_scan", scan_id=result.scan_id):
            due = self.engine.store.find(
                TenderQuery(
                    statuses=sorted(SUBMISSION_STATUSES, key=lambda s: s.value),
                    deadline_at_or_before=now,
                )
            )
            result.matched = len(due)

            for tender in due:
                if watchdog.expired():
                    result.truncated = True
                    break
                try:
                    transitioned = self.engine.apply_deadline_transition(tender.tender_id)
                except Exception as e:
                    scan_failures_total.labels(kind=DEADLINE_SCAN).inc()
                    result.failed[tender.tender_id] = str(e)
                    logger.error(
                        "Deadline transition failed, will retry next scan",
                        tender_id=tender.tender_id,
                        error=str(e),
                        exc_info=True,
                    )
                    continue
                if transitioned is None:
                    result.skipped.append(tender.tender_id)
                else:
                    result.transitioned.append(tender.tender_id)

            if self.policy.refresh_days_remaining and not result.truncated:
                self._refresh_days_remaining(now, watchdog, result)

        self._update_status_gauge()
        scans_total.labels(kind=DEADLINE_SCAN, outcome=result.outcome).inc()
        scan_duration_seconds.labels(kind=DEADLINE_SCAN).observe(time.perf_counter() - started)
        logger.info(result.summary())
        return result

    def _refresh_days_remaining(
        self, now: datetime, watchdog: ScanWatchdog, result: ScanResult
    ) -> None:
        # Informational only; nothing here may fail the scan
        try:
            active = self.engine.store.find(
                TenderQuery(
                    statuses=sorted(SUBMISSION_STATUSES, key=lambda s: s.value),
                    deadline_after=now,
                )
            )
        except Exception as e:
            logger.warning("days_remaining refresh skipped", error=str(e))
            return

        for tender in active:
            if watchdog.expired():
                result.truncated = True
                return
            try:
                if self.engine.refresh_days_remaining(tender):
                    result.days_refreshed += 1
            except Exception as e:
                logger.warning(
                    "days_remaining refresh failed",
                    tender_id=tender.tender_id,
                    error=str(e),
                )

    def _update_status_gauge(self) -> None:
        count_by_status = getattr(self.engine.store, "count_by_status", None)
        if count_by_status is None:
            return
        try:
            counts = count_by_status()
        except Exception as e:
            logger.warning("Status gauge update failed", error=str(e))
            return
        update_status_counts({s.value: counts.get(s.value, 0) for s in TenderStatus})

    # ========================================================================
    # Stuck-reveal check
    # ========================================================================

    def run_stuck_reveal_check(self) -> ScanResult:
        """Notify owners of sealed tenders still waiting for a reveal"""
        if not self._reveal_lock.acquire(blocking=False):
            scans_total.labels(kind=REVEAL_CHECK, outcome="skipped").inc()
            logger.warning("Stuck-reveal check already in progress, skipping")
            return ScanResult(REVEAL_CHECK, ran=False)
        try:
            return self._reveal_check()
        finally:
            self._reveal_lock.release()

    def _reveal_check(self) -> ScanResult:
        set_correlation_id(generate_correlation_id())
        now = self.engine.time_provider.now()
        result = ScanResult(REVEAL_CHECK, started_at=now)
        watchdog = ScanWatchdog(self.policy.scan_timeout_seconds, "reveal_check", self._clock)
        started = time.perf_counter()

        with LogOperation(logger, "reveal_check", scan_id=result.scan_id):
            pending = self.engine.store.find(
                TenderQuery(
                    statuses=[TenderStatus.DEADLINE_REACHED],
                    workflow_type=WorkflowType.CLOSED,
                    revealed=False,
                )
            )
            result.matched = len(pending)

            for tender in pending:
                if watchdog.expired():
                    result.truncated = True
                    break
                try:
                    reached_at = tender.deadline_reached_at
                    waiting = now - reached_at if reached_at is not None else None
                    self.engine.bus.notify_owner(
                        tender,
                        REVEAL_PENDING,
                        deadline_reached_at=reached_at.isoformat() if reached_at is not None else None,
                        waiting_hours=(
                            round(waiting.total_seconds() / 3600, 1) if waiting is not None else None
                        ),
                        proposal_count=len(tender.proposals),
                    )
                except Exception as e:
                    scan_failures_total.labels(kind=REVEAL_CHECK).inc()
                    result.failed[tender.tender_id] = str(e)
                    logger.error(
                        "Reveal reminder failed",
                        tender_id=tender.tender_id,
                        error=str(e),
                    )
                    continue
                result.notified.append(tender.tender_id)

        scans_total.labels(kind=REVEAL_CHECK, outcome=result.outcome).inc()
        scan_duration_seconds.labels(kind=REVEAL_CHECK).observe(time.perf_counter() - started)
        logger.info(result.summary())
        return result

    # ========================================================================
    # Background threads
    # ========================================================================

    def _loop(self, name: str, interval: float, run: Callable[[], ScanResult]) -> None:
        logger.info("Scheduler loop started", loop=name, interval_seconds=interval)
        while True:
            try:
                run()
            except Exception as e:
                # A broken pass must not kill the loop
                logger.error("Scheduler pass crashed", loop=name, error=str(e), exc_info=True)
            if self._stop.wait(interval):
                break
        logger.info("Scheduler loop stopped", loop=name)

    def start(self) -> None:
        """Start both loops on daemon threads; each runs once immediately"""
        if self.running:
            logger.warning("Scheduler already running")
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._loop,
                args=("deadline_scan", self.policy.scan_interval_seconds, self.run_deadline_scan),
                name="tenderdesk-deadline-scan",
                daemon=True,
            ),
            threading.Thread(
                target=self._loop,
                args=(
                    "reveal_check",
                    self.policy.reveal_check_interval_seconds,
                    self.run_stuck_reveal_check,
                ),
                name="tenderdesk-reveal-check",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Signal both loops and wait for them to finish their current pass"""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def wait(self) -> None:
        """Block until stop() is called (used by `scheduler run`)"""
        self._stop.wait()
