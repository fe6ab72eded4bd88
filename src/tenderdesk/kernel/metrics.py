"""
Prometheus metrics for tenderdesk.

Lifecycle transitions, rejections and scheduler health.
"""

import time
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Gauge, Histogram, start_http_server

# ============================================================================
# Lifecycle Metrics
# ============================================================================

transitions_total = Counter(
    "tenderdesk_transitions_total",
    "Total number of applied lifecycle transitions",
    ["from_status", "to_status", "trigger"],  # trigger: manual, scheduler, moderation
)

rejections_total = Counter(
    "tenderdesk_rejections_total",
    "Total number of manual actions rejected by a precondition",
    ["action", "code"],
)

cas_conflicts_total = Counter(
    "tenderdesk_cas_conflicts_total",
    "Total number of compare-and-set writes that lost to a concurrent writer",
)

action_duration_seconds = Histogram(
    "tenderdesk_action_duration_seconds",
    "Duration of manual lifecycle actions in seconds",
    ["action"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

tenders_by_status = Gauge(
    "tenderdesk_tenders_by_status",
    "Number of non-deleted tenders by status",
    ["status"],
)

# ============================================================================
# Scheduler Metrics
# ============================================================================

scans_total = Counter(
    "tenderdesk_scans_total",
    "Total number of scheduler passes",
    ["kind", "outcome"],  # kind: deadline, reveal_check; outcome: completed, skipped, truncated
)

scan_duration_seconds = Histogram(
    "tenderdesk_scan_duration_seconds",
    "Duration of scheduler passes in seconds",
    ["kind"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0),
)

scan_failures_total = Counter(
    "tenderdesk_scan_failures_total",
    "Total number of per-tender failures caught by the scheduler",
    ["kind"],
)

owner_notifications_total = Counter(
    "tenderdesk_owner_notifications_total",
    "Total number of owner notifications published",
    ["event_type", "status"],  # status: delivered, failed
)

# ============================================================================
# Helper Functions
# ============================================================================

P = ParamSpec("P")
R = TypeVar("R")


def track_action_duration(action: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Decorator that observes the wrapped call in action_duration_seconds."""

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                action_duration_seconds.labels(action=action).observe(
                    time.perf_counter() - start
                )

        return wrapper

    return decorator


def start_metrics_server(port: int = 9090) -> None:
    """Start the Prometheus scrape endpoint on `port`"""
    start_http_server(port)


def update_status_counts(counts: dict[str, int]) -> None:
    """Set tenders_by_status from a status -> count mapping"""
    for status, count in counts.items():
        tenders_by_status.labels(status=status).set(count)
