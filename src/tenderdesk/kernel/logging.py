"""
Structured logging for tenderdesk.

structlog on top of stdlib logging, with a correlation id per request or
scheduler pass so that one scan's log lines can be pulled out of a busy
stream.
"""

import contextvars
import logging
import os
import secrets
import sys
import time
from collections.abc import Mapping
from typing import Any

import structlog

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


def generate_correlation_id() -> str:
    """Return a fresh 22-character URL-safe correlation id (128 bits)"""
    return secrets.token_urlsafe(16)


def get_correlation_id() -> str:
    """Get the current correlation ID, or generate a new one if not set."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID for the current context."""
    correlation_id_var.set(correlation_id)


def add_correlation_id(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor: stamp the correlation id on every event"""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


def configure_logging(
    *,
    json_output: bool = False,
    log_level: str = "INFO",
) -> None:
    """
    Configure structured logging for the application.

    Args:
        json_output: JSON lines (production) instead of the colored console renderer
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
    """
    level = getattr(logging, log_level.upper())

    # stderr keeps stdout clean for CLI output
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level,
    )

    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_correlation_id,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.ExceptionRenderer(),
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger for the given module (pass __name__)"""
    return structlog.get_logger(name)


def is_production() -> bool:
    """True when ENVIRONMENT=production (defaults to development)"""
    return os.getenv("ENVIRONMENT", "development").lower() == "production"


# Identity and bid data stay out of the logs
REDACTED_FIELDS = {
    "actor_id",
    "caller_id",
    "bidder_id",
    "owner_id",
    "bid_amount",
}

# Bound into the structlog context while an operation runs, so nested
# lines (store retries, notifications) carry them too
BOUND_FIELDS = ("tender_id", "scan_id")


def redact_context(context: dict[str, Any]) -> dict[str, Any]:
    """
    Replace sensitive values in a log context

    Example:
        >>> redact_context({"actor_id": "u-1", "tender_id": "t-1"})
        {'actor_id': '***REDACTED***', 'tender_id': 't-1'}
    """
    return {
        k: "***REDACTED***" if k in REDACTED_FIELDS else v
        for k, v in context.items()
    }


class LogOperation:
    """
    Log start, completion or failure of one operation with its duration

    tender_id and scan_id from the context are bound for the duration of
    the block.
    """

    def __init__(
        self,
        logger: structlog.stdlib.BoundLogger,
        operation: str,
        **context: Any,
    ):
        """
        Args:
            logger: Structured logger instance
            operation: Operation name (e.g., "publish_tender", "deadline_scan")
            **context: Extra fields, redacted before logging
        """
        self.logger = logger
        self.operation = operation
        self.context = context
        self.start_time: float = 0.0
        self._tokens: Mapping[str, Any] = {}

    def __enter__(self) -> "LogOperation":
        self._tokens = structlog.contextvars.bind_contextvars(
            **{k: v for k, v in self.context.items() if k in BOUND_FIELDS}
        )
        self.start_time = time.perf_counter()
        self.logger.info(
            f"{self.operation} started",
            operation=self.operation,
            **redact_context(self.context),
        )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        duration_ms = round((time.perf_counter() - self.start_time) * 1000, 2)
        redacted = redact_context(self.context)

        try:
            if exc_type is None:
                self.logger.info(
                    f"{self.operation} completed",
                    operation=self.operation,
                    duration_ms=duration_ms,
                    **redacted,
                )
            else:
                # Stack traces only outside production
                self.logger.error(
                    f"{self.operation} failed",
                    operation=self.operation,
                    duration_ms=duration_ms,
                    error=str(exc_val),
                    exc_info=not is_production(),
                    **redacted,
                )
        finally:
            structlog.contextvars.reset_contextvars(**self._tokens)
