"""
Lifecycle Policy - tunable parameters for the tender engine

Scheduler cadence, retry bounds and the proposal bid ceiling. Everything
here has a safe default; deployments override through TENDERDESK_*
environment variables.

Fun fact: The first recorded public tender in England was for the
building of a lighthouse - Trinity House advertised for bids in 1566.
"""

import os
from typing import Any

from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "TENDERDESK_"
DEFAULT_SCAN_TIMEOUT_SECONDS = 30.0


class LifecyclePolicy(BaseModel):
    """
    Engine parameters

    The reveal check runs less often than the deadline scan: a tender
    waiting for its owner to reveal is not time-critical, a tender whose
    deadline has passed is.
    """

    scan_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between deadline scans",
    )

    reveal_check_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Seconds between stuck-reveal checks",
    )

    scan_timeout_seconds: float = Field(
        default=DEFAULT_SCAN_TIMEOUT_SECONDS,
        gt=0,
        description="Time budget for a single scheduler pass; capped at the scan interval when unset",
    )

    cas_max_attempts: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Compare-and-set attempts before a conflict is surfaced",
    )

    max_bid_to_budget_ratio: float = Field(
        default=2.0,
        gt=0,
        description="Highest accepted bid as a multiple of the tender budget",
    )

    required_publish_fields: list[str] = Field(
        default=["title", "description", "budget", "deadline"],
        description="Tender fields that must be present before publishing",
    )

    refresh_days_remaining: bool = Field(
        default=True,
        description="Refresh metadata.days_remaining after each deadline scan",
    )

    outbox_size: int = Field(
        default=1000,
        ge=1,
        description="Most recent owner notifications kept in the desk outbox",
    )

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _default_timeout(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("scan_timeout_seconds") is None:
            interval = float(data.get("scan_interval_seconds", 60.0))
            data = {
                **data,
                "scan_timeout_seconds": min(DEFAULT_SCAN_TIMEOUT_SECONDS, interval),
            }
        return data

    @model_validator(mode="after")
    def _timeout_fits_interval(self) -> "LifecyclePolicy":
        if self.scan_timeout_seconds > self.scan_interval_seconds:
            raise ValueError(
                "scan_timeout_seconds must not exceed scan_interval_seconds"
            )
        return self

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "LifecyclePolicy":
        """
        Build a policy from TENDERDESK_* variables

        TENDERDESK_SCAN_INTERVAL_SECONDS=30 overrides scan_interval_seconds,
        and so on for every field. List fields take comma-separated values.
        Unset variables keep the default.
        """
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            if field.annotation == list[str]:
                overrides[name] = [part.strip() for part in raw.split(",") if part.strip()]
            elif field.annotation is bool:
                overrides[name] = raw.strip().lower() in ("1", "true", "yes", "on")
            else:
                overrides[name] = raw
        return cls.model_validate(overrides)


default_lifecycle_policy = LifecyclePolicy()
