"""
Kernel - infrastructure shared by every tenderdesk module

Errors, clock, ids, logging, metrics, retries and the tender store port.
tender_store is not re-exported here because it depends on the tender
models, which in turn depend on this package.
"""

from tenderdesk.kernel.errors import (
    InvariantViolation,
    RejectionCode,
    StoreError,
    TenderDeskError,
    TenderNotFound,
    TransitionRejected,
    VersionConflict,
)
from tenderdesk.kernel.ids import generate_id
from tenderdesk.kernel.time import RealTimeProvider, TestTimeProvider, TimeProvider

__all__ = [
    # IDs
    "generate_id",
    # Time
    "TimeProvider",
    "RealTimeProvider",
    "TestTimeProvider",
    # Errors
    "TenderDeskError",
    "TransitionRejected",
    "TenderNotFound",
    "RejectionCode",
    "StoreError",
    "VersionConflict",
    "InvariantViolation",
]
