"""
Custom exceptions for tenderdesk

Three families of failure, handled very differently:
- TransitionRejected: a manual action's precondition does not hold.
  Reported to the caller with a reason code, never retried.
- StoreError / VersionConflict: persistence trouble. Compare-and-set
  losers are re-read and re-checked; the scheduler logs and moves on.
- InvariantViolation: a programming error at the call site. Never caught
  by the core.

Fun fact: Sealed-bid auctions are older than paper - Babylonian bride
auctions were recorded by Herodotus around 500 BC. The envelopes came later.
"""

from enum import Enum


class RejectionCode(str, Enum):
    """Machine-readable reasons a manual action was refused"""

    TENDER_NOT_FOUND = "TENDER_NOT_FOUND"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    INVALID_STATUS = "INVALID_STATUS"
    TENDER_DELETED = "TENDER_DELETED"
    MISSING_REQUIRED_FIELDS = "MISSING_REQUIRED_FIELDS"
    DEADLINE_NOT_IN_FUTURE = "DEADLINE_NOT_IN_FUTURE"
    INVALID_BUDGET = "INVALID_BUDGET"
    DEADLINE_NOT_REACHED = "DEADLINE_NOT_REACHED"
    DEADLINE_PASSED = "DEADLINE_PASSED"
    NOT_SEALED = "NOT_SEALED"
    ALREADY_REVEALED = "ALREADY_REVEALED"
    ALREADY_TRANSITIONED = "ALREADY_TRANSITIONED"
    SEALED_TENDER_LOCKED = "SEALED_TENDER_LOCKED"
    EDIT_NOT_ALLOWED = "EDIT_NOT_ALLOWED"
    ALREADY_FLAGGED = "ALREADY_FLAGGED"
    NOT_FLAGGED = "NOT_FLAGGED"
    APPLY_DENIED = "APPLY_DENIED"
    INVALID_BID = "INVALID_BID"
    BID_EXCEEDS_LIMIT = "BID_EXCEEDS_LIMIT"
    DUPLICATE_PROPOSAL = "DUPLICATE_PROPOSAL"
    TENDER_INACTIVE = "TENDER_INACTIVE"


class TenderDeskError(Exception):
    """Base exception for all tenderdesk errors"""

    pass


# Manual action rejections


class TransitionRejected(TenderDeskError):
    """
    Raised when a manual lifecycle action's precondition does not hold

    Carries a RejectionCode so API handlers can map it to a response
    without parsing messages.
    """

    def __init__(
        self,
        code: RejectionCode,
        message: str,
        tender_id: str | None = None,
    ) -> None:
        self.code = code
        self.tender_id = tender_id
        self.message = message
        super().__init__(f"[{code.value}] {message}")


class TenderNotFound(TransitionRejected):
    """Raised when a tender does not exist in the store"""

    def __init__(self, tender_id: str) -> None:
        super().__init__(
            RejectionCode.TENDER_NOT_FOUND,
            f"Tender {tender_id} not found",
            tender_id=tender_id,
        )


# Store errors


class StoreError(TenderDeskError):
    """Base class for tender store errors"""

    pass


class VersionConflict(StoreError):
    """
    Raised when a compare-and-set write loses to a concurrent writer

    Callers should re-read the tender and re-check their precondition.
    """

    def __init__(self, tender_id: str, expected_version: int, actual_version: int) -> None:
        self.tender_id = tender_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Tender {tender_id} version mismatch: "
            f"expected {expected_version}, got {actual_version}"
        )


class DuplicateTender(StoreError):
    """Raised when inserting a tender whose id already exists"""

    def __init__(self, tender_id: str) -> None:
        self.tender_id = tender_id
        super().__init__(f"Tender {tender_id} already exists")


# Invariant violations (programming errors)


class InvariantViolation(TenderDeskError):
    """
    Raised when a lifecycle invariant would be violated

    These are not user errors - a caller that trips one has a bug.
    """

    pass


class WorkflowTypeImmutable(InvariantViolation):
    """Raised when changing workflow type after publication"""

    def __init__(self, tender_id: str, current: str, requested: str) -> None:
        self.tender_id = tender_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Tender {tender_id} workflow type is {current} and cannot become "
            f"{requested} after publication - the sealed-bid guarantee depends on it"
        )


class TimestampAlreadySet(InvariantViolation):
    """Raised when a set-once lifecycle timestamp would be overwritten"""

    def __init__(self, tender_id: str, field: str) -> None:
        self.tender_id = tender_id
        self.field = field
        super().__init__(f"Tender {tender_id} field {field} is already set")


class StatusRegression(InvariantViolation):
    """Raised when a non-moderation transition would move a tender backward"""

    def __init__(self, tender_id: str, from_status: str, to_status: str) -> None:
        self.tender_id = tender_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Tender {tender_id} cannot transition from {from_status} to {to_status}"
        )


class AuditTrailViolation(InvariantViolation):
    """Raised when a write would truncate or reorder a tender's audit log"""

    def __init__(self, tender_id: str, stored_entries: int, new_entries: int) -> None:
        self.tender_id = tender_id
        self.stored_entries = stored_entries
        self.new_entries = new_entries
        super().__init__(
            f"Tender {tender_id} audit log must extend the stored log "
            f"({stored_entries} stored, {new_entries} written)"
        )
