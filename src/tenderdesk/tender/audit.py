"""
Audit Trail Writer

Every status change, moderation action and reveal leaves one entry on the
tender's audit_log. The writer only ever returns a longer copy of the
log; the store refuses any write whose log is not an extension of what it
already holds. The lifecycle never reads the log back.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from tenderdesk.kernel.time import TimeProvider
from tenderdesk.tender.models import AuditEntry, Tender

# Actions written by the lifecycle engine
PUBLISHED = "PUBLISHED"
LOCKED = "LOCKED"
AUTO_TRANSITION = "AUTO_TRANSITION"
REVEALED = "REVEALED"
MODERATION_FLAG = "MODERATION_FLAG"
MODERATION_APPROVE = "MODERATION_APPROVE"
EDITED = "EDITED"
PROPOSAL_SUBMITTED = "PROPOSAL_SUBMITTED"
DELETED = "DELETED"
CREATED = "CREATED"

SCHEDULER_TRIGGER = "deadline_scheduler"


def _plain(value: Any) -> Any:
    """Reduce a detail value to something that survives a JSON round trip unchanged"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    return value


class AuditTrailWriter:
    """Builds audit entries stamped with the injected clock"""

    def __init__(self, time_provider: TimeProvider) -> None:
        self.time_provider = time_provider

    def entry(self, action: str, actor_id: str | None, **details: Any) -> AuditEntry:
        return AuditEntry(
            action=action,
            actor_id=actor_id,
            timestamp=self.time_provider.now(),
            details={k: _plain(v) for k, v in details.items()},
        )

    def append(
        self,
        tender: Tender,
        action: str,
        actor_id: str | None,
        **details: Any,
    ) -> Tender:
        """
        Return a copy of `tender` with one more audit entry

        The entry is persisted by the same compare-and-set that persists
        the state change it describes, so the two cannot drift apart.
        """
        entry = self.entry(action, actor_id, **details)
        return tender.model_copy(update={"audit_log": [*tender.audit_log, entry]})


def entries_for(tender: Tender, action: str) -> list[AuditEntry]:
    """All entries with the given action, oldest first"""
    return [e for e in tender.audit_log if e.action == action]
