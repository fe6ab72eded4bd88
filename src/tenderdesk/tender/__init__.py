"""
Tender Module - lifecycle, deadlines, sealed bids and access rules

- models: states, transition table, the Tender aggregate
- lifecycle: publish, edit, proposals, moderation, the deadline transition
- reveal: the one-shot unsealing of closed-workflow proposals
- scheduler: periodic deadline scan and stuck-reveal check
- visibility: pure access decisions
- audit: the append-only trail
"""

from tenderdesk.tender.models import (
    AuditEntry,
    ProposalRef,
    Role,
    Tender,
    TenderCategory,
    TenderStatus,
    VisibilityType,
    WorkflowType,
)

__all__ = [
    "AuditEntry",
    "ProposalRef",
    "Role",
    "Tender",
    "TenderCategory",
    "TenderStatus",
    "VisibilityType",
    "WorkflowType",
]
