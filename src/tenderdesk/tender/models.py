"""
Tender Domain Models

The status enum is the primary truth about where a tender is in its
lifecycle. The four lifecycle timestamps are historical annotations,
written once by the transition that produced them and never reset.

Fun fact: "Tender" comes from the Old French "tendre", to hold out or
offer - the same root as "legal tender".
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from tenderdesk.kernel.errors import StatusRegression, TimestampAlreadySet
from tenderdesk.kernel.time import ensure_utc


class WorkflowType(str, Enum):
    """Whether proposals are disclosed as submitted or sealed until reveal"""

    OPEN = "open"
    CLOSED = "closed"


class TenderStatus(str, Enum):
    """
    Tender lifecycle states

    open workflow:    DRAFT → PUBLISHED ─────────→ CLOSED
    closed workflow:  DRAFT → PUBLISHED → LOCKED → DEADLINE_REACHED
                                                     (reveal sets revealed_at)
    CANCELLED is reachable from any non-terminal state by moderation only.
    """

    DRAFT = "draft"
    PUBLISHED = "published"
    LOCKED = "locked"  # sealed submissions accepted, no edits
    DEADLINE_REACHED = "deadline_reached"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class TenderCategory(str, Enum):
    """Decides which applicant role may submit proposals"""

    FREELANCE = "freelance"
    PROFESSIONAL = "professional"


class VisibilityType(str, Enum):
    PUBLIC = "public"
    INVITE_ONLY = "invite_only"
    COMPANIES_ONLY = "companies_only"
    FREELANCERS_ONLY = "freelancers_only"


class Role(str, Enum):
    FREELANCER = "freelancer"
    COMPANY = "company"
    ORGANIZATION = "organization"
    ADMIN = "admin"


# Rank used for monotonicity. CANCELLED is deliberately absent: it sits
# outside the ordering and only moderation moves in or out of it.
STATUS_RANK: dict[TenderStatus, int] = {
    TenderStatus.DRAFT: 0,
    TenderStatus.PUBLISHED: 1,
    TenderStatus.LOCKED: 2,
    TenderStatus.DEADLINE_REACHED: 3,
    TenderStatus.CLOSED: 4,
}

# Non-moderation transitions
ALLOWED_TRANSITIONS: dict[TenderStatus, frozenset[TenderStatus]] = {
    TenderStatus.DRAFT: frozenset({TenderStatus.PUBLISHED}),
    TenderStatus.PUBLISHED: frozenset(
        {TenderStatus.LOCKED, TenderStatus.CLOSED, TenderStatus.DEADLINE_REACHED}
    ),
    TenderStatus.LOCKED: frozenset({TenderStatus.DEADLINE_REACHED, TenderStatus.CLOSED}),
    TenderStatus.DEADLINE_REACHED: frozenset(),
    TenderStatus.CLOSED: frozenset(),
    TenderStatus.CANCELLED: frozenset(),
}

SUBMISSION_STATUSES = frozenset({TenderStatus.PUBLISHED, TenderStatus.LOCKED})
VISIBLE_STATUSES = frozenset(
    {
        TenderStatus.PUBLISHED,
        TenderStatus.LOCKED,
        TenderStatus.DEADLINE_REACHED,
        TenderStatus.CLOSED,
    }
)
TERMINAL_STATUSES = frozenset({TenderStatus.CLOSED, TenderStatus.CANCELLED})
SEALED_STATUSES = frozenset(
    {TenderStatus.LOCKED, TenderStatus.DEADLINE_REACHED, TenderStatus.CLOSED}
)

LIFECYCLE_TIMESTAMPS = ("published_at", "closed_at", "deadline_reached_at", "revealed_at")

# Applicant role per category
CATEGORY_APPLICANT_ROLE: dict[TenderCategory, Role] = {
    TenderCategory.FREELANCE: Role.FREELANCER,
    TenderCategory.PROFESSIONAL: Role.COMPANY,
}

TENDER_CREATOR_ROLES = frozenset({Role.COMPANY, Role.ORGANIZATION, Role.ADMIN})


def deadline_target(workflow_type: WorkflowType) -> TenderStatus:
    """Status a tender moves to when its deadline elapses"""
    if workflow_type == WorkflowType.CLOSED:
        return TenderStatus.DEADLINE_REACHED
    return TenderStatus.CLOSED


def deadline_timestamp_field(workflow_type: WorkflowType) -> str:
    if workflow_type == WorkflowType.CLOSED:
        return "deadline_reached_at"
    return "closed_at"


class AuditEntry(BaseModel):
    """One immutable line of a tender's audit trail"""

    action: str = Field(..., description="PUBLISHED, AUTO_TRANSITION, REVEALED, ...")
    actor_id: str | None = Field(
        default=None, description="Who did it (None for the scheduler)"
    )
    timestamp: datetime
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class ProposalRef(BaseModel):
    """
    Reference to a proposal submitted against a tender

    Proposal contents live elsewhere. The lifecycle only needs to know
    that a proposal exists and who sent it.
    """

    proposal_id: str
    bidder_id: str
    bid_amount: Decimal = Field(..., gt=0)
    submitted_at: datetime

    model_config = {"frozen": True}


class VisibilityRules(BaseModel):
    visibility_type: VisibilityType = VisibilityType.PUBLIC
    invited_users: list[str] = Field(
        default_factory=list, description="User ids allowed on invite-only tenders"
    )
    allowed_companies: list[str] = Field(
        default_factory=list,
        description="Company ids allowed on companies-only tenders (empty = any company)",
    )


class TenderMetadata(BaseModel):
    days_remaining: int | None = Field(
        default=None, description="Whole days until deadline, derived and informational"
    )
    saved_by: list[str] = Field(default_factory=list, description="Users who bookmarked")


class Tender(BaseModel):
    """
    Tender aggregate

    Copies are cheap and the engine never mutates a tender in place: every
    change goes through model_copy and lands in the store with a
    compare-and-set on `version`.
    """

    tender_id: str = Field(..., description="Unique tender identifier")
    title: str = ""
    description: str = ""
    owner_id: str
    category: TenderCategory = TenderCategory.PROFESSIONAL
    workflow_type: WorkflowType = WorkflowType.OPEN
    status: TenderStatus = TenderStatus.DRAFT
    deadline: datetime | None = None
    budget: Decimal | None = None
    visibility: VisibilityRules = Field(default_factory=VisibilityRules)
    proposals: list[ProposalRef] = Field(default_factory=list)

    published_at: datetime | None = None
    closed_at: datetime | None = None
    deadline_reached_at: datetime | None = None
    revealed_at: datetime | None = None

    moderated: bool = False
    moderation_reason: str | None = None
    moderated_by: str | None = None
    moderated_at: datetime | None = None
    status_before_moderation: TenderStatus | None = None

    is_deleted: bool = False
    deleted_at: datetime | None = None

    metadata: TenderMetadata = Field(default_factory=TenderMetadata)
    audit_log: list[AuditEntry] = Field(default_factory=list)
    created_at: datetime
    version: int = Field(default=0, ge=0, description="Store revision for compare-and-set")

    @field_validator("tender_id", "owner_id")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Identifier cannot be empty")
        return v

    @field_validator("deadline", "created_at")
    @classmethod
    def validate_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def validate_reveal_consistency(self) -> "Tender":
        """A reveal can only exist on a sealed tender whose deadline was reached"""
        if self.revealed_at is not None:
            if self.workflow_type != WorkflowType.CLOSED:
                raise ValueError("revealed_at is only meaningful for closed workflow")
            if self.deadline_reached_at is None:
                raise ValueError("revealed_at requires deadline_reached_at")
        return self

    @property
    def is_sealed(self) -> bool:
        """Closed workflow whose proposals have not been revealed"""
        return self.workflow_type == WorkflowType.CLOSED and self.revealed_at is None

    @property
    def is_accepting_proposals(self) -> bool:
        return self.status in SUBMISSION_STATUSES and not self.is_deleted

    def deadline_passed(self, now: datetime) -> bool:
        return self.deadline is not None and self.deadline <= now

    def has_proposal_from(self, bidder_id: str) -> bool:
        return any(p.bidder_id == bidder_id for p in self.proposals)

    def with_timestamp(self, field: str, value: datetime) -> "Tender":
        """
        Return a copy with a lifecycle timestamp set

        Raises:
            TimestampAlreadySet: If the field already holds a value
        """
        if field not in LIFECYCLE_TIMESTAMPS:
            raise ValueError(f"{field} is not a lifecycle timestamp")
        if getattr(self, field) is not None:
            raise TimestampAlreadySet(self.tender_id, field)
        return self.model_copy(update={field: value})

    def with_status(self, to_status: TenderStatus) -> "Tender":
        """
        Return a copy moved forward to `to_status`

        Moderation does not come through here; it has its own path.

        Raises:
            StatusRegression: If the move is not a forward lifecycle step
        """
        if to_status not in ALLOWED_TRANSITIONS[self.status]:
            raise StatusRegression(self.tender_id, self.status.value, to_status.value)
        return self.model_copy(update={"status": to_status})


def is_forward(from_status: TenderStatus, to_status: TenderStatus) -> bool:
    """True when to_status does not rank below from_status"""
    if from_status not in STATUS_RANK or to_status not in STATUS_RANK:
        return False
    return STATUS_RANK[to_status] >= STATUS_RANK[from_status]


def summarize(tender: Tender) -> dict[str, Any]:
    """Compact, proposal-free view of a tender for listings and logs"""
    return {
        "tender_id": tender.tender_id,
        "title": tender.title,
        "status": tender.status.value,
        "workflow_type": tender.workflow_type.value,
        "category": tender.category.value,
        "deadline": tender.deadline.isoformat() if tender.deadline else None,
        "proposal_count": len(tender.proposals),
        "revealed": tender.revealed_at is not None,
        "moderated": tender.moderated,
        "days_remaining": tender.metadata.days_remaining,
    }
