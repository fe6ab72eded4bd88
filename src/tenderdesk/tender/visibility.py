"""
Visibility / Access Evaluator

Pure decisions over a tender snapshot and a caller. Nothing here reads
the store, the clock (unless no `now` is passed) or scheduler state, so
API handlers can call these functions on whatever tender they loaded.

The sealed-bid rule is the one that matters most: while a closed-workflow
tender is unrevealed, can_view_proposals is False for every caller,
owner and admin included.
"""

from datetime import datetime

from tenderdesk.kernel.time import default_time_provider
from tenderdesk.tender.audit import PROPOSAL_SUBMITTED
from tenderdesk.tender.models import (
    CATEGORY_APPLICANT_ROLE,
    SEALED_STATUSES,
    SUBMISSION_STATUSES,
    VISIBLE_STATUSES,
    AuditEntry,
    Role,
    Tender,
    TenderStatus,
    VisibilityType,
    WorkflowType,
)

COMPANY_ROLES = frozenset({Role.COMPANY, Role.ORGANIZATION})


def _role(caller_role: Role | str | None) -> Role | None:
    if caller_role is None:
        return None
    try:
        return Role(caller_role)
    except ValueError:
        return None


def is_owner_or_admin(tender: Tender, caller_id: str | None, caller_role: Role | str | None) -> bool:
    return _role(caller_role) == Role.ADMIN or (
        caller_id is not None and caller_id == tender.owner_id
    )


def visibility_allows(tender: Tender, caller_id: str | None, caller_role: Role | str | None) -> bool:
    """Whether the tender's visibility rules admit this caller"""
    rules = tender.visibility
    role = _role(caller_role)

    if rules.visibility_type == VisibilityType.PUBLIC:
        return True
    if rules.visibility_type == VisibilityType.INVITE_ONLY:
        return caller_id is not None and caller_id in rules.invited_users
    if rules.visibility_type == VisibilityType.COMPANIES_ONLY:
        if role not in COMPANY_ROLES:
            return False
        return not rules.allowed_companies or caller_id in rules.allowed_companies
    if rules.visibility_type == VisibilityType.FREELANCERS_ONLY:
        return role == Role.FREELANCER
    return False


def can_view(tender: Tender, caller_id: str | None, caller_role: Role | str | None) -> bool:
    """
    Whether the caller may see the tender itself (not its proposals)

    Owners and admins always can, except that a soft-deleted tender is
    only visible to admins. Everyone else needs a visible status and
    matching visibility rules.
    """
    if tender.is_deleted:
        return _role(caller_role) == Role.ADMIN
    if is_owner_or_admin(tender, caller_id, caller_role):
        return True
    if tender.status not in VISIBLE_STATUSES:
        return False
    return visibility_allows(tender, caller_id, caller_role)


def apply_denial_reason(
    tender: Tender,
    caller_id: str | None,
    caller_role: Role | str | None,
    now: datetime | None = None,
) -> str | None:
    """
    Why the caller may not apply, or None if they may

    Checked in order: status, deadline, applicant role, visibility.
    """
    now = now or default_time_provider.now()
    role = _role(caller_role)

    if tender.is_deleted:
        return "Tender has been deleted"
    if tender.status not in SUBMISSION_STATUSES:
        return "Tender is not accepting proposals"
    if tender.deadline is None or tender.deadline <= now:
        return "Tender deadline has passed"
    if caller_id is not None and caller_id == tender.owner_id:
        return "Owners cannot apply to their own tender"

    required_role = CATEGORY_APPLICANT_ROLE[tender.category]
    if role != required_role:
        if required_role == Role.FREELANCER:
            return "Only freelancers can apply to freelance tenders"
        return "Only companies can apply to professional tenders"

    if not visibility_allows(tender, caller_id, caller_role):
        if tender.visibility.visibility_type == VisibilityType.INVITE_ONLY:
            return "This is an invite-only tender"
        return "Tender visibility does not include this caller"
    return None


def can_apply(
    tender: Tender,
    caller_id: str | None,
    caller_role: Role | str | None,
    now: datetime | None = None,
) -> bool:
    return apply_denial_reason(tender, caller_id, caller_role, now) is None


def can_view_proposals(
    tender: Tender, caller_id: str | None, caller_role: Role | str | None
) -> bool:
    """
    Whether the caller may see the set of proposals

    - closed workflow, not revealed: never
    - closed workflow, revealed: owner or admin
    - open workflow: owner or admin, once a proposal exists
    """
    if tender.workflow_type == WorkflowType.CLOSED and tender.revealed_at is None:
        return False
    if not is_owner_or_admin(tender, caller_id, caller_role):
        return False
    if tender.workflow_type == WorkflowType.OPEN:
        return len(tender.proposals) > 0
    return True


def visible_audit_log(
    tender: Tender, caller_id: str | None, caller_role: Role | str | None
) -> list[AuditEntry]:
    """
    Audit entries the caller may read

    Owner and admin only. While a closed-workflow tender is unrevealed,
    PROPOSAL_SUBMITTED entries are withheld: they name the bidder.
    """
    if not is_owner_or_admin(tender, caller_id, caller_role):
        return []
    if tender.workflow_type == WorkflowType.CLOSED and tender.revealed_at is None:
        return [e for e in tender.audit_log if e.action != PROPOSAL_SUBMITTED]
    return list(tender.audit_log)


def is_sealed_against_edits(tender: Tender) -> bool:
    """Closed-workflow tender past publication; nobody may edit it"""
    return tender.workflow_type == WorkflowType.CLOSED and tender.status in SEALED_STATUSES


def can_edit(
    tender: Tender,
    caller_id: str | None,
    caller_role: Role | str | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Whether the caller may change the tender's content

    Drafts and open-workflow published tenders are editable by their
    owner (or an admin), the latter only until the deadline passes. A
    sealed tender is never editable by anyone.
    """
    if tender.is_deleted or is_sealed_against_edits(tender):
        return False
    if not is_owner_or_admin(tender, caller_id, caller_role):
        return False
    if tender.status == TenderStatus.DRAFT:
        return True
    if tender.status != TenderStatus.PUBLISHED or tender.workflow_type != WorkflowType.OPEN:
        return False
    return not tender.deadline_passed(now or default_time_provider.now())
