"""
Lifecycle State Machine

Every change to a tender goes through LifecycleEngine.transact: re-read
the stored tender, check the precondition against what was just read,
build the new state, and write it back with a compare-and-set on the
store revision. A lost compare-and-set re-runs the whole cycle, so a
precondition is always checked against the state that is actually
overwritten.

Manual actions raise TransitionRejected when a precondition fails.
The deadline transition, run by the scheduler, returns None instead and
logs why it skipped.

Fun fact: The word "deadline" first meant a literal line around a
Civil War prison camp that prisoners were shot for crossing. Missing a
tender deadline is considerably less dramatic.
"""

import math
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any

from tenderdesk.kernel.bus import (
    DEADLINE_REACHED,
    TENDER_APPROVED,
    TENDER_CLOSED,
    TENDER_FLAGGED,
    NotificationBus,
)
from tenderdesk.kernel.errors import (
    RejectionCode,
    TenderNotFound,
    TransitionRejected,
    WorkflowTypeImmutable,
)
from tenderdesk.kernel.ids import generate_id
from tenderdesk.kernel.logging import LogOperation, get_logger
from tenderdesk.kernel.metrics import rejections_total, track_action_duration, transitions_total
from tenderdesk.kernel.policy import LifecyclePolicy, default_lifecycle_policy
from tenderdesk.kernel.retry import retry_on_version_conflict
from tenderdesk.kernel.tender_store import TenderStore
from tenderdesk.kernel.time import TimeProvider, ensure_utc
from tenderdesk.tender import audit
from tenderdesk.tender.audit import AuditTrailWriter
from tenderdesk.tender.commands import CreateTender, EditTender, ModerationAction
from tenderdesk.tender.models import (
    SUBMISSION_STATUSES,
    TENDER_CREATOR_ROLES,
    ProposalRef,
    Role,
    Tender,
    TenderMetadata,
    TenderStatus,
    WorkflowType,
    deadline_target,
    deadline_timestamp_field,
)
from tenderdesk.tender.visibility import (
    apply_denial_reason,
    can_edit,
    is_owner_or_admin,
    is_sealed_against_edits,
)

logger = get_logger(__name__)

Mutation = Callable[[Tender], Tender]


class _Skip(Exception):
    """Automatic transition precondition no longer holds"""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


def days_until(deadline: datetime | None, now: datetime) -> int | None:
    """Whole days left before the deadline, rounded up, never negative"""
    if deadline is None:
        return None
    seconds = (deadline - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


def _with_days_remaining(tender: Tender, now: datetime) -> Tender:
    metadata = tender.metadata.model_copy(
        update={"days_remaining": days_until(tender.deadline, now)}
    )
    return tender.model_copy(update={"metadata": metadata})


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


class LifecycleEngine:
    """
    The transition function for tenders

    Stateless apart from its collaborators; safe to share between the
    request path and the scheduler threads.
    """

    def __init__(
        self,
        store: TenderStore,
        time_provider: TimeProvider,
        policy: LifecyclePolicy | None = None,
        bus: NotificationBus | None = None,
    ) -> None:
        self.store = store
        self.time_provider = time_provider
        self.policy = policy or default_lifecycle_policy
        self.bus = bus or NotificationBus(time_provider)
        self.audit = AuditTrailWriter(time_provider)

    # ========================================================================
    # Plumbing
    # ========================================================================

    def load(self, tender_id: str) -> Tender:
        tender = self.store.get(tender_id)
        if tender is None:
            raise TenderNotFound(tender_id)
        return tender

    def reject(
        self,
        action: str,
        code: RejectionCode,
        message: str,
        tender_id: str | None = None,
    ) -> TransitionRejected:
        """Count and log a rejection; the caller raises what this returns"""
        rejections_total.labels(action=action, code=code.value).inc()
        logger.info(
            "Action rejected",
            action=action,
            code=code.value,
            reason=message,
            tender_id=tender_id,
        )
        return TransitionRejected(code, message, tender_id=tender_id)

    def transact(self, tender_id: str, mutate: Mutation) -> Tender:
        """
        Read-check-write a single tender

        `mutate` receives the freshly read tender and returns the new
        state, or the same object to leave the tender untouched. It may
        raise to abort; nothing is written in that case.
        """

        @retry_on_version_conflict(max_attempts=self.policy.cas_max_attempts)
        def attempt() -> Tender:
            current = self.load(tender_id)
            updated = mutate(current)
            if updated is current:
                return current
            return self.store.compare_and_set(updated, current.version)

        return attempt()

    def _record_transition(
        self, before: TenderStatus, after: TenderStatus, trigger: str
    ) -> None:
        if before != after:
            transitions_total.labels(
                from_status=before.value, to_status=after.value, trigger=trigger
            ).inc()

    # ========================================================================
    # Creation and editing
    # ========================================================================

    @track_action_duration("create_tender")
    def create_tender(
        self,
        owner_id: str,
        owner_role: Role | str,
        command: CreateTender,
    ) -> Tender:
        """
        Create a draft tender

        Freelancers cannot create tenders. A deadline or budget given at
        creation is validated right away; missing ones are caught at
        publish time.
        """
        action = "create_tender"
        now = self.time_provider.now()

        try:
            role = Role(owner_role)
        except ValueError:
            role = None
        if role not in TENDER_CREATOR_ROLES:
            raise self.reject(
                action,
                RejectionCode.NOT_AUTHORIZED,
                "Freelancers cannot create tenders"
                if role == Role.FREELANCER
                else f"Role {owner_role} cannot create tenders",
            )

        deadline = ensure_utc(command.deadline) if command.deadline else None
        if deadline is not None and deadline <= now:
            raise self.reject(
                action, RejectionCode.DEADLINE_NOT_IN_FUTURE, "Deadline must be in the future"
            )
        if command.budget is not None and command.budget <= 0:
            raise self.reject(action, RejectionCode.INVALID_BUDGET, "Budget must be positive")

        tender = Tender(
            tender_id=generate_id("tnd"),
            title=command.title,
            description=command.description,
            owner_id=owner_id,
            category=command.category,
            workflow_type=command.workflow_type,
            deadline=deadline,
            budget=command.budget,
            visibility=command.visibility,
            metadata=TenderMetadata(days_remaining=days_until(deadline, now)),
            created_at=now,
        )
        tender = self.audit.append(
            tender,
            audit.CREATED,
            owner_id,
            workflow_type=tender.workflow_type,
            category=tender.category,
        )

        with LogOperation(logger, action, tender_id=tender.tender_id, owner_id=owner_id):
            return self.store.insert(tender)

    @track_action_duration("edit_tender")
    def edit_tender(
        self,
        tender_id: str,
        actor_id: str,
        command: EditTender,
        actor_role: Role | str | None = None,
    ) -> Tender:
        """
        Apply a partial update

        Raises:
            TransitionRejected: SEALED_TENDER_LOCKED once a closed-workflow
                tender is published, DEADLINE_PASSED for a published
                tender past its deadline, EDIT_NOT_ALLOWED for other
                non-editable states
            WorkflowTypeImmutable: Changing workflow type after draft
        """
        action = "edit_tender"
        changes = command.changes()
        now = self.time_provider.now()

        def mutate(tender: Tender) -> Tender:
            if tender.is_deleted:
                raise self.reject(
                    action, RejectionCode.TENDER_DELETED, "Tender has been deleted", tender_id
                )
            if is_sealed_against_edits(tender):
                raise self.reject(
                    action,
                    RejectionCode.SEALED_TENDER_LOCKED,
                    "Sealed-bid tenders cannot be edited after publication",
                    tender_id,
                )
            if not is_owner_or_admin(tender, actor_id, actor_role):
                raise self.reject(
                    action,
                    RejectionCode.NOT_AUTHORIZED,
                    "Only the tender owner can edit this tender",
                    tender_id,
                )
            if tender.status == TenderStatus.PUBLISHED and tender.deadline_passed(now):
                raise self.reject(
                    action,
                    RejectionCode.DEADLINE_PASSED,
                    "Tender deadline has passed and it can no longer be edited",
                    tender_id,
                )
            if not can_edit(tender, actor_id, actor_role, now):
                raise self.reject(
                    action,
                    RejectionCode.EDIT_NOT_ALLOWED,
                    f"Tender in status {tender.status.value} cannot be edited",
                    tender_id,
                )

            requested = changes.get("workflow_type")
            if (
                requested is not None
                and requested != tender.workflow_type
                and tender.status != TenderStatus.DRAFT
            ):
                raise WorkflowTypeImmutable(
                    tender_id, tender.workflow_type.value, WorkflowType(requested).value
                )

            if "deadline" in changes:
                changes["deadline"] = ensure_utc(changes["deadline"])
                if changes["deadline"] <= now:
                    raise self.reject(
                        action,
                        RejectionCode.DEADLINE_NOT_IN_FUTURE,
                        "Deadline must be in the future",
                        tender_id,
                    )
            if "budget" in changes and changes["budget"] <= 0:
                raise self.reject(
                    action, RejectionCode.INVALID_BUDGET, "Budget must be positive", tender_id
                )

            actual = {k: v for k, v in changes.items() if getattr(tender, k) != v}
            if not actual:
                return tender

            updated = _with_days_remaining(tender.model_copy(update=actual), now)
            return self.audit.append(updated, audit.EDITED, actor_id, fields=sorted(actual))

        with LogOperation(logger, action, tender_id=tender_id, actor_id=actor_id):
            return self.transact(tender_id, mutate)

    # ========================================================================
    # Publication
    # ========================================================================

    @track_action_duration("publish_tender")
    def publish_tender(self, tender_id: str, actor_id: str) -> Tender:
        """
        draft → published, and straight on to locked for closed workflow

        Both steps are one write with one audit entry each.
        """
        action = "publish_tender"
        now = self.time_provider.now()

        def mutate(tender: Tender) -> Tender:
            if tender.is_deleted:
                raise self.reject(
                    action, RejectionCode.TENDER_DELETED, "Tender has been deleted", tender_id
                )
            if tender.owner_id != actor_id:
                raise self.reject(
                    action,
                    RejectionCode.NOT_AUTHORIZED,
                    "Only the tender owner can publish",
                    tender_id,
                )
            if tender.status != TenderStatus.DRAFT:
                code = (
                    RejectionCode.ALREADY_TRANSITIONED
                    if tender.published_at is not None
                    else RejectionCode.INVALID_STATUS
                )
                raise self.reject(
                    action,
                    code,
                    f"Only draft tenders can be published (status is {tender.status.value})",
                    tender_id,
                )

            missing = [
                name
                for name in self.policy.required_publish_fields
                if _is_blank(getattr(tender, name, None))
            ]
            if missing:
                raise self.reject(
                    action,
                    RejectionCode.MISSING_REQUIRED_FIELDS,
                    f"Missing required fields: {', '.join(missing)}",
                    tender_id,
                )
            if tender.budget is not None and tender.budget <= 0:
                raise self.reject(
                    action, RejectionCode.INVALID_BUDGET, "Budget must be positive", tender_id
                )
            if tender.deadline is None or tender.deadline <= now:
                raise self.reject(
                    action,
                    RejectionCode.DEADLINE_NOT_IN_FUTURE,
                    "Deadline must be in the future",
                    tender_id,
                )

            updated = tender.with_status(TenderStatus.PUBLISHED).with_timestamp(
                "published_at", now
            )
            updated = self.audit.append(
                updated,
                audit.PUBLISHED,
                actor_id,
                previous_status=TenderStatus.DRAFT,
                workflow_type=tender.workflow_type,
                deadline=tender.deadline,
            )
            if tender.workflow_type == WorkflowType.CLOSED:
                updated = updated.with_status(TenderStatus.LOCKED)
                updated = self.audit.append(
                    updated,
                    audit.LOCKED,
                    actor_id,
                    previous_status=TenderStatus.PUBLISHED,
                )
            return _with_days_remaining(updated, now)

        with LogOperation(logger, action, tender_id=tender_id, actor_id=actor_id):
            published = self.transact(tender_id, mutate)
        self._record_transition(TenderStatus.DRAFT, published.status, "manual")
        return published

    # ========================================================================
    # Deadline transition (scheduler path)
    # ========================================================================

    def apply_deadline_transition(self, tender_id: str) -> Tender | None:
        """
        published/locked → closed (open) or deadline_reached (closed)

        Idempotent: a tender that is already past this point, deleted,
        cancelled, or whose deadline is still ahead is skipped.

        Returns:
            The transitioned tender, or None when skipped
        """
        now = self.time_provider.now()
        transitioned: dict[str, TenderStatus] = {}

        def mutate(tender: Tender) -> Tender:
            if tender.is_deleted:
                raise _Skip("deleted")
            if tender.status not in SUBMISSION_STATUSES:
                raise _Skip(f"status is {tender.status.value}")
            if not tender.deadline_passed(now):
                raise _Skip("deadline not reached")

            target = deadline_target(tender.workflow_type)
            updated = tender.with_status(target).with_timestamp(
                deadline_timestamp_field(tender.workflow_type), now
            )
            updated = self.audit.append(
                updated,
                audit.AUTO_TRANSITION,
                None,
                previous_status=tender.status,
                new_status=target,
                triggered_by=audit.SCHEDULER_TRIGGER,
            )
            transitioned["from"] = tender.status
            return _with_days_remaining(updated, now)

        try:
            tender = self.transact(tender_id, mutate)
        except _Skip as skip:
            logger.debug("Deadline transition skipped", tender_id=tender_id, reason=skip.reason)
            return None

        self._record_transition(transitioned["from"], tender.status, "scheduler")
        logger.info(
            "Deadline transition applied",
            tender_id=tender_id,
            previous_status=transitioned["from"].value,
            new_status=tender.status.value,
        )
        self.bus.notify_owner(
            tender,
            DEADLINE_REACHED if tender.status == TenderStatus.DEADLINE_REACHED else TENDER_CLOSED,
            status=tender.status.value,
        )
        return tender

    def refresh_days_remaining(self, tender: Tender) -> bool:
        """
        Best-effort metadata refresh for an active tender

        Writes only when the value changed, adds no audit entry and gives
        up on the first conflict; the next scan will try again.

        Returns:
            True if a new value was written
        """
        now = self.time_provider.now()
        value = days_until(tender.deadline, now)
        if value == tender.metadata.days_remaining:
            return False
        updated = _with_days_remaining(tender, now)
        self.store.compare_and_set(updated, tender.version)
        return True

    # ========================================================================
    # Moderation
    # ========================================================================

    def _status_after_approval(self, tender: Tender, now: datetime) -> Tender:
        """
        Work out where an approved tender lands

        The pre-flag status is a hint, not an answer: if the deadline
        elapsed while the tender was cancelled, it lands in the deadline
        state for its workflow instead of reopening for submissions.
        """
        previous = tender.status_before_moderation or TenderStatus.DRAFT

        if previous in SUBMISSION_STATUSES and tender.deadline_passed(now):
            target = deadline_target(tender.workflow_type)
            field = deadline_timestamp_field(tender.workflow_type)
            restored = tender.model_copy(update={"status": target})
            if getattr(restored, field) is None:
                restored = restored.with_timestamp(field, now)
            return restored

        return tender.model_copy(update={"status": previous})

    @track_action_duration("moderate_tender")
    def moderate_tender(
        self,
        tender_id: str,
        action: ModerationAction | str,
        actor_id: str,
        reason: str | None = None,
    ) -> Tender:
        """
        Admin override: flag cancels, approve restores

        The caller is expected to have verified the admin role; the facade
        and the HTTP layer do.
        """
        moderation = ModerationAction(action)
        op = f"moderate_{moderation.value}"
        now = self.time_provider.now()
        seen: dict[str, TenderStatus] = {}

        def flag(tender: Tender) -> Tender:
            if tender.is_deleted:
                raise self.reject(op, RejectionCode.TENDER_DELETED, "Tender has been deleted", tender_id)
            if tender.status == TenderStatus.CANCELLED:
                raise self.reject(
                    op, RejectionCode.ALREADY_FLAGGED, "Tender is already flagged", tender_id
                )
            if tender.status == TenderStatus.CLOSED:
                raise self.reject(
                    op,
                    RejectionCode.INVALID_STATUS,
                    "Closed tenders are terminal and cannot be flagged",
                    tender_id,
                )
            seen["from"] = tender.status
            updated = tender.model_copy(
                update={
                    "status": TenderStatus.CANCELLED,
                    "moderated": True,
                    "moderation_reason": reason,
                    "moderated_by": actor_id,
                    "moderated_at": now,
                    "status_before_moderation": tender.status,
                }
            )
            return self.audit.append(
                updated,
                audit.MODERATION_FLAG,
                actor_id,
                previous_status=tender.status,
                reason=reason,
            )

        def approve(tender: Tender) -> Tender:
            if not tender.moderated or tender.status != TenderStatus.CANCELLED:
                raise self.reject(op, RejectionCode.NOT_FLAGGED, "Tender is not flagged", tender_id)
            seen["from"] = tender.status
            restored = self._status_after_approval(tender, now)
            restored = restored.model_copy(
                update={
                    "moderated": False,
                    "moderation_reason": None,
                    "moderated_by": actor_id,
                    "moderated_at": now,
                    "status_before_moderation": None,
                }
            )
            restored = self.audit.append(
                restored,
                audit.MODERATION_APPROVE,
                actor_id,
                previous_status=tender.status_before_moderation,
                restored_status=restored.status,
                deadline_elapsed=tender.deadline_passed(now),
            )
            return _with_days_remaining(restored, now)

        with LogOperation(logger, op, tender_id=tender_id, actor_id=actor_id):
            tender = self.transact(tender_id, flag if moderation == ModerationAction.FLAG else approve)

        self._record_transition(seen["from"], tender.status, "moderation")
        self.bus.notify_owner(
            tender,
            TENDER_FLAGGED if moderation == ModerationAction.FLAG else TENDER_APPROVED,
            reason=reason,
            status=tender.status.value,
        )
        return tender

    # ========================================================================
    # Proposals, deletion, bookmarks
    # ========================================================================

    @track_action_duration("submit_proposal")
    def submit_proposal(
        self,
        tender_id: str,
        bidder_id: str,
        bidder_role: Role | str,
        bid_amount: Decimal,
        proposal_id: str | None = None,
    ) -> Tender:
        """
        Attach a proposal reference to an accepting tender

        The bid amount is checked here and never written to the audit log,
        so a sealed tender's trail does not leak bids.
        """
        action = "submit_proposal"
        now = self.time_provider.now()
        bid = Decimal(bid_amount)
        new_id = proposal_id or generate_id("prp")

        def mutate(tender: Tender) -> Tender:
            if tender.is_deleted:
                raise self.reject(
                    action, RejectionCode.TENDER_DELETED, "Tender has been deleted", tender_id
                )
            denial = apply_denial_reason(tender, bidder_id, bidder_role, now)
            if denial is not None:
                raise self.reject(action, RejectionCode.APPLY_DENIED, denial, tender_id)
            if bid <= 0:
                raise self.reject(
                    action, RejectionCode.INVALID_BID, "Bid amount must be positive", tender_id
                )
            ratio = Decimal(str(self.policy.max_bid_to_budget_ratio))
            if tender.budget is not None and bid > ratio * tender.budget:
                raise self.reject(
                    action,
                    RejectionCode.BID_EXCEEDS_LIMIT,
                    f"Bid amount cannot exceed {self.policy.max_bid_to_budget_ratio:g}x the tender budget",
                    tender_id,
                )
            if tender.has_proposal_from(bidder_id):
                raise self.reject(
                    action,
                    RejectionCode.DUPLICATE_PROPOSAL,
                    "You have already submitted a proposal for this tender",
                    tender_id,
                )

            ref = ProposalRef(
                proposal_id=new_id, bidder_id=bidder_id, bid_amount=bid, submitted_at=now
            )
            updated = tender.model_copy(update={"proposals": [*tender.proposals, ref]})
            return self.audit.append(
                updated, audit.PROPOSAL_SUBMITTED, bidder_id, proposal_id=new_id
            )

        with LogOperation(logger, action, tender_id=tender_id, bidder_id=bidder_id):
            return self.transact(tender_id, mutate)

    def delete_tender(
        self, tender_id: str, actor_id: str, actor_role: Role | str | None = None
    ) -> Tender:
        """Soft delete. Tenders holding proposals are kept."""
        action = "delete_tender"
        now = self.time_provider.now()

        def mutate(tender: Tender) -> Tender:
            if tender.is_deleted:
                raise self.reject(
                    action, RejectionCode.TENDER_DELETED, "Tender is already deleted", tender_id
                )
            if not is_owner_or_admin(tender, actor_id, actor_role):
                raise self.reject(
                    action,
                    RejectionCode.NOT_AUTHORIZED,
                    "Only the tender owner can delete this tender",
                    tender_id,
                )
            if tender.proposals:
                raise self.reject(
                    action,
                    RejectionCode.INVALID_STATUS,
                    "Tenders with proposals cannot be deleted",
                    tender_id,
                )
            updated = tender.model_copy(update={"is_deleted": True, "deleted_at": now})
            return self.audit.append(updated, audit.DELETED, actor_id, status=tender.status)

        with LogOperation(logger, action, tender_id=tender_id, actor_id=actor_id):
            return self.transact(tender_id, mutate)

    def toggle_saved(self, tender_id: str, user_id: str) -> Tender:
        """Bookmark or un-bookmark an active tender. Not audited."""

        def mutate(tender: Tender) -> Tender:
            if not tender.is_accepting_proposals:
                raise self.reject(
                    "toggle_saved",
                    RejectionCode.TENDER_INACTIVE,
                    "Only active tenders can be saved",
                    tender_id,
                )
            saved_by = list(tender.metadata.saved_by)
            if user_id in saved_by:
                saved_by.remove(user_id)
            else:
                saved_by.append(user_id)
            metadata = tender.metadata.model_copy(update={"saved_by": saved_by})
            return tender.model_copy(update={"metadata": metadata})

        return self.transact(tender_id, mutate)
