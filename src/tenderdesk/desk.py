"""
TenderDesk - Main façade class

One object wiring the store, the lifecycle engine, the reveal protocol
and the scheduler together. API handlers, the CLI and tests all go
through it.

Example:
    >>> from tenderdesk import TenderDesk
    >>> desk = TenderDesk("tenders.db")
    >>> tender = desk.create_tender("acme", "company", title="Roof repair",
    ...                             description="...", budget=5000,
    ...                             deadline=in_two_weeks, workflow_type="closed")
    >>> desk.publish_tender(tender.tender_id, "acme")   # status: locked
    >>> desk.run_deadline_scan()                         # after the deadline
    >>> desk.reveal_proposals(tender.tender_id, "acme")
"""

from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from tenderdesk.kernel.bus import NotificationBus, NotificationRecorder
from tenderdesk.kernel.errors import RejectionCode, TenderNotFound, TransitionRejected
from tenderdesk.kernel.policy import LifecyclePolicy
from tenderdesk.kernel.tender_store import (
    InMemoryTenderStore,
    SQLiteTenderStore,
    TenderQuery,
    TenderStore,
)
from tenderdesk.kernel.time import RealTimeProvider, TimeProvider
from tenderdesk.tender import visibility
from tenderdesk.tender.commands import CreateTender, EditTender, ModerationAction
from tenderdesk.tender.lifecycle import LifecycleEngine
from tenderdesk.tender.models import (
    Role,
    Tender,
    TenderCategory,
    TenderStatus,
    VisibilityRules,
    VisibilityType,
    WorkflowType,
    summarize,
)
from tenderdesk.tender.reveal import RevealProtocol
from tenderdesk.tender.scheduler import DeadlineScheduler, ScanResult


class TenderDesk:
    """
    tenderdesk main façade

    - tender creation, editing, publication and soft deletion
    - proposal submission and bookmarks
    - sealed-bid reveal
    - admin moderation
    - access decisions
    - deadline scheduler (one-shot or background)
    """

    def __init__(
        self,
        sqlite_path: str | Path | None = None,
        policy: LifecyclePolicy | None = None,
        time_provider: TimeProvider | None = None,
        store: TenderStore | None = None,
    ) -> None:
        """
        Args:
            sqlite_path: SQLite database file; in-memory store if None and no store given
            policy: Engine parameters (defaults if None)
            time_provider: Clock (system clock if None)
            store: Explicit store, overrides sqlite_path
        """
        self.policy = policy or LifecyclePolicy()
        self.time_provider = time_provider or RealTimeProvider()

        if store is not None:
            self.store = store
        elif sqlite_path is not None:
            self.store = SQLiteTenderStore(sqlite_path)
        else:
            self.store = InMemoryTenderStore()

        self.bus = NotificationBus(self.time_provider)
        self.outbox = NotificationRecorder(maxlen=self.policy.outbox_size)
        self.bus.subscribe("*", self.outbox)

        self.engine = LifecycleEngine(self.store, self.time_provider, self.policy, self.bus)
        self.reveal = RevealProtocol(self.engine)
        self.scheduler = DeadlineScheduler(self.engine, self.policy)

    # ========================================================================
    # Tender management
    # ========================================================================

    def create_tender(
        self,
        owner_id: str,
        owner_role: Role | str,
        title: str = "",
        description: str = "",
        category: TenderCategory | str = TenderCategory.PROFESSIONAL,
        workflow_type: WorkflowType | str = WorkflowType.OPEN,
        deadline: datetime | None = None,
        budget: Decimal | float | str | None = None,
        visibility_type: VisibilityType | str = VisibilityType.PUBLIC,
        invited_users: list[str] | None = None,
        allowed_companies: list[str] | None = None,
    ) -> Tender:
        command = CreateTender(
            title=title,
            description=description,
            category=category,
            workflow_type=workflow_type,
            deadline=deadline,
            budget=Decimal(str(budget)) if budget is not None else None,
            visibility=VisibilityRules(
                visibility_type=visibility_type,
                invited_users=invited_users or [],
                allowed_companies=allowed_companies or [],
            ),
        )
        return self.engine.create_tender(owner_id, owner_role, command)

    def edit_tender(
        self,
        tender_id: str,
        actor_id: str,
        actor_role: Role | str | None = None,
        **changes: Any,
    ) -> Tender:
        """Partial update, e.g. edit_tender(tid, "acme", title="New title")"""
        return self.engine.edit_tender(
            tender_id, actor_id, EditTender(**changes), actor_role=actor_role
        )

    def publish_tender(self, tender_id: str, actor_id: str) -> Tender:
        return self.engine.publish_tender(tender_id, actor_id)

    def delete_tender(
        self, tender_id: str, actor_id: str, actor_role: Role | str | None = None
    ) -> Tender:
        return self.engine.delete_tender(tender_id, actor_id, actor_role)

    def get_tender(self, tender_id: str) -> Tender:
        """Raw tender, no access checks (internal use and admin tooling)"""
        return self.engine.load(tender_id)

    def list_tenders(
        self,
        caller_id: str | None = None,
        caller_role: Role | str | None = None,
        status: TenderStatus | str | None = None,
        owner_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Summaries of the tenders the caller may view"""
        query = TenderQuery(
            statuses=[TenderStatus(status)] if status else None,
            owner_id=owner_id,
        )
        return [
            summarize(t)
            for t in self.store.find(query)
            if visibility.can_view(t, caller_id, caller_role)
        ]

    def view_tender(
        self, tender_id: str, caller_id: str | None, caller_role: Role | str | None
    ) -> dict[str, Any]:
        """
        The tender as this caller may see it

        A tender the caller may not view is reported as not found.
        Proposals are included only when can_view_proposals allows, and the
        audit log never names bidders of a sealed tender.
        """
        tender = self.engine.load(tender_id)
        if not visibility.can_view(tender, caller_id, caller_role):
            raise TenderNotFound(tender_id)

        data = tender.model_dump(mode="json", exclude={"proposals", "audit_log", "version"})
        data["proposal_count"] = len(tender.proposals)
        if visibility.can_view_proposals(tender, caller_id, caller_role):
            data["proposals"] = [p.model_dump(mode="json") for p in tender.proposals]
        if visibility.is_owner_or_admin(tender, caller_id, caller_role):
            data["audit_log"] = [
                e.model_dump(mode="json")
                for e in visibility.visible_audit_log(tender, caller_id, caller_role)
            ]
        return data

    # ========================================================================
    # Proposals
    # ========================================================================

    def submit_proposal(
        self,
        tender_id: str,
        bidder_id: str,
        bidder_role: Role | str,
        bid_amount: Decimal | float | str,
        proposal_id: str | None = None,
    ) -> Tender:
        return self.engine.submit_proposal(
            tender_id, bidder_id, bidder_role, Decimal(str(bid_amount)), proposal_id
        )

    def toggle_saved(self, tender_id: str, user_id: str) -> Tender:
        return self.engine.toggle_saved(tender_id, user_id)

    # ========================================================================
    # Reveal and moderation
    # ========================================================================

    def reveal_proposals(
        self, tender_id: str, actor_id: str, actor_role: Role | str | None = None
    ) -> Tender:
        return self.reveal.reveal_proposals(tender_id, actor_id, actor_role)

    def moderate_tender(
        self,
        tender_id: str,
        action: ModerationAction | str,
        actor_id: str,
        actor_role: Role | str,
        reason: str | None = None,
    ) -> Tender:
        """Flag or approve a tender. Admins only."""
        if actor_role != Role.ADMIN:
            raise self.engine.reject(
                f"moderate_{ModerationAction(action).value}",
                RejectionCode.NOT_AUTHORIZED,
                "Only admins can moderate tenders",
                tender_id,
            )
        return self.engine.moderate_tender(tender_id, action, actor_id, reason)

    # ========================================================================
    # Access decisions
    # ========================================================================

    def can_view(self, tender: Tender, caller_id: str | None, caller_role: Role | str | None) -> bool:
        return visibility.can_view(tender, caller_id, caller_role)

    def can_apply(self, tender: Tender, caller_id: str | None, caller_role: Role | str | None) -> bool:
        return visibility.can_apply(tender, caller_id, caller_role, self.time_provider.now())

    def can_view_proposals(
        self, tender: Tender, caller_id: str | None, caller_role: Role | str | None
    ) -> bool:
        return visibility.can_view_proposals(tender, caller_id, caller_role)

    def can_edit(self, tender: Tender, caller_id: str | None, caller_role: Role | str | None = None) -> bool:
        return visibility.can_edit(tender, caller_id, caller_role, self.time_provider.now())

    def access(
        self, tender_id: str, caller_id: str | None, caller_role: Role | str | None
    ) -> dict[str, Any]:
        """All four decisions for one caller, plus why applying is refused"""
        tender = self.engine.load(tender_id)
        now = self.time_provider.now()
        return {
            "tender_id": tender_id,
            "can_view": visibility.can_view(tender, caller_id, caller_role),
            "can_apply": visibility.can_apply(tender, caller_id, caller_role, now),
            "can_view_proposals": visibility.can_view_proposals(tender, caller_id, caller_role),
            "can_edit": visibility.can_edit(tender, caller_id, caller_role, now),
            "apply_denied_reason": visibility.apply_denial_reason(
                tender, caller_id, caller_role, now
            ),
        }

    # ========================================================================
    # Scheduler
    # ========================================================================

    def run_deadline_scan(self) -> ScanResult:
        return self.scheduler.run_deadline_scan()

    def run_stuck_reveal_check(self) -> ScanResult:
        return self.scheduler.run_stuck_reveal_check()

    def start_scheduler(self) -> None:
        self.scheduler.start()

    def stop_scheduler(self) -> None:
        self.scheduler.stop()


def rejection_payload(error: TransitionRejected) -> dict[str, Any]:
    """JSON-ready body for a rejected action"""
    return {
        "success": False,
        "code": error.code.value,
        "message": error.message,
        "tender_id": error.tender_id,
    }
