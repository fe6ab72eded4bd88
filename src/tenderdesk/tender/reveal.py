"""
Reveal Protocol

Unsealing a closed-workflow tender is the only way can_view_proposals
ever turns true for it. The reveal is one-shot and irreversible: the
check that revealed_at is still empty and the write that sets it are the
same compare-and-set, so of two simultaneous reveals exactly one lands
and the other is re-checked into ALREADY_REVEALED.

The status stays deadline_reached; revealed_at is what records the
reveal.
"""

from tenderdesk.kernel.errors import RejectionCode
from tenderdesk.kernel.logging import LogOperation, get_logger
from tenderdesk.kernel.metrics import track_action_duration
from tenderdesk.tender import audit
from tenderdesk.tender.lifecycle import LifecycleEngine
from tenderdesk.tender.models import Role, Tender, TenderStatus, WorkflowType
from tenderdesk.tender.visibility import is_owner_or_admin

logger = get_logger(__name__)

ACTION = "reveal_proposals"


class RevealProtocol:
    def __init__(self, engine: LifecycleEngine) -> None:
        self.engine = engine

    def check(self, tender: Tender, actor_id: str, actor_role: Role | str | None) -> None:
        """
        Raise TransitionRejected unless `tender` can be revealed by this actor

        Order matters for the reason reported: a tender that is not sealed
        at all says NOT_SEALED, a sealed one before its deadline says
        DEADLINE_NOT_REACHED, and only then is a second reveal reported.
        """
        reject = self.engine.reject
        tender_id = tender.tender_id

        if tender.is_deleted:
            raise reject(ACTION, RejectionCode.TENDER_DELETED, "Tender has been deleted", tender_id)
        if not is_owner_or_admin(tender, actor_id, actor_role):
            raise reject(
                ACTION,
                RejectionCode.NOT_AUTHORIZED,
                "Only the tender owner or an admin can reveal proposals",
                tender_id,
            )
        if tender.workflow_type != WorkflowType.CLOSED:
            raise reject(
                ACTION,
                RejectionCode.NOT_SEALED,
                "Open-workflow tenders have no sealed proposals to reveal",
                tender_id,
            )
        if tender.revealed_at is not None:
            raise reject(
                ACTION, RejectionCode.ALREADY_REVEALED, "Proposals were already revealed", tender_id
            )
        if tender.status in (TenderStatus.DRAFT, TenderStatus.PUBLISHED, TenderStatus.LOCKED):
            raise reject(
                ACTION,
                RejectionCode.DEADLINE_NOT_REACHED,
                "Cannot reveal proposals before the deadline is reached",
                tender_id,
            )
        if tender.status != TenderStatus.DEADLINE_REACHED or tender.deadline_reached_at is None:
            raise reject(
                ACTION,
                RejectionCode.INVALID_STATUS,
                f"Tender in status {tender.status.value} cannot be revealed",
                tender_id,
            )

    @track_action_duration(ACTION)
    def reveal_proposals(
        self, tender_id: str, actor_id: str, actor_role: Role | str | None = None
    ) -> Tender:
        now = self.engine.time_provider.now()

        def mutate(tender: Tender) -> Tender:
            self.check(tender, actor_id, actor_role)
            revealed = tender.with_timestamp("revealed_at", now)
            return self.engine.audit.append(
                revealed,
                audit.REVEALED,
                actor_id,
                proposal_count=len(tender.proposals),
            )

        with LogOperation(logger, ACTION, tender_id=tender_id, actor_id=actor_id):
            return self.engine.transact(tender_id, mutate)
