"""
Test Helper Functions - Builders and Assertions

Builders for tenders in each lifecycle state, going through the real
engine so that every built tender carries a realistic audit trail.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from tenderdesk.kernel.time import TestTimeProvider
from tenderdesk.tender.commands import CreateTender
from tenderdesk.tender.lifecycle import LifecycleEngine
from tenderdesk.tender.models import (
    STATUS_RANK,
    Tender,
    TenderCategory,
    TenderStatus,
    VisibilityRules,
    WorkflowType,
)

OWNER = "acme-corp"
OTHER_COMPANY = "globex"
FREELANCER = "freelancer-ada"
ADMIN = "admin-root"


def create_command(
    now: datetime,
    workflow_type: WorkflowType = WorkflowType.OPEN,
    category: TenderCategory = TenderCategory.PROFESSIONAL,
    deadline_in: timedelta = timedelta(hours=1),
    budget: Decimal | None = Decimal("1000"),
    visibility: VisibilityRules | None = None,
    **overrides: Any,
) -> CreateTender:
    """Builder for a complete, publishable CreateTender"""
    fields: dict[str, Any] = {
        "title": "Office renovation",
        "description": "Renovate the third floor",
        "category": category,
        "workflow_type": workflow_type,
        "deadline": now + deadline_in,
        "budget": budget,
        "visibility": visibility or VisibilityRules(),
    }
    fields.update(overrides)
    return CreateTender(**fields)


def create_draft(
    engine: LifecycleEngine,
    workflow_type: WorkflowType = WorkflowType.OPEN,
    owner_id: str = OWNER,
    **kwargs: Any,
) -> Tender:
    command = create_command(engine.time_provider.now(), workflow_type, **kwargs)
    return engine.create_tender(owner_id, "company", command)


def create_published(
    engine: LifecycleEngine,
    workflow_type: WorkflowType = WorkflowType.OPEN,
    owner_id: str = OWNER,
    **kwargs: Any,
) -> Tender:
    draft = create_draft(engine, workflow_type, owner_id, **kwargs)
    return engine.publish_tender(draft.tender_id, owner_id)


def past_deadline(test_time: TestTimeProvider, tender: Tender, by: timedelta = timedelta(minutes=1)) -> None:
    """Move the clock just past the tender's deadline"""
    assert tender.deadline is not None
    test_time.set_time(tender.deadline + by)


def make_tender(**overrides: Any) -> Tender:
    """Bare Tender for pure-function tests, no store involved"""
    fields: dict[str, Any] = {
        "tender_id": "tnd-test",
        "title": "Office renovation",
        "description": "Renovate the third floor",
        "owner_id": OWNER,
        "category": TenderCategory.PROFESSIONAL,
        "workflow_type": WorkflowType.OPEN,
        "status": TenderStatus.PUBLISHED,
        "deadline": datetime(2025, 1, 15, 13, 0, tzinfo=timezone.utc),
        "budget": Decimal("1000"),
        "created_at": datetime(2025, 1, 15, 11, 0, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return Tender(**fields)


def audit_actions(tender: Tender) -> list[str]:
    return [entry.action for entry in tender.audit_log]


def assert_monotonic(statuses: list[TenderStatus]) -> None:
    """Custom assertion: status sequence never moves backward"""
    ranks = [STATUS_RANK[s] for s in statuses]
    assert ranks == sorted(ranks), f"Status regressed: {[s.value for s in statuses]}"
