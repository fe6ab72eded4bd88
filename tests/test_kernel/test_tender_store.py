"""
Tests for the tender store adapters

Both adapters must give the same answers; every test runs against each.
"""

from datetime import datetime, timedelta, timezone

import pytest

from tenderdesk.kernel.errors import (
    AuditTrailViolation,
    DuplicateTender,
    StoreError,
    VersionConflict,
)
from tenderdesk.kernel.tender_store import SQLiteTenderStore, TenderQuery
from tenderdesk.tender.models import AuditEntry, TenderStatus, WorkflowType
from tests.helpers import make_tender

T0 = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def _entry(action: str) -> AuditEntry:
    return AuditEntry(action=action, actor_id="acme-corp", timestamp=T0)


def test_insert_and_get(store):
    tender = make_tender(tender_id="tnd-1", audit_log=[_entry("CREATED")])

    stored = store.insert(tender)

    assert stored.version == 1
    loaded = store.get("tnd-1")
    assert loaded.model_dump() == stored.model_dump()
    assert loaded.deadline == tender.deadline


def test_get_missing_returns_none(store):
    assert store.get("nope") is None


def test_duplicate_insert_rejected(store):
    store.insert(make_tender(tender_id="tnd-1"))
    with pytest.raises(DuplicateTender):
        store.insert(make_tender(tender_id="tnd-1"))


def test_compare_and_set_bumps_version(store):
    stored = store.insert(make_tender(tender_id="tnd-1"))

    updated = store.compare_and_set(stored.model_copy(update={"title": "Changed"}), 1)

    assert updated.version == 2
    assert store.get("tnd-1").title == "Changed"
    assert store.get("tnd-1").version == 2


def test_stale_write_loses(store):
    stored = store.insert(make_tender(tender_id="tnd-1"))
    store.compare_and_set(stored.model_copy(update={"title": "First"}), 1)

    with pytest.raises(VersionConflict) as exc_info:
        store.compare_and_set(stored.model_copy(update={"title": "Second"}), 1)

    assert exc_info.value.expected_version == 1
    assert exc_info.value.actual_version == 2
    assert store.get("tnd-1").title == "First"


def test_compare_and_set_on_missing_tender(store):
    with pytest.raises(StoreError):
        store.compare_and_set(make_tender(tender_id="ghost"), 1)


def test_audit_log_cannot_shrink(store):
    stored = store.insert(
        make_tender(tender_id="tnd-1", audit_log=[_entry("CREATED"), _entry("PUBLISHED")])
    )
    truncated = stored.model_copy(update={"audit_log": stored.audit_log[:1]})

    with pytest.raises(AuditTrailViolation):
        store.compare_and_set(truncated, 1)
    assert len(store.get("tnd-1").audit_log) == 2


def test_audit_log_cannot_be_rewritten(store):
    stored = store.insert(make_tender(tender_id="tnd-1", audit_log=[_entry("CREATED")]))
    rewritten = stored.model_copy(update={"audit_log": [_entry("SOMETHING_ELSE"), _entry("X")]})

    with pytest.raises(AuditTrailViolation):
        store.compare_and_set(rewritten, 1)


def test_audit_log_may_grow(store):
    stored = store.insert(make_tender(tender_id="tnd-1", audit_log=[_entry("CREATED")]))
    grown = stored.model_copy(update={"audit_log": [*stored.audit_log, _entry("EDITED")]})
    assert len(store.compare_and_set(grown, 1).audit_log) == 2


# =============================================================================
# Queries
# =============================================================================


@pytest.fixture
def populated(store):
    store.insert(make_tender(tender_id="a", deadline=T0 + timedelta(hours=1)))
    store.insert(make_tender(tender_id="b", deadline=T0 - timedelta(hours=1)))
    store.insert(
        make_tender(
            tender_id="c",
            workflow_type=WorkflowType.CLOSED,
            status=TenderStatus.LOCKED,
            deadline=T0 - timedelta(minutes=1),
        )
    )
    store.insert(
        make_tender(
            tender_id="d",
            workflow_type=WorkflowType.CLOSED,
            status=TenderStatus.DEADLINE_REACHED,
            deadline=T0 - timedelta(days=1),
            deadline_reached_at=T0 - timedelta(days=1),
            owner_id="globex",
        )
    )
    store.insert(make_tender(tender_id="e", status=TenderStatus.DRAFT, deadline=None))
    store.insert(
        make_tender(tender_id="f", deadline=T0 - timedelta(hours=2), is_deleted=True)
    )
    return store


def _ids(tenders) -> list[str]:
    return [t.tender_id for t in tenders]


def test_find_due_tenders(populated):
    due = populated.find(
        TenderQuery(
            statuses=[TenderStatus.LOCKED, TenderStatus.PUBLISHED],
            deadline_at_or_before=T0,
        )
    )
    # ordered by deadline; deleted "f" excluded
    assert _ids(due) == ["b", "c"]


def test_find_deadline_exactly_now_is_due(store):
    store.insert(make_tender(tender_id="x", deadline=T0))
    assert _ids(store.find(TenderQuery(deadline_at_or_before=T0))) == ["x"]
    assert _ids(store.find(TenderQuery(deadline_after=T0))) == []


def test_find_with_other_timezone(store):
    plus_two = timezone(timedelta(hours=2))
    store.insert(make_tender(tender_id="x", deadline=datetime(2025, 1, 15, 14, 30, tzinfo=plus_two)))
    # 14:30+02:00 is 12:30 UTC
    assert _ids(store.find(TenderQuery(deadline_at_or_before=T0 + timedelta(minutes=30)))) == ["x"]
    assert _ids(store.find(TenderQuery(deadline_at_or_before=T0 + timedelta(minutes=29)))) == []


def test_find_by_owner_and_workflow(populated):
    assert _ids(populated.find(TenderQuery(owner_id="globex"))) == ["d"]
    assert _ids(populated.find(TenderQuery(workflow_type=WorkflowType.CLOSED))) == ["d", "c"]


def test_find_unrevealed(populated):
    pending = populated.find(
        TenderQuery(
            statuses=[TenderStatus.DEADLINE_REACHED],
            workflow_type=WorkflowType.CLOSED,
            revealed=False,
        )
    )
    assert _ids(pending) == ["d"]


def test_find_includes_deleted_on_request(populated):
    assert "f" not in _ids(populated.find(TenderQuery()))
    assert "f" in _ids(populated.find(TenderQuery(include_deleted=True)))


def test_find_puts_missing_deadlines_last_and_limits(populated):
    everything = _ids(populated.find(TenderQuery()))
    assert everything[-1] == "e"
    assert _ids(populated.find(TenderQuery(limit=2))) == everything[:2]


def test_find_with_empty_status_list(populated):
    assert populated.find(TenderQuery(statuses=[])) == []


def test_count_by_status(populated):
    counts = populated.count_by_status()
    assert counts == {"published": 2, "locked": 1, "deadline_reached": 1, "draft": 1}


def test_sqlite_store_survives_reopen(temp_db):
    first = SQLiteTenderStore(temp_db)
    first.insert(make_tender(tender_id="persisted"))

    reopened = SQLiteTenderStore(temp_db)
    assert reopened.get("persisted").version == 1
