"""
Tests for the lifecycle engine

Every test that takes the `engine` fixture runs twice, once on the
in-memory store and once on SQLite.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from tenderdesk.kernel.bus import (
    DEADLINE_REACHED,
    TENDER_APPROVED,
    TENDER_CLOSED,
    TENDER_FLAGGED,
)
from tenderdesk.kernel.errors import (
    RejectionCode,
    TenderNotFound,
    TransitionRejected,
    WorkflowTypeImmutable,
)
from tenderdesk.tender import audit
from tenderdesk.tender.commands import CreateTender, EditTender, ModerationAction
from tenderdesk.tender.lifecycle import days_until
from tenderdesk.tender.models import (
    TenderCategory,
    TenderStatus,
    VisibilityRules,
    VisibilityType,
    WorkflowType,
)
from tests.helpers import (
    ADMIN,
    FREELANCER,
    OTHER_COMPANY,
    OWNER,
    assert_monotonic,
    audit_actions,
    create_command,
    create_draft,
    create_published,
    past_deadline,
)


def _rejected(exc_info: pytest.ExceptionInfo) -> RejectionCode:
    return exc_info.value.code


# =============================================================================
# Creation
# =============================================================================


def test_create_tender_starts_in_draft(engine, test_time):
    tender = create_draft(engine)

    assert tender.status == TenderStatus.DRAFT
    assert tender.version == 1
    assert tender.tender_id.startswith("tnd_")
    assert tender.published_at is None
    assert tender.metadata.days_remaining == 1
    assert audit_actions(tender) == [audit.CREATED]
    assert engine.store.get(tender.tender_id).model_dump() == tender.model_dump()


def test_freelancer_cannot_create_tender(engine, test_time):
    with pytest.raises(TransitionRejected) as exc_info:
        engine.create_tender(FREELANCER, "freelancer", create_command(test_time.now()))
    assert _rejected(exc_info) == RejectionCode.NOT_AUTHORIZED
    assert "Freelancers" in exc_info.value.message


def test_create_with_past_deadline_rejected(engine, test_time):
    command = create_command(test_time.now(), deadline_in=timedelta(hours=-1))
    with pytest.raises(TransitionRejected) as exc_info:
        engine.create_tender(OWNER, "company", command)
    assert _rejected(exc_info) == RejectionCode.DEADLINE_NOT_IN_FUTURE


def test_incomplete_draft_is_allowed(engine):
    tender = engine.create_tender(OWNER, "organization", CreateTender(title="Later"))
    assert tender.deadline is None
    assert tender.budget is None
    assert tender.metadata.days_remaining is None


# =============================================================================
# Publication
# =============================================================================


def test_publish_open_tender(engine, test_time):
    draft = create_draft(engine)
    test_time.advance_minutes(5)

    published = engine.publish_tender(draft.tender_id, OWNER)

    assert published.status == TenderStatus.PUBLISHED
    assert published.published_at == test_time.now()
    assert published.version == draft.version + 1
    assert audit_actions(published) == [audit.CREATED, audit.PUBLISHED]
    assert published.audit_log[-1].details["previous_status"] == "draft"


def test_publish_closed_tender_locks_in_the_same_write(engine, test_time):
    draft = create_draft(engine, WorkflowType.CLOSED)

    locked = engine.publish_tender(draft.tender_id, OWNER)

    assert locked.status == TenderStatus.LOCKED
    assert locked.published_at == test_time.now()
    assert locked.version == draft.version + 1
    assert audit_actions(locked) == [audit.CREATED, audit.PUBLISHED, audit.LOCKED]


def test_publish_twice_reports_already_transitioned(engine):
    tender = create_published(engine)
    with pytest.raises(TransitionRejected) as exc_info:
        engine.publish_tender(tender.tender_id, OWNER)
    assert _rejected(exc_info) == RejectionCode.ALREADY_TRANSITIONED
    assert engine.load(tender.tender_id).version == tender.version


def test_publish_requires_owner(engine):
    draft = create_draft(engine)
    with pytest.raises(TransitionRejected) as exc_info:
        engine.publish_tender(draft.tender_id, OTHER_COMPANY)
    assert _rejected(exc_info) == RejectionCode.NOT_AUTHORIZED


def test_publish_lists_missing_fields(engine):
    draft = engine.create_tender(OWNER, "company", CreateTender(title="Half done"))
    with pytest.raises(TransitionRejected) as exc_info:
        engine.publish_tender(draft.tender_id, OWNER)
    assert _rejected(exc_info) == RejectionCode.MISSING_REQUIRED_FIELDS
    assert "description" in exc_info.value.message
    assert "budget" in exc_info.value.message
    assert "deadline" in exc_info.value.message
    assert "title" not in exc_info.value.message


def test_publish_after_deadline_elapsed_in_draft(engine, test_time):
    draft = create_draft(engine)
    past_deadline(test_time, draft)

    with pytest.raises(TransitionRejected) as exc_info:
        engine.publish_tender(draft.tender_id, OWNER)
    assert _rejected(exc_info) == RejectionCode.DEADLINE_NOT_IN_FUTURE
    assert engine.load(draft.tender_id).status == TenderStatus.DRAFT


def test_publish_missing_tender(engine):
    with pytest.raises(TenderNotFound):
        engine.publish_tender("tnd_missing", OWNER)


# =============================================================================
# Editing
# =============================================================================


def test_edit_draft_records_changed_fields(engine):
    draft = create_draft(engine)

    edited = engine.edit_tender(
        draft.tender_id, OWNER, EditTender(title="New title", budget=Decimal("2500"))
    )

    assert edited.title == "New title"
    assert edited.budget == Decimal("2500")
    assert audit_actions(edited)[-1] == audit.EDITED
    assert edited.audit_log[-1].details["fields"] == ["budget", "title"]


def test_edit_without_actual_changes_writes_nothing(engine):
    draft = create_draft(engine)
    same = engine.edit_tender(draft.tender_id, OWNER, EditTender(title=draft.title))
    assert same.version == draft.version
    assert audit_actions(same) == [audit.CREATED]


def test_edit_deadline_refreshes_days_remaining(engine, test_time):
    draft = create_draft(engine)
    edited = engine.edit_tender(
        draft.tender_id, OWNER, EditTender(deadline=test_time.now() + timedelta(days=3, hours=1))
    )
    assert edited.metadata.days_remaining == 4


def test_open_published_tender_is_editable(engine):
    tender = create_published(engine)
    edited = engine.edit_tender(tender.tender_id, OWNER, EditTender(description="Updated"))
    assert edited.description == "Updated"
    assert edited.status == TenderStatus.PUBLISHED


def test_sealed_tender_cannot_be_edited_even_by_admin(engine):
    tender = create_published(engine, WorkflowType.CLOSED)
    for actor_id, role in [(OWNER, "company"), (ADMIN, "admin")]:
        with pytest.raises(TransitionRejected) as exc_info:
            engine.edit_tender(tender.tender_id, actor_id, EditTender(title="x"), role)
        assert _rejected(exc_info) == RejectionCode.SEALED_TENDER_LOCKED
    assert engine.load(tender.tender_id).title == tender.title


def test_workflow_type_immutable_after_publication(engine):
    tender = create_published(engine)
    with pytest.raises(WorkflowTypeImmutable):
        engine.edit_tender(
            tender.tender_id, OWNER, EditTender(workflow_type=WorkflowType.CLOSED)
        )
    assert engine.load(tender.tender_id).workflow_type == WorkflowType.OPEN


def test_workflow_type_can_change_in_draft(engine):
    draft = create_draft(engine)
    edited = engine.edit_tender(
        draft.tender_id, OWNER, EditTender(workflow_type=WorkflowType.CLOSED)
    )
    assert edited.workflow_type == WorkflowType.CLOSED


def test_edit_by_stranger_rejected(engine):
    draft = create_draft(engine)
    with pytest.raises(TransitionRejected) as exc_info:
        engine.edit_tender(draft.tender_id, OTHER_COMPANY, EditTender(title="mine now"), "company")
    assert _rejected(exc_info) == RejectionCode.NOT_AUTHORIZED


def test_closed_open_tender_cannot_be_edited(engine, test_time):
    tender = create_published(engine)
    past_deadline(test_time, tender)
    engine.apply_deadline_transition(tender.tender_id)

    with pytest.raises(TransitionRejected) as exc_info:
        engine.edit_tender(tender.tender_id, OWNER, EditTender(title="late"))
    assert _rejected(exc_info) == RejectionCode.EDIT_NOT_ALLOWED


def test_deadline_cannot_be_pushed_back_once_passed(engine, test_time):
    tender = create_published(engine)
    past_deadline(test_time, tender)

    with pytest.raises(TransitionRejected) as exc_info:
        engine.edit_tender(
            tender.tender_id, OWNER, EditTender(deadline=test_time.now() + timedelta(days=30))
        )
    assert _rejected(exc_info) == RejectionCode.DEADLINE_PASSED

    stored = engine.load(tender.tender_id)
    assert stored.deadline == tender.deadline
    closed = engine.apply_deadline_transition(tender.tender_id)
    assert closed is not None
    assert closed.status == TenderStatus.CLOSED


def test_draft_deadline_can_be_fixed_after_it_elapsed(engine, test_time):
    draft = create_draft(engine)
    past_deadline(test_time, draft)

    edited = engine.edit_tender(
        draft.tender_id, OWNER, EditTender(deadline=test_time.now() + timedelta(days=2))
    )
    assert edited.deadline == test_time.now() + timedelta(days=2)


# =============================================================================
# Deadline transition
# =============================================================================


def test_deadline_closes_open_tender(engine, test_time, recorder):
    tender = create_published(engine)
    past_deadline(test_time, tender)

    closed = engine.apply_deadline_transition(tender.tender_id)

    assert closed is not None
    assert closed.status == TenderStatus.CLOSED
    assert closed.closed_at == test_time.now()
    assert closed.deadline_reached_at is None
    assert closed.metadata.days_remaining == 0

    entry = closed.audit_log[-1]
    assert entry.action == audit.AUTO_TRANSITION
    assert entry.actor_id is None
    assert entry.details == {
        "previous_status": "published",
        "new_status": "closed",
        "triggered_by": "deadline_scheduler",
    }
    assert [n.event_type for n in recorder.received] == [TENDER_CLOSED]
    assert recorder.received[0].recipient_id == OWNER


def test_deadline_moves_sealed_tender_to_deadline_reached(engine, test_time, recorder):
    tender = create_published(engine, WorkflowType.CLOSED)
    past_deadline(test_time, tender)

    reached = engine.apply_deadline_transition(tender.tender_id)

    assert reached is not None
    assert reached.status == TenderStatus.DEADLINE_REACHED
    assert reached.deadline_reached_at == test_time.now()
    assert reached.revealed_at is None
    assert reached.is_sealed
    assert recorder.of_type(DEADLINE_REACHED)[0].details == {"status": "deadline_reached"}


def test_deadline_transition_is_idempotent(engine, test_time):
    tender = create_published(engine)
    past_deadline(test_time, tender)

    first = engine.apply_deadline_transition(tender.tender_id)
    test_time.advance_minutes(1)
    second = engine.apply_deadline_transition(tender.tender_id)

    assert first is not None
    assert second is None
    stored = engine.load(tender.tender_id)
    assert stored.closed_at == first.closed_at
    assert audit_actions(stored).count(audit.AUTO_TRANSITION) == 1


def test_no_transition_before_deadline(engine, test_time):
    tender = create_published(engine)
    test_time.set_time(tender.deadline - timedelta(seconds=1))

    assert engine.apply_deadline_transition(tender.tender_id) is None
    assert engine.load(tender.tender_id).status == TenderStatus.PUBLISHED


def test_deadline_exactly_now_transitions(engine, test_time):
    tender = create_published(engine)
    test_time.set_time(tender.deadline)
    assert engine.apply_deadline_transition(tender.tender_id) is not None


def test_deadline_transition_skips_drafts_and_deleted(engine, test_time):
    draft = create_draft(engine)
    published = create_published(engine)
    engine.delete_tender(published.tender_id, OWNER)
    past_deadline(test_time, published)

    assert engine.apply_deadline_transition(draft.tender_id) is None
    assert engine.apply_deadline_transition(published.tender_id) is None
    assert engine.load(draft.tender_id).status == TenderStatus.DRAFT


def test_full_lifecycle_is_monotonic(engine, test_time):
    draft = create_draft(engine, WorkflowType.CLOSED)
    locked = engine.publish_tender(draft.tender_id, OWNER)
    past_deadline(test_time, locked)
    reached = engine.apply_deadline_transition(draft.tender_id)

    assert reached is not None
    assert_monotonic([draft.status, locked.status, reached.status])


# =============================================================================
# Moderation
# =============================================================================


def test_flag_cancels_and_remembers_previous_status(engine, test_time, recorder):
    tender = create_published(engine)

    flagged = engine.moderate_tender(
        tender.tender_id, ModerationAction.FLAG, ADMIN, reason="Spam"
    )

    assert flagged.status == TenderStatus.CANCELLED
    assert flagged.moderated is True
    assert flagged.moderation_reason == "Spam"
    assert flagged.moderated_by == ADMIN
    assert flagged.moderated_at == test_time.now()
    assert flagged.status_before_moderation == TenderStatus.PUBLISHED
    assert flagged.audit_log[-1].action == audit.MODERATION_FLAG
    assert recorder.of_type(TENDER_FLAGGED)[0].details["reason"] == "Spam"


def test_flag_twice_rejected(engine):
    tender = create_published(engine)
    engine.moderate_tender(tender.tender_id, "flag", ADMIN, reason="Spam")
    with pytest.raises(TransitionRejected) as exc_info:
        engine.moderate_tender(tender.tender_id, "flag", ADMIN, reason="Spam")
    assert _rejected(exc_info) == RejectionCode.ALREADY_FLAGGED


def test_closed_tender_cannot_be_flagged(engine, test_time):
    tender = create_published(engine)
    past_deadline(test_time, tender)
    engine.apply_deadline_transition(tender.tender_id)

    with pytest.raises(TransitionRejected) as exc_info:
        engine.moderate_tender(tender.tender_id, "flag", ADMIN, reason="Late")
    assert _rejected(exc_info) == RejectionCode.INVALID_STATUS


def test_approve_restores_previous_status(engine, recorder):
    tender = create_published(engine, WorkflowType.CLOSED)
    engine.moderate_tender(tender.tender_id, "flag", ADMIN, reason="Check")

    approved = engine.moderate_tender(tender.tender_id, "approve", ADMIN)

    assert approved.status == TenderStatus.LOCKED
    assert approved.moderated is False
    assert approved.moderation_reason is None
    assert approved.status_before_moderation is None
    assert approved.audit_log[-1].action == audit.MODERATION_APPROVE
    assert approved.audit_log[-1].details["restored_status"] == "locked"
    assert len(recorder.of_type(TENDER_APPROVED)) == 1


def test_approve_after_deadline_does_not_reopen(engine, test_time):
    tender = create_published(engine)
    engine.moderate_tender(tender.tender_id, "flag", ADMIN, reason="Check")
    past_deadline(test_time, tender, by=timedelta(hours=2))

    approved = engine.moderate_tender(tender.tender_id, "approve", ADMIN)

    assert approved.status == TenderStatus.CLOSED
    assert approved.closed_at == test_time.now()
    assert approved.audit_log[-1].details["deadline_elapsed"] is True


def test_approve_sealed_after_deadline_lands_in_deadline_reached(engine, test_time):
    tender = create_published(engine, WorkflowType.CLOSED)
    engine.moderate_tender(tender.tender_id, "flag", ADMIN, reason="Check")
    past_deadline(test_time, tender)

    approved = engine.moderate_tender(tender.tender_id, "approve", ADMIN)

    assert approved.status == TenderStatus.DEADLINE_REACHED
    assert approved.deadline_reached_at == test_time.now()
    assert approved.revealed_at is None


def test_approve_unflagged_rejected(engine):
    tender = create_published(engine)
    with pytest.raises(TransitionRejected) as exc_info:
        engine.moderate_tender(tender.tender_id, "approve", ADMIN)
    assert _rejected(exc_info) == RejectionCode.NOT_FLAGGED


def test_scheduler_ignores_cancelled_tender(engine, test_time):
    tender = create_published(engine)
    engine.moderate_tender(tender.tender_id, "flag", ADMIN, reason="Check")
    past_deadline(test_time, tender)

    assert engine.apply_deadline_transition(tender.tender_id) is None
    assert engine.load(tender.tender_id).status == TenderStatus.CANCELLED


# =============================================================================
# Proposals
# =============================================================================


def test_submit_proposal_records_reference_without_amount(engine):
    tender = create_published(engine)

    updated = engine.submit_proposal(
        tender.tender_id, OTHER_COMPANY, "company", Decimal("900"), proposal_id="prp-1"
    )

    assert len(updated.proposals) == 1
    assert updated.proposals[0].proposal_id == "prp-1"
    assert updated.proposals[0].bid_amount == Decimal("900")
    entry = updated.audit_log[-1]
    assert entry.action == audit.PROPOSAL_SUBMITTED
    assert entry.details == {"proposal_id": "prp-1"}
    assert updated.status == TenderStatus.PUBLISHED


def test_submit_to_locked_tender(engine):
    tender = create_published(engine, WorkflowType.CLOSED)
    updated = engine.submit_proposal(tender.tender_id, OTHER_COMPANY, "company", Decimal("100"))
    assert updated.status == TenderStatus.LOCKED
    assert updated.proposals[0].proposal_id.startswith("prp_")


def test_duplicate_proposal_rejected(engine):
    tender = create_published(engine)
    engine.submit_proposal(tender.tender_id, OTHER_COMPANY, "company", Decimal("900"))
    with pytest.raises(TransitionRejected) as exc_info:
        engine.submit_proposal(tender.tender_id, OTHER_COMPANY, "company", Decimal("800"))
    assert _rejected(exc_info) == RejectionCode.DUPLICATE_PROPOSAL


@pytest.mark.parametrize(
    "amount,code",
    [
        (Decimal("0"), RejectionCode.INVALID_BID),
        (Decimal("-5"), RejectionCode.INVALID_BID),
        (Decimal("2000.01"), RejectionCode.BID_EXCEEDS_LIMIT),
    ],
)
def test_bid_amount_limits(engine, amount, code):
    tender = create_published(engine)
    with pytest.raises(TransitionRejected) as exc_info:
        engine.submit_proposal(tender.tender_id, OTHER_COMPANY, "company", amount)
    assert _rejected(exc_info) == code


def test_bid_at_limit_accepted(engine):
    tender = create_published(engine)
    updated = engine.submit_proposal(tender.tender_id, OTHER_COMPANY, "company", Decimal("2000"))
    assert len(updated.proposals) == 1


def test_freelancer_applies_to_freelance_tender(engine):
    tender = create_published(engine, category=TenderCategory.FREELANCE)
    updated = engine.submit_proposal(tender.tender_id, FREELANCER, "freelancer", Decimal("50"))
    assert updated.proposals[0].bidder_id == FREELANCER

    with pytest.raises(TransitionRejected) as exc_info:
        engine.submit_proposal(tender.tender_id, OTHER_COMPANY, "company", Decimal("50"))
    assert _rejected(exc_info) == RejectionCode.APPLY_DENIED


def test_invite_only_applications(engine):
    rules = VisibilityRules(visibility_type=VisibilityType.INVITE_ONLY, invited_users=["initech"])
    tender = create_published(engine, visibility=rules)

    with pytest.raises(TransitionRejected) as exc_info:
        engine.submit_proposal(tender.tender_id, OTHER_COMPANY, "company", Decimal("100"))
    assert exc_info.value.message == "This is an invite-only tender"

    engine.submit_proposal(tender.tender_id, "initech", "company", Decimal("100"))


def test_no_proposals_after_deadline(engine, test_time):
    tender = create_published(engine)
    past_deadline(test_time, tender)
    # scheduler has not run yet; the deadline check still applies
    with pytest.raises(TransitionRejected) as exc_info:
        engine.submit_proposal(tender.tender_id, OTHER_COMPANY, "company", Decimal("100"))
    assert exc_info.value.message == "Tender deadline has passed"


# =============================================================================
# Deletion and bookmarks
# =============================================================================


def test_delete_is_soft(engine, test_time):
    tender = create_published(engine)
    deleted = engine.delete_tender(tender.tender_id, OWNER)

    assert deleted.is_deleted is True
    assert deleted.deleted_at == test_time.now()
    assert deleted.status == TenderStatus.PUBLISHED
    assert audit_actions(deleted)[-1] == audit.DELETED

    with pytest.raises(TransitionRejected) as exc_info:
        engine.delete_tender(tender.tender_id, OWNER)
    assert _rejected(exc_info) == RejectionCode.TENDER_DELETED


def test_delete_with_proposals_refused(engine):
    tender = create_published(engine)
    engine.submit_proposal(tender.tender_id, OTHER_COMPANY, "company", Decimal("100"))
    with pytest.raises(TransitionRejected) as exc_info:
        engine.delete_tender(tender.tender_id, ADMIN, "admin")
    assert _rejected(exc_info) == RejectionCode.INVALID_STATUS


def test_delete_by_stranger_refused(engine):
    tender = create_draft(engine)
    with pytest.raises(TransitionRejected) as exc_info:
        engine.delete_tender(tender.tender_id, OTHER_COMPANY, "company")
    assert _rejected(exc_info) == RejectionCode.NOT_AUTHORIZED


def test_toggle_saved(engine):
    tender = create_published(engine)

    saved = engine.toggle_saved(tender.tender_id, FREELANCER)
    assert saved.metadata.saved_by == [FREELANCER]
    assert audit_actions(saved) == audit_actions(tender)

    unsaved = engine.toggle_saved(tender.tender_id, FREELANCER)
    assert unsaved.metadata.saved_by == []


def test_cannot_save_draft(engine):
    draft = create_draft(engine)
    with pytest.raises(TransitionRejected) as exc_info:
        engine.toggle_saved(draft.tender_id, FREELANCER)
    assert _rejected(exc_info) == RejectionCode.TENDER_INACTIVE


# =============================================================================
# days_remaining
# =============================================================================


def test_days_until_rounds_up(test_time):
    now = test_time.now()
    assert days_until(None, now) is None
    assert days_until(now - timedelta(days=1), now) == 0
    assert days_until(now, now) == 0
    assert days_until(now + timedelta(seconds=1), now) == 1
    assert days_until(now + timedelta(days=2), now) == 2
    assert days_until(now + timedelta(days=2, seconds=1), now) == 3


def test_refresh_days_remaining_writes_only_on_change(engine, test_time):
    tender = create_published(engine, deadline_in=timedelta(days=3))
    assert tender.metadata.days_remaining == 3

    assert engine.refresh_days_remaining(tender) is False

    test_time.advance_days(1)
    assert engine.refresh_days_remaining(tender) is True
    stored = engine.load(tender.tender_id)
    assert stored.metadata.days_remaining == 2
    assert audit_actions(stored) == audit_actions(tender)
