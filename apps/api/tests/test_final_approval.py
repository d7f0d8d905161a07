"""Tests for the final approval gate."""

import pytest

from townplan.core.config import settings
from townplan.core.exceptions import ConflictError, ForbiddenError
from townplan.db.enums import (
    ApplicationStatus,
    DecisionOutcome,
    IssueAssignmentType,
    RealtimeEventType,
)
from townplan.db.models import ChatMessage, FinalApproval
from townplan.schemas.issue import IssueCreate
from townplan.services import (
    application_service,
    approval_group_service,
    decision_service,
    final_approval_service,
    issue_service,
)
from townplan.services.final_approval_service import AlreadyFinalizedError, NotReadyError

APPROVED = DecisionOutcome.APPROVED
REJECTED = DecisionOutcome.REJECTED


@pytest.fixture
def approved_by_group(db, assignment, alice, bob):
    """Both reviewers approved; the application waits for Carol."""
    decision_service.record_decision(db, assignment.id, alice.id, APPROVED)
    decision_service.record_decision(db, assignment.id, bob.id, APPROVED)
    return assignment


# =============================================================================
# Gate
# =============================================================================


def test_final_decision_only_once(db, approved_by_group, carol):
    application_id = approved_by_group.application_id
    final_approval_service.render_final_decision(db, application_id, carol.id, APPROVED)

    with pytest.raises(AlreadyFinalizedError):
        final_approval_service.render_final_decision(db, application_id, carol.id, REJECTED, "Changed")

    assert db.query(FinalApproval).count() == 1
    assert application_service.get_application(db, application_id).status == ApplicationStatus.APPROVED


def test_only_final_approver_may_decide(db, approved_by_group, alice):
    with pytest.raises(ForbiddenError):
        final_approval_service.render_final_decision(
            db, approved_by_group.application_id, alice.id, APPROVED
        )
    assert db.query(FinalApproval).count() == 0


def test_not_ready_without_approvals(db, assignment, carol):
    with pytest.raises(NotReadyError):
        final_approval_service.render_final_decision(db, assignment.application_id, carol.id, APPROVED)
    with pytest.raises(NotReadyError):
        final_approval_service.render_final_decision(
            db, assignment.application_id, carol.id, REJECTED, "Not convinced"
        )


def test_open_blocking_issue_blocks_final_decision(db, approved_by_group, group, alice, bob, carol):
    bob_member = approval_group_service.get_member_for_user(db, group.id, bob.id)
    issue = issue_service.raise_issue(
        db,
        approved_by_group.application_id,
        alice.id,
        IssueCreate(
            title="Stormwater",
            description="Detention tank sizing is missing",
            assignment_type=IssueAssignmentType.GROUP_MEMBER,
            assigned_to_member_id=bob_member.id,
        ),
    )
    db.refresh(approved_by_group)
    assert approved_by_group.ready_for_final_approval is False

    with pytest.raises(NotReadyError):
        final_approval_service.render_final_decision(
            db, approved_by_group.application_id, carol.id, APPROVED
        )

    issue_service.resolve_issue(db, issue.id, bob.id, "Tank sized at 10kL")
    final = final_approval_service.render_final_decision(
        db, approved_by_group.application_id, carol.id, APPROVED
    )
    assert final.decision == APPROVED


def test_rejecting_a_satisfied_group_is_recorded_as_override(db, approved_by_group, carol):
    final = final_approval_service.render_final_decision(
        db, approved_by_group.application_id, carol.id, REJECTED, "Insufficient parking"
    )

    assert final.overrode_group_decision is True
    assert final.override_reason == "Insufficient parking"
    application = application_service.get_application(db, approved_by_group.application_id)
    assert application.status == ApplicationStatus.REJECTED
    assert application.rejection_date is not None


def test_unreachable_policy_accepts_rejection_only(db, assignment, alice, bob, carol, monkeypatch):
    monkeypatch.setattr(settings, "AUTO_REJECT_ON_MEMBER_REJECTION", False)
    decision_service.record_decision(db, assignment.id, alice.id, REJECTED, reason="Non-compliant")
    decision_service.record_decision(db, assignment.id, bob.id, APPROVED)

    with pytest.raises(NotReadyError):
        final_approval_service.render_final_decision(db, assignment.application_id, carol.id, APPROVED)

    final = final_approval_service.render_final_decision(
        db, assignment.application_id, carol.id, REJECTED, "Agree with Alice"
    )
    assert final.overrode_group_decision is False
    assert final.override_reason is None


def test_application_without_group_is_not_under_review(db, application, carol):
    with pytest.raises(ConflictError):
        final_approval_service.render_final_decision(db, application.id, carol.id, APPROVED)


def test_final_decision_message_and_broadcast(db, approved_by_group, carol, broadcaster):
    thread_id = approved_by_group.review_thread_id

    final_approval_service.render_final_decision(
        db,
        approved_by_group.application_id,
        carol.id,
        APPROVED,
        "Conditions attached",
        broadcaster=broadcaster,
    )

    last = (
        db.query(ChatMessage)
        .filter(ChatMessage.thread_id == thread_id)
        .order_by(ChatMessage.created_at.desc())
        .first()
    )
    assert last.content == "Final decision: APPROVED by Carol Approver\nConditions attached"
    updates = broadcaster.of_type(RealtimeEventType.DECISION_UPDATE)
    assert updates[0]["payload"]["finalDecision"] == "APPROVED"
    assert updates[0]["payload"]["applicationStatus"] == "APPROVED"


# =============================================================================
# After the decision
# =============================================================================


def test_collect_approved_application(db, approved_by_group, carol, clerk):
    application_id = approved_by_group.application_id
    final_approval_service.render_final_decision(db, application_id, carol.id, APPROVED)

    application = application_service.mark_collected(db, application_id, clerk.id)

    assert application.status == ApplicationStatus.COLLECTED
    assert application.collected_at is not None


def test_rejected_application_cannot_be_collected(db, approved_by_group, carol, clerk):
    application_id = approved_by_group.application_id
    final_approval_service.render_final_decision(db, application_id, carol.id, REJECTED, "No")

    with pytest.raises(application_service.InvalidTransitionError):
        application_service.mark_collected(db, application_id, clerk.id)
