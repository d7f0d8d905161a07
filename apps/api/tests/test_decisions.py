"""Tests for member decisions, readiness and revocation."""

import uuid

import pytest

from townplan.core.config import settings
from townplan.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from townplan.db.enums import (
    ApplicationStatus,
    DecisionOutcome,
    DecisionStatus,
    MessageType,
    RealtimeEventType,
    ReviewMode,
)
from townplan.db.models import (
    ChatMessage,
    DecisionRevocation,
    FinalApproval,
    MemberDecision,
)
from townplan.schemas.application import ApplicationCreate
from townplan.schemas.approval import ApprovalGroupCreate, MemberCreate
from townplan.services import (
    application_service,
    approval_group_service,
    chat_service,
    decision_service,
    final_approval_service,
)

APPROVED = DecisionOutcome.APPROVED
REJECTED = DecisionOutcome.REJECTED


def _thread_messages(db, thread_id) -> list[ChatMessage]:
    return (
        db.query(ChatMessage)
        .filter(ChatMessage.thread_id == thread_id)
        .order_by(ChatMessage.created_at)
        .all()
    )


# =============================================================================
# Recording decisions
# =============================================================================


def test_three_member_group_flow(db, assignment, alice, bob, carol):
    """Two reviewers approve, the final approver's own vote is not needed."""
    first = decision_service.record_decision(db, assignment.id, alice.id, APPROVED)
    assert first.ready_for_final_approval is False

    second = decision_service.record_decision(db, assignment.id, bob.id, APPROVED)
    assert second.ready_for_final_approval is True
    assert second.policy_satisfied is True

    own = decision_service.record_decision(db, assignment.id, carol.id, APPROVED)
    assert own.is_final_approver is True
    assert own.ready_for_final_approval is True

    final = final_approval_service.render_final_decision(db, assignment.application_id, carol.id, APPROVED)

    assert final.decision == APPROVED
    assert final.overrode_group_decision is False
    assert db.query(FinalApproval).count() == 1
    application = application_service.get_application(db, assignment.application_id)
    assert application.status == ApplicationStatus.APPROVED
    assert application.final_approval_date is not None


def test_decision_updates_assignment_counters(db, assignment, alice, bob):
    decision_service.record_decision(db, assignment.id, alice.id, APPROVED)
    decision_service.record_decision(db, assignment.id, bob.id, REJECTED, reason="Setback too small")

    db.refresh(assignment)
    assert assignment.total_members == 2
    assert assignment.approved_count == 1
    assert assignment.rejected_count == 1
    assert assignment.pending_count == 0


def test_rejection_requires_reason(db, assignment, alice):
    with pytest.raises(ValidationError):
        decision_service.record_decision(db, assignment.id, alice.id, REJECTED)
    with pytest.raises(ValidationError):
        decision_service.record_decision(db, assignment.id, alice.id, REJECTED, reason="   ")

    assert db.query(MemberDecision).count() == 0


def test_rejection_comment_format(db, assignment, alice):
    result = decision_service.record_decision(
        db,
        assignment.id,
        alice.id,
        REJECTED,
        comment="See the overlay map",
        reason="Exceeds height limit",
    )

    view = decision_service.decision_view(result.decision)
    assert view["status"] == DecisionStatus.REJECTED
    assert view["final_comment"] == (
        "REJECTION REASON: Exceeds height limit\nADDITIONAL COMMENTS: See the overlay map"
    )


def test_resubmission_overwrites_status_and_latest_comment_wins(db, assignment, alice):
    decision_service.record_decision(db, assignment.id, alice.id, APPROVED, comment="Looks fine")
    result = decision_service.record_decision(
        db, assignment.id, alice.id, REJECTED, reason="Missed the drainage plan"
    )

    assert db.query(MemberDecision).count() == 1
    assert result.decision.status == DecisionStatus.REJECTED
    assert len(result.decision.comments) == 2
    assert decision_service.latest_comment(result.decision) == "REJECTION REASON: Missed the drainage plan"


def test_decision_posts_system_message_to_review_thread(db, assignment, alice, broadcaster):
    thread_id = assignment.review_thread_id

    decision_service.record_decision(
        db, assignment.id, alice.id, APPROVED, comment="Good to go", broadcaster=broadcaster
    )

    messages = _thread_messages(db, thread_id)
    assert messages[-1].message_type == MessageType.SYSTEM
    assert messages[-1].content == "Alice Reviewer approved the application\nGood to go"

    updates = broadcaster.of_type(RealtimeEventType.DECISION_UPDATE)
    assert len(updates) == 1
    assert updates[0]["thread_id"] == thread_id
    assert updates[0]["payload"]["status"] == "APPROVED"
    chat_events = broadcaster.of_type(RealtimeEventType.CHAT_MESSAGE)
    assert chat_events[0]["exclude"] == [alice.id]


def test_non_member_cannot_decide(db, assignment, clerk):
    with pytest.raises(NotFoundError):
        decision_service.record_decision(db, assignment.id, clerk.id, APPROVED)


def test_member_without_capability_forbidden(db, assignment, group, make_user):
    erin = make_user("Erin", "Observer")
    approval_group_service.add_member(
        db, group.id, MemberCreate(user_id=erin.id, can_approve=False, can_reject=False)
    )

    with pytest.raises(ForbiddenError):
        decision_service.record_decision(db, assignment.id, erin.id, APPROVED)


def test_decision_after_final_decision_conflicts(db, assignment, alice, bob, carol):
    decision_service.record_decision(db, assignment.id, alice.id, APPROVED)
    decision_service.record_decision(db, assignment.id, bob.id, APPROVED)
    final_approval_service.render_final_decision(db, assignment.application_id, carol.id, APPROVED)

    with pytest.raises(ConflictError):
        decision_service.record_decision(db, assignment.id, alice.id, REJECTED, reason="Too late")


# =============================================================================
# Auto-rejection
# =============================================================================


def test_unreachable_policy_auto_rejects(db, assignment, alice, bob, carol):
    decision_service.record_decision(db, assignment.id, alice.id, REJECTED, reason="Non-compliant")
    result = decision_service.record_decision(db, assignment.id, bob.id, APPROVED)

    assert result.auto_rejected is True
    assert result.application_status == ApplicationStatus.REJECTED
    final = final_approval_service.get_final_approval(db, assignment.application_id)
    assert final.is_system_auto_decision is True
    assert final.approver_id == carol.id
    assert final.comment == final_approval_service.AUTO_REJECTION_COMMENT


def test_auto_rejection_can_be_disabled(db, assignment, alice, bob, monkeypatch):
    monkeypatch.setattr(settings, "AUTO_REJECT_ON_MEMBER_REJECTION", False)

    decision_service.record_decision(db, assignment.id, alice.id, REJECTED, reason="Non-compliant")
    result = decision_service.record_decision(db, assignment.id, bob.id, APPROVED)

    assert result.auto_rejected is False
    assert result.application_status == ApplicationStatus.UNDER_REVIEW
    assert db.query(FinalApproval).count() == 0


# =============================================================================
# Atomicity
# =============================================================================


def test_decision_rolls_back_when_system_message_fails(db, assignment, alice, monkeypatch):
    thread_id = assignment.review_thread_id
    messages_before = len(_thread_messages(db, thread_id))
    real_post = chat_service.post_system_message

    def failing_post(*args, **kwargs):
        real_post(*args, **kwargs)
        raise RuntimeError("message store unavailable")

    monkeypatch.setattr(chat_service, "post_system_message", failing_post)

    with pytest.raises(RuntimeError):
        decision_service.record_decision(db, assignment.id, alice.id, APPROVED, comment="Fine")

    assert db.query(MemberDecision).count() == 0
    assert len(_thread_messages(db, thread_id)) == messages_before
    db.refresh(assignment)
    assert assignment.approved_count == 0


# =============================================================================
# Revocation
# =============================================================================


def test_revoke_decision_uncounts_and_records_history(db, assignment, alice, bob):
    decision_service.record_decision(db, assignment.id, alice.id, APPROVED)
    decision_service.record_decision(db, assignment.id, bob.id, APPROVED)
    db.refresh(assignment)
    assert assignment.ready_for_final_approval is True

    decision = decision_service.revoke_decision(db, assignment.id, alice.id, "Need to recheck setbacks")

    assert decision.status == DecisionStatus.REVOKED
    assert decision_service.latest_comment(decision) == "DECISION REVOKED: Need to recheck setbacks"
    revocation = db.query(DecisionRevocation).one()
    assert revocation.previous_status == DecisionStatus.APPROVED
    db.refresh(assignment)
    assert assignment.ready_for_final_approval is False
    assert assignment.pending_count == 1


def test_revoke_without_decision_conflicts(db, assignment, alice):
    with pytest.raises(ConflictError):
        decision_service.revoke_decision(db, assignment.id, alice.id, "Changed my mind")


def test_revoke_requires_reason(db, assignment, alice):
    decision_service.record_decision(db, assignment.id, alice.id, APPROVED)
    with pytest.raises(ValidationError):
        decision_service.revoke_decision(db, assignment.id, alice.id, "  ")


# =============================================================================
# Ordered review
# =============================================================================


def test_ordered_group_waits_for_first_reviewer(db, alice, bob, carol, clerk):
    group = approval_group_service.create_group_with_members(
        db,
        ApprovalGroupCreate(
            name="Heritage Review",
            review_mode=ReviewMode.ORDERED,
            requires_all_approvals=False,
            minimum_approvals=1,
            members=[
                MemberCreate(user_id=alice.id, review_order=0),
                MemberCreate(user_id=bob.id, review_order=1),
                MemberCreate(user_id=carol.id, is_final_approver=True),
            ],
        ),
    )
    application = application_service.create_application(
        db,
        ApplicationCreate(reference=f"DA-{uuid.uuid4().hex[:6]}", title="Facade restoration"),
        created_by=clerk.id,
    )
    assignment = application_service.assign_approval_group(db, application.id, group.id, clerk.id)

    early = decision_service.record_decision(db, assignment.id, bob.id, APPROVED)
    assert early.ready_for_final_approval is False

    in_turn = decision_service.record_decision(db, assignment.id, alice.id, APPROVED)
    assert in_turn.ready_for_final_approval is True

    _, readiness = decision_service.get_readiness(db, application.id)
    assert readiness.evaluation.counted_approvals == 2
