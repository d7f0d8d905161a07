"""
Member decisions on an application under review.

Each decision is an upsert keyed by (assignment, member): re-submitting
overwrites the status and appends a comment, so the newest comment is
always the decision's final comment. Counters, readiness, the system
message and any auto-rejection are written in the same transaction as the
decision itself.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from townplan.core.config import settings
from townplan.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from townplan.core.structured_logging import build_log_context
from townplan.db.base import utcnow
from townplan.db.enums import (
    ApplicationStatus,
    CommentType,
    DecisionOutcome,
    DecisionStatus,
    RealtimeEventType,
)
from townplan.db.models import (
    ApplicationGroupAssignment,
    DecisionComment,
    DecisionRevocation,
    MemberDecision,
)
from townplan.db.transaction import transactional
from townplan.services import (
    application_service,
    approval_group_service,
    chat_service,
    final_approval_service,
    readiness_service,
    user_service,
)
from townplan.services.approval_policy import DECIDED
from townplan.services.broadcast import Broadcaster
from townplan.services.readiness_service import Readiness

logger = logging.getLogger(__name__)


@dataclass
class DecisionResult:
    decision: MemberDecision
    application_status: ApplicationStatus
    ready_for_final_approval: bool
    is_final_approver: bool
    policy_satisfied: bool
    open_blocking_issues: int
    auto_rejected: bool


def latest_comment(decision: MemberDecision) -> str | None:
    """The decision's final comment: the newest one wins."""
    if not decision.comments:
        return None
    return max(
        enumerate(decision.comments), key=lambda pair: (pair[1].created_at, pair[0])
    )[1].content


def build_comment(outcome: DecisionOutcome, comment: str | None, reason: str | None) -> str | None:
    comment = comment.strip() if comment else ""
    if outcome == DecisionOutcome.REJECTED:
        content = f"REJECTION REASON: {reason.strip()}"
        if comment:
            content += f"\nADDITIONAL COMMENTS: {comment}"
        return content
    return comment or None


def decision_view(decision: MemberDecision) -> dict:
    """Flat representation used by the API layer."""
    return {
        "id": decision.id,
        "member_id": decision.member_id,
        "user_id": decision.member.user_id,
        "status": decision.status,
        "decided_at": decision.decided_at,
        "final_comment": latest_comment(decision),
    }


def _get_assignment(db: Session, assignment_id: UUID) -> ApplicationGroupAssignment:
    assignment = (
        db.query(ApplicationGroupAssignment)
        .filter(ApplicationGroupAssignment.id == assignment_id)
        .first()
    )
    if not assignment:
        raise NotFoundError("Group assignment not found")
    return assignment


def _get_decision(db: Session, assignment_id: UUID, member_id: UUID) -> MemberDecision | None:
    return (
        db.query(MemberDecision)
        .filter(MemberDecision.assignment_id == assignment_id, MemberDecision.member_id == member_id)
        .first()
    )


def _lock_open_application(db: Session, assignment: ApplicationGroupAssignment):
    application = application_service.get_application(db, assignment.application_id, for_update=True)
    if application.is_finalized:
        raise ConflictError("Application already has a final decision")
    if application.status != ApplicationStatus.UNDER_REVIEW or not assignment.is_active:
        raise ConflictError("Application is not under review")
    return application


def _post_decision_message(db: Session, assignment: ApplicationGroupAssignment, user_id: UUID, content: str):
    if assignment.review_thread_id is None:
        return None
    thread = chat_service.get_thread(db, assignment.review_thread_id)
    return chat_service.post_system_message(db, thread, user_id, content)


def _announce(
    broadcaster: Broadcaster | None,
    assignment: ApplicationGroupAssignment,
    message,
    payload: dict,
) -> None:
    if broadcaster is None or assignment.review_thread_id is None:
        return
    broadcaster.broadcast_to_thread(
        assignment.review_thread_id, RealtimeEventType.DECISION_UPDATE, payload
    )
    if message is not None:
        chat_service.announce_message(broadcaster, message)


# =============================================================================
# Operations
# =============================================================================

def record_decision(
    db: Session,
    assignment_id: UUID,
    user_id: UUID,
    outcome: DecisionOutcome,
    comment: str | None = None,
    reason: str | None = None,
    broadcaster: Broadcaster | None = None,
) -> DecisionResult:
    """
    Record or overwrite the acting user's decision for an assignment.

    Raises:
        ValidationError: Rejection without a reason
        NotFoundError: Assignment not found or user is not a group member
        ForbiddenError: Member inactive or lacking the capability
        ConflictError: Application finalized or not under review
    """
    if outcome == DecisionOutcome.REJECTED and not (reason and reason.strip()):
        raise ValidationError("A reason is required when rejecting")
    content = build_comment(outcome, comment, reason)

    with transactional(db):
        assignment = _get_assignment(db, assignment_id)
        application = _lock_open_application(db, assignment)

        member = approval_group_service.get_member_for_user(db, assignment.approval_group_id, user_id)
        if member is None:
            raise NotFoundError("You are not a member of this approval group")
        if not member.is_active:
            raise ForbiddenError("Your group membership is not active")
        if outcome == DecisionOutcome.APPROVED and not member.can_approve:
            raise ForbiddenError("You are not allowed to approve")
        if outcome == DecisionOutcome.REJECTED and not member.can_reject:
            raise ForbiddenError("You are not allowed to reject")

        decision = _get_decision(db, assignment.id, member.id)
        if decision is None:
            decision = MemberDecision(assignment_id=assignment.id, member_id=member.id)
            db.add(decision)
        decision.status = DecisionStatus(outcome.value)
        decision.decided_at = utcnow()
        if content:
            decision.comments.append(
                DecisionComment(
                    comment_type=(
                        CommentType.REJECTION
                        if outcome == DecisionOutcome.REJECTED
                        else CommentType.APPROVAL
                    ),
                    content=content,
                    created_by=user_id,
                    created_at=utcnow(),
                )
            )
        db.flush()

        readiness = readiness_service.refresh_assignment_state(db, assignment)

        verb = "approved" if outcome == DecisionOutcome.APPROVED else "rejected"
        text = f"{user_service.display_name(db, user_id)} {verb} the application"
        if content:
            text += f"\n{content}"
        message = _post_decision_message(db, assignment, user_id, text)

        auto_rejected = False
        if (
            settings.AUTO_REJECT_ON_MEMBER_REJECTION
            and readiness.evaluation.unreachable
        ):
            final_approval_service.create_auto_rejection(db, application, assignment)
            auto_rejected = True

        result = DecisionResult(
            decision=decision,
            application_status=application.status,
            ready_for_final_approval=assignment.ready_for_final_approval,
            is_final_approver=member.is_final_approver,
            policy_satisfied=readiness.evaluation.satisfied,
            open_blocking_issues=readiness.open_blocking_issues,
            auto_rejected=auto_rejected,
        )

    logger.info(
        "member_decision_recorded outcome=%s auto_rejected=%s",
        outcome.value,
        auto_rejected,
        extra=build_log_context(user_id=user_id, application_id=assignment.application_id),
    )
    _announce(
        broadcaster,
        assignment,
        message,
        {
            "applicationId": str(assignment.application_id),
            "memberId": str(member.id),
            "userId": str(user_id),
            "status": outcome.value,
            "readyForFinalApproval": result.ready_for_final_approval,
            "autoRejected": auto_rejected,
        },
    )
    return result


def revoke_decision(
    db: Session,
    assignment_id: UUID,
    user_id: UUID,
    reason: str,
    broadcaster: Broadcaster | None = None,
) -> MemberDecision:
    """
    Withdraw the acting user's decision before the final decision is made.

    The decision row stays with status REVOKED and is no longer counted.
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to revoke a decision")

    with transactional(db):
        assignment = _get_assignment(db, assignment_id)
        _lock_open_application(db, assignment)

        member = approval_group_service.get_member_for_user(db, assignment.approval_group_id, user_id)
        if member is None:
            raise NotFoundError("You are not a member of this approval group")
        decision = _get_decision(db, assignment.id, member.id)
        if decision is None or decision.status not in DECIDED:
            raise ConflictError("There is no decision to revoke")

        db.add(
            DecisionRevocation(
                decision_id=decision.id,
                revoked_by=user_id,
                reason=reason,
                previous_status=decision.status,
            )
        )
        decision.status = DecisionStatus.REVOKED
        decision.comments.append(
            DecisionComment(
                comment_type=CommentType.GENERAL,
                content=f"DECISION REVOKED: {reason}",
                created_by=user_id,
                created_at=utcnow(),
            )
        )
        db.flush()

        readiness_service.refresh_assignment_state(db, assignment)
        message = _post_decision_message(
            db,
            assignment,
            user_id,
            f"{user_service.display_name(db, user_id)} revoked their decision\n{reason}",
        )

    logger.info(
        "member_decision_revoked",
        extra=build_log_context(user_id=user_id, application_id=assignment.application_id),
    )
    _announce(
        broadcaster,
        assignment,
        message,
        {
            "applicationId": str(assignment.application_id),
            "memberId": str(member.id),
            "userId": str(user_id),
            "status": DecisionStatus.REVOKED.value,
            "readyForFinalApproval": assignment.ready_for_final_approval,
        },
    )
    return decision


def get_readiness(db: Session, application_id: UUID) -> tuple[ApplicationGroupAssignment, Readiness]:
    """Live readiness for the application's active assignment. Read-only."""
    application_service.get_application(db, application_id)
    assignment = application_service.get_active_assignment(db, application_id)
    return assignment, readiness_service.evaluate_assignment(db, assignment)


def list_decisions(db: Session, application_id: UUID) -> list[MemberDecision]:
    assignment = application_service.get_active_assignment(db, application_id)
    return (
        db.query(MemberDecision)
        .filter(MemberDecision.assignment_id == assignment.id)
        .order_by(MemberDecision.created_at)
        .all()
    )
