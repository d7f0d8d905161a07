"""
Final approval gate.

The flagged final approver renders the binding outcome once per
application. Readiness is recomputed inside the same transaction that
writes the FinalApproval, with the application row locked, so a
concurrent decision or issue cannot slip in between check and write.
"""

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from townplan.core.exceptions import ConflictError, ForbiddenError
from townplan.core.structured_logging import build_log_context
from townplan.db.base import utcnow
from townplan.db.enums import ApplicationStatus, DecisionOutcome, RealtimeEventType
from townplan.db.models import Application, ApplicationGroupAssignment, FinalApproval
from townplan.db.transaction import transactional
from townplan.services import application_service, chat_service, readiness_service, user_service
from townplan.services.broadcast import Broadcaster

logger = logging.getLogger(__name__)

AUTO_REJECTION_COMMENT = "Application auto-rejected due to member rejections"


class AlreadyFinalizedError(ConflictError):
    """A FinalApproval already exists for the application."""

    pass


class NotReadyError(ConflictError):
    """Group policy not satisfied or blocking issues still open."""

    pass


def _close_review(
    application: Application,
    assignment: ApplicationGroupAssignment,
    outcome: DecisionOutcome,
) -> None:
    now = utcnow()
    if outcome == DecisionOutcome.APPROVED:
        application.status = ApplicationStatus.APPROVED
        application.final_approval_date = now
    else:
        application.status = ApplicationStatus.REJECTED
        application.rejection_date = now
    application.review_completed_at = now
    assignment.final_decision_at = now
    assignment.completed_at = now
    assignment.ready_for_final_approval = False


def _post_to_review_thread(db: Session, assignment: ApplicationGroupAssignment, actor_id: UUID, content: str):
    if assignment.review_thread_id is None:
        return None
    thread = chat_service.get_thread(db, assignment.review_thread_id)
    return chat_service.post_system_message(db, thread, actor_id, content)


def create_auto_rejection(
    db: Session, application: Application, assignment: ApplicationGroupAssignment
) -> FinalApproval:
    """
    Reject an application whose group policy can no longer be satisfied.

    Runs inside the caller's transaction. The flagged final approver is
    recorded as approver with is_system_auto_decision set.
    """
    if application.final_approval is not None:
        raise AlreadyFinalizedError("Application already has a final decision")
    final_approver = assignment.group.final_approver
    if final_approver is None:
        raise ConflictError("Approval group has no final approver")

    final = FinalApproval(
        application_id=application.id,
        assignment_id=assignment.id,
        approver_id=final_approver.user_id,
        decision=DecisionOutcome.REJECTED,
        comment=AUTO_REJECTION_COMMENT,
        decision_at=utcnow(),
        is_system_auto_decision=True,
    )
    application.final_approval = final
    _close_review(application, assignment, DecisionOutcome.REJECTED)
    db.flush()

    _post_to_review_thread(db, assignment, final_approver.user_id, AUTO_REJECTION_COMMENT)
    logger.info(
        "application_auto_rejected",
        extra=build_log_context(application_id=application.id),
    )
    return final


def get_final_approval(db: Session, application_id: UUID) -> FinalApproval | None:
    return db.query(FinalApproval).filter(FinalApproval.application_id == application_id).first()


def render_final_decision(
    db: Session,
    application_id: UUID,
    approver_id: UUID,
    outcome: DecisionOutcome,
    comment: str | None = None,
    broadcaster: Broadcaster | None = None,
) -> FinalApproval:
    """
    Record the binding outcome for an application.

    Args:
        db: Database session
        application_id: Application under review
        approver_id: User acting as final approver
        outcome: APPROVED or REJECTED
        comment: Optional comment; becomes the override reason when a
            satisfied group is overruled by a rejection
        broadcaster: Realtime seam, called after commit

    Raises:
        NotFoundError: Application or active assignment not found
        AlreadyFinalizedError: A final decision already exists
        ConflictError: Application is not under review
        ForbiddenError: Approver is not the group's active final approver
        NotReadyError: Blocking issues open, or policy not satisfied (an
            unreachable policy still accepts a rejection)
    """
    comment = comment.strip() if comment else None

    with transactional(db):
        application = application_service.get_application(db, application_id, for_update=True)
        if application.final_approval is not None:
            raise AlreadyFinalizedError("Application already has a final decision")
        if application.status != ApplicationStatus.UNDER_REVIEW:
            raise ConflictError(
                f"Application is {application.status.value}, not under review"
            )

        assignment = application_service.get_active_assignment(db, application_id)
        final_approver = assignment.group.final_approver
        if final_approver is None or final_approver.user_id != approver_id:
            raise ForbiddenError("Only the group's final approver can render the final decision")

        readiness = readiness_service.evaluate_assignment(db, assignment)
        if readiness.open_blocking_issues:
            raise NotReadyError(
                f"{readiness.open_blocking_issues} blocking issue(s) must be resolved first"
            )
        # An unreachable policy can still be closed out with a rejection.
        rejecting_lost_cause = (
            outcome == DecisionOutcome.REJECTED and readiness.evaluation.unreachable
        )
        if not readiness.evaluation.satisfied and not rejecting_lost_cause:
            raise NotReadyError("The approval group has not reached its required approvals")

        overrode = outcome == DecisionOutcome.REJECTED and readiness.evaluation.satisfied
        final = FinalApproval(
            application_id=application.id,
            assignment_id=assignment.id,
            approver_id=approver_id,
            decision=outcome,
            comment=comment,
            decision_at=utcnow(),
            is_system_auto_decision=False,
            overrode_group_decision=overrode,
            override_reason=comment if overrode else None,
        )
        application.final_approval = final
        _close_review(application, assignment, outcome)
        db.flush()

        content = f"Final decision: {outcome.value} by {user_service.display_name(db, approver_id)}"
        if comment:
            content += f"\n{comment}"
        message = _post_to_review_thread(db, assignment, approver_id, content)

    logger.info(
        "final_decision_rendered outcome=%s",
        outcome.value,
        extra=build_log_context(user_id=approver_id, application_id=application_id),
    )
    if broadcaster is not None and message is not None:
        broadcaster.broadcast_to_thread(
            message.thread_id,
            RealtimeEventType.DECISION_UPDATE,
            {
                "applicationId": str(application_id),
                "finalDecision": outcome.value,
                "approverId": str(approver_id),
                "applicationStatus": application.status.value,
            },
        )
        chat_service.announce_message(broadcaster, message)
    return final
