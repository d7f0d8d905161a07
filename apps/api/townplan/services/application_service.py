"""
Application lifecycle.

SUBMITTED → UNDER_REVIEW (group assigned) → APPROVED | REJECTED (final
approval gate) → COLLECTED. REJECTED and COLLECTED are terminal.
"""

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from townplan.core.exceptions import ConflictError, NotFoundError, ValidationError
from townplan.core.structured_logging import build_log_context
from townplan.db.base import utcnow
from townplan.db.enums import ApplicationStatus, ParticipantRole, ThreadType
from townplan.db.models import Application, ApplicationGroupAssignment
from townplan.db.transaction import transactional
from townplan.schemas.application import ApplicationCreate
from townplan.services import approval_group_service, chat_service, readiness_service, user_service
from townplan.services.broadcast import Broadcaster

logger = logging.getLogger(__name__)


class InvalidTransitionError(ConflictError):
    """Requested status change is not allowed from the current status."""

    pass


def get_application(db: Session, application_id: UUID, *, for_update: bool = False) -> Application:
    """Load an application, optionally locking the row for the transaction."""
    query = db.query(Application).filter(Application.id == application_id)
    if for_update:
        query = query.with_for_update()
    application = query.first()
    if not application:
        raise NotFoundError("Application not found")
    return application


def get_active_assignment(db: Session, application_id: UUID) -> ApplicationGroupAssignment:
    assignment = (
        db.query(ApplicationGroupAssignment)
        .filter(
            ApplicationGroupAssignment.application_id == application_id,
            ApplicationGroupAssignment.is_active.is_(True),
        )
        .first()
    )
    if not assignment:
        raise NotFoundError("Application has no active approval group")
    return assignment


def create_application(db: Session, data: ApplicationCreate, created_by: UUID) -> Application:
    reference = data.reference.strip()
    if not reference:
        raise ValidationError("Reference is required")

    with transactional(db):
        if db.query(Application.id).filter(Application.reference == reference).first():
            raise ConflictError(f"Application {reference} already exists")
        application = Application(
            reference=reference,
            title=data.title,
            description=data.description,
            applicant_name=data.applicant_name,
            status=ApplicationStatus.SUBMITTED,
            created_by=created_by,
        )
        db.add(application)

    logger.info(
        "application_created reference=%s",
        reference,
        extra=build_log_context(user_id=created_by, application_id=application.id),
    )
    return application


def assign_approval_group(
    db: Session,
    application_id: UUID,
    group_id: UUID,
    assigned_by: UUID,
    broadcaster: Broadcaster | None = None,
) -> ApplicationGroupAssignment:
    """
    Put a SUBMITTED application under review by a group.

    Creates the assignment and the application's review thread, with every
    active group member as a participant, in one transaction.
    """
    with transactional(db):
        application = get_application(db, application_id, for_update=True)
        if application.status != ApplicationStatus.SUBMITTED:
            raise InvalidTransitionError(
                f"Cannot assign a group to an application in status {application.status.value}"
            )
        group = approval_group_service.get_group(db, group_id)
        if not group.is_active:
            raise ConflictError("Approval group is not active")
        if group.final_approver is None:
            raise ConflictError("Approval group has no final approver")
        user_service.require_active_user(db, assigned_by)

        thread = chat_service.create_thread(
            db,
            created_by=assigned_by,
            title=f"Review: {application.reference}",
            thread_type=ThreadType.APPLICATION,
            application_id=application.id,
            description=application.title,
        )
        for member in group.active_members:
            if member.user_id == assigned_by:
                continue
            chat_service.add_participant_row(
                db,
                thread,
                member.user_id,
                role=ParticipantRole.ADMIN if member.is_final_approver else ParticipantRole.MEMBER,
                can_invite=True,
                added_by=assigned_by,
            )

        assignment = ApplicationGroupAssignment(
            application_id=application.id,
            approval_group_id=group.id,
            review_thread_id=thread.id,
            assigned_by=assigned_by,
            is_active=True,
        )
        db.add(assignment)
        db.flush()
        readiness_service.refresh_assignment_state(db, assignment)

        now = utcnow()
        application.status = ApplicationStatus.UNDER_REVIEW
        application.review_started_at = now
        message = chat_service.post_system_message(
            db,
            thread,
            assigned_by,
            f"Application {application.reference} assigned to {group.name} for review",
        )

    logger.info(
        "application_group_assigned group=%s",
        group_id,
        extra=build_log_context(user_id=assigned_by, application_id=application_id),
    )
    if broadcaster is not None:
        broadcaster.subscribe_users(thread.id, [m.user_id for m in group.active_members])
        chat_service.announce_message(broadcaster, message)
    return assignment


def mark_collected(db: Session, application_id: UUID, user_id: UUID) -> Application:
    with transactional(db):
        application = get_application(db, application_id, for_update=True)
        if application.status != ApplicationStatus.APPROVED:
            raise InvalidTransitionError("Only approved applications can be collected")
        application.status = ApplicationStatus.COLLECTED
        application.collected_at = utcnow()

    logger.info(
        "application_collected",
        extra=build_log_context(user_id=user_id, application_id=application_id),
    )
    return application
