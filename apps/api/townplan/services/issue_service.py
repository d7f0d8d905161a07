"""
Issue tracker for applications under review.

Issues are addressed to the whole group (COLLABORATIVE), one group member
(GROUP_MEMBER) or any staff user (SPECIFIC_USER), and usually come with a
chat thread for the discussion. Every status transition posts one system
message into that thread inside the same transaction.
"""

import logging
from uuid import UUID

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from townplan.core.config import settings
from townplan.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from townplan.core.structured_logging import build_log_context
from townplan.db.base import utcnow
from townplan.db.enums import (
    ApplicationStatus,
    IssueAssignmentType,
    IssueStatus,
    ParticipantRole,
    RealtimeEventType,
    ThreadType,
)
from townplan.db.models import ApplicationGroupAssignment, ApplicationIssue, ApprovalGroupMember
from townplan.db.transaction import transactional
from townplan.schemas.issue import IssueCreate, IssueUpdate
from townplan.services import (
    application_service,
    approval_group_service,
    chat_service,
    readiness_service,
    user_service,
)
from townplan.services.broadcast import Broadcaster

logger = logging.getLogger(__name__)

OPEN_FOR_ISSUES = (ApplicationStatus.SUBMITTED, ApplicationStatus.UNDER_REVIEW)


class IssueAlreadyResolvedError(ConflictError):
    """Issue is already resolved."""

    pass


class IssueNotResolvedError(ConflictError):
    """Only resolved issues can be reopened."""

    pass


# =============================================================================
# Lookups
# =============================================================================

def get_issue(db: Session, issue_id: UUID, *, for_update: bool = False) -> ApplicationIssue:
    query = db.query(ApplicationIssue).filter(ApplicationIssue.id == issue_id)
    if for_update:
        query = query.with_for_update()
    issue = query.first()
    if not issue:
        raise NotFoundError("Issue not found")
    return issue


def list_issues(
    db: Session, application_id: UUID, status: IssueStatus | None = None
) -> list[ApplicationIssue]:
    application_service.get_application(db, application_id)
    query = db.query(ApplicationIssue).filter(ApplicationIssue.application_id == application_id)
    if status is not None:
        query = query.filter(ApplicationIssue.status == status)
    return query.order_by(ApplicationIssue.created_at).all()


def _default_blocking(assignment_type: IssueAssignmentType) -> bool:
    if assignment_type == IssueAssignmentType.COLLABORATIVE:
        return settings.COLLABORATIVE_ISSUES_BLOCK_FINAL_APPROVAL
    return True


def _bump_counter(db: Session, assignment: ApplicationGroupAssignment | None, column: str, delta: int) -> None:
    """Atomic issue counter change on the assignment, never below zero."""
    if assignment is None:
        return
    col = getattr(ApplicationGroupAssignment, column)
    db.execute(
        update(ApplicationGroupAssignment)
        .where(ApplicationGroupAssignment.id == assignment.id)
        .values({column: case((col + delta < 0, 0), else_=col + delta)})
        .execution_options(synchronize_session=False)
    )
    db.expire(assignment, [column])


def _validate_target(data: IssueCreate, raiser_id: UUID) -> None:
    member_id, user_id = data.assigned_to_member_id, data.assigned_to_user_id
    if data.assignment_type == IssueAssignmentType.COLLABORATIVE:
        if member_id or user_id:
            raise ValidationError("Collaborative issues have no individual target")
    elif data.assignment_type == IssueAssignmentType.GROUP_MEMBER:
        if not member_id or user_id:
            raise ValidationError("GROUP_MEMBER issues need assigned_to_member_id only")
    elif data.assignment_type == IssueAssignmentType.SPECIFIC_USER:
        if not user_id or member_id:
            raise ValidationError("SPECIFIC_USER issues need assigned_to_user_id only")
        if user_id == raiser_id:
            raise ValidationError("You cannot assign an issue to yourself")


def _resolve_target_member(
    db: Session, assignment: ApplicationGroupAssignment, member_id: UUID
) -> ApprovalGroupMember:
    member = (
        db.query(ApprovalGroupMember)
        .filter(
            ApprovalGroupMember.id == member_id,
            ApprovalGroupMember.approval_group_id == assignment.approval_group_id,
        )
        .first()
    )
    if member is None or not member.is_active:
        raise NotFoundError("Target is not an active member of this approval group")
    if not (member.can_approve or member.can_reject):
        raise ValidationError("Target member cannot approve or reject applications")
    return member


# =============================================================================
# Raising
# =============================================================================

def raise_issue(
    db: Session,
    application_id: UUID,
    raiser_id: UUID,
    data: IssueCreate,
    broadcaster: Broadcaster | None = None,
) -> ApplicationIssue:
    """
    Raise an issue and, unless disabled, open its discussion thread.

    Raises:
        ValidationError: Missing text or a target that does not fit the type
        NotFoundError: Application, target member or target user not found
        ForbiddenError: Raiser is not an active member allowed to raise issues
        ConflictError: Application is not open for issues
    """
    title = data.title.strip()
    description = data.description.strip()
    if not title or not description:
        raise ValidationError("Title and description are required")
    _validate_target(data, raiser_id)

    thread = None
    message = None
    with transactional(db):
        application = application_service.get_application(db, application_id, for_update=True)
        if application.status not in OPEN_FOR_ISSUES:
            raise ConflictError(f"Cannot raise issues on an application in status {application.status.value}")
        assignment = application.active_assignment
        if assignment is None:
            raise ConflictError("Application has no approval group assigned")

        raiser = approval_group_service.get_member_for_user(db, assignment.approval_group_id, raiser_id)
        if raiser is None or not raiser.is_active or not raiser.can_raise_issues:
            raise ForbiddenError("You are not allowed to raise issues on this application")

        target_member = None
        target_user_id = None
        if data.assignment_type == IssueAssignmentType.GROUP_MEMBER:
            target_member = _resolve_target_member(db, assignment, data.assigned_to_member_id)
            target_user_id = target_member.user_id
        elif data.assignment_type == IssueAssignmentType.SPECIFIC_USER:
            target_user_id = user_service.require_active_user(db, data.assigned_to_user_id).id

        is_blocking = data.is_blocking if data.is_blocking is not None else _default_blocking(data.assignment_type)
        issue = ApplicationIssue(
            application_id=application.id,
            assignment_id=assignment.id,
            raised_by=raiser_id,
            title=title,
            description=description,
            priority=data.priority,
            category=data.category,
            assignment_type=data.assignment_type,
            assigned_to_member_id=target_member.id if target_member else None,
            assigned_to_user_id=data.assigned_to_user_id,
            status=IssueStatus.OPEN,
            is_blocking=is_blocking,
        )
        db.add(issue)
        db.flush()

        if data.create_thread:
            thread = _open_issue_thread(db, application.id, assignment, issue, target_user_id)
            issue.chat_thread_id = thread.id
            message = chat_service.post_system_message(
                db,
                thread,
                raiser_id,
                f"Issue created: {title}\n{description}",
                attachments=data.attachments,
            )

        _bump_counter(db, assignment, "issues_raised", 1)
        readiness_service.refresh_assignment_state(db, assignment)

    logger.info(
        "issue_raised type=%s blocking=%s",
        data.assignment_type.value,
        is_blocking,
        extra=build_log_context(user_id=raiser_id, application_id=application_id, issue_id=issue.id),
    )
    if broadcaster is not None and thread is not None:
        broadcaster.subscribe_users(thread.id, [p.user_id for p in thread.active_participants])
        _announce_issue(broadcaster, issue, "created", raiser_id)
        chat_service.announce_message(broadcaster, message)
    return issue


def _open_issue_thread(
    db: Session,
    application_id: UUID,
    assignment: ApplicationGroupAssignment,
    issue: ApplicationIssue,
    target_user_id: UUID | None,
):
    """
    Thread shape depends on who the issue is addressed to.

    - COLLABORATIVE: GROUP thread, every active group member participates
    - GROUP_MEMBER: MIXED thread, raiser and the target member's user (ADMIN)
    - SPECIFIC_USER: SPECIFIC_USER thread, raiser and target user (ADMIN)
    """
    thread_type = {
        IssueAssignmentType.COLLABORATIVE: ThreadType.GROUP,
        IssueAssignmentType.GROUP_MEMBER: ThreadType.MIXED,
        IssueAssignmentType.SPECIFIC_USER: ThreadType.SPECIFIC_USER,
    }[issue.assignment_type]

    thread = chat_service.create_thread(
        db,
        created_by=issue.raised_by,
        title=f"Issue: {issue.title}",
        thread_type=thread_type,
        application_id=application_id,
        description=issue.description,
    )

    if issue.assignment_type == IssueAssignmentType.COLLABORATIVE:
        for member in assignment.group.active_members:
            if member.user_id == issue.raised_by:
                continue
            chat_service.add_participant_row(
                db,
                thread,
                member.user_id,
                role=ParticipantRole.MEMBER,
                can_invite=False,
                added_by=issue.raised_by,
            )
    elif target_user_id is not None and target_user_id != issue.raised_by:
        chat_service.add_participant_row(
            db,
            thread,
            target_user_id,
            role=ParticipantRole.ADMIN,
            can_invite=True,
            added_by=issue.raised_by,
        )
    return thread


def _announce_issue(broadcaster: Broadcaster, issue: ApplicationIssue, action: str, actor_id: UUID) -> None:
    payload = {
        "issueId": str(issue.id),
        "applicationId": str(issue.application_id),
        "status": issue.status.value,
        "isBlocking": issue.is_blocking,
        "action": action,
        "actorId": str(actor_id),
    }
    if issue.chat_thread_id is not None:
        broadcaster.broadcast_to_thread(issue.chat_thread_id, RealtimeEventType.ISSUE_UPDATE, payload)
    assignment = issue.assignment
    if assignment is not None and assignment.review_thread_id is not None:
        broadcaster.broadcast_to_thread(
            assignment.review_thread_id, RealtimeEventType.ISSUE_UPDATE, payload
        )


# =============================================================================
# Resolution
# =============================================================================

def can_user_resolve_issue(
    db: Session, issue: ApplicationIssue, user_id: UUID, *, ignore_resolved: bool = False
) -> bool:
    """
    Who may resolve (and reopen) an issue.

    The raiser always may. Otherwise the addressed member's user, the
    addressed user, or for collaborative issues any active participant of
    the issue thread (any active group member when there is no thread).
    """
    if issue.status == IssueStatus.RESOLVED and not ignore_resolved:
        return False
    if issue.raised_by == user_id:
        return True

    if issue.assignment_type == IssueAssignmentType.GROUP_MEMBER:
        member = issue.assigned_member
        return member is not None and member.user_id == user_id
    if issue.assignment_type == IssueAssignmentType.SPECIFIC_USER:
        return issue.assigned_to_user_id == user_id

    if issue.chat_thread_id is not None:
        participant = chat_service.get_participant(db, issue.chat_thread_id, user_id)
        return participant is not None and participant.is_active
    if issue.assignment is None:
        return False
    member = approval_group_service.get_member_for_user(db, issue.assignment.approval_group_id, user_id)
    return member is not None and member.is_active


def get_required_resolver(db: Session, issue: ApplicationIssue) -> str:
    """Human-readable description of who can resolve the issue."""
    if issue.status == IssueStatus.RESOLVED:
        return "Issue is already resolved"

    raiser = user_service.display_name(db, issue.raised_by)
    if issue.assignment_type == IssueAssignmentType.GROUP_MEMBER and issue.assigned_member:
        target = user_service.display_name(db, issue.assigned_member.user_id)
        return f"{target} (group member) or {raiser} (raised the issue)"
    if issue.assignment_type == IssueAssignmentType.SPECIFIC_USER and issue.assigned_to_user_id:
        target = user_service.display_name(db, issue.assigned_to_user_id)
        return f"{target} or {raiser} (raised the issue)"
    if issue.chat_thread_id is not None:
        return "Any participant in the issue discussion"
    return "Any active member of the approval group"


def resolve_issue(
    db: Session,
    issue_id: UUID,
    user_id: UUID,
    comment: str | None = None,
    broadcaster: Broadcaster | None = None,
) -> ApplicationIssue:
    """
    Resolve an open issue and close its thread.

    Raises:
        NotFoundError: Issue not found
        IssueAlreadyResolvedError: Issue is already resolved; nothing changes
        ForbiddenError: User is not allowed to resolve this issue
    """
    comment = comment.strip() if comment else None
    message = None

    with transactional(db):
        issue = get_issue(db, issue_id, for_update=True)
        if issue.status == IssueStatus.RESOLVED:
            raise IssueAlreadyResolvedError("Issue is already resolved")
        if not can_user_resolve_issue(db, issue, user_id):
            raise ForbiddenError("You are not allowed to resolve this issue")

        now = utcnow()
        issue.status = IssueStatus.RESOLVED
        issue.resolution_comment = comment
        issue.resolved_by = user_id
        issue.resolved_at = now

        if issue.chat_thread_id is not None:
            thread = chat_service.get_thread(db, issue.chat_thread_id)
            content = f"Issue resolved by {user_service.display_name(db, user_id)}"
            if comment:
                content += f":\n{comment}"
            message = chat_service.post_system_message(db, thread, user_id, content)
            thread.is_resolved = True
            thread.resolved_at = now
            thread.is_active = False

        _bump_counter(db, issue.assignment, "issues_resolved", 1)
        if issue.assignment is not None:
            readiness_service.refresh_assignment_state(db, issue.assignment)

    logger.info(
        "issue_resolved",
        extra=build_log_context(user_id=user_id, application_id=issue.application_id, issue_id=issue_id),
    )
    if broadcaster is not None:
        _announce_issue(broadcaster, issue, "resolved", user_id)
        if message is not None:
            chat_service.announce_message(broadcaster, message)
    return issue


def reopen_issue(
    db: Session,
    issue_id: UUID,
    user_id: UUID,
    reason: str | None = None,
    broadcaster: Broadcaster | None = None,
) -> ApplicationIssue:
    """
    Reopen a resolved issue and reactivate its thread.

    Authorization is the same as for resolving, ignoring the resolved state.
    """
    reason = reason.strip() if reason else None
    message = None

    with transactional(db):
        issue = get_issue(db, issue_id, for_update=True)
        if issue.status != IssueStatus.RESOLVED:
            raise IssueNotResolvedError("Only resolved issues can be reopened")
        if issue.application.is_finalized:
            raise ConflictError("Application already has a final decision")
        if not can_user_resolve_issue(db, issue, user_id, ignore_resolved=True):
            raise ForbiddenError("You are not allowed to reopen this issue")

        issue.status = IssueStatus.OPEN
        issue.resolved_by = None
        issue.resolved_at = None
        issue.reopened_by = user_id
        issue.reopened_at = utcnow()
        issue.reopen_count = (issue.reopen_count or 0) + 1

        if issue.chat_thread_id is not None:
            thread = chat_service.get_thread(db, issue.chat_thread_id)
            thread.is_active = True
            thread.is_resolved = False
            thread.resolved_at = None
            content = f"Issue reopened by {user_service.display_name(db, user_id)}"
            if reason:
                content += f":\n{reason}"
            message = chat_service.post_system_message(db, thread, user_id, content)

        _bump_counter(db, issue.assignment, "issues_resolved", -1)
        if issue.assignment is not None:
            readiness_service.refresh_assignment_state(db, issue.assignment)

    logger.info(
        "issue_reopened",
        extra=build_log_context(user_id=user_id, application_id=issue.application_id, issue_id=issue_id),
    )
    if broadcaster is not None:
        _announce_issue(broadcaster, issue, "reopened", user_id)
        if message is not None:
            chat_service.announce_message(broadcaster, message)
    return issue


def update_issue(db: Session, issue_id: UUID, user_id: UUID, data: IssueUpdate) -> ApplicationIssue:
    """Partial update of an open issue by its raiser."""
    changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    with transactional(db):
        issue = get_issue(db, issue_id, for_update=True)
        if issue.raised_by != user_id:
            raise ForbiddenError("Only the raiser can edit an issue")
        if issue.status == IssueStatus.RESOLVED:
            raise IssueAlreadyResolvedError("Resolved issues cannot be edited")
        for field, value in changes.items():
            setattr(issue, field, value.strip() if isinstance(value, str) else value)
    return issue
