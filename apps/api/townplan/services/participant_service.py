"""Chat participant management with permission checks and system messages."""

import logging
from uuid import UUID

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from townplan.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from townplan.core.structured_logging import build_log_context
from townplan.db.base import utcnow
from townplan.db.enums import ParticipantPermission, ParticipantRole, RealtimeEventType
from townplan.db.models import ChatParticipant, ChatThread
from townplan.db.transaction import transactional
from townplan.schemas.chat import ParticipantAdd, ParticipantUpdate
from townplan.services import chat_service, user_service
from townplan.services.broadcast import Broadcaster

logger = logging.getLogger(__name__)


class ThreadCreatorRemovalError(ForbiddenError):
    """The thread creator (owner) can never be removed."""

    pass


class AlreadyParticipantError(ConflictError):
    """User is already an active participant."""

    pass


# =============================================================================
# Permission checks
# =============================================================================

def can_user_manage_participants(
    db: Session,
    thread_id: UUID,
    user_id: UUID,
    permission: ParticipantPermission = ParticipantPermission.ANY,
) -> bool:
    """
    Whether a user may change the participant list.

    The thread creator always may. Anyone else needs to be an active
    participant holding the flag for the action (can_invite for add,
    can_remove for remove, can_manage for manage, any of them for any).
    """
    thread = chat_service.get_thread(db, thread_id)
    if thread.created_by == user_id:
        return True

    participant = chat_service.get_participant(db, thread_id, user_id)
    if not participant or not participant.is_active:
        return False

    if permission == ParticipantPermission.ADD:
        return participant.can_invite
    if permission == ParticipantPermission.REMOVE:
        return participant.can_remove
    if permission == ParticipantPermission.MANAGE:
        return participant.can_manage
    return participant.can_invite or participant.can_remove or participant.can_manage


# =============================================================================
# System message phrasing
# =============================================================================

def _join_names(names: list[str]) -> str:
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + " and " + names[-1]


def describe_participant_change(
    actor_name: str,
    target_names: list[str],
    *,
    added: bool,
    permissions: list[str] | None = None,
) -> str:
    """
    One line summarising an add/remove.

    - one target: "A added X to the conversation" (with granted permissions)
    - two or three: "A added X, Y and Z to the conversation"
    - more: "A added 5 participants to the conversation"
    """
    verb, preposition = ("added", "to") if added else ("removed", "from")
    count = len(target_names)

    if count > 3:
        return f"{actor_name} {verb} {count} participants {preposition} the conversation"

    text = f"{actor_name} {verb} {_join_names(target_names)} {preposition} the conversation"
    if count == 1 and added and permissions:
        text += f" with {_join_names(permissions)} permissions"
    return text


def _granted_permissions(item: ParticipantAdd) -> list[str]:
    granted = []
    if item.can_invite:
        granted.append("invite")
    if item.can_remove:
        granted.append("remove")
    if item.can_manage:
        granted.append("manage")
    return granted


# =============================================================================
# Operations
# =============================================================================

def list_participants(
    db: Session, thread_id: UUID, user_id: UUID, include_inactive: bool = False
) -> list[ChatParticipant]:
    chat_service.get_thread(db, thread_id)
    chat_service.require_participant(db, thread_id, user_id)
    query = db.query(ChatParticipant).filter(ChatParticipant.thread_id == thread_id)
    if not include_inactive:
        query = query.filter(ChatParticipant.is_active.is_(True))
    return query.order_by(ChatParticipant.joined_at).all()


def add_participants(
    db: Session,
    thread_id: UUID,
    actor_id: UUID,
    items: list[ParticipantAdd],
    broadcaster: Broadcaster | None = None,
) -> list[ChatParticipant]:
    """
    Add one or more participants in one transaction with one system message.

    Previously removed participants are reactivated with the new
    permissions. If any target is already active nothing is added.

    Raises:
        ValidationError: Empty or duplicate targets, or OWNER role requested
        NotFoundError: Thread or user not found
        ForbiddenError: Actor lacks the add permission
        AlreadyParticipantError: A target is already an active participant
    """
    if not items:
        raise ValidationError("At least one participant is required")
    user_ids = [item.user_id for item in items]
    if len(set(user_ids)) != len(user_ids):
        raise ValidationError("Duplicate participants in request")
    if any(item.role == ParticipantRole.OWNER for item in items):
        raise ValidationError("A thread has exactly one owner")

    with transactional(db):
        thread = chat_service.get_thread(db, thread_id)
        if not thread.is_active:
            raise chat_service.ThreadClosedError("Thread is not active")
        if not can_user_manage_participants(db, thread_id, actor_id, ParticipantPermission.ADD):
            raise ForbiddenError("You do not have permission to add participants")

        target_names = []
        for item in items:
            user = user_service.require_active_user(db, item.user_id)
            existing = chat_service.get_participant(db, thread_id, item.user_id)
            if existing and existing.is_active:
                raise AlreadyParticipantError(f"{user.display_name} is already a participant")
            target_names.append(user.display_name)

        added = [
            chat_service.add_participant_row(
                db,
                thread,
                item.user_id,
                role=item.role,
                can_invite=item.can_invite,
                can_remove=item.can_remove,
                can_manage=item.can_manage,
                added_by=actor_id,
            )
            for item in items
        ]

        content = describe_participant_change(
            user_service.display_name(db, actor_id),
            target_names,
            added=True,
            permissions=_granted_permissions(items[0]) if len(items) == 1 else None,
        )
        message = chat_service.post_system_message(db, thread, actor_id, content)

    logger.info(
        "chat_participants_added count=%d",
        len(added),
        extra=build_log_context(user_id=actor_id, thread_id=thread_id),
    )
    if broadcaster is not None:
        broadcaster.subscribe_users(thread_id, user_ids)
        broadcaster.broadcast_to_thread(
            thread_id,
            RealtimeEventType.PARTICIPANT_CHANGE,
            {
                "action": "added",
                "actorId": str(actor_id),
                "userIds": [str(uid) for uid in user_ids],
            },
            exclude_user_ids=[actor_id],
        )
        chat_service.announce_message(broadcaster, message)
    return added


def remove_participants(
    db: Session,
    thread_id: UUID,
    actor_id: UUID,
    user_ids: list[UUID],
    broadcaster: Broadcaster | None = None,
) -> list[ChatParticipant]:
    """
    Soft-remove participants with one system message.

    The creator can never be removed, by anyone. Participants may always
    remove themselves; removing others needs the remove permission.

    Raises:
        ValidationError: Empty or duplicate targets
        NotFoundError: Thread not found, or target is not an active participant
        ThreadCreatorRemovalError: A target is the thread creator or owner
        ForbiddenError: Actor lacks the remove permission
    """
    if not user_ids:
        raise ValidationError("At least one participant is required")
    if len(set(user_ids)) != len(user_ids):
        raise ValidationError("Duplicate participants in request")

    with transactional(db):
        thread = chat_service.get_thread(db, thread_id)

        targets = []
        for user_id in user_ids:
            participant = chat_service.get_participant(db, thread_id, user_id)
            if user_id == thread.created_by or (
                participant is not None and participant.role == ParticipantRole.OWNER
            ):
                raise ThreadCreatorRemovalError("The thread creator cannot be removed")
            if participant is None or not participant.is_active:
                raise NotFoundError("User is not an active participant")
            targets.append(participant)

        removing_others = any(p.user_id != actor_id for p in targets)
        if removing_others and not can_user_manage_participants(
            db, thread_id, actor_id, ParticipantPermission.REMOVE
        ):
            raise ForbiddenError("You do not have permission to remove participants")

        now = utcnow()
        target_names = []
        for participant in targets:
            target_names.append(user_service.display_name(db, participant.user_id))
            # Their unread messages no longer count toward the thread total
            db.execute(
                update(ChatThread)
                .where(ChatThread.id == thread_id)
                .values(
                    unread_count=case(
                        (
                            ChatThread.unread_count - participant.unread_count > 0,
                            ChatThread.unread_count - participant.unread_count,
                        ),
                        else_=0,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            participant.is_active = False
            participant.unread_count = 0
            participant.removed_at = now
            participant.removed_by = actor_id
        db.flush()

        content = describe_participant_change(
            user_service.display_name(db, actor_id), target_names, added=False
        )
        message = chat_service.post_system_message(db, thread, actor_id, content)

    logger.info(
        "chat_participants_removed count=%d",
        len(targets),
        extra=build_log_context(user_id=actor_id, thread_id=thread_id),
    )
    if broadcaster is not None:
        broadcaster.broadcast_to_thread(
            thread_id,
            RealtimeEventType.PARTICIPANT_CHANGE,
            {
                "action": "removed",
                "actorId": str(actor_id),
                "userIds": [str(uid) for uid in user_ids],
            },
            exclude_user_ids=[actor_id],
        )
        chat_service.announce_message(broadcaster, message)
        broadcaster.unsubscribe_users(thread_id, user_ids)
    return targets


def update_participant(
    db: Session,
    thread_id: UUID,
    actor_id: UUID,
    target_user_id: UUID,
    data: ParticipantUpdate,
    broadcaster: Broadcaster | None = None,
) -> ChatParticipant:
    """Apply a partial permission update. Requires the manage permission."""
    changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    if changes.get("role") == ParticipantRole.OWNER:
        raise ValidationError("A thread has exactly one owner")

    with transactional(db):
        thread = chat_service.get_thread(db, thread_id)
        if not can_user_manage_participants(db, thread_id, actor_id, ParticipantPermission.MANAGE):
            raise ForbiddenError("You do not have permission to manage participants")
        participant = chat_service.get_participant(db, thread_id, target_user_id)
        if participant is None or not participant.is_active:
            raise NotFoundError("User is not an active participant")
        if participant.user_id == thread.created_by or participant.role == ParticipantRole.OWNER:
            raise ForbiddenError("The thread owner's permissions cannot be changed")

        for field, value in changes.items():
            setattr(participant, field, value)

    if broadcaster is not None and changes:
        broadcaster.broadcast_to_thread(
            thread_id,
            RealtimeEventType.PARTICIPANT_CHANGE,
            {
                "action": "updated",
                "actorId": str(actor_id),
                "userIds": [str(target_user_id)],
            },
            exclude_user_ids=[actor_id],
        )
    return participant
