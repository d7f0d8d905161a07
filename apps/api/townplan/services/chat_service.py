"""
Chat threads and messages.

Counters (participant unread, thread total unread, message read/star
counts) are only ever changed with SQL increment expressions so concurrent
requests cannot lose updates.
"""

import logging
import uuid
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from townplan.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from townplan.core.structured_logging import build_log_context
from townplan.db.base import utcnow
from townplan.db.enums import (
    MessageStatus,
    MessageType,
    ParticipantRole,
    RealtimeEventType,
    ThreadType,
)
from townplan.db.models import (
    ChatAttachment,
    ChatMessage,
    ChatParticipant,
    ChatThread,
    MessageStar,
    ReadReceipt,
)
from townplan.db.statements import insert_ignore
from townplan.db.transaction import transactional
from townplan.schemas.chat import MessageCreate
from townplan.schemas.issue import AttachmentRef
from townplan.services.broadcast import Broadcaster

logger = logging.getLogger(__name__)


class NotParticipantError(ForbiddenError):
    """User is not an active participant of the thread."""

    def __init__(self, message: str = "user is not a participant in this thread"):
        super().__init__(message)


class ThreadClosedError(ConflictError):
    """Thread is inactive (for example its issue was resolved)."""

    pass


# =============================================================================
# Lookups
# =============================================================================

def get_thread(db: Session, thread_id: UUID) -> ChatThread:
    thread = db.query(ChatThread).filter(ChatThread.id == thread_id).first()
    if not thread:
        raise NotFoundError("Chat thread not found")
    return thread


def get_participant(db: Session, thread_id: UUID, user_id: UUID) -> ChatParticipant | None:
    """Participant row regardless of active state."""
    return (
        db.query(ChatParticipant)
        .filter(ChatParticipant.thread_id == thread_id, ChatParticipant.user_id == user_id)
        .first()
    )


def require_participant(db: Session, thread_id: UUID, user_id: UUID) -> ChatParticipant:
    participant = get_participant(db, thread_id, user_id)
    if not participant or not participant.is_active:
        raise NotParticipantError()
    return participant


def get_message(db: Session, message_id: UUID) -> ChatMessage:
    message = db.query(ChatMessage).filter(ChatMessage.id == message_id).first()
    if not message:
        raise NotFoundError("Message not found")
    return message


def list_threads_for_user(db: Session, user_id: UUID) -> list[tuple[ChatThread, int]]:
    """Threads the user actively participates in, most recent activity first."""
    rows = (
        db.query(ChatThread, ChatParticipant.unread_count)
        .join(ChatParticipant, ChatParticipant.thread_id == ChatThread.id)
        .filter(ChatParticipant.user_id == user_id, ChatParticipant.is_active.is_(True))
        .order_by(ChatThread.last_activity_at.desc())
        .all()
    )
    return [(thread, unread) for thread, unread in rows]


def list_active_thread_ids(db: Session, user_id: UUID) -> list[UUID]:
    return [
        thread_id
        for (thread_id,) in db.query(ChatParticipant.thread_id).filter(
            ChatParticipant.user_id == user_id, ChatParticipant.is_active.is_(True)
        )
    ]


def get_messages(
    db: Session,
    thread_id: UUID,
    user_id: UUID,
    limit: int = 100,
    before: datetime | None = None,
) -> list[ChatMessage]:
    """Messages in insertion order. Only participants may read a thread."""
    get_thread(db, thread_id)
    require_participant(db, thread_id, user_id)

    query = db.query(ChatMessage).filter(ChatMessage.thread_id == thread_id)
    if before is not None:
        query = query.filter(ChatMessage.created_at < before)
    newest = query.order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc()).limit(limit).all()
    return list(reversed(newest))


# =============================================================================
# Building blocks (run inside a caller's transaction, never commit)
# =============================================================================

def create_thread(
    db: Session,
    *,
    created_by: UUID,
    title: str,
    thread_type: ThreadType,
    application_id: UUID | None = None,
    description: str | None = None,
) -> ChatThread:
    """Create a thread with its creator as OWNER holding every permission."""
    thread = ChatThread(
        id=uuid.uuid4(),
        application_id=application_id,
        thread_type=thread_type,
        title=title,
        description=description,
        created_by=created_by,
    )
    db.add(thread)
    db.flush()
    add_participant_row(
        db,
        thread,
        created_by,
        role=ParticipantRole.OWNER,
        can_invite=True,
        can_remove=True,
        can_manage=True,
        added_by=created_by,
    )
    return thread


def add_participant_row(
    db: Session,
    thread: ChatThread,
    user_id: UUID,
    *,
    role: ParticipantRole = ParticipantRole.MEMBER,
    can_invite: bool = True,
    can_remove: bool = False,
    can_manage: bool = False,
    added_by: UUID | None = None,
) -> ChatParticipant:
    """Insert or reactivate a participant. No message, no permission check."""
    participant = get_participant(db, thread.id, user_id)
    if participant is None:
        participant = ChatParticipant(thread_id=thread.id, user_id=user_id)
        db.add(participant)
    participant.role = role
    participant.can_invite = can_invite
    participant.can_remove = can_remove
    participant.can_manage = can_manage
    participant.is_active = True
    participant.unread_count = 0
    participant.added_by = added_by
    participant.joined_at = utcnow()
    participant.removed_at = None
    participant.removed_by = None
    db.flush()
    return participant


def _create_message(
    db: Session,
    thread: ChatThread,
    sender_id: UUID,
    content: str,
    *,
    message_type: MessageType,
    parent_id: UUID | None = None,
    attachments: list[AttachmentRef] | None = None,
) -> ChatMessage:
    now = utcnow()
    message = ChatMessage(
        id=uuid.uuid4(),
        thread_id=thread.id,
        sender_id=sender_id,
        parent_id=parent_id,
        content=content,
        message_type=message_type,
        status=MessageStatus.SENT,
        created_at=now,
        updated_at=now,
    )
    db.add(message)
    for ref in attachments or []:
        message.attachments.append(
            ChatAttachment(
                document_id=ref.document_id,
                file_name=ref.file_name,
                content_type=ref.content_type,
            )
        )
    db.flush()

    # Everyone else now has one more unread message
    recipients = db.execute(
        update(ChatParticipant)
        .where(
            ChatParticipant.thread_id == thread.id,
            ChatParticipant.is_active.is_(True),
            ChatParticipant.user_id != sender_id,
        )
        .values(unread_count=ChatParticipant.unread_count + 1)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.execute(
        update(ChatThread)
        .where(ChatThread.id == thread.id)
        .values(
            unread_count=ChatThread.unread_count + recipients,
            last_activity_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.expire(thread, ["unread_count", "last_activity_at", "updated_at"])
    return message


def post_system_message(
    db: Session,
    thread: ChatThread,
    actor_id: UUID,
    content: str,
    attachments: list[AttachmentRef] | None = None,
) -> ChatMessage:
    """
    Record a state change in a thread as a SYSTEM message.

    Part of the caller's transaction: if anything later fails the message
    is rolled back with everything else.
    """
    return _create_message(
        db,
        thread,
        actor_id,
        content,
        message_type=MessageType.SYSTEM,
        attachments=attachments,
    )


def message_payload(message: ChatMessage) -> dict[str, Any]:
    """Realtime representation of a message."""
    return {
        "id": str(message.id),
        "threadId": str(message.thread_id),
        "senderId": str(message.sender_id),
        "parentId": str(message.parent_id) if message.parent_id else None,
        "content": message.content,
        "messageType": message.message_type.value,
        "isEdited": message.is_edited,
        "isDeleted": message.is_deleted,
        "createdAt": message.created_at.isoformat(),
        "attachments": [
            {"documentId": str(a.document_id), "fileName": a.file_name}
            for a in message.attachments
        ],
    }


def announce_message(
    broadcaster: Broadcaster | None,
    message: ChatMessage,
    *,
    exclude_user_ids: list[UUID] | None = None,
    action: str = "created",
) -> None:
    """Broadcast a committed message to the thread."""
    if broadcaster is None:
        return
    payload = message_payload(message)
    payload["action"] = action
    broadcaster.broadcast_to_thread(
        message.thread_id,
        RealtimeEventType.CHAT_MESSAGE,
        payload,
        exclude_user_ids=exclude_user_ids if exclude_user_ids is not None else [message.sender_id],
    )


# =============================================================================
# Messaging operations
# =============================================================================

def send_message(
    db: Session,
    thread_id: UUID,
    sender_id: UUID,
    data: MessageCreate,
    broadcaster: Broadcaster | None = None,
    *,
    parent_id: UUID | None = None,
) -> ChatMessage:
    """
    Post a user message.

    Args:
        db: Database session
        thread_id: Target thread
        sender_id: Sending user, must be an active participant
        data: Content and attachment references
        broadcaster: Realtime seam, called after commit
        parent_id: Message being replied to (set by reply_to_message)

    Returns:
        The persisted ChatMessage

    Raises:
        ValidationError: Empty content and no attachments
        NotFoundError: Thread does not exist
        ThreadClosedError: Thread is inactive
        NotParticipantError: Sender is not an active participant
    """
    content = (data.content or "").strip()
    if not content and not data.attachments:
        raise ValidationError("Message content or an attachment is required")

    with transactional(db):
        thread = get_thread(db, thread_id)
        if not thread.is_active:
            raise ThreadClosedError("Thread is not active")
        require_participant(db, thread_id, sender_id)
        message = _create_message(
            db,
            thread,
            sender_id,
            content,
            message_type=MessageType.TEXT,
            parent_id=parent_id,
            attachments=data.attachments,
        )

    logger.info(
        "chat_message_sent",
        extra=build_log_context(user_id=sender_id, thread_id=thread_id),
    )
    announce_message(broadcaster, message)
    return message


def reply_to_message(
    db: Session,
    parent_message_id: UUID,
    sender_id: UUID,
    data: MessageCreate,
    broadcaster: Broadcaster | None = None,
) -> ChatMessage:
    """Reply in the parent's thread; the child inherits its application binding."""
    parent = get_message(db, parent_message_id)
    if parent.is_deleted:
        raise ConflictError("Cannot reply to a deleted message")
    return send_message(
        db,
        parent.thread_id,
        sender_id,
        data,
        broadcaster,
        parent_id=parent.id,
    )


def edit_message(
    db: Session,
    message_id: UUID,
    user_id: UUID,
    content: str,
    broadcaster: Broadcaster | None = None,
) -> ChatMessage:
    content = content.strip()
    if not content:
        raise ValidationError("Message content is required")

    with transactional(db):
        message = get_message(db, message_id)
        if message.sender_id != user_id:
            raise ForbiddenError("Only the sender can edit a message")
        if message.message_type == MessageType.SYSTEM:
            raise ConflictError("System messages cannot be edited")
        if message.is_deleted:
            raise ConflictError("Message has been deleted")
        require_participant(db, message.thread_id, user_id)
        message.content = content
        message.is_edited = True
        message.edited_at = utcnow()

    announce_message(broadcaster, message, action="edited")
    return message


def delete_message(
    db: Session,
    message_id: UUID,
    user_id: UUID,
    broadcaster: Broadcaster | None = None,
) -> ChatMessage:
    """Soft delete. Only the sender may delete their message."""
    with transactional(db):
        message = get_message(db, message_id)
        if message.sender_id != user_id:
            raise ForbiddenError("Only the sender can delete a message")
        if message.message_type == MessageType.SYSTEM:
            raise ConflictError("System messages cannot be deleted")
        if message.is_deleted:
            raise ConflictError("Message already deleted")
        message.is_deleted = True
        message.deleted_at = utcnow()

    announce_message(broadcaster, message, action="deleted")
    return message


def toggle_star(db: Session, message_id: UUID, user_id: UUID) -> tuple[bool, int]:
    """
    Star the message for the user, or unstar it if already starred.

    Returns:
        (starred, star_count)
    """
    with transactional(db):
        message = get_message(db, message_id)
        require_participant(db, message.thread_id, user_id)

        inserted = insert_ignore(
            db,
            MessageStar,
            {"id": uuid.uuid4(), "message_id": message_id, "user_id": user_id, "created_at": utcnow()},
        )
        if inserted:
            delta = 1
        else:
            db.query(MessageStar).filter(
                MessageStar.message_id == message_id, MessageStar.user_id == user_id
            ).delete(synchronize_session=False)
            delta = -1

        db.execute(
            update(ChatMessage)
            .where(ChatMessage.id == message_id)
            .values(
                star_count=case(
                    (ChatMessage.star_count + delta < 0, 0),
                    else_=ChatMessage.star_count + delta,
                )
            )
            .execution_options(synchronize_session=False)
        )
        star_count = db.execute(
            select(ChatMessage.star_count).where(ChatMessage.id == message_id)
        ).scalar_one()

    return inserted, star_count


def mark_as_read(
    db: Session,
    thread_id: UUID,
    user_id: UUID,
    message_ids: list[UUID],
    broadcaster: Broadcaster | None = None,
    *,
    is_realtime: bool = False,
) -> list[UUID]:
    """
    Record read receipts and clear the caller's unread counter.

    Ids that do not belong to the thread, are deleted, or were sent by the
    caller are skipped. A message's read_count grows only when this user's
    receipt row is created, so repeated or concurrent calls count once.

    Returns:
        Message ids newly marked read by this call
    """
    newly_read: list[UUID] = []
    with transactional(db):
        get_thread(db, thread_id)
        require_participant(db, thread_id, user_id)

        valid_ids = []
        if message_ids:
            valid_ids = [
                mid
                for (mid,) in db.query(ChatMessage.id).filter(
                    ChatMessage.id.in_(list(set(message_ids))),
                    ChatMessage.thread_id == thread_id,
                    ChatMessage.is_deleted.is_(False),
                    ChatMessage.sender_id != user_id,
                )
            ]

        now = utcnow()
        for message_id in valid_ids:
            inserted = insert_ignore(
                db,
                ReadReceipt,
                {
                    "id": uuid.uuid4(),
                    "message_id": message_id,
                    "user_id": user_id,
                    "read_at": now,
                    "is_realtime": is_realtime,
                },
            )
            if inserted:
                db.execute(
                    update(ChatMessage)
                    .where(ChatMessage.id == message_id)
                    .values(read_count=ChatMessage.read_count + 1, status=MessageStatus.READ)
                    .execution_options(synchronize_session=False)
                )
                newly_read.append(message_id)

        previous_unread = (
            select(ChatParticipant.unread_count)
            .where(ChatParticipant.thread_id == thread_id, ChatParticipant.user_id == user_id)
            .scalar_subquery()
        )
        db.execute(
            update(ChatThread)
            .where(ChatThread.id == thread_id)
            .values(
                unread_count=case(
                    (ChatThread.unread_count - previous_unread > 0, ChatThread.unread_count - previous_unread),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )
        db.execute(
            update(ChatParticipant)
            .where(ChatParticipant.thread_id == thread_id, ChatParticipant.user_id == user_id)
            .values(unread_count=0, last_read_at=now)
            .execution_options(synchronize_session=False)
        )

    db.expire_all()
    if newly_read and broadcaster is not None:
        broadcaster.broadcast_to_thread(
            thread_id,
            RealtimeEventType.READ_RECEIPT,
            {
                "threadId": str(thread_id),
                "userId": str(user_id),
                "messageIds": [str(mid) for mid in newly_read],
            },
            exclude_user_ids=[user_id],
        )
    return newly_read
