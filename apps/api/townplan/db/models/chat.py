"""Chat thread, participant and message ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from townplan.db.base import Base, enum_column, utcnow
from townplan.db.enums import MessageStatus, MessageType, ParticipantRole, ThreadType

if TYPE_CHECKING:
    from townplan.db.models import ApplicationIssue, User


class ChatThread(Base):
    """Conversation scoped to an application review or an issue."""

    __tablename__ = "chat_threads"
    __table_args__ = (Index("idx_chat_threads_application", "application_id"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    application_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("applications.id", ondelete="CASCADE"), nullable=True
    )
    thread_type: Mapped[ThreadType] = mapped_column(
        enum_column(ThreadType, name="thread_type"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    # Sum of participant unread counters
    unread_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, nullable=False
    )

    creator: Mapped["User"] = relationship()
    participants: Mapped[list["ChatParticipant"]] = relationship(
        back_populates="thread",
        cascade="all, delete-orphan",
        order_by="ChatParticipant.joined_at",
    )
    issue: Mapped["ApplicationIssue | None"] = relationship(
        back_populates="chat_thread", uselist=False
    )

    @property
    def active_participants(self) -> list["ChatParticipant"]:
        return [p for p in self.participants if p.is_active]


class ChatParticipant(Base):
    """Thread membership with per-participant permissions and unread state."""

    __tablename__ = "chat_participants"
    __table_args__ = (
        UniqueConstraint("thread_id", "user_id", name="uq_chat_participant_thread_user"),
        Index("idx_chat_participants_user_active", "user_id", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    thread_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("chat_threads.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[ParticipantRole] = mapped_column(
        enum_column(ParticipantRole, name="participant_role"),
        default=ParticipantRole.MEMBER,
        nullable=False,
    )

    can_invite: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_remove: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_manage: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    mute_notifications: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    unread_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_read_at: Mapped[datetime | None] = mapped_column(nullable=True)

    added_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    joined_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    removed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    removed_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    thread: Mapped["ChatThread"] = relationship(back_populates="participants")
    user: Mapped["User"] = relationship(foreign_keys=[user_id])


class ChatMessage(Base):
    """Message in a thread. Deletion is soft; ordering is (created_at, id)."""

    __tablename__ = "chat_messages"
    __table_args__ = (Index("idx_chat_messages_thread_created", "thread_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    thread_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("chat_threads.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("chat_messages.id", ondelete="SET NULL"), nullable=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    message_type: Mapped[MessageType] = mapped_column(
        enum_column(MessageType, name="message_type"),
        default=MessageType.TEXT,
        nullable=False,
    )
    status: Mapped[MessageStatus] = mapped_column(
        enum_column(MessageStatus, name="message_status"),
        default=MessageStatus.SENT,
        nullable=False,
    )

    is_edited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    edited_at: Mapped[datetime | None] = mapped_column(nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    read_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    star_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, nullable=False
    )

    sender: Mapped["User"] = relationship()
    parent: Mapped["ChatMessage | None"] = relationship(remote_side=[id])
    attachments: Mapped[list["ChatAttachment"]] = relationship(
        back_populates="message", cascade="all, delete-orphan"
    )


class ChatAttachment(Base):
    """Reference to a stored document attached to a message."""

    __tablename__ = "chat_attachments"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    message_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False
    )
    document_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    message: Mapped["ChatMessage"] = relationship(back_populates="attachments")


class ReadReceipt(Base):
    """One per (message, user). Inserted with ON CONFLICT DO NOTHING."""

    __tablename__ = "read_receipts"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_read_receipt_message_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    message_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    read_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    is_realtime: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class MessageStar(Base):
    __tablename__ = "message_stars"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_star_message_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    message_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
