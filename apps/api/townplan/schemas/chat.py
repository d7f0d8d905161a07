"""Pydantic schemas for chat threads, messages and participants."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from townplan.db.enums import MessageStatus, MessageType, ParticipantRole, ThreadType
from townplan.schemas.issue import AttachmentRef


# =============================================================================
# Messages
# =============================================================================

class MessageCreate(BaseModel):
    content: str = Field("", max_length=10000)
    attachments: list[AttachmentRef] = Field(default_factory=list)


class MessageEdit(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)


class MarkReadRequest(BaseModel):
    message_ids: list[UUID] = Field(default_factory=list)


class AttachmentRead(BaseModel):
    id: UUID
    document_id: UUID
    file_name: str | None = None
    content_type: str | None = None

    model_config = {"from_attributes": True}


class MessageRead(BaseModel):
    id: UUID
    thread_id: UUID
    sender_id: UUID
    parent_id: UUID | None = None
    content: str
    message_type: MessageType
    status: MessageStatus
    is_edited: bool
    edited_at: datetime | None = None
    is_deleted: bool
    read_count: int
    star_count: int
    created_at: datetime
    attachments: list[AttachmentRead] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class MarkReadResult(BaseModel):
    thread_id: UUID
    newly_read: list[UUID]


class StarResult(BaseModel):
    message_id: UUID
    starred: bool
    star_count: int


# =============================================================================
# Threads and participants
# =============================================================================

class ParticipantAdd(BaseModel):
    user_id: UUID
    role: ParticipantRole = ParticipantRole.MEMBER
    can_invite: bool = True
    can_remove: bool = False
    can_manage: bool = False


class ParticipantsAddRequest(BaseModel):
    participants: list[ParticipantAdd] = Field(..., min_length=1)


class ParticipantsRemoveRequest(BaseModel):
    user_ids: list[UUID] = Field(..., min_length=1)


class ParticipantUpdate(BaseModel):
    """Partial permission update. Only fields that are set change."""

    role: ParticipantRole | None = None
    can_invite: bool | None = None
    can_remove: bool | None = None
    can_manage: bool | None = None
    mute_notifications: bool | None = None


class ParticipantRead(BaseModel):
    id: UUID
    user_id: UUID
    role: ParticipantRole
    can_invite: bool
    can_remove: bool
    can_manage: bool
    mute_notifications: bool
    is_active: bool
    unread_count: int
    last_read_at: datetime | None = None
    joined_at: datetime

    model_config = {"from_attributes": True}


class ThreadRead(BaseModel):
    id: UUID
    application_id: UUID | None = None
    thread_type: ThreadType
    title: str
    description: str | None = None
    created_by: UUID
    is_active: bool
    is_resolved: bool
    resolved_at: datetime | None = None
    unread_count: int
    last_activity_at: datetime

    model_config = {"from_attributes": True}


class ThreadSummary(BaseModel):
    """Thread as seen by one participant."""

    thread: ThreadRead
    my_unread_count: int
