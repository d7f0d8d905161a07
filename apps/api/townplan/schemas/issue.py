"""Pydantic schemas for application issues."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from townplan.db.enums import IssueAssignmentType, IssuePriority, IssueStatus


class AttachmentRef(BaseModel):
    """Document already stored by the document service."""

    document_id: UUID
    file_name: str | None = Field(None, max_length=255)
    content_type: str | None = Field(None, max_length=100)


class IssueCreate(BaseModel):
    """
    Raise an issue.

    Target rules are checked by the issue service so direct callers get the
    same errors as HTTP callers:
    - COLLABORATIVE: no target
    - GROUP_MEMBER: assigned_to_member_id
    - SPECIFIC_USER: assigned_to_user_id
    """

    title: str = Field(..., max_length=255)
    description: str = Field(..., max_length=10000)
    priority: IssuePriority = IssuePriority.MEDIUM
    category: str | None = Field(None, max_length=100)
    assignment_type: IssueAssignmentType
    assigned_to_member_id: UUID | None = None
    assigned_to_user_id: UUID | None = None
    is_blocking: bool | None = None  # None: default for the assignment type
    create_thread: bool = True
    attachments: list[AttachmentRef] = Field(default_factory=list)


class IssueUpdate(BaseModel):
    """Partial update by the raiser. Only fields that are set change."""

    title: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, min_length=1, max_length=10000)
    priority: IssuePriority | None = None
    category: str | None = Field(None, max_length=100)


class IssueResolve(BaseModel):
    comment: str | None = Field(None, max_length=5000)


class IssueReopen(BaseModel):
    reason: str | None = Field(None, max_length=5000)


class IssueRead(BaseModel):
    id: UUID
    application_id: UUID
    raised_by: UUID
    title: str
    description: str
    priority: IssuePriority
    category: str | None = None
    assignment_type: IssueAssignmentType
    assigned_to_member_id: UUID | None = None
    assigned_to_user_id: UUID | None = None
    status: IssueStatus
    is_blocking: bool
    chat_thread_id: UUID | None = None
    resolution_comment: str | None = None
    resolved_by: UUID | None = None
    resolved_at: datetime | None = None
    reopened_by: UUID | None = None
    reopened_at: datetime | None = None
    reopen_count: int
    created_at: datetime

    model_config = {"from_attributes": True}


class RequiredResolverRead(BaseModel):
    issue_id: UUID
    description: str
    can_current_user_resolve: bool
