"""Application issue ORM model."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from townplan.db.base import Base, enum_column, utcnow
from townplan.db.enums import IssueAssignmentType, IssuePriority, IssueStatus

if TYPE_CHECKING:
    from townplan.db.models import (
        Application,
        ApplicationGroupAssignment,
        ApprovalGroupMember,
        ChatThread,
        User,
    )


class ApplicationIssue(Base):
    """
    Question or request raised against an application during review.

    Target columns depend on assignment_type:
    - COLLABORATIVE: neither assigned_to_member_id nor assigned_to_user_id
    - GROUP_MEMBER: assigned_to_member_id only
    - SPECIFIC_USER: assigned_to_user_id only
    """

    __tablename__ = "application_issues"
    __table_args__ = (
        Index("idx_application_issues_app_status", "application_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    application_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("applications.id", ondelete="CASCADE"), nullable=False
    )
    assignment_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("application_group_assignments.id", ondelete="SET NULL"), nullable=True
    )
    raised_by: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[IssuePriority] = mapped_column(
        enum_column(IssuePriority, name="issue_priority"),
        default=IssuePriority.MEDIUM,
        nullable=False,
    )
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)

    assignment_type: Mapped[IssueAssignmentType] = mapped_column(
        enum_column(IssueAssignmentType, name="issue_assignment_type"), nullable=False
    )
    assigned_to_member_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("approval_group_members.id", ondelete="SET NULL"), nullable=True
    )
    assigned_to_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    status: Mapped[IssueStatus] = mapped_column(
        enum_column(IssueStatus, name="issue_status"),
        default=IssueStatus.OPEN,
        nullable=False,
    )
    is_blocking: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    chat_thread_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("chat_threads.id", ondelete="SET NULL"), nullable=True
    )

    resolution_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reopened_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    reopened_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reopen_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, nullable=False
    )

    application: Mapped["Application"] = relationship(back_populates="issues")
    assignment: Mapped["ApplicationGroupAssignment | None"] = relationship()
    raiser: Mapped["User"] = relationship(foreign_keys=[raised_by])
    assigned_member: Mapped["ApprovalGroupMember | None"] = relationship(
        foreign_keys=[assigned_to_member_id]
    )
    assigned_user: Mapped["User | None"] = relationship(foreign_keys=[assigned_to_user_id])
    chat_thread: Mapped["ChatThread | None"] = relationship(back_populates="issue")
