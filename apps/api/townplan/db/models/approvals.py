"""Approval group, decision and final approval ORM models."""

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
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from townplan.db.base import Base, enum_column, utcnow
from townplan.db.enums import (
    CommentType,
    DecisionOutcome,
    DecisionStatus,
    MemberAvailability,
    MemberRole,
    ReviewMode,
)

if TYPE_CHECKING:
    from townplan.db.models import Application, ChatThread, User


class ApprovalGroup(Base):
    """Configurable set of reviewers with an approval policy."""

    __tablename__ = "approval_groups"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    review_mode: Mapped[ReviewMode] = mapped_column(
        enum_column(ReviewMode, name="review_mode"),
        default=ReviewMode.UNORDERED,
        nullable=False,
    )
    requires_all_approvals: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    minimum_approvals: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    auto_assign_backups: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, nullable=False
    )

    members: Mapped[list["ApprovalGroupMember"]] = relationship(
        back_populates="group",
        cascade="all, delete-orphan",
        order_by=lambda: [ApprovalGroupMember.review_order, ApprovalGroupMember.joined_at],
    )

    @property
    def active_members(self) -> list["ApprovalGroupMember"]:
        return [m for m in self.members if m.is_active]

    @property
    def final_approver(self) -> "ApprovalGroupMember | None":
        for member in self.members:
            if member.is_active and member.is_final_approver:
                return member
        return None


class ApprovalGroupMember(Base):
    """
    Group membership with per-member capabilities.

    At most one active member per group carries is_final_approver; the
    partial unique index backs the service-level exactly-one check.
    """

    __tablename__ = "approval_group_members"
    __table_args__ = (
        UniqueConstraint("approval_group_id", "user_id", name="uq_approval_group_member_user"),
        Index(
            "uq_approval_group_final_approver",
            "approval_group_id",
            unique=True,
            postgresql_where=text("is_final_approver AND is_active"),
            sqlite_where=text("is_final_approver AND is_active"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    approval_group_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("approval_groups.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[MemberRole] = mapped_column(
        enum_column(MemberRole, name="member_role"),
        default=MemberRole.PRIMARY,
        nullable=False,
    )

    # Capabilities
    can_raise_issues: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_approve: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_reject: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_final_approver: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    review_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    backup_priority: Mapped[int | None] = mapped_column(Integer, nullable=True)

    availability: Mapped[MemberAvailability] = mapped_column(
        enum_column(MemberAvailability, name="member_availability"),
        default=MemberAvailability.AVAILABLE,
        nullable=False,
    )
    unavailable_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    unavailable_until: Mapped[datetime | None] = mapped_column(nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    added_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    joined_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    group: Mapped["ApprovalGroup"] = relationship(back_populates="members")
    user: Mapped["User"] = relationship(foreign_keys=[user_id])


class ApplicationGroupAssignment(Base):
    """
    Links an application to the approval group reviewing it.

    Counter columns are a cache refreshed after every decision or issue
    change; the final approval gate always recomputes readiness live.
    """

    __tablename__ = "application_group_assignments"
    __table_args__ = (
        Index("idx_group_assignment_application", "application_id", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    application_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("applications.id", ondelete="CASCADE"), nullable=False
    )
    approval_group_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("approval_groups.id", ondelete="RESTRICT"), nullable=False
    )
    review_thread_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("chat_threads.id", ondelete="SET NULL"), nullable=True
    )
    assigned_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    assigned_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    total_members: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    approved_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rejected_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pending_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    issues_raised: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    issues_resolved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    ready_for_final_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    final_decision_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    application: Mapped["Application"] = relationship(back_populates="assignments")
    group: Mapped["ApprovalGroup"] = relationship()
    review_thread: Mapped["ChatThread | None"] = relationship()
    decisions: Mapped[list["MemberDecision"]] = relationship(
        back_populates="assignment", cascade="all, delete-orphan"
    )


class MemberDecision(Base):
    """One member's verdict for an assignment. Re-submission overwrites."""

    __tablename__ = "member_decisions"
    __table_args__ = (
        UniqueConstraint("assignment_id", "member_id", name="uq_member_decision_assignment_member"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    assignment_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("application_group_assignments.id", ondelete="CASCADE"), nullable=False
    )
    member_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("approval_group_members.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[DecisionStatus] = mapped_column(
        enum_column(DecisionStatus, name="decision_status"),
        default=DecisionStatus.PENDING,
        nullable=False,
    )
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, nullable=False
    )

    assignment: Mapped["ApplicationGroupAssignment"] = relationship(back_populates="decisions")
    member: Mapped["ApprovalGroupMember"] = relationship()
    comments: Mapped[list["DecisionComment"]] = relationship(
        back_populates="decision",
        cascade="all, delete-orphan",
        order_by="DecisionComment.created_at",
    )


class DecisionComment(Base):
    """Comment attached to a decision. The newest one is the final comment."""

    __tablename__ = "decision_comments"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    decision_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("member_decisions.id", ondelete="CASCADE"), nullable=False
    )
    comment_type: Mapped[CommentType] = mapped_column(
        enum_column(CommentType, name="comment_type"),
        default=CommentType.GENERAL,
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    decision: Mapped["MemberDecision"] = relationship(back_populates="comments")


class DecisionRevocation(Base):
    """Audit row written when a member withdraws a decision."""

    __tablename__ = "decision_revocations"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    decision_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("member_decisions.id", ondelete="CASCADE"), nullable=False
    )
    revoked_by: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    previous_status: Mapped[DecisionStatus] = mapped_column(
        enum_column(DecisionStatus, name="decision_status"), nullable=False
    )
    revoked_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class FinalApproval(Base):
    """Binding, immutable outcome for an application. One per application."""

    __tablename__ = "final_approvals"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    application_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("applications.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    assignment_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("application_group_assignments.id", ondelete="SET NULL"), nullable=True
    )
    approver_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    decision: Mapped[DecisionOutcome] = mapped_column(
        enum_column(DecisionOutcome, name="decision_outcome"), nullable=False
    )
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    decision_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    is_system_auto_decision: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    overrode_group_decision: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    application: Mapped["Application"] = relationship(back_populates="final_approval")
    approver: Mapped["User"] = relationship()
