"""Pydantic schemas for approval groups, decisions and final approval."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from townplan.db.enums import (
    ApplicationStatus,
    DecisionOutcome,
    DecisionStatus,
    MemberAvailability,
    MemberRole,
    ReviewMode,
)


# =============================================================================
# Groups and members
# =============================================================================

class MemberCreate(BaseModel):
    """Member definition used at group creation and when adding members."""

    user_id: UUID
    role: MemberRole = MemberRole.PRIMARY
    can_raise_issues: bool = True
    can_approve: bool = True
    can_reject: bool = True
    review_order: int = Field(0, ge=0)
    is_final_approver: bool = False
    backup_priority: int | None = Field(None, ge=1)


class ApprovalGroupCreate(BaseModel):
    name: str = Field(..., max_length=255)
    description: str | None = None
    review_mode: ReviewMode = ReviewMode.UNORDERED
    requires_all_approvals: bool = True
    minimum_approvals: int = Field(1, ge=1)
    auto_assign_backups: bool = False
    members: list[MemberCreate] = Field(default_factory=list)


class ApprovalGroupUpdate(BaseModel):
    """Partial update. Only fields that are set change."""

    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    review_mode: ReviewMode | None = None
    requires_all_approvals: bool | None = None
    minimum_approvals: int | None = Field(None, ge=1)
    auto_assign_backups: bool | None = None
    is_active: bool | None = None


class MemberUpdate(BaseModel):
    """Partial update of a member's role, capabilities or availability."""

    role: MemberRole | None = None
    can_raise_issues: bool | None = None
    can_approve: bool | None = None
    can_reject: bool | None = None
    review_order: int | None = Field(None, ge=0)
    backup_priority: int | None = Field(None, ge=1)
    availability: MemberAvailability | None = None
    unavailable_reason: str | None = Field(None, max_length=255)
    unavailable_until: datetime | None = None


class FinalApproverTransfer(BaseModel):
    member_id: UUID


class MemberRead(BaseModel):
    id: UUID
    user_id: UUID
    role: MemberRole
    can_raise_issues: bool
    can_approve: bool
    can_reject: bool
    review_order: int
    is_final_approver: bool
    backup_priority: int | None = None
    availability: MemberAvailability
    unavailable_reason: str | None = None
    unavailable_until: datetime | None = None
    is_active: bool
    joined_at: datetime

    model_config = {"from_attributes": True}


class ApprovalGroupRead(BaseModel):
    id: UUID
    name: str
    description: str | None = None
    review_mode: ReviewMode
    requires_all_approvals: bool
    minimum_approvals: int
    auto_assign_backups: bool
    is_active: bool
    created_by: UUID | None = None
    created_at: datetime
    members: list[MemberRead]

    model_config = {"from_attributes": True}


# =============================================================================
# Decisions
# =============================================================================

class DecisionSubmit(BaseModel):
    """Body for approve/reject. Rejections require a reason."""

    comment: str | None = Field(None, max_length=5000)
    reason: str | None = Field(None, max_length=2000)


class DecisionRevoke(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class DecisionRead(BaseModel):
    id: UUID
    member_id: UUID
    user_id: UUID
    status: DecisionStatus
    decided_at: datetime | None = None
    final_comment: str | None = None


class DecisionResultRead(BaseModel):
    decision: DecisionRead
    application_status: ApplicationStatus
    ready_for_final_approval: bool
    is_final_approver: bool
    policy_satisfied: bool
    open_blocking_issues: int
    auto_rejected: bool


class ReadinessRead(BaseModel):
    application_id: UUID
    assignment_id: UUID
    reviewer_count: int
    approved_count: int
    rejected_count: int
    pending_count: int
    counted_approvals: int
    policy_satisfied: bool
    open_blocking_issues: int
    ready_for_final_approval: bool


# =============================================================================
# Final approval
# =============================================================================

class FinalDecisionCreate(BaseModel):
    outcome: DecisionOutcome
    comment: str | None = Field(None, max_length=5000)


class FinalApprovalRead(BaseModel):
    id: UUID
    application_id: UUID
    approver_id: UUID
    decision: DecisionOutcome
    comment: str | None = None
    decision_at: datetime
    is_system_auto_decision: bool
    overrode_group_decision: bool
    override_reason: str | None = None

    model_config = {"from_attributes": True}
