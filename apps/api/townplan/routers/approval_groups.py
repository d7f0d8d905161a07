"""Approval group management endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from townplan.core.deps import get_current_user, get_db
from townplan.db.models import User
from townplan.schemas.approval import (
    ApprovalGroupCreate,
    ApprovalGroupRead,
    ApprovalGroupUpdate,
    FinalApproverTransfer,
    MemberCreate,
    MemberRead,
    MemberUpdate,
)
from townplan.schemas.common import ApiResponse
from townplan.services import approval_group_service

router = APIRouter(prefix="/approval-groups", tags=["approval-groups"])


# =============================================================================
# Groups
# =============================================================================

@router.post("", response_model=ApiResponse[ApprovalGroupRead], status_code=201)
def create_group(
    data: ApprovalGroupCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create a group together with its members."""
    group = approval_group_service.create_group_with_members(db, data, created_by=user.id)
    return ApiResponse(
        message="Approval group created",
        data=ApprovalGroupRead.model_validate(group),
    )


@router.get("", response_model=ApiResponse[list[ApprovalGroupRead]])
def list_groups(
    include_inactive: bool = False,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    groups = approval_group_service.list_groups(db, active_only=not include_inactive)
    return ApiResponse(
        message="Approval groups retrieved",
        data=[ApprovalGroupRead.model_validate(g) for g in groups],
    )


@router.get("/{group_id}", response_model=ApiResponse[ApprovalGroupRead])
def get_group(
    group_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    group = approval_group_service.get_group(db, group_id)
    return ApiResponse(message="Approval group retrieved", data=ApprovalGroupRead.model_validate(group))


@router.patch("/{group_id}", response_model=ApiResponse[ApprovalGroupRead])
def update_group(
    group_id: UUID,
    data: ApprovalGroupUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    group = approval_group_service.update_group(db, group_id, data)
    return ApiResponse(message="Approval group updated", data=ApprovalGroupRead.model_validate(group))


# =============================================================================
# Members
# =============================================================================

@router.post("/{group_id}/members", response_model=ApiResponse[MemberRead], status_code=201)
def add_member(
    group_id: UUID,
    data: MemberCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    member = approval_group_service.add_member(db, group_id, data, added_by=user.id)
    return ApiResponse(message="Member added", data=MemberRead.model_validate(member))


@router.patch("/{group_id}/members/{member_id}", response_model=ApiResponse[MemberRead])
def update_member(
    group_id: UUID,
    member_id: UUID,
    data: MemberUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    member = approval_group_service.update_member(db, group_id, member_id, data)
    return ApiResponse(message="Member updated", data=MemberRead.model_validate(member))


@router.delete("/{group_id}/members/{member_id}", response_model=ApiResponse[MemberRead])
def remove_member(
    group_id: UUID,
    member_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    member = approval_group_service.remove_member(db, group_id, member_id)
    return ApiResponse(message="Member removed", data=MemberRead.model_validate(member))


@router.put("/{group_id}/final-approver", response_model=ApiResponse[ApprovalGroupRead])
def transfer_final_approver(
    group_id: UUID,
    data: FinalApproverTransfer,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Move the final approver flag to another active member."""
    group = approval_group_service.set_final_approver(db, group_id, data.member_id)
    return ApiResponse(message="Final approver updated", data=ApprovalGroupRead.model_validate(group))
