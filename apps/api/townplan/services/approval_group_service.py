"""
Approval group management.

Groups are created together with their members so the exactly-one final
approver rule holds from the first commit. Afterwards the flag only moves
through set_final_approver.
"""

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from townplan.core.exceptions import ConflictError, NotFoundError, ValidationError
from townplan.core.structured_logging import build_log_context
from townplan.db.enums import MemberRole
from townplan.db.models import ApprovalGroup, ApprovalGroupMember
from townplan.db.transaction import transactional
from townplan.schemas.approval import (
    ApprovalGroupCreate,
    ApprovalGroupUpdate,
    MemberCreate,
    MemberUpdate,
)
from townplan.services import user_service
from townplan.services.approval_policy import is_reviewer

logger = logging.getLogger(__name__)


class FinalApproverCountError(ConflictError):
    """A group must have exactly one final approver."""

    pass


class FinalApproverRemovalError(ConflictError):
    """The final approver cannot be removed; transfer the flag first."""

    pass


# =============================================================================
# Lookups
# =============================================================================

def get_group(db: Session, group_id: UUID) -> ApprovalGroup:
    group = db.query(ApprovalGroup).filter(ApprovalGroup.id == group_id).first()
    if not group:
        raise NotFoundError("Approval group not found")
    return group


def list_groups(db: Session, active_only: bool = True) -> list[ApprovalGroup]:
    query = db.query(ApprovalGroup)
    if active_only:
        query = query.filter(ApprovalGroup.is_active.is_(True))
    return query.order_by(ApprovalGroup.name).all()


def get_member(db: Session, group_id: UUID, member_id: UUID) -> ApprovalGroupMember:
    member = (
        db.query(ApprovalGroupMember)
        .filter(
            ApprovalGroupMember.id == member_id,
            ApprovalGroupMember.approval_group_id == group_id,
        )
        .first()
    )
    if not member:
        raise NotFoundError("Group member not found")
    return member


def get_member_for_user(db: Session, group_id: UUID, user_id: UUID) -> ApprovalGroupMember | None:
    return (
        db.query(ApprovalGroupMember)
        .filter(
            ApprovalGroupMember.approval_group_id == group_id,
            ApprovalGroupMember.user_id == user_id,
        )
        .first()
    )


# =============================================================================
# Validation
# =============================================================================

def _validate_threshold(group: ApprovalGroup) -> None:
    """minimum_approvals must be reachable by the group's reviewers."""
    if group.requires_all_approvals:
        return
    reviewers = [m for m in group.members if is_reviewer(m)]
    if not reviewers and group.final_approver is not None:
        # Final approver decides alone
        return
    if group.minimum_approvals < 1 or group.minimum_approvals > len(reviewers):
        raise ValidationError(
            f"minimum_approvals must be between 1 and {len(reviewers)} approving members"
        )


def _new_member(data: MemberCreate, group_id: UUID | None, added_by: UUID | None) -> ApprovalGroupMember:
    backup_priority = data.backup_priority
    if backup_priority is None and data.role == MemberRole.PRIMARY:
        backup_priority = 1
    return ApprovalGroupMember(
        approval_group_id=group_id,
        user_id=data.user_id,
        role=data.role,
        can_raise_issues=data.can_raise_issues,
        can_approve=data.can_approve,
        can_reject=data.can_reject,
        review_order=data.review_order,
        is_final_approver=data.is_final_approver,
        backup_priority=backup_priority,
        is_active=True,
        added_by=added_by,
    )


# =============================================================================
# Groups
# =============================================================================

def create_group_with_members(
    db: Session, data: ApprovalGroupCreate, created_by: UUID | None = None
) -> ApprovalGroup:
    """
    Create a group and all of its members in one transaction.

    Raises:
        ValidationError: Missing name or members, duplicate users, bad threshold
        NotFoundError: A member user does not exist or is inactive
        ConflictError: Name already taken
        FinalApproverCountError: Zero or several members flagged final approver
    """
    name = data.name.strip()
    if not name:
        raise ValidationError("Group name is required")
    if not data.members:
        raise ValidationError("At least one member is required")
    user_ids = [m.user_id for m in data.members]
    if len(set(user_ids)) != len(user_ids):
        raise ValidationError("A user can only be added to a group once")

    final_count = sum(1 for m in data.members if m.is_final_approver)
    if final_count != 1:
        raise FinalApproverCountError(
            f"Exactly one final approver is required, got {final_count}"
        )

    with transactional(db):
        for user_id in user_ids:
            user_service.require_active_user(db, user_id)
        if db.query(ApprovalGroup.id).filter(ApprovalGroup.name == name).first():
            raise ConflictError(f"Approval group '{name}' already exists")

        group = ApprovalGroup(
            name=name,
            description=data.description,
            review_mode=data.review_mode,
            requires_all_approvals=data.requires_all_approvals,
            minimum_approvals=data.minimum_approvals,
            auto_assign_backups=data.auto_assign_backups,
            created_by=created_by,
        )
        for member_data in data.members:
            group.members.append(_new_member(member_data, None, created_by))
        _validate_threshold(group)
        db.add(group)

    logger.info(
        "approval_group_created group=%s members=%d",
        group.id,
        len(data.members),
        extra=build_log_context(user_id=created_by),
    )
    return group


def update_group(db: Session, group_id: UUID, data: ApprovalGroupUpdate) -> ApprovalGroup:
    changes = data.model_dump(exclude_unset=True)
    with transactional(db):
        group = get_group(db, group_id)
        if "name" in changes and changes["name"] is not None:
            name = changes["name"].strip()
            duplicate = (
                db.query(ApprovalGroup.id)
                .filter(ApprovalGroup.name == name, ApprovalGroup.id != group_id)
                .first()
            )
            if duplicate:
                raise ConflictError(f"Approval group '{name}' already exists")
            changes["name"] = name

        for field, value in changes.items():
            if value is None and field != "description":
                continue
            setattr(group, field, value)
        _validate_threshold(group)
    return group


# =============================================================================
# Members
# =============================================================================

def add_member(
    db: Session, group_id: UUID, data: MemberCreate, added_by: UUID | None = None
) -> ApprovalGroupMember:
    """Add or reactivate a member. New members are never the final approver."""
    if data.is_final_approver:
        raise ConflictError("Use the final approver transfer to move the flag")

    with transactional(db):
        group = get_group(db, group_id)
        user_service.require_active_user(db, data.user_id)
        member = get_member_for_user(db, group_id, data.user_id)
        if member is not None and member.is_active:
            raise ConflictError("User is already a member of this group")

        if member is None:
            member = _new_member(data, group_id, added_by)
            group.members.append(member)
        else:
            fresh = _new_member(data, group_id, added_by)
            for field in (
                "role",
                "can_raise_issues",
                "can_approve",
                "can_reject",
                "review_order",
                "backup_priority",
                "added_by",
            ):
                setattr(member, field, getattr(fresh, field))
            member.is_final_approver = False
            member.is_active = True
    return member


def update_member(
    db: Session, group_id: UUID, member_id: UUID, data: MemberUpdate
) -> ApprovalGroupMember:
    changes = data.model_dump(exclude_unset=True)
    with transactional(db):
        group = get_group(db, group_id)
        member = get_member(db, group_id, member_id)
        for field, value in changes.items():
            if value is None and field not in ("unavailable_reason", "unavailable_until", "backup_priority"):
                continue
            setattr(member, field, value)
        if member.is_final_approver and member.role == MemberRole.RETIRED:
            raise ConflictError("The final approver cannot be retired")
        _validate_threshold(group)
    return member


def remove_member(db: Session, group_id: UUID, member_id: UUID) -> ApprovalGroupMember:
    """Soft-deactivate a member; decisions already recorded stay for history."""
    with transactional(db):
        group = get_group(db, group_id)
        member = get_member(db, group_id, member_id)
        if not member.is_active:
            raise NotFoundError("Group member not found")
        if member.is_final_approver:
            raise FinalApproverRemovalError("The final approver cannot be removed")
        member.is_active = False
        _validate_threshold(group)
    return member


def set_final_approver(db: Session, group_id: UUID, member_id: UUID) -> ApprovalGroup:
    """Move the final approver flag to another active member."""
    with transactional(db):
        group = get_group(db, group_id)
        target = get_member(db, group_id, member_id)
        if not target.is_active or target.role == MemberRole.RETIRED:
            raise ConflictError("The final approver must be an active member")
        if target.is_final_approver:
            return group

        current = group.final_approver
        if current is not None:
            current.is_final_approver = False
            # Clear before setting so the partial unique index never sees two
            db.flush()
        target.is_final_approver = True
        _validate_threshold(group)

    logger.info("approval_group_final_approver_changed group=%s member=%s", group_id, member_id)
    return group
