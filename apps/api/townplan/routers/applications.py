"""Application lifecycle, member decision and final approval endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from townplan.core.deps import get_broadcaster, get_current_user, get_db
from townplan.db.enums import DecisionOutcome
from townplan.db.models import User
from townplan.schemas.application import ApplicationCreate, ApplicationRead, AssignGroupRequest
from townplan.schemas.approval import (
    DecisionRead,
    DecisionResultRead,
    DecisionRevoke,
    DecisionSubmit,
    FinalApprovalRead,
    FinalDecisionCreate,
    ReadinessRead,
)
from townplan.schemas.common import ApiResponse
from townplan.services import application_service, decision_service, final_approval_service
from townplan.services.broadcast import Broadcaster

router = APIRouter(prefix="/applications", tags=["applications"])


def _decision_result(result: decision_service.DecisionResult) -> DecisionResultRead:
    return DecisionResultRead(
        decision=DecisionRead(**decision_service.decision_view(result.decision)),
        application_status=result.application_status,
        ready_for_final_approval=result.ready_for_final_approval,
        is_final_approver=result.is_final_approver,
        policy_satisfied=result.policy_satisfied,
        open_blocking_issues=result.open_blocking_issues,
        auto_rejected=result.auto_rejected,
    )


# =============================================================================
# Lifecycle
# =============================================================================

@router.post("", response_model=ApiResponse[ApplicationRead], status_code=201)
def create_application(
    data: ApplicationCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    application = application_service.create_application(db, data, created_by=user.id)
    return ApiResponse(message="Application submitted", data=ApplicationRead.model_validate(application))


@router.get("/{application_id}", response_model=ApiResponse[ApplicationRead])
def get_application(
    application_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    application = application_service.get_application(db, application_id)
    return ApiResponse(message="Application retrieved", data=ApplicationRead.model_validate(application))


@router.post("/{application_id}/assign-group", response_model=ApiResponse[ApplicationRead])
def assign_group(
    application_id: UUID,
    data: AssignGroupRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Start review by an approval group. Opens the review thread."""
    application_service.assign_approval_group(
        db, application_id, data.approval_group_id, user.id, broadcaster
    )
    application = application_service.get_application(db, application_id)
    return ApiResponse(message="Approval group assigned", data=ApplicationRead.model_validate(application))


@router.post("/{application_id}/collect", response_model=ApiResponse[ApplicationRead])
def collect(
    application_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    application = application_service.mark_collected(db, application_id, user.id)
    return ApiResponse(message="Application collected", data=ApplicationRead.model_validate(application))


# =============================================================================
# Member decisions
# =============================================================================

@router.post("/{application_id}/approve", response_model=ApiResponse[DecisionResultRead])
def approve(
    application_id: UUID,
    data: DecisionSubmit,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    assignment = application_service.get_active_assignment(db, application_id)
    result = decision_service.record_decision(
        db, assignment.id, user.id, DecisionOutcome.APPROVED, data.comment, data.reason, broadcaster
    )
    return ApiResponse(message="Decision recorded", data=_decision_result(result))


@router.post("/{application_id}/reject", response_model=ApiResponse[DecisionResultRead])
def reject(
    application_id: UUID,
    data: DecisionSubmit,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Reject as a group member. A reason is required."""
    assignment = application_service.get_active_assignment(db, application_id)
    result = decision_service.record_decision(
        db, assignment.id, user.id, DecisionOutcome.REJECTED, data.comment, data.reason, broadcaster
    )
    return ApiResponse(message="Decision recorded", data=_decision_result(result))


@router.post("/{application_id}/revoke-decision", response_model=ApiResponse[DecisionRead])
def revoke_decision(
    application_id: UUID,
    data: DecisionRevoke,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    assignment = application_service.get_active_assignment(db, application_id)
    decision = decision_service.revoke_decision(db, assignment.id, user.id, data.reason, broadcaster)
    return ApiResponse(message="Decision revoked", data=DecisionRead(**decision_service.decision_view(decision)))


@router.get("/{application_id}/decisions", response_model=ApiResponse[list[DecisionRead]])
def list_decisions(
    application_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    decisions = decision_service.list_decisions(db, application_id)
    return ApiResponse(
        message="Decisions retrieved",
        data=[DecisionRead(**decision_service.decision_view(d)) for d in decisions],
    )


@router.get("/{application_id}/readiness", response_model=ApiResponse[ReadinessRead])
def readiness(
    application_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Live readiness for final approval."""
    assignment, result = decision_service.get_readiness(db, application_id)
    evaluation = result.evaluation
    return ApiResponse(
        message="Readiness computed",
        data=ReadinessRead(
            application_id=application_id,
            assignment_id=assignment.id,
            reviewer_count=evaluation.reviewer_count,
            approved_count=evaluation.approved_count,
            rejected_count=evaluation.rejected_count,
            pending_count=evaluation.pending_count,
            counted_approvals=evaluation.counted_approvals,
            policy_satisfied=evaluation.satisfied,
            open_blocking_issues=result.open_blocking_issues,
            ready_for_final_approval=result.ready,
        ),
    )


# =============================================================================
# Final approval
# =============================================================================

@router.post("/{application_id}/final-decision", response_model=ApiResponse[FinalApprovalRead], status_code=201)
def final_decision(
    application_id: UUID,
    data: FinalDecisionCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Binding decision by the group's final approver."""
    final = final_approval_service.render_final_decision(
        db, application_id, user.id, data.outcome, data.comment, broadcaster
    )
    return ApiResponse(message="Final decision recorded", data=FinalApprovalRead.model_validate(final))


@router.get("/{application_id}/final-decision", response_model=ApiResponse[FinalApprovalRead | None])
def get_final_decision(
    application_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    application_service.get_application(db, application_id)
    final = final_approval_service.get_final_approval(db, application_id)
    return ApiResponse(
        message="Final decision retrieved",
        data=FinalApprovalRead.model_validate(final) if final else None,
    )
