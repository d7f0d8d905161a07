"""Issue endpoints: /applications/{id}/issues and /issues/{id}."""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from townplan.core.deps import get_broadcaster, get_current_user, get_db
from townplan.db.enums import IssueStatus
from townplan.db.models import User
from townplan.schemas.common import ApiResponse
from townplan.schemas.issue import (
    IssueCreate,
    IssueRead,
    IssueReopen,
    IssueResolve,
    IssueUpdate,
    RequiredResolverRead,
)
from townplan.services import issue_service
from townplan.services.broadcast import Broadcaster

router = APIRouter(tags=["issues"])


@router.post(
    "/applications/{application_id}/issues",
    response_model=ApiResponse[IssueRead],
    status_code=201,
)
def raise_issue(
    application_id: UUID,
    data: IssueCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    issue = issue_service.raise_issue(db, application_id, user.id, data, broadcaster)
    return ApiResponse(message="Issue raised", data=IssueRead.model_validate(issue))


@router.get("/applications/{application_id}/issues", response_model=ApiResponse[list[IssueRead]])
def list_issues(
    application_id: UUID,
    status: IssueStatus | None = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    issues = issue_service.list_issues(db, application_id, status)
    return ApiResponse(message="Issues retrieved", data=[IssueRead.model_validate(i) for i in issues])


@router.get("/issues/{issue_id}", response_model=ApiResponse[IssueRead])
def get_issue(
    issue_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    issue = issue_service.get_issue(db, issue_id)
    return ApiResponse(message="Issue retrieved", data=IssueRead.model_validate(issue))


@router.patch("/issues/{issue_id}", response_model=ApiResponse[IssueRead])
def update_issue(
    issue_id: UUID,
    data: IssueUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    issue = issue_service.update_issue(db, issue_id, user.id, data)
    return ApiResponse(message="Issue updated", data=IssueRead.model_validate(issue))


@router.post("/issues/{issue_id}/resolve", response_model=ApiResponse[IssueRead])
def resolve_issue(
    issue_id: UUID,
    data: IssueResolve,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    issue = issue_service.resolve_issue(db, issue_id, user.id, data.comment, broadcaster)
    return ApiResponse(message="Issue resolved", data=IssueRead.model_validate(issue))


@router.post("/issues/{issue_id}/reopen", response_model=ApiResponse[IssueRead])
def reopen_issue(
    issue_id: UUID,
    data: IssueReopen,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    issue = issue_service.reopen_issue(db, issue_id, user.id, data.reason, broadcaster)
    return ApiResponse(message="Issue reopened", data=IssueRead.model_validate(issue))


@router.get("/issues/{issue_id}/resolver", response_model=ApiResponse[RequiredResolverRead])
def required_resolver(
    issue_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Who can resolve the issue, and whether the caller can."""
    issue = issue_service.get_issue(db, issue_id)
    return ApiResponse(
        message="Resolver retrieved",
        data=RequiredResolverRead(
            issue_id=issue.id,
            description=issue_service.get_required_resolver(db, issue),
            can_current_user_resolve=issue_service.can_user_resolve_issue(db, issue, user.id),
        ),
    )
