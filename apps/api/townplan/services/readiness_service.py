"""Live readiness evaluation and the cached assignment counters."""

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from townplan.db.enums import IssueStatus
from townplan.db.models import ApplicationGroupAssignment, ApplicationIssue, MemberDecision
from townplan.services import approval_policy
from townplan.services.approval_policy import PolicyEvaluation


@dataclass(frozen=True)
class Readiness:
    evaluation: PolicyEvaluation
    open_blocking_issues: int

    @property
    def ready(self) -> bool:
        return self.evaluation.satisfied and self.open_blocking_issues == 0


def count_open_blocking_issues(db: Session, application_id: UUID) -> int:
    return (
        db.query(func.count(ApplicationIssue.id))
        .filter(
            ApplicationIssue.application_id == application_id,
            ApplicationIssue.status == IssueStatus.OPEN,
            ApplicationIssue.is_blocking.is_(True),
        )
        .scalar()
        or 0
    )


def evaluate_assignment(db: Session, assignment: ApplicationGroupAssignment) -> Readiness:
    """Recompute readiness from the current decisions and issues."""
    decisions = (
        db.query(MemberDecision).filter(MemberDecision.assignment_id == assignment.id).all()
    )
    policy = approval_policy.build_policy(assignment.group)
    evaluation = approval_policy.evaluate(policy, approval_policy.decision_map(decisions))
    return Readiness(
        evaluation=evaluation,
        open_blocking_issues=count_open_blocking_issues(db, assignment.application_id),
    )


def refresh_assignment_state(db: Session, assignment: ApplicationGroupAssignment) -> Readiness:
    """
    Write the decision counters and ready flag onto the assignment.

    The issue counters are not touched here; they are maintained with
    increment expressions by the issue service.
    """
    db.flush()
    readiness = evaluate_assignment(db, assignment)
    evaluation = readiness.evaluation
    assignment.total_members = evaluation.reviewer_count
    assignment.approved_count = evaluation.approved_count
    assignment.rejected_count = evaluation.rejected_count
    assignment.pending_count = evaluation.pending_count
    # A decided review is never ready again
    assignment.ready_for_final_approval = readiness.ready and assignment.final_decision_at is None
    return readiness
