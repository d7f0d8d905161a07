"""
Readiness policy evaluation for approval groups.

A group's policy is one of two explicit variants:

- Unordered(reviewers, threshold): any reviewer may decide at any time.
- Ordered(sequence, threshold): reviewers are grouped into levels by
  review_order. A decision only counts once every lower level has fully
  decided, so a late reviewer cannot short-circuit earlier gatekeepers.
  Out-of-order decisions are stored but wait to be counted.

threshold=None means every reviewer must approve and any rejection blocks.
Otherwise the policy is satisfied when counted approvals >= threshold.

The final approver is never a reviewer; their binding decision is made
through the final approval gate.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Union
from uuid import UUID

from townplan.db.enums import DecisionStatus, MemberRole, ReviewMode
from townplan.db.models import ApprovalGroup, ApprovalGroupMember

DECIDED = (DecisionStatus.APPROVED, DecisionStatus.REJECTED)


@dataclass(frozen=True)
class Unordered:
    reviewers: tuple[UUID, ...]
    threshold: int | None = None


@dataclass(frozen=True)
class Ordered:
    sequence: tuple[tuple[UUID, ...], ...]
    threshold: int | None = None

    @property
    def reviewers(self) -> tuple[UUID, ...]:
        return tuple(member_id for level in self.sequence for member_id in level)


ReadinessPolicy = Union[Unordered, Ordered]


@dataclass(frozen=True)
class PolicyEvaluation:
    """Result of evaluating current decisions against a policy."""

    reviewer_count: int
    approved_count: int
    rejected_count: int
    pending_count: int
    counted_approvals: int
    satisfied: bool
    unreachable: bool


def is_reviewer(member: ApprovalGroupMember) -> bool:
    """Members whose approval the group policy waits for."""
    return (
        member.is_active
        and member.can_approve
        and not member.is_final_approver
        and member.role != MemberRole.RETIRED
    )


def build_policy(group: ApprovalGroup) -> ReadinessPolicy:
    """Translate group configuration into a policy variant."""
    reviewers = [m for m in group.members if is_reviewer(m)]
    threshold = None if group.requires_all_approvals else group.minimum_approvals

    if group.review_mode == ReviewMode.ORDERED:
        levels: dict[int, list[UUID]] = {}
        for member in reviewers:
            levels.setdefault(member.review_order, []).append(member.id)
        sequence = tuple(tuple(levels[order]) for order in sorted(levels))
        return Ordered(sequence=sequence, threshold=threshold)

    return Unordered(reviewers=tuple(m.id for m in reviewers), threshold=threshold)


def _counted_reviewers(policy: ReadinessPolicy, decisions: Mapping[UUID, DecisionStatus]) -> list[UUID]:
    if isinstance(policy, Unordered):
        return list(policy.reviewers)

    counted: list[UUID] = []
    for level in policy.sequence:
        counted.extend(level)
        if not all(decisions.get(member_id) in DECIDED for member_id in level):
            # Later levels wait until this one has fully decided
            break
    return counted


def evaluate(
    policy: ReadinessPolicy, decisions: Mapping[UUID, DecisionStatus]
) -> PolicyEvaluation:
    """
    Evaluate member decisions (member_id -> current status) against a policy.

    PENDING and REVOKED decisions count as undecided. Decisions from
    members who are not reviewers are ignored.
    """
    reviewers = policy.reviewers
    statuses = [decisions.get(member_id) for member_id in reviewers]
    approved = sum(1 for s in statuses if s == DecisionStatus.APPROVED)
    rejected = sum(1 for s in statuses if s == DecisionStatus.REJECTED)
    pending = len(reviewers) - approved - rejected

    counted = _counted_reviewers(policy, decisions)
    counted_approvals = sum(
        1 for member_id in counted if decisions.get(member_id) == DecisionStatus.APPROVED
    )

    if not reviewers:
        # Nobody to wait for: the final approver decides alone
        return PolicyEvaluation(0, 0, 0, 0, 0, satisfied=True, unreachable=False)

    if policy.threshold is None:
        satisfied = approved == len(reviewers)
        unreachable = rejected > 0 and pending == 0
    else:
        satisfied = counted_approvals >= policy.threshold
        unreachable = not satisfied and approved + pending < policy.threshold

    return PolicyEvaluation(
        reviewer_count=len(reviewers),
        approved_count=approved,
        rejected_count=rejected,
        pending_count=pending,
        counted_approvals=counted_approvals,
        satisfied=satisfied,
        unreachable=unreachable,
    )


def decision_map(decisions: Iterable) -> dict[UUID, DecisionStatus]:
    """member_id -> status for a collection of MemberDecision rows."""
    return {d.member_id: d.status for d in decisions}
