"""Development application ORM model."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from townplan.db.base import Base, enum_column, utcnow
from townplan.db.enums import ApplicationStatus

if TYPE_CHECKING:
    from townplan.db.models import (
        ApplicationGroupAssignment,
        ApplicationIssue,
        FinalApproval,
        User,
    )


class Application(Base):
    """
    A development application moving through review.

    Holds only the fields the approval workflow reads or stamps; tariffs,
    documents and payments live elsewhere.
    """

    __tablename__ = "applications"
    __table_args__ = (Index("idx_applications_status", "status"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    reference: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    applicant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[ApplicationStatus] = mapped_column(
        enum_column(ApplicationStatus, name="application_status"),
        default=ApplicationStatus.SUBMITTED,
        nullable=False,
    )
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    submitted_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    review_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    review_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    final_approval_date: Mapped[datetime | None] = mapped_column(nullable=True)
    rejection_date: Mapped[datetime | None] = mapped_column(nullable=True)
    collected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, nullable=False
    )

    # Relationships
    creator: Mapped["User | None"] = relationship()
    assignments: Mapped[list["ApplicationGroupAssignment"]] = relationship(
        back_populates="application", order_by="ApplicationGroupAssignment.assigned_at"
    )
    final_approval: Mapped["FinalApproval | None"] = relationship(
        back_populates="application", uselist=False
    )
    issues: Mapped[list["ApplicationIssue"]] = relationship(
        back_populates="application", order_by="ApplicationIssue.created_at"
    )

    @property
    def active_assignment(self) -> "ApplicationGroupAssignment | None":
        for assignment in self.assignments:
            if assignment.is_active:
                return assignment
        return None

    @property
    def is_finalized(self) -> bool:
        return self.final_approval is not None or self.status in (
            ApplicationStatus.APPROVED,
            ApplicationStatus.REJECTED,
            ApplicationStatus.COLLECTED,
        )
