"""Pydantic schemas for applications."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from townplan.db.enums import ApplicationStatus


class ApplicationCreate(BaseModel):
    reference: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    applicant_name: str | None = Field(None, max_length=255)


class AssignGroupRequest(BaseModel):
    approval_group_id: UUID


class ApplicationRead(BaseModel):
    id: UUID
    reference: str
    title: str
    description: str | None = None
    applicant_name: str | None = None
    status: ApplicationStatus
    submitted_at: datetime
    review_started_at: datetime | None = None
    review_completed_at: datetime | None = None
    final_approval_date: datetime | None = None
    rejection_date: datetime | None = None
    collected_at: datetime | None = None

    model_config = {"from_attributes": True}
