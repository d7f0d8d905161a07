"""Tests for application registration and group assignment."""

import uuid

import pytest

from townplan.core.exceptions import ConflictError, NotFoundError
from townplan.db.enums import ApplicationStatus, MessageType, ParticipantRole, ThreadType
from townplan.db.models import ChatMessage, ChatParticipant, ChatThread
from townplan.schemas.application import ApplicationCreate
from townplan.services import application_service
from townplan.services.application_service import InvalidTransitionError


def test_create_application_starts_submitted(db, application):
    assert application.status == ApplicationStatus.SUBMITTED
    assert application.review_started_at is None


def test_application_reference_is_unique(db, application, clerk):
    with pytest.raises(ConflictError):
        application_service.create_application(
            db,
            ApplicationCreate(reference=application.reference, title="Duplicate"),
            created_by=clerk.id,
        )


def test_assign_group_opens_review_thread(db, assignment, application, clerk, alice, bob, carol):
    db.refresh(application)
    assert application.status == ApplicationStatus.UNDER_REVIEW
    assert application.review_started_at is not None
    assert assignment.total_members == 2
    assert assignment.pending_count == 2
    assert assignment.ready_for_final_approval is False

    thread = db.query(ChatThread).filter(ChatThread.id == assignment.review_thread_id).one()
    assert thread.thread_type == ThreadType.APPLICATION
    assert thread.application_id == application.id

    roles = {
        p.user_id: p.role
        for p in db.query(ChatParticipant).filter(ChatParticipant.thread_id == thread.id)
    }
    assert roles == {
        clerk.id: ParticipantRole.OWNER,
        alice.id: ParticipantRole.MEMBER,
        bob.id: ParticipantRole.MEMBER,
        carol.id: ParticipantRole.ADMIN,
    }

    message = db.query(ChatMessage).filter(ChatMessage.thread_id == thread.id).one()
    assert message.message_type == MessageType.SYSTEM
    assert message.content == (
        f"Application {application.reference} assigned to Building Control for review"
    )


def test_assign_group_twice_is_invalid(db, assignment, group, clerk):
    with pytest.raises(InvalidTransitionError):
        application_service.assign_approval_group(db, assignment.application_id, group.id, clerk.id)


def test_assign_unknown_group_not_found(db, application, clerk):
    with pytest.raises(NotFoundError):
        application_service.assign_approval_group(db, application.id, uuid.uuid4(), clerk.id)

    db.refresh(application)
    assert application.status == ApplicationStatus.SUBMITTED
    assert db.query(ChatThread).count() == 0
