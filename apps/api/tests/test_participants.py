"""Tests for chat participant management."""

import pytest

from townplan.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from townplan.db.enums import ParticipantPermission, ParticipantRole, RealtimeEventType, ThreadType
from townplan.db.models import ChatMessage
from townplan.schemas.chat import MessageCreate, ParticipantAdd, ParticipantUpdate
from townplan.services import chat_service, participant_service
from townplan.services.participant_service import (
    AlreadyParticipantError,
    ThreadCreatorRemovalError,
    describe_participant_change,
)


@pytest.fixture
def side_thread(db, alice):
    """Direct thread created (and owned) by Alice."""
    thread = chat_service.create_thread(
        db, created_by=alice.id, title="Pre-lodgement chat", thread_type=ThreadType.DIRECT
    )
    db.commit()
    return thread


def _last_message(db, thread_id) -> str:
    return (
        db.query(ChatMessage)
        .filter(ChatMessage.thread_id == thread_id)
        .order_by(ChatMessage.created_at.desc())
        .first()
        .content
    )


def _message_count(db, thread_id) -> int:
    return db.query(ChatMessage).filter(ChatMessage.thread_id == thread_id).count()


# =============================================================================
# Phrasing
# =============================================================================


def test_describe_single_target_with_permissions():
    assert describe_participant_change(
        "Alice Reviewer", ["Bob Reviewer"], added=True, permissions=["invite", "remove"]
    ) == "Alice Reviewer added Bob Reviewer to the conversation with invite and remove permissions"


def test_describe_up_to_three_targets_by_name():
    assert describe_participant_change("A", ["X", "Y"], added=True) == "A added X and Y to the conversation"
    assert (
        describe_participant_change("A", ["X", "Y", "Z"], added=False)
        == "A removed X, Y and Z from the conversation"
    )


def test_describe_many_targets_by_count():
    assert (
        describe_participant_change("A", ["V", "W", "X", "Y"], added=True)
        == "A added 4 participants to the conversation"
    )


# =============================================================================
# Adding
# =============================================================================


def test_add_single_participant_posts_message(db, side_thread, alice, bob, broadcaster):
    added = participant_service.add_participants(
        db,
        side_thread.id,
        alice.id,
        [ParticipantAdd(user_id=bob.id, can_invite=False, can_remove=True, can_manage=True)],
        broadcaster,
    )

    assert [p.user_id for p in added] == [bob.id]
    assert _last_message(db, side_thread.id) == (
        "Alice Reviewer added Bob Reviewer to the conversation with remove and manage permissions"
    )
    assert (side_thread.id, bob.id) in broadcaster.subscribed
    change = broadcaster.of_type(RealtimeEventType.PARTICIPANT_CHANGE)[0]
    assert change["payload"]["action"] == "added"
    assert change["exclude"] == [alice.id]


def test_add_two_participants_in_one_message(db, side_thread, alice, bob, carol):
    participant_service.add_participants(
        db,
        side_thread.id,
        alice.id,
        [ParticipantAdd(user_id=bob.id), ParticipantAdd(user_id=carol.id)],
    )

    assert _message_count(db, side_thread.id) == 1
    assert _last_message(db, side_thread.id) == (
        "Alice Reviewer added Bob Reviewer and Carol Approver to the conversation"
    )


def test_add_existing_participant_adds_nobody(db, side_thread, alice, bob, carol):
    participant_service.add_participants(db, side_thread.id, alice.id, [ParticipantAdd(user_id=bob.id)])
    before = _message_count(db, side_thread.id)

    with pytest.raises(AlreadyParticipantError):
        participant_service.add_participants(
            db,
            side_thread.id,
            alice.id,
            [ParticipantAdd(user_id=carol.id), ParticipantAdd(user_id=bob.id)],
        )

    assert chat_service.get_participant(db, side_thread.id, carol.id) is None
    assert _message_count(db, side_thread.id) == before


def test_add_requires_invite_permission(db, side_thread, alice, bob, carol):
    participant_service.add_participants(
        db, side_thread.id, alice.id, [ParticipantAdd(user_id=bob.id, can_invite=False)]
    )

    assert participant_service.can_user_manage_participants(
        db, side_thread.id, bob.id, ParticipantPermission.ADD
    ) is False
    with pytest.raises(ForbiddenError):
        participant_service.add_participants(db, side_thread.id, bob.id, [ParticipantAdd(user_id=carol.id)])


def test_owner_role_cannot_be_granted(db, side_thread, alice, bob):
    with pytest.raises(ValidationError):
        participant_service.add_participants(
            db, side_thread.id, alice.id, [ParticipantAdd(user_id=bob.id, role=ParticipantRole.OWNER)]
        )
    with pytest.raises(ValidationError):
        participant_service.update_participant(
            db, side_thread.id, alice.id, bob.id, ParticipantUpdate(role=ParticipantRole.OWNER)
        )


# =============================================================================
# Removing
# =============================================================================


def test_creator_can_never_be_removed(db, side_thread, alice, bob):
    participant_service.add_participants(
        db, side_thread.id, alice.id, [ParticipantAdd(user_id=bob.id, can_remove=True)]
    )

    with pytest.raises(ThreadCreatorRemovalError):
        participant_service.remove_participants(db, side_thread.id, bob.id, [alice.id])
    with pytest.raises(ForbiddenError):
        participant_service.remove_participants(db, side_thread.id, alice.id, [alice.id])

    assert chat_service.get_participant(db, side_thread.id, alice.id).is_active is True


def test_remove_requires_permission_but_self_leave_is_allowed(db, side_thread, alice, bob, carol):
    participant_service.add_participants(
        db, side_thread.id, alice.id, [ParticipantAdd(user_id=bob.id), ParticipantAdd(user_id=carol.id)]
    )

    with pytest.raises(ForbiddenError):
        participant_service.remove_participants(db, side_thread.id, bob.id, [carol.id])

    participant_service.remove_participants(db, side_thread.id, bob.id, [bob.id])

    assert chat_service.get_participant(db, side_thread.id, bob.id).is_active is False
    assert _last_message(db, side_thread.id) == "Bob Reviewer removed Bob Reviewer from the conversation"


def test_removal_drops_unread_from_thread_total(db, side_thread, alice, bob, broadcaster):
    participant_service.add_participants(db, side_thread.id, alice.id, [ParticipantAdd(user_id=bob.id)])
    thread_id = side_thread.id
    chat_service.send_message(db, thread_id, alice.id, MessageCreate(content="Any news?"))
    # Bob has the add announcement and the message unread
    assert chat_service.get_thread(db, thread_id).unread_count == 2

    removed = participant_service.remove_participants(db, thread_id, alice.id, [bob.id], broadcaster)

    assert removed[0].removed_by == alice.id
    assert removed[0].removed_at is not None
    thread = chat_service.get_thread(db, thread_id)
    db.refresh(thread)
    assert thread.unread_count == 0
    assert (thread_id, bob.id) in broadcaster.unsubscribed


def test_removed_participant_is_reactivated_on_add(db, side_thread, alice, bob):
    participant_service.add_participants(db, side_thread.id, alice.id, [ParticipantAdd(user_id=bob.id)])
    original_id = chat_service.get_participant(db, side_thread.id, bob.id).id
    participant_service.remove_participants(db, side_thread.id, alice.id, [bob.id])

    with pytest.raises(NotFoundError):
        participant_service.remove_participants(db, side_thread.id, alice.id, [bob.id])

    readded = participant_service.add_participants(
        db, side_thread.id, alice.id, [ParticipantAdd(user_id=bob.id)]
    )
    assert readded[0].id == original_id
    assert readded[0].is_active is True
    assert readded[0].removed_at is None

    everyone = participant_service.list_participants(db, side_thread.id, alice.id, include_inactive=True)
    assert len(everyone) == 2


# =============================================================================
# Updating
# =============================================================================


def test_update_requires_manage_permission(db, side_thread, alice, bob, carol):
    participant_service.add_participants(
        db, side_thread.id, alice.id, [ParticipantAdd(user_id=bob.id), ParticipantAdd(user_id=carol.id)]
    )

    with pytest.raises(ForbiddenError):
        participant_service.update_participant(
            db, side_thread.id, bob.id, carol.id, ParticipantUpdate(can_remove=True)
        )

    updated = participant_service.update_participant(
        db, side_thread.id, alice.id, carol.id, ParticipantUpdate(can_remove=True, role=ParticipantRole.ADMIN)
    )
    assert updated.can_remove is True
    assert updated.role == ParticipantRole.ADMIN


def test_owner_permissions_cannot_be_changed(db, side_thread, alice, bob):
    participant_service.add_participants(
        db, side_thread.id, alice.id, [ParticipantAdd(user_id=bob.id, can_manage=True)]
    )

    with pytest.raises(ForbiddenError):
        participant_service.update_participant(
            db, side_thread.id, bob.id, alice.id, ParticipantUpdate(can_invite=False)
        )
