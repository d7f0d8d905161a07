"""Tests for chat messaging, unread counters, read receipts and stars."""

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest

from townplan.core.exceptions import ConflictError, ForbiddenError, ValidationError
from townplan.db.enums import DecisionOutcome, MessageStatus, MessageType, RealtimeEventType
from townplan.db.models import ChatMessage, ChatParticipant, ReadReceipt
from townplan.db.session import SessionLocal
from townplan.schemas.chat import MessageCreate
from townplan.schemas.issue import AttachmentRef
from townplan.services import chat_service, decision_service
from townplan.services.chat_service import NotParticipantError


def _unread(db, thread_id, user_id) -> int:
    participant = (
        db.query(ChatParticipant)
        .filter(ChatParticipant.thread_id == thread_id, ChatParticipant.user_id == user_id)
        .one()
    )
    db.refresh(participant)
    return participant.unread_count


def _thread_unread(db, thread_id) -> int:
    thread = chat_service.get_thread(db, thread_id)
    db.refresh(thread)
    return thread.unread_count


# =============================================================================
# Sending
# =============================================================================


def test_send_message_increments_unread_for_everyone_else(db, assignment, alice, bob, carol, clerk, broadcaster):
    thread_id = assignment.review_thread_id
    # The assignment announcement is unread for the three group members
    assert _thread_unread(db, thread_id) == 3

    message = chat_service.send_message(
        db, thread_id, alice.id, MessageCreate(content="Site visit on Tuesday?"), broadcaster
    )

    assert message.status == MessageStatus.SENT
    assert _unread(db, thread_id, alice.id) == 1
    assert _unread(db, thread_id, bob.id) == 2
    assert _unread(db, thread_id, carol.id) == 2
    assert _unread(db, thread_id, clerk.id) == 1
    assert _thread_unread(db, thread_id) == 6

    events = broadcaster.of_type(RealtimeEventType.CHAT_MESSAGE)
    assert len(events) == 1
    assert events[0]["payload"]["content"] == "Site visit on Tuesday?"
    assert events[0]["exclude"] == [alice.id]


def test_send_message_with_attachment_only(db, assignment, alice):
    message = chat_service.send_message(
        db,
        assignment.review_thread_id,
        alice.id,
        MessageCreate(attachments=[AttachmentRef(document_id=uuid.uuid4(), file_name="site-plan.pdf")]),
    )

    assert message.content == ""
    assert [a.file_name for a in message.attachments] == ["site-plan.pdf"]


def test_empty_message_rejected(db, assignment, alice):
    with pytest.raises(ValidationError):
        chat_service.send_message(db, assignment.review_thread_id, alice.id, MessageCreate(content="   "))


def test_non_participant_cannot_send_or_read(db, assignment, make_user):
    outsider = make_user("Oscar", "Outsider")

    with pytest.raises(NotParticipantError) as exc_info:
        chat_service.send_message(
            db, assignment.review_thread_id, outsider.id, MessageCreate(content="Hello?")
        )
    assert exc_info.value.message == "user is not a participant in this thread"

    with pytest.raises(ForbiddenError):
        chat_service.get_messages(db, assignment.review_thread_id, outsider.id)


def test_reply_stays_in_parent_thread(db, assignment, alice, bob):
    parent = chat_service.send_message(
        db, assignment.review_thread_id, alice.id, MessageCreate(content="Is the survey current?")
    )

    reply = chat_service.reply_to_message(db, parent.id, bob.id, MessageCreate(content="Yes, May 2024"))

    assert reply.parent_id == parent.id
    assert reply.thread_id == parent.thread_id
    messages = chat_service.get_messages(db, assignment.review_thread_id, alice.id)
    assert [m.id for m in messages][-2:] == [parent.id, reply.id]


# =============================================================================
# Editing and deleting
# =============================================================================


def test_only_sender_edits_and_system_messages_are_immutable(db, assignment, alice, bob, clerk):
    message = chat_service.send_message(
        db, assignment.review_thread_id, alice.id, MessageCreate(content="Draft conditions")
    )

    with pytest.raises(ForbiddenError):
        chat_service.edit_message(db, message.id, bob.id, "Hijacked")

    edited = chat_service.edit_message(db, message.id, alice.id, "Final conditions")
    assert edited.content == "Final conditions"
    assert edited.is_edited is True

    announcement = chat_service.get_messages(db, assignment.review_thread_id, clerk.id)[0]
    with pytest.raises(ConflictError):
        chat_service.edit_message(db, announcement.id, clerk.id, "Rewritten history")


def test_system_messages_cannot_be_deleted(db, assignment, alice):
    decision_service.record_decision(db, assignment.id, alice.id, DecisionOutcome.APPROVED)
    audit_line = (
        db.query(ChatMessage)
        .filter(
            ChatMessage.thread_id == assignment.review_thread_id,
            ChatMessage.message_type == MessageType.SYSTEM,
            ChatMessage.sender_id == alice.id,
        )
        .one()
    )

    with pytest.raises(ConflictError):
        chat_service.delete_message(db, audit_line.id, alice.id)

    db.refresh(audit_line)
    assert audit_line.is_deleted is False


def test_delete_is_soft_and_blocks_replies(db, assignment, alice, bob):
    message = chat_service.send_message(
        db, assignment.review_thread_id, alice.id, MessageCreate(content="Wrong thread")
    )

    deleted = chat_service.delete_message(db, message.id, alice.id)
    assert deleted.is_deleted is True
    assert db.get(ChatMessage, message.id) is not None

    with pytest.raises(ConflictError):
        chat_service.delete_message(db, message.id, alice.id)
    with pytest.raises(ConflictError):
        chat_service.reply_to_message(db, message.id, bob.id, MessageCreate(content="?"))


# =============================================================================
# Read receipts
# =============================================================================


def test_mark_as_read_clears_unread_and_counts_receipts(db, assignment, alice, bob, broadcaster):
    thread_id = assignment.review_thread_id
    announcement = chat_service.get_messages(db, thread_id, bob.id)[0]
    message = chat_service.send_message(db, thread_id, alice.id, MessageCreate(content="Plans uploaded"))

    newly_read = chat_service.mark_as_read(
        db, thread_id, bob.id, [announcement.id, message.id], broadcaster
    )

    assert set(newly_read) == {announcement.id, message.id}
    assert _unread(db, thread_id, bob.id) == 0
    # 6 unread before (3 per message), bob had 2 of them
    assert _thread_unread(db, thread_id) == 4
    assert db.get(ChatMessage, message.id).read_count == 1
    receipts = broadcaster.of_type(RealtimeEventType.READ_RECEIPT)
    assert receipts[0]["exclude"] == [bob.id]

    again = chat_service.mark_as_read(db, thread_id, bob.id, [message.id], broadcaster)
    assert again == []
    assert db.get(ChatMessage, message.id).read_count == 1
    assert len(broadcaster.of_type(RealtimeEventType.READ_RECEIPT)) == 1


def test_mark_as_read_skips_own_and_foreign_messages(db, assignment, alice):
    thread_id = assignment.review_thread_id
    own = chat_service.send_message(db, thread_id, alice.id, MessageCreate(content="Mine"))

    assert chat_service.mark_as_read(db, thread_id, alice.id, [own.id, uuid.uuid4()]) == []
    assert db.query(ReadReceipt).count() == 0


def test_concurrent_mark_as_read_counts_once(db, assignment, alice, bob):
    workers = 6
    thread_id = assignment.review_thread_id
    message = chat_service.send_message(db, thread_id, alice.id, MessageCreate(content="Plans uploaded"))
    message_id = message.id
    bob_id = bob.id
    # Release this session's transaction so worker sessions can take the lock
    db.commit()

    barrier = threading.Barrier(workers)

    def mark(_):
        session = SessionLocal()
        try:
            barrier.wait()
            return chat_service.mark_as_read(session, thread_id, bob_id, [message_id])
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(mark, range(workers)))

    assert sum(len(r) for r in results) == 1
    db.expire_all()
    assert db.get(ChatMessage, message_id).read_count == 1
    assert (
        db.query(ReadReceipt)
        .filter(ReadReceipt.message_id == message_id, ReadReceipt.user_id == bob_id)
        .count()
        == 1
    )


# =============================================================================
# Stars and listing
# =============================================================================


def test_toggle_star_is_per_user(db, assignment, alice, bob, carol):
    message = chat_service.send_message(
        db, assignment.review_thread_id, alice.id, MessageCreate(content="Condition 14 wording")
    )

    assert chat_service.toggle_star(db, message.id, bob.id) == (True, 1)
    assert chat_service.toggle_star(db, message.id, carol.id) == (True, 2)
    assert chat_service.toggle_star(db, message.id, bob.id) == (False, 1)


def test_list_threads_for_user_reports_unread(db, assignment, alice, make_user):
    threads = chat_service.list_threads_for_user(db, alice.id)

    assert [(t.id, unread) for t, unread in threads] == [(assignment.review_thread_id, 1)]
    assert chat_service.list_threads_for_user(db, make_user("Nina", "Nobody").id) == []
