"""Chat thread, message and participant endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from townplan.core.deps import get_broadcaster, get_current_user, get_db
from townplan.db.models import User
from townplan.schemas.chat import (
    MarkReadRequest,
    MarkReadResult,
    MessageCreate,
    MessageEdit,
    MessageRead,
    ParticipantRead,
    ParticipantsAddRequest,
    ParticipantsRemoveRequest,
    ParticipantUpdate,
    StarResult,
    ThreadRead,
    ThreadSummary,
)
from townplan.schemas.common import ApiResponse
from townplan.services import chat_service, participant_service
from townplan.services.broadcast import Broadcaster

router = APIRouter(prefix="/chat", tags=["chat"])


# =============================================================================
# Threads
# =============================================================================

@router.get("/threads", response_model=ApiResponse[list[ThreadSummary]])
def my_threads(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Threads the caller participates in, most recent activity first."""
    rows = chat_service.list_threads_for_user(db, user.id)
    return ApiResponse(
        message="Threads retrieved",
        data=[
            ThreadSummary(thread=ThreadRead.model_validate(thread), my_unread_count=unread)
            for thread, unread in rows
        ],
    )


@router.get("/threads/{thread_id}", response_model=ApiResponse[ThreadRead])
def get_thread(
    thread_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    thread = chat_service.get_thread(db, thread_id)
    chat_service.require_participant(db, thread_id, user.id)
    return ApiResponse(message="Thread retrieved", data=ThreadRead.model_validate(thread))


@router.get("/threads/{thread_id}/messages", response_model=ApiResponse[list[MessageRead]])
def get_messages(
    thread_id: UUID,
    limit: int = Query(100, ge=1, le=500),
    before: datetime | None = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    messages = chat_service.get_messages(db, thread_id, user.id, limit=limit, before=before)
    return ApiResponse(message="Messages retrieved", data=[MessageRead.model_validate(m) for m in messages])


@router.post("/threads/{thread_id}/messages", response_model=ApiResponse[MessageRead], status_code=201)
def send_message(
    thread_id: UUID,
    data: MessageCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    message = chat_service.send_message(db, thread_id, user.id, data, broadcaster)
    return ApiResponse(message="Message sent", data=MessageRead.model_validate(message))


@router.post("/threads/{thread_id}/read", response_model=ApiResponse[MarkReadResult])
def mark_read(
    thread_id: UUID,
    data: MarkReadRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    newly_read = chat_service.mark_as_read(db, thread_id, user.id, data.message_ids, broadcaster)
    return ApiResponse(
        message="Messages marked as read",
        data=MarkReadResult(thread_id=thread_id, newly_read=newly_read),
    )


# =============================================================================
# Participants
# =============================================================================

@router.get("/threads/{thread_id}/participants", response_model=ApiResponse[list[ParticipantRead]])
def list_participants(
    thread_id: UUID,
    include_inactive: bool = False,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    participants = participant_service.list_participants(db, thread_id, user.id, include_inactive)
    return ApiResponse(
        message="Participants retrieved",
        data=[ParticipantRead.model_validate(p) for p in participants],
    )


@router.post(
    "/threads/{thread_id}/participants",
    response_model=ApiResponse[list[ParticipantRead]],
    status_code=201,
)
def add_participants(
    thread_id: UUID,
    data: ParticipantsAddRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    added = participant_service.add_participants(db, thread_id, user.id, data.participants, broadcaster)
    return ApiResponse(message="Participants added", data=[ParticipantRead.model_validate(p) for p in added])


@router.post("/threads/{thread_id}/participants/remove", response_model=ApiResponse[list[ParticipantRead]])
def remove_participants(
    thread_id: UUID,
    data: ParticipantsRemoveRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    removed = participant_service.remove_participants(db, thread_id, user.id, data.user_ids, broadcaster)
    return ApiResponse(
        message="Participants removed",
        data=[ParticipantRead.model_validate(p) for p in removed],
    )


@router.patch("/threads/{thread_id}/participants/{user_id}", response_model=ApiResponse[ParticipantRead])
def update_participant(
    thread_id: UUID,
    user_id: UUID,
    data: ParticipantUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    participant = participant_service.update_participant(db, thread_id, user.id, user_id, data, broadcaster)
    return ApiResponse(message="Participant updated", data=ParticipantRead.model_validate(participant))


# =============================================================================
# Messages
# =============================================================================

@router.post("/messages/{message_id}/reply", response_model=ApiResponse[MessageRead], status_code=201)
def reply(
    message_id: UUID,
    data: MessageCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    message = chat_service.reply_to_message(db, message_id, user.id, data, broadcaster)
    return ApiResponse(message="Reply sent", data=MessageRead.model_validate(message))


@router.patch("/messages/{message_id}", response_model=ApiResponse[MessageRead])
def edit_message(
    message_id: UUID,
    data: MessageEdit,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    message = chat_service.edit_message(db, message_id, user.id, data.content, broadcaster)
    return ApiResponse(message="Message edited", data=MessageRead.model_validate(message))


@router.delete("/messages/{message_id}", response_model=ApiResponse[MessageRead])
def delete_message(
    message_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    message = chat_service.delete_message(db, message_id, user.id, broadcaster)
    return ApiResponse(message="Message deleted", data=MessageRead.model_validate(message))


@router.post("/messages/{message_id}/star", response_model=ApiResponse[StarResult])
def toggle_star(
    message_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    starred, star_count = chat_service.toggle_star(db, message_id, user.id)
    return ApiResponse(
        message="Message starred" if starred else "Message unstarred",
        data=StarResult(message_id=message_id, starred=starred, star_count=star_count),
    )
