"""
Client events received over the chat websocket.

Clients send JSON envelopes {type, payload}. Subscriptions are limited to
threads the user actively participates in; typing indicators are transient
and only relayed; read receipts are persisted through chat_service before
being relayed. Database work runs in a worker thread so the event loop is
never blocked by the store.
"""

import json
import logging
from typing import Any, Callable
from uuid import UUID

import anyio
from sqlalchemy.orm import Session

from townplan.core.exceptions import TownplanError
from townplan.core.websocket import ChatHub, build_event
from townplan.db.enums import RealtimeEventType
from townplan.db.session import SessionLocal
from townplan.services import chat_service
from townplan.services.broadcast import Broadcaster, HubBroadcaster

logger = logging.getLogger(__name__)


def error_event(message: str) -> dict[str, Any]:
    return build_event(RealtimeEventType.ERROR, {"message": message})


def _parse_ids(values: Any) -> list[UUID]:
    if not isinstance(values, list):
        raise ValueError("expected a list of ids")
    return [UUID(str(v)) for v in values]


def _in_session(session_factory: Callable[[], Session], fn: Callable[[Session], Any]) -> Any:
    db = session_factory()
    try:
        return fn(db)
    finally:
        db.close()


def _participating(db: Session, user_id: UUID, thread_ids: list[UUID]) -> list[UUID]:
    active = set(chat_service.list_active_thread_ids(db, user_id))
    return [tid for tid in thread_ids if tid in active]


async def announce_status(hub: ChatHub, user_id: UUID, thread_ids, online: bool) -> None:
    """USER_STATUS to everyone sharing a thread with the user."""
    for thread_id in thread_ids:
        await hub.broadcast_to_thread(
            thread_id,
            build_event(
                RealtimeEventType.USER_STATUS,
                {"userId": str(user_id), "status": "online" if online else "offline"},
                thread_id,
            ),
            exclude_user_ids=[user_id],
        )


async def handle_client_message(
    hub: ChatHub,
    user_id: UUID,
    raw: str,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    broadcaster: Broadcaster | None = None,
) -> dict[str, Any] | str | None:
    """
    Handle one inbound websocket frame.

    Returns the reply for the sender (None when there is nothing to send).
    """
    if raw == "ping":
        return "pong"

    try:
        data = json.loads(raw)
    except ValueError:
        return error_event("Malformed JSON")
    if not isinstance(data, dict):
        return error_event("Malformed event")

    event_type = data.get("type")
    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        return error_event("Malformed event payload")

    try:
        if event_type == RealtimeEventType.SUBSCRIBE.value:
            requested = _parse_ids(payload.get("threadIds", []))
            allowed = await anyio.to_thread.run_sync(
                _in_session, session_factory, lambda db: _participating(db, user_id, requested)
            )
            await hub.subscribe(user_id, allowed)
            return build_event(
                RealtimeEventType.SUBSCRIBED,
                {
                    "threadIds": [str(t) for t in allowed],
                    "rejected": [str(t) for t in requested if t not in allowed],
                },
            )

        if event_type == RealtimeEventType.UNSUBSCRIBE.value:
            await hub.unsubscribe(user_id, _parse_ids(payload.get("threadIds", [])))
            return build_event(
                RealtimeEventType.SUBSCRIBED,
                {"threadIds": [str(t) for t in hub.get_user_threads(user_id)], "rejected": []},
            )

        if event_type == RealtimeEventType.TYPING_INDICATOR.value:
            thread_id = UUID(str(payload.get("threadId")))
            if thread_id not in hub.get_user_threads(user_id):
                return error_event("Not subscribed to this thread")
            await hub.broadcast_to_thread(
                thread_id,
                build_event(
                    RealtimeEventType.TYPING_INDICATOR,
                    {"userId": str(user_id), "isTyping": bool(payload.get("isTyping", True))},
                    thread_id,
                ),
                exclude_user_ids=[user_id],
            )
            return None

        if event_type == RealtimeEventType.READ_RECEIPT.value:
            thread_id = UUID(str(payload.get("threadId")))
            message_ids = _parse_ids(payload.get("messageIds", []))
            seam = broadcaster if broadcaster is not None else HubBroadcaster(hub)
            await anyio.to_thread.run_sync(
                _in_session,
                session_factory,
                lambda db: chat_service.mark_as_read(
                    db, thread_id, user_id, message_ids, seam, is_realtime=True
                ),
            )
            return None
    except (ValueError, TypeError):
        return error_event("Invalid identifier in payload")
    except TownplanError as exc:
        return error_event(exc.message)

    logger.debug("Unknown websocket event type %r from %s", event_type, user_id)
    return error_event(f"Unknown event type: {event_type}")
