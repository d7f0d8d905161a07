"""
WebSocket router for real-time chat.

Provides a WebSocket endpoint that:
1. Authenticates users via JWT query parameter or session cookie
2. Subscribes the user to every thread they actively participate in
3. Announces online/offline status to those threads
4. Handles client events (subscribe, typing, read receipts)
"""

import json
from uuid import UUID

import anyio
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from townplan.core.deps import COOKIE_NAME
from townplan.core.security import decode_session_token
from townplan.core.websocket import build_event, hub
from townplan.db.enums import RealtimeEventType
from townplan.db.session import SessionLocal
from townplan.services import chat_service, realtime_service, user_service

router = APIRouter(prefix="/ws", tags=["WebSocket"])


def _user_id_from_token(token: str | None) -> UUID | None:
    if not token:
        return None
    try:
        return UUID(decode_session_token(token)["sub"])
    except Exception:
        return None


def _load_participations(user_id: UUID) -> list[UUID] | None:
    """Active thread ids for an active user, None for unknown users."""
    db = SessionLocal()
    try:
        user = user_service.get_user_by_id(db, user_id)
        if not user or not user.is_active:
            return None
        return chat_service.list_active_thread_ids(db, user_id)
    finally:
        db.close()


@router.websocket("/chat")
async def websocket_chat(
    websocket: WebSocket,
    token: str | None = Query(None),
):
    """
    WebSocket endpoint for chat events.

    Authenticates via:
    1. JWT token in query parameter (?token=...)
    2. Or session cookie (for browser clients)

    Text frame "ping" is answered with "pong"; everything else must be a
    JSON envelope {type, payload}.
    """
    user_id = _user_id_from_token(token) or _user_id_from_token(websocket.cookies.get(COOKIE_NAME))
    if not user_id:
        await websocket.close(code=4001, reason="Authentication required")
        return

    thread_ids = await anyio.to_thread.run_sync(_load_participations, user_id)
    if thread_ids is None:
        await websocket.close(code=4001, reason="User not found")
        return

    await hub.connect(websocket, user_id)
    await hub.subscribe(user_id, thread_ids)
    await realtime_service.announce_status(hub, user_id, thread_ids, online=True)
    await websocket.send_text(
        json.dumps(
            build_event(RealtimeEventType.SUBSCRIBED, {"threadIds": [str(t) for t in thread_ids], "rejected": []}),
            default=str,
        )
    )

    try:
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                break
            reply = await realtime_service.handle_client_message(hub, user_id, data)
            if reply is None:
                continue
            if isinstance(reply, str):
                await websocket.send_text(reply)
            else:
                await websocket.send_text(json.dumps(reply, default=str))
    finally:
        subscribed = hub.get_user_threads(user_id)
        await hub.disconnect(websocket, user_id)
        if not hub.is_online(user_id):
            await realtime_service.announce_status(hub, user_id, subscribed, online=False)
