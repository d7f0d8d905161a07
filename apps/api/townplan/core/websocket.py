"""
WebSocket connection hub for real-time chat.

Tracks active WebSocket connections per user and which users are
subscribed to which chat threads, so thread-scoped events reach every
connected participant except the one who caused them.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Set
from uuid import UUID
import asyncio
import json
import logging

from fastapi import WebSocket

from townplan.db.enums import RealtimeEventType

logger = logging.getLogger(__name__)


def build_event(
    event_type: RealtimeEventType | str,
    payload: dict[str, Any],
    thread_id: UUID | None = None,
) -> dict[str, Any]:
    """Build the wire envelope {type, payload, timestamp, threadId}."""
    return {
        "type": event_type.value if isinstance(event_type, RealtimeEventType) else event_type,
        "payload": payload,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "threadId": str(thread_id) if thread_id else None,
    }


class ChatHub:
    """Manages WebSocket connections per user and subscriptions per thread."""

    def __init__(self):
        # user_id -> set of active WebSocket connections
        self._connections: Dict[UUID, Set[WebSocket]] = {}
        # thread_id -> subscribed user ids
        self._thread_users: Dict[UUID, Set[UUID]] = {}
        # user_id -> subscribed thread ids (for cleanup and status fan-out)
        self._user_threads: Dict[UUID, Set[UUID]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, user_id: UUID):
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            self._connections.setdefault(user_id, set()).add(websocket)

    async def disconnect(self, websocket: WebSocket, user_id: UUID):
        """Remove a connection; drop the user's subscriptions when none remain."""
        async with self._lock:
            if user_id in self._connections:
                self._connections[user_id].discard(websocket)
                if not self._connections[user_id]:
                    del self._connections[user_id]
                    self._drop_user_locked(user_id)

    def _drop_user_locked(self, user_id: UUID):
        for thread_id in self._user_threads.pop(user_id, set()):
            users = self._thread_users.get(thread_id)
            if users is None:
                continue
            users.discard(user_id)
            if not users:
                del self._thread_users[thread_id]

    async def subscribe(self, user_id: UUID, thread_ids: Iterable[UUID]):
        """Subscribe a connected user to threads. Offline users are ignored."""
        async with self._lock:
            if user_id not in self._connections:
                return
            for thread_id in thread_ids:
                self._thread_users.setdefault(thread_id, set()).add(user_id)
                self._user_threads.setdefault(user_id, set()).add(thread_id)

    async def unsubscribe(self, user_id: UUID, thread_ids: Iterable[UUID]):
        async with self._lock:
            for thread_id in thread_ids:
                users = self._thread_users.get(thread_id)
                if users is not None:
                    users.discard(user_id)
                    if not users:
                        del self._thread_users[thread_id]
                threads = self._user_threads.get(user_id)
                if threads is not None:
                    threads.discard(thread_id)
                    if not threads:
                        del self._user_threads[user_id]

    async def send_to_user(self, user_id: UUID, message: dict) -> int:
        """Send a message to all connections for a user. Returns deliveries."""
        async with self._lock:
            connections = self._connections.get(user_id, set()).copy()

        if not connections:
            return 0

        data = json.dumps(message, default=str)
        closed = []
        delivered = 0

        for ws in connections:
            try:
                await ws.send_text(data)
                delivered += 1
            except Exception:
                # Connection closed or errored
                closed.append(ws)

        if closed:
            logger.debug("Pruning %d closed connections for user %s", len(closed), user_id)
            async with self._lock:
                if user_id in self._connections:
                    for ws in closed:
                        self._connections[user_id].discard(ws)
                    if not self._connections[user_id]:
                        del self._connections[user_id]
                        self._drop_user_locked(user_id)

        return delivered

    async def broadcast_to_thread(
        self,
        thread_id: UUID,
        message: dict,
        exclude_user_ids: Iterable[UUID] = (),
    ) -> int:
        """Fan a message out to every subscriber of a thread except the excluded users."""
        excluded = set(exclude_user_ids)
        async with self._lock:
            user_ids = [
                uid for uid in self._thread_users.get(thread_id, set()) if uid not in excluded
            ]

        delivered = 0
        for user_id in user_ids:
            delivered += await self.send_to_user(user_id, message)
        return delivered

    def get_thread_subscribers(self, thread_id: UUID) -> set[UUID]:
        return set(self._thread_users.get(thread_id, set()))

    def get_user_threads(self, user_id: UUID) -> set[UUID]:
        return set(self._user_threads.get(user_id, set()))

    def get_connected_count(self, user_id: UUID) -> int:
        """Get the number of active connections for a user."""
        return len(self._connections.get(user_id, set()))

    def is_online(self, user_id: UUID) -> bool:
        return user_id in self._connections

    def get_total_connections(self) -> int:
        """Get total number of active connections across all users."""
        return sum(len(conns) for conns in self._connections.values())


# Process-wide hub; injected into services through the broadcaster dependency
hub = ChatHub()
