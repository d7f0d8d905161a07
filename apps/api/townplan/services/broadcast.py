"""
Post-commit realtime broadcast.

Services receive a Broadcaster and call it only after their transaction has
committed. Broadcasting is fire-and-forget: failures are logged and never
reach the caller, and nothing persisted depends on delivery.

When redis is configured the envelope is also published on a channel so
websocket connections held by other API workers receive it; each worker
relays events it did not publish itself.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Coroutine, Iterable, Protocol
from uuid import UUID

import anyio

from townplan.core.config import settings
from townplan.core.redis_client import get_async_redis_client, get_sync_redis_client
from townplan.core.structured_logging import build_log_context
from townplan.core.websocket import ChatHub, build_event
from townplan.db.enums import RealtimeEventType

logger = logging.getLogger(__name__)

WORKER_ID = uuid.uuid4().hex


class Broadcaster(Protocol):
    """Injected realtime seam used by services after commit."""

    def broadcast_to_thread(
        self,
        thread_id: UUID,
        event_type: RealtimeEventType,
        payload: dict[str, Any],
        exclude_user_ids: Iterable[UUID] = (),
    ) -> None: ...

    def subscribe_users(self, thread_id: UUID, user_ids: Iterable[UUID]) -> None: ...

    def unsubscribe_users(self, thread_id: UUID, user_ids: Iterable[UUID]) -> None: ...


class HubBroadcaster:
    """Delivers events through the in-process ChatHub (and redis when enabled)."""

    def __init__(
        self,
        hub: ChatHub,
        *,
        timeout: float | None = None,
        channel: str | None = None,
        redis_client_factory=get_sync_redis_client,
    ):
        self.hub = hub
        self.timeout = timeout if timeout is not None else settings.BROADCAST_TIMEOUT_SECONDS
        self.channel = channel or settings.BROADCAST_CHANNEL
        self._redis_client_factory = redis_client_factory

    def broadcast_to_thread(
        self,
        thread_id: UUID,
        event_type: RealtimeEventType,
        payload: dict[str, Any],
        exclude_user_ids: Iterable[UUID] = (),
    ) -> None:
        excluded = list(exclude_user_ids)
        envelope = build_event(event_type, payload, thread_id)
        try:
            self._run(self.hub.broadcast_to_thread(thread_id, envelope, excluded))
        except Exception:
            logger.warning(
                "Realtime broadcast failed for %s",
                envelope["type"],
                exc_info=True,
                extra=build_log_context(thread_id=thread_id),
            )
        self._publish(thread_id, envelope, excluded)

    def subscribe_users(self, thread_id: UUID, user_ids: Iterable[UUID]) -> None:
        for user_id in list(user_ids):
            try:
                self._run(self.hub.subscribe(user_id, [thread_id]))
            except Exception:
                logger.warning("Hub subscribe failed", exc_info=True)

    def unsubscribe_users(self, thread_id: UUID, user_ids: Iterable[UUID]) -> None:
        for user_id in list(user_ids):
            try:
                self._run(self.hub.unsubscribe(user_id, [thread_id]))
            except Exception:
                logger.warning("Hub unsubscribe failed", exc_info=True)

    def _run(self, coro: Coroutine[Any, Any, Any]) -> None:
        """
        Run a hub coroutine from sync service code.

        Request threads hand it to the event loop through anyio; code already
        on the loop schedules it as a task; scripts and tests without a loop
        run it to completion.
        """

        async def _runner():
            with anyio.fail_after(self.timeout):
                return await coro

        try:
            anyio.from_thread.run(_runner)
            return
        except RuntimeError:
            pass

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            anyio.run(_runner)
            return
        loop.create_task(_runner())

    def _publish(self, thread_id: UUID, envelope: dict, excluded: list[UUID]) -> None:
        client = self._redis_client_factory()
        if client is None:
            return
        body = json.dumps(
            {
                "origin": WORKER_ID,
                "threadId": str(thread_id),
                "exclude": [str(uid) for uid in excluded],
                "event": envelope,
            },
            default=str,
        )
        try:
            client.publish(self.channel, body)
        except Exception:
            logger.warning(
                "Failed to publish realtime event",
                exc_info=True,
                extra=build_log_context(thread_id=thread_id),
            )


# =============================================================================
# Cross-worker relay
# =============================================================================

async def handle_relay_message(hub: ChatHub, raw: str | bytes) -> int:
    """Deliver an event published by another worker. Returns deliveries."""
    try:
        data = json.loads(raw)
        if data.get("origin") == WORKER_ID:
            return 0
        thread_id = UUID(data["threadId"])
        excluded = [UUID(uid) for uid in data.get("exclude", [])]
        event = data["event"]
    except (ValueError, KeyError, TypeError):
        logger.warning("Ignoring malformed relay message")
        return 0
    return await hub.broadcast_to_thread(thread_id, event, excluded)


async def relay_redis_events(hub: ChatHub, channel: str | None = None) -> None:
    """Subscribe to the broadcast channel and relay events until cancelled."""
    client = get_async_redis_client()
    if client is None:
        return
    pubsub = client.pubsub()
    await pubsub.subscribe(channel or settings.BROADCAST_CHANNEL)
    logger.info("Realtime relay subscribed to %s", channel or settings.BROADCAST_CHANNEL)
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            await handle_relay_message(hub, message["data"])
    finally:
        await pubsub.unsubscribe()
        await pubsub.aclose()
