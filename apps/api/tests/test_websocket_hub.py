"""Tests for the websocket hub, the broadcaster seam, the relay and client events."""

import json
from uuid import uuid4

import anyio

from townplan.core.websocket import ChatHub, build_event
from townplan.db.enums import RealtimeEventType
from townplan.db.models import ReadReceipt
from townplan.schemas.chat import MessageCreate
from townplan.services import broadcast, chat_service, realtime_service
from townplan.services.broadcast import HubBroadcaster, handle_relay_message


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.accepted = False
        self.sent: list[dict] = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, data: str):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(json.loads(data))


class FakeRedis:
    def __init__(self):
        self.published: list[tuple[str, dict]] = []

    def publish(self, channel, body):
        self.published.append((channel, json.loads(body)))


async def _connected(hub: ChatHub, thread_id, *, fail: bool = False):
    user_id = uuid4()
    ws = FakeWebSocket(fail=fail)
    await hub.connect(ws, user_id)
    await hub.subscribe(user_id, [thread_id])
    return user_id, ws


# =============================================================================
# ChatHub
# =============================================================================


async def test_broadcast_excludes_sender():
    hub = ChatHub()
    thread_id = uuid4()
    sender, sender_ws = await _connected(hub, thread_id)
    _, other_ws = await _connected(hub, thread_id)

    delivered = await hub.broadcast_to_thread(
        thread_id, build_event(RealtimeEventType.CHAT_MESSAGE, {"content": "hi"}, thread_id), [sender]
    )

    assert delivered == 1
    assert sender_ws.sent == []
    assert other_ws.sent[0]["type"] == "CHAT_MESSAGE"
    assert other_ws.sent[0]["threadId"] == str(thread_id)


async def test_failed_connection_is_pruned():
    hub = ChatHub()
    thread_id = uuid4()
    broken_user, _ = await _connected(hub, thread_id, fail=True)

    delivered = await hub.broadcast_to_thread(thread_id, {"type": "PING"})

    assert delivered == 0
    assert hub.is_online(broken_user) is False
    assert broken_user not in hub.get_thread_subscribers(thread_id)


async def test_subscribe_ignores_offline_users():
    hub = ChatHub()
    thread_id = uuid4()

    await hub.subscribe(uuid4(), [thread_id])

    assert hub.get_thread_subscribers(thread_id) == set()


async def test_subscriptions_survive_until_last_connection_closes():
    hub = ChatHub()
    thread_id = uuid4()
    user_id, first = await _connected(hub, thread_id)
    second = FakeWebSocket()
    await hub.connect(second, user_id)
    assert hub.get_connected_count(user_id) == 2

    await hub.disconnect(first, user_id)
    assert hub.get_user_threads(user_id) == {thread_id}

    await hub.disconnect(second, user_id)
    assert hub.get_user_threads(user_id) == set()
    assert hub.get_total_connections() == 0


# =============================================================================
# HubBroadcaster
# =============================================================================


def test_hub_broadcaster_delivers_from_sync_code():
    hub = ChatHub()
    thread_id = uuid4()
    redis = FakeRedis()
    sockets = {}

    async def setup():
        sockets["user"] = await _connected(hub, thread_id)

    anyio.run(setup)
    user_id, ws = sockets["user"]

    HubBroadcaster(hub, redis_client_factory=lambda: redis).broadcast_to_thread(
        thread_id, RealtimeEventType.ISSUE_UPDATE, {"issueId": "i-1"}
    )

    assert ws.sent[0]["type"] == "ISSUE_UPDATE"
    assert ws.sent[0]["payload"] == {"issueId": "i-1"}
    channel, body = redis.published[0]
    assert body["origin"] == broadcast.WORKER_ID
    assert body["threadId"] == str(thread_id)


def test_hub_broadcaster_swallows_delivery_failures():
    class ExplodingHub(ChatHub):
        async def broadcast_to_thread(self, thread_id, message, exclude_user_ids=()):
            raise RuntimeError("hub down")

    HubBroadcaster(ExplodingHub(), redis_client_factory=lambda: None).broadcast_to_thread(
        uuid4(), RealtimeEventType.CHAT_MESSAGE, {}
    )


# =============================================================================
# Relay
# =============================================================================


async def test_relay_delivers_events_from_other_workers():
    hub = ChatHub()
    thread_id = uuid4()
    excluded, excluded_ws = await _connected(hub, thread_id)
    _, ws = await _connected(hub, thread_id)
    event = build_event(RealtimeEventType.CHAT_MESSAGE, {"content": "relayed"}, thread_id)

    delivered = await handle_relay_message(
        hub,
        json.dumps(
            {"origin": "other-worker", "threadId": str(thread_id), "exclude": [str(excluded)], "event": event}
        ),
    )

    assert delivered == 1
    assert ws.sent[0]["payload"]["content"] == "relayed"
    assert excluded_ws.sent == []


async def test_relay_skips_own_and_malformed_events():
    hub = ChatHub()
    thread_id = uuid4()
    _, ws = await _connected(hub, thread_id)

    own = json.dumps({"origin": broadcast.WORKER_ID, "threadId": str(thread_id), "event": {}})
    assert await handle_relay_message(hub, own) == 0
    assert await handle_relay_message(hub, "not json") == 0
    assert await handle_relay_message(hub, json.dumps({"origin": "x"})) == 0
    assert ws.sent == []


# =============================================================================
# Client events
# =============================================================================


def _frame(event_type: str, payload: dict) -> str:
    return json.dumps({"type": event_type, "payload": payload})


async def test_ping_and_malformed_frames():
    hub = ChatHub()
    user_id = uuid4()

    assert await realtime_service.handle_client_message(hub, user_id, "ping") == "pong"

    malformed = await realtime_service.handle_client_message(hub, user_id, "{not json")
    assert malformed["type"] == "ERROR"
    assert malformed["payload"]["message"] == "Malformed JSON"

    unknown = await realtime_service.handle_client_message(hub, user_id, _frame("DANCE", {}))
    assert unknown["payload"]["message"] == "Unknown event type: DANCE"

    bad_id = await realtime_service.handle_client_message(
        hub, user_id, _frame("SUBSCRIBE", {"threadIds": ["not-a-uuid"]})
    )
    assert bad_id["payload"]["message"] == "Invalid identifier in payload"


async def test_subscribe_only_to_participating_threads(db, assignment, alice):
    thread_id = assignment.review_thread_id
    alice_id = alice.id
    # Release the write lock before the handler opens its own session
    db.commit()
    hub = ChatHub()
    await hub.connect(FakeWebSocket(), alice_id)
    foreign = uuid4()

    reply = await realtime_service.handle_client_message(
        hub, alice_id, _frame("SUBSCRIBE", {"threadIds": [str(thread_id), str(foreign)]})
    )

    assert reply["type"] == "SUBSCRIBED"
    assert reply["payload"] == {"threadIds": [str(thread_id)], "rejected": [str(foreign)]}
    assert hub.get_user_threads(alice_id) == {thread_id}

    remaining = await realtime_service.handle_client_message(
        hub, alice_id, _frame("UNSUBSCRIBE", {"threadIds": [str(thread_id)]})
    )
    assert remaining["payload"]["threadIds"] == []


async def test_typing_indicator_relayed_to_others_only():
    hub = ChatHub()
    thread_id = uuid4()
    typist, typist_ws = await _connected(hub, thread_id)
    _, reader_ws = await _connected(hub, thread_id)

    reply = await realtime_service.handle_client_message(
        hub, typist, _frame("TYPING_INDICATOR", {"threadId": str(thread_id), "isTyping": True})
    )

    assert reply is None
    assert typist_ws.sent == []
    assert reader_ws.sent[0]["type"] == "TYPING_INDICATOR"
    assert reader_ws.sent[0]["payload"] == {"userId": str(typist), "isTyping": True}

    not_subscribed = await realtime_service.handle_client_message(
        hub, typist, _frame("TYPING_INDICATOR", {"threadId": str(uuid4())})
    )
    assert not_subscribed["payload"]["message"] == "Not subscribed to this thread"


async def test_read_receipt_persists_and_notifies_sender(db, assignment, alice, bob):
    thread_id = assignment.review_thread_id
    message = chat_service.send_message(db, thread_id, alice.id, MessageCreate(content="Plans uploaded"))
    message_id, alice_id, bob_id = message.id, alice.id, bob.id
    db.commit()

    hub = ChatHub()
    alice_ws, bob_ws = FakeWebSocket(), FakeWebSocket()
    await hub.connect(alice_ws, alice_id)
    await hub.connect(bob_ws, bob_id)
    await hub.subscribe(alice_id, [thread_id])
    await hub.subscribe(bob_id, [thread_id])

    reply = await realtime_service.handle_client_message(
        hub,
        bob_id,
        _frame("READ_RECEIPT", {"threadId": str(thread_id), "messageIds": [str(message_id)]}),
    )

    assert reply is None
    assert alice_ws.sent[0]["type"] == "READ_RECEIPT"
    assert alice_ws.sent[0]["payload"]["messageIds"] == [str(message_id)]
    assert bob_ws.sent == []

    receipt = db.query(ReadReceipt).filter(ReadReceipt.message_id == message_id).one()
    assert receipt.user_id == bob_id
    assert receipt.is_realtime is True
    db.commit()


async def test_read_receipt_for_foreign_thread_is_an_error(db, assignment, make_user):
    thread_id = assignment.review_thread_id
    outsider_id = make_user("Oscar", "Outsider").id
    db.commit()

    reply = await realtime_service.handle_client_message(
        ChatHub(),
        outsider_id,
        _frame("READ_RECEIPT", {"threadId": str(thread_id), "messageIds": []}),
    )

    assert reply["type"] == "ERROR"
    assert reply["payload"]["message"] == "user is not a participant in this thread"
