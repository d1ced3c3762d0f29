"""RoomRouter, Connection outbox and Redis relay tests."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from nearhelp.realtime.pubsub import RedisRoomRelay
from nearhelp.realtime.rooms import (
    ConnectionBacklogged,
    ConnectionClosed,
    Connection,
    RoomRouter,
    chat_room,
    notification_room,
)


def _joined(router, user_id, *rooms):
    connection = Connection(user_id=user_id)
    router.register(connection)
    for room in rooms:
        router.join(connection.connection_id, room)
    return connection


def test_room_keys_put_buyer_first():
    assert chat_room("p1", "buyer", "seller") == "post_p1_user_buyer_user_seller"
    assert notification_room("u9") == "notifications_u9"


@pytest.mark.asyncio
async def test_broadcast_reaches_members_in_order():
    router = RoomRouter()
    room = chat_room("p1", "b", "s")
    member = _joined(router, "b", room)
    outsider = _joined(router, "x")

    for n in range(3):
        await router.broadcast_to_room(room, "receiveMessage", {"n": n})

    assert [f["data"]["n"] for f in member.pending_frames()] == [0, 1, 2]
    assert outsider.pending_frames() == []


@pytest.mark.asyncio
async def test_other_threads_do_not_see_the_broadcast():
    router = RoomRouter()
    room = chat_room("p1", "b", "s")
    member = _joined(router, "b", room)
    other_post = _joined(router, "b2", chat_room("p2", "b2", "s"))
    other_buyer = _joined(router, "b3", chat_room("p1", "b3", "s"))

    await router.broadcast_to_room(room, "receiveMessage", {"text": "hi"})

    assert len(member.pending_frames()) == 1
    assert other_post.pending_frames() == []
    assert other_buyer.pending_frames() == []


@pytest.mark.asyncio
async def test_broadcast_excludes_sender():
    router = RoomRouter()
    room = chat_room("p1", "b", "s")
    sender = _joined(router, "b", room)
    other = _joined(router, "s", room)

    await router.broadcast_to_room(room, "userTyping", {}, exclude=sender.connection_id)

    assert sender.pending_frames() == []
    assert len(other.pending_frames()) == 1


@pytest.mark.asyncio
async def test_broadcast_to_user_without_connection_is_noop():
    router = RoomRouter()
    await router.broadcast_to_user("nobody", "newNotification", {"message": "hi"})
    assert router.members(notification_room("nobody")) == frozenset()


def test_unregister_leaves_every_room():
    router = RoomRouter()
    connection = _joined(router, "u", "room-a", "room-b")

    router.unregister(connection.connection_id)

    assert router.members("room-a") == frozenset()
    assert router.members("room-b") == frozenset()
    assert router.rooms_of(connection.connection_id) == frozenset()
    assert connection.closed


def test_join_after_close_is_ignored():
    router = RoomRouter()
    router.join("never-registered", "room-a")
    assert router.members("room-a") == frozenset()


def test_leave_keeps_other_rooms():
    router = RoomRouter()
    connection = _joined(router, "u", "room-a", "room-b")
    router.leave(connection.connection_id, "room-a")
    assert router.rooms_of(connection.connection_id) == frozenset({"room-b"})
    assert not router.is_member(connection.connection_id, "room-a")


@pytest.mark.asyncio
async def test_failing_connection_is_dropped():
    router = RoomRouter()
    room = "room-a"
    healthy = _joined(router, "a", room)
    broken = _joined(router, "b", room)
    broken.close()

    await router.broadcast_to_room(room, "receiveMessage", {"text": "hi"})

    assert len(healthy.pending_frames()) == 1
    assert router.get_connection(broken.connection_id) is None
    assert router.members(room) == frozenset({healthy.connection_id})


def test_closed_connection_refuses_frames():
    connection = Connection(user_id="u")
    connection.close()
    with pytest.raises(ConnectionClosed):
        connection.deliver("pong", None)


@pytest.mark.asyncio
async def test_broadcast_all_reaches_every_connection():
    router = RoomRouter()
    first = _joined(router, "a")
    second = _joined(router, "b")

    await router.broadcast_all("userStatusChange", {"userId": "a", "isOnline": True})

    assert len(first.pending_frames()) == 1
    assert len(second.pending_frames()) == 1


@pytest.mark.asyncio
async def test_pump_writes_frames_in_order():
    connection = Connection(user_id="u")
    sent = []

    async def send(frame):
        sent.append(frame["data"])

    pump = asyncio.create_task(connection.pump(send))
    for n in range(5):
        connection.deliver("receiveMessage", n)
    await asyncio.sleep(0.01)
    pump.cancel()

    assert sent == [0, 1, 2, 3, 4]


# ─── Publisher / Redis relay ─────────────────────────────


@pytest.mark.asyncio
async def test_publisher_takes_over_broadcasts():
    router = RoomRouter()
    member = _joined(router, "u", "room-a")
    router.publisher = AsyncMock()

    await router.broadcast_to_room("room-a", "receiveMessage", {"n": 1})

    router.publisher.publish.assert_awaited_once_with(
        "room-a", "receiveMessage", {"n": 1}, exclude=None
    )
    assert member.pending_frames() == []


@pytest.mark.asyncio
async def test_publisher_failure_falls_back_to_local_delivery():
    router = RoomRouter()
    member = _joined(router, "u", "room-a")
    router.publisher = AsyncMock()
    router.publisher.publish.side_effect = ConnectionError("redis down")

    await router.broadcast_to_room("room-a", "receiveMessage", {"n": 1})

    assert [f["data"] for f in member.pending_frames()] == [{"n": 1}]


@pytest.mark.asyncio
async def test_relay_publishes_json_envelope():
    redis = AsyncMock()
    relay = RedisRoomRelay(redis, RoomRouter(), "nearhelp:test")

    await relay.publish("room-a", "userTyping", {"isTyping": True}, exclude="c1")

    channel, payload = redis.publish.await_args.args
    assert channel == "nearhelp:test"
    assert json.loads(payload) == {
        "room": "room-a",
        "event": "userTyping",
        "data": {"isTyping": True},
        "exclude": "c1",
    }


def test_relay_delivers_received_messages_locally():
    router = RoomRouter()
    sender = _joined(router, "a", "room-a")
    receiver = _joined(router, "b", "room-a")
    relay = RedisRoomRelay(AsyncMock(), router, "nearhelp:test")

    relay.handle(json.dumps({
        "room": "room-a",
        "event": "userTyping",
        "data": {"userId": "a"},
        "exclude": sender.connection_id,
    }))

    assert sender.pending_frames() == []
    assert receiver.pending_frames() == [{"event": "userTyping", "data": {"userId": "a"}}]


def test_relay_ignores_malformed_messages():
    router = RoomRouter()
    member = _joined(router, "a", "room-a")
    relay = RedisRoomRelay(AsyncMock(), router, "nearhelp:test")

    relay.handle("not json")
    relay.handle(json.dumps({"event": "missing room"}))

    assert member.pending_frames() == []


class _FakePubSub:
    """Yields the given messages, then fails with error or blocks forever."""

    def __init__(self, messages=(), error=None):
        self.messages = list(messages)
        self.error = error
        self.subscribed = []
        self.closed = False

    async def subscribe(self, channel):
        self.subscribed.append(channel)

    async def listen(self):
        for message in self.messages:
            yield message
        if self.error is not None:
            raise self.error
        await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


class _FakeRedis:
    def __init__(self, *pubsubs):
        self._pubsubs = list(pubsubs)
        self.publish = AsyncMock()

    def pubsub(self):
        return self._pubsubs.pop(0)


async def _settle():
    for _ in range(20):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_relay_attaches_once_subscribed():
    router = RoomRouter()
    relay = RedisRoomRelay(_FakeRedis(_FakePubSub()), router, "nearhelp:test")
    assert router.publisher is None

    task = asyncio.create_task(relay.listen())
    await _settle()
    assert router.publisher is relay

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert router.publisher is None


@pytest.mark.asyncio
async def test_lost_subscription_falls_back_to_local_delivery():
    router = RoomRouter()
    member = _joined(router, "u", "room-a")
    pubsub = _FakePubSub(error=ConnectionError("Connection closed by server."))
    redis = _FakeRedis(pubsub)
    relay = RedisRoomRelay(redis, router, "nearhelp:test", retry_seconds=60)

    task = asyncio.create_task(relay.listen())
    await _settle()
    try:
        assert pubsub.subscribed == ["nearhelp:test"]
        assert pubsub.closed
        assert router.publisher is None
        await router.broadcast_to_room("room-a", "receiveMessage", {"n": 1})
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    assert [f["data"] for f in member.pending_frames()] == [{"n": 1}]
    redis.publish.assert_not_awaited()


@pytest.mark.asyncio
async def test_relay_resubscribes_after_a_drop():
    router = RoomRouter()
    member = _joined(router, "u", "room-a")
    relayed = json.dumps({"room": "room-a", "event": "receiveMessage", "data": {"n": 2}})
    redis = _FakeRedis(
        _FakePubSub(error=ConnectionError("Connection reset by peer")),
        _FakePubSub(messages=[{"type": "message", "data": relayed}]),
    )
    relay = RedisRoomRelay(redis, router, "nearhelp:test", retry_seconds=0)

    task = asyncio.create_task(relay.listen())
    await _settle()
    try:
        assert router.publisher is relay
        assert [f["data"] for f in member.pending_frames()] == [{"n": 2}]
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


# ─── Slow consumers ──────────────────────────────────────


def test_full_outbox_refuses_frames():
    connection = Connection(user_id="u", max_pending=2)
    connection.deliver("receiveMessage", 1)
    connection.deliver("receiveMessage", 2)
    with pytest.raises(ConnectionBacklogged):
        connection.deliver("receiveMessage", 3)


@pytest.mark.asyncio
async def test_backlogged_connection_is_dropped():
    router = RoomRouter()
    slow = Connection(user_id="slow", max_pending=2)
    router.register(slow)
    router.join(slow.connection_id, "room-a")
    fast = _joined(router, "fast", "room-a")

    for n in range(3):
        await router.broadcast_to_room("room-a", "receiveMessage", {"n": n})

    assert slow.closed
    assert router.get_connection(slow.connection_id) is None
    assert router.members("room-a") == frozenset({fast.connection_id})
    assert [f["data"]["n"] for f in fast.pending_frames()] == [0, 1, 2]


@pytest.mark.asyncio
async def test_pump_stops_when_connection_closes():
    connection = Connection(user_id="u")
    sent = []

    async def send(frame):
        sent.append(frame["data"])

    connection.deliver("receiveMessage", 1)
    connection.close()

    await asyncio.wait_for(connection.pump(send), timeout=1)
    assert sent == [1]
