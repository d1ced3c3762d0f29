"""DeliveryDispatcher tests: persist first, then broadcast, notify and push.

Learn: These walk the same paths a real send takes. The receiver is
either connected (a Connection registered with the hub and marked
online) or not; the push transport is an AsyncMock, so the assertions
are about *whether* and *what* gets pushed, never about the network.
"""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from nearhelp.db.models import ChatMessage, Conversation, Notification, User
from nearhelp.errors import (
    AuthorizationError,
    NotFoundError,
    SubscriptionExpired,
    ValidationError,
)
from nearhelp.realtime.protocol import (
    CHAT_NOTIFICATION,
    MESSAGE_SEEN_UPDATE,
    MESSAGES_SEEN,
    NEW_NOTIFICATION,
    NOTIFICATION_COUNT_UPDATE,
    RECEIVE_MESSAGE,
)
from nearhelp.realtime.rooms import chat_room

SUBSCRIPTION = '{"endpoint": "https://push.example/abc", "keys": {"p256dh": "x", "auth": "y"}}'


def _events(connection, name):
    return [f["data"] for f in connection.pending_frames() if f["event"] == name]


async def _message_count(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(func.count(ChatMessage.id)))).scalar_one()


# ═══════════════════════════════════════════════════════════
# Send: receiver offline → persisted notification + push
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_offline_receiver_gets_push(dispatcher, push, make_user, make_post, session_factory):
    await make_user("seller", "Sam")
    await make_user("buyer", "Bea", token=SUBSCRIPTION, enabled=True)
    await make_post("p1", "seller", "Fix my bike")

    message = await dispatcher.send_message("p1", "seller", "buyer", "seller", "Hello there")
    await dispatcher.drain()

    assert message.seen is False
    assert await _message_count(session_factory) == 1

    push.send.assert_awaited_once()
    subscription, title, body, url = push.send.await_args.args
    assert subscription.user_id == "buyer"
    assert subscription.token == SUBSCRIPTION
    assert "Fix my bike" in title
    assert body == "Sam: Hello there"
    assert url.endswith("/chat/p1/buyer")

    async with session_factory() as session:
        rows = (await session.execute(select(Notification))).scalars().all()
        assert [(n.user_id, n.kind, n.post_id) for n in rows] == [("buyer", "chat", "p1")]


@pytest.mark.asyncio
async def test_offline_receiver_without_subscription_is_not_pushed(dispatcher, push, market):
    await dispatcher.send_message(
        market.post_id, market.seller_id, market.buyer_id, market.buyer_id, "Hi"
    )
    await dispatcher.drain()
    push.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_disabled_subscription_is_not_pushed(dispatcher, push, make_user, make_post):
    await make_user("seller", token=SUBSCRIPTION, enabled=False)
    await make_user("buyer")
    await make_post("p1", "seller")

    await dispatcher.send_message("p1", "seller", "buyer", "buyer", "Hi")
    await dispatcher.drain()
    push.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_push_body_is_truncated(dispatcher, push, make_user, make_post):
    await make_user("seller", "Sam")
    await make_user("buyer", token=SUBSCRIPTION, enabled=True)
    await make_post("p1", "seller")

    await dispatcher.send_message("p1", "seller", "buyer", "seller", "x" * 500)
    await dispatcher.drain()

    body = push.send.await_args.args[2]
    assert body.startswith("Sam: ")
    assert len(body) <= len("Sam: ") + 100
    assert body.endswith("...")


@pytest.mark.asyncio
async def test_expired_subscription_is_cleared(dispatcher, push, make_user, make_post, session_factory):
    await make_user("seller")
    await make_user("buyer", token=SUBSCRIPTION, enabled=True)
    await make_post("p1", "seller")
    push.send = AsyncMock(side_effect=SubscriptionExpired("buyer", 410))

    message = await dispatcher.send_message("p1", "seller", "buyer", "seller", "Hi")
    await dispatcher.drain()

    assert message.id is not None
    async with session_factory() as session:
        user = await session.get(User, "buyer")
        assert user.notification_token is None
        assert user.notification_enabled is False


@pytest.mark.asyncio
async def test_push_failure_does_not_fail_send(dispatcher, push, make_user, make_post, session_factory):
    await make_user("seller")
    await make_user("buyer", token=SUBSCRIPTION, enabled=True)
    await make_post("p1", "seller")
    push.send = AsyncMock(side_effect=RuntimeError("push service down"))

    await dispatcher.send_message("p1", "seller", "buyer", "seller", "Hi")
    await dispatcher.drain()

    assert await _message_count(session_factory) == 1


# ═══════════════════════════════════════════════════════════
# Send: receiver online → live events, no push
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_online_receiver_gets_live_events_and_no_push(dispatcher, push, market, connect):
    room = chat_room(market.post_id, market.buyer_id, market.seller_id)
    seller = await connect(market.seller_id, room)
    buyer = await connect(market.buyer_id, room)

    message = await dispatcher.send_message(
        market.post_id, market.seller_id, market.buyer_id, market.buyer_id, "Still available?"
    )
    await dispatcher.drain()

    push.send.assert_not_awaited()

    seller_frames = seller.pending_frames()
    received = [f["data"] for f in seller_frames if f["event"] == RECEIVE_MESSAGE]
    assert len(received) == 1
    assert received[0]["id"] == message.id
    assert received[0]["senderId"] == market.buyer_id
    assert received[0]["text"] == "Still available?"
    assert received[0]["seen"] is False

    chat = [f["data"] for f in seller_frames if f["event"] == CHAT_NOTIFICATION]
    assert chat == [{
        "postId": market.post_id,
        "senderId": market.buyer_id,
        "receiverId": market.seller_id,
        "text": "Still available?",
        "postOwnerId": market.seller_id,
        "postTitle": "Help moving a sofa",
        "senderName": "Bea",
    }]
    counts = [f["data"] for f in seller_frames if f["event"] == NOTIFICATION_COUNT_UPDATE]
    assert counts == [{"userId": market.seller_id, "unreadCount": 1}]

    # The sender sees their own message in the room too
    assert len(_events(buyer, RECEIVE_MESSAGE)) == 1


@pytest.mark.asyncio
async def test_online_receiver_outside_thread_still_gets_badge(dispatcher, push, market, connect):
    seller = await connect(market.seller_id)  # notification room only

    await dispatcher.send_message(
        market.post_id, market.seller_id, market.buyer_id, market.buyer_id, "Hi"
    )
    await dispatcher.drain()

    frames = seller.pending_frames()
    assert [f["event"] for f in frames if f["event"] == RECEIVE_MESSAGE] == []
    assert any(f["event"] == CHAT_NOTIFICATION for f in frames)
    push.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_receive_order_matches_send_order(dispatcher, market, connect):
    room = chat_room(market.post_id, market.buyer_id, market.seller_id)
    seller = await connect(market.seller_id, room)

    for n in range(5):
        await dispatcher.send_message(
            market.post_id, market.seller_id, market.buyer_id, market.buyer_id, f"m{n}"
        )

    assert [m["text"] for m in _events(seller, RECEIVE_MESSAGE)] == [f"m{n}" for n in range(5)]


@pytest.mark.asyncio
async def test_broadcast_failure_does_not_fail_send(dispatcher, hub, market, session_factory):
    hub.rooms.broadcast_to_room = AsyncMock(side_effect=RuntimeError("router down"))

    message = await dispatcher.send_message(
        market.post_id, market.seller_id, market.buyer_id, market.buyer_id, "Hi"
    )

    assert message.id is not None
    assert await _message_count(session_factory) == 1


# ═══════════════════════════════════════════════════════════
# Send: rejected before anything is written
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "args, error",
    [
        (("post-1", "seller-1", "buyer-1", "buyer-1", ""), ValidationError),
        (("post-1", "seller-1", "buyer-1", "buyer-1", "   "), ValidationError),
        (("", "seller-1", "buyer-1", "buyer-1", "Hi"), ValidationError),
        (("post-1", "seller-1", "seller-1", "seller-1", "Hi"), ValidationError),
        (("post-1", "seller-1", "buyer-1", "stranger", "Hi"), AuthorizationError),
        (("post-1", "buyer-1", "seller-1", "buyer-1", "Hi"), AuthorizationError),
        (("missing", "seller-1", "buyer-1", "buyer-1", "Hi"), NotFoundError),
        (("post-1", "seller-1", "ghost", "seller-1", "Hi"), NotFoundError),
    ],
)
async def test_invalid_sends_persist_nothing(dispatcher, market, session_factory, args, error):
    with pytest.raises(error):
        await dispatcher.send_message(*args)
    assert await _message_count(session_factory) == 0


@pytest.mark.asyncio
async def test_send_to_unknown_buyer_creates_no_conversation(dispatcher, market, session_factory):
    with pytest.raises(NotFoundError, match="ghost"):
        await dispatcher.send_message(
            market.post_id, market.seller_id, "ghost", market.seller_id, "Anyone there?"
        )
    async with session_factory() as session:
        count = await session.execute(select(func.count(Conversation.id)))
        assert count.scalar_one() == 0


# ═══════════════════════════════════════════════════════════
# Mark seen
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_mark_seen_notifies_room_and_both_participants(dispatcher, market, connect):
    m1 = await dispatcher.send_message(
        market.post_id, market.seller_id, market.buyer_id, market.buyer_id, "one"
    )
    m2 = await dispatcher.send_message(
        market.post_id, market.seller_id, market.buyer_id, market.buyer_id, "two"
    )
    room = chat_room(market.post_id, market.buyer_id, market.seller_id)
    seller = await connect(market.seller_id, room)
    buyer = await connect(market.buyer_id, room)

    result = await dispatcher.mark_messages_seen(
        market.post_id, market.buyer_id, market.seller_id, [m2.id, m1.id],
        actor_id=market.seller_id,
    )
    assert result.updated == 2
    assert result.message_ids == [m1.id, m2.id]

    seller_frames = seller.pending_frames()
    buyer_frames = buyer.pending_frames()
    for frames in (seller_frames, buyer_frames):
        seen_updates = [f["data"] for f in frames if f["event"] == MESSAGE_SEEN_UPDATE]
        assert seen_updates == [{"messageIds": [m1.id, m2.id]}]
        seen = [f["data"] for f in frames if f["event"] == MESSAGES_SEEN]
        assert len(seen) == 1
        assert seen[0]["postId"] == market.post_id
        assert seen[0]["chatId"]

    counts = [f["data"] for f in seller_frames if f["event"] == NOTIFICATION_COUNT_UPDATE]
    assert counts == [{"userId": market.seller_id, "unreadCount": 0}]


@pytest.mark.asyncio
async def test_mark_seen_reaches_seller_while_buyer_is_offline(dispatcher, market, connect):
    message = await dispatcher.send_message(
        market.post_id, market.seller_id, market.buyer_id, market.buyer_id, "one"
    )
    seller = await connect(market.seller_id)

    await dispatcher.mark_messages_seen(
        market.post_id, market.buyer_id, market.seller_id, [message.id],
        actor_id=market.seller_id,
    )

    frames = seller.pending_frames()
    assert [f["data"]["postId"] for f in frames if f["event"] == MESSAGES_SEEN] == [market.post_id]
    counts = [f["data"] for f in frames if f["event"] == NOTIFICATION_COUNT_UPDATE]
    assert counts == [{"userId": market.seller_id, "unreadCount": 0}]


@pytest.mark.asyncio
async def test_mark_seen_twice_updates_nothing_second_time(dispatcher, market):
    message = await dispatcher.send_message(
        market.post_id, market.seller_id, market.buyer_id, market.buyer_id, "one"
    )
    first = await dispatcher.mark_messages_seen(
        market.post_id, market.buyer_id, market.seller_id, [message.id]
    )
    second = await dispatcher.mark_messages_seen(
        market.post_id, market.buyer_id, market.seller_id, [message.id]
    )
    assert (first.updated, second.updated) == (1, 0)


@pytest.mark.asyncio
async def test_mark_seen_rejections(dispatcher, market):
    message = await dispatcher.send_message(
        market.post_id, market.seller_id, market.buyer_id, market.buyer_id, "one"
    )
    with pytest.raises(ValidationError):
        await dispatcher.mark_messages_seen(
            market.post_id, market.buyer_id, market.seller_id, []
        )
    with pytest.raises(AuthorizationError):
        await dispatcher.mark_messages_seen(
            market.post_id, market.buyer_id, market.seller_id, [message.id],
            actor_id="stranger",
        )
    with pytest.raises(NotFoundError):
        await dispatcher.mark_messages_seen(
            market.post_id, "nobody", market.seller_id, [message.id]
        )


# ═══════════════════════════════════════════════════════════
# Proximity announcements
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_announce_reaches_users_within_their_radius(
    dispatcher, push, make_user, make_post, connect, session_factory
):
    # Post in central London
    await make_user("owner", latitude=51.5074, longitude=-0.1278)
    await make_post("p1", "owner", "Need a ladder", latitude=51.5074, longitude=-0.1278)
    # ~3 km away, online
    await make_user("near-online", latitude=51.5300, longitude=-0.1000, radius_km=10)
    # ~3 km away, offline with push
    await make_user(
        "near-offline", latitude=51.4900, longitude=-0.1000, radius_km=10,
        token=SUBSCRIPTION, enabled=True,
    )
    # ~3 km away but only cares about 1 km
    await make_user("picky", latitude=51.5300, longitude=-0.1000, radius_km=1)
    # Paris
    await make_user("far", latitude=48.8566, longitude=2.3522, radius_km=50)
    # No known location
    await make_user("nowhere")
    online = await connect("near-online")

    notified = await dispatcher.announce_post("p1", actor_id="owner")
    await dispatcher.drain()

    assert notified == 2
    assert _events(online, NEW_NOTIFICATION) == [
        {"postId": "p1", "message": "New post near you: Need a ladder"}
    ]
    push.send.assert_awaited_once()
    assert push.send.await_args.args[0].user_id == "near-offline"

    async with session_factory() as session:
        rows = (await session.execute(select(Notification))).scalars().all()
        assert sorted(n.user_id for n in rows) == ["near-offline", "near-online"]
        assert {n.kind for n in rows} == {"nearby_post"}


@pytest.mark.asyncio
async def test_announce_rejections(dispatcher, make_user, make_post):
    await make_user("owner")
    await make_user("other")
    await make_post("no-location", "owner")
    await make_post("located", "owner", latitude=1.0, longitude=1.0)

    with pytest.raises(ValidationError):
        await dispatcher.announce_post("no-location")
    with pytest.raises(AuthorizationError):
        await dispatcher.announce_post("located", actor_id="other")
    with pytest.raises(NotFoundError):
        await dispatcher.announce_post("missing")
    assert await dispatcher.announce_post("located") == 0
