"""WebSocket endpoint: the bidirectional realtime channel.

Learn: Each browser tab opens one socket at /ws?token=JWT. The handler:
1. Authenticates via JWT query param (required outside development)
2. Registers a Connection with the hub's RoomRouter
3. Runs two tasks: a writer (drains the connection's outbox to the
   socket) and a reader (parses client frames and dispatches events)
4. On disconnect, leaves every room and drops presence for the socket

Client frames are {"event", "data", "ack"}. Errors in one event never
close the socket: they come back as an "error" frame, or as an ack with
{"ok": false} when the client asked for one.
"""

import asyncio
import json
from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PayloadError
from sqlalchemy.ext.asyncio import async_sessionmaker
from starlette.websockets import WebSocketState

from nearhelp.config import settings
from nearhelp.db.engine import get_session_factory
from nearhelp.errors import AuthorizationError, NearHelpError, NotFoundError
from nearhelp.realtime.hub import RealtimeHub, get_hub
from nearhelp.realtime.protocol import (
    CHECK_ONLINE_STATUS,
    JOIN_CHAT_ROOM,
    JOIN_NOTIFICATIONS_ROOM,
    LEAVE_CHAT_ROOM,
    MESSAGE_SEEN,
    MESSAGE_SEEN_UPDATE,
    PING,
    PONG,
    TYPING,
    USER_AWAY,
    USER_ONLINE,
    USER_STATUS_CHANGE,
    USER_TYPING,
    ChatRoomRef,
    Frame,
    MessageSeenPayload,
    TypingPayload,
    UserRef,
    ack_frame,
    error_frame,
    parse_user_id,
)
from nearhelp.realtime.rooms import Connection, chat_room, notification_room
from nearhelp.services.post_store import PostStore

logger = structlog.get_logger()
router = APIRouter()


def _authenticate(websocket: WebSocket) -> tuple[bool, Optional[str]]:
    """(allowed, user_id). Development accepts ?userId= without a token."""
    token = websocket.query_params.get("token")
    if token:
        from nearhelp.auth.jwt import TokenError, verify_token

        try:
            return True, verify_token(token)["sub"]
        except TokenError:
            return False, None
    if settings.environment != "development":
        return False, None
    return True, websocket.query_params.get("userId")


@router.websocket("/ws")
async def realtime_websocket(
    websocket: WebSocket,
    hub: RealtimeHub = Depends(get_hub),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Realtime chat, presence and notification socket."""
    # ── Authentication ──────────────────────────────────────
    allowed, user_id = _authenticate(websocket)
    if not allowed:
        await websocket.close(code=4001, reason="Invalid or missing token")
        return

    await websocket.accept()
    connection = Connection(user_id=user_id)
    hub.connect(connection)
    structlog.contextvars.bind_contextvars(
        connection_id=connection.connection_id, user_id=user_id
    )

    async def writer(frame: dict) -> None:
        await websocket.send_text(json.dumps(frame, default=str))

    async def reader() -> None:
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    connection.send_frame(error_frame("Frame is not valid JSON", "bad_frame"))
                    continue
                await dispatch_event(hub, connection, frame, session_factory)
        except (WebSocketDisconnect, asyncio.CancelledError):
            pass

    pump_task = asyncio.create_task(connection.pump(writer))
    read_task = asyncio.create_task(reader())

    try:
        done, pending = await asyncio.wait(
            [pump_task, read_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning("ws.task_failed", error=repr(task.exception()))
    finally:
        await hub.disconnect(connection)
        structlog.contextvars.unbind_contextvars("connection_id", "user_id")
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()


# ═══════════════════════════════════════════════════════════
# Event dispatch
# ═══════════════════════════════════════════════════════════


async def dispatch_event(
    hub: RealtimeHub,
    connection: Connection,
    frame: Any,
    session_factory: async_sessionmaker,
) -> None:
    """Handle one client frame. Replies go to the connection's outbox."""
    try:
        envelope = Frame.model_validate(frame)
    except PayloadError:
        connection.send_frame(error_frame("Frame must carry an event name", "bad_frame"))
        return

    handler = _HANDLERS.get(envelope.event)
    if handler is None:
        _reply_error(connection, envelope, f"Unknown event {envelope.event}", "unknown_event")
        return

    try:
        result = await handler(hub, connection, envelope.data, session_factory)
    except PayloadError as e:
        _reply_error(connection, envelope, _first_error(e), "validation_error")
        return
    except NearHelpError as e:
        _reply_error(connection, envelope, str(e), e.code)
        return

    if envelope.ack is not None:
        connection.send_frame(ack_frame(envelope.ack, result))


def _reply_error(connection: Connection, envelope: Frame, message: str, code: str) -> None:
    logger.info("ws.event_rejected", event_name=envelope.event, code=code, error=message)
    if envelope.ack is not None:
        connection.send_frame(
            ack_frame(envelope.ack, {"ok": False, "error": message, "code": code})
        )
    else:
        connection.send_frame(error_frame(message, code))


def _first_error(e: PayloadError) -> str:
    err = e.errors()[0]
    location = ".".join(str(part) for part in err["loc"]) or "data"
    return f"{location}: {err['msg']}"


def _claim_identity(connection: Connection, user_id: str) -> None:
    """A socket speaks for one user. Unauthenticated dev sockets adopt the first id."""
    if connection.user_id is None:
        connection.user_id = user_id
        structlog.contextvars.bind_contextvars(user_id=user_id)
    elif connection.user_id != user_id:
        raise AuthorizationError("Socket is authenticated as a different user")


async def _resolve_chat_room(
    connection: Connection, ref: ChatRoomRef, session_factory: async_sessionmaker
) -> str:
    """Room key for (post, user, other user), buyer first.

    The post owner is the seller. Resolved rooms are cached on the
    connection so typing and seen relays skip the lookup.
    """
    key = (ref.post_id, ref.other_user_id)
    room = connection.chat_rooms.get(key)
    if room is not None:
        return room

    async with session_factory() as db:
        post = await PostStore(db).get_post(ref.post_id)
    if post is None:
        raise NotFoundError(f"Post {ref.post_id} not found")
    if post.user_id == ref.user_id:
        room = chat_room(ref.post_id, buyer_id=ref.other_user_id, seller_id=ref.user_id)
    elif post.user_id == ref.other_user_id:
        room = chat_room(ref.post_id, buyer_id=ref.user_id, seller_id=ref.other_user_id)
    else:
        raise AuthorizationError("Neither participant owns this post")
    connection.chat_rooms[key] = room
    return room


# ─── Handlers ────────────────────────────────────────────


async def _join_chat_room(hub, connection, data, session_factory):
    ref = ChatRoomRef.model_validate(data)
    _claim_identity(connection, ref.user_id)
    room = await _resolve_chat_room(connection, ref, session_factory)
    hub.rooms.join(connection.connection_id, room)
    logger.debug("ws.joined_chat_room", room=room)
    return {"ok": True, "room": room}


async def _leave_chat_room(hub, connection, data, session_factory):
    ref = ChatRoomRef.model_validate(data)
    _claim_identity(connection, ref.user_id)
    room = connection.chat_rooms.pop((ref.post_id, ref.other_user_id), None)
    if room is not None:
        hub.rooms.leave(connection.connection_id, room)
    return {"ok": True, "room": room}


async def _join_notifications_room(hub, connection, data, session_factory):
    ref = parse_user_id(data)
    _claim_identity(connection, ref.user_id)
    room = notification_room(ref.user_id)
    hub.rooms.join(connection.connection_id, room)
    return {"ok": True, "room": room}


async def _user_online(hub, connection, data, session_factory):
    ref = parse_user_id(data)
    _claim_identity(connection, ref.user_id)
    await hub.user_online(ref.user_id, connection.connection_id)
    return {"ok": True}


async def _user_away(hub, connection, data, session_factory):
    ref = parse_user_id(data)
    _claim_identity(connection, ref.user_id)
    await hub.user_away(ref.user_id)
    return {"ok": True}


async def _typing(hub, connection, data, session_factory):
    payload = TypingPayload.model_validate(data)
    _claim_identity(connection, payload.user_id)
    room = await _resolve_chat_room(connection, payload, session_factory)
    if not hub.rooms.is_member(connection.connection_id, room):
        raise AuthorizationError("Join the chat room before typing in it")
    await hub.rooms.broadcast_to_room(
        room,
        USER_TYPING,
        {
            "userId": payload.user_id,
            "isTyping": payload.is_typing,
            "postId": payload.post_id,
        },
        exclude=connection.connection_id,
    )
    return {"ok": True}


async def _message_seen(hub, connection, data, session_factory):
    """Relay-only seen signal; the durable transition is the mark-seen route."""
    payload = MessageSeenPayload.model_validate(data)
    if not hub.rooms.is_member(connection.connection_id, payload.room):
        raise AuthorizationError("Not a member of this room")
    await hub.rooms.broadcast_to_room(
        payload.room, MESSAGE_SEEN_UPDATE, {"messageIds": [payload.message_id]}
    )
    return {"ok": True}


async def _check_online_status(hub, connection, data, session_factory):
    """Ack carries the bare bool; clients without ack support get userStatusChange."""
    ref = parse_user_id(data)
    is_online = hub.presence.is_online(ref.user_id)
    connection.deliver(USER_STATUS_CHANGE, {"userId": ref.user_id, "isOnline": is_online})
    return is_online


async def _ping(hub, connection, data, session_factory):
    connection.deliver(PONG, data)
    return {"ok": True}


_HANDLERS = {
    JOIN_CHAT_ROOM: _join_chat_room,
    LEAVE_CHAT_ROOM: _leave_chat_room,
    JOIN_NOTIFICATIONS_ROOM: _join_notifications_room,
    USER_ONLINE: _user_online,
    USER_AWAY: _user_away,
    TYPING: _typing,
    MESSAGE_SEEN: _message_seen,
    CHECK_ONLINE_STATUS: _check_online_status,
    PING: _ping,
}
