"""Room routing: logical rooms mapped to live connections.

Learn: A room is only a routing key, never persisted:

    post_{postId}_user_{buyerId}_user_{sellerId}   chat thread (buyer first)
    notifications_{userId}                         one user's private room

The router keeps two indexes (room → connections, connection → rooms)
so a disconnect can leave every room in one step. Delivery is
fire-and-forget: each connection owns an outbox queue drained by a
single writer, which gives per-connection FIFO without making the
broadcaster wait on slow sockets.
"""

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Optional, Protocol

import structlog

from nearhelp.config import settings

logger = structlog.get_logger()

ALL_CONNECTIONS = "*"


def chat_room(post_id: str, buyer_id: str, seller_id: str) -> str:
    """Room key of one conversation. Always buyer first, seller second."""
    return f"post_{post_id}_user_{buyer_id}_user_{seller_id}"


def notification_room(user_id: str) -> str:
    return f"notifications_{user_id}"


class ConnectionClosed(Exception):
    """Raised when delivering to a connection that has been closed."""


class ConnectionBacklogged(ConnectionClosed):
    """Raised when a connection's outbox is full; the router drops it."""


class Connection:
    """A live subscriber with its own bounded outbound queue.

    Learn: deliver() never blocks: it only enqueues. pump() is the single
    writer that hands frames to the transport in order, and returns once
    the connection is closed. A client that stops reading fills its
    outbox and is dropped instead of growing it without limit. Tests read
    frames straight off the queue with pending_frames().
    """

    def __init__(
        self,
        user_id: Optional[str] = None,
        connection_id: Optional[str] = None,
        max_pending: Optional[int] = None,
    ):
        self.connection_id = connection_id or uuid.uuid4().hex
        self.user_id = user_id
        # (post_id, other_user_id) → chat room key, for typing/seen relays
        self.chat_rooms: dict[tuple[str, str], str] = {}
        self.closed = False
        if max_pending is None:
            max_pending = settings.connection_outbox_size
        self._outbox: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=max_pending)

    def deliver(self, event: str, data: Any) -> None:
        self.send_frame({"event": event, "data": data})

    def send_frame(self, frame: dict) -> None:
        if self.closed:
            raise ConnectionClosed(self.connection_id)
        try:
            self._outbox.put_nowait(frame)
        except asyncio.QueueFull:
            raise ConnectionBacklogged(self.connection_id) from None

    def pending_frames(self) -> list[dict]:
        """Pop every frame queued so far without waiting."""
        frames = []
        while not self._outbox.empty():
            frame = self._outbox.get_nowait()
            if frame is not None:
                frames.append(frame)
        return frames

    async def pump(self, send: Callable[[dict], Awaitable[None]]) -> None:
        """Write queued frames to the transport, in order, until closed."""
        while True:
            frame = await self._outbox.get()
            if frame is None:
                return
            await send(frame)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # wake the writer; a full outbox is discarded
        while self._outbox.full():
            self._outbox.get_nowait()
        self._outbox.put_nowait(None)


class RoomPublisher(Protocol):
    async def publish(
        self, room: str, event: str, data: Any, exclude: Optional[str] = None
    ) -> None: ...


class RoomRouter:
    """Room membership tables plus broadcast.

    With a publisher attached (the Redis relay), broadcasts go through
    the publisher and come back via deliver_local() on every process.
    Without one, broadcasts are delivered locally right away.
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = {}
        self._connection_rooms: dict[str, set[str]] = {}
        self.publisher: Optional[RoomPublisher] = None

    # ─── Connections ──────────────────────────────────────

    def register(self, connection: Connection) -> None:
        self._connections[connection.connection_id] = connection
        self._connection_rooms.setdefault(connection.connection_id, set())
        logger.info(
            "rooms.connected",
            connection_id=connection.connection_id,
            total=len(self._connections),
        )

    def unregister(self, connection_id: str) -> None:
        """Forget a connection and remove it from every room it joined."""
        self.leave_all(connection_id)
        self._connection_rooms.pop(connection_id, None)
        connection = self._connections.pop(connection_id, None)
        if connection is not None:
            connection.close()
            logger.info(
                "rooms.disconnected",
                connection_id=connection_id,
                total=len(self._connections),
            )

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    # ─── Membership ───────────────────────────────────────

    def join(self, connection_id: str, room: str) -> None:
        if connection_id not in self._connections:
            return  # connection already closed
        self._rooms.setdefault(room, set()).add(connection_id)
        self._connection_rooms[connection_id].add(room)

    def leave(self, connection_id: str, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._rooms[room]
        rooms = self._connection_rooms.get(connection_id)
        if rooms is not None:
            rooms.discard(room)

    def leave_all(self, connection_id: str) -> None:
        for room in list(self._connection_rooms.get(connection_id, ())):
            self.leave(connection_id, room)

    def members(self, room: str) -> frozenset[str]:
        return frozenset(self._rooms.get(room, ()))

    def rooms_of(self, connection_id: str) -> frozenset[str]:
        return frozenset(self._connection_rooms.get(connection_id, ()))

    def is_member(self, connection_id: str, room: str) -> bool:
        return connection_id in self._rooms.get(room, ())

    # ─── Broadcast ────────────────────────────────────────

    async def broadcast_to_room(
        self,
        room: str,
        event: str,
        data: Any,
        exclude: Optional[str] = None,
    ) -> None:
        """Deliver to every connection joined to room (minus exclude)."""
        if self.publisher is not None:
            try:
                await self.publisher.publish(room, event, data, exclude=exclude)
                return
            except Exception as e:
                logger.warning(
                    "rooms.publish_failed_local_fallback", room=room, error=str(e)
                )
        self.deliver_local(room, event, data, exclude=exclude)

    async def broadcast_to_user(self, user_id: str, event: str, data: Any) -> None:
        """Deliver to a user's private room. No-op if they are not connected."""
        await self.broadcast_to_room(notification_room(user_id), event, data)

    async def broadcast_all(self, event: str, data: Any) -> None:
        await self.broadcast_to_room(ALL_CONNECTIONS, event, data)

    def deliver_local(
        self,
        room: str,
        event: str,
        data: Any,
        exclude: Optional[str] = None,
    ) -> int:
        """Enqueue on this process's members of room. Returns deliveries made."""
        if room == ALL_CONNECTIONS:
            targets = list(self._connections)
        else:
            targets = list(self._rooms.get(room, ()))
        if not targets:
            logger.debug("rooms.skipped_empty", room=room, event_name=event)
            return 0

        delivered = 0
        dead = []
        for connection_id in targets:
            if connection_id == exclude:
                continue
            connection = self._connections.get(connection_id)
            if connection is None:
                continue
            try:
                connection.deliver(event, data)
                delivered += 1
            except Exception as e:
                logger.warning(
                    "rooms.delivery_failed",
                    connection_id=connection_id,
                    event_name=event,
                    error=str(e),
                )
                dead.append(connection_id)

        for connection_id in dead:
            self.unregister(connection_id)
        return delivered

    def __len__(self) -> int:
        return len(self._connections)
