"""Realtime hub: the process-wide presence tracker, room router and task set.

Learn: One hub per process, created at import like `settings`. Routes
and the WebSocket endpoint receive it through the get_hub() dependency,
so tests can swap in a fresh hub per test.
"""

from typing import Optional

import structlog

from nearhelp.concurrency import TaskTracker
from nearhelp.realtime.presence import PresenceChange, PresenceTracker
from nearhelp.realtime.protocol import USER_STATUS_CHANGE
from nearhelp.realtime.rooms import Connection, RoomRouter

logger = structlog.get_logger()


class RealtimeHub:
    """Presence, rooms, and background delivery tasks of one process."""

    def __init__(self) -> None:
        self.presence = PresenceTracker()
        self.rooms = RoomRouter()
        self.tasks = TaskTracker()

    async def _announce(self, change: Optional[PresenceChange]) -> None:
        if change is None:
            return
        try:
            await self.rooms.broadcast_all(USER_STATUS_CHANGE, change.to_payload())
        except Exception as e:
            logger.warning("presence.broadcast_failed", user_id=change.user_id, error=str(e))

    # ─── Presence transitions (broadcast userStatusChange) ──

    async def user_online(self, user_id: str, connection_id: str) -> None:
        await self._announce(self.presence.mark_online(user_id, connection_id))

    async def user_offline(self, user_id: str, connection_id: str) -> None:
        await self._announce(self.presence.mark_offline(user_id, connection_id))

    async def user_away(self, user_id: str) -> None:
        await self._announce(self.presence.mark_away(user_id))

    # ─── Connection lifecycle ─────────────────────────────

    def connect(self, connection: Connection) -> None:
        self.rooms.register(connection)

    async def disconnect(self, connection: Connection) -> None:
        """Socket closed: leave every room, then drop presence for it."""
        self.rooms.unregister(connection.connection_id)
        if connection.user_id:
            await self.user_offline(connection.user_id, connection.connection_id)


# Singleton: one per process
hub = RealtimeHub()


def get_hub() -> RealtimeHub:
    """FastAPI dependency returning the process hub."""
    return hub
