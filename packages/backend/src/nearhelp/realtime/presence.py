"""Presence tracking: which users have at least one live connection.

Learn: Per user the state machine is simply

    Offline ──first connection──▶ Online ──last connection gone / away──▶ Offline

A user with two browser tabs has two connection ids; closing one tab
keeps them online. Methods never await, so each mutation runs to
completion on the event loop and is_online() never sees half a change.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class PresenceChange:
    """An online/offline transition, emitted only when the state flips."""

    user_id: str
    is_online: bool

    def to_payload(self) -> dict:
        return {"userId": self.user_id, "isOnline": self.is_online}


class PresenceTracker:
    """In-memory map of user id → live connection ids."""

    def __init__(self) -> None:
        self._connections: dict[str, set[str]] = {}

    def mark_online(self, user_id: str, connection_id: str) -> Optional[PresenceChange]:
        """Register a connection. Returns a change only for the first one."""
        connections = self._connections.get(user_id)
        if connections is None:
            self._connections[user_id] = {connection_id}
            logger.info("presence.online", user_id=user_id, connection_id=connection_id)
            return PresenceChange(user_id=user_id, is_online=True)
        connections.add(connection_id)
        return None

    def mark_offline(self, user_id: str, connection_id: str) -> Optional[PresenceChange]:
        """Drop a connection. Returns a change only when it was the last one."""
        connections = self._connections.get(user_id)
        if connections is None or connection_id not in connections:
            return None
        connections.discard(connection_id)
        if connections:
            return None
        del self._connections[user_id]
        logger.info("presence.offline", user_id=user_id, connection_id=connection_id)
        return PresenceChange(user_id=user_id, is_online=False)

    def mark_away(self, user_id: str) -> Optional[PresenceChange]:
        """Explicit away signal: the user is offline regardless of open tabs."""
        if self._connections.pop(user_id, None) is None:
            return None
        logger.info("presence.away", user_id=user_id)
        return PresenceChange(user_id=user_id, is_online=False)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._connections

    def connections(self, user_id: str) -> frozenset[str]:
        return frozenset(self._connections.get(user_id, ()))

    def online_users(self) -> list[str]:
        return list(self._connections)

    def __len__(self) -> int:
        return len(self._connections)
