"""WebSocket wire protocol: event names and payload schemas.

Learn: Every frame is a JSON object {"event": ..., "data": ..., "ack": ...}.
Client payloads are validated with the pydantic models below before any
handler runs. Server events are plain dicts with camelCase keys, the
shape existing web clients already consume.

Client → server                      Server → client
  joinChatRoom / leaveChatRoom         receiveMessage
  joinNotificationsRoom                messageSeenUpdate / messagesSeen
  userOnline / userAway                userStatusChange
  typing                               userTyping
  messageSeen                          newNotification / notificationCountUpdate
  checkOnlineStatus (ack)              chatNotification
  ping                                 pong / ack / error
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# ─── Client → server ─────────────────────────────────────

JOIN_CHAT_ROOM = "joinChatRoom"
LEAVE_CHAT_ROOM = "leaveChatRoom"
JOIN_NOTIFICATIONS_ROOM = "joinNotificationsRoom"
USER_ONLINE = "userOnline"
USER_AWAY = "userAway"
TYPING = "typing"
MESSAGE_SEEN = "messageSeen"
CHECK_ONLINE_STATUS = "checkOnlineStatus"
PING = "ping"

# ─── Server → client ─────────────────────────────────────

RECEIVE_MESSAGE = "receiveMessage"
MESSAGE_SEEN_UPDATE = "messageSeenUpdate"
MESSAGES_SEEN = "messagesSeen"
USER_STATUS_CHANGE = "userStatusChange"
USER_TYPING = "userTyping"
NEW_NOTIFICATION = "newNotification"
NOTIFICATION_COUNT_UPDATE = "notificationCountUpdate"
CHAT_NOTIFICATION = "chatNotification"
PONG = "pong"
ACK = "ack"
ERROR = "error"


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class Frame(BaseModel):
    """Envelope of every client frame."""

    event: str = Field(..., min_length=1)
    data: Any = None
    ack: Optional[Union[int, str]] = None


class ChatRoomRef(WireModel):
    """Identifies a thread from one participant's point of view."""

    post_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    other_user_id: str = Field(..., min_length=1)


class TypingPayload(ChatRoomRef):
    is_typing: bool = True


class MessageSeenPayload(WireModel):
    room: str = Field(..., min_length=1)
    message_id: Union[int, str]


class UserRef(WireModel):
    user_id: str = Field(..., min_length=1)


def parse_user_id(data: Any) -> UserRef:
    """userOnline / userAway / checkOnlineStatus carry a bare id or {userId}."""
    if isinstance(data, (str, int)):
        data = {"userId": str(data)}
    return UserRef.model_validate(data)


def error_frame(message: str, code: str = "error") -> dict:
    return {"event": ERROR, "data": {"message": message, "code": code}}


def ack_frame(ack: Union[int, str], data: Any) -> dict:
    return {"event": ACK, "ack": ack, "data": data}
