"""Pydantic schemas for conversations and messages.

Learn: Field names are snake_case in Python and camelCase on the wire
(postId, senderId, seenAt ...), which is what web clients already send
and expect. populate_by_name lets tests and services use either.

Request fields are Optional so a missing id reaches the service and
fails as a ValidationError (400), like any other malformed input.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ─── Messages ────────────────────────────────────────────


class MessageRead(CamelModel):
    """A message as stored and as broadcast (receiveMessage)."""
    id: int
    sender_id: str
    text: str
    created_at: datetime
    seen: bool
    seen_at: Optional[datetime] = None


class SendMessageRequest(CamelModel):
    post_id: Optional[str] = None
    seller_id: Optional[str] = None
    buyer_id: Optional[str] = None
    text: Optional[str] = None


class SendMessageResponse(CamelModel):
    message: str = "Message sent successfully"
    new_message: MessageRead
    last_message_at: datetime


class MarkSeenRequest(CamelModel):
    post_id: Optional[str] = None
    buyer_id: Optional[str] = None
    seller_id: Optional[str] = None
    message_ids: list[int] = Field(default_factory=list)


class SeenAck(CamelModel):
    message: str = "Messages marked as seen"
    updated: int
    message_ids: list[int]


# ─── Conversations ───────────────────────────────────────


class ConversationRead(CamelModel):
    """Full thread with its messages in order."""
    id: str
    post_id: str
    buyer_id: str
    seller_id: str
    created_at: datetime
    last_message_at: datetime
    messages: list[MessageRead] = Field(default_factory=list)


class InboxEntryRead(CamelModel):
    chat_id: str
    post_id: str
    buyer_id: str
    seller_id: str
    last_message_at: datetime
    unread_count: int
