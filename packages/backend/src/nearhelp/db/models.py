"""SQLAlchemy ORM models: single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table. Alembic migrations mirror these definitions.

Key concepts:
- users and posts belong to the surrounding marketplace; only the
  columns the realtime core reads or writes are mapped here
- one conversation per (post, buyer), enforced by a unique constraint
- chat message ids are auto-increment integers, so id order is
  insertion order within a conversation
- portable column types only (String ids, Float coordinates), so the
  same schema runs on PostgreSQL in production and SQLite in tests
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from nearhelp.config import settings


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


POST_ACTIVE = "Active"
POST_INACTIVE = "InActive"
POST_CLOSED = "Closed"


# ══════════════════════════════════════════════════════════════
# Marketplace collaborators: users and posts
# ══════════════════════════════════════════════════════════════


class User(Base):
    """A marketplace user, as seen by the notification engine.

    Learn: notification_token is the browser's push subscription,
    serialized as JSON. It is cleared (and notifications disabled)
    when the push service reports the subscription as gone.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    notification_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notification_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    notification_radius_km: Mapped[float] = mapped_column(
        Float, nullable=False, default=lambda: settings.default_notification_radius_km
    )
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )


class Post(Base):
    """A help request or service offering.

    Learn: helper_count mirrors the size of post_helpers so the capacity
    check can be a single conditional UPDATE
    (helper_count < people_count). people_count NULL means unlimited.
    """

    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False
    )  # post owner = seller in every conversation about this post
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    post_type: Mapped[str] = mapped_column(
        String(30), nullable=False, default="HelpRequest"
    )  # HelpRequest, ServiceOffering
    people_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    helper_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    post_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=POST_ACTIVE
    )  # Active, InActive, Closed
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    helpers: Mapped[list["PostHelper"]] = relationship(
        back_populates="post", order_by="PostHelper.id"
    )


class PostHelper(Base):
    """A user accepted to help with a post."""

    __tablename__ = "post_helpers"
    __table_args__ = (
        UniqueConstraint("post_id", "user_id", name="uq_post_helpers"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    post_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("posts.id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    post: Mapped["Post"] = relationship(back_populates="helpers")


# ══════════════════════════════════════════════════════════════
# Conversations
# ══════════════════════════════════════════════════════════════


class Conversation(Base):
    """Thread between a post's owner (seller) and one interested buyer.

    Learn: Identified by (post_id, buyer_id). seller_id is stored
    redundantly so participants can be authorized without loading the
    post. last_message_at always equals created_at of the newest message.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("post_id", "buyer_id", name="uq_conversations_post_buyer"),
        Index("ix_conversations_seller", "seller_id", "last_message_at"),
        Index("ix_conversations_buyer", "buyer_id", "last_message_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    post_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("posts.id"), nullable=False
    )
    buyer_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False
    )
    seller_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    last_message_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    messages: Mapped[list["ChatMessage"]] = relationship(
        back_populates="conversation", order_by="ChatMessage.id"
    )
    post: Mapped["Post"] = relationship()


class ChatMessage(Base):
    """One message in a conversation.

    Learn: Immutable except for the seen transition, which only ever goes
    false → true. seen_at stays NULL until that transition and is never
    rewritten afterwards.
    """

    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("ix_chat_messages_conversation_seen", "conversation_id", "seen"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.id"), nullable=False
    )
    sender_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    seen: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    seen_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")


# ══════════════════════════════════════════════════════════════
# Persisted notifications
# ══════════════════════════════════════════════════════════════


class Notification(Base):
    """A notification a user can fetch later, whether or not they were online.

    Kinds: 'chat' (message while offline), 'nearby_post' (proximity
    announcement), 'helper' (accepted as helper).
    """

    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False
    )
    post_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("posts.id"), nullable=True
    )
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="chat")
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
