"""initial realtime core schema

Learn: users and posts carry only the columns the realtime core touches;
the rest of the marketplace schema is owned by the CRUD services.
helper_count backs the conditional capacity UPDATE on posts.

Revision ID: 3c1f0a7d9e21
Revises:
Create Date: 2026-10-18 09:12:44.102311
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3c1f0a7d9e21'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("username", sa.String(100), nullable=False),
        sa.Column("notification_token", sa.Text(), nullable=True),
        sa.Column("notification_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notification_radius_km", sa.Float(), nullable=False, server_default="10"),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "posts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("post_type", sa.String(30), nullable=False, server_default="HelpRequest"),
        sa.Column("people_count", sa.Integer(), nullable=True),
        sa.Column("helper_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("post_status", sa.String(20), nullable=False, server_default="Active"),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "post_helpers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("post_id", sa.String(64), sa.ForeignKey("posts.id"), nullable=False),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("post_id", "user_id", name="uq_post_helpers"),
    )

    # ─── Conversations ───────────────────────────────────
    op.create_table(
        "conversations",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("post_id", sa.String(64), sa.ForeignKey("posts.id"), nullable=False),
        sa.Column("buyer_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_message_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("post_id", "buyer_id", name="uq_conversations_post_buyer"),
    )
    op.create_index("ix_conversations_seller", "conversations", ["seller_id", "last_message_at"])
    op.create_index("ix_conversations_buyer", "conversations", ["buyer_id", "last_message_at"])

    op.create_table(
        "chat_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("conversation_id", sa.String(64), sa.ForeignKey("conversations.id"), nullable=False),
        sa.Column("sender_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("seen", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("seen_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_chat_messages_conversation_seen", "chat_messages", ["conversation_id", "seen"])

    # ─── Persisted notifications ─────────────────────────
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("post_id", sa.String(64), sa.ForeignKey("posts.id"), nullable=True),
        sa.Column("kind", sa.String(20), nullable=False, server_default="chat"),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_notifications_user_created", "notifications", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_notifications_user_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_chat_messages_conversation_seen", table_name="chat_messages")
    op.drop_table("chat_messages")
    op.drop_index("ix_conversations_buyer", table_name="conversations")
    op.drop_index("ix_conversations_seller", table_name="conversations")
    op.drop_table("conversations")
    op.drop_table("post_helpers")
    op.drop_table("posts")
    op.drop_table("users")
