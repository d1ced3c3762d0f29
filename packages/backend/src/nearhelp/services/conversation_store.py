"""Conversation store: durable per-(post, buyer) message threads.

Learn: Buyer and seller write to the same thread through symmetric code
paths, so two appends can race. Every read-check-write on one
conversation runs inside a per-conversation lock (KeyedLock keyed by
(post_id, buyer_id)), and the seen transition is a conditional UPDATE
(WHERE seen = false), so it is monotonic even without the lock.

The lock is process-wide (module level) because each request builds its
own ConversationStore around its own session.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nearhelp.concurrency import KeyedLock
from nearhelp.db.models import ChatMessage, Conversation, utcnow
from nearhelp.errors import AuthorizationError, NotFoundError, ValidationError

CONVERSATION_LOCKS = KeyedLock()


@dataclass
class InboxEntry:
    """A conversation as listed in someone's inbox."""

    conversation: Conversation
    unread_count: int

    @property
    def last_message_at(self) -> datetime:
        return self.conversation.last_message_at


class ConversationStore:
    """Append, mark-seen and unread queries over conversations."""

    def __init__(self, db: AsyncSession, locks: Optional[KeyedLock] = None):
        self.db = db
        self.locks = locks or CONVERSATION_LOCKS

    # ─── Lookup ───────────────────────────────────────────

    async def get_conversation(
        self, post_id: str, buyer_id: str
    ) -> Optional[Conversation]:
        result = await self.db.execute(
            select(Conversation).where(
                Conversation.post_id == post_id,
                Conversation.buyer_id == buyer_id,
            )
        )
        return result.scalars().first()

    async def require_conversation(
        self, post_id: str, buyer_id: str, seller_id: str
    ) -> Conversation:
        """Conversation scoped by all three ids, or NotFoundError."""
        conversation = await self.get_conversation(post_id, buyer_id)
        if conversation is None or conversation.seller_id != seller_id:
            raise NotFoundError(
                f"Chat for post {post_id} and buyer {buyer_id} not found"
            )
        return conversation

    async def history(self, conversation: Conversation) -> list[ChatMessage]:
        """Messages of a conversation in insertion order."""
        result = await self.db.execute(
            select(ChatMessage)
            .where(ChatMessage.conversation_id == conversation.id)
            .order_by(ChatMessage.id)
            # mark_seen updates in bulk; refresh rows already in the session
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # ─── Append ───────────────────────────────────────────

    async def append_message(
        self,
        post_id: str,
        buyer_id: str,
        seller_id: str,
        sender_id: str,
        text: str,
    ) -> ChatMessage:
        """Append a message, creating the conversation on first contact.

        Learn: Runs under the conversation's lock and commits once, so a
        reader never sees the message without the matching
        last_message_at (or a conversation without its first message).
        """
        if not text or not text.strip():
            raise ValidationError("Message text must not be empty")

        async with self.locks.hold((post_id, buyer_id)):
            conversation = await self.get_conversation(post_id, buyer_id)
            if conversation is None:
                conversation = Conversation(
                    post_id=post_id, buyer_id=buyer_id, seller_id=seller_id
                )
                self.db.add(conversation)
                await self.db.flush()
            elif conversation.seller_id != seller_id:
                raise AuthorizationError(
                    f"User {seller_id} is not the seller of this chat"
                )

            now = utcnow()
            message = ChatMessage(
                conversation_id=conversation.id,
                sender_id=sender_id,
                text=text,
                created_at=now,
                seen=False,
                seen_at=None,
            )
            self.db.add(message)
            conversation.last_message_at = now
            await self.db.commit()

        return message

    # ─── Seen transition ──────────────────────────────────

    async def mark_seen(
        self,
        post_id: str,
        buyer_id: str,
        seller_id: str,
        message_ids: Iterable[int],
    ) -> int:
        """Mark messages seen. Returns how many actually flipped.

        Learn: Idempotent. Ids that are already seen are skipped by the
        WHERE clause, so resubmitting them updates 0 rows. Ids that do not
        belong to this conversation are rejected before anything changes.
        Message objects already loaded in this session are not refreshed;
        read them back through history().
        """
        ids = set(message_ids)
        if not ids:
            raise ValidationError("messageIds must not be empty")

        async with self.locks.hold((post_id, buyer_id)):
            conversation = await self.require_conversation(post_id, buyer_id, seller_id)

            owned = await self.db.execute(
                select(ChatMessage.id).where(
                    ChatMessage.conversation_id == conversation.id,
                    ChatMessage.id.in_(ids),
                )
            )
            foreign = ids - set(owned.scalars().all())
            if foreign:
                raise ValidationError(
                    f"Messages {sorted(foreign)} do not belong to this chat"
                )

            result = await self.db.execute(
                update(ChatMessage)
                .where(
                    ChatMessage.conversation_id == conversation.id,
                    ChatMessage.id.in_(ids),
                    ChatMessage.seen.is_(False),
                )
                .values(seen=True, seen_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()

        return result.rowcount

    # ─── Unread bookkeeping ───────────────────────────────

    async def unread_count(self, conversation: Conversation, viewer_id: str) -> int:
        """Messages in the conversation the viewer has not seen yet."""
        result = await self.db.execute(
            select(func.count(ChatMessage.id)).where(
                ChatMessage.conversation_id == conversation.id,
                ChatMessage.sender_id != viewer_id,
                ChatMessage.seen.is_(False),
            )
        )
        return result.scalar_one()

    async def total_unread(self, user_id: str) -> int:
        """Unread messages across every conversation the user takes part in."""
        result = await self.db.execute(
            select(func.count(ChatMessage.id))
            .join(Conversation, ChatMessage.conversation_id == Conversation.id)
            .where(
                or_(Conversation.buyer_id == user_id, Conversation.seller_id == user_id),
                ChatMessage.sender_id != user_id,
                ChatMessage.seen.is_(False),
            )
        )
        return result.scalar_one()

    # ─── Inbox views ──────────────────────────────────────

    async def list_for_seller(self, seller_id: str) -> list[InboxEntry]:
        return await self._inbox(Conversation.seller_id == seller_id, seller_id)

    async def list_for_buyer(self, buyer_id: str) -> list[InboxEntry]:
        return await self._inbox(Conversation.buyer_id == buyer_id, buyer_id)

    async def _inbox(self, criterion, viewer_id: str) -> list[InboxEntry]:
        unread = (
            select(func.count(ChatMessage.id))
            .where(
                ChatMessage.conversation_id == Conversation.id,
                ChatMessage.sender_id != viewer_id,
                ChatMessage.seen.is_(False),
            )
            .correlate(Conversation)
            .scalar_subquery()
        )
        result = await self.db.execute(
            select(Conversation, unread)
            .where(criterion)
            .order_by(Conversation.last_message_at.desc(), Conversation.id)
        )
        return [
            InboxEntry(conversation=conversation, unread_count=count)
            for conversation, count in result.all()
        ]
