"""Delivery dispatcher: orchestrates persistence, realtime fan-out and push.

Learn: Every operation has one durability boundary:

    validate → persist (awaited, commit) → broadcast → notify / push

Anything before the commit can fail the request. Anything after it is
best-effort: broadcast and push failures are logged, never raised, and
never roll the message back. The sender learns whether the message was
recorded; it never learns whether the live delivery reached anyone.

Push policy: the push fallback is decided by presence alone. A receiver
with any live connection gets socket events on their notification room
(and no push), whether or not that connection has the thread open.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Iterable, Optional

import structlog
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nearhelp.config import settings
from nearhelp.db.engine import async_session_factory, get_db, get_session_factory
from nearhelp.db.models import ChatMessage, Post
from nearhelp.errors import (
    AuthorizationError,
    SubscriptionExpired,
    ValidationError,
)
from nearhelp.realtime.hub import RealtimeHub, get_hub
from nearhelp.realtime.protocol import (
    CHAT_NOTIFICATION,
    MESSAGE_SEEN_UPDATE,
    MESSAGES_SEEN,
    NEW_NOTIFICATION,
    NOTIFICATION_COUNT_UPDATE,
    RECEIVE_MESSAGE,
)
from nearhelp.realtime.rooms import chat_room
from nearhelp.schemas.chat import MessageRead
from nearhelp.services.conversation_store import ConversationStore
from nearhelp.services.directory import PushSubscription, UserDirectory
from nearhelp.services.notification_store import (
    KIND_CHAT,
    KIND_HELPER,
    KIND_NEARBY_POST,
    NotificationStore,
)
from nearhelp.services.post_store import HelperToggle, PostStore
from nearhelp.services.proximity import users_near_post
from nearhelp.services.push import PushNotifier, get_push_notifier, truncate

logger = structlog.get_logger()


@dataclass
class SeenResult:
    """Acknowledgement of a mark-seen request."""

    updated: int
    message_ids: list[int]


def _require(**fields: Any) -> None:
    missing = [name for name, value in fields.items() if not value]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def message_payload(message: ChatMessage) -> dict:
    """receiveMessage payload. Freshly sent messages always go out unseen."""
    payload = MessageRead.model_validate(message).model_dump(mode="json", by_alias=True)
    payload["seen"] = False
    payload["seenAt"] = None
    return payload


class DeliveryDispatcher:
    """Send, mark-seen, helper toggle and post announcement for one request."""

    def __init__(
        self,
        db: AsyncSession,
        hub: RealtimeHub,
        push: Optional[PushNotifier] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.db = db
        self.hub = hub
        self.push = push or get_push_notifier()
        self.session_factory = session_factory or async_session_factory
        self.conversations = ConversationStore(db)
        self.posts = PostStore(db)
        self.users = UserDirectory(db)
        self.notifications = NotificationStore(db)

    # ─── Best-effort helpers ──────────────────────────────

    async def _best_effort(self, step: str, action: Awaitable[Any], **context: Any) -> None:
        """Await a delivery step; log instead of raising if it fails."""
        try:
            await action
        except Exception as e:
            logger.warning("delivery.failed", step=step, error=str(e), **context)

    def _schedule_push(
        self, subscription: PushSubscription, title: str, body: str, url: str
    ) -> None:
        """Fire-and-forget push; the request never waits for it."""
        self.hub.tasks.spawn(
            self._push(subscription, title, body, url),
            name=f"push:{subscription.user_id}",
        )

    async def _push(
        self, subscription: PushSubscription, title: str, body: str, url: str
    ) -> None:
        try:
            await self.push.send(subscription, title, body, url)
        except SubscriptionExpired as e:
            async with self.session_factory() as db:
                await UserDirectory(db).clear_notification_subscription(e.user_id)
            logger.info("push.subscription_cleared", user_id=e.user_id)

    async def _push_if_subscribed(
        self, user_id: str, title: str, body: str, url: str
    ) -> None:
        subscription = await self.users.get_notification_subscription(user_id)
        if subscription is None or not subscription.enabled:
            logger.debug("push.skipped_no_subscription", user_id=user_id)
            return
        self._schedule_push(subscription, title, body, url)

    async def _send_unread_count(self, user_id: str) -> None:
        unread = await self.conversations.total_unread(user_id)
        await self.hub.rooms.broadcast_to_user(
            user_id,
            NOTIFICATION_COUNT_UPDATE,
            {"userId": user_id, "unreadCount": unread},
        )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for scheduled pushes (shutdown, tests)."""
        await self.hub.tasks.drain(timeout=timeout)

    # ═══════════════════════════════════════════════════════
    # Send
    # ═══════════════════════════════════════════════════════

    async def send_message(
        self,
        post_id: str,
        seller_id: str,
        buyer_id: str,
        sender_id: str,
        text: str,
    ) -> ChatMessage:
        """Persist a message, then deliver it live and/or by push.

        Raises ValidationError, NotFoundError or AuthorizationError before
        anything is written. Once append_message returns, the call succeeds
        regardless of what happens to delivery.
        """
        _require(postId=post_id, sellerId=seller_id, buyerId=buyer_id, senderId=sender_id)
        if not text or not text.strip():
            raise ValidationError("Message text must not be empty")
        if buyer_id == seller_id:
            raise ValidationError("Buyer and seller must be different users")
        if sender_id not in (buyer_id, seller_id):
            raise AuthorizationError("Sender is not a participant of this chat")

        post = await self.posts.require_post(post_id)
        if post.user_id != seller_id:
            raise AuthorizationError(f"User {seller_id} does not own post {post_id}")
        await self.users.require_user(buyer_id)

        message = await self.conversations.append_message(
            post_id, buyer_id, seller_id, sender_id, text
        )
        receiver_id = seller_id if sender_id == buyer_id else buyer_id
        log = logger.bind(
            post_id=post_id, buyer_id=buyer_id, seller_id=seller_id, message_id=message.id
        )
        log.info("chat.message_sent", sender_id=sender_id)

        # Everything below is best-effort.
        await self._best_effort(
            "broadcast",
            self.hub.rooms.broadcast_to_room(
                chat_room(post_id, buyer_id, seller_id),
                RECEIVE_MESSAGE,
                message_payload(message),
            ),
            post_id=post_id,
            message_id=message.id,
        )

        if self.hub.presence.is_online(receiver_id):
            notify = self._notify_online_receiver(post, message, receiver_id)
        else:
            notify = self._notify_offline_receiver(post, message, buyer_id, receiver_id)
        await self._best_effort(
            "notify_receiver", notify, post_id=post_id, receiver_id=receiver_id
        )
        return message

    async def _notify_online_receiver(
        self, post: Post, message: ChatMessage, receiver_id: str
    ) -> None:
        """Receiver is connected: badge update on their notification room."""
        sender_name = await self.users.display_name(message.sender_id)
        await self.hub.rooms.broadcast_to_user(
            receiver_id,
            CHAT_NOTIFICATION,
            {
                "postId": post.id,
                "senderId": message.sender_id,
                "receiverId": receiver_id,
                "text": message.text,
                "postOwnerId": post.user_id,
                "postTitle": post.title,
                "senderName": sender_name,
            },
        )
        await self._send_unread_count(receiver_id)

    async def _notify_offline_receiver(
        self, post: Post, message: ChatMessage, buyer_id: str, receiver_id: str
    ) -> None:
        """Receiver is not connected: persist a notification and push."""
        sender_name = await self.users.display_name(message.sender_id)
        preview = truncate(message.text, settings.push_preview_length)
        await self.notifications.create(
            receiver_id,
            f"{sender_name}: {preview}",
            kind=KIND_CHAT,
            post_id=post.id,
        )
        await self._push_if_subscribed(
            receiver_id,
            title=f"New message about {post.title}",
            body=f"{sender_name}: {preview}",
            url=f"{settings.client_url}/chat/{post.id}/{buyer_id}",
        )

    # ═══════════════════════════════════════════════════════
    # Seen
    # ═══════════════════════════════════════════════════════

    async def mark_messages_seen(
        self,
        post_id: str,
        buyer_id: str,
        seller_id: str,
        message_ids: Iterable[int],
        actor_id: Optional[str] = None,
    ) -> SeenResult:
        """Mark messages seen and tell both participants.

        NotFoundError if the conversation does not exist for
        (post_id, buyer_id, seller_id); ValidationError on an empty id set.
        """
        _require(postId=post_id, buyerId=buyer_id, sellerId=seller_id)
        ids = sorted(set(message_ids))
        if not ids:
            raise ValidationError("messageIds must be a non-empty list")
        if actor_id is not None and actor_id not in (buyer_id, seller_id):
            raise AuthorizationError("Only chat participants can mark messages seen")

        updated = await self.conversations.mark_seen(post_id, buyer_id, seller_id, ids)
        logger.info(
            "chat.messages_seen", post_id=post_id, buyer_id=buyer_id, updated=updated
        )

        await self._best_effort(
            "seen_broadcast",
            self.hub.rooms.broadcast_to_room(
                chat_room(post_id, buyer_id, seller_id),
                MESSAGE_SEEN_UPDATE,
                {"messageIds": ids},
            ),
            post_id=post_id,
        )
        await self._best_effort(
            "seen_badges",
            self._refresh_badges(post_id, buyer_id, seller_id),
            post_id=post_id,
        )
        return SeenResult(updated=updated, message_ids=ids)

    async def _refresh_badges(self, post_id: str, buyer_id: str, seller_id: str) -> None:
        conversation = await self.conversations.get_conversation(post_id, buyer_id)
        payload = {
            "chatId": conversation.id if conversation else None,
            "postId": post_id,
            "buyerId": buyer_id,
            "sellerId": seller_id,
        }
        for user_id in (buyer_id, seller_id):
            await self.hub.rooms.broadcast_to_user(user_id, MESSAGES_SEEN, payload)
            await self._send_unread_count(user_id)

    # ═══════════════════════════════════════════════════════
    # Helpers (bounded capacity)
    # ═══════════════════════════════════════════════════════

    async def toggle_helper(
        self, post_id: str, buyer_id: str, actor_id: Optional[str] = None
    ) -> HelperToggle:
        """Flip buyer's helper membership. CapacityError when the post is full.

        Only the post owner may toggle when an actor is given.
        """
        _require(postId=post_id, buyerId=buyer_id)
        if actor_id is not None:
            post = await self.posts.require_post(post_id)
            if post.user_id != actor_id:
                raise AuthorizationError("Only the post owner can manage helpers")

        result = await self.posts.try_toggle_helper(post_id, buyer_id)
        if result.added:
            await self._best_effort(
                "helper_notification",
                self._notify_helper_added(post_id, buyer_id),
                post_id=post_id,
                buyer_id=buyer_id,
            )
        return result

    async def _notify_helper_added(self, post_id: str, buyer_id: str) -> None:
        post = await self.posts.require_post(post_id)
        text = f"You were accepted as a helper for {post.title}"
        await self.notifications.create(buyer_id, text, kind=KIND_HELPER, post_id=post_id)
        await self.hub.rooms.broadcast_to_user(
            buyer_id, NEW_NOTIFICATION, {"postId": post_id, "message": text}
        )

    # ═══════════════════════════════════════════════════════
    # Proximity announcements
    # ═══════════════════════════════════════════════════════

    async def announce_post(self, post_id: str, actor_id: Optional[str] = None) -> int:
        """Notify users whose notification radius covers a post.

        Each nearby user gets a persisted notification; connected users also
        get newNotification, others a push if subscribed. Returns how many
        users were notified.
        """
        _require(postId=post_id)
        post = await self.posts.require_post(post_id)
        if actor_id is not None and post.user_id != actor_id:
            raise AuthorizationError("Only the post owner can announce a post")
        if post.latitude is None or post.longitude is None:
            raise ValidationError(f"Post {post_id} has no location")

        nearby = await users_near_post(self.db, post)
        if not nearby:
            return 0

        text = f"New post near you: {post.title}"
        user_ids = [user.id for user in nearby]
        await self.notifications.create_many(
            user_ids, text, kind=KIND_NEARBY_POST, post_id=post.id
        )
        logger.info("posts.announced", post_id=post.id, notified=len(user_ids))

        url = f"{settings.client_url}/posts/{post.id}"
        for user_id in user_ids:
            if self.hub.presence.is_online(user_id):
                step = self.hub.rooms.broadcast_to_user(
                    user_id, NEW_NOTIFICATION, {"postId": post.id, "message": text}
                )
            else:
                step = self._push_if_subscribed(user_id, "Someone nearby needs help", text, url)
            await self._best_effort("announce", step, post_id=post.id, user_id=user_id)
        return len(user_ids)


def get_dispatcher(
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
    push: PushNotifier = Depends(get_push_notifier),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> DeliveryDispatcher:
    """FastAPI dependency: a dispatcher bound to the request's session."""
    return DeliveryDispatcher(db, hub, push=push, session_factory=session_factory)
