"""Chat API routes: send, mark seen, history and inboxes.

Learn: Routes translate HTTP to DeliveryDispatcher / ConversationStore
calls. The sender is always the authenticated user, never a body field.
Service errors carry their own status code (400/403/404/409), so every
handler translates them the same way.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from nearhelp.auth.dependencies import CurrentIdentity, get_current_user
from nearhelp.db.engine import get_db
from nearhelp.errors import (
    AuthorizationError,
    NearHelpError,
    NotFoundError,
    ValidationError,
)
from nearhelp.schemas.chat import (
    ConversationRead,
    InboxEntryRead,
    MarkSeenRequest,
    MessageRead,
    SeenAck,
    SendMessageRequest,
    SendMessageResponse,
)
from nearhelp.services.conversation_store import ConversationStore, InboxEntry
from nearhelp.services.delivery import DeliveryDispatcher, get_dispatcher

router = APIRouter()


def _store(db: AsyncSession = Depends(get_db)) -> ConversationStore:
    return ConversationStore(db)


def _inbox_row(entry: InboxEntry) -> InboxEntryRead:
    conversation = entry.conversation
    return InboxEntryRead(
        chat_id=conversation.id,
        post_id=conversation.post_id,
        buyer_id=conversation.buyer_id,
        seller_id=conversation.seller_id,
        last_message_at=conversation.last_message_at,
        unread_count=entry.unread_count,
    )


# ═══════════════════════════════════════════════════════════
# Messages
# ═══════════════════════════════════════════════════════════


@router.post("/chats/send", response_model=SendMessageResponse, status_code=201)
async def send_message(
    body: SendMessageRequest,
    identity: CurrentIdentity = Depends(get_current_user),
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    """Persist a message and deliver it. 201 once it is stored."""
    try:
        message = await dispatcher.send_message(
            post_id=body.post_id,
            seller_id=body.seller_id,
            buyer_id=body.buyer_id,
            sender_id=identity.user_id,
            text=body.text,
        )
    except NearHelpError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return SendMessageResponse(
        new_message=MessageRead.model_validate(message),
        last_message_at=message.created_at,
    )


@router.post("/chats/mark-seen", response_model=SeenAck)
async def mark_seen(
    body: MarkSeenRequest,
    identity: CurrentIdentity = Depends(get_current_user),
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    """Mark messages seen. Resubmitting seen ids is a no-op (updated=0)."""
    try:
        result = await dispatcher.mark_messages_seen(
            post_id=body.post_id,
            buyer_id=body.buyer_id,
            seller_id=body.seller_id,
            message_ids=body.message_ids,
            actor_id=identity.user_id,
        )
    except NearHelpError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return SeenAck(updated=result.updated, message_ids=result.message_ids)


# ═══════════════════════════════════════════════════════════
# History and inboxes
# ═══════════════════════════════════════════════════════════


@router.get("/chats", response_model=ConversationRead)
async def get_chat(
    post_id: Optional[str] = Query(None, alias="postId"),
    buyer_id: Optional[str] = Query(None, alias="buyerId"),
    identity: CurrentIdentity = Depends(get_current_user),
    store: ConversationStore = Depends(_store),
):
    """One thread with its messages in insertion order."""
    try:
        if not post_id or not buyer_id:
            raise ValidationError("postId and buyerId are required")
        conversation = await store.get_conversation(post_id, buyer_id)
        if conversation is None:
            raise NotFoundError(f"Chat for post {post_id} and buyer {buyer_id} not found")
        if identity.user_id not in (conversation.buyer_id, conversation.seller_id):
            raise AuthorizationError("Not a participant of this chat")
        messages = await store.history(conversation)
    except NearHelpError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    return ConversationRead(
        id=conversation.id,
        post_id=conversation.post_id,
        buyer_id=conversation.buyer_id,
        seller_id=conversation.seller_id,
        created_at=conversation.created_at,
        last_message_at=conversation.last_message_at,
        messages=[MessageRead.model_validate(m) for m in messages],
    )


@router.get("/chats/inbox/seller", response_model=list[InboxEntryRead])
async def seller_inbox(
    identity: CurrentIdentity = Depends(get_current_user),
    store: ConversationStore = Depends(_store),
):
    """Threads on the caller's own posts, newest activity first."""
    return [_inbox_row(e) for e in await store.list_for_seller(identity.user_id)]


@router.get("/chats/inbox/buyer", response_model=list[InboxEntryRead])
async def buyer_inbox(
    identity: CurrentIdentity = Depends(get_current_user),
    store: ConversationStore = Depends(_store),
):
    """Threads the caller started on other people's posts."""
    return [_inbox_row(e) for e in await store.list_for_buyer(identity.user_id)]
