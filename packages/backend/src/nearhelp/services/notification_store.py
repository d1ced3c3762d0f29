"""Persisted notifications: what a user sees when they next open the app."""

from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from nearhelp.db.models import Notification
from nearhelp.errors import NotFoundError

KIND_CHAT = "chat"
KIND_NEARBY_POST = "nearby_post"
KIND_HELPER = "helper"


class NotificationStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        user_id: str,
        message: str,
        *,
        kind: str = KIND_CHAT,
        post_id: Optional[str] = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id, post_id=post_id, kind=kind, message=message
        )
        self.db.add(notification)
        await self.db.commit()
        return notification

    async def create_many(
        self,
        user_ids: list[str],
        message: str,
        *,
        kind: str,
        post_id: Optional[str] = None,
    ) -> list[Notification]:
        """One notification per user, committed together."""
        notifications = [
            Notification(user_id=uid, post_id=post_id, kind=kind, message=message)
            for uid in user_ids
        ]
        self.db.add_all(notifications)
        await self.db.commit()
        return notifications

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[Notification]:
        """Newest first."""
        result = await self.db.execute(
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_read(self, notification_id: int, user_id: str) -> Notification:
        result = await self.db.execute(
            select(Notification).where(
                Notification.id == notification_id,
                Notification.user_id == user_id,
            )
        )
        notification = result.scalars().first()
        if notification is None:
            raise NotFoundError("Notification not found")
        notification.is_read = True
        await self.db.commit()
        return notification

    async def clear(self, user_id: str) -> int:
        result = await self.db.execute(
            delete(Notification)
            .where(Notification.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount

    async def unread_count(self, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            )
        )
        return result.scalar_one()
