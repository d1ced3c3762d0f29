"""User directory: the slice of the user record the notification engine uses.

Learn: The push subscription is an opaque, JSON-serialized browser
subscription plus an enabled flag. The core reads it before a push and
clears it when the push service says it is gone; nothing else about the
user record is touched here.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nearhelp.db.models import User
from nearhelp.errors import NotFoundError


@dataclass(frozen=True)
class PushSubscription:
    """A user's stored push endpoint."""

    user_id: str
    token: str
    enabled: bool


class UserDirectory:
    """Lookups and notification-settings updates on users."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self.db.get(User, user_id)

    async def require_user(self, user_id: str) -> User:
        user = await self.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def display_name(self, user_id: str) -> str:
        result = await self.db.execute(select(User.username).where(User.id == user_id))
        return result.scalar_one_or_none() or "Someone"

    # ─── Push subscription ────────────────────────────────

    async def get_notification_subscription(
        self, user_id: str
    ) -> Optional[PushSubscription]:
        """The stored subscription, or None when the user never registered one."""
        result = await self.db.execute(
            select(User.notification_token, User.notification_enabled).where(
                User.id == user_id
            )
        )
        row = result.first()
        if row is None or not row.notification_token:
            return None
        return PushSubscription(
            user_id=user_id,
            token=row.notification_token,
            enabled=bool(row.notification_enabled),
        )

    async def set_notification_subscription(
        self, user_id: str, token: Optional[str], enabled: bool
    ) -> User:
        user = await self.require_user(user_id)
        user.notification_token = token
        user.notification_enabled = enabled
        await self.db.commit()
        return user

    async def clear_notification_subscription(self, user_id: str) -> None:
        """Drop an expired subscription and switch notifications off."""
        await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(notification_token=None, notification_enabled=False)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def notification_status(self, user_id: str) -> bool:
        user = await self.require_user(user_id)
        return bool(user.notification_enabled)
