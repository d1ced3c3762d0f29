"""Pydantic schemas for persisted notifications and push settings."""

from datetime import datetime
from typing import Optional

from nearhelp.schemas.chat import CamelModel


class NotificationRead(CamelModel):
    id: int
    user_id: str
    post_id: Optional[str] = None
    kind: str
    message: str
    is_read: bool
    created_at: datetime


class EnablePushRequest(CamelModel):
    """Browser push subscription (JSON string) and whether to use it."""
    token: Optional[str] = None
    enabled: bool = False


class NotificationStatus(CamelModel):
    notification_enabled: bool


class ClearResult(CamelModel):
    success: bool = True
    deleted: int
