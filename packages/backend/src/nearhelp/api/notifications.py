"""Notification API routes: persisted notifications and push settings.

Learn: Persisted notifications are what a user missed while offline
(chat messages, helper acceptance, nearby posts). The push subscription
is a browser PushSubscription serialized as JSON; the client registers
it here and the PushNotifier uses it when the user is not connected.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from nearhelp.auth.dependencies import CurrentIdentity, get_current_user
from nearhelp.db.engine import get_db
from nearhelp.errors import NearHelpError, ValidationError
from nearhelp.schemas.notification import (
    ClearResult,
    EnablePushRequest,
    NotificationRead,
    NotificationStatus,
)
from nearhelp.services.directory import UserDirectory
from nearhelp.services.notification_store import NotificationStore

router = APIRouter()


def _notifications(db: AsyncSession = Depends(get_db)) -> NotificationStore:
    return NotificationStore(db)


def _directory(db: AsyncSession = Depends(get_db)) -> UserDirectory:
    return UserDirectory(db)


@router.get("/notifications", response_model=list[NotificationRead])
async def list_notifications(
    identity: CurrentIdentity = Depends(get_current_user),
    store: NotificationStore = Depends(_notifications),
):
    """The caller's notifications, newest first."""
    return await store.list_for_user(identity.user_id)


@router.put("/notifications/{notification_id}/read", response_model=NotificationRead)
async def mark_notification_read(
    notification_id: int,
    identity: CurrentIdentity = Depends(get_current_user),
    store: NotificationStore = Depends(_notifications),
):
    try:
        return await store.mark_read(notification_id, identity.user_id)
    except NearHelpError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.delete("/notifications", response_model=ClearResult)
async def clear_notifications(
    identity: CurrentIdentity = Depends(get_current_user),
    store: NotificationStore = Depends(_notifications),
):
    deleted = await store.clear(identity.user_id)
    return ClearResult(deleted=deleted)


# ─── Push settings ───────────────────────────────────────


@router.post("/notifications/enable-push", response_model=NotificationStatus)
async def enable_push(
    body: EnablePushRequest,
    identity: CurrentIdentity = Depends(get_current_user),
    directory: UserDirectory = Depends(_directory),
):
    """Store (or switch off) the caller's push subscription."""
    try:
        if body.enabled and not body.token:
            raise ValidationError("A subscription token is required to enable push")
        user = await directory.set_notification_subscription(
            identity.user_id, body.token if body.enabled else None, body.enabled
        )
    except NearHelpError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return NotificationStatus(notification_enabled=user.notification_enabled)


@router.get("/notifications/status", response_model=NotificationStatus)
async def notification_status(
    identity: CurrentIdentity = Depends(get_current_user),
    directory: UserDirectory = Depends(_directory),
):
    try:
        enabled = await directory.notification_status(identity.user_id)
    except NearHelpError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return NotificationStatus(notification_enabled=enabled)
