"""Web push notifier: out-of-band delivery to users who are not connected.

Learn: pywebpush is synchronous (it uses requests), so each send runs in
a worker thread and is bounded by asyncio.wait_for. The notifier never
retries and never raises for ordinary failures. The one failure it
does surface is SubscriptionExpired (HTTP 404/410 from the push
service): the caller owns the user record and must clear the stored
subscription.
"""

import asyncio
import json
from typing import Optional

import structlog
from pywebpush import WebPushException, webpush

from nearhelp.config import settings
from nearhelp.errors import SubscriptionExpired
from nearhelp.services.directory import PushSubscription

logger = structlog.get_logger()

GONE_STATUSES = (404, 410)


def build_payload(title: str, body: str, url: str, icon: str) -> dict:
    return {"title": title, "body": body, "icon": icon, "data": {"url": url}}


def truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)].rstrip() + "..."


class PushNotifier:
    """Sends VAPID-signed web push messages."""

    def __init__(
        self,
        vapid_private_key: str,
        vapid_email: str,
        icon: str = "",
        timeout: float = 10.0,
    ):
        self.vapid_private_key = vapid_private_key
        self.vapid_email = vapid_email
        self.icon = icon
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.vapid_private_key)

    async def send(
        self, subscription: PushSubscription, title: str, body: str, url: str
    ) -> bool:
        """Deliver one notification. Returns True if the push service accepted it.

        Raises SubscriptionExpired when the endpoint is gone; every other
        failure is logged and reported as False.
        """
        if not self.enabled:
            logger.info("push.disabled", user_id=subscription.user_id)
            return False

        try:
            subscription_info = json.loads(subscription.token)
        except ValueError:
            logger.warning("push.malformed_subscription", user_id=subscription.user_id)
            return False

        payload = json.dumps(build_payload(title, body, url, self.icon))
        try:
            await asyncio.wait_for(
                asyncio.to_thread(
                    webpush,
                    subscription_info=subscription_info,
                    data=payload,
                    vapid_private_key=self.vapid_private_key,
                    vapid_claims={"sub": f"mailto:{self.vapid_email}"},
                    timeout=self.timeout,
                ),
                timeout=self.timeout,
            )
        except WebPushException as e:
            status = e.response.status_code if e.response is not None else None
            if status in GONE_STATUSES:
                logger.warning(
                    "push.subscription_gone", user_id=subscription.user_id, status=status
                )
                raise SubscriptionExpired(subscription.user_id, status) from e
            logger.warning(
                "push.failed", user_id=subscription.user_id, status=status, error=str(e)
            )
            return False
        except asyncio.TimeoutError:
            logger.warning(
                "push.timeout", user_id=subscription.user_id, timeout=self.timeout
            )
            return False
        except Exception as e:
            logger.exception("push.error", user_id=subscription.user_id, error=str(e))
            return False

        logger.info("push.sent", user_id=subscription.user_id)
        return True


_notifier: Optional[PushNotifier] = None


def get_push_notifier() -> PushNotifier:
    """FastAPI dependency: notifier configured from settings."""
    global _notifier
    if _notifier is None:
        _notifier = PushNotifier(
            vapid_private_key=settings.vapid_private_key,
            vapid_email=settings.vapid_email,
            icon=settings.push_icon,
            timeout=settings.push_timeout_seconds,
        )
    return _notifier
