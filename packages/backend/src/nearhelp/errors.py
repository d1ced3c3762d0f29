"""Error taxonomy shared by the chat, presence and notification services.

Validation, authorization and not-found errors abort an operation before
anything is persisted and are surfaced to the caller. Delivery failures
happen after persistence and are only ever logged.
"""


class NearHelpError(Exception):
    """Base class for errors raised by the core services."""

    status_code = 500
    code = "error"


class ValidationError(NearHelpError):
    """Missing or malformed input."""

    status_code = 400
    code = "validation_error"


class NotFoundError(NearHelpError):
    """Conversation, post or user does not exist."""

    status_code = 404
    code = "not_found"


class AuthorizationError(NearHelpError):
    """Actor is not a participant of the resource it touches."""

    status_code = 403
    code = "forbidden"


class CapacityError(NearHelpError):
    """Every helper slot of a post is already taken."""

    status_code = 409
    code = "capacity_reached"


class DeliveryFailure(NearHelpError):
    """Realtime broadcast or push delivery failed. Never fails a request."""

    code = "delivery_failed"


class SubscriptionExpired(DeliveryFailure):
    """The push service reported the subscription as gone (404/410).

    Carries the owning user so the caller can clear the stored
    subscription and switch notifications off for that user.
    """

    code = "subscription_expired"

    def __init__(self, user_id: str, status_code: int | None = None):
        super().__init__(
            f"Push subscription of user {user_id} is gone (status {status_code})"
        )
        self.user_id = user_id
        self.push_status = status_code
