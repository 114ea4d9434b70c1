"""
Messaging error taxonomy.

Every error raised by the messaging core derives from MessagingError and
carries the HTTP status and machine-readable code used when it crosses the
API or Socket.IO boundary.
"""
from typing import Any, Dict, Optional


class MessagingError(Exception):
    """Base class for all messaging errors."""

    status_code: int = 500
    code: str = "messaging_error"
    default_detail: str = "Messaging operation failed"

    def __init__(self, detail: Optional[str] = None, *, status_code: Optional[int] = None):
        self.detail = detail or self.default_detail
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.detail)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail, "code": self.code}


class PermissionDenied(MessagingError):
    """Privacy policy or ownership check refused the operation."""

    status_code = 403
    code = "permission_denied"
    default_detail = "You are not allowed to perform this action"


class NotFound(MessagingError):
    """Referenced conversation, message or gif does not exist."""

    status_code = 404
    code = "not_found"
    default_detail = "Resource not found"


class Conflict(MessagingError):
    """Concurrent write lost a uniqueness race and the retry did not resolve it."""

    status_code = 409
    code = "conflict"
    default_detail = "Concurrent update conflict"


class InvalidMessage(MessagingError):
    """Payload failed validation (empty message, foreign reply target, ...)."""

    status_code = 400
    code = "invalid_message"
    default_detail = "Invalid message"


class SessionStateError(MessagingError):
    """Action is not allowed in the session's current state."""

    status_code = 409
    code = "invalid_state"
    default_detail = "Action not allowed in the current state"


class UploadFailed(MessagingError):
    """Media could not be stored; the message was not sent."""

    status_code = 502
    code = "upload_failed"
    default_detail = "Media upload failed"


class StoreWriteFailed(MessagingError):
    """The message store rejected or failed a write."""

    status_code = 500
    code = "store_write_failed"
    default_detail = "Could not save changes"


class SubscriptionLost(MessagingError):
    """The realtime channel dropped; the view must resubscribe and resync."""

    status_code = 503
    code = "subscription_lost"
    default_detail = "Realtime subscription lost"
