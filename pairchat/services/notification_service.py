"""
Notification dispatch for new messages.

Delivery is best effort: a failed push is logged and never fails the send
that triggered it.
"""
import logging
from typing import Optional

from pairchat.core.platform_client import PlatformAPIException, PlatformClient, platform_client
from pairchat.models.message import AttachmentKind
from pairchat.schemas.message import MessageRecord

logger = logging.getLogger(__name__)

SUMMARY_MAX_LENGTH = 120

_ATTACHMENT_SUMMARIES = {
    AttachmentKind.GIF: "GIF",
    AttachmentKind.IMAGE: "Photo",
    AttachmentKind.VIDEO: "Video",
}


def summarize(record: MessageRecord) -> str:
    """One-line summary of a message: its text, else the attachment kind."""
    if record.content and record.content.strip():
        text = record.content.strip()
        if len(text) > SUMMARY_MAX_LENGTH:
            text = text[:SUMMARY_MAX_LENGTH - 1] + "…"
        return text
    return _ATTACHMENT_SUMMARIES.get(record.attachment_kind, "New message")


class NotificationDispatcher:
    """Sends new-message notifications through the platform push endpoint."""

    def __init__(self, platform: Optional[PlatformClient] = None):
        self.platform = platform or platform_client

    async def notify(self, user_id: str, summary: str, data: Optional[dict] = None) -> bool:
        """
        Push a notification.

        Returns:
            True if the platform accepted it
        """
        try:
            await self.platform.send_notification(user_id, title="New message", body=summary, data=data)
        except PlatformAPIException as e:
            logger.warning(f"Notification to {user_id} failed: {e}")
            return False
        return True

    async def notify_new_message(self, record: MessageRecord, recipient_id: str) -> bool:
        return await self.notify(
            recipient_id,
            summarize(record),
            data={
                "conversation_id": record.conversation_id,
                "message_id": record.id,
                "sender_id": record.sender_id,
            },
        )
