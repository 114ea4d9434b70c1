"""
First-contact permission gate.

Runs only when no conversation exists yet between two users. The target's
message_permission privacy setting decides, unless the initiator holds an
elevated role or the target is on the exemption list. Any failure to read
the policy refuses the contact.
"""
import enum
import logging
from typing import Optional

from pairchat.config import settings
from pairchat.core.exceptions import PermissionDenied
from pairchat.core.platform_client import PlatformAPIException, PlatformClient, platform_client

logger = logging.getLogger(__name__)


class MessagingPermission(str, enum.Enum):
    """Who may start a conversation with a user."""
    OPEN = "open"
    FRIENDS_ONLY = "friends"
    NOBODY = "nobody"


class PermissionService:
    """Evaluates whether an initiator may open a first conversation with a target."""

    def __init__(self, platform: Optional[PlatformClient] = None):
        self.platform = platform or platform_client

    def is_elevated(self, role: Optional[str]) -> bool:
        return bool(role) and role in settings.elevated_roles

    async def is_exempt(self, target_id: str) -> bool:
        if target_id in settings.messaging_exempt_user_ids:
            return True
        return await self.platform.is_exempt(target_id)

    async def ensure_can_start(self, initiator_id: str, target_id: str, initiator_role: Optional[str] = None) -> None:
        """
        Enforce the first-contact policy.

        Args:
            initiator_id: User opening the conversation
            target_id: User being contacted
            initiator_role: Initiator's platform role, if any

        Raises:
            PermissionDenied: The target does not accept this contact, or the
                policy could not be read
        """
        if self.is_elevated(initiator_role):
            logger.info(f"First contact {initiator_id} -> {target_id} allowed by role {initiator_role}")
            return

        try:
            if await self.is_exempt(target_id):
                return

            raw = await self.platform.get_messaging_permission(target_id)
            try:
                permission = MessagingPermission(raw) if raw else MessagingPermission.OPEN
            except ValueError:
                logger.warning(f"Unknown message_permission {raw!r} for {target_id}; refusing")
                raise PermissionDenied("This user is not accepting messages")

            if permission is MessagingPermission.OPEN:
                return
            if permission is MessagingPermission.NOBODY:
                raise PermissionDenied("This user is not accepting messages")
            if await self.platform.is_friend(initiator_id, target_id):
                return
            raise PermissionDenied("This user only accepts messages from friends")

        except PlatformAPIException as e:
            logger.warning(f"Could not evaluate messaging permission for {target_id}: {e}")
            raise PermissionDenied("Could not verify this user's message settings")
