"""
Conversation directory service.

Owns the one-conversation-per-pair rule, the first-contact gate hook and
the per-user "hide conversation" flags used by the inbox.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pairchat.core.exceptions import Conflict, InvalidMessage, NotFound, PermissionDenied, StoreWriteFailed
from pairchat.core.platform_client import PlatformAPIException, PlatformClient, platform_client
from pairchat.models.conversation import Conversation
from pairchat.models.message import PrivateMessage
from pairchat.repositories.conversation_repo import ConversationRepository
from pairchat.repositories.message_repo import MessageRepository
from pairchat.schemas.conversation import ConversationSummary, LastMessagePreview, PeerProfile
from pairchat.services.permission_service import PermissionService
from pairchat.utils.datetime_utils import ensure_utc

logger = logging.getLogger(__name__)


class ConversationService:
    """Service for conversation lookup, creation and per-user visibility."""

    def __init__(self, db: AsyncSession, platform: Optional[PlatformClient] = None):
        """Initialize conversation service."""
        self.db = db
        self.platform = platform or platform_client
        self.conversation_repo = ConversationRepository(db)
        self.message_repo = MessageRepository(db)
        self.permissions = PermissionService(self.platform)

    async def find_direct(self, user_a: str, user_b: str) -> Optional[Conversation]:
        """Existing conversation between two users, visible or not."""
        return await self.conversation_repo.find_pair(user_a, user_b)

    async def get_or_create(self, user_a: str, user_b: str) -> Conversation:
        """
        Return the conversation for an unordered pair, creating it if needed.

        The pair's hide flags are ignored: a hidden conversation is returned
        as-is. Two concurrent first contacts race on the pair's unique
        constraint; the loser rolls back and re-reads the winner's row.

        Args:
            user_a: One participant
            user_b: The other participant

        Returns:
            The pair's conversation

        Raises:
            InvalidMessage: Both ids are the same user
            Conflict: The insert failed and no row could be found afterwards
            StoreWriteFailed: Any other database failure
        """
        if user_a == user_b:
            raise InvalidMessage("Cannot start a conversation with yourself")

        existing = await self.conversation_repo.find_pair(user_a, user_b)
        if existing is not None:
            return existing

        try:
            conversation = await self.conversation_repo.create_pair(user_a, user_b)
            await self.db.commit()
            logger.info(f"Created conversation {conversation.id} for pair ({user_a}, {user_b})")
            return conversation
        except IntegrityError:
            await self.db.rollback()
            logger.info(f"Concurrent creation for pair ({user_a}, {user_b}); re-reading")
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to create conversation for ({user_a}, {user_b}): {e}")
            raise StoreWriteFailed("Could not create conversation")

        existing = await self.conversation_repo.find_pair(user_a, user_b)
        if existing is None:
            raise Conflict("Conversation could not be created, please retry")
        return existing

    async def open_direct(
        self,
        initiator_id: str,
        peer_id: str,
        initiator_role: Optional[str] = None,
    ) -> Optional[Conversation]:
        """
        Prepare a view of the conversation with a peer without creating it.

        An existing conversation is returned without consulting the privacy
        policy. For a first contact the gate runs, and None means the
        initiator may message the peer but nothing has been stored yet.

        Raises:
            PermissionDenied: First contact refused by the peer's policy
        """
        if initiator_id == peer_id:
            raise InvalidMessage("Cannot start a conversation with yourself")
        existing = await self.find_direct(initiator_id, peer_id)
        if existing is not None:
            return existing
        await self.permissions.ensure_can_start(initiator_id, peer_id, initiator_role)
        return None

    async def ensure_direct(
        self,
        initiator_id: str,
        peer_id: str,
        initiator_role: Optional[str] = None,
    ) -> Conversation:
        """Existing conversation, or gate-check and create it."""
        existing = await self.open_direct(initiator_id, peer_id, initiator_role)
        if existing is not None:
            return existing
        return await self.get_or_create(initiator_id, peer_id)

    async def get_for_participant(self, conversation_id: str, user_id: str) -> Conversation:
        """
        Load a conversation the user takes part in.

        Raises:
            NotFound: No such conversation
            PermissionDenied: The user is not a participant
        """
        conversation = await self.conversation_repo.get(conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        if not conversation.has_participant(user_id):
            raise PermissionDenied("Not a participant of this conversation")
        return conversation

    async def hide(self, conversation_id: str, user_id: str) -> None:
        """Remove a conversation from the user's list (the peer is unaffected)."""
        await self.get_for_participant(conversation_id, user_id)
        try:
            await self.conversation_repo.set_hidden(conversation_id, user_id, True)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to hide conversation {conversation_id} for {user_id}: {e}")
            raise StoreWriteFailed()

    async def unhide(self, conversation_id: str, user_id: str) -> None:
        """Put a hidden conversation back in the user's list. No-op when visible."""
        await self.get_for_participant(conversation_id, user_id)
        if not await self.conversation_repo.is_hidden(conversation_id, user_id):
            return
        try:
            await self.conversation_repo.set_hidden(conversation_id, user_id, False)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to unhide conversation {conversation_id} for {user_id}: {e}")
            raise StoreWriteFailed()

    async def hide_all(self, user_id: str) -> int:
        """
        Hide every visible conversation of a user.

        Returns:
            Number of conversations hidden
        """
        conversations = await self.conversation_repo.list_visible_for_user(user_id)
        try:
            for conversation in conversations:
                await self.conversation_repo.set_hidden(conversation.id, user_id, True)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to hide conversations of {user_id}: {e}")
            raise StoreWriteFailed()
        return len(conversations)

    async def _peer_profiles(self, peer_ids: List[str]) -> Dict[str, dict]:
        try:
            return await self.platform.get_profiles(peer_ids)
        except PlatformAPIException as e:
            logger.warning(f"Profile lookup failed, using placeholders: {e}")
            return {}

    @staticmethod
    def _preview(message: Optional[PrivateMessage]) -> Optional[LastMessagePreview]:
        if message is None:
            return None
        deleted = message.is_deleted
        return LastMessagePreview(
            id=message.id,
            sender_id=message.sender_id,
            content=None if deleted else message.content,
            attachment_kind="none" if deleted else message.attachment_kind.value,
            deleted=deleted,
            created_at=ensure_utc(message.created_at),
        )

    async def _summaries(self, conversations: List[Conversation], user_id: str) -> List[ConversationSummary]:
        ids = [c.id for c in conversations]
        unread = await self.message_repo.unread_counts(ids, user_id)
        latest = await self.message_repo.latest_visible(ids, user_id)
        peers = {c.id: c.other_participant(user_id) for c in conversations}
        profiles = await self._peer_profiles(list(peers.values()))

        summaries = []
        for conversation in conversations:
            peer_id = peers[conversation.id]
            profile = profiles.get(peer_id) or {}
            summaries.append(
                ConversationSummary(
                    id=conversation.id,
                    peer=PeerProfile(
                        user_id=peer_id,
                        username=profile.get("username") or "Unknown",
                        avatar_url=profile.get("avatar_url"),
                        last_seen=profile.get("last_seen"),
                        online_visible_until=profile.get("online_visible_until"),
                    ),
                    last_message=self._preview(latest.get(conversation.id)),
                    unread_count=unread.get(conversation.id, 0),
                    created_at=ensure_utc(conversation.created_at),
                    updated_at=ensure_utc(conversation.updated_at),
                )
            )
        return summaries

    async def list_for_user(self, user_id: str) -> List[ConversationSummary]:
        """
        Inbox for a user: visible conversations, most recent first, with
        peer profile, last visible message and unread count.
        """
        conversations = await self.conversation_repo.list_visible_for_user(user_id)
        return await self._summaries(conversations, user_id)

    async def get_summary(self, conversation_id: str, user_id: str) -> ConversationSummary:
        conversation = await self.get_for_participant(conversation_id, user_id)
        summaries = await self._summaries([conversation], user_id)
        return summaries[0]
