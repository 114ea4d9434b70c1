"""
Conversation repository for database operations.
Handles pair lookup, inbox listing and per-user visibility flags.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from pairchat.models.conversation import Conversation, ConversationVisibility, canonical_pair
from pairchat.repositories.base import BaseRepository


class ConversationRepository(BaseRepository[Conversation]):
    """Repository for conversation database operations."""

    def __init__(self, db: AsyncSession):
        """Initialize conversation repository."""
        super().__init__(Conversation, db)

    async def find_pair(self, user_a: str, user_b: str) -> Optional[Conversation]:
        """
        Find the conversation between two users, in either order.

        Args:
            user_a: One participant
            user_b: The other participant

        Returns:
            Conversation or None
        """
        low, high = canonical_pair(user_a, user_b)
        result = await self.db.execute(
            select(Conversation).where(
                Conversation.participant_a == low,
                Conversation.participant_b == high,
            )
        )
        return result.scalar_one_or_none()

    async def create_pair(self, user_a: str, user_b: str) -> Conversation:
        low, high = canonical_pair(user_a, user_b)
        return await self.create(participant_a=low, participant_b=high)

    async def list_visible_for_user(self, user_id: str) -> List[Conversation]:
        """
        Conversations the user takes part in and has not hidden.

        Returns:
            Conversations ordered by most recent activity
        """
        result = await self.db.execute(
            select(Conversation)
            .outerjoin(
                ConversationVisibility,
                (ConversationVisibility.conversation_id == Conversation.id)
                & (ConversationVisibility.user_id == user_id),
            )
            .where(
                or_(Conversation.participant_a == user_id, Conversation.participant_b == user_id),
                or_(
                    ConversationVisibility.is_deleted.is_(None),
                    ConversationVisibility.is_deleted.is_(False),
                ),
            )
            .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
        )
        return list(result.scalars().all())

    async def is_hidden(self, conversation_id: str, user_id: str) -> bool:
        flag = await self.db.get(ConversationVisibility, (conversation_id, user_id))
        return bool(flag and flag.is_deleted)

    async def set_hidden(self, conversation_id: str, user_id: str, hidden: bool) -> ConversationVisibility:
        """
        Create or update the user's hide flag for a conversation.

        Args:
            conversation_id: Conversation id
            user_id: User the flag belongs to
            hidden: New flag value

        Returns:
            The visibility row
        """
        flag = await self.db.get(ConversationVisibility, (conversation_id, user_id))
        if flag is None:
            flag = ConversationVisibility(conversation_id=conversation_id, user_id=user_id, is_deleted=hidden)
            self.db.add(flag)
        else:
            flag.is_deleted = hidden
        await self.db.flush()
        return flag

    async def touch(self, conversation: Conversation, when: datetime) -> None:
        """Bump updated_at after new activity."""
        conversation.updated_at = when
        await self.db.flush()
