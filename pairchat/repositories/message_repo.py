"""
Message repository for database operations.
Handles queries and bulk updates for private messages.
"""
from typing import Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pairchat.models.message import MessageVisibility, PrivateMessage
from pairchat.repositories.base import BaseRepository


def _has_flag(flag: MessageVisibility):
    return PrivateMessage.visibility.op("&")(int(flag)) != 0


def visible_to(viewer_id: str):
    """SQL condition: message not hidden by the viewer on their own side."""
    return or_(
        and_(PrivateMessage.sender_id == viewer_id, ~_has_flag(MessageVisibility.HIDDEN_FOR_SENDER)),
        and_(PrivateMessage.sender_id != viewer_id, ~_has_flag(MessageVisibility.HIDDEN_FOR_RECEIVER)),
    )


class MessageRepository(BaseRepository[PrivateMessage]):
    """Repository for private message database operations."""

    def __init__(self, db: AsyncSession):
        """Initialize message repository."""
        super().__init__(PrivateMessage, db)

    async def list_for_conversation(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        before_id: Optional[str] = None,
    ) -> Tuple[List[PrivateMessage], bool]:
        """
        Get messages of a conversation in ascending (created_at, id) order.

        Without a limit the full history is returned. With a limit, the
        newest `limit` messages older than `before_id` are returned, still
        in ascending order.

        Args:
            conversation_id: Conversation id
            limit: Page size, or None for everything
            before_id: Message id cursor (exclusive)

        Returns:
            Tuple of (messages, has_more)
        """
        query = select(PrivateMessage).where(PrivateMessage.conversation_id == conversation_id)

        if before_id:
            cursor_msg = await self.get(before_id)
            if cursor_msg is not None:
                # Same tie-break as the sort so pages never overlap
                query = query.where(
                    or_(
                        PrivateMessage.created_at < cursor_msg.created_at,
                        and_(
                            PrivateMessage.created_at == cursor_msg.created_at,
                            PrivateMessage.id < cursor_msg.id,
                        ),
                    )
                )

        if limit is None:
            result = await self.db.execute(
                query.order_by(PrivateMessage.created_at, PrivateMessage.id)
            )
            return list(result.scalars().all()), False

        result = await self.db.execute(
            query.order_by(PrivateMessage.created_at.desc(), PrivateMessage.id.desc()).limit(limit + 1)
        )
        messages = list(result.scalars().all())
        has_more = len(messages) > limit
        messages = messages[:limit]
        messages.reverse()
        return messages, has_more

    async def reload(self, ids: List[str]) -> List[PrivateMessage]:
        """Re-read rows after a bulk UPDATE so identity-map copies are current."""
        if not ids:
            return []
        result = await self.db.execute(
            select(PrivateMessage)
            .where(PrivateMessage.id.in_(ids))
            .order_by(PrivateMessage.created_at, PrivateMessage.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def mark_read(self, conversation_id: str, reader_id: str) -> List[str]:
        """
        Mark the peer's unread messages as read.

        Returns:
            Ids of the messages that changed
        """
        result = await self.db.execute(
            select(PrivateMessage.id).where(
                PrivateMessage.conversation_id == conversation_id,
                PrivateMessage.sender_id != reader_id,
                PrivateMessage.is_read.is_(False),
            )
        )
        ids = list(result.scalars().all())
        if ids:
            await self.db.execute(
                update(PrivateMessage)
                .where(PrivateMessage.id.in_(ids))
                .values(is_read=True, revision=PrivateMessage.revision + 1)
                .execution_options(synchronize_session=False)
            )
            await self.db.flush()
        return ids

    async def hide_all_for(self, conversation_id: str, user_id: str) -> List[str]:
        """
        Set the user's side-hide flag on every message of a conversation.

        Returns:
            Ids of the messages that changed
        """
        changed: List[str] = []
        for is_sender, flag in (
            (True, MessageVisibility.HIDDEN_FOR_SENDER),
            (False, MessageVisibility.HIDDEN_FOR_RECEIVER),
        ):
            side = PrivateMessage.sender_id == user_id if is_sender else PrivateMessage.sender_id != user_id
            result = await self.db.execute(
                select(PrivateMessage.id).where(
                    PrivateMessage.conversation_id == conversation_id,
                    side,
                    ~_has_flag(flag),
                )
            )
            ids = list(result.scalars().all())
            if ids:
                await self.db.execute(
                    update(PrivateMessage)
                    .where(PrivateMessage.id.in_(ids))
                    .values(
                        visibility=PrivateMessage.visibility.op("|")(int(flag)),
                        revision=PrivateMessage.revision + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                changed.extend(ids)
        await self.db.flush()
        return changed

    async def detach_replies(self, message_id: str) -> List[str]:
        """
        Clear reply references pointing at a message about to be removed.

        Returns:
            Ids of the replies that were detached
        """
        result = await self.db.execute(
            select(PrivateMessage.id).where(PrivateMessage.reply_to_id == message_id)
        )
        ids = list(result.scalars().all())
        if ids:
            await self.db.execute(
                update(PrivateMessage)
                .where(PrivateMessage.id.in_(ids))
                .values(reply_to_id=None, revision=PrivateMessage.revision + 1)
                .execution_options(synchronize_session=False)
            )
            await self.db.flush()
        return ids

    async def unread_counts(self, conversation_ids: List[str], viewer_id: str) -> Dict[str, int]:
        """Count peer messages the viewer has not read, per conversation."""
        if not conversation_ids:
            return {}
        result = await self.db.execute(
            select(PrivateMessage.conversation_id, func.count(PrivateMessage.id))
            .where(
                PrivateMessage.conversation_id.in_(conversation_ids),
                PrivateMessage.sender_id != viewer_id,
                PrivateMessage.is_read.is_(False),
                ~_has_flag(MessageVisibility.TOMBSTONED),
                ~_has_flag(MessageVisibility.HIDDEN_FOR_RECEIVER),
            )
            .group_by(PrivateMessage.conversation_id)
        )
        return {conversation_id: count for conversation_id, count in result.all()}

    async def latest_visible(self, conversation_ids: List[str], viewer_id: str) -> Dict[str, PrivateMessage]:
        """Newest message per conversation that the viewer has not hidden."""
        if not conversation_ids:
            return {}
        ranked = (
            select(
                PrivateMessage.id.label("id"),
                func.row_number()
                .over(
                    partition_by=PrivateMessage.conversation_id,
                    order_by=(PrivateMessage.created_at.desc(), PrivateMessage.id.desc()),
                )
                .label("rn"),
            )
            .where(
                PrivateMessage.conversation_id.in_(conversation_ids),
                visible_to(viewer_id),
            )
            .subquery()
        )
        result = await self.db.execute(
            select(PrivateMessage)
            .join(ranked, ranked.c.id == PrivateMessage.id)
            .where(ranked.c.rn == 1)
        )
        return {message.conversation_id: message for message in result.scalars().all()}
