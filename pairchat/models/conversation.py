"""
Conversation and ConversationVisibility models.

A conversation is the single thread between an unordered pair of users.
The pair is stored canonically (participant_a < participant_b) so a unique
constraint can guarantee one row per pair.
"""
from datetime import datetime
from typing import Tuple

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pairchat.models.base import Base, UUIDMixin, TimestampMixin
from pairchat.utils.datetime_utils import utc_now


def canonical_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    """Order two user ids the way they are stored on a conversation row."""
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)


class Conversation(Base, UUIDMixin, TimestampMixin):
    """
    Direct conversation between two users.

    Created lazily on the first send, never hard-deleted. updated_at is
    bumped on every new message and drives inbox ordering.
    """

    __tablename__ = "conversations"

    participant_a: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        doc="Lower of the two participant ids"
    )

    participant_b: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        doc="Higher of the two participant ids"
    )

    __table_args__ = (
        UniqueConstraint("participant_a", "participant_b", name="uq_conversation_pair"),
        CheckConstraint("participant_a < participant_b", name="ck_conversation_pair_order"),
    )

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.participant_a, self.participant_b)

    def other_participant(self, user_id: str) -> str:
        """
        Return the peer of the given participant.

        Raises:
            ValueError: If user_id is not part of this conversation
        """
        if user_id == self.participant_a:
            return self.participant_b
        if user_id == self.participant_b:
            return self.participant_a
        raise ValueError(f"{user_id} is not a participant of conversation {self.id}")

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id}, pair=({self.participant_a}, {self.participant_b}))>"


class ConversationVisibility(Base):
    """
    Per-user hide flag for a conversation ("delete conversation for me").

    Rows exist only once a user has hidden the conversation; a missing row
    means visible. Hiding never affects the other participant.
    """

    __tablename__ = "conversation_visibility"

    conversation_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        primary_key=True,
        doc="Conversation being hidden"
    )

    user_id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
        doc="User the flag applies to"
    )

    is_deleted: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        doc="Whether the conversation is hidden from this user's list"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
        doc="Last time the flag changed"
    )

    def __repr__(self) -> str:
        return f"<ConversationVisibility(conversation={self.conversation_id}, user={self.user_id}, hidden={self.is_deleted})>"


Index("idx_conversation_visibility_user", ConversationVisibility.user_id, ConversationVisibility.is_deleted)
Index("idx_conversations_participant_b", Conversation.participant_b)
Index("idx_conversations_updated_at", Conversation.updated_at)
