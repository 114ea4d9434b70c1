"""
PrivateMessage model.

A message carries optional text and at most one attachment (image, video
or gif), an optional reply reference, a read receipt and a visibility
bit set covering the three ways a message can disappear:

- TOMBSTONED: deleted for everyone, rendered as a placeholder
- HIDDEN_FOR_SENDER / HIDDEN_FOR_RECEIVER: deleted for one side only
"""
import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column

from pairchat.models.base import Base, UUIDMixin
from pairchat.utils.datetime_utils import utc_now


class AttachmentKind(str, enum.Enum):
    """Kind of media attached to a message."""
    NONE = "none"
    IMAGE = "image"
    VIDEO = "video"
    GIF = "gif"


class MessageVisibility(enum.IntFlag):
    """Visibility bits stored in PrivateMessage.visibility."""
    VISIBLE = 0
    TOMBSTONED = 1
    HIDDEN_FOR_SENDER = 2
    HIDDEN_FOR_RECEIVER = 4


class PrivateMessage(Base, UUIDMixin):
    """Single message inside a direct conversation."""

    __tablename__ = "private_messages"

    conversation_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        doc="Conversation this message belongs to"
    )

    sender_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        doc="User who sent the message"
    )

    content: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        doc="Message text (null for media-only messages)"
    )

    attachment_kind: Mapped[AttachmentKind] = mapped_column(
        SQLEnum(
            AttachmentKind,
            name="attachment_kind",
            native_enum=False,
            values_callable=lambda kinds: [k.value for k in kinds],
        ),
        default=AttachmentKind.NONE,
        nullable=False,
        doc="Which media kind attachment_ref points to"
    )

    attachment_ref: Mapped[str | None] = mapped_column(
        String(1000),
        nullable=True,
        doc="Image/video URL or gif id, depending on attachment_kind"
    )

    reply_to_id: Mapped[str | None] = mapped_column(
        String(255),
        ForeignKey("private_messages.id", ondelete="SET NULL"),
        nullable=True,
        doc="Message in the same conversation this one replies to"
    )

    is_read: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        doc="Whether the recipient has read the message"
    )

    visibility: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        doc="MessageVisibility bit set"
    )

    revision: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
        doc="Incremented on every mutation; newest copy wins when merging"
    )

    edited_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="Timestamp of the last edit"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
        doc="Server-assigned send time"
    )

    __table_args__ = (
        CheckConstraint(
            "(attachment_kind = 'none') = (attachment_ref IS NULL)",
            name="ck_private_message_attachment_ref",
        ),
    )

    @property
    def flags(self) -> MessageVisibility:
        return MessageVisibility(self.visibility or 0)

    @property
    def is_deleted(self) -> bool:
        return MessageVisibility.TOMBSTONED in self.flags

    @property
    def deleted_for_sender(self) -> bool:
        return MessageVisibility.HIDDEN_FOR_SENDER in self.flags

    @property
    def deleted_for_receiver(self) -> bool:
        return MessageVisibility.HIDDEN_FOR_RECEIVER in self.flags

    def __repr__(self) -> str:
        return f"<PrivateMessage(id={self.id}, conversation={self.conversation_id}, sender={self.sender_id})>"


Index("idx_private_messages_conversation_created", PrivateMessage.conversation_id, PrivateMessage.created_at, PrivateMessage.id)
Index("idx_private_messages_unread", PrivateMessage.conversation_id, PrivateMessage.is_read)
