"""
Pydantic schemas for messages.

MessageRecord is the raw stored view of a message shared by the store, the
realtime feed and the projector. DisplayMessage is what a particular viewer
is allowed to see.
"""
import enum
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pairchat.models.message import AttachmentKind, MessageVisibility
from pairchat.utils.datetime_utils import ensure_utc


# ============================================================================
# Attachments
# ============================================================================

class ImageAttachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["image"] = "image"
    url: str


class VideoAttachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["video"] = "video"
    url: str


class GifAttachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["gif"] = "gif"
    gif_id: str


Attachment = Annotated[
    Union[ImageAttachment, VideoAttachment, GifAttachment],
    Field(discriminator="kind"),
]


def attachment_columns(attachment: Optional[Attachment]) -> tuple:
    """Map an attachment to its (attachment_kind, attachment_ref) column pair."""
    if attachment is None:
        return AttachmentKind.NONE, None
    if isinstance(attachment, GifAttachment):
        return AttachmentKind.GIF, attachment.gif_id
    return AttachmentKind(attachment.kind), attachment.url


class MessagePayload(BaseModel):
    """What a sender supplies to append a message."""

    model_config = ConfigDict(frozen=True)

    text: Optional[str] = None
    attachment: Optional[Attachment] = None
    reply_to_id: Optional[str] = None


# ============================================================================
# Stored record
# ============================================================================

class MessageRecord(BaseModel):
    """Immutable snapshot of a stored message row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    conversation_id: str
    sender_id: str
    content: Optional[str] = None
    attachment_kind: AttachmentKind = AttachmentKind.NONE
    attachment_ref: Optional[str] = None
    reply_to_id: Optional[str] = None
    is_read: bool = False
    visibility: int = 0
    revision: int = 1
    edited_at: Optional[datetime] = None
    created_at: datetime

    @field_validator("created_at", "edited_at")
    @classmethod
    def normalize_timestamp(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def sort_key(self) -> tuple:
        return (self.created_at, self.id)

    @property
    def is_deleted(self) -> bool:
        return bool(self.visibility & MessageVisibility.TOMBSTONED)

    @property
    def deleted_for_sender(self) -> bool:
        return bool(self.visibility & MessageVisibility.HIDDEN_FOR_SENDER)

    @property
    def deleted_for_receiver(self) -> bool:
        return bool(self.visibility & MessageVisibility.HIDDEN_FOR_RECEIVER)

    @property
    def image_url(self) -> Optional[str]:
        return self.attachment_ref if self.attachment_kind == AttachmentKind.IMAGE else None

    @property
    def video_url(self) -> Optional[str]:
        return self.attachment_ref if self.attachment_kind == AttachmentKind.VIDEO else None

    @property
    def gif_id(self) -> Optional[str]:
        return self.attachment_ref if self.attachment_kind == AttachmentKind.GIF else None

    def hidden_for(self, viewer_id: str) -> bool:
        """Whether the viewer removed this message from their own view."""
        if self.sender_id == viewer_id:
            return self.deleted_for_sender
        return self.deleted_for_receiver


# ============================================================================
# Viewer projection
# ============================================================================

class ReplyPreview(BaseModel):
    """Short form of the message being replied to."""

    id: str
    sender_id: Optional[str] = None
    content: Optional[str] = None
    deleted: bool = False
    unavailable: bool = Field(
        default=False,
        description="Target was hidden by the viewer or removed"
    )


class DisplayMessage(BaseModel):
    """A message as rendered for one viewer."""

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    sender_id: str
    is_own: bool
    content: Optional[str] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    gif_id: Optional[str] = None
    reply_to_id: Optional[str] = None
    reply_to: Optional[ReplyPreview] = None
    is_read: bool
    deleted: bool = False
    edited: bool = False
    edited_at: Optional[datetime] = None
    created_at: datetime


# ============================================================================
# Request Schemas
# ============================================================================

class MessageCreate(BaseModel):
    """Schema for sending a text or gif message."""

    conversation_id: Optional[str] = Field(None, description="Existing conversation")
    recipient_id: Optional[str] = Field(None, description="Peer to message; creates the conversation on first contact")
    content: Optional[str] = Field(None, max_length=4000, description="Message text, may contain a gif shortcode")
    gif_id: Optional[str] = Field(None, description="Gif picked from the catalog")
    reply_to_id: Optional[str] = Field(None, description="ID of message being replied to")
    client_nonce: Optional[str] = Field(None, max_length=64, description="Client generated id to deduplicate retries")

    @model_validator(mode="after")
    def check_target(self) -> "MessageCreate":
        if bool(self.conversation_id) == bool(self.recipient_id):
            raise ValueError("Exactly one of conversation_id or recipient_id is required")
        if not (self.content and self.content.strip()) and not self.gif_id:
            raise ValueError("Message must have content or a gif")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "recipient_id": "user_42",
                "content": "see you there [gif:wave]",
                "reply_to_id": None,
            }
        }
    )


class MessageUpdate(BaseModel):
    """Schema for editing a message."""

    content: str = Field(..., min_length=1, max_length=4000, description="Updated message content")

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        """Ensure content is not empty or whitespace."""
        if len(v.strip()) == 0:
            raise ValueError("Content cannot be empty or whitespace only")
        return v


class DeleteScope(str, enum.Enum):
    """Who a deletion applies to."""
    ME = "me"
    EVERYONE = "everyone"


# ============================================================================
# Response Schemas
# ============================================================================

class MessageListResponse(BaseModel):
    messages: List[DisplayMessage]
    has_more: bool = False
    next_cursor: Optional[str] = Field(None, description="Pass as `before` to load older messages")


class MarkReadResponse(BaseModel):
    conversation_id: str
    updated: int
