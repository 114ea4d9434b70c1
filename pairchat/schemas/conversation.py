"""
Pydantic schemas for conversation requests and responses.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ConversationOpenRequest(BaseModel):
    """Open (look up or gate-check) the conversation with a peer."""

    peer_id: str = Field(..., min_length=1, description="User to talk to")


class ConversationOpenResponse(BaseModel):
    peer_id: str
    conversation_id: Optional[str] = Field(None, description="Null until the first message is sent")
    exists: bool


class PeerProfile(BaseModel):
    """Profile fields of the other participant shown in the inbox."""

    user_id: str
    username: str = "Unknown"
    avatar_url: Optional[str] = None
    last_seen: Optional[datetime] = None
    online_visible_until: Optional[datetime] = None


class LastMessagePreview(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    sender_id: str
    content: Optional[str] = None
    attachment_kind: str = "none"
    deleted: bool = False
    created_at: datetime


class ConversationSummary(BaseModel):
    """One row of a user's conversation list."""

    id: str
    peer: PeerProfile
    last_message: Optional[LastMessagePreview] = None
    unread_count: int = 0
    created_at: datetime
    updated_at: datetime


class HideAllResponse(BaseModel):
    hidden: int
