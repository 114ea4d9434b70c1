"""
SQLAlchemy models for the messaging service.

All models must be imported here for Alembic auto-generation to work.
"""

# Import Base first
from pairchat.models.base import Base, TimestampMixin, UUIDMixin

from pairchat.models.conversation import Conversation, ConversationVisibility, canonical_pair
from pairchat.models.message import PrivateMessage, AttachmentKind, MessageVisibility
from pairchat.models.gif import Gif, GifUsage

__all__ = [
    # Base classes
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    # Conversations
    "Conversation",
    "ConversationVisibility",
    "canonical_pair",
    # Messages
    "PrivateMessage",
    "AttachmentKind",
    "MessageVisibility",
    # Gif catalog
    "Gif",
    "GifUsage",
]
