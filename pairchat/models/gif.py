"""
GIF catalog models.

Gifs are addressed by a short name (``wave``) that users type inline as a
shortcode. GifUsage keeps one row per use for popularity ranking.
"""
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from pairchat.models.base import Base, UUIDMixin
from pairchat.utils.datetime_utils import utc_now


class Gif(Base, UUIDMixin):
    """Catalog entry for an animated image."""

    __tablename__ = "gifs"

    shortcode: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        doc="Lowercase name used in [gif:name] and .name. shortcodes"
    )

    title: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
        doc="Human readable title"
    )

    preview_url: Mapped[str] = mapped_column(
        String(1000),
        nullable=False,
        doc="Small preview rendition"
    )

    original_url: Mapped[str] = mapped_column(
        String(1000),
        nullable=False,
        doc="Full size rendition"
    )

    usage_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        doc="Number of times the gif was sent"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Gif(id={self.id}, shortcode={self.shortcode})>"


class GifUsage(Base, UUIDMixin):
    """One row per gif send."""

    __tablename__ = "gif_usage"

    gif_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("gifs.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False
    )


Index("idx_gifs_usage_count", Gif.usage_count)
