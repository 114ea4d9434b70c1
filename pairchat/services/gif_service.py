"""
Gif catalog service and shortcode resolution.
"""
import logging
from typing import List, NamedTuple, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pairchat.core.exceptions import NotFound
from pairchat.models.gif import Gif
from pairchat.repositories.gif_repo import GifRepository
from pairchat.utils.shortcodes import excise, find_shortcodes, whole_shortcode

logger = logging.getLogger(__name__)


class ShortcodeResolution(NamedTuple):
    """A shortcode that matched a catalog entry."""
    gif_id: str
    remaining_text: str


class GifService:
    """Service for gif lookup, shortcode resolution and usage tracking."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.gif_repo = GifRepository(db)

    async def resolve(self, text: Optional[str], user_id: str) -> Optional[ShortcodeResolution]:
        """
        Resolve a gif shortcode in outgoing text.

        A message that is nothing but a known shortcode becomes a pure gif
        message. Otherwise the first embedded shortcode that exists in the
        catalog is cut out of the text. Unknown names leave the text alone.

        Args:
            text: Raw message text
            user_id: Sender, for usage tracking

        Returns:
            ShortcodeResolution, or None when nothing matched

        Example:
            ```python
            match = await gif_service.resolve("hi [gif:wave] there", user_id)
            # ShortcodeResolution(gif_id="...", remaining_text="hi there")
            ```
        """
        if not text:
            return None

        name = whole_shortcode(text)
        if name is not None:
            gif = await self.gif_repo.get_by_shortcode(name)
            if gif is not None:
                await self.record_usage(gif.id, user_id)
                return ShortcodeResolution(gif.id, "")

        for occurrence in find_shortcodes(text):
            gif = await self.gif_repo.get_by_shortcode(occurrence.name)
            if gif is not None:
                await self.record_usage(gif.id, user_id)
                return ShortcodeResolution(gif.id, excise(text, occurrence))

        return None

    async def record_usage(self, gif_id: str, user_id: str) -> None:
        """
        Count a gif use. Failures are logged and swallowed so a broken
        counter never blocks a send.
        """
        try:
            async with self.db.begin_nested():
                await self.gif_repo.record_usage(gif_id, user_id)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to record usage of gif {gif_id}: {e}")

    async def get_gif(self, gif_id: str) -> Gif:
        """
        Raises:
            NotFound: Unknown gif id
        """
        gif = await self.gif_repo.get(gif_id)
        if gif is None:
            raise NotFound("Gif not found")
        return gif

    async def use_gif(self, gif_id: str, user_id: str) -> Gif:
        """Validate a gif picked from the catalog and count the use."""
        gif = await self.get_gif(gif_id)
        await self.record_usage(gif.id, user_id)
        return gif

    async def list_popular(self, limit: int = 50, offset: int = 0) -> List[Gif]:
        return await self.gif_repo.list_popular(limit=limit, offset=offset)
