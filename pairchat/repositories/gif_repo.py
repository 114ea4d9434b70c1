"""
Gif catalog repository.
"""
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pairchat.models.gif import Gif, GifUsage
from pairchat.repositories.base import BaseRepository


class GifRepository(BaseRepository[Gif]):
    """Repository for gif catalog lookups and usage tracking."""

    def __init__(self, db: AsyncSession):
        super().__init__(Gif, db)

    async def get_by_shortcode(self, shortcode: str) -> Optional[Gif]:
        result = await self.db.execute(
            select(Gif).where(Gif.shortcode == shortcode.lower())
        )
        return result.scalar_one_or_none()

    async def list_popular(self, limit: int = 50, offset: int = 0) -> List[Gif]:
        result = await self.db.execute(
            select(Gif)
            .order_by(Gif.usage_count.desc(), Gif.shortcode)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def record_usage(self, gif_id: str, user_id: str) -> None:
        """Increment the usage counter and log the use."""
        await self.db.execute(
            update(Gif)
            .where(Gif.id == gif_id)
            .values(usage_count=Gif.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.add(GifUsage(gif_id=gif_id, user_id=user_id))
        await self.db.flush()
