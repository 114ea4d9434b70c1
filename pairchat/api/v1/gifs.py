"""
Gif catalog API routes.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from pairchat.core.database import get_db
from pairchat.dependencies import get_current_user
from pairchat.schemas.gif import GifListResponse, GifResponse
from pairchat.services.gif_service import GifService

router = APIRouter()


@router.get(
    "",
    response_model=GifListResponse,
    summary="List gifs",
    description="Catalog gifs, most used first. Shortcodes can be typed as `[gif:name]` or `.name.`."
)
async def list_gifs(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    service = GifService(db)
    gifs = await service.list_popular(limit=limit, offset=offset)
    return GifListResponse(gifs=[GifResponse.model_validate(gif) for gif in gifs])


@router.get(
    "/{gif_id}",
    response_model=GifResponse,
    summary="Get gif"
)
async def get_gif(
    gif_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    service = GifService(db)
    return GifResponse.model_validate(await service.get_gif(gif_id))
