"""
Pydantic schemas for the gif catalog.
"""
from typing import List

from pydantic import BaseModel, ConfigDict


class GifResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    shortcode: str
    title: str
    preview_url: str
    original_url: str
    usage_count: int


class GifListResponse(BaseModel):
    gifs: List[GifResponse]
