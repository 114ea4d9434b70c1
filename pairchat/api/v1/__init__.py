"""
API v1 router exports.
Provides API endpoint routers.
"""
from pairchat.api.v1 import admin, conversations, gifs, messages

__all__ = [
    "admin",
    "conversations",
    "gifs",
    "messages",
]
