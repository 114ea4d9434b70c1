"""
Dependency injection for FastAPI routes.
Provides reusable dependencies for authentication and service collaborators.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from pairchat.config import settings
from pairchat.core.platform_client import PlatformClient, platform_client
from pairchat.core.security import extract_token_from_header, user_from_token
from pairchat.services.notification_service import NotificationDispatcher
from pairchat.services.storage_service import StorageService, storage_service


async def get_current_user(authorization: Optional[str] = Header(None)) -> dict:
    """
    Dependency to get the current authenticated user.

    The bearer token is validated locally; no platform call is made.

    Returns:
        Dictionary with ``id``, ``role`` and ``username``

    Raises:
        HTTPException: 401 if token is missing or invalid

    Example:
        ```python
        @router.get("/protected")
        async def protected_route(current_user: dict = Depends(get_current_user)):
            return {"user": current_user["id"]}
        ```
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = extract_token_from_header(authorization)
    return user_from_token(token)


async def require_elevated_user(current_user: dict = Depends(get_current_user)) -> dict:
    """Allow only users whose role is in ELEVATED_ROLES."""
    if current_user.get("role") not in settings.elevated_roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return current_user


def get_platform_client() -> PlatformClient:
    return platform_client


def get_storage_service() -> StorageService:
    return storage_service


def get_notifier(platform: PlatformClient = Depends(get_platform_client)) -> NotificationDispatcher:
    return NotificationDispatcher(platform)
