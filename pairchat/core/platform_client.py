"""
HTTP client for the platform services this core depends on.

The platform owns identity, public profiles, the friendship/privacy graph
and push delivery. Only the narrow calls the messaging core needs are
wrapped here.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from pairchat.config import settings
from pairchat.core.cache import cache_profile, get_cached_profile

logger = logging.getLogger(__name__)


class PlatformAPIException(Exception):
    """Exception raised for platform API errors."""
    pass


class PlatformClient:
    """
    Client for the platform API.

    A fresh httpx.AsyncClient is opened per call; the client itself holds no
    connection state and is safe to share.
    """

    def __init__(self):
        self.base_url = settings.platform_api_url.rstrip("/")
        self.api_key = settings.platform_api_key
        self.timeout = settings.platform_api_timeout

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.get(
                    f"{self.base_url}{path}",
                    params=params,
                    headers=self._get_headers(),
                )
            except httpx.RequestError as e:
                raise PlatformAPIException(f"Platform API unavailable: {str(e)}")
        return response

    async def get_profiles(self, user_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """
        Batch profile lookup, cache first.

        Returns:
            Mapping of user id to profile; unknown ids are absent
        """
        profiles: Dict[str, Dict[str, Any]] = {}
        missing: List[str] = []
        for user_id in dict.fromkeys(user_ids):
            cached = await get_cached_profile(user_id)
            if cached:
                profiles[user_id] = cached
            else:
                missing.append(user_id)

        if missing:
            response = await self._get("/api/v1/profiles", params={"ids": ",".join(missing)})
            if not response.is_success:
                raise PlatformAPIException(f"Failed to fetch profiles: {response.text[:200]}")
            for profile in response.json():
                user_id = str(profile.get("id"))
                profiles[user_id] = profile
                await cache_profile(user_id, profile)

        return profiles

    async def get_messaging_permission(self, user_id: str) -> Optional[str]:
        """
        Read a user's message_permission privacy setting.

        Returns:
            "open", "friends" or "nobody"; None when the user has no privacy row
        """
        response = await self._get(f"/api/v1/privacy/{user_id}")
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise PlatformAPIException(f"Failed to fetch privacy settings: {response.text[:200]}")
        return response.json().get("message_permission")

    async def is_friend(self, user_a: str, user_b: str) -> bool:
        """Whether an accepted friendship exists in either direction."""
        response = await self._get("/api/v1/friendships/status", params={"user_a": user_a, "user_b": user_b})
        if not response.is_success:
            raise PlatformAPIException(f"Failed to fetch friendship: {response.text[:200]}")
        return response.json().get("status") == "accepted"

    async def is_exempt(self, user_id: str) -> bool:
        """Whether the platform forces messaging open for this user."""
        response = await self._get(f"/api/v1/privacy/{user_id}/messaging-exempt")
        if response.status_code == 404:
            return False
        if not response.is_success:
            raise PlatformAPIException(f"Failed to fetch exemption: {response.text[:200]}")
        return bool(response.json().get("exempt", False))

    async def send_notification(self, user_id: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> None:
        """
        Ask the platform to push a notification to a user.

        Raises:
            PlatformAPIException: If the push endpoint rejects the request
        """
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/api/v1/notifications",
                    headers=self._get_headers(),
                    json={"user_id": user_id, "title": title, "body": body, "data": data or {}},
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise PlatformAPIException(f"Notification rejected: {e.response.text[:200]}")
            except httpx.RequestError as e:
                raise PlatformAPIException(f"Platform API unavailable: {str(e)}")

    async def health_check(self) -> bool:
        try:
            response = await self._get("/health")
        except PlatformAPIException:
            return False
        return response.is_success


# Global client instance
platform_client = PlatformClient()
