"""
Security utilities for authentication.
Bearer JWTs issued by the platform identity service are validated locally.
"""
from datetime import timedelta
from typing import Any, Dict, Optional

import jwt
from fastapi import HTTPException, status

from pairchat.config import settings
from pairchat.utils.datetime_utils import utc_now


class SecurityException(HTTPException):
    """Custom exception for security-related errors."""
    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create JWT access token.

    Args:
        data: Payload data to encode (``sub`` is the user id, ``role`` optional)
        expires_delta: Optional expiration time delta

    Returns:
        Encoded JWT token
    """
    now = utc_now()
    to_encode = data.copy()
    to_encode.update({
        "iat": now,
        "exp": now + (expires_delta or timedelta(hours=settings.jwt_expiration_hours)),
    })
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate JWT token.

    Raises:
        SecurityException: If token is invalid or expired
    """
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise SecurityException("Token has expired")
    except jwt.InvalidTokenError as e:
        raise SecurityException(f"Invalid token: {str(e)}")


def user_from_token(token: str) -> Dict[str, Any]:
    """
    Build the current-user dict from a token.

    Returns:
        {"id", "role", "username"}

    Raises:
        SecurityException: Invalid token or no subject
    """
    payload = decode_token(token)
    user_id = payload.get("sub") or payload.get("id")
    if not user_id:
        raise SecurityException("Token has no subject")
    return {
        "id": str(user_id),
        "role": payload.get("role"),
        "username": payload.get("username"),
    }


def extract_token_from_header(authorization: str) -> str:
    """
    Extract token from an Authorization header.

    Raises:
        SecurityException: If the header is not ``Bearer <token>``
    """
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise SecurityException("Invalid authorization header format")
    return parts[1]
