"""
Shared slowapi limiter.

Routes decorate with ``@limiter.limit(...)`` and the app registers the same
instance on ``app.state.limiter``.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from pairchat.config import settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    enabled=settings.rate_limit_enabled,
)

SEND_LIMIT = f"{settings.rate_limit_send_per_minute}/minute"
