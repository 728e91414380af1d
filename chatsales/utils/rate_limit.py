# chatsales/utils/rate_limit.py
"""
Rate limiting for the public endpoints (slowapi, keyed by client address).

The chat widget is unauthenticated, so message and start calls are capped
per IP; login is capped harder. RATE_LIMIT_ENABLED=false turns every limit
into a no-op (the limiter stays installed).
"""

from typing import Callable

from slowapi import Limiter
from slowapi.util import get_remote_address

from chatsales.config import settings

limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)


RATE_LIMITS = {
    "chat": settings.RATE_LIMIT_CHAT,     # one model call per message
    "session": "30/minute",               # start / save / end
    "login": "10/minute",
    "read": "200/minute",
}


def rate_limit(kind: str) -> Callable:
    """
    Usage:
        @router.post("/message")
        @rate_limit("chat")
        async def send_message(request: Request, ...):
            ...
    """
    return limiter.limit(RATE_LIMITS[kind])
