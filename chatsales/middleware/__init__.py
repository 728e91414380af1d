# chatsales/middleware/__init__.py
from chatsales.middleware.security import SecurityHeadersMiddleware

__all__ = ["SecurityHeadersMiddleware"]
