# chatsales/auth/__init__.py
"""
Admin authentication: JWT bearer tokens issued by a single configured admin login.
"""

from chatsales.auth.jwt_handler import (
    create_access_token,
    verify_token,
    get_password_hash,
    verify_password,
    login,
)
from chatsales.auth.dependencies import require_admin
from chatsales.auth.models import (
    AdminUser,
    InvalidCredentials,
    LoginOk,
    LoginRequest,
    LoginResponse,
    LoginResult,
)

__all__ = [
    "create_access_token",
    "verify_token",
    "get_password_hash",
    "verify_password",
    "login",
    "require_admin",
    "AdminUser",
    "InvalidCredentials",
    "LoginOk",
    "LoginRequest",
    "LoginResponse",
    "LoginResult",
]
