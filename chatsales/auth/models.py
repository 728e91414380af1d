# chatsales/auth/models.py
"""
Admin login types.
"""

from dataclasses import dataclass
from typing import Union

from pydantic import BaseModel


# ==================== Login Result ====================

@dataclass(frozen=True)
class LoginOk:
    token: str
    username: str
    role: str = "admin"


@dataclass(frozen=True)
class InvalidCredentials:
    reason: str = "Invalid credentials"


LoginResult = Union[LoginOk, InvalidCredentials]


# ==================== Request/Response Models ====================

class LoginRequest(BaseModel):
    username: str
    password: str


class AdminUser(BaseModel):
    """Identity carried by a verified admin token."""
    username: str
    role: str = "admin"


class LoginResponse(BaseModel):
    success: bool = True
    token: str
    user: AdminUser
