# chatsales/auth/jwt_handler.py
"""
JWT and password handling for the admin dashboard login.

- HS256 tokens, 24h expiry by default (JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
- bcrypt password hashes via passlib
- login() returns a typed result instead of raising on bad credentials
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from jose import jwt, JWTError
from passlib.context import CryptContext

from chatsales.auth.models import InvalidCredentials, LoginOk, LoginResult
from chatsales.config import settings
from chatsales.utils.logger import logger

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ALGORITHM = "HS256"
ADMIN_ROLE = "admin"

# Tokens signed with a generated key stop verifying after a restart
JWT_SECRET_KEY = settings.JWT_SECRET_KEY or secrets.token_urlsafe(32)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Timing-safe bcrypt check; malformed hashes count as a mismatch."""
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None
) -> str:
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({
        "exp": expire,
        "iat": now,
        "type": "access"
    })
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode a token.

    Returns:
        The payload if the signature and expiry check out, None otherwise
    """
    try:
        return jwt.decode(token, JWT_SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


def _password_matches(password: str) -> bool:
    if settings.ADMIN_PASSWORD_HASH:
        return verify_password(password, settings.ADMIN_PASSWORD_HASH)
    if settings.ADMIN_PASSWORD:
        return secrets.compare_digest(password.encode(), settings.ADMIN_PASSWORD.encode())
    logger.warning("[Auth] Neither ADMIN_PASSWORD_HASH nor ADMIN_PASSWORD is set; admin login disabled")
    return False


def login(username: str, password: str) -> LoginResult:
    username = (username or "").strip()
    if not username or not password:
        return InvalidCredentials("Username and password are required")

    if not secrets.compare_digest(username.encode(), settings.ADMIN_USERNAME.encode()) or not _password_matches(password):
        logger.warning(f"[Auth] Failed admin login for '{username}'")
        return InvalidCredentials()

    token = create_access_token({"sub": username, "role": ADMIN_ROLE})
    logger.info(f"[Auth] Admin '{username}' logged in")
    return LoginOk(token=token, username=username, role=ADMIN_ROLE)
