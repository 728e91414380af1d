# chatsales/auth/dependencies.py
"""
FastAPI dependencies protecting the dashboard endpoints.
"""

from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from chatsales.auth.jwt_handler import ADMIN_ROLE, verify_token
from chatsales.auth.models import AdminUser

bearer_scheme = HTTPBearer(auto_error=False)


async def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AdminUser:
    """Require a valid admin Bearer token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not credentials:
        raise credentials_exception

    payload = verify_token(credentials.credentials)
    if not payload or payload.get("type") != "access" or not payload.get("sub"):
        raise credentials_exception

    if payload.get("role") != ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return AdminUser(username=payload["sub"], role=ADMIN_ROLE)
