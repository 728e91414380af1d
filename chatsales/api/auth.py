# chatsales/api/auth.py
"""
Admin dashboard login.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from chatsales.auth.dependencies import require_admin
from chatsales.auth.jwt_handler import login
from chatsales.auth.models import AdminUser, InvalidCredentials, LoginOk, LoginRequest, LoginResponse
from chatsales.utils.rate_limit import rate_limit

router = APIRouter(prefix="/api/auth", tags=["authentication"])


@router.post("/login", response_model=LoginResponse)
@rate_limit("login")
async def admin_login(request: Request, credentials: LoginRequest):
    result = login(credentials.username, credentials.password)

    if isinstance(result, InvalidCredentials):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=result.reason,
            headers={"WWW-Authenticate": "Bearer"},
        )

    assert isinstance(result, LoginOk)
    return LoginResponse(
        success=True,
        token=result.token,
        user=AdminUser(username=result.username, role=result.role),
    )


@router.get("/me", response_model=AdminUser)
async def current_admin(admin: AdminUser = Depends(require_admin)):
    return admin
