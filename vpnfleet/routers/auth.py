"""
Authentication API router
"""

from datetime import timedelta

from fastapi import APIRouter, Depends
from fastapi.security import OAuth2PasswordRequestForm

from ..core.config import settings
from ..core.dependencies import auth_service, get_current_admin
from ..core.exceptions import AuthenticationError
from ..models.auth import Admin, Token


router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post("/login", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends()):
    """Login with username and password"""
    admin = await auth_service.authenticate_user(form_data.username, form_data.password)
    if not admin:
        raise AuthenticationError("Incorrect username or password")

    expires = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = await auth_service.create_access_token(
        data={"sub": admin.username},
        expires_delta=expires,
    )
    return Token(access_token=access_token, expires_in=int(expires.total_seconds()))


@router.get("/me", response_model=Admin)
async def me(current_admin: Admin = Depends(get_current_admin)):
    """Currently authenticated operator"""
    return current_admin
