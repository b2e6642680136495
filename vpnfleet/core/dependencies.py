"""
Dependencies for FastAPI routes
"""

from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer, OAuth2PasswordBearer

from ..models.auth import Admin
from ..services.auth_service import AuthService
from .exceptions import AuthenticationError, AuthorizationError


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)
bearer_scheme = HTTPBearer(auto_error=False)
auth_service = AuthService()


async def get_current_admin(token: Optional[str] = Depends(oauth2_scheme)) -> Admin:
    """Operator authenticated by a bearer JWT"""
    if not token:
        raise AuthenticationError("Not authenticated")
    admin = await auth_service.verify_token(token)
    if not admin.is_active:
        raise AuthorizationError("Inactive operator")
    return admin


async def get_agent_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    x_node_token: Optional[str] = Header(default=None),
) -> Optional[str]:
    """Credential presented by a node agent or edge frontend"""
    if credentials and credentials.credentials:
        return credentials.credentials
    return x_node_token
