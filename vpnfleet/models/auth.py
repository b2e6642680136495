"""
Authentication models for the fleet controller
"""

from typing import Optional
from pydantic import BaseModel


class Token(BaseModel):
    """Token response model"""
    access_token: str
    token_type: str = "bearer"
    expires_in: Optional[int] = None


class TokenData(BaseModel):
    """Token payload data"""
    username: Optional[str] = None


class Admin(BaseModel):
    """Authenticated operator"""
    username: str
    is_active: bool = True
