"""
Relay topology and credential mode models
"""

from typing import Optional, List
from datetime import datetime
from enum import Enum
from pydantic import BaseModel


class RelayAuthMode(str, Enum):
    """How relays authenticate to their target"""
    LEGACY = "legacy"
    V1 = "v1"
    DUAL = "dual"

    @classmethod
    def from_setting(cls, value: Optional[str]) -> 'RelayAuthMode':
        raw = (value or "").strip().lower()
        if raw == "legacy":
            return cls.LEGACY
        if raw in ("v1", "hashed", "derived"):
            return cls.V1
        return cls.DUAL


class RelayAuthStatus(BaseModel):
    mode: RelayAuthMode
    version: int
    legacy_last_seen_at: Optional[datetime] = None
    legacy_last_seen_bytes: int = 0
    v1_ready: bool
    v1_blocked_until: Optional[datetime] = None


class RelayModeChange(BaseModel):
    mode: str


class RelayResolution(BaseModel):
    """Where and how a relay node forwards traffic"""
    target_id: int
    target_ip: str
    port: int
    method: str
    password: str
    mode: RelayAuthMode


class RelayUser(BaseModel):
    name: str
    password: str


class RelayUsers(BaseModel):
    target_id: int
    users: List[RelayUser]
