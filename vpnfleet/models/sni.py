"""
SNI pool models
"""

from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator


class SniEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    domain: str
    tier: int
    health_score: int
    is_active: bool
    is_premium: bool = False
    notes: Optional[str] = None
    discovered_by_node_id: Optional[int] = None
    last_check: Optional[datetime] = None


class SniEntryCreate(BaseModel):
    domain: str = Field(..., min_length=3, max_length=255)
    tier: int = Field(default=1, ge=0)
    is_premium: bool = False
    notes: Optional[str] = None

    @field_validator('domain')
    @classmethod
    def normalize(cls, v):
        return v.strip().lower().rstrip(".")


class SniBlacklistEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    domain: str
    reason: Optional[str] = None
    blocked_at: Optional[datetime] = None


class BlacklistRequest(BaseModel):
    domain: str
    reason: str = "manual"


class SniRotation(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    node_id: int
    old_sni: Optional[str] = None
    new_sni: str
    reason: Optional[str] = None
    rotated_at: datetime


class ProbeResult(BaseModel):
    """Result of an external reachability probe"""
    domain: str
    healthy: bool
    blacklist_reason: Optional[str] = None


class MergeReport(BaseModel):
    inserted: List[str] = Field(default_factory=list)
    updated: List[str] = Field(default_factory=list)
    filtered: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
