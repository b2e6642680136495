"""
Heartbeat wire models
"""

from typing import Optional, Dict, List
from enum import Enum
from pydantic import BaseModel, Field


class HeartbeatAction(str, Enum):
    NONE = "none"
    UPDATE_CONFIG = "update_config"
    SCAN_SNI = "scan_sni"


class HeartbeatReport(BaseModel):
    """Telemetry report sent by a node agent"""
    latency: Optional[float] = Field(default=None, ge=0)
    cpu_percent: Optional[float] = Field(default=None, ge=0, le=100)
    ram_percent: Optional[float] = Field(default=None, ge=0, le=100)
    speed_mbps: Optional[float] = Field(default=None, ge=0)
    active_connections: int = Field(default=0, ge=0)
    uptime: int = Field(default=0, ge=0)
    traffic_up: int = Field(default=0, ge=0)
    traffic_down: int = Field(default=0, ge=0)
    status: str = "ok"
    error: Optional[str] = None
    version: Optional[str] = None
    config_hash: Optional[str] = None
    discovered_sni: List[str] = Field(default_factory=list)
    tagged_usage: Dict[str, int] = Field(default_factory=dict)


class HeartbeatResponse(BaseModel):
    success: bool = True
    action: HeartbeatAction = HeartbeatAction.NONE
    config_version: int = 0
