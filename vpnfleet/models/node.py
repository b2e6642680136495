"""
Node data models for the fleet controller
"""

from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum
from ipaddress import ip_address

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeStatus(str, Enum):
    """Node lifecycle status"""
    NEW = "new"
    INSTALLING = "installing"
    ACTIVE = "active"
    ERROR = "error"
    OFFLINE = "offline"


# Forward-only provisioning order; active/offline/error are driven by heartbeats
LIFECYCLE_ORDER = {
    NodeStatus.NEW.value: 0,
    NodeStatus.INSTALLING.value: 1,
    NodeStatus.ACTIVE.value: 2,
}


class Node(BaseModel):
    """Node as returned by the API (secrets excluded)"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    ip: str
    status: NodeStatus
    is_enabled: bool
    masking_domain: Optional[str] = None
    masking_domain_locked: bool = False
    reality_public_key: Optional[str] = None
    short_id: Optional[str] = None
    last_heartbeat: Optional[datetime] = None
    latency_ms: Optional[float] = None
    cpu_percent: Optional[float] = None
    ram_percent: Optional[float] = None
    speed_mbps: Optional[float] = None
    active_connections: int = 0
    uptime: int = 0
    total_ingress: int = 0
    total_egress: int = 0
    max_users: int = 0
    current_load: float = 0.0
    is_relay: bool = False
    relay_target_id: Optional[int] = None
    transport_overrides: Dict[str, Any] = Field(default_factory=dict)
    agent_version: Optional[str] = None
    config_version: int = 1
    pending_sni_scan: bool = False
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class NodeCreated(Node):
    """Creation response, the only place the join token is shown"""
    join_token: str


class NodeCreate(BaseModel):
    """Model for registering a node"""
    name: str = Field(..., min_length=1, max_length=100)
    ip: str
    ssh_host: Optional[str] = None
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_user: str = "root"
    ssh_password: Optional[str] = None
    ssh_key: Optional[str] = None
    masking_domain: Optional[str] = None
    is_relay: bool = False
    relay_target_id: Optional[int] = None
    transport_overrides: Dict[str, Any] = Field(default_factory=dict)
    group_ids: List[int] = Field(default_factory=list)

    @field_validator('ip')
    @classmethod
    def validate_ip(cls, v):
        ip_address(v)
        return v

    @field_validator('masking_domain')
    @classmethod
    def normalize_domain(cls, v):
        return v.strip().lower() if v else v


class NodeUpdate(BaseModel):
    """Model for updating a node"""
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    ssh_host: Optional[str] = None
    ssh_port: Optional[int] = Field(default=None, ge=1, le=65535)
    ssh_user: Optional[str] = None
    ssh_password: Optional[str] = None
    ssh_key: Optional[str] = None
    masking_domain: Optional[str] = None
    masking_domain_locked: Optional[bool] = None
    transport_overrides: Optional[Dict[str, Any]] = None

    @field_validator('masking_domain')
    @classmethod
    def normalize_domain(cls, v):
        return v.strip().lower() if v else v


class RelayAssignment(BaseModel):
    is_relay: bool
    relay_target_id: Optional[int] = None


class NodeGroup(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    slug: str
    description: Optional[str] = None
    node_ids: List[int] = Field(default_factory=list)


class NodeGroupCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    description: Optional[str] = None


class NodeCapacity(BaseModel):
    """Capacity figures exposed to the storefront layer"""
    node_id: int
    name: str
    status: NodeStatus
    is_enabled: bool
    max_users: int
    active_connections: int
    current_load: float
