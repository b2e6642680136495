"""
Relational schema for the fleet controller (SQLAlchemy ORM)
"""

from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..core.clock import utcnow


class Base(DeclarativeBase):
    """Base class for all tables"""
    pass


class NodeRecord(Base):
    """A managed VPN server"""
    __tablename__ = "nodes"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    ip: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default="new")
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    # Masking domain (SNI) and key material
    masking_domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    masking_domain_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    reality_private_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reality_public_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    short_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    join_token: Mapped[str] = mapped_column(String(128), unique=True, index=True)

    # Telemetry snapshot, written only by heartbeats
    last_heartbeat: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    latency_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    cpu_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ram_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    speed_mbps: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    active_connections: Mapped[int] = mapped_column(Integer, default=0)
    uptime: Mapped[int] = mapped_column(BigInteger, default=0)
    total_ingress: Mapped[int] = mapped_column(BigInteger, default=0)
    total_egress: Mapped[int] = mapped_column(BigInteger, default=0)
    last_session_ingress: Mapped[int] = mapped_column(BigInteger, default=0)
    last_session_egress: Mapped[int] = mapped_column(BigInteger, default=0)

    # Capacity
    max_users: Mapped[int] = mapped_column(Integer, default=0)
    current_load: Mapped[float] = mapped_column(Float, default=0.0)

    # Relay topology
    is_relay: Mapped[bool] = mapped_column(Boolean, default=False)
    relay_target_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("nodes.id", ondelete="SET NULL"), nullable=True
    )

    transport_overrides: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    # Restart channel
    ssh_host: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ssh_port: Mapped[int] = mapped_column(Integer, default=22)
    ssh_user: Mapped[str] = mapped_column(String(64), default="root")
    ssh_password: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ssh_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Config-change signalling
    agent_version: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    config_version: Mapped[int] = mapped_column(Integer, default=1)
    applied_config_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    pending_sni_scan: Mapped[bool] = mapped_column(Boolean, default=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class NodeGroupRecord(Base):
    __tablename__ = "node_groups"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    slug: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class NodeGroupMemberRecord(Base):
    __tablename__ = "node_group_members"

    group_id: Mapped[int] = mapped_column(
        ForeignKey("node_groups.id", ondelete="CASCADE"), primary_key=True
    )
    node_id: Mapped[int] = mapped_column(
        ForeignKey("nodes.id", ondelete="CASCADE"), primary_key=True
    )


class InboundTemplateRecord(Base):
    """Parametrised skeleton rendered into per-node inbounds"""
    __tablename__ = "inbound_templates"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True)
    protocol: Mapped[str] = mapped_column(String(20))
    settings_template: Mapped[str] = mapped_column(Text, default="{}")
    stream_settings_template: Mapped[str] = mapped_column(Text, default="{}")
    target_group_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("node_groups.id", ondelete="SET NULL"), nullable=True
    )
    port_range_start: Mapped[int] = mapped_column(Integer, default=10000)
    port_range_end: Mapped[int] = mapped_column(Integer, default=60000)
    renew_interval_mins: Mapped[int] = mapped_column(Integer, default=0)
    rotate_port: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class InboundRecord(Base):
    """Listening endpoint rendered on a node"""
    __tablename__ = "inbounds"
    __table_args__ = (
        UniqueConstraint("node_id", "listen_port", name="uq_inbound_node_port"),
        UniqueConstraint("node_id", "tag", name="uq_inbound_node_tag"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    node_id: Mapped[int] = mapped_column(ForeignKey("nodes.id", ondelete="CASCADE"), index=True)
    template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("inbound_templates.id", ondelete="SET NULL"), nullable=True
    )
    tag: Mapped[str] = mapped_column(String(100))
    protocol: Mapped[str] = mapped_column(String(20))
    listen_ip: Mapped[str] = mapped_column(String(64), default="0.0.0.0")
    listen_port: Mapped[int] = mapped_column(Integer)
    settings: Mapped[str] = mapped_column(Text, default="{}")
    stream_settings: Mapped[str] = mapped_column(Text, default="{}")
    client_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    client_secret: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    remark: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    enable: Mapped[bool] = mapped_column(Boolean, default=True)
    renew_interval_mins: Mapped[int] = mapped_column(Integer, default=0)
    rotate_port: Mapped[bool] = mapped_column(Boolean, default=False)
    last_rotated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class PlanInboundRecord(Base):
    """Plan to inbound references owned by the storefront layer"""
    __tablename__ = "plan_inbounds"

    plan_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    inbound_id: Mapped[int] = mapped_column(
        ForeignKey("inbounds.id", ondelete="RESTRICT"), primary_key=True
    )


class SniPoolRecord(Base):
    __tablename__ = "sni_pool"

    id: Mapped[int] = mapped_column(primary_key=True)
    domain: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    tier: Mapped[int] = mapped_column(Integer, default=1)
    health_score: Mapped[int] = mapped_column(Integer, default=100)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_premium: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    discovered_by_node_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("nodes.id", ondelete="SET NULL"), nullable=True
    )
    last_check: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class NodePinnedSniRecord(Base):
    __tablename__ = "node_pinned_snis"

    node_id: Mapped[int] = mapped_column(
        ForeignKey("nodes.id", ondelete="CASCADE"), primary_key=True
    )
    sni_id: Mapped[int] = mapped_column(
        ForeignKey("sni_pool.id", ondelete="CASCADE"), primary_key=True
    )


class SniBlacklistRecord(Base):
    __tablename__ = "sni_blacklist"

    domain: Mapped[str] = mapped_column(String(255), primary_key=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    blocked_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class SniRotationLogRecord(Base):
    __tablename__ = "sni_rotation_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    node_id: Mapped[int] = mapped_column(Integer, index=True)
    old_sni: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    new_sni: Mapped[str] = mapped_column(String(255))
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    rotated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class RelayAuthSettingRecord(Base):
    """Single versioned row holding the fleet-wide relay credential mode"""
    __tablename__ = "relay_auth_settings"

    id: Mapped[int] = mapped_column(primary_key=True)
    mode: Mapped[str] = mapped_column(String(20), default="dual")
    version: Mapped[int] = mapped_column(Integer, default=1)
    legacy_last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    legacy_last_seen_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class EdgeFrontendRecord(Base):
    __tablename__ = "frontend_servers"

    id: Mapped[int] = mapped_column(primary_key=True)
    domain: Mapped[str] = mapped_column(String(255), unique=True)
    ip_address: Mapped[str] = mapped_column(String(64))
    region: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    auth_token_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default="active")
    last_heartbeat: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
