"""
Inbound and template models
"""

import json
from typing import Optional, Dict, Any, List
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


SUPPORTED_PROTOCOLS = ("vless", "vmess", "trojan", "tuic", "shadowsocks", "hysteria2")


class Inbound(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    node_id: int
    template_id: Optional[int] = None
    tag: str
    protocol: str
    listen_ip: str = "0.0.0.0"
    listen_port: int
    settings: str
    stream_settings: str
    remark: Optional[str] = None
    enable: bool = True
    renew_interval_mins: int = 0
    rotate_port: bool = False
    last_rotated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


def _check_json_object(v: str) -> str:
    try:
        parsed = json.loads(v)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid JSON: {e}")
    if not isinstance(parsed, dict):
        raise ValueError("template must be a JSON object")
    return v


class InboundTemplate(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    protocol: str
    settings_template: str
    stream_settings_template: str
    target_group_id: Optional[int] = None
    port_range_start: int
    port_range_end: int
    renew_interval_mins: int = 0
    rotate_port: bool = False
    is_active: bool = True


class InboundTemplateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    protocol: str
    settings_template: str = "{}"
    stream_settings_template: str = "{}"
    target_group_id: Optional[int] = None
    port_range_start: int = Field(default=10000, ge=1, le=65535)
    port_range_end: int = Field(default=60000, ge=1, le=65535)
    renew_interval_mins: int = Field(default=0, ge=0)
    rotate_port: bool = False
    is_active: bool = True

    @field_validator('protocol')
    @classmethod
    def validate_protocol(cls, v):
        v = v.strip().lower()
        if v not in SUPPORTED_PROTOCOLS:
            raise ValueError(f"unsupported protocol: {v}")
        return v

    @field_validator('settings_template', 'stream_settings_template')
    @classmethod
    def validate_json(cls, v):
        return _check_json_object(v)

    @model_validator(mode='after')
    def validate_port_range(self):
        if self.port_range_start > self.port_range_end:
            raise ValueError("port_range_start must not exceed port_range_end")
        return self


class InboundTemplateUpdate(BaseModel):
    settings_template: Optional[str] = None
    stream_settings_template: Optional[str] = None
    target_group_id: Optional[int] = None
    port_range_start: Optional[int] = Field(default=None, ge=1, le=65535)
    port_range_end: Optional[int] = Field(default=None, ge=1, le=65535)
    renew_interval_mins: Optional[int] = Field(default=None, ge=0)
    rotate_port: Optional[bool] = None
    is_active: Optional[bool] = None

    @field_validator('settings_template', 'stream_settings_template')
    @classmethod
    def validate_json(cls, v):
        return _check_json_object(v) if v is not None else v


class PlanContext(BaseModel):
    """Optional plan labelling applied to rendered client entries"""
    plan_id: int
    name: str


class RenderedInbound(BaseModel):
    """Output of one template render"""
    tag: str
    protocol: str
    port: int
    client_id: str
    secret: str
    settings: Dict[str, Any]
    stream_settings: Dict[str, Any]
    masking_domain: Optional[str] = None


class RotationReport(BaseModel):
    checked: int = 0
    rotated: List[int] = Field(default_factory=list)
    failed: Dict[int, str] = Field(default_factory=dict)
