"""
Data models for the fleet controller
"""

from .node import Node, NodeStatus, NodeCreate, NodeUpdate, NodeGroup, NodeGroupCreate
from .inbound import Inbound, InboundTemplate, InboundTemplateCreate, RenderedInbound
from .sni import SniEntry, SniEntryCreate, ProbeResult
from .relay import RelayAuthMode, RelayAuthStatus
from .heartbeat import HeartbeatReport, HeartbeatResponse, HeartbeatAction
from .common import OperationResult
from .auth import Token, Admin

__all__ = [
    'Node', 'NodeStatus', 'NodeCreate', 'NodeUpdate', 'NodeGroup', 'NodeGroupCreate',
    'Inbound', 'InboundTemplate', 'InboundTemplateCreate', 'RenderedInbound',
    'SniEntry', 'SniEntryCreate', 'ProbeResult',
    'RelayAuthMode', 'RelayAuthStatus',
    'HeartbeatReport', 'HeartbeatResponse', 'HeartbeatAction',
    'OperationResult',
    'Token', 'Admin',
]
