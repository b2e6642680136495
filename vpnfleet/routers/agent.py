"""
Agent-facing API: heartbeats and configuration pulls
"""

from typing import Optional

from fastapi import APIRouter, Depends

from ..core.database import database
from ..core.dependencies import get_agent_token
from ..core.exceptions import AuthenticationError
from ..models.heartbeat import HeartbeatReport, HeartbeatResponse
from ..services.heartbeat_service import HeartbeatService
from ..services.node_config_service import NodeConfigDocument, NodeConfigService
from ..services.node_service import NodeService


router = APIRouter(prefix="/api/v1/agent", tags=["agent"])
config_service = NodeConfigService()
heartbeat_service = HeartbeatService(config_builder=config_service)
node_service = NodeService()


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(
    report: HeartbeatReport,
    token: Optional[str] = Depends(get_agent_token),
):
    """Telemetry push from a node agent"""
    return await heartbeat_service.ingest(token, report)


@router.get("/config", response_model=NodeConfigDocument)
async def get_config(token: Optional[str] = Depends(get_agent_token)):
    """Effective configuration for the calling node"""
    async with database.session() as session:
        node = await node_service.get_by_token(session, token)
        if node is None:
            raise AuthenticationError("Unknown node credential")
        node_id = node.id
    return await config_service.build(node_id)


@router.post("/frontend-heartbeat", response_model=HeartbeatResponse)
async def frontend_heartbeat(token: Optional[str] = Depends(get_agent_token)):
    """Liveness push from an edge frontend"""
    return await heartbeat_service.ingest_frontend(token)
