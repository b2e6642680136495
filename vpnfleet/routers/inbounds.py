"""
Inbounds API router
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..core.dependencies import get_current_admin
from ..models.auth import Admin
from ..models.common import OperationResult
from ..models.inbound import Inbound
from ..services.orchestration_service import OrchestrationService


router = APIRouter(prefix="/api/v1/inbounds", tags=["inbounds"])
orchestration = OrchestrationService()


@router.get("/", response_model=List[Inbound])
async def list_inbounds(
    node_id: Optional[int] = Query(None),
    current_admin: Admin = Depends(get_current_admin),
):
    return await orchestration.templates.list_inbounds(node_id)


@router.get("/{inbound_id}", response_model=Inbound)
async def get_inbound(inbound_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await orchestration.templates.get_inbound(inbound_id)


@router.post("/{inbound_id}/rotate", response_model=OperationResult)
async def rotate_inbound(inbound_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await orchestration.rotate_inbound(inbound_id)


@router.post("/{inbound_id}/enable", response_model=Inbound)
async def enable_inbound(inbound_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await _set_enabled(inbound_id, True)


@router.post("/{inbound_id}/disable", response_model=Inbound)
async def disable_inbound(inbound_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await _set_enabled(inbound_id, False)


async def _set_enabled(inbound_id: int, enabled: bool) -> Inbound:
    inbound = await orchestration.templates.set_inbound_enabled(inbound_id, enabled)
    await orchestration.nodes.signal_config_change([inbound.node_id])
    return inbound


@router.delete("/{inbound_id}", response_model=OperationResult)
async def delete_inbound(inbound_id: int, current_admin: Admin = Depends(get_current_admin)):
    """Refused while a plan still sells the inbound"""
    return await orchestration.delete_inbound(inbound_id)
