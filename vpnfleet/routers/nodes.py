"""
Nodes API router
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..core.dependencies import get_current_admin
from ..models.auth import Admin
from ..models.common import OperationResult
from ..models.inbound import Inbound
from ..models.node import (
    Node,
    NodeCapacity,
    NodeCreate,
    NodeCreated,
    NodeStatus,
    NodeUpdate,
    RelayAssignment,
)
from ..models.sni import SniEntry
from ..services.orchestration_service import OrchestrationService


router = APIRouter(prefix="/api/v1/nodes", tags=["nodes"])
orchestration = OrchestrationService()
node_service = orchestration.nodes


@router.get("/", response_model=List[Node])
async def get_nodes(
    status: Optional[NodeStatus] = Query(None, description="Filter by status"),
    enabled_only: bool = Query(False, description="Filter enabled nodes only"),
    current_admin: Admin = Depends(get_current_admin),
):
    """Get all nodes"""
    return await node_service.get_all_nodes(status=status, enabled_only=enabled_only)


@router.get("/capacity", response_model=List[NodeCapacity])
async def get_capacity(
    group_id: Optional[int] = Query(None),
    current_admin: Admin = Depends(get_current_admin),
):
    """Capacity figures per node"""
    return await node_service.capacity(group_id)


@router.post("/", response_model=NodeCreated)
async def create_node(
    node_data: NodeCreate,
    current_admin: Admin = Depends(get_current_admin),
):
    """Register a node; the join token is only returned here"""
    return await orchestration.create_node(node_data)


@router.get("/{node_id}", response_model=Node)
async def get_node(node_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await node_service.get_node(node_id)


@router.put("/{node_id}", response_model=Node)
async def update_node(
    node_id: int,
    update_data: NodeUpdate,
    current_admin: Admin = Depends(get_current_admin),
):
    return await node_service.update_node(node_id, update_data)


@router.delete("/{node_id}", response_model=OperationResult)
async def delete_node(node_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await orchestration.delete_node(node_id)


@router.post("/{node_id}/enable", response_model=OperationResult)
async def enable_node(node_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await orchestration.set_node_enabled(node_id, True)


@router.post("/{node_id}/disable", response_model=OperationResult)
async def disable_node(node_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await orchestration.set_node_enabled(node_id, False)


@router.post("/{node_id}/installing", response_model=OperationResult)
async def mark_installing(node_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await orchestration.mark_installing(node_id)


@router.put("/{node_id}/relay", response_model=Node)
async def set_relay(
    node_id: int,
    assignment: RelayAssignment,
    current_admin: Admin = Depends(get_current_admin),
):
    """Make the node a relay towards another node, or clear it"""
    return await node_service.set_relay(node_id, assignment)


@router.post("/{node_id}/sync", response_model=OperationResult)
async def sync_node(node_id: int, current_admin: Admin = Depends(get_current_admin)):
    """Render the node's group templates onto it"""
    return await orchestration.sync_node(node_id)


@router.post("/{node_id}/restart", response_model=OperationResult)
async def restart_node(node_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await orchestration.restart_node(node_id)


@router.post("/{node_id}/rotate", response_model=OperationResult)
async def rotate_node(node_id: int, current_admin: Admin = Depends(get_current_admin)):
    """Regenerate credentials for every templated inbound on the node"""
    return await orchestration.rotate_node(node_id)


@router.post("/{node_id}/sni/rotate", response_model=OperationResult)
async def rotate_node_sni(node_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await orchestration.rotate_node_sni(node_id)


@router.post("/{node_id}/sni/scan", response_model=OperationResult)
async def trigger_sni_scan(node_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await orchestration.trigger_sni_scan(node_id)


@router.get("/{node_id}/sni/pinned", response_model=List[SniEntry])
async def get_pinned(node_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await orchestration.sni.pinned(node_id)


@router.put("/{node_id}/sni/pinned/{domain}", response_model=SniEntry)
async def pin_domain(node_id: int, domain: str, current_admin: Admin = Depends(get_current_admin)):
    return await orchestration.sni.pin(node_id, domain)


@router.delete("/{node_id}/sni/pinned/{domain}", response_model=OperationResult)
async def unpin_domain(node_id: int, domain: str, current_admin: Admin = Depends(get_current_admin)):
    removed = await orchestration.sni.unpin(node_id, domain)
    return OperationResult(success=removed, reason="unpinned" if removed else "not pinned")


@router.get("/{node_id}/inbounds", response_model=List[Inbound])
async def get_node_inbounds(node_id: int, current_admin: Admin = Depends(get_current_admin)):
    await node_service.get_node(node_id)
    return await orchestration.templates.list_inbounds(node_id)
