"""
Node groups API router
"""

from typing import List

from fastapi import APIRouter, Depends

from ..core.dependencies import get_current_admin
from ..models.auth import Admin
from ..models.common import OperationResult
from ..models.inbound import InboundTemplate
from ..models.node import NodeGroup, NodeGroupCreate
from ..services.orchestration_service import OrchestrationService


router = APIRouter(prefix="/api/v1/groups", tags=["groups"])
orchestration = OrchestrationService()
group_service = orchestration.groups


@router.get("/", response_model=List[NodeGroup])
async def list_groups(current_admin: Admin = Depends(get_current_admin)):
    return await group_service.list_groups()


@router.post("/", response_model=NodeGroup)
async def create_group(data: NodeGroupCreate, current_admin: Admin = Depends(get_current_admin)):
    return await group_service.create_group(data)


@router.get("/{group_id}", response_model=NodeGroup)
async def get_group(group_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await group_service.get_group(group_id)


@router.delete("/{group_id}", response_model=OperationResult)
async def delete_group(group_id: int, current_admin: Admin = Depends(get_current_admin)):
    await group_service.delete_group(group_id)
    return OperationResult.ok("deleted", group_id=group_id)


@router.put("/{group_id}/members/{node_id}", response_model=OperationResult)
async def add_member(group_id: int, node_id: int, current_admin: Admin = Depends(get_current_admin)):
    """Add a node to the group and render the group's templates onto it"""
    group = await group_service.add_member(group_id, node_id)
    sync = await orchestration.group_members_changed(group_id, node_id)
    return OperationResult(
        success=sync.success,
        reason=sync.reason or "added",
        details={"group": group.model_dump(), **sync.details},
    )


@router.delete("/{group_id}/members/{node_id}", response_model=NodeGroup)
async def remove_member(group_id: int, node_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await group_service.remove_member(group_id, node_id)


@router.get("/{group_id}/templates", response_model=List[InboundTemplate])
async def group_templates(group_id: int, current_admin: Admin = Depends(get_current_admin)):
    await group_service.get_group(group_id)
    return await orchestration.templates.list_templates(group_id=group_id)


@router.post("/{group_id}/sync", response_model=OperationResult)
async def sync_group(group_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await orchestration.sync_group(group_id)


@router.post("/{group_id}/rotate", response_model=OperationResult)
async def rotate_group(group_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await orchestration.rotate_group(group_id)
