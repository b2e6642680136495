"""
Inbound templates API router
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..core.dependencies import get_current_admin
from ..models.auth import Admin
from ..models.common import OperationResult
from ..models.inbound import InboundTemplate, InboundTemplateCreate, InboundTemplateUpdate
from ..services.orchestration_service import OrchestrationService


router = APIRouter(prefix="/api/v1/templates", tags=["templates"])
orchestration = OrchestrationService()
template_service = orchestration.templates


@router.get("/", response_model=List[InboundTemplate])
async def list_templates(
    group_id: Optional[int] = Query(None),
    active_only: bool = Query(False),
    current_admin: Admin = Depends(get_current_admin),
):
    return await template_service.list_templates(group_id=group_id, active_only=active_only)


@router.post("/", response_model=InboundTemplate)
async def create_template(data: InboundTemplateCreate, current_admin: Admin = Depends(get_current_admin)):
    return await template_service.create_template(data)


@router.get("/{template_id}", response_model=InboundTemplate)
async def get_template(template_id: int, current_admin: Admin = Depends(get_current_admin)):
    return await template_service.get_template(template_id)


@router.put("/{template_id}", response_model=InboundTemplate)
async def update_template(
    template_id: int,
    data: InboundTemplateUpdate,
    current_admin: Admin = Depends(get_current_admin),
):
    """Update a template and re-render it on its target group"""
    return await orchestration.update_template(template_id, data)


@router.delete("/{template_id}", response_model=OperationResult)
async def delete_template(template_id: int, current_admin: Admin = Depends(get_current_admin)):
    await template_service.delete_template(template_id)
    return OperationResult.ok("deleted", template_id=template_id)
