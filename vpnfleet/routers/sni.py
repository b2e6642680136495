"""
SNI pool API router
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..core.dependencies import get_current_admin
from ..models.auth import Admin
from ..models.common import OperationResult
from ..models.sni import (
    BlacklistRequest,
    MergeReport,
    ProbeResult,
    SniBlacklistEntry,
    SniEntry,
    SniEntryCreate,
    SniRotation,
)
from ..services.orchestration_service import OrchestrationService


router = APIRouter(prefix="/api/v1/sni", tags=["sni"])
orchestration = OrchestrationService()
sni_service = orchestration.sni


@router.get("/", response_model=List[SniEntry])
async def list_pool(
    active_only: bool = Query(False),
    current_admin: Admin = Depends(get_current_admin),
):
    """Pool entries ordered by tier and health"""
    return await sni_service.list_pool(active_only=active_only)


@router.post("/", response_model=SniEntry)
async def add_domain(data: SniEntryCreate, current_admin: Admin = Depends(get_current_admin)):
    return await sni_service.add_domain(data)


@router.post("/seed", response_model=OperationResult)
async def seed_defaults(current_admin: Admin = Depends(get_current_admin)):
    added = await sni_service.seed_defaults()
    return OperationResult.ok("seeded", added=added)


@router.post("/{domain}/enable", response_model=SniEntry)
async def enable_domain(domain: str, current_admin: Admin = Depends(get_current_admin)):
    return await sni_service.set_active(domain, True)


@router.post("/{domain}/disable", response_model=SniEntry)
async def disable_domain(domain: str, current_admin: Admin = Depends(get_current_admin)):
    return await sni_service.set_active(domain, False)


@router.post("/probe", response_model=OperationResult)
async def record_probe(probe: ProbeResult, current_admin: Admin = Depends(get_current_admin)):
    """Feed an external reachability check into the pool"""
    return await orchestration.record_probe(probe)


@router.post("/discovered/{node_id}", response_model=MergeReport)
async def merge_discovered(
    node_id: int,
    domains: List[str],
    current_admin: Admin = Depends(get_current_admin),
):
    await orchestration.nodes.get_node(node_id)
    return await sni_service.merge_discovered(node_id, domains)


@router.get("/blacklist", response_model=List[SniBlacklistEntry])
async def list_blacklist(current_admin: Admin = Depends(get_current_admin)):
    return await sni_service.list_blacklist()


@router.post("/blacklist", response_model=OperationResult)
async def blacklist_domain(request: BlacklistRequest, current_admin: Admin = Depends(get_current_admin)):
    """Block a domain and move every node using it elsewhere"""
    return await orchestration.blacklist_sni(request.domain, request.reason)


@router.delete("/blacklist/{domain}", response_model=OperationResult)
async def unblacklist_domain(domain: str, current_admin: Admin = Depends(get_current_admin)):
    removed = await sni_service.unblacklist(domain)
    return OperationResult(success=removed, reason="removed" if removed else "not blacklisted")


@router.get("/rotations", response_model=List[SniRotation])
async def rotation_logs(
    node_id: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    current_admin: Admin = Depends(get_current_admin),
):
    return await sni_service.rotation_logs(node_id=node_id, limit=limit)
