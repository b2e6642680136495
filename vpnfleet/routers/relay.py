"""
Relay credential mode API router
"""

from fastapi import APIRouter, Depends

from ..core.dependencies import get_current_admin
from ..models.auth import Admin
from ..models.common import OperationResult
from ..models.relay import RelayAuthStatus, RelayModeChange, RelayUsers
from ..services.orchestration_service import OrchestrationService


router = APIRouter(prefix="/api/v1/relay", tags=["relay"])
orchestration = OrchestrationService()


@router.get("/status", response_model=RelayAuthStatus)
async def relay_status(current_admin: Admin = Depends(get_current_admin)):
    """Current mode and whether switching to v1 is allowed"""
    return await orchestration.relay.status()


@router.put("/mode", response_model=OperationResult)
async def set_mode(change: RelayModeChange, current_admin: Admin = Depends(get_current_admin)):
    return await orchestration.set_relay_auth_mode(change.mode)


@router.get("/targets/{target_id}/users", response_model=RelayUsers)
async def relay_users(target_id: int, current_admin: Admin = Depends(get_current_admin)):
    await orchestration.nodes.get_node(target_id)
    users = await orchestration.relay.relay_users_for(target_id)
    return RelayUsers(target_id=target_id, users=users)
