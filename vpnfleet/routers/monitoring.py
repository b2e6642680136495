"""
Monitoring API router
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query, Request

from ..core.dependencies import get_current_admin
from ..models.auth import Admin
from ..services.monitoring_service import MonitoringService


router = APIRouter(prefix="/api/v1/monitoring", tags=["monitoring"])
monitoring_service = MonitoringService()


@router.get("/health")
async def health_check(request: Request):
    """Basic health check endpoint"""
    background = {
        name: task.running
        for name, task in getattr(request.app.state, "background_tasks", {}).items()
    }
    return await monitoring_service.health_check(background)


@router.get("/system")
async def get_system_metrics(current_admin: Admin = Depends(get_current_admin)) -> Dict[str, Any]:
    """Resource usage of the controller host"""
    return monitoring_service.get_system_metrics()


@router.get("/system/history")
async def get_metrics_history(
    limit: int = Query(100, ge=1, le=1000),
    current_admin: Admin = Depends(get_current_admin),
) -> List[Dict[str, Any]]:
    return monitoring_service.get_metrics_history(limit)


@router.get("/fleet")
async def get_fleet_summary(current_admin: Admin = Depends(get_current_admin)) -> Dict[str, Any]:
    """Node counts, load and traffic across the fleet"""
    return await monitoring_service.fleet_summary()
