"""
Monitoring service for the fleet controller
Controller host metrics and fleet-wide health summaries
"""

from typing import Any, Dict, List, Optional

import psutil
from sqlalchemy import func, select

from .. import __version__
from ..core.clock import Clock, system_clock
from ..core.database import Database, database
from ..core.logging import get_logger
from ..models.node import NodeStatus
from ..models.orm import EdgeFrontendRecord, InboundRecord, NodeRecord, SniPoolRecord


logger = get_logger(__name__)


class MonitoringService:
    """Service for controller and fleet metrics"""

    def __init__(self, db: Optional[Database] = None, clock: Clock = system_clock):
        self.db = db or database
        self.clock = clock
        self._metrics_history: List[Dict[str, Any]] = []
        self._max_history = 1000

    async def health_check(self, background: Optional[Dict[str, bool]] = None) -> Dict[str, Any]:
        """Basic health check"""
        database_ok = True
        try:
            async with self.db.session() as session:
                await session.execute(select(1))
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            database_ok = False
        return {
            "status": "healthy" if database_ok else "degraded",
            "timestamp": self.clock.now().isoformat(),
            "service": "vpnfleet-controller",
            "version": __version__,
            "database": "connected" if database_ok else "unavailable",
            "background_tasks": background or {},
        }

    def get_system_metrics(self) -> Dict[str, Any]:
        """Resource usage of the controller host"""
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage("/")
        net = psutil.net_io_counters()
        metrics = {
            "timestamp": self.clock.now().isoformat(),
            "cpu": {"percent": psutil.cpu_percent(interval=None), "count": psutil.cpu_count()},
            "memory": {
                "total": memory.total,
                "available": memory.available,
                "percent": memory.percent,
                "used": memory.used,
            },
            "disk": {"total": disk.total, "used": disk.used, "free": disk.free, "percent": disk.percent},
            "network": {
                "bytes_sent": net.bytes_sent,
                "bytes_recv": net.bytes_recv,
            },
            "processes": len(psutil.pids()),
        }
        self._metrics_history.append(metrics)
        if len(self._metrics_history) > self._max_history:
            self._metrics_history.pop(0)
        return metrics

    def get_metrics_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        return self._metrics_history[-limit:]

    async def fleet_summary(self) -> Dict[str, Any]:
        """Counts and aggregate telemetry across the fleet"""
        async with self.db.session() as session:
            status_rows = await session.execute(
                select(NodeRecord.status, func.count()).group_by(NodeRecord.status)
            )
            by_status = {status.value: 0 for status in NodeStatus}
            by_status.update({status: count for status, count in status_rows.all()})

            totals = (
                await session.execute(
                    select(
                        func.coalesce(func.sum(NodeRecord.active_connections), 0),
                        func.coalesce(func.sum(NodeRecord.max_users), 0),
                        func.coalesce(func.sum(NodeRecord.total_ingress), 0),
                        func.coalesce(func.sum(NodeRecord.total_egress), 0),
                    ).where(NodeRecord.is_enabled.is_(True))
                )
            ).one()

            inbounds = (await session.execute(select(func.count()).select_from(InboundRecord))).scalar_one()
            active_sni = (
                await session.execute(
                    select(func.count()).select_from(SniPoolRecord).where(SniPoolRecord.is_active.is_(True))
                )
            ).scalar_one()
            frontend_rows = await session.execute(
                select(EdgeFrontendRecord.status, func.count()).group_by(EdgeFrontendRecord.status)
            )
            frontends = {status: count for status, count in frontend_rows.all()}

        active_connections, max_users, ingress, egress = totals
        return {
            "timestamp": self.clock.now().isoformat(),
            "nodes": by_status,
            "total_nodes": sum(by_status.values()),
            "active_connections": active_connections,
            "max_users": max_users,
            "utilization": round(active_connections / max_users, 4) if max_users else 0.0,
            "traffic": {"ingress": ingress, "egress": egress},
            "inbounds": inbounds,
            "active_sni": active_sni,
            "frontends": frontends,
        }
