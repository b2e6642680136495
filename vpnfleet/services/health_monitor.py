"""
Marks nodes and edge frontends offline when their heartbeats stop
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import update

from ..core.clock import Clock, system_clock
from ..core.config import Settings, config
from ..core.database import Database, database
from ..core.logging import get_logger
from ..core.tasks import PeriodicTask
from ..models.node import NodeStatus
from ..models.orm import EdgeFrontendRecord, NodeRecord


logger = get_logger(__name__)


class HealthMonitor:
    """Sole writer of the Offline status"""

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        clock: Clock = system_clock,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.db = db or database
        self.settings = settings or config.settings
        self.clock = clock
        self._task = PeriodicTask(
            "health-monitor",
            self.settings.health_check_interval,
            self.tick,
            clock=clock,
            stop_event=stop_event,
        )

    async def tick(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """One pass; safe to repeat"""
        now = now or self.clock.now()
        node_cutoff = now - timedelta(seconds=self.settings.node_heartbeat_timeout)
        frontend_cutoff = now - timedelta(seconds=self.settings.frontend_heartbeat_timeout)

        async with self.db.session() as session:
            async with session.begin():
                nodes = await session.execute(
                    update(NodeRecord)
                    .where(
                        NodeRecord.last_heartbeat.is_not(None),
                        NodeRecord.last_heartbeat < node_cutoff,
                        NodeRecord.status.not_in([NodeStatus.OFFLINE.value, NodeStatus.ERROR.value]),
                    )
                    .values(status=NodeStatus.OFFLINE.value)
                )
                frontends = await session.execute(
                    update(EdgeFrontendRecord)
                    .where(
                        EdgeFrontendRecord.last_heartbeat.is_not(None),
                        EdgeFrontendRecord.last_heartbeat < frontend_cutoff,
                        EdgeFrontendRecord.status != "offline",
                    )
                    .values(status="offline")
                )

        counts = {"nodes": nodes.rowcount or 0, "frontends": frontends.rowcount or 0}
        if counts["nodes"] or counts["frontends"]:
            logger.warning(
                f"Marked {counts['nodes']} nodes and {counts['frontends']} frontends offline"
            )
        return counts

    async def start(self):
        await self._task.start()

    async def stop(self):
        await self._task.stop()

    @property
    def running(self) -> bool:
        return self._task.running
