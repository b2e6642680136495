"""
Periodic re-rendering of inbounds whose rotation interval has elapsed
"""

import asyncio
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select

from ..core.clock import Clock, system_clock
from ..core.config import Settings, config
from ..core.database import Database, database
from ..core.logging import get_logger
from ..core.tasks import PeriodicTask
from ..models.inbound import Inbound, RotationReport
from ..models.orm import InboundRecord, InboundTemplateRecord
from .node_service import NodeService
from .template_engine import TemplateEngine


logger = get_logger(__name__)


def rotation_due(inbound: InboundRecord, interval_mins: Optional[int], now: datetime) -> bool:
    if not inbound.enable or not interval_mins or interval_mins <= 0:
        return False
    anchor = inbound.last_rotated_at or inbound.created_at
    if anchor is None:
        return True
    return now - anchor >= timedelta(minutes=interval_mins)


class RotationScheduler:
    """Rotates inbound credentials on their template's interval"""

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        engine: Optional[TemplateEngine] = None,
        node_service: Optional[NodeService] = None,
        clock: Clock = system_clock,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.db = db or database
        self.settings = settings or config.settings
        self.engine = engine or TemplateEngine(self.db, self.settings)
        self.node_service = node_service or NodeService(self.db, self.settings)
        self.clock = clock
        self._task = PeriodicTask(
            "rotation-scheduler",
            self.settings.rotation_check_interval,
            self.tick,
            clock=clock,
            stop_event=stop_event,
        )

    async def due_inbounds(self, now: datetime) -> List[int]:
        """Inbounds whose template currently asks for rotation and is overdue"""
        async with self.db.session() as session:
            result = await session.execute(
                select(InboundRecord, InboundTemplateRecord.renew_interval_mins)
                .join(InboundTemplateRecord, InboundTemplateRecord.id == InboundRecord.template_id)
                .where(InboundRecord.enable.is_(True), InboundTemplateRecord.renew_interval_mins > 0)
                .order_by(InboundRecord.id)
            )
            return [inbound.id for inbound, interval in result.all() if rotation_due(inbound, interval, now)]

    async def tick(self, now: Optional[datetime] = None) -> RotationReport:
        """Rotate every due inbound; one failure never stops the batch"""
        now = now or self.clock.now()
        report = RotationReport()
        due = await self.due_inbounds(now)
        report.checked = len(due)

        touched_nodes = set()
        for inbound_id in due:
            try:
                inbound = await self.engine.rerender_inbound(inbound_id, regenerate=True, now=now)
                report.rotated.append(inbound_id)
                touched_nodes.add(inbound.node_id)
            except Exception as e:
                report.failed[inbound_id] = str(e)
                logger.error(f"Rotation of inbound {inbound_id} failed: {e}")

        if touched_nodes:
            await self.node_service.signal_config_change(touched_nodes)
            logger.info(f"Rotated {len(report.rotated)} inbounds on {len(touched_nodes)} nodes")
        return report

    async def rotate_now(self, inbound_id: int) -> Inbound:
        """Rotate one inbound immediately, ignoring its interval"""
        inbound = await self.engine.rerender_inbound(inbound_id, regenerate=True, now=self.clock.now())
        await self.node_service.signal_config_change([inbound.node_id])
        logger.info(f"Manually rotated inbound {inbound_id}")
        return inbound

    async def start(self):
        await self._task.start()

    async def stop(self):
        await self._task.stop()

    @property
    def running(self) -> bool:
        return self._task.running
