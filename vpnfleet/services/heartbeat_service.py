"""
Heartbeat ingestion for nodes and edge frontends
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, update

from ..core.clock import Clock, system_clock
from ..core.config import Settings, config
from ..core.database import Database, database
from ..core.exceptions import AuthenticationError, FleetError
from ..core.logging import fleet_context, get_logger
from ..models.heartbeat import HeartbeatAction, HeartbeatReport, HeartbeatResponse
from ..models.node import NodeStatus
from ..models.orm import EdgeFrontendRecord, InboundRecord, NodeRecord
from .capacity import CapacityEstimator, current_load
from .keys import hash_token
from .relay_service import RelayService
from .sni_pool_service import SniPoolService
from .template_engine import TemplateEngine


logger = get_logger(__name__)

RECOVERABLE_STATUSES = {
    NodeStatus.NEW.value,
    NodeStatus.INSTALLING.value,
    NodeStatus.OFFLINE.value,
    NodeStatus.ERROR.value,
}


def session_delta(current: int, previous: int) -> int:
    """Traffic since the last report; a counter reset counts from zero"""
    if current >= previous:
        return current - previous
    return current


class HeartbeatService:
    """Accepts telemetry pushes and forwards derived data downstream"""

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        sni_service: Optional[SniPoolService] = None,
        relay_service: Optional[RelayService] = None,
        estimator: Optional[CapacityEstimator] = None,
        config_builder=None,
        clock: Clock = system_clock,
        engine: Optional[TemplateEngine] = None,
    ):
        self.db = db or database
        self.settings = settings or config.settings
        self.sni_service = sni_service or SniPoolService(self.db, self.settings)
        self.relay_service = relay_service or RelayService(self.db, self.settings, clock)
        self.estimator = estimator or CapacityEstimator(self.settings)
        self.config_builder = config_builder
        self.clock = clock
        self.engine = engine or TemplateEngine(self.db, self.settings, self.sni_service)

    async def ingest(self, token: Optional[str], report: HeartbeatReport) -> HeartbeatResponse:
        """Record one heartbeat from the node owning ``token``"""
        if not token or not token.strip():
            raise AuthenticationError("Missing node credential")

        now = self.clock.now()
        async with self.db.session() as session:
            async with session.begin():
                result = await session.execute(
                    select(NodeRecord).where(NodeRecord.join_token == token.strip())
                )
                node = result.scalar_one_or_none()
                if node is None:
                    raise AuthenticationError("Unknown node credential")

                traffic = self._apply_telemetry(node, report, now)
                previous_status = node.status
                self._apply_status(node, report)
                blocked = self._looks_blocked(node, report, traffic)

                node_id = node.id
                config_version = node.config_version
                pending_scan = node.pending_sni_scan
                if report.config_hash:
                    node.applied_config_hash = report.config_hash

        with fleet_context(node_id=node_id):
            if previous_status != node.status:
                logger.info(f"Node {node_id} status {previous_status} -> {node.status} via heartbeat")

            await self._forward(node_id, report, now)
            healed_version = None
            if blocked:
                healed_version = await self._auto_heal(node_id, report, traffic, now)

        action = HeartbeatAction.NONE
        if healed_version is not None:
            config_version = healed_version
            action = HeartbeatAction.UPDATE_CONFIG
        elif await self._config_outdated(node_id, report):
            action = HeartbeatAction.UPDATE_CONFIG
        elif pending_scan:
            action = HeartbeatAction.SCAN_SNI
            await self._clear_scan_request(node_id)
        return HeartbeatResponse(success=True, action=action, config_version=config_version)

    async def _clear_scan_request(self, node_id: int):
        async with self.db.session() as session:
            async with session.begin():
                await session.execute(
                    update(NodeRecord).where(NodeRecord.id == node_id).values(pending_sni_scan=False)
                )

    def _apply_telemetry(self, node: NodeRecord, report: HeartbeatReport, now: datetime):
        node.last_heartbeat = now
        node.latency_ms = report.latency
        node.cpu_percent = report.cpu_percent
        node.ram_percent = report.ram_percent
        if report.speed_mbps is not None:
            node.speed_mbps = report.speed_mbps
        node.active_connections = report.active_connections
        node.uptime = report.uptime
        if report.version:
            node.agent_version = report.version

        ingress = session_delta(report.traffic_down, node.last_session_ingress or 0)
        egress = session_delta(report.traffic_up, node.last_session_egress or 0)
        node.total_ingress = (node.total_ingress or 0) + ingress
        node.total_egress = (node.total_egress or 0) + egress
        node.last_session_ingress = report.traffic_down
        node.last_session_egress = report.traffic_up

        node.max_users = self.estimator.estimate(
            node.speed_mbps, report.cpu_percent, report.ram_percent, previous=node.max_users
        )
        node.current_load = current_load(node.active_connections, node.max_users)
        return ingress + egress

    def _apply_status(self, node: NodeRecord, report: HeartbeatReport):
        if report.status.lower() == "error":
            node.status = NodeStatus.ERROR.value
            node.last_error = report.error or "reported failure"
        elif node.status in RECOVERABLE_STATUSES:
            node.status = NodeStatus.ACTIVE.value
            node.last_error = None

    def _looks_blocked(self, node: NodeRecord, report: HeartbeatReport, traffic: int) -> bool:
        """Many open connections moving almost no bytes means the SNI is being filtered"""
        if not self.settings.autoheal_enabled or node.status == NodeStatus.ERROR.value:
            return False
        return (
            report.active_connections > self.settings.autoheal_min_connections
            and traffic < self.settings.autoheal_max_traffic_bytes
        )

    async def _auto_heal(
        self, node_id: int, report: HeartbeatReport, traffic: int, now: datetime
    ) -> Optional[int]:
        """Move a blocked node to another SNI; returns its new config version"""
        logger.warning(
            f"Node {node_id} looks blocked: {report.active_connections} connections, {traffic} bytes"
        )
        try:
            async with self.db.session() as session:
                before = (await session.get(NodeRecord, node_id)).masking_domain
                result = await session.execute(
                    select(InboundRecord.id)
                    .where(InboundRecord.node_id == node_id, InboundRecord.template_id.is_not(None))
                    .order_by(InboundRecord.id)
                )
                inbound_ids = list(result.scalars().all())

            domain = await self.sni_service.auto_assign(node_id, reason="auto-heal", rotate=True)
            if domain is None or domain == before:
                logger.warning(f"Auto-heal found no replacement SNI for node {node_id}")
                return None

            for inbound_id in inbound_ids:
                try:
                    await self.engine.rerender_inbound(inbound_id, regenerate=False, now=now)
                except FleetError as e:
                    logger.error(f"Auto-heal re-render of inbound {inbound_id} failed: {e}")

            async with self.db.session() as session:
                async with session.begin():
                    await session.execute(
                        update(NodeRecord)
                        .where(NodeRecord.id == node_id)
                        .values(config_version=NodeRecord.config_version + 1)
                    )
                    version = await session.scalar(
                        select(NodeRecord.config_version).where(NodeRecord.id == node_id)
                    )
            logger.info(f"Auto-heal moved node {node_id} from {before} to {domain}")
            return version
        except Exception as e:
            logger.error(f"Auto-heal for node {node_id} failed: {e}")
            return None

    async def _forward(self, node_id: int, report: HeartbeatReport, now: datetime):
        if report.discovered_sni:
            try:
                await self.sni_service.merge_discovered(node_id, report.discovered_sni)
            except Exception as e:
                logger.error(f"SNI merge for node {node_id} failed: {e}")
        if report.tagged_usage:
            try:
                await self.relay_service.observe_usage(node_id, report.tagged_usage, now)
            except Exception as e:
                logger.error(f"Relay usage observation for node {node_id} failed: {e}")

    async def _config_outdated(self, node_id: int, report: HeartbeatReport) -> bool:
        if not report.config_hash or self.config_builder is None:
            return False
        try:
            document = await self.config_builder.build(node_id)
        except Exception as e:
            logger.error(f"Could not build config for node {node_id}: {e}")
            return False
        return document.hash != report.config_hash

    async def ingest_frontend(self, token: Optional[str]) -> HeartbeatResponse:
        """Record a heartbeat from an edge frontend"""
        if not token or not token.strip():
            raise AuthenticationError("Missing frontend credential")
        async with self.db.session() as session:
            async with session.begin():
                result = await session.execute(
                    select(EdgeFrontendRecord).where(EdgeFrontendRecord.auth_token_hash == hash_token(token))
                )
                frontend = result.scalar_one_or_none()
                if frontend is None:
                    raise AuthenticationError("Unknown frontend credential")
                frontend.last_heartbeat = self.clock.now()
                if frontend.status != "active":
                    logger.info(f"Frontend {frontend.domain} back online")
                frontend.status = "active"
        return HeartbeatResponse(success=True)
