"""
Orchestration entry point for operator and bot requests
"""

import asyncio
from typing import Iterable, List, Optional

from sqlalchemy import select

from ..core.clock import Clock, system_clock
from ..core.config import Settings, config
from ..core.database import Database, database
from ..core.exceptions import FleetError, NotFoundError, RemoteExecutionError, ValidationError
from ..core.logging import fleet_context, get_logger
from ..models.common import OperationResult
from ..models.inbound import InboundTemplate, InboundTemplateUpdate
from ..models.node import NodeCreate, NodeCreated, NodeStatus
from ..models.orm import InboundRecord, InboundTemplateRecord, NodeGroupMemberRecord, NodeRecord
from ..models.sni import ProbeResult
from .group_service import GroupService
from .node_service import NodeService
from .relay_service import RelayService
from .rotation_scheduler import RotationScheduler
from .sni_pool_service import SniPoolService
from .ssh_service import SSHService
from .template_engine import TemplateEngine
from .template_service import TemplateService


logger = get_logger(__name__)


class OrchestrationService:
    """Composes the fleet services behind one set of operations.

    Validation and conflict problems are raised as typed errors before
    anything is written. Batch operations report per-item outcomes in an
    ``OperationResult`` instead of failing as a whole.
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        clock: Clock = system_clock,
        ssh_service: Optional[SSHService] = None,
    ):
        self.db = db or database
        self.settings = settings or config.settings
        self.clock = clock
        self.sni = SniPoolService(self.db, self.settings)
        self.relay = RelayService(self.db, self.settings, clock)
        self.nodes = NodeService(self.db, self.settings, self.relay)
        self.groups = GroupService(self.db)
        self.templates = TemplateService(self.db)
        self.engine = TemplateEngine(self.db, self.settings, self.sni)
        self.rotation = RotationScheduler(self.db, self.settings, self.engine, self.nodes, clock)
        self.ssh = ssh_service or SSHService(self.settings)
        self.max_concurrency = 5

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def create_node(self, node_data: NodeCreate) -> NodeCreated:
        node = await self.nodes.create_node(node_data)
        await self.relay_targets_changed([node.id])
        return node

    async def delete_node(self, node_id: int) -> OperationResult:
        node = await self.nodes.get_node(node_id)
        await self.nodes.delete_node(node_id)
        if node.is_relay and node.relay_target_id is not None:
            await self.nodes.signal_config_change([node.relay_target_id])
        return OperationResult.ok("deleted", node_id=node_id)

    async def mark_installing(self, node_id: int) -> OperationResult:
        node = await self.nodes.transition(node_id, NodeStatus.INSTALLING)
        return OperationResult.ok("installing", node_id=node.id, status=node.status.value)

    async def set_node_enabled(self, node_id: int, enabled: bool) -> OperationResult:
        node = await self.nodes.set_enabled(node_id, enabled)
        await self.relay_targets_changed([node_id])
        return OperationResult.ok("enabled" if enabled else "disabled", node_id=node.id)

    async def relay_targets_changed(self, node_ids: Iterable[int]):
        """Relays joining or leaving change their target's accepted users"""
        async with self.db.session() as session:
            result = await session.execute(
                select(NodeRecord.relay_target_id).where(
                    NodeRecord.id.in_(list(node_ids)),
                    NodeRecord.is_relay.is_(True),
                )
            )
            targets = [t for t in result.scalars().all() if t is not None]
        if targets:
            await self.nodes.signal_config_change(targets)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------
    async def _templates_for(self, node_id: int) -> List[int]:
        async with self.db.session() as session:
            group_ids = await self.groups.groups_of(session, node_id)
            if not group_ids:
                return []
            result = await session.execute(
                select(InboundTemplateRecord.id)
                .where(
                    InboundTemplateRecord.is_active.is_(True),
                    InboundTemplateRecord.target_group_id.in_(group_ids),
                )
                .order_by(InboundTemplateRecord.id)
            )
            return list(result.scalars().all())

    async def sync_node(self, node_id: int) -> OperationResult:
        """Render every template of the node's groups onto the node"""
        await self.nodes.get_node(node_id)
        template_ids = await self._templates_for(node_id)

        rendered, failed = [], {}
        for template_id in template_ids:
            try:
                inbound = await self.engine.apply_template(template_id, node_id, now=self.clock.now())
                rendered.append(inbound.id)
            except FleetError as e:
                failed[str(template_id)] = str(e)
                logger.warning(f"Template {template_id} failed on node {node_id}: {e}")
            except Exception as e:
                failed[str(template_id)] = "internal error"
                logger.error(f"Template {template_id} crashed on node {node_id}: {e}", exc_info=True)

        if rendered:
            await self.nodes.signal_config_change([node_id])
        logger.info(f"Synced node {node_id}: {len(rendered)} inbounds, {len(failed)} failures")
        return OperationResult(
            success=not failed,
            reason=None if not failed else "some templates failed",
            details={"node_id": node_id, "inbounds": rendered, "failed": failed},
        )

    async def _for_each_node(self, node_ids: List[int], operation) -> OperationResult:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _run(node_id: int):
            async with semaphore:
                try:
                    with fleet_context(node_id=node_id):
                        return node_id, await operation(node_id)
                except FleetError as e:
                    return node_id, OperationResult.fail(str(e))

        results = await asyncio.gather(*[_run(n) for n in node_ids])
        per_node = {str(n): r.model_dump() for n, r in results}
        failed = [n for n, r in results if not r.success]
        return OperationResult(
            success=not failed,
            reason=None if not failed else f"{len(failed)} of {len(node_ids)} nodes failed",
            details={"nodes": per_node},
        )

    async def sync_group(self, group_id: int) -> OperationResult:
        node_ids = await self.groups.node_ids(group_id)
        with fleet_context(group_id=group_id):
            return await self._for_each_node(node_ids, self.sync_node)

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------
    async def restart_node(self, node_id: int) -> OperationResult:
        """Restart the node agent; failures are reported, not retried"""
        async with self.db.session() as session:
            node = await self.nodes.get_record(session, node_id)
        try:
            outcome = await self.ssh.restart_node_agent(node)
        except (RemoteExecutionError, ValidationError) as e:
            logger.warning(f"Restart of node {node_id} failed: {e}")
            return OperationResult.fail(str(e), node_id=node_id, **e.details)
        logger.info(f"Restarted agent on node {node_id}")
        return OperationResult.ok("restarted", node_id=node_id, log=outcome.get("log", ""))

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------
    async def rotate_inbound(self, inbound_id: int) -> OperationResult:
        inbound = await self.rotation.rotate_now(inbound_id)
        return OperationResult.ok("rotated", inbound_id=inbound.id, node_id=inbound.node_id)

    async def _rerender_node(self, node_id: int, regenerate: bool) -> OperationResult:
        async with self.db.session() as session:
            result = await session.execute(
                select(InboundRecord.id)
                .where(InboundRecord.node_id == node_id, InboundRecord.template_id.is_not(None))
                .order_by(InboundRecord.id)
            )
            inbound_ids = list(result.scalars().all())

        done, failed = [], {}
        for inbound_id in inbound_ids:
            try:
                await self.engine.rerender_inbound(inbound_id, regenerate=regenerate, now=self.clock.now())
                done.append(inbound_id)
            except FleetError as e:
                failed[str(inbound_id)] = str(e)
                logger.warning(f"Re-render of inbound {inbound_id} failed: {e}")
        if done:
            await self.nodes.signal_config_change([node_id])
        return OperationResult(
            success=not failed,
            reason=None if not failed else "some inbounds failed",
            details={"node_id": node_id, "inbounds": done, "failed": failed},
        )

    async def rotate_node(self, node_id: int) -> OperationResult:
        await self.nodes.get_node(node_id)
        return await self._rerender_node(node_id, regenerate=True)

    async def rotate_group(self, group_id: int) -> OperationResult:
        node_ids = await self.groups.node_ids(group_id)
        return await self._for_each_node(node_ids, self.rotate_node)

    # ------------------------------------------------------------------
    # SNI
    # ------------------------------------------------------------------
    async def rotate_node_sni(self, node_id: int, reason: str = "manual") -> OperationResult:
        before = (await self.nodes.get_node(node_id)).masking_domain
        domain = await self.sni.auto_assign(node_id, reason=reason, rotate=True)
        if domain is None:
            return OperationResult.fail("no usable SNI in pool", node_id=node_id)
        if domain == before:
            return OperationResult.ok("unchanged", node_id=node_id, sni=domain)
        rerender = await self._rerender_node(node_id, regenerate=False)
        return OperationResult(
            success=rerender.success,
            reason=rerender.reason or "rotated",
            details={"node_id": node_id, "old_sni": before, "sni": domain, **rerender.details},
        )

    async def trigger_sni_scan(self, node_id: int) -> OperationResult:
        async with self.db.session() as session:
            async with session.begin():
                node = await self.nodes.get_record(session, node_id)
                node.pending_sni_scan = True
        return OperationResult.ok("scan requested", node_id=node_id)

    async def _reassign_nodes(self, node_ids: List[int], reason: str) -> dict:
        outcomes = {}
        for node_id in node_ids:
            try:
                outcomes[str(node_id)] = (await self.rotate_node_sni(node_id, reason=reason)).model_dump()
            except FleetError as e:
                outcomes[str(node_id)] = OperationResult.fail(str(e)).model_dump()
        return outcomes

    async def blacklist_sni(self, domain: str, reason: str) -> OperationResult:
        affected = await self.sni.blacklist(domain, reason)
        reassigned = await self._reassign_nodes(affected, reason=f"blacklisted: {reason}")
        return OperationResult.ok("blacklisted", domain=domain, reassigned=reassigned)

    async def record_probe(self, probe: ProbeResult) -> OperationResult:
        entry = await self.sni.record_probe(probe)
        details = {"entry": entry.model_dump(mode="json")}
        if probe.blacklist_reason or not entry.is_active:
            async with self.db.session() as session:
                result = await session.execute(
                    select(NodeRecord.id).where(
                        NodeRecord.masking_domain == entry.domain,
                        NodeRecord.masking_domain_locked.is_(False),
                    )
                )
                affected = list(result.scalars().all())
            details["reassigned"] = await self._reassign_nodes(affected, reason="probe failure")
        return OperationResult.ok("recorded", **details)

    # ------------------------------------------------------------------
    # Relay
    # ------------------------------------------------------------------
    async def set_relay_auth_mode(self, mode: str) -> OperationResult:
        before = await self.relay.get_mode()
        status = await self.relay.set_mode(mode)
        if status.mode != before:
            await self.nodes.signal_all()
        return OperationResult.ok(
            "unchanged" if status.mode == before else "changed",
            **status.model_dump(mode="json"),
        )

    # ------------------------------------------------------------------
    # Inbounds
    # ------------------------------------------------------------------
    async def update_template(self, template_id: int, data: InboundTemplateUpdate) -> InboundTemplate:
        """Update a template and re-render it on every node of its group"""
        template = await self.templates.update_template(template_id, data)
        if template.target_group_id is not None and template.is_active:
            result = await self.sync_group(template.target_group_id)
            if not result.success:
                logger.warning(f"Re-sync after template {template_id} update: {result.reason}")
        return template

    async def delete_inbound(self, inbound_id: int) -> OperationResult:
        node_id = await self.templates.delete_inbound(inbound_id)
        await self.nodes.signal_config_change([node_id])
        return OperationResult.ok("deleted", inbound_id=inbound_id, node_id=node_id)

    async def group_members_changed(self, group_id: int, node_id: int) -> OperationResult:
        """Keep a node's inbounds in line with its group templates"""
        async with self.db.session() as session:
            member = await session.get(NodeGroupMemberRecord, (group_id, node_id))
        if member is None:
            raise NotFoundError(f"Node {node_id} is not in group {group_id}")
        return await self.sync_node(node_id)
