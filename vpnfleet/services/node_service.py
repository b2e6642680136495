"""
Node management service for the fleet controller
"""

from typing import List, Optional, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, config
from ..core.database import Database, database
from ..core.exceptions import ConflictError, NotFoundError, ValidationError
from ..core.logging import get_logger
from ..models.node import (
    LIFECYCLE_ORDER,
    Node,
    NodeCapacity,
    NodeCreate,
    NodeCreated,
    NodeStatus,
    NodeUpdate,
    RelayAssignment,
)
from ..models.orm import (
    InboundRecord,
    NodeGroupMemberRecord,
    NodeGroupRecord,
    NodeRecord,
    PlanInboundRecord,
)
from .keys import generate_join_token, generate_reality_keypair, generate_short_id
from .relay_service import RelayService


logger = get_logger(__name__)


class NodeService:
    """Service for managing nodes"""

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        relay_service: Optional[RelayService] = None,
    ):
        self.db = db or database
        self.settings = settings or config.settings
        self.relay_service = relay_service or RelayService(self.db, self.settings)

    async def get_record(self, session: AsyncSession, node_id: int) -> NodeRecord:
        node = await session.get(NodeRecord, node_id)
        if node is None:
            raise NotFoundError(f"Node {node_id} not found")
        return node

    async def get_by_token(self, session: AsyncSession, token: Optional[str]) -> Optional[NodeRecord]:
        if not token or not token.strip():
            return None
        result = await session.execute(
            select(NodeRecord).where(NodeRecord.join_token == token.strip())
        )
        return result.scalar_one_or_none()

    async def get_all_nodes(
        self,
        status: Optional[NodeStatus] = None,
        enabled_only: bool = False,
    ) -> List[Node]:
        """Get all nodes"""
        stmt = select(NodeRecord).order_by(NodeRecord.id)
        if status is not None:
            stmt = stmt.where(NodeRecord.status == status.value)
        if enabled_only:
            stmt = stmt.where(NodeRecord.is_enabled.is_(True))
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [Node.model_validate(n) for n in result.scalars().all()]

    async def get_node(self, node_id: int) -> Node:
        """Get a specific node"""
        async with self.db.session() as session:
            return Node.model_validate(await self.get_record(session, node_id))

    async def create_node(self, node_data: NodeCreate) -> NodeCreated:
        """Register a node with fresh credentials and key material"""
        private_key, public_key = generate_reality_keypair()
        async with self.db.session() as session:
            node = NodeRecord(
                name=node_data.name,
                ip=node_data.ip,
                status=NodeStatus.NEW.value,
                is_enabled=True,
                join_token=generate_join_token(),
                reality_private_key=private_key,
                reality_public_key=public_key,
                short_id=generate_short_id(),
                masking_domain=node_data.masking_domain,
                masking_domain_locked=bool(node_data.masking_domain),
                ssh_host=node_data.ssh_host,
                ssh_port=node_data.ssh_port,
                ssh_user=node_data.ssh_user,
                ssh_password=node_data.ssh_password,
                ssh_key=node_data.ssh_key,
                transport_overrides=dict(node_data.transport_overrides),
                is_relay=False,
            )
            session.add(node)
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                raise ConflictError(f"Node {node_data.ip} already exists")

            if node_data.is_relay:
                if node_data.relay_target_id is None:
                    raise ValidationError("Relay nodes need a relay_target_id")
                await self.relay_service.validate_target(session, node.id, node_data.relay_target_id)
                node.is_relay = True
                node.relay_target_id = node_data.relay_target_id

            for group_id in node_data.group_ids:
                if await session.get(NodeGroupRecord, group_id) is None:
                    raise NotFoundError(f"Group {group_id} not found")
                session.add(NodeGroupMemberRecord(group_id=group_id, node_id=node.id))

            await session.commit()
            logger.info(f"Created node {node.id} ({node.ip})")
            return NodeCreated.model_validate(node)

    async def update_node(self, node_id: int, update_data: NodeUpdate) -> Node:
        """Update a node"""
        changes = update_data.model_dump(exclude_unset=True)
        async with self.db.session() as session:
            async with session.begin():
                node = await self.get_record(session, node_id)
                for key, value in changes.items():
                    if key == "masking_domain_locked":
                        continue
                    setattr(node, key, value)
                if "masking_domain" in changes:
                    node.masking_domain_locked = bool(changes["masking_domain"])
                if "masking_domain_locked" in changes:
                    node.masking_domain_locked = bool(changes["masking_domain_locked"]) and bool(node.masking_domain)
                node.config_version += 1
            logger.info(f"Updated node {node_id}")
            return Node.model_validate(node)

    async def delete_node(self, node_id: int) -> bool:
        """Delete a node unless one of its inbounds is still sold in a plan"""
        async with self.db.session() as session:
            async with session.begin():
                node = await self.get_record(session, node_id)
                referenced = await session.execute(
                    select(func.count())
                    .select_from(PlanInboundRecord)
                    .join(InboundRecord, InboundRecord.id == PlanInboundRecord.inbound_id)
                    .where(InboundRecord.node_id == node_id)
                )
                if referenced.scalar_one() > 0:
                    raise ConflictError(f"Node {node_id} has inbounds referenced by plans")
                await session.execute(
                    update(NodeRecord)
                    .where(NodeRecord.relay_target_id == node_id)
                    .values(
                        relay_target_id=None,
                        is_relay=False,
                        config_version=NodeRecord.config_version + 1,
                    )
                )
                await session.delete(node)
        logger.info(f"Deleted node {node_id}")
        return True

    async def set_enabled(self, node_id: int, enabled: bool) -> Node:
        async with self.db.session() as session:
            async with session.begin():
                node = await self.get_record(session, node_id)
                node.is_enabled = enabled
                node.config_version += 1
            logger.info(f"Node {node_id} {'enabled' if enabled else 'disabled'}")
            return Node.model_validate(node)

    async def transition(self, node_id: int, target: NodeStatus) -> Node:
        """Move a node forward along New -> Installing -> Active"""
        async with self.db.session() as session:
            async with session.begin():
                node = await self.get_record(session, node_id)
                current = node.status
                if current == target.value:
                    return Node.model_validate(node)
                if current not in LIFECYCLE_ORDER or target.value not in LIFECYCLE_ORDER:
                    raise ConflictError(
                        f"Node {node_id} cannot move from {current} to {target.value} by request"
                    )
                if LIFECYCLE_ORDER[target.value] < LIFECYCLE_ORDER[current]:
                    raise ConflictError(
                        f"Node {node_id} cannot move backwards from {current} to {target.value}"
                    )
                node.status = target.value
            logger.info(f"Node {node_id} status {current} -> {target.value}")
            return Node.model_validate(node)

    async def set_relay(self, node_id: int, assignment: RelayAssignment) -> Node:
        async with self.db.session() as session:
            async with session.begin():
                node = await self.get_record(session, node_id)
                affected = [node_id]
                if assignment.is_relay:
                    if assignment.relay_target_id is None:
                        raise ValidationError("Relay nodes need a relay_target_id")
                    await self.relay_service.validate_target(session, node_id, assignment.relay_target_id)
                    affected.append(assignment.relay_target_id)
                if node.relay_target_id is not None:
                    affected.append(node.relay_target_id)
                node.is_relay = assignment.is_relay
                node.relay_target_id = assignment.relay_target_id if assignment.is_relay else None
                await self._bump_versions(session, affected)
            logger.info(f"Node {node_id} relay={assignment.is_relay} target={node.relay_target_id}")
            return Node.model_validate(node)

    async def _bump_versions(self, session: AsyncSession, node_ids: Iterable[int]) -> int:
        ids = sorted(set(node_ids))
        if not ids:
            return 0
        result = await session.execute(
            update(NodeRecord)
            .where(NodeRecord.id.in_(ids))
            .values(config_version=NodeRecord.config_version + 1)
        )
        return result.rowcount

    async def signal_config_change(self, node_ids: Iterable[int]) -> int:
        """Tell nodes their effective configuration changed"""
        async with self.db.session() as session:
            async with session.begin():
                count = await self._bump_versions(session, node_ids)
        return count

    async def signal_all(self) -> int:
        async with self.db.session() as session:
            async with session.begin():
                result = await session.execute(
                    update(NodeRecord)
                    .where(NodeRecord.is_enabled.is_(True))
                    .values(config_version=NodeRecord.config_version + 1)
                )
        return result.rowcount

    async def capacity(self, group_id: Optional[int] = None) -> List[NodeCapacity]:
        """Capacity figures for the storefront's provisioning decisions"""
        stmt = select(NodeRecord).order_by(NodeRecord.id)
        if group_id is not None:
            stmt = stmt.join(
                NodeGroupMemberRecord, NodeGroupMemberRecord.node_id == NodeRecord.id
            ).where(NodeGroupMemberRecord.group_id == group_id)
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [
                NodeCapacity(
                    node_id=n.id,
                    name=n.name,
                    status=n.status,
                    is_enabled=n.is_enabled,
                    max_users=n.max_users,
                    active_connections=n.active_connections,
                    current_load=n.current_load,
                )
                for n in result.scalars().all()
            ]
