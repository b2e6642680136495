"""
Node group management
"""

from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import Database, database
from ..core.exceptions import ConflictError, NotFoundError
from ..core.logging import get_logger
from ..models.node import NodeGroup, NodeGroupCreate
from ..models.orm import NodeGroupMemberRecord, NodeGroupRecord, NodeRecord


logger = get_logger(__name__)


class GroupService:
    """Service for node groups and their membership"""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or database

    async def _members(self, session: AsyncSession, group_id: int) -> List[int]:
        result = await session.execute(
            select(NodeGroupMemberRecord.node_id)
            .where(NodeGroupMemberRecord.group_id == group_id)
            .order_by(NodeGroupMemberRecord.node_id)
        )
        return list(result.scalars().all())

    async def _to_model(self, session: AsyncSession, group: NodeGroupRecord) -> NodeGroup:
        return NodeGroup(
            id=group.id,
            name=group.name,
            slug=group.slug,
            description=group.description,
            node_ids=await self._members(session, group.id),
        )

    async def _get_record(self, session: AsyncSession, group_id: int) -> NodeGroupRecord:
        group = await session.get(NodeGroupRecord, group_id)
        if group is None:
            raise NotFoundError(f"Group {group_id} not found")
        return group

    async def create_group(self, data: NodeGroupCreate) -> NodeGroup:
        async with self.db.session() as session:
            group = NodeGroupRecord(name=data.name, slug=data.slug, description=data.description)
            session.add(group)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ConflictError(f"Group slug {data.slug} already exists")
            logger.info(f"Created group {group.slug}")
            return NodeGroup(id=group.id, name=group.name, slug=group.slug, description=group.description)

    async def get_group(self, group_id: int) -> NodeGroup:
        async with self.db.session() as session:
            return await self._to_model(session, await self._get_record(session, group_id))

    async def get_by_slug(self, slug: str) -> Optional[NodeGroup]:
        async with self.db.session() as session:
            result = await session.execute(select(NodeGroupRecord).where(NodeGroupRecord.slug == slug))
            group = result.scalar_one_or_none()
            return await self._to_model(session, group) if group else None

    async def list_groups(self) -> List[NodeGroup]:
        async with self.db.session() as session:
            result = await session.execute(select(NodeGroupRecord).order_by(NodeGroupRecord.id))
            return [await self._to_model(session, g) for g in result.scalars().all()]

    async def delete_group(self, group_id: int) -> bool:
        async with self.db.session() as session:
            async with session.begin():
                group = await self._get_record(session, group_id)
                await session.delete(group)
        logger.info(f"Deleted group {group_id}")
        return True

    async def add_member(self, group_id: int, node_id: int) -> NodeGroup:
        async with self.db.session() as session:
            async with session.begin():
                group = await self._get_record(session, group_id)
                if await session.get(NodeRecord, node_id) is None:
                    raise NotFoundError(f"Node {node_id} not found")
                if await session.get(NodeGroupMemberRecord, (group_id, node_id)) is None:
                    session.add(NodeGroupMemberRecord(group_id=group_id, node_id=node_id))
            return await self._to_model(session, group)

    async def remove_member(self, group_id: int, node_id: int) -> NodeGroup:
        async with self.db.session() as session:
            async with session.begin():
                group = await self._get_record(session, group_id)
                await session.execute(
                    delete(NodeGroupMemberRecord).where(
                        NodeGroupMemberRecord.group_id == group_id,
                        NodeGroupMemberRecord.node_id == node_id,
                    )
                )
            return await self._to_model(session, group)

    async def node_ids(self, group_id: int) -> List[int]:
        async with self.db.session() as session:
            await self._get_record(session, group_id)
            return await self._members(session, group_id)

    async def groups_of(self, session: AsyncSession, node_id: int) -> List[int]:
        result = await session.execute(
            select(NodeGroupMemberRecord.group_id).where(NodeGroupMemberRecord.node_id == node_id)
        )
        return list(result.scalars().all())
