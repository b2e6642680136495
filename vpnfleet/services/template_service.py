"""
Inbound template and inbound bookkeeping
"""

from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from ..core.database import Database, database
from ..core.exceptions import ConflictError, NotFoundError, ValidationError
from ..core.logging import get_logger
from ..models.inbound import (
    Inbound,
    InboundTemplate,
    InboundTemplateCreate,
    InboundTemplateUpdate,
)
from ..models.orm import (
    InboundRecord,
    InboundTemplateRecord,
    NodeGroupRecord,
    PlanInboundRecord,
)


logger = get_logger(__name__)


class TemplateService:
    """CRUD for templates and the inbounds rendered from them"""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or database

    async def create_template(self, data: InboundTemplateCreate) -> InboundTemplate:
        async with self.db.session() as session:
            if data.target_group_id is not None and await session.get(NodeGroupRecord, data.target_group_id) is None:
                raise NotFoundError(f"Group {data.target_group_id} not found")
            template = InboundTemplateRecord(**data.model_dump())
            session.add(template)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ConflictError(f"Template {data.name} already exists")
            logger.info(f"Created template {template.name} ({template.protocol})")
            return InboundTemplate.model_validate(template)

    async def update_template(self, template_id: int, data: InboundTemplateUpdate) -> InboundTemplate:
        changes = data.model_dump(exclude_unset=True)
        async with self.db.session() as session:
            async with session.begin():
                template = await session.get(InboundTemplateRecord, template_id)
                if template is None:
                    raise NotFoundError(f"Template {template_id} not found")
                for key, value in changes.items():
                    setattr(template, key, value)
                if template.port_range_start > template.port_range_end:
                    raise ValidationError("port_range_start must not exceed port_range_end")
                if {"renew_interval_mins", "rotate_port"} & changes.keys():
                    await session.execute(
                        update(InboundRecord)
                        .where(InboundRecord.template_id == template_id)
                        .values(
                            renew_interval_mins=template.renew_interval_mins,
                            rotate_port=template.rotate_port,
                        )
                    )
            logger.info(f"Updated template {template_id}")
            return InboundTemplate.model_validate(template)

    async def get_template(self, template_id: int) -> InboundTemplate:
        async with self.db.session() as session:
            template = await session.get(InboundTemplateRecord, template_id)
            if template is None:
                raise NotFoundError(f"Template {template_id} not found")
            return InboundTemplate.model_validate(template)

    async def list_templates(self, group_id: Optional[int] = None, active_only: bool = False) -> List[InboundTemplate]:
        stmt = select(InboundTemplateRecord).order_by(InboundTemplateRecord.id)
        if group_id is not None:
            stmt = stmt.where(InboundTemplateRecord.target_group_id == group_id)
        if active_only:
            stmt = stmt.where(InboundTemplateRecord.is_active.is_(True))
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [InboundTemplate.model_validate(t) for t in result.scalars().all()]

    async def delete_template(self, template_id: int) -> bool:
        async with self.db.session() as session:
            async with session.begin():
                template = await session.get(InboundTemplateRecord, template_id)
                if template is None:
                    raise NotFoundError(f"Template {template_id} not found")
                # orphaned inbounds keep serving but stop rotating
                await session.execute(
                    update(InboundRecord)
                    .where(InboundRecord.template_id == template_id)
                    .values(renew_interval_mins=0, template_id=None)
                )
                await session.delete(template)
        logger.info(f"Deleted template {template_id}")
        return True

    async def list_inbounds(self, node_id: Optional[int] = None) -> List[Inbound]:
        stmt = select(InboundRecord).order_by(InboundRecord.node_id, InboundRecord.listen_port)
        if node_id is not None:
            stmt = stmt.where(InboundRecord.node_id == node_id)
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [Inbound.model_validate(i) for i in result.scalars().all()]

    async def get_inbound(self, inbound_id: int) -> Inbound:
        async with self.db.session() as session:
            inbound = await session.get(InboundRecord, inbound_id)
            if inbound is None:
                raise NotFoundError(f"Inbound {inbound_id} not found")
            return Inbound.model_validate(inbound)

    async def set_inbound_enabled(self, inbound_id: int, enabled: bool) -> Inbound:
        async with self.db.session() as session:
            async with session.begin():
                inbound = await session.get(InboundRecord, inbound_id)
                if inbound is None:
                    raise NotFoundError(f"Inbound {inbound_id} not found")
                inbound.enable = enabled
            return Inbound.model_validate(inbound)

    async def delete_inbound(self, inbound_id: int) -> int:
        """Delete an inbound; returns its node id"""
        async with self.db.session() as session:
            async with session.begin():
                inbound = await session.get(InboundRecord, inbound_id)
                if inbound is None:
                    raise NotFoundError(f"Inbound {inbound_id} not found")
                refs = await session.execute(
                    select(func.count())
                    .select_from(PlanInboundRecord)
                    .where(PlanInboundRecord.inbound_id == inbound_id)
                )
                if refs.scalar_one() > 0:
                    raise ConflictError(
                        f"Inbound {inbound_id} is referenced by plans and cannot be deleted",
                        details={"inbound_id": inbound_id},
                    )
                node_id = inbound.node_id
                await session.delete(inbound)
        logger.info(f"Deleted inbound {inbound_id} on node {node_id}")
        return node_id
