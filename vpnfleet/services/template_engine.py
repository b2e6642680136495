"""
Inbound template rendering
"""

import json
import random
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..core.clock import utcnow
from ..core.config import Settings, config
from ..core.database import Database, database
from ..core.exceptions import ConfigurationError, ConflictError, NotFoundError
from ..core.logging import get_logger
from ..models.inbound import Inbound, PlanContext, RenderedInbound
from ..models.orm import InboundRecord, InboundTemplateRecord, NodeRecord
from .keys import generate_client_id, generate_reality_keypair, generate_secret, generate_short_id
from .protocols import RenderContext, check_security, get_renderer, shape_stream
from .sni_pool_service import SniPoolService


logger = get_logger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_]+)\s*\}\}")


def template_tag(name: str) -> str:
    return "tpl_" + re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


def substitute(value: Any, values: Dict[str, Any]) -> Any:
    """Replace known placeholders in every string of a JSON structure.

    A string that is exactly one placeholder takes the value's own type,
    so ``"{{port}}"`` becomes an integer.
    """
    if isinstance(value, dict):
        return {k: substitute(v, values) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, values) for v in value]
    if not isinstance(value, str):
        return value

    whole = PLACEHOLDER_RE.fullmatch(value.strip())
    if whole and whole.group(1) in values and values[whole.group(1)] is not None:
        return values[whole.group(1)]

    def _replace(match):
        key = match.group(1)
        if key in values and values[key] is not None:
            return str(values[key])
        return match.group(0)

    return PLACEHOLDER_RE.sub(_replace, value)


def unresolved_placeholders(value: Any) -> List[str]:
    found = []
    if isinstance(value, dict):
        for v in value.values():
            found.extend(unresolved_placeholders(v))
    elif isinstance(value, list):
        for v in value:
            found.extend(unresolved_placeholders(v))
    elif isinstance(value, str):
        found.extend(m.group(1) for m in PLACEHOLDER_RE.finditer(value))
    return found


def _load_skeleton(raw: str, what: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Template {what} is not valid JSON: {e}")
    if not isinstance(parsed, dict):
        raise ConfigurationError(f"Template {what} must be a JSON object")
    return parsed


def dump_settings(value: Dict[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class TemplateEngine:
    """Renders templates into concrete per-node inbounds"""

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        sni_service: Optional[SniPoolService] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db or database
        self.settings = settings or config.settings
        self.sni_service = sni_service or SniPoolService(self.db, self.settings)
        self.rng = rng or random.SystemRandom()

    # ------------------------------------------------------------------
    # Pure rendering
    # ------------------------------------------------------------------
    def allocate_port(self, template: InboundTemplateRecord, used_ports: Iterable[int]) -> int:
        used = set(used_ports)
        start, end = template.port_range_start, template.port_range_end
        if start > end:
            raise ConfigurationError(f"Template {template.name} has an empty port range")
        for _ in range(self.settings.port_allocation_attempts):
            port = self.rng.randint(start, end)
            if port not in used:
                return port
        for port in range(start, end + 1):
            if port not in used:
                return port
        raise ConflictError(
            f"No free port in {start}-{end} for template {template.name}",
            details={"port_range_start": start, "port_range_end": end},
        )

    def render(
        self,
        template: InboundTemplateRecord,
        node: NodeRecord,
        masking_domain: Optional[str],
        plan: Optional[PlanContext] = None,
        existing: Optional[InboundRecord] = None,
        regenerate: bool = False,
        used_ports: Iterable[int] = (),
    ) -> RenderedInbound:
        """Render one template for one node without touching storage.

        Rotation-governed fields (client id, secret and, when the template
        opts in, the port) are regenerated only with ``regenerate``;
        otherwise the values stored on ``existing`` are reused.
        """
        renderer = get_renderer(template.protocol)
        settings_skeleton = _load_skeleton(template.settings_template, "settings")
        stream_skeleton = _load_skeleton(template.stream_settings_template, "stream settings")

        if existing is not None and not (regenerate and template.rotate_port):
            port = existing.listen_port
        else:
            port = self.allocate_port(template, used_ports)

        if existing is not None and existing.client_id and not regenerate:
            client_id = existing.client_id
            secret = existing.client_secret or generate_secret()
        else:
            client_id = generate_client_id()
            secret = generate_secret()

        email = f"{plan.name}-{node.id}" if plan else f"{template_tag(template.name)}-{node.id}"
        values = {
            "uuid": client_id,
            "password": secret,
            "port": port,
            "sni": masking_domain,
            "SNI": masking_domain,
            "pool_sni": masking_domain,
            "DOMAIN": masking_domain,
            "reality_private": node.reality_private_key,
            "REALITY_PBK": node.reality_public_key,
            "REALITY_SID": node.short_id,
            "email": email,
            "plan": plan.name if plan else None,
        }
        settings = substitute(settings_skeleton, values)
        stream = substitute(stream_skeleton, values)

        ctx = RenderContext(
            client_id=client_id,
            secret=secret,
            email=email,
            port=port,
            masking_domain=masking_domain,
            reality_private_key=node.reality_private_key,
            reality_public_key=node.reality_public_key,
            short_id=node.short_id,
            transport_overrides=node.transport_overrides or {},
        )
        stream = shape_stream(stream, renderer, ctx)
        settings = renderer.shape_settings(settings, stream, ctx)

        problems = renderer.check(settings, stream) + check_security(stream)
        leftover = unresolved_placeholders(settings) + unresolved_placeholders(stream)
        if leftover:
            problems.append(f"unresolved placeholders: {', '.join(sorted(set(leftover)))}")
        if problems:
            raise ConfigurationError(
                f"Template {template.name} cannot be rendered for node {node.id}: {'; '.join(problems)}",
                details={"template": template.name, "node_id": node.id, "problems": problems},
            )

        return RenderedInbound(
            tag=existing.tag if existing is not None else template_tag(template.name),
            protocol=renderer.protocol,
            port=port,
            client_id=client_id,
            secret=secret,
            settings=settings,
            stream_settings=stream,
            masking_domain=masking_domain,
        )

    # ------------------------------------------------------------------
    # Storage-backed rendering
    # ------------------------------------------------------------------
    async def prepare_node(self, node_id: int) -> Optional[str]:
        """Make sure the node has key material and a masking domain"""
        async with self.db.session() as session:
            async with session.begin():
                node = await session.get(NodeRecord, node_id)
                if node is None:
                    raise NotFoundError(f"Node {node_id} not found")
                if not node.reality_private_key or not node.reality_public_key:
                    node.reality_private_key, node.reality_public_key = generate_reality_keypair()
                    logger.info(f"Generated key material for node {node_id}")
                if not node.short_id:
                    node.short_id = generate_short_id()
                fallback = node.masking_domain
        assigned = await self.sni_service.auto_assign(node_id, reason="render", sticky=True)
        return assigned or fallback

    async def apply_template(
        self,
        template_id: int,
        node_id: int,
        plan: Optional[PlanContext] = None,
        regenerate: bool = False,
        now: Optional[datetime] = None,
    ) -> Inbound:
        """Render a template onto a node, creating or replacing its inbound"""
        masking_domain = await self.prepare_node(node_id)
        now = now or utcnow()
        try:
            async with self.db.session() as session:
                async with session.begin():
                    node = await session.get(NodeRecord, node_id)
                    template = await session.get(InboundTemplateRecord, template_id)
                    if node is None:
                        raise NotFoundError(f"Node {node_id} not found")
                    if template is None:
                        raise NotFoundError(f"Template {template_id} not found")

                    result = await session.execute(
                        select(InboundRecord).where(
                            InboundRecord.node_id == node_id,
                            InboundRecord.template_id == template_id,
                        )
                    )
                    existing = result.scalar_one_or_none()
                    record = await self._write(session, template, node, masking_domain, plan, existing, regenerate, now)
        except IntegrityError as e:
            raise ConflictError(f"Inbound for template {template_id} clashes on node {node_id}: {e.orig}")
        return Inbound.model_validate(record)

    async def rerender_inbound(
        self,
        inbound_id: int,
        regenerate: bool = True,
        now: Optional[datetime] = None,
    ) -> Inbound:
        """Re-render an existing inbound in place from its template"""
        async with self.db.session() as session:
            inbound = await session.get(InboundRecord, inbound_id)
            if inbound is None:
                raise NotFoundError(f"Inbound {inbound_id} not found")
            if inbound.template_id is None:
                raise ConfigurationError(f"Inbound {inbound_id} has no template to render from")
            node_id = inbound.node_id

        masking_domain = await self.prepare_node(node_id)
        now = now or utcnow()
        try:
            async with self.db.session() as session:
                async with session.begin():
                    inbound = await session.get(InboundRecord, inbound_id)
                    if inbound is None:
                        raise NotFoundError(f"Inbound {inbound_id} not found")
                    node = await session.get(NodeRecord, inbound.node_id)
                    template = await session.get(InboundTemplateRecord, inbound.template_id)
                    if template is None:
                        raise ConfigurationError(f"Template of inbound {inbound_id} no longer exists")
                    record = await self._write(session, template, node, masking_domain, None, inbound, regenerate, now)
        except IntegrityError as e:
            raise ConflictError(f"Inbound {inbound_id} clashes after re-render: {e.orig}")
        return Inbound.model_validate(record)

    async def _write(
        self,
        session,
        template: InboundTemplateRecord,
        node: NodeRecord,
        masking_domain: Optional[str],
        plan: Optional[PlanContext],
        existing: Optional[InboundRecord],
        regenerate: bool,
        now: datetime,
    ) -> InboundRecord:
        stmt = select(InboundRecord.listen_port).where(InboundRecord.node_id == node.id)
        if existing is not None:
            stmt = stmt.where(InboundRecord.id != existing.id)
        used_ports = set((await session.execute(stmt)).scalars().all())

        rendered = self.render(
            template, node, masking_domain,
            plan=plan, existing=existing, regenerate=regenerate, used_ports=used_ports,
        )

        record = existing or InboundRecord(node_id=node.id, template_id=template.id, created_at=now)
        record.tag = rendered.tag
        record.protocol = rendered.protocol
        record.listen_port = rendered.port
        record.settings = dump_settings(rendered.settings)
        record.stream_settings = dump_settings(rendered.stream_settings)
        record.client_id = rendered.client_id
        record.client_secret = rendered.secret
        record.renew_interval_mins = template.renew_interval_mins
        record.rotate_port = template.rotate_port
        record.remark = plan.name if plan else template.name
        record.updated_at = now
        if existing is None:
            record.enable = True
            session.add(record)
        if regenerate:
            record.last_rotated_at = now
        await session.flush()
        return record
