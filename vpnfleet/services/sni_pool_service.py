"""
SNI pool management: discovery merge, pinning, blacklisting and assignment
"""

from typing import List, Optional, Iterable

from sqlalchemy import and_, case, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import utcnow
from ..core.config import Settings, config
from ..core.database import Database, database
from ..core.exceptions import NotFoundError, ValidationError
from ..core.logging import get_logger
from ..models.orm import (
    NodePinnedSniRecord,
    NodeRecord,
    SniBlacklistRecord,
    SniPoolRecord,
    SniRotationLogRecord,
)
from ..models.sni import (
    MergeReport,
    ProbeResult,
    SniBlacklistEntry,
    SniEntry,
    SniEntryCreate,
    SniRotation,
)


logger = get_logger(__name__)


DEFAULT_SNI_POOL = [
    ("gosuslugi.ru", 0),
    ("www.cloudflare.com", 1),
    ("www.microsoft.com", 1),
    ("www.apple.com", 1),
    ("www.amazon.com", 1),
]

DENY_SUBSTRINGS = (
    "localhost",
    "traefik",
    "plesk",
    "parallels",
    "easypanel",
    "directadmin",
    "cpanel",
    "access-denied",
    "access denied",
    "forbidden",
    "sni-support-required",
)

DENY_SUFFIXES = (
    ".local",
    ".localdomain",
    ".internal",
    ".lan",
    ".invalid",
    ".example",
    ".test",
    ".home.arpa",
    ".traefik.default",
    ".plesk.page",
    ".vps.ovh.net",
)

RESERVED_TLDS = {"local", "internal", "lan", "invalid", "example", "test", "default"}


def normalize_domain(domain: str) -> str:
    return domain.strip().lower().rstrip(".")


def classify_discovered_domain(domain: str) -> Optional[str]:
    """Return why a discovered domain is noise, or None when it is usable"""
    if not domain:
        return "empty"
    if len(domain) > 120:
        return "too long"
    if "." not in domain:
        return "not a FQDN"
    if any(c in domain for c in (" ", "_")):
        return "invalid characters"
    if not all(c.isalnum() or c in ".-" for c in domain):
        return "invalid characters"
    if domain.startswith(".") or domain.endswith(".") or ".." in domain:
        return "malformed dots"

    for needle in DENY_SUBSTRINGS:
        if needle in domain:
            return f"control panel or error host ({needle})"
    for suffix in DENY_SUFFIXES:
        if domain.endswith(suffix):
            return f"reserved suffix ({suffix})"

    labels = domain.split(".")
    if not 2 <= len(labels) <= 8:
        return "unexpected label count"
    for label in labels:
        if not 1 <= len(label) <= 63 or label.startswith("-") or label.endswith("-"):
            return "invalid label"

    tld = labels[-1]
    if tld in RESERVED_TLDS or len(tld) < 2:
        return "reserved TLD"
    return None


class SniPoolService:
    """Service for the shared masking-domain pool"""

    def __init__(self, db: Optional[Database] = None, settings: Optional[Settings] = None):
        self.db = db or database
        self.settings = settings or config.settings

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------
    def _prepare_batch(self, domains: Iterable[str]) -> List[str]:
        seen = []
        for raw in domains:
            if not isinstance(raw, str):
                continue
            domain = normalize_domain(raw)
            if domain and domain not in seen:
                seen.append(domain)
            if len(seen) >= self.settings.sni_max_per_report:
                break
        return seen

    async def merge_discovered(self, node_id: int, domains: Iterable[str]) -> MergeReport:
        """Merge domains reported by a node into the pool.

        Each domain is handled on its own; a failure is logged and the
        rest of the batch continues.
        """
        report = MergeReport()
        batch = self._prepare_batch(domains)
        if not batch:
            return report

        async with self.db.session() as session:
            result = await session.execute(
                select(SniBlacklistRecord.domain).where(SniBlacklistRecord.domain.in_(batch))
            )
            blacklisted = set(result.scalars().all())
            result = await session.execute(
                select(SniPoolRecord.domain).where(SniPoolRecord.domain.in_(batch))
            )
            existing = set(result.scalars().all())

        for domain in batch:
            try:
                reason = classify_discovered_domain(domain)
                if reason:
                    if domain not in blacklisted:
                        await self.blacklist(domain, f"Auto-filter: {reason}")
                    report.filtered.append(domain)
                    continue
                if domain in blacklisted:
                    report.skipped.append(domain)
                    continue

                if domain in existing or not await self._insert_discovered(node_id, domain):
                    await self._bump_existing(domain)
                    report.updated.append(domain)
                else:
                    report.inserted.append(domain)
            except Exception as e:
                logger.error(f"Failed to merge discovered SNI {domain} from node {node_id}: {e}")

        if report.inserted:
            logger.info(f"Node {node_id} discovered {len(report.inserted)} new SNI domains")
        return report

    async def _insert_discovered(self, node_id: int, domain: str) -> bool:
        """Insert a new pool row; False when another writer got there first"""
        async with self.db.session() as session:
            session.add(SniPoolRecord(
                domain=domain,
                tier=self.settings.sni_default_tier,
                health_score=self.settings.sni_default_score,
                is_active=True,
                discovered_by_node_id=node_id,
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def _bump_existing(self, domain: str):
        bumped = SniPoolRecord.health_score + self.settings.sni_rediscovery_bonus
        async with self.db.session() as session:
            async with session.begin():
                await session.execute(
                    update(SniPoolRecord)
                    .where(SniPoolRecord.domain == domain)
                    .values(health_score=case((bumped > 100, 100), else_=bumped))
                )

    # ------------------------------------------------------------------
    # Catalogue
    # ------------------------------------------------------------------
    async def add_domain(self, data: SniEntryCreate) -> SniEntry:
        """Add a domain to the catalogue under the same rules discovery applies"""
        domain = normalize_domain(data.domain)
        reason = classify_discovered_domain(domain)
        if reason:
            raise ValidationError(f"Domain {domain} is not usable as SNI: {reason}", details={"domain": domain})
        async with self.db.session() as session:
            if await session.get(SniBlacklistRecord, domain):
                raise ValidationError(f"Domain {domain} is blacklisted")
            record = SniPoolRecord(
                domain=domain,
                tier=data.tier,
                health_score=self.settings.sni_default_score,
                is_active=True,
                is_premium=data.is_premium,
                notes=data.notes,
            )
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ValidationError(f"Domain {domain} already exists")
            logger.info(f"Added SNI domain {domain} (tier {data.tier})")
            return SniEntry.model_validate(record)

    async def list_pool(self, active_only: bool = False) -> List[SniEntry]:
        stmt = select(SniPoolRecord).order_by(
            SniPoolRecord.tier.asc(), SniPoolRecord.health_score.desc(), SniPoolRecord.id.asc()
        )
        if active_only:
            stmt = stmt.where(SniPoolRecord.is_active.is_(True))
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [SniEntry.model_validate(r) for r in result.scalars().all()]

    async def set_active(self, domain: str, active: bool) -> SniEntry:
        domain = normalize_domain(domain)
        async with self.db.session() as session:
            async with session.begin():
                record = await self._get_entry(session, domain)
                record.is_active = active
            return SniEntry.model_validate(record)

    async def seed_defaults(self) -> int:
        """Insert the built-in pool entries that are missing"""
        added = 0
        async with self.db.session() as session:
            async with session.begin():
                for domain, tier in DEFAULT_SNI_POOL:
                    exists = await session.execute(
                        select(SniPoolRecord.id).where(SniPoolRecord.domain == domain)
                    )
                    if exists.scalar_one_or_none() is None:
                        session.add(SniPoolRecord(domain=domain, tier=tier, health_score=100, is_active=True))
                        added += 1
        if added:
            logger.info(f"Seeded {added} default SNI domains")
        return added

    async def _get_entry(self, session: AsyncSession, domain: str) -> SniPoolRecord:
        result = await session.execute(select(SniPoolRecord).where(SniPoolRecord.domain == domain))
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError(f"SNI domain {domain} not found")
        return record

    # ------------------------------------------------------------------
    # Pinning
    # ------------------------------------------------------------------
    async def pin(self, node_id: int, domain: str) -> SniEntry:
        domain = normalize_domain(domain)
        async with self.db.session() as session:
            async with session.begin():
                if await session.get(NodeRecord, node_id) is None:
                    raise NotFoundError(f"Node {node_id} not found")
                if await session.get(SniBlacklistRecord, domain):
                    raise ValidationError(f"Domain {domain} is blacklisted")
                record = await self._get_entry(session, domain)
                if await session.get(NodePinnedSniRecord, (node_id, record.id)) is None:
                    session.add(NodePinnedSniRecord(node_id=node_id, sni_id=record.id))
            logger.info(f"Pinned {domain} to node {node_id}")
            return SniEntry.model_validate(record)

    async def unpin(self, node_id: int, domain: str) -> bool:
        domain = normalize_domain(domain)
        async with self.db.session() as session:
            async with session.begin():
                record = await self._get_entry(session, domain)
                result = await session.execute(
                    delete(NodePinnedSniRecord).where(
                        NodePinnedSniRecord.node_id == node_id,
                        NodePinnedSniRecord.sni_id == record.id,
                    )
                )
        return result.rowcount > 0

    async def pinned(self, node_id: int) -> List[SniEntry]:
        async with self.db.session() as session:
            result = await session.execute(
                select(SniPoolRecord)
                .join(NodePinnedSniRecord, NodePinnedSniRecord.sni_id == SniPoolRecord.id)
                .where(NodePinnedSniRecord.node_id == node_id)
                .order_by(SniPoolRecord.id)
            )
            return [SniEntry.model_validate(r) for r in result.scalars().all()]

    # ------------------------------------------------------------------
    # Blacklist
    # ------------------------------------------------------------------
    async def blacklist(self, domain: str, reason: str) -> List[int]:
        """Exclude a domain permanently; returns ids of nodes currently using it"""
        domain = normalize_domain(domain)
        async with self.db.session() as session:
            async with session.begin():
                entry = await session.get(SniBlacklistRecord, domain)
                if entry is None:
                    session.add(SniBlacklistRecord(domain=domain, reason=reason, blocked_at=utcnow()))
                else:
                    entry.reason = reason
                await session.execute(
                    update(SniPoolRecord)
                    .where(SniPoolRecord.domain == domain)
                    .values(is_active=False, health_score=0)
                )
                result = await session.execute(
                    select(NodeRecord.id).where(NodeRecord.masking_domain == domain)
                )
                affected = list(result.scalars().all())
        logger.warning(f"Blacklisted SNI {domain}: {reason}")
        return affected

    async def unblacklist(self, domain: str) -> bool:
        domain = normalize_domain(domain)
        async with self.db.session() as session:
            async with session.begin():
                result = await session.execute(
                    delete(SniBlacklistRecord).where(SniBlacklistRecord.domain == domain)
                )
        return result.rowcount > 0

    async def list_blacklist(self) -> List[SniBlacklistEntry]:
        async with self.db.session() as session:
            result = await session.execute(
                select(SniBlacklistRecord).order_by(SniBlacklistRecord.blocked_at.desc())
            )
            return [SniBlacklistEntry.model_validate(r) for r in result.scalars().all()]

    # ------------------------------------------------------------------
    # Probe results
    # ------------------------------------------------------------------
    async def record_probe(self, probe: ProbeResult) -> SniEntry:
        """Apply an external probe result to a pool entry"""
        domain = normalize_domain(probe.domain)
        s = self.settings
        async with self.db.session() as session:
            async with session.begin():
                record = await self._get_entry(session, domain)
                delta = s.sni_probe_success_delta if probe.healthy else s.sni_probe_failure_delta
                record.health_score = min(100, max(0, record.health_score + delta))
                record.is_active = record.health_score > s.sni_active_threshold
                record.last_check = utcnow()
        if probe.blacklist_reason:
            await self.blacklist(domain, probe.blacklist_reason)
            record.is_active = False
            record.health_score = 0
        return SniEntry.model_validate(record)

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------
    async def candidates(self, session: AsyncSession, node: NodeRecord) -> List[str]:
        """Usable domains for a node, best first, without writing anything"""
        blocked = select(SniBlacklistRecord.domain)
        usable = and_(SniPoolRecord.is_active.is_(True), SniPoolRecord.domain.not_in(blocked))

        pinned_stmt = (
            select(SniPoolRecord.domain)
            .join(NodePinnedSniRecord, NodePinnedSniRecord.sni_id == SniPoolRecord.id)
            .where(NodePinnedSniRecord.node_id == node.id, usable)
            .order_by(SniPoolRecord.health_score.desc(), SniPoolRecord.tier.asc(), SniPoolRecord.id.asc())
        )
        global_stmt = (
            select(SniPoolRecord.domain)
            .where(usable)
            .order_by(SniPoolRecord.tier.asc(), SniPoolRecord.health_score.desc(), SniPoolRecord.id.asc())
        )

        candidates = list((await session.execute(pinned_stmt)).scalars().all())
        if not candidates:
            if node.is_relay:
                premium = global_stmt.where(SniPoolRecord.is_premium.is_(True))
                candidates = list((await session.execute(premium)).scalars().all())
            if not candidates:
                candidates = list((await session.execute(global_stmt)).scalars().all())
        return candidates

    async def select_domain(
        self,
        session: AsyncSession,
        node: NodeRecord,
        rotate: bool = False,
        sticky: bool = False,
    ) -> Optional[str]:
        candidates = await self.candidates(session, node)
        if not candidates:
            return None
        current = node.masking_domain
        if sticky and current in candidates:
            return current
        if rotate and current:
            others = [c for c in candidates if c != current]
            if others:
                return others[0]
        return candidates[0]

    async def auto_assign(
        self,
        node_id: int,
        reason: str = "auto",
        rotate: bool = False,
        sticky: bool = False,
    ) -> Optional[str]:
        """Assign a masking domain to a node, logging the swap when it changes.

        A locked assignment is returned unchanged. ``sticky`` keeps the
        current domain while it is still a usable candidate; ``rotate``
        avoids it when another candidate exists.
        """
        async with self.db.session() as session:
            async with session.begin():
                node = await session.get(NodeRecord, node_id)
                if node is None:
                    raise NotFoundError(f"Node {node_id} not found")
                if node.masking_domain_locked and node.masking_domain:
                    return node.masking_domain

                current = node.masking_domain
                chosen = await self.select_domain(session, node, rotate=rotate, sticky=sticky)
                if chosen is None:
                    logger.warning(f"No usable SNI for node {node_id}")
                    return None
                if chosen != current:
                    node.masking_domain = chosen
                    session.add(SniRotationLogRecord(
                        node_id=node_id,
                        old_sni=current,
                        new_sni=chosen,
                        reason=reason,
                        rotated_at=utcnow(),
                    ))
                    logger.info(f"Node {node_id} SNI {current} -> {chosen} ({reason})")
                return chosen

    async def rotation_logs(self, node_id: Optional[int] = None, limit: int = 100) -> List[SniRotation]:
        stmt = select(SniRotationLogRecord).order_by(SniRotationLogRecord.id.desc()).limit(limit)
        if node_id is not None:
            stmt = stmt.where(SniRotationLogRecord.node_id == node_id)
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [SniRotation.model_validate(r) for r in result.scalars().all()]
