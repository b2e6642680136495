"""
Relay topology and relay credential rollout
"""

import json
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, system_clock
from ..core.config import Settings, config
from ..core.database import Database, database
from ..core.exceptions import ConflictError, GuardrailViolation, ValidationError
from ..core.logging import get_logger
from ..models.orm import InboundRecord, NodeRecord, RelayAuthSettingRecord
from ..models.relay import RelayAuthMode, RelayAuthStatus, RelayResolution, RelayUser
from .keys import derive_relay_password


logger = get_logger(__name__)

SETTINGS_ROW_ID = 1
RELAY_OUTBOUND_TAG = "relay-out"
RELAY_INBOUND_PROTOCOL = "shadowsocks"

ALLOWED_TRANSITIONS = {
    (RelayAuthMode.LEGACY, RelayAuthMode.DUAL),
    (RelayAuthMode.LEGACY, RelayAuthMode.V1),
    (RelayAuthMode.DUAL, RelayAuthMode.LEGACY),
    (RelayAuthMode.DUAL, RelayAuthMode.V1),
    (RelayAuthMode.V1, RelayAuthMode.DUAL),
}


def relay_user_name(node_id: int, legacy: bool = False) -> str:
    return f"relay_{node_id}_legacy" if legacy else f"relay_{node_id}"


def legacy_relay_bytes(tagged_usage: Dict[str, int]) -> int:
    """Bytes carried by legacy relay credentials in one usage report"""
    total = 0
    for tag, used in (tagged_usage or {}).items():
        if tag.startswith("relay_") and tag.endswith("_legacy") and used and used > 0:
            total += int(used)
    return total


def parse_requested_mode(value: str) -> RelayAuthMode:
    """Strict parse for admin input; unknown values are rejected"""
    raw = (value or "").strip().lower()
    if raw not in ("legacy", "v1", "hashed", "derived", "dual"):
        raise ValidationError(f"Unknown relay auth mode: {value}")
    return RelayAuthMode.from_setting(raw)


class RelayService:
    """Resolves relay targets and guards relay credential mode changes"""

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        clock: Clock = system_clock,
    ):
        self.db = db or database
        self.settings = settings or config.settings
        self.clock = clock

    @property
    def guard_window(self) -> timedelta:
        return timedelta(hours=self.settings.relay_legacy_guard_hours)

    # ------------------------------------------------------------------
    # Settings row
    # ------------------------------------------------------------------
    async def _load_row(self, session: AsyncSession) -> RelayAuthSettingRecord:
        row = await session.get(RelayAuthSettingRecord, SETTINGS_ROW_ID)
        if row is not None:
            return row
        session.add(RelayAuthSettingRecord(
            id=SETTINGS_ROW_ID,
            mode=RelayAuthMode.DUAL.value,
            version=1,
            updated_at=self.clock.now(),
        ))
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
        return await session.get(RelayAuthSettingRecord, SETTINGS_ROW_ID, populate_existing=True)

    def _to_status(self, row: RelayAuthSettingRecord, now: datetime) -> RelayAuthStatus:
        blocked_until = None
        if row.legacy_last_seen_at is not None:
            until = row.legacy_last_seen_at + self.guard_window
            if until > now:
                blocked_until = until
        return RelayAuthStatus(
            mode=RelayAuthMode.from_setting(row.mode),
            version=row.version,
            legacy_last_seen_at=row.legacy_last_seen_at,
            legacy_last_seen_bytes=row.legacy_last_seen_bytes or 0,
            v1_ready=blocked_until is None,
            v1_blocked_until=blocked_until,
        )

    async def get_mode(self) -> RelayAuthMode:
        async with self.db.session() as session:
            row = await self._load_row(session)
            return RelayAuthMode.from_setting(row.mode)

    async def status(self) -> RelayAuthStatus:
        async with self.db.session() as session:
            row = await self._load_row(session)
            return self._to_status(row, self.clock.now())

    async def set_mode(self, requested: str) -> RelayAuthStatus:
        """Change the relay auth mode.

        The guardrail check and the write are a single compare-and-swap on
        the settings row version. Heartbeats recording legacy traffic bump
        the same version, so a stale "safe" read can never be committed.
        """
        target = parse_requested_mode(requested)
        now = self.clock.now()

        async with self.db.session() as session:
            row = await self._load_row(session)
            current = RelayAuthMode.from_setting(row.mode)
            seen_version = row.version

            if target == current:
                return self._to_status(row, now)

            if (current, target) not in ALLOWED_TRANSITIONS:
                raise ValidationError(
                    f"Cannot switch relay_auth_mode from {current.value} to {target.value} directly; "
                    f"switch through dual first",
                    details={"from": current.value, "to": target.value},
                )

            if target == RelayAuthMode.V1 and row.legacy_last_seen_at is not None:
                if now - row.legacy_last_seen_at < self.guard_window:
                    raise GuardrailViolation(
                        f"Cannot switch relay_auth_mode to v1: legacy relay traffic was observed at "
                        f"{row.legacy_last_seen_at.isoformat()} ({row.legacy_last_seen_bytes} bytes). "
                        f"Keep dual mode until no legacy traffic is seen for "
                        f"{self.settings.relay_legacy_guard_hours} hours.",
                        details={
                            "legacy_last_seen_at": row.legacy_last_seen_at.isoformat(),
                            "legacy_last_seen_bytes": row.legacy_last_seen_bytes,
                        },
                    )

            result = await session.execute(
                update(RelayAuthSettingRecord)
                .where(
                    RelayAuthSettingRecord.id == SETTINGS_ROW_ID,
                    RelayAuthSettingRecord.version == seen_version,
                )
                .values(mode=target.value, version=seen_version + 1, updated_at=now)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise ConflictError("Relay auth settings changed concurrently, retry the request")
            await session.commit()

            row = await session.get(RelayAuthSettingRecord, SETTINGS_ROW_ID, populate_existing=True)
            logger.info(f"Relay auth mode changed {current.value} -> {target.value}")
            return self._to_status(row, now)

    async def observe_usage(
        self,
        node_id: int,
        tagged_usage: Dict[str, int],
        now: Optional[datetime] = None,
    ) -> int:
        """Record legacy relay traffic reported by a node heartbeat"""
        legacy_bytes = legacy_relay_bytes(tagged_usage)
        if legacy_bytes <= 0:
            return 0

        now = now or self.clock.now()
        async with self.db.session() as session:
            await self._load_row(session)
            await session.execute(
                update(RelayAuthSettingRecord)
                .where(RelayAuthSettingRecord.id == SETTINGS_ROW_ID)
                .values(
                    legacy_last_seen_at=now,
                    legacy_last_seen_bytes=legacy_bytes,
                    version=RelayAuthSettingRecord.version + 1,
                )
            )
            await session.commit()
        logger.info(f"Legacy relay traffic observed via node {node_id}: {legacy_bytes} bytes")
        return legacy_bytes

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------
    async def target_inbound(self, session: AsyncSession, target_id: int) -> Optional[InboundRecord]:
        """Lowest-port enabled Shadowsocks inbound on the target node"""
        result = await session.execute(
            select(InboundRecord)
            .where(
                InboundRecord.node_id == target_id,
                InboundRecord.enable.is_(True),
                InboundRecord.protocol == RELAY_INBOUND_PROTOCOL,
            )
            .order_by(InboundRecord.listen_port.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    def _method_of(self, inbound: InboundRecord) -> str:
        try:
            method = json.loads(inbound.settings or "{}").get("method")
        except (json.JSONDecodeError, AttributeError):
            method = None
        return method or self.settings.relay_default_method

    async def resolve_relay(self, node: NodeRecord) -> Optional[RelayResolution]:
        """Where a relay node forwards, and the credential it presents"""
        if not node.is_relay or node.relay_target_id is None:
            return None
        token = (node.join_token or "").strip()
        if not token:
            logger.warning(f"Relay node {node.id} has no join token, skipping relay detour")
            return None

        async with self.db.session() as session:
            row = await self._load_row(session)
            mode = RelayAuthMode.from_setting(row.mode)
            target = await session.get(NodeRecord, node.relay_target_id)
            if target is None:
                logger.warning(f"Relay node {node.id} points at missing node {node.relay_target_id}")
                return None
            inbound = await self.target_inbound(session, target.id)
            if inbound is None:
                logger.warning(
                    f"Relay target {target.id} has no enabled shadowsocks inbound, "
                    f"skipping relay detour for node {node.id}"
                )
                return None

            password = token if mode == RelayAuthMode.LEGACY else derive_relay_password(token, target.id)
            return RelayResolution(
                target_id=target.id,
                target_ip=target.ip,
                port=inbound.listen_port,
                method=self._method_of(inbound),
                password=password,
                mode=mode,
            )

    async def relay_users_for(self, target_id: int) -> List[RelayUser]:
        """Users the target's Shadowsocks inbound accepts from its relays"""
        async with self.db.session() as session:
            row = await self._load_row(session)
            mode = RelayAuthMode.from_setting(row.mode)
            result = await session.execute(
                select(NodeRecord)
                .where(
                    NodeRecord.is_relay.is_(True),
                    NodeRecord.relay_target_id == target_id,
                    NodeRecord.is_enabled.is_(True),
                )
                .order_by(NodeRecord.id)
            )
            relays = result.scalars().all()

        users: List[RelayUser] = []
        for relay in relays:
            token = (relay.join_token or "").strip()
            if not token:
                continue
            derived = derive_relay_password(token, target_id)
            if mode == RelayAuthMode.LEGACY:
                users.append(RelayUser(name=relay_user_name(relay.id), password=token))
            elif mode == RelayAuthMode.V1:
                users.append(RelayUser(name=relay_user_name(relay.id), password=derived))
            else:
                users.append(RelayUser(name=relay_user_name(relay.id), password=derived))
                users.append(RelayUser(name=relay_user_name(relay.id, legacy=True), password=token))
        return users

    @staticmethod
    def relay_outbound(resolution: RelayResolution) -> dict:
        return {
            "type": "shadowsocks",
            "tag": RELAY_OUTBOUND_TAG,
            "server": resolution.target_ip,
            "server_port": resolution.port,
            "method": resolution.method,
            "password": resolution.password,
        }

    async def validate_target(self, session: AsyncSession, node_id: int, target_id: int):
        """Reject self-targets and relay chains that loop back"""
        if target_id == node_id:
            raise ValidationError("A relay node cannot target itself")
        seen = {node_id}
        current = target_id
        while current is not None:
            if current in seen:
                raise ValidationError(f"Relay target {target_id} would create a cycle")
            seen.add(current)
            target = await session.get(NodeRecord, current)
            if target is None:
                raise ValidationError(f"Relay target node {current} does not exist")
            current = target.relay_target_id if target.is_relay else None
