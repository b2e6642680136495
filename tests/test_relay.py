"""
Tests for relay topology and the relay credential mode guardrail
"""

import json

import pytest
from sqlalchemy import update

from vpnfleet.core.exceptions import ConflictError, GuardrailViolation, ValidationError
from vpnfleet.models.node import RelayAssignment
from vpnfleet.models.orm import InboundRecord, NodeRecord, RelayAuthSettingRecord
from vpnfleet.models.relay import RelayAuthMode
from vpnfleet.services.keys import derive_relay_password
from vpnfleet.services.relay_service import legacy_relay_bytes, parse_requested_mode


async def _add_shadowsocks(db, node_id, port, method="aes-128-gcm", enable=True):
    async with db.session() as session:
        async with session.begin():
            session.add(InboundRecord(
                node_id=node_id,
                tag=f"ss_{port}",
                protocol="shadowsocks",
                listen_port=port,
                settings=json.dumps({"method": method, "password": "own-secret"}),
                stream_settings=json.dumps({"network": "tcp"}),
                enable=enable,
            ))


@pytest.mark.asyncio
async def test_default_mode_is_dual(relay_service):
    status = await relay_service.status()
    assert status.mode == RelayAuthMode.DUAL
    assert status.v1_ready is True


@pytest.mark.asyncio
async def test_v1_blocked_shortly_after_legacy_traffic(relay_service, make_node, clock):
    """Legacy bytes seen ten minutes ago keep the switch closed"""
    node = await make_node()
    await relay_service.observe_usage(node.id, {"relay_7_legacy": 4096})
    clock.advance(minutes=10)

    with pytest.raises(GuardrailViolation) as exc:
        await relay_service.set_mode("v1")
    assert "4096" in str(exc.value)
    assert (await relay_service.get_mode()) == RelayAuthMode.DUAL


@pytest.mark.asyncio
async def test_v1_allowed_after_guard_window(relay_service, make_node, clock):
    node = await make_node()
    await relay_service.observe_usage(node.id, {"relay_7_legacy": 4096})
    clock.advance(hours=25)

    status = await relay_service.set_mode("v1")
    assert status.mode == RelayAuthMode.V1


@pytest.mark.asyncio
async def test_non_legacy_usage_is_ignored(relay_service, make_node):
    node = await make_node()
    assert await relay_service.observe_usage(node.id, {"relay_7": 999, "tpl_vless": 10}) == 0
    assert (await relay_service.status()).legacy_last_seen_at is None


def test_legacy_relay_bytes():
    assert legacy_relay_bytes({"relay_1_legacy": 10, "relay_2_legacy": 5, "relay_3": 100}) == 15
    assert legacy_relay_bytes({}) == 0


@pytest.mark.asyncio
async def test_legacy_to_v1_without_legacy_traffic(relay_service):
    await relay_service.set_mode("legacy")
    status = await relay_service.set_mode("v1")
    assert status.mode == RelayAuthMode.V1


@pytest.mark.asyncio
async def test_legacy_to_v1_after_guard_window(relay_service, make_node, clock):
    node = await make_node()
    await relay_service.set_mode("legacy")
    await relay_service.observe_usage(node.id, {"relay_7_legacy": 512})
    clock.advance(hours=25)

    status = await relay_service.set_mode("v1")
    assert status.mode == RelayAuthMode.V1


@pytest.mark.asyncio
async def test_legacy_to_v1_blocked_within_guard_window(relay_service, make_node, clock):
    node = await make_node()
    await relay_service.set_mode("legacy")
    await relay_service.observe_usage(node.id, {"relay_7_legacy": 512})
    clock.advance(hours=23)

    with pytest.raises(GuardrailViolation):
        await relay_service.set_mode("v1")
    assert (await relay_service.get_mode()) == RelayAuthMode.LEGACY


@pytest.mark.asyncio
async def test_direct_v1_to_legacy_is_rejected(relay_service):
    await relay_service.set_mode("v1")
    with pytest.raises(ValidationError):
        await relay_service.set_mode("legacy")


def test_unknown_requested_mode_is_rejected():
    with pytest.raises(ValidationError):
        parse_requested_mode("strict")
    assert parse_requested_mode("hashed") == RelayAuthMode.V1


def test_stored_mode_falls_back_to_dual():
    assert RelayAuthMode.from_setting("garbage") == RelayAuthMode.DUAL
    assert RelayAuthMode.from_setting(None) == RelayAuthMode.DUAL


@pytest.mark.asyncio
async def test_mode_change_bumps_version(relay_service):
    before = await relay_service.status()
    after = await relay_service.set_mode("legacy")
    assert after.version == before.version + 1

    unchanged = await relay_service.set_mode("legacy")
    assert unchanged.version == after.version


@pytest.mark.asyncio
async def test_relay_cannot_target_itself(node_service, make_node):
    node = await make_node()
    with pytest.raises(ValidationError):
        await node_service.set_relay(node.id, RelayAssignment(is_relay=True, relay_target_id=node.id))


@pytest.mark.asyncio
async def test_relay_cycle_is_rejected(node_service, make_node):
    a = await make_node()
    b = await make_node(is_relay=True, relay_target_id=a.id)
    with pytest.raises(ValidationError):
        await node_service.set_relay(a.id, RelayAssignment(is_relay=True, relay_target_id=b.id))


@pytest.mark.asyncio
async def test_resolve_relay_uses_lowest_port_shadowsocks(db, relay_service, make_node):
    target = await make_node()
    relay = await make_node(is_relay=True, relay_target_id=target.id)
    await _add_shadowsocks(db, target.id, 31000, method="aes-256-gcm")
    await _add_shadowsocks(db, target.id, 30500)
    await _add_shadowsocks(db, target.id, 30000, enable=False)

    async with db.session() as session:
        record = await session.get(NodeRecord, relay.id)
    resolution = await relay_service.resolve_relay(record)

    assert resolution.target_ip == target.ip
    assert resolution.port == 30500
    assert resolution.method == "aes-128-gcm"
    assert resolution.password == derive_relay_password(relay.join_token, target.id)


@pytest.mark.asyncio
async def test_resolve_relay_without_shadowsocks_inbound(db, relay_service, make_node):
    target = await make_node()
    relay = await make_node(is_relay=True, relay_target_id=target.id)
    async with db.session() as session:
        record = await session.get(NodeRecord, relay.id)
    assert await relay_service.resolve_relay(record) is None


@pytest.mark.asyncio
async def test_relay_passwords_follow_mode(db, relay_service, make_node):
    target = await make_node()
    relay = await make_node(is_relay=True, relay_target_id=target.id)
    derived = derive_relay_password(relay.join_token, target.id)

    users = await relay_service.relay_users_for(target.id)
    assert {(u.name, u.password) for u in users} == {
        (f"relay_{relay.id}", derived),
        (f"relay_{relay.id}_legacy", relay.join_token),
    }

    await relay_service.set_mode("legacy")
    users = await relay_service.relay_users_for(target.id)
    assert [(u.name, u.password) for u in users] == [(f"relay_{relay.id}", relay.join_token)]

    await relay_service.set_mode("dual")
    await relay_service.set_mode("v1")
    users = await relay_service.relay_users_for(target.id)
    assert [(u.name, u.password) for u in users] == [(f"relay_{relay.id}", derived)]


def test_derived_password_is_stable():
    assert derive_relay_password(" token ", 3) == derive_relay_password("token", 3)
    assert derive_relay_password("token", 3) != derive_relay_password("token", 4)


@pytest.mark.asyncio
async def test_stale_version_is_rejected(db, relay_service, monkeypatch):
    """A write racing the guardrail check loses the compare-and-swap"""
    original = relay_service._load_row

    async def racing_load(session):
        row = await original(session)
        async with db.session() as other:
            async with other.begin():
                await other.execute(
                    update(RelayAuthSettingRecord).values(version=RelayAuthSettingRecord.version + 1)
                )
        return row

    await relay_service.status()
    monkeypatch.setattr(relay_service, "_load_row", racing_load)
    with pytest.raises(ConflictError):
        await relay_service.set_mode("legacy")
