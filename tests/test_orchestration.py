"""
Tests for the orchestration entry point
"""

import json

import pytest

from vpnfleet.core.exceptions import ConflictError, NotFoundError
from vpnfleet.models.inbound import InboundTemplateCreate
from vpnfleet.models.node import NodeCreate, NodeStatus
from vpnfleet.models.orm import PlanInboundRecord
from vpnfleet.models.sni import ProbeResult, SniEntryCreate


@pytest.fixture
async def pooled(sni_service):
    await sni_service.add_domain(SniEntryCreate(domain="first.com", tier=0))
    await sni_service.add_domain(SniEntryCreate(domain="second.com", tier=1))


@pytest.fixture
async def member(orchestration, group):
    node = await orchestration.create_node(NodeCreate(name="member", ip="10.9.0.1", group_ids=[group.id]))
    return node


@pytest.mark.asyncio
async def test_sync_node_renders_group_templates(
    orchestration, template_service, member, reality_template_data, shadowsocks_template_data, pooled
):
    await template_service.create_template(reality_template_data)
    await template_service.create_template(shadowsocks_template_data)

    result = await orchestration.sync_node(member.id)

    assert result.success is True
    assert len(result.details["inbounds"]) == 2
    node = await orchestration.nodes.get_node(member.id)
    assert node.config_version > member.config_version
    assert node.masking_domain == "first.com"


@pytest.mark.asyncio
async def test_sync_node_isolates_template_failures(
    orchestration, template_service, member, group, shadowsocks_template_data
):
    """The reality template fails on an empty pool, shadowsocks still renders"""
    await template_service.create_template(shadowsocks_template_data)
    broken = await template_service.create_template(InboundTemplateCreate(
        name="Needs SNI",
        protocol="trojan",
        stream_settings_template=json.dumps({"security": "tls", "tlsSettings": {"serverName": "{{sni}}"}}),
        target_group_id=group.id,
    ))

    result = await orchestration.sync_node(member.id)

    assert result.success is False
    assert len(result.details["inbounds"]) == 1
    assert str(broken.id) in result.details["failed"]


@pytest.mark.asyncio
async def test_sync_is_idempotent(orchestration, template_service, member, shadowsocks_template_data):
    await template_service.create_template(shadowsocks_template_data)
    first = await orchestration.sync_node(member.id)
    second = await orchestration.sync_node(member.id)
    assert first.details["inbounds"] == second.details["inbounds"]


@pytest.mark.asyncio
async def test_sync_group_reports_per_node(orchestration, template_service, group, shadowsocks_template_data):
    await template_service.create_template(shadowsocks_template_data)
    for i in range(3):
        await orchestration.create_node(NodeCreate(name=f"n{i}", ip=f"10.8.0.{i + 1}", group_ids=[group.id]))

    result = await orchestration.sync_group(group.id)

    assert result.success is True
    assert len(result.details["nodes"]) == 3


@pytest.mark.asyncio
async def test_rotate_node_sni_rerenders(orchestration, template_service, member, reality_template_data, pooled):
    await template_service.create_template(reality_template_data)
    await orchestration.sync_node(member.id)

    result = await orchestration.rotate_node_sni(member.id)

    assert result.success is True
    assert result.details["old_sni"] == "first.com"
    assert result.details["sni"] == "second.com"
    inbound = (await template_service.list_inbounds(member.id))[0]
    assert json.loads(inbound.stream_settings)["realitySettings"]["serverNames"] == ["second.com"]


@pytest.mark.asyncio
async def test_rotate_node_sni_with_empty_pool(orchestration, member):
    result = await orchestration.rotate_node_sni(member.id)
    assert result.success is False


@pytest.mark.asyncio
async def test_blacklist_moves_nodes_off_domain(orchestration, template_service, member, reality_template_data, pooled):
    await template_service.create_template(reality_template_data)
    await orchestration.sync_node(member.id)

    result = await orchestration.blacklist_sni("first.com", "blocked")

    assert str(member.id) in result.details["reassigned"]
    assert (await orchestration.nodes.get_node(member.id)).masking_domain == "second.com"


@pytest.mark.asyncio
async def test_failed_probe_reassigns_nodes(orchestration, member, pooled):
    await orchestration.sni.auto_assign(member.id)
    result = await orchestration.record_probe(
        ProbeResult(domain="first.com", healthy=False, blacklist_reason="RST on handshake")
    )
    assert str(member.id) in result.details["reassigned"]


@pytest.mark.asyncio
async def test_restart_node_reports_success(orchestration, ssh_service, member):
    result = await orchestration.restart_node(member.id)
    assert result.success is True
    assert ssh_service.restarted == [member.id]


@pytest.mark.asyncio
async def test_restart_failure_is_reported(orchestration, ssh_service, member):
    ssh_service.fail = True
    result = await orchestration.restart_node(member.id)
    assert result.success is False
    assert "SSH connection" in result.reason


@pytest.mark.asyncio
async def test_relay_mode_change_signals_nodes(orchestration, member):
    before = (await orchestration.nodes.get_node(member.id)).config_version

    changed = await orchestration.set_relay_auth_mode("legacy")
    unchanged = await orchestration.set_relay_auth_mode("legacy")

    assert changed.reason == "changed"
    assert unchanged.reason == "unchanged"
    assert (await orchestration.nodes.get_node(member.id)).config_version == before + 1


@pytest.mark.asyncio
async def test_disabling_relay_signals_its_target(orchestration, member):
    relay = await orchestration.create_node(
        NodeCreate(name="relay", ip="10.9.0.2", is_relay=True, relay_target_id=member.id)
    )
    before = (await orchestration.nodes.get_node(member.id)).config_version

    await orchestration.set_node_enabled(relay.id, False)

    assert (await orchestration.nodes.get_node(member.id)).config_version == before + 1


@pytest.mark.asyncio
async def test_mark_installing(orchestration, member):
    result = await orchestration.mark_installing(member.id)
    assert result.details["status"] == NodeStatus.INSTALLING.value


@pytest.mark.asyncio
async def test_delete_inbound_refused_while_sold(db, orchestration, template_service, member, shadowsocks_template_data):
    await template_service.create_template(shadowsocks_template_data)
    await orchestration.sync_node(member.id)
    inbound = (await template_service.list_inbounds(member.id))[0]
    async with db.session() as session:
        async with session.begin():
            session.add(PlanInboundRecord(plan_id=7, inbound_id=inbound.id))

    with pytest.raises(ConflictError):
        await orchestration.delete_inbound(inbound.id)


@pytest.mark.asyncio
async def test_delete_inbound(orchestration, template_service, member, shadowsocks_template_data):
    await template_service.create_template(shadowsocks_template_data)
    await orchestration.sync_node(member.id)
    inbound = (await template_service.list_inbounds(member.id))[0]

    result = await orchestration.delete_inbound(inbound.id)

    assert result.success is True
    with pytest.raises(NotFoundError):
        await template_service.get_inbound(inbound.id)


@pytest.mark.asyncio
async def test_delete_template_orphans_inbounds(orchestration, template_service, member, group):
    template = await template_service.create_template(InboundTemplateCreate(
        name="Rotating",
        protocol="shadowsocks",
        target_group_id=group.id,
        renew_interval_mins=30,
    ))
    await orchestration.sync_node(member.id)

    await template_service.delete_template(template.id)

    inbound = (await template_service.list_inbounds(member.id))[0]
    assert inbound.template_id is None
    assert inbound.renew_interval_mins == 0
