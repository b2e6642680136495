"""
Tests for Node Service
"""

import pytest

from vpnfleet.core.exceptions import ConflictError, NotFoundError, ValidationError
from vpnfleet.models.node import NodeCreate, NodeStatus, NodeUpdate
from vpnfleet.models.orm import PlanInboundRecord


@pytest.mark.asyncio
async def test_create_node(node_service):
    """Test node creation"""
    node = await node_service.create_node(NodeCreate(
        name="test-node",
        ip="192.168.1.100",
        ssh_user="root",
        ssh_password="password",
    ))

    assert node.ip == "192.168.1.100"
    assert node.name == "test-node"
    assert node.status == NodeStatus.NEW
    assert node.is_enabled is True
    assert node.join_token
    assert node.reality_public_key
    assert len(node.short_id) == 16
    assert node.masking_domain_locked is False


@pytest.mark.asyncio
async def test_join_tokens_are_unique(make_node):
    first = await make_node()
    second = await make_node()
    assert first.join_token != second.join_token


@pytest.mark.asyncio
async def test_duplicate_ip_conflicts(node_service, make_node):
    await make_node(ip="192.168.1.101")
    with pytest.raises(ConflictError):
        await node_service.create_node(NodeCreate(name="dup", ip="192.168.1.101"))


def test_invalid_ip_is_rejected():
    with pytest.raises(ValueError):
        NodeCreate(name="bad", ip="not-an-ip")


@pytest.mark.asyncio
async def test_manual_masking_domain_is_locked(make_node):
    node = await make_node(masking_domain=" WWW.Example.COM ")
    assert node.masking_domain == "www.example.com"
    assert node.masking_domain_locked is True


@pytest.mark.asyncio
async def test_get_node(node_service, make_node):
    """Test getting node by id"""
    created = await make_node(name="get-test-node")
    node = await node_service.get_node(created.id)
    assert node.name == "get-test-node"

    with pytest.raises(NotFoundError):
        await node_service.get_node(9999)


@pytest.mark.asyncio
async def test_update_node_bumps_config_version(node_service, make_node):
    """Test node update"""
    node = await make_node(name="update-node")
    updated = await node_service.update_node(node.id, NodeUpdate(name="updated-node"))

    assert updated.name == "updated-node"
    assert updated.config_version == node.config_version + 1


@pytest.mark.asyncio
async def test_lifecycle_only_moves_forward(node_service, make_node):
    node = await make_node()
    installing = await node_service.transition(node.id, NodeStatus.INSTALLING)
    assert installing.status == NodeStatus.INSTALLING

    with pytest.raises(ConflictError):
        await node_service.transition(node.id, NodeStatus.NEW)
    with pytest.raises(ConflictError):
        await node_service.transition(node.id, NodeStatus.OFFLINE)


@pytest.mark.asyncio
async def test_relay_requires_target(node_service):
    with pytest.raises(ValidationError):
        await node_service.create_node(NodeCreate(name="relay", ip="10.1.1.1", is_relay=True))


@pytest.mark.asyncio
async def test_delete_node(node_service, make_node):
    """Test node deletion"""
    node = await make_node()
    assert await node_service.delete_node(node.id) is True
    with pytest.raises(NotFoundError):
        await node_service.get_node(node.id)


@pytest.mark.asyncio
async def test_delete_clears_relays_pointing_at_node(node_service, make_node):
    target = await make_node()
    relay = await make_node(is_relay=True, relay_target_id=target.id)

    await node_service.delete_node(target.id)

    orphan = await node_service.get_node(relay.id)
    assert orphan.is_relay is False
    assert orphan.relay_target_id is None
    assert orphan.config_version == relay.config_version + 1


@pytest.mark.asyncio
async def test_delete_refused_while_sold(db, node_service, engine, template_service, make_node, shadowsocks_template_data):
    node = await make_node()
    template = await template_service.create_template(shadowsocks_template_data)
    inbound = await engine.apply_template(template.id, node.id)
    async with db.session() as session:
        async with session.begin():
            session.add(PlanInboundRecord(plan_id=1, inbound_id=inbound.id))

    with pytest.raises(ConflictError):
        await node_service.delete_node(node.id)


@pytest.mark.asyncio
async def test_capacity_by_group(node_service, group_service, make_node, group):
    member = await make_node()
    await make_node()
    await group_service.add_member(group.id, member.id)

    capacity = await node_service.capacity(group.id)
    assert [c.node_id for c in capacity] == [member.id]
    assert len(await node_service.capacity()) == 2
