"""
Tests for the health monitor
"""

import pytest

from vpnfleet.models.heartbeat import HeartbeatReport
from vpnfleet.models.node import NodeStatus
from vpnfleet.models.orm import EdgeFrontendRecord
from vpnfleet.services.health_monitor import HealthMonitor
from vpnfleet.services.keys import hash_token


@pytest.fixture
def monitor(db, settings, clock):
    return HealthMonitor(db, settings, clock)


@pytest.mark.asyncio
async def test_silent_node_goes_offline(monitor, heartbeat_service, node_service, make_node, clock):
    node = await make_node()
    await heartbeat_service.ingest(node.join_token, HeartbeatReport())
    assert (await node_service.get_node(node.id)).status == NodeStatus.ACTIVE

    clock.advance(seconds=60)
    counts = await monitor.tick()
    assert counts["nodes"] == 0
    assert (await node_service.get_node(node.id)).status == NodeStatus.ACTIVE

    clock.advance(seconds=31)
    counts = await monitor.tick()
    assert counts["nodes"] == 1
    assert (await node_service.get_node(node.id)).status == NodeStatus.OFFLINE


@pytest.mark.asyncio
async def test_tick_is_idempotent(monitor, heartbeat_service, make_node, clock):
    node = await make_node()
    await heartbeat_service.ingest(node.join_token, HeartbeatReport())
    clock.advance(seconds=200)

    assert (await monitor.tick())["nodes"] == 1
    assert (await monitor.tick())["nodes"] == 0


@pytest.mark.asyncio
async def test_never_seen_and_errored_nodes_are_left_alone(
    monitor, heartbeat_service, node_service, make_node, clock
):
    fresh = await make_node()
    broken = await make_node()
    await heartbeat_service.ingest(broken.join_token, HeartbeatReport(status="error", error="xray crashed"))
    clock.advance(hours=1)

    await monitor.tick()

    assert (await node_service.get_node(fresh.id)).status == NodeStatus.NEW
    assert (await node_service.get_node(broken.id)).status == NodeStatus.ERROR


@pytest.mark.asyncio
async def test_offline_node_recovers_on_heartbeat(monitor, heartbeat_service, node_service, make_node, clock):
    node = await make_node()
    await heartbeat_service.ingest(node.join_token, HeartbeatReport())
    clock.advance(seconds=120)
    await monitor.tick()

    await heartbeat_service.ingest(node.join_token, HeartbeatReport())
    assert (await node_service.get_node(node.id)).status == NodeStatus.ACTIVE


@pytest.mark.asyncio
async def test_silent_frontend_goes_offline(db, monitor, heartbeat_service, clock):
    async with db.session() as session:
        async with session.begin():
            session.add(EdgeFrontendRecord(
                domain="edge.example.com",
                ip_address="203.0.113.5",
                auth_token_hash=hash_token("edge-token"),
                status="offline",
            ))
    await heartbeat_service.ingest_frontend("edge-token")

    clock.advance(seconds=91)
    counts = await monitor.tick()
    assert counts["frontends"] == 1
