"""
Tests for the inbound rotation scheduler
"""

import asyncio
import json

import pytest

from vpnfleet.models.inbound import InboundTemplateCreate, InboundTemplateUpdate
from vpnfleet.models.node import NodeCreate
from vpnfleet.services.rotation_scheduler import RotationScheduler


@pytest.fixture
def scheduler(db, settings, engine, node_service, clock):
    return RotationScheduler(db, settings, engine, node_service, clock)


async def _hourly_template(template_service, group, name="Hourly SS", port_start=30000):
    return await template_service.create_template(InboundTemplateCreate(
        name=name,
        protocol="shadowsocks",
        settings_template=json.dumps({"method": "aes-128-gcm"}),
        target_group_id=group.id,
        port_range_start=port_start,
        port_range_end=port_start + 100,
        renew_interval_mins=60,
    ))


@pytest.mark.asyncio
async def test_rotation_waits_for_interval(scheduler, engine, template_service, make_node, group, clock):
    """Rendered at T, due at T+60m, not again until T+120m"""
    node = await make_node()
    template = await _hourly_template(template_service, group)
    inbound = await engine.apply_template(template.id, node.id, now=clock.now())
    secret = json.loads(inbound.settings)["password"]

    clock.advance(minutes=59)
    report = await scheduler.tick()
    assert report.checked == 0
    assert report.rotated == []

    clock.advance(minutes=2)
    report = await scheduler.tick()
    assert report.rotated == [inbound.id]
    rotated = await template_service.get_inbound(inbound.id)
    assert json.loads(rotated.settings)["password"] != secret
    assert rotated.last_rotated_at == clock.now()

    clock.advance(minutes=30)
    assert (await scheduler.tick()).rotated == []
    clock.advance(minutes=31)
    assert (await scheduler.tick()).rotated == [inbound.id]


@pytest.mark.asyncio
async def test_zero_interval_never_rotates(
    scheduler, engine, template_service, make_node, shadowsocks_template_data, clock
):
    node = await make_node()
    template = await template_service.create_template(shadowsocks_template_data)
    await engine.apply_template(template.id, node.id, now=clock.now())

    clock.advance(days=365)
    report = await scheduler.tick()
    assert report.checked == 0


@pytest.mark.asyncio
async def test_disabled_inbound_is_skipped(scheduler, engine, template_service, make_node, group, clock):
    node = await make_node()
    template = await _hourly_template(template_service, group)
    inbound = await engine.apply_template(template.id, node.id, now=clock.now())
    await template_service.set_inbound_enabled(inbound.id, False)

    clock.advance(hours=2)
    assert (await scheduler.tick()).checked == 0


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_batch(
    scheduler, engine, template_service, node_service, make_node, group, clock
):
    good_node = await make_node()
    bad_node = await make_node()
    good_template = await _hourly_template(template_service, group, name="Good")
    bad_template = await _hourly_template(template_service, group, name="Bad", port_start=31000)
    good = await engine.apply_template(good_template.id, good_node.id, now=clock.now())
    bad = await engine.apply_template(bad_template.id, bad_node.id, now=clock.now())
    await template_service.update_template(
        bad_template.id,
        InboundTemplateUpdate(stream_settings_template=json.dumps({"security": "bogus"})),
    )
    version_before = (await node_service.get_node(good_node.id)).config_version

    clock.advance(minutes=61)
    report = await scheduler.tick()

    assert report.checked == 2
    assert report.rotated == [good.id]
    assert bad.id in report.failed
    assert (await node_service.get_node(good_node.id)).config_version == version_before + 1
    unchanged = await template_service.get_inbound(bad.id)
    assert unchanged.settings == bad.settings


@pytest.mark.asyncio
async def test_scheduler_stops_on_signal(db, settings, engine, node_service, clock):
    stop = asyncio.Event()
    scheduler = RotationScheduler(db, settings, engine, node_service, clock, stop_event=stop)

    await scheduler.start()
    assert scheduler.running
    await scheduler.stop()
    assert not scheduler.running
    assert stop.is_set()


@pytest.mark.asyncio
async def test_template_switched_to_static_stops_rotating(
    scheduler, engine, template_service, make_node, group, clock
):
    node = await make_node()
    template = await _hourly_template(template_service, group)
    inbound = await engine.apply_template(template.id, node.id, now=clock.now())

    await template_service.update_template(template.id, InboundTemplateUpdate(renew_interval_mins=0))

    clock.advance(minutes=61)
    report = await scheduler.tick()
    assert report.rotated == []
    assert (await template_service.get_inbound(inbound.id)).renew_interval_mins == 0


@pytest.mark.asyncio
async def test_template_given_interval_starts_rotating(
    scheduler, engine, template_service, make_node, shadowsocks_template_data, clock
):
    node = await make_node()
    template = await template_service.create_template(shadowsocks_template_data)
    inbound = await engine.apply_template(template.id, node.id, now=clock.now())

    await template_service.update_template(template.id, InboundTemplateUpdate(renew_interval_mins=30))

    clock.advance(minutes=31)
    assert (await scheduler.tick()).rotated == [inbound.id]


@pytest.mark.asyncio
async def test_template_update_resyncs_group(orchestration, template_service, group, shadowsocks_template_data):
    template = await template_service.create_template(shadowsocks_template_data)
    node = await orchestration.create_node(NodeCreate(name="late", ip="10.7.0.1", group_ids=[group.id]))
    assert await template_service.list_inbounds(node.id) == []

    await orchestration.update_template(template.id, InboundTemplateUpdate(renew_interval_mins=15))

    inbounds = await template_service.list_inbounds(node.id)
    assert len(inbounds) == 1
    assert inbounds[0].renew_interval_mins == 15


@pytest.mark.asyncio
async def test_port_rotation_opt_in(scheduler, engine, template_service, make_node, group, clock):
    """Ports move within the range and never onto another inbound of the node"""
    node = await make_node()
    fixed = await template_service.create_template(InboundTemplateCreate(
        name="Fixed SS",
        protocol="shadowsocks",
        target_group_id=group.id,
        port_range_start=40001,
        port_range_end=40001,
    ))
    moving = await template_service.create_template(InboundTemplateCreate(
        name="Moving SS",
        protocol="shadowsocks",
        target_group_id=group.id,
        port_range_start=40000,
        port_range_end=40003,
        renew_interval_mins=60,
        rotate_port=True,
    ))
    await engine.apply_template(fixed.id, node.id, now=clock.now())
    inbound = await engine.apply_template(moving.id, node.id, now=clock.now())

    ports = {inbound.listen_port}
    for _ in range(8):
        clock.advance(minutes=61)
        assert (await scheduler.tick()).rotated == [inbound.id]
        ports.add((await template_service.get_inbound(inbound.id)).listen_port)

    assert len(ports) > 1
    assert ports <= {40000, 40002, 40003}


@pytest.mark.asyncio
async def test_port_kept_without_opt_in(scheduler, engine, template_service, make_node, group, clock):
    node = await make_node()
    template = await _hourly_template(template_service, group)
    inbound = await engine.apply_template(template.id, node.id, now=clock.now())

    clock.advance(minutes=61)
    await scheduler.tick()
    assert (await template_service.get_inbound(inbound.id)).listen_port == inbound.listen_port
