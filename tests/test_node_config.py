"""
Tests for the node configuration document
"""

import pytest

from vpnfleet.models.node import RelayAssignment
from vpnfleet.models.sni import SniEntryCreate
from vpnfleet.services.keys import derive_relay_password
from vpnfleet.services.relay_service import RELAY_OUTBOUND_TAG


@pytest.fixture
async def pooled(sni_service):
    await sni_service.add_domain(SniEntryCreate(domain="www.microsoft.com"))


@pytest.mark.asyncio
async def test_empty_node_routes_direct(config_service, make_node):
    node = await make_node()
    document = await config_service.build(node.id)

    assert document.config["inbounds"] == []
    assert document.config["outbounds"] == [{"type": "direct", "tag": "direct"}]
    assert document.config["route"]["final"] == "direct"
    assert document.config_version == node.config_version


@pytest.mark.asyncio
async def test_reality_inbound_entry(config_service, engine, template_service, make_node, reality_template_data, pooled):
    node = await make_node()
    template = await template_service.create_template(reality_template_data)
    inbound = await engine.apply_template(template.id, node.id)

    document = await config_service.build(node.id)

    entry = document.config["inbounds"][0]
    assert entry["type"] == "vless"
    assert entry["listen_port"] == inbound.listen_port
    assert entry["users"][0]["flow"] == "xtls-rprx-vision"
    assert entry["tls"]["server_name"] == "www.microsoft.com"
    assert entry["tls"]["reality"]["handshake"] == {"server": "www.microsoft.com", "server_port": 443}


@pytest.mark.asyncio
async def test_hash_is_stable_and_tracks_changes(config_service, engine, template_service, make_node, shadowsocks_template_data):
    node = await make_node()
    template = await template_service.create_template(shadowsocks_template_data)
    inbound = await engine.apply_template(template.id, node.id)

    first = await config_service.build(node.id)
    second = await config_service.build(node.id)
    assert first.hash == second.hash

    await template_service.set_inbound_enabled(inbound.id, False)
    assert (await config_service.build(node.id)).hash != first.hash


@pytest.mark.asyncio
async def test_relay_detour_and_target_users(
    config_service, engine, template_service, node_service, make_node, shadowsocks_template_data
):
    target = await make_node()
    relay = await make_node()
    template = await template_service.create_template(shadowsocks_template_data)
    inbound = await engine.apply_template(template.id, target.id)
    await node_service.set_relay(relay.id, RelayAssignment(is_relay=True, relay_target_id=target.id))

    relay_doc = await config_service.build(relay.id)
    outbound = relay_doc.config["outbounds"][1]
    assert outbound["tag"] == RELAY_OUTBOUND_TAG
    assert outbound["server"] == target.ip
    assert outbound["server_port"] == inbound.listen_port
    assert outbound["password"] == derive_relay_password(relay.join_token, target.id)
    assert relay_doc.config["route"]["final"] == RELAY_OUTBOUND_TAG

    target_doc = await config_service.build(target.id)
    names = [u["name"] for u in target_doc.config["inbounds"][0]["users"]]
    assert names == [inbound.tag, f"relay_{relay.id}", f"relay_{relay.id}_legacy"]


@pytest.mark.asyncio
async def test_relay_without_target_inbound_routes_direct(config_service, node_service, make_node):
    target = await make_node()
    relay = await make_node(is_relay=True, relay_target_id=target.id)

    document = await config_service.build(relay.id)
    assert document.config["route"]["final"] == "direct"
