"""
Pytest configuration and fixtures for fleet controller tests
"""

import json
import random
from datetime import datetime
from typing import AsyncGenerator

import pytest

from vpnfleet.core.clock import ManualClock
from vpnfleet.core.config import Settings
from vpnfleet.core.database import Database
from vpnfleet.core.exceptions import RemoteExecutionError
from vpnfleet.models.inbound import InboundTemplateCreate
from vpnfleet.models.node import NodeCreate, NodeGroupCreate
from vpnfleet.services.capacity import CapacityEstimator
from vpnfleet.services.group_service import GroupService
from vpnfleet.services.heartbeat_service import HeartbeatService
from vpnfleet.services.node_config_service import NodeConfigService
from vpnfleet.services.node_service import NodeService
from vpnfleet.services.orchestration_service import OrchestrationService
from vpnfleet.services.relay_service import RelayService
from vpnfleet.services.sni_pool_service import SniPoolService
from vpnfleet.services.template_engine import TemplateEngine
from vpnfleet.services.template_service import TemplateService


START = datetime(2024, 1, 1, 12, 0, 0)

REALITY_STREAM = {
    "network": "tcp",
    "security": "reality",
    "realitySettings": {
        "dest": "{{sni}}:443",
        "serverNames": ["{{sni}}"],
        "privateKey": "{{reality_private}}",
        "shortIds": ["{{REALITY_SID}}"],
    },
}


class FakeSSHService:
    """Records restart requests instead of connecting anywhere"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.restarted = []

    async def restart_node_agent(self, node):
        if self.fail:
            raise RemoteExecutionError(f"SSH connection to {node.ip} failed: timed out")
        self.restarted.append(node.id)
        return {"ok": True, "log": "active"}


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment"""
    return Settings(
        secret_key="test-secret-key",
        admin_username="admin",
        admin_password="adminpass123",
        background_tasks_enabled=False,
        log_format="text",
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
async def db(tmp_path) -> AsyncGenerator[Database, None]:
    """Fresh SQLite file database per test"""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'fleet.db'}")
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def sni_service(db, settings) -> SniPoolService:
    return SniPoolService(db, settings)


@pytest.fixture
def relay_service(db, settings, clock) -> RelayService:
    return RelayService(db, settings, clock)


@pytest.fixture
def node_service(db, settings, relay_service) -> NodeService:
    return NodeService(db, settings, relay_service)


@pytest.fixture
def group_service(db) -> GroupService:
    return GroupService(db)


@pytest.fixture
def template_service(db) -> TemplateService:
    return TemplateService(db)


@pytest.fixture
def engine(db, settings, sni_service) -> TemplateEngine:
    return TemplateEngine(db, settings, sni_service, rng=random.Random(7))


@pytest.fixture
def config_service(db, relay_service) -> NodeConfigService:
    return NodeConfigService(db, relay_service)


@pytest.fixture
def heartbeat_service(db, settings, sni_service, relay_service, config_service, engine, clock) -> HeartbeatService:
    return HeartbeatService(
        db,
        settings,
        sni_service=sni_service,
        relay_service=relay_service,
        estimator=CapacityEstimator(settings),
        config_builder=config_service,
        clock=clock,
        engine=engine,
    )


@pytest.fixture
def ssh_service() -> FakeSSHService:
    return FakeSSHService()


@pytest.fixture
def orchestration(db, settings, clock, ssh_service) -> OrchestrationService:
    return OrchestrationService(db, settings, clock, ssh_service=ssh_service)


@pytest.fixture
def make_node(node_service):
    """Factory creating nodes with unique addresses"""
    counter = {"n": 0}

    async def _make(**overrides):
        counter["n"] += 1
        data = {"name": f"node-{counter['n']}", "ip": f"10.0.0.{counter['n']}"}
        data.update(overrides)
        return await node_service.create_node(NodeCreate(**data))

    return _make


@pytest.fixture
async def group(group_service):
    return await group_service.create_group(NodeGroupCreate(name="Europe", slug="eu"))


@pytest.fixture
def reality_template_data(group):
    """VLESS Reality template targeting the test group"""
    return InboundTemplateCreate(
        name="VLESS Reality",
        protocol="vless",
        settings_template=json.dumps({"clients": [], "decryption": "none"}),
        stream_settings_template=json.dumps(REALITY_STREAM),
        target_group_id=group.id,
        port_range_start=20000,
        port_range_end=20100,
    )


@pytest.fixture
def shadowsocks_template_data(group):
    return InboundTemplateCreate(
        name="Shadowsocks",
        protocol="shadowsocks",
        settings_template=json.dumps({"method": "chacha20-ietf-poly1305"}),
        stream_settings_template=json.dumps({"network": "tcp"}),
        target_group_id=group.id,
        port_range_start=30000,
        port_range_end=30100,
    )
