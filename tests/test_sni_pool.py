"""
Tests for the SNI pool manager
"""

import asyncio

import pytest
from sqlalchemy import func, select

from vpnfleet.core.exceptions import NotFoundError, ValidationError
from vpnfleet.models.node import NodeUpdate
from vpnfleet.models.orm import SniPoolRecord
from vpnfleet.models.sni import ProbeResult, SniEntryCreate
from vpnfleet.services.sni_pool_service import DEFAULT_SNI_POOL, classify_discovered_domain


async def _entry(db, domain):
    async with db.session() as session:
        result = await session.execute(select(SniPoolRecord).where(SniPoolRecord.domain == domain))
        return result.scalar_one_or_none()


@pytest.mark.asyncio
async def test_merge_inserts_new_and_bumps_known(db, sni_service, make_node):
    """A known domain gains score, a new one is inserted with defaults"""
    node = await make_node()
    await sni_service.add_domain(SniEntryCreate(domain="a.com"))
    async with db.session() as session:
        async with session.begin():
            record = (await session.execute(select(SniPoolRecord).where(SniPoolRecord.domain == "a.com"))).scalar_one()
            record.health_score = 90

    report = await sni_service.merge_discovered(node.id, ["a.com", "b.com"])

    assert report.updated == ["a.com"]
    assert report.inserted == ["b.com"]
    assert (await _entry(db, "a.com")).health_score == 91
    b = await _entry(db, "b.com")
    assert b.tier == 1
    assert b.health_score == 100
    assert b.is_active is True
    assert b.discovered_by_node_id == node.id


@pytest.mark.asyncio
async def test_rediscovery_never_exceeds_max_score(db, sni_service, make_node):
    node = await make_node()
    await sni_service.merge_discovered(node.id, ["a.com"])
    await sni_service.merge_discovered(node.id, ["a.com"])
    assert (await _entry(db, "a.com")).health_score == 100


@pytest.mark.asyncio
async def test_concurrent_merges_create_one_row(db, sni_service, make_node):
    first = await make_node()
    second = await make_node()

    await asyncio.gather(
        sni_service.merge_discovered(first.id, ["shared.example.org"]),
        sni_service.merge_discovered(second.id, ["shared.example.org"]),
    )

    async with db.session() as session:
        count = await session.execute(
            select(func.count()).select_from(SniPoolRecord).where(SniPoolRecord.domain == "shared.example.org")
        )
        assert count.scalar_one() == 1


@pytest.mark.asyncio
async def test_noise_is_filtered_and_blacklisted(db, sni_service, make_node):
    node = await make_node()
    report = await sni_service.merge_discovered(
        node.id, ["traefik.default", "nodot", "cpanel.host.net", "good.example.org"]
    )

    assert report.inserted == ["good.example.org"]
    assert set(report.filtered) == {"traefik.default", "nodot", "cpanel.host.net"}
    blocked = {b.domain: b.reason for b in await sni_service.list_blacklist()}
    assert blocked["nodot"].startswith("Auto-filter:")
    assert await _entry(db, "nodot") is None


def test_classify_discovered_domain():
    assert classify_discovered_domain("www.google.com") is None
    assert classify_discovered_domain("printer.local") is not None
    assert classify_discovered_domain("bad_domain.com") is not None
    assert classify_discovered_domain("-x.com") is not None


@pytest.mark.asyncio
async def test_blacklisted_domain_is_not_reinserted(db, sni_service, make_node):
    node = await make_node()
    await sni_service.blacklist("evil.com", "manual")
    report = await sni_service.merge_discovered(node.id, ["evil.com"])
    assert report.skipped == ["evil.com"]
    assert await _entry(db, "evil.com") is None


@pytest.mark.asyncio
async def test_add_domain_rejects_blacklisted(sni_service):
    await sni_service.blacklist("evil.com", "manual")
    with pytest.raises(ValidationError):
        await sni_service.add_domain(SniEntryCreate(domain="evil.com"))


@pytest.mark.asyncio
async def test_add_domain_normalises_trailing_dot(sni_service):
    entry = await sni_service.add_domain(SniEntryCreate(domain=" WWW.Example.COM. "))
    assert entry.domain == "www.example.com"


@pytest.mark.asyncio
@pytest.mark.parametrize("domain", ["foo.local", "panel.cpanel.net", "intranet", "bad_name.com"])
async def test_add_domain_rejects_noise(sni_service, domain):
    with pytest.raises(ValidationError):
        await sni_service.add_domain(SniEntryCreate(domain=domain))
    assert await sni_service.list_pool() == []


@pytest.mark.asyncio
async def test_auto_assign_prefers_pinned(sni_service, make_node):
    node = await make_node()
    await sni_service.add_domain(SniEntryCreate(domain="global.com", tier=0))
    await sni_service.add_domain(SniEntryCreate(domain="pinned.com", tier=5))
    await sni_service.pin(node.id, "pinned.com")

    assert await sni_service.auto_assign(node.id) == "pinned.com"
    logs = await sni_service.rotation_logs(node.id)
    assert logs[0].old_sni is None
    assert logs[0].new_sni == "pinned.com"


@pytest.mark.asyncio
async def test_auto_assign_orders_global_pool_by_tier_then_score(db, sni_service, make_node):
    node = await make_node()
    await sni_service.add_domain(SniEntryCreate(domain="tier2.com", tier=2))
    await sni_service.add_domain(SniEntryCreate(domain="tier1-low.com", tier=1))
    await sni_service.add_domain(SniEntryCreate(domain="tier1-high.com", tier=1))
    async with db.session() as session:
        async with session.begin():
            low = (await session.execute(select(SniPoolRecord).where(SniPoolRecord.domain == "tier1-low.com"))).scalar_one()
            low.health_score = 50

    assert await sni_service.auto_assign(node.id) == "tier1-high.com"


@pytest.mark.asyncio
async def test_auto_assign_skips_blacklisted_pinned(sni_service, make_node):
    node = await make_node()
    await sni_service.add_domain(SniEntryCreate(domain="pinned.com"))
    await sni_service.add_domain(SniEntryCreate(domain="fallback.com"))
    await sni_service.pin(node.id, "pinned.com")
    await sni_service.blacklist("pinned.com", "blocked in region")

    assert await sni_service.auto_assign(node.id) == "fallback.com"


@pytest.mark.asyncio
async def test_auto_assign_respects_locked_domain(sni_service, node_service, make_node):
    node = await make_node(masking_domain="manual.com")
    await sni_service.add_domain(SniEntryCreate(domain="other.com"))

    assert await sni_service.auto_assign(node.id, rotate=True) == "manual.com"
    await node_service.update_node(node.id, NodeUpdate(masking_domain_locked=False))
    assert await sni_service.auto_assign(node.id, rotate=True) == "other.com"


@pytest.mark.asyncio
async def test_auto_assign_with_empty_pool(sni_service, make_node):
    node = await make_node()
    assert await sni_service.auto_assign(node.id) is None


@pytest.mark.asyncio
async def test_rotate_avoids_current_domain(sni_service, make_node):
    node = await make_node()
    await sni_service.add_domain(SniEntryCreate(domain="first.com", tier=0))
    await sni_service.add_domain(SniEntryCreate(domain="second.com", tier=1))

    assert await sni_service.auto_assign(node.id) == "first.com"
    assert await sni_service.auto_assign(node.id, sticky=True) == "first.com"
    assert await sni_service.auto_assign(node.id, rotate=True) == "second.com"


@pytest.mark.asyncio
async def test_probe_results_are_clamped(db, sni_service):
    await sni_service.add_domain(SniEntryCreate(domain="probe.com"))

    healthy = await sni_service.record_probe(ProbeResult(domain="probe.com", healthy=True))
    assert healthy.health_score == 100

    for _ in range(3):
        entry = await sni_service.record_probe(ProbeResult(domain="probe.com", healthy=False))
    assert entry.health_score == 40
    assert entry.is_active is True

    entry = await sni_service.record_probe(ProbeResult(domain="probe.com", healthy=False))
    assert entry.health_score == 20
    assert entry.is_active is False

    for _ in range(3):
        entry = await sni_service.record_probe(ProbeResult(domain="probe.com", healthy=False))
    assert entry.health_score == 0


@pytest.mark.asyncio
async def test_probe_with_reason_blacklists(sni_service):
    await sni_service.add_domain(SniEntryCreate(domain="probe.com"))
    entry = await sni_service.record_probe(
        ProbeResult(domain="probe.com", healthy=False, blacklist_reason="TLS reset")
    )
    assert entry.is_active is False
    assert [b.domain for b in await sni_service.list_blacklist()] == ["probe.com"]


@pytest.mark.asyncio
async def test_probe_unknown_domain(sni_service):
    with pytest.raises(NotFoundError):
        await sni_service.record_probe(ProbeResult(domain="missing.com", healthy=True))


@pytest.mark.asyncio
async def test_seed_defaults_is_idempotent(sni_service):
    assert await sni_service.seed_defaults() == len(DEFAULT_SNI_POOL)
    assert await sni_service.seed_defaults() == 0
