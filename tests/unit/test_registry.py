"""
Unit tests for SentinelRegistry slots, snapshots and wake-ups.
"""

import asyncio

import pytest

from sentinel_controller import (
    ConfigurationError,
    RedisAddress,
    SentinelEndpoint,
    SentinelHealth,
)
from sentinel_controller.models import SentinelReport
from sentinel_controller.observability import EventKind
from sentinel_controller.sentinel import SentinelRegistry

A = RedisAddress("10.0.0.1", 6379)
B = RedisAddress("10.0.0.2", 6379)


@pytest.fixture
def registry(sentinel_ids, fleet, bus, clock):
    return SentinelRegistry(
        [RedisAddress.parse(s) for s in sentinel_ids],
        "mymaster",
        client_factory=fleet.factory,
        bus=bus,
        unreachable_after=2,
        clock=clock,
    )


def test_rejects_empty_sentinel_list(fleet):
    with pytest.raises(ConfigurationError):
        SentinelRegistry([], "mymaster", client_factory=fleet.factory)


def test_rejects_duplicate_sentinels(fleet):
    addr = RedisAddress("10.0.1.1", 26379)
    with pytest.raises(ConfigurationError):
        SentinelRegistry([addr, addr], "mymaster", client_factory=fleet.factory)


def test_rejects_empty_master_name(fleet):
    with pytest.raises(ConfigurationError):
        SentinelRegistry([RedisAddress("10.0.1.1", 26379)], "", client_factory=fleet.factory)


def test_quorum_follows_configured_count(registry):
    assert registry.configured_count == 3
    assert registry.quorum == 2
    assert len(registry.connections) == 3


def test_initial_snapshot_is_all_pending(registry):
    snap = registry.snapshot()
    assert snap.configured == 3
    assert snap.reachable == 0
    assert snap.pending == 3


@pytest.mark.asyncio
async def test_refresh_collects_reachable_views(registry, fleet, sentinel_ids):
    s1, s2, s3 = sentinel_ids
    fleet.report_all({s1: "10.0.0.1:6379", s2: "10.0.0.1:6379"})
    fleet.set_down(s3)

    answered = await registry.refresh()

    assert answered == 2
    snap = registry.snapshot()
    assert snap.reports == {s1: A, s2: A}
    assert snap.pending == 0
    views = snap.views()
    assert views[0].address == A
    assert views[0].reported_by == frozenset({s1, s2})


@pytest.mark.asyncio
async def test_unreachable_endpoint_leaves_snapshot(registry, fleet, sentinel_ids):
    s1, s2, s3 = sentinel_ids
    fleet.report_all({s1: "10.0.0.1:6379", s2: "10.0.0.1:6379", s3: "10.0.0.1:6379"})
    await registry.refresh()
    assert registry.snapshot().reachable == 3

    fleet.set_down(s3)
    await registry.refresh()

    assert s3 not in registry.snapshot().reports
    healths = {ep.endpoint_id: ep.health for ep in registry.endpoints()}
    assert healths[s3] is SentinelHealth.RECONNECTING


@pytest.mark.asyncio
async def test_health_transitions_published(registry, fleet, sentinel_ids, recorder):
    s1, s2, s3 = sentinel_ids
    fleet.report_all({s1: "10.0.0.1:6379", s2: "10.0.0.1:6379", s3: "10.0.0.1:6379"})
    await registry.refresh()
    await registry.refresh()  # no transition, no events

    health_events = recorder.of(EventKind.SENTINEL_HEALTH)
    assert len(health_events) == 3
    assert all(e.health is SentinelHealth.CONNECTED for e in health_events)

    fleet.set_down(s1)
    await registry.refresh()
    await registry.refresh()

    s1_events = [e for e in recorder.of(EventKind.SENTINEL_HEALTH) if e.endpoint_id == s1]
    assert [e.health for e in s1_events] == [
        SentinelHealth.CONNECTED,
        SentinelHealth.RECONNECTING,
        SentinelHealth.UNREACHABLE,
    ]
    assert s1_events[-1].previous_health is SentinelHealth.RECONNECTING


@pytest.mark.asyncio
async def test_publish_overwrites_slot_and_wakes(registry, sentinel_ids, clock):
    s1 = sentinel_ids[0]
    await registry.update_endpoint(
        SentinelEndpoint(endpoint_id=s1, health=SentinelHealth.CONNECTED, last_seen=clock.now)
    )
    await registry.wait_for_update(0)  # drain

    registry.publish(SentinelReport(endpoint_id=s1, reported_primary=A, timestamp=clock.now))
    registry.publish(SentinelReport(endpoint_id=s1, reported_primary=B, timestamp=clock.now))

    assert await registry.wait_for_update(1.0)
    assert registry.snapshot().reports == {s1: B}  # last write wins


@pytest.mark.asyncio
async def test_publish_from_unknown_endpoint_dropped(registry):
    registry.publish(SentinelReport(endpoint_id="10.9.9.9:26379", reported_primary=A, timestamp=0))
    assert not await registry.wait_for_update(0.01)
    assert "10.9.9.9:26379" not in {ep.endpoint_id for ep in registry.endpoints()}


@pytest.mark.asyncio
async def test_wait_for_update_times_out(registry):
    assert not await registry.wait_for_update(0.01)


@pytest.mark.asyncio
async def test_wake_interrupts_waiter(registry):
    waiter = asyncio.create_task(registry.wait_for_update(5.0))
    await asyncio.sleep(0)
    registry.wake()
    assert await asyncio.wait_for(waiter, 1.0)


@pytest.mark.asyncio
async def test_start_and_stop(registry, fleet, sentinel_ids):
    for s in sentinel_ids:
        fleet.report(s, "10.0.0.1:6379")
    registry.start()
    try:
        for _ in range(100):
            if registry.snapshot().reachable == 3:
                break
            await asyncio.sleep(0.01)
        assert registry.snapshot().reachable == 3
    finally:
        await registry.stop(grace=1.0)
