"""
End-to-end controller scenarios: fake sentinels -> quorum -> routing target.

Passes are driven with ``run_once(force=True)`` and a hand-advanced clock, so
every scenario is deterministic. The last tests run the real loop.
"""

import asyncio

import pytest

from sentinel_controller import (
    ControllerSettings,
    QuorumLost,
    RedisAddress,
    SentinelController,
)
from sentinel_controller.observability import EventKind
from sentinel_controller.quorum import Candidate, Stable
from sentinel_controller.reconcile import InMemoryRoutingTargetStore, ReconcileOutcome

A = RedisAddress("10.0.0.1", 6379)
B = RedisAddress("10.0.0.2", 6379)


class ConflictingStore(InMemoryRoutingTargetStore):
    """Loses the first ``conflicts`` compare-and-swaps to another writer."""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts = conflicts

    async def apply(self, target_id, address, expected_version):
        if self.conflicts > 0:
            self.conflicts -= 1
            current = self.get(target_id)
            self.external_write(target_id, current.address)  # same value, new version
        return await super().apply(target_id, address, expected_version)


class GlitchingStore(InMemoryRoutingTargetStore):
    """Raises an unexpected error from the next ``glitches`` reads."""

    def __init__(self):
        super().__init__()
        self.glitches = 0

    async def read(self, target_id):
        if self.glitches > 0:
            self.glitches -= 1
            raise ValueError("garbled response")
        return await super().read(target_id)


def make_settings(sentinel_ids, target_id, **overrides):
    values = dict(
        sentinels=",".join(sentinel_ids),
        target_id=target_id,
        debounce_window=1.0,
        resync_interval=30.0,
        apply_initial_backoff_ms=1,
        apply_max_backoff_ms=2,
    )
    values.update(overrides)
    return ControllerSettings(**values)


@pytest.fixture
def controller(sentinel_ids, target_id, store, bus, fleet, clock):
    return SentinelController.from_settings(
        make_settings(sentinel_ids, target_id),
        store,
        bus=bus,
        client_factory=fleet.factory,
        clock=clock,
    )


def report(fleet, sentinel_ids, *primaries):
    for sentinel, primary in zip(sentinel_ids, primaries):
        fleet.report(sentinel, str(primary) if primary is not None else None)


async def settle_on(controller, clock, fleet, sentinel_ids, primary):
    """Drive passes until ``primary`` is stable (two passes one debounce apart)."""
    report(fleet, sentinel_ids, primary, primary, primary)
    await controller.run_once(force=True)
    clock.advance(1.0)
    return await controller.run_once(force=True)


@pytest.mark.asyncio
async def test_initial_apply_exactly_once(
    controller, store, target_id, fleet, sentinel_ids, clock
):
    report(fleet, sentinel_ids, A, A, A)

    first = await controller.run_once(force=True)
    assert isinstance(first.transition.state, Candidate)
    assert first.outcome is None
    assert store.get(target_id).address is None  # still debouncing

    clock.advance(1.0)
    second = await controller.run_once(force=True)
    assert second.transition.state == Stable(A, 1)
    assert second.outcome is ReconcileOutcome.APPLIED

    for _ in range(3):
        clock.advance(5.0)
        await controller.run_once(force=True)
        await controller.run_once()

    assert store.get(target_id).address == A
    assert store.applies == 1
    assert controller.current_primary().address == A


@pytest.mark.asyncio
async def test_transient_disagreement_is_ignored(
    controller, store, target_id, fleet, sentinel_ids, clock, recorder
):
    await settle_on(controller, clock, fleet, sentinel_ids, A)
    applies = store.applies

    # A keeps quorum throughout
    report(fleet, sentinel_ids, A, A, B)
    clock.advance(0.3)
    await controller.run_once(force=True)

    # B briefly holds quorum, then the sentinels settle back on A
    report(fleet, sentinel_ids, B, B, A)
    clock.advance(0.3)
    await controller.run_once(force=True)
    assert controller.current_primary().address == A

    report(fleet, sentinel_ids, A, A, A)
    clock.advance(0.3)
    result = await controller.run_once(force=True)

    assert result.transition.state == Stable(A, 1)
    assert controller.current_primary().epoch == 1
    assert store.applies == applies
    assert len(recorder.of(EventKind.PRIMARY_CHANGED)) == 1


@pytest.mark.asyncio
async def test_sustained_failover_applies_once(
    controller, store, target_id, fleet, sentinel_ids, clock, recorder
):
    await settle_on(controller, clock, fleet, sentinel_ids, A)
    applies = store.applies

    report(fleet, sentinel_ids, A, B, B)
    await controller.run_once(force=True)
    assert store.get(target_id).address == A

    clock.advance(0.5)
    await controller.run_once(force=True)
    clock.advance(0.5)
    result = await controller.run_once(force=True)

    assert result.transition.state == Stable(B, 2)
    assert result.outcome is ReconcileOutcome.APPLIED
    assert store.get(target_id).address == B
    assert store.applies == applies + 1

    clock.advance(5.0)
    await controller.run_once(force=True)
    assert store.applies == applies + 1

    changed = recorder.of(EventKind.PRIMARY_CHANGED)[-1]
    assert (changed.old_address, changed.new_address, changed.epoch) == (A, B, 2)


@pytest.mark.asyncio
async def test_conflicts_resolved_within_retry_limit(
    sentinel_ids, target_id, bus, fleet, clock, recorder
):
    store = ConflictingStore(conflicts=2)
    store.create(target_id)
    controller = SentinelController.from_settings(
        make_settings(sentinel_ids, target_id, apply_max_attempts=5),
        store,
        bus=bus,
        client_factory=fleet.factory,
        clock=clock,
    )

    result = await settle_on(controller, clock, fleet, sentinel_ids, A)

    assert result.outcome is ReconcileOutcome.APPLIED
    assert store.get(target_id).address == A
    assert store.applies == 3
    assert len(recorder.of(EventKind.APPLY_CONFLICTED)) == 2
    assert recorder.of(EventKind.APPLY_SUCCEEDED)[0].attempts == 3

    state = controller.engine.state
    assert state.last_applied_address == A
    assert state.last_applied_version == store.get(target_id).version
    assert state.pending_retries == 0


@pytest.mark.asyncio
async def test_quorum_loss_leaves_target_untouched(
    controller, store, target_id, fleet, sentinel_ids, clock, recorder
):
    await settle_on(controller, clock, fleet, sentinel_ids, A)
    published = store.get(target_id)
    reads, applies = store.reads, store.applies
    s1, s2, s3 = sentinel_ids

    fleet.set_down(s2)
    fleet.set_down(s3)
    fleet.report(s1, str(B))  # the lone survivor's opinion must not matter

    for _ in range(10):
        clock.advance(30.0)
        result = await controller.run_once(force=True)
        assert result.outcome is None

    assert store.get(target_id) == published
    assert (store.reads, store.applies) == (reads, applies)
    with pytest.raises(QuorumLost):
        controller.current_primary()
    assert len(recorder.of(EventKind.QUORUM_LOST)) == 1

    health = controller.health()
    assert health.quorum_lost
    assert health.primary == A
    assert health.sentinels_connected == 1
    assert health.sentinels_unreachable == 2

    # Reachability restored, sentinels still agree on A: nothing to write
    fleet.set_down(s2, False)
    fleet.set_down(s3, False)
    report(fleet, sentinel_ids, A, A, A)
    clock.advance(30.0)
    await controller.run_once(force=True)

    assert controller.current_primary() == Stable(A, 1).as_resolved()
    assert store.applies == applies
    assert len(recorder.of(EventKind.QUORUM_REGAINED)) == 1


@pytest.mark.asyncio
async def test_resync_repairs_external_drift(
    controller, store, target_id, fleet, sentinel_ids, clock
):
    await settle_on(controller, clock, fleet, sentinel_ids, A)
    store.external_write(target_id, B)

    await controller.run_once()  # event-driven pass trusts the applied epoch
    assert store.get(target_id).address == B

    clock.advance(30.0)
    result = await controller.run_once(force=True)
    assert result.outcome is ReconcileOutcome.APPLIED
    assert store.get(target_id).address == A


@pytest.mark.asyncio
async def test_store_outage_retried_on_next_pass(
    controller, store, target_id, fleet, sentinel_ids, clock
):
    store.available = False
    result = await settle_on(controller, clock, fleet, sentinel_ids, A)
    assert result.outcome is ReconcileOutcome.FAILED
    assert controller.health().pending_retries == 1

    store.available = True
    result = await controller.run_once()
    assert result.outcome is ReconcileOutcome.APPLIED
    assert store.get(target_id).address == A
    assert controller.health().pending_retries == 0


# ---------- live loop ----------


async def eventually(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_live_loop_follows_failover(sentinel_ids, target_id, store, bus, fleet, recorder):
    settings = make_settings(
        sentinel_ids, target_id, poll_interval=0.02, debounce_window=0.05, resync_interval=0.5
    )
    report(fleet, sentinel_ids, A, A, A)

    async with SentinelController.from_settings(
        settings, store, bus=bus, client_factory=fleet.factory
    ) as controller:
        assert controller.health().running
        await eventually(lambda: store.get(target_id).address == A)

        for sentinel in sentinel_ids:
            fleet.report(sentinel, str(B))
            fleet.notify(sentinel, "mymaster 10.0.0.1 6379 10.0.0.2 6379")
        await eventually(lambda: store.get(target_id).address == B)
        assert controller.current_primary().epoch == 2

    assert not controller.health().running
    assert recorder.of(EventKind.QUORUM_LOST) == []  # no noise during startup


@pytest.mark.asyncio
async def test_live_loop_survives_unexpected_store_error(sentinel_ids, target_id, bus, fleet):
    store = GlitchingStore()
    store.create(target_id)
    settings = make_settings(
        sentinel_ids, target_id, poll_interval=0.02, debounce_window=0.05, resync_interval=0.2
    )
    report(fleet, sentinel_ids, A, A, A)

    async with SentinelController.from_settings(
        settings, store, bus=bus, client_factory=fleet.factory
    ) as controller:
        await eventually(lambda: store.get(target_id).address == A)

        store.glitches = 1
        report(fleet, sentinel_ids, B, B, B)
        await eventually(lambda: store.get(target_id).address == B)

        assert store.glitches == 0
        assert controller.health().running
        assert controller.current_primary().address == B


@pytest.mark.asyncio
async def test_stop_is_prompt_and_idempotent(sentinel_ids, target_id, store, bus, fleet):
    settings = make_settings(sentinel_ids, target_id, poll_interval=0.02, shutdown_grace=1.0)
    controller = SentinelController.from_settings(
        settings, store, bus=bus, client_factory=fleet.factory
    )
    await controller.start()
    await asyncio.sleep(0.05)

    await asyncio.wait_for(controller.stop(), timeout=2.0)
    await controller.stop()
    await controller.wait_closed()
    assert not controller.health().running
