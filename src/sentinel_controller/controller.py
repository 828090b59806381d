"""
Control loop: the single serialization point of the controller.

Two triggers feed one execution path:

- event driven: any registry slot change wakes the loop immediately;
- time driven: every ``resync_interval`` all sentinels are re-queried and the
  routing target is re-verified even if nothing changed.

The loop also wakes when a pending candidate's debounce window ends. Every
pass runs under one lock, so at most one resolution and one apply are active.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

from .config import ControllerSettings
from .errors import QuorumLost
from .models import RedisAddress, ResolvedPrimary, SentinelHealth
from .observability.events import EventBus
from .quorum import Candidate, QuorumResolver, Stable, Transition
from .reconcile.engine import ReconcileOutcome, ReconciliationEngine
from .reconcile.store import RoutingTargetStore
from .sentinel.connection import ClientFactory, redis_client_factory
from .sentinel.registry import SentinelRegistry


@dataclass(frozen=True)
class ControllerHealth:
    """Point-in-time view of the controller."""

    running: bool
    sentinels_configured: int
    sentinels_connected: int
    sentinels_reconnecting: int
    sentinels_unreachable: int
    quorum: int
    quorum_lost: bool
    primary: Optional[RedisAddress]
    epoch: int
    candidate: Optional[RedisAddress]
    last_applied_address: Optional[RedisAddress]
    pending_retries: int


@dataclass(frozen=True)
class PassResult:
    """What one pass decided and did."""

    transition: Transition
    outcome: Optional[ReconcileOutcome] = None
    forced: bool = False


class SentinelController:
    """Wires registry, resolver and engine into one serialized loop.

    Example:
        async with SentinelController.from_settings(settings, store) as ctl:
            await ctl.wait_closed()
    """

    def __init__(
        self,
        registry: SentinelRegistry,
        resolver: QuorumResolver,
        engine: ReconciliationEngine,
        *,
        resync_interval: float = 30.0,
        shutdown_grace: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if resync_interval <= 0:
            raise ValueError("resync_interval must be > 0")
        self.registry = registry
        self.resolver = resolver
        self.engine = engine
        self.resync_interval = resync_interval
        self.shutdown_grace = shutdown_grace
        self._clock = clock
        self._pass_lock = asyncio.Lock()
        self._next_resync = clock() + resync_interval
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: ControllerSettings,
        store: RoutingTargetStore,
        *,
        bus: Optional[EventBus] = None,
        client_factory: Optional[ClientFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "SentinelController":
        settings.validate_for_run()
        bus = bus or EventBus()
        registry = SentinelRegistry(
            settings.sentinel_addresses,
            settings.master_name,
            client_factory=client_factory
            or redis_client_factory(
                username=settings.sentinel_username,
                password=settings.sentinel_password,
                socket_timeout=settings.socket_timeout,
            ),
            bus=bus,
            poll_interval=settings.poll_interval,
            backoff=settings.reconnect_policy(),
            unreachable_after=settings.unreachable_after,
            clock=clock,
        )
        resolver = QuorumResolver(settings.debounce_window, bus=bus)
        engine = ReconciliationEngine(
            store, settings.target_id, retry_policy=settings.apply_policy(), bus=bus, clock=clock
        )
        return cls(
            registry,
            resolver,
            engine,
            resync_interval=settings.resync_interval,
            shutdown_grace=settings.shutdown_grace,
            clock=clock,
        )

    # ---------- lifecycle ----------

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stopping = False
        await self.engine.initialize()
        self.registry.start()
        self._next_resync = self._clock() + self.resync_interval
        self._task = asyncio.create_task(self._run(), name="sentinel-controller-loop")
        logger.info(f"Controller started for target {self.engine.target_id}")

    async def stop(self) -> None:
        """Stop connections, then give an in-flight pass ``shutdown_grace`` to finish."""
        self._stopping = True
        self.registry.wake()
        await self.registry.stop(self.shutdown_grace)
        task, self._task = self._task, None
        if task is not None:
            done, _ = await asyncio.wait({task}, timeout=self.shutdown_grace)
            if not done:
                logger.warning("In-flight pass did not finish within grace period; cancelling")
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.info("Controller stopped")

    async def wait_closed(self) -> None:
        """Block until the loop ends, which only happens on stop."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def __aenter__(self) -> "SentinelController":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ---------- passes ----------

    async def run_once(self, *, force: bool = False) -> PassResult:
        """One serialized resolution + reconciliation pass.

        ``force`` re-queries every sentinel and re-reads the routing target.
        """
        async with self._pass_lock:
            if force:
                self._next_resync = self._clock() + self.resync_interval
                answered = await self.registry.refresh()
                logger.debug(
                    f"Resync: {answered}/{self.registry.configured_count} sentinels answered"
                )

            transition = await self.resolver.resolve(self.registry.snapshot(), self._clock())
            state = transition.state

            # Publish only a Stable primary that holds quorum in this very snapshot
            if not isinstance(state, Stable) or transition.verdict.leader != state.address:
                return PassResult(transition=transition, forced=force)

            outcome = await self.engine.reconcile(state.as_resolved(), verify=force)
            return PassResult(transition=transition, outcome=outcome, forced=force)

    def _next_timeout(self) -> float:
        now = self._clock()
        deadline = self._next_resync
        eligible = self.resolver.eligible_at()
        if eligible is not None:
            deadline = min(deadline, eligible)
        return max(0.0, deadline - now)

    async def _run(self) -> None:
        while not self._stopping:
            await self.registry.wait_for_update(self._next_timeout())
            if self._stopping:
                break
            force = self._clock() >= self._next_resync
            try:
                await self.run_once(force=force)
            except Exception:
                # The pass is retried on the next wake-up or resync
                logger.exception("Control-loop pass failed")

    # ---------- health ----------

    def current_primary(self) -> ResolvedPrimary:
        """The primary in force; raises QuorumLost while sentinels cannot agree."""
        current = self.resolver.current
        if self.resolver.quorum_lost or current is None:
            verdict = self.resolver.last_verdict
            reason = verdict.reason.value if verdict and verdict.reason else "no primary resolved"
            raise QuorumLost(reason)
        return current

    def health(self) -> ControllerHealth:
        endpoints = self.registry.endpoints()
        counts = {h: 0 for h in SentinelHealth}
        for ep in endpoints:
            counts[ep.health] += 1
        state = self.resolver.state
        current = self.resolver.current
        return ControllerHealth(
            running=self._task is not None and not self._task.done(),
            sentinels_configured=len(endpoints),
            sentinels_connected=counts[SentinelHealth.CONNECTED],
            sentinels_reconnecting=counts[SentinelHealth.RECONNECTING],
            sentinels_unreachable=counts[SentinelHealth.UNREACHABLE],
            quorum=self.registry.quorum,
            quorum_lost=self.resolver.quorum_lost,
            primary=current.address if current else None,
            epoch=current.epoch if current else 0,
            candidate=state.address if isinstance(state, Candidate) else None,
            last_applied_address=self.engine.state.last_applied_address,
            pending_retries=self.engine.state.pending_retries,
        )
