"""
Sentinel registry: the set of connections and their latest reported views.

Connections write into one slot per endpoint (last write wins, never queued)
and set a wake-up event the control loop waits on.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Callable, Optional, Sequence

from loguru import logger

from ..errors import ConfigurationError
from ..models import (
    QuorumSnapshot,
    RedisAddress,
    SentinelEndpoint,
    SentinelHealth,
    SentinelReport,
    quorum_size,
)
from ..observability.events import ControllerEvent, EventBus, EventKind
from ..policy import RetryPolicy
from .connection import ClientFactory, SentinelConnection


class SentinelRegistry:
    """Owns one SentinelConnection per configured sentinel."""

    def __init__(
        self,
        addresses: Sequence[RedisAddress],
        master_name: str,
        *,
        client_factory: ClientFactory,
        bus: Optional[EventBus] = None,
        poll_interval: float = 1.0,
        backoff: Optional[RetryPolicy] = None,
        unreachable_after: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not addresses:
            raise ConfigurationError("At least one sentinel must be configured")
        ids = [str(a) for a in addresses]
        if len(set(ids)) != len(ids):
            raise ConfigurationError(f"Duplicate sentinel addresses: {ids}")
        if not master_name:
            raise ConfigurationError("Monitored deployment name must not be empty")

        self.master_name = master_name
        self._bus = bus or EventBus()
        self._clock = clock
        self._slots: dict[str, SentinelEndpoint] = {i: SentinelEndpoint(endpoint_id=i) for i in ids}
        self._updated = asyncio.Event()
        self._connections = [
            SentinelConnection(
                address,
                master_name,
                self,
                client_factory=client_factory,
                poll_interval=poll_interval,
                backoff=backoff,
                unreachable_after=unreachable_after,
                clock=clock,
            )
            for address in addresses
        ]

    @property
    def configured_count(self) -> int:
        return len(self._slots)

    @property
    def quorum(self) -> int:
        return quorum_size(self.configured_count)

    @property
    def connections(self) -> list[SentinelConnection]:
        return list(self._connections)

    def endpoints(self) -> list[SentinelEndpoint]:
        return list(self._slots.values())

    # ---------- mailbox ----------

    def publish(self, report: SentinelReport) -> None:
        """Overwrite the endpoint's reported primary (fire-and-forget)."""
        slot = self._slots.get(report.endpoint_id)
        if slot is None:
            logger.debug(f"Report from unknown sentinel {report.endpoint_id} dropped")
            return
        self._slots[report.endpoint_id] = replace(
            slot, reported_primary=report.reported_primary, last_seen=report.timestamp
        )
        self._updated.set()

    async def update_endpoint(
        self,
        endpoint: SentinelEndpoint,
        previous: Optional[SentinelHealth] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Replace the endpoint's slot; health transitions are published as events."""
        if endpoint.endpoint_id not in self._slots:
            return
        self._slots[endpoint.endpoint_id] = endpoint
        self._updated.set()
        if previous is not None and previous is not endpoint.health:
            await self._bus.publish(
                ControllerEvent(
                    kind=EventKind.SENTINEL_HEALTH,
                    endpoint_id=endpoint.endpoint_id,
                    health=endpoint.health,
                    previous_health=previous,
                    reason=reason,
                )
            )

    async def wait_for_update(self, timeout: Optional[float]) -> bool:
        """Wait until some slot changes or ``timeout`` elapses; True if woken by a change."""
        if not self._updated.is_set() and (timeout is None or timeout > 0):
            try:
                await asyncio.wait_for(self._updated.wait(), timeout)
            except asyncio.TimeoutError:
                pass
        woke = self._updated.is_set()
        self._updated.clear()
        return woke

    def snapshot(self) -> QuorumSnapshot:
        """Last-reported primary of every reachable endpoint."""
        reports = {
            ep.endpoint_id: ep.reported_primary for ep in self._slots.values() if ep.reachable
        }
        pending = sum(
            1
            for ep in self._slots.values()
            if ep.last_seen is None and ep.consecutive_failures == 0 and not ep.reachable
        )
        return QuorumSnapshot(
            configured=self.configured_count,
            reports=reports,
            taken_at=self._clock(),
            pending=pending,
        )

    def wake(self) -> None:
        """Wake a waiter without any slot change (used on shutdown)."""
        self._updated.set()

    # ---------- lifecycle ----------

    async def refresh(self) -> int:
        """Query every sentinel once, concurrently; returns how many answered.

        A sentinel whose poller is mid-query shares that query instead of
        issuing a second one.
        """
        results = await asyncio.gather(*(c.query_once() for c in self._connections))
        return sum(1 for ok in results if ok)

    def start(self) -> None:
        logger.info(
            f"Watching '{self.master_name}' via {self.configured_count} sentinels "
            f"(quorum {self.quorum})"
        )
        for c in self._connections:
            c.start()

    async def stop(self, grace: float = 1.0) -> None:
        await asyncio.gather(*(c.stop(grace) for c in self._connections))
