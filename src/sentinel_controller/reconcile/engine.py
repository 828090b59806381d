"""
Reconciliation engine: publish the resolved primary to the routing target.

Each pass reads the target, no-ops if it already points at the desired
address, and otherwise applies with the version it just read. Conflicts are
retried through ``retry_async``; everything else ends the pass and is retried
by the next control-loop pass.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from loguru import logger

from ..errors import ApplyConflict, ApplyExhausted, StoreUnavailable, TargetNotFound
from ..models import ReconciliationState, RedisAddress, ResolvedPrimary
from ..observability.events import ControllerEvent, EventBus, EventKind
from ..policy import RetryPolicy, retry_async
from .store import Applied, Conflict, RoutingTargetStore


class ReconcileOutcome(str, Enum):
    NOOP = "noop"  # already converged
    APPLIED = "applied"
    FAILED = "failed"  # reported; retried on the next pass


class ReconciliationEngine:
    """Drives one routing target towards the resolved primary."""

    def __init__(
        self,
        store: RoutingTargetStore,
        target_id: str,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.target_id = target_id
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=5, initial_backoff_ms=50, max_backoff_ms=1_000
        )
        self._bus = bus or EventBus()
        self._clock = clock
        self._sleep = sleep
        self._state = ReconciliationState()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ReconciliationState:
        return self._state

    async def initialize(self) -> bool:
        """Seed local state from a live read of the target."""
        try:
            target = await self.store.read(self.target_id)
        except (StoreUnavailable, TargetNotFound) as exc:
            logger.warning(f"Could not read routing target {self.target_id}: {exc!r}")
            return False
        self._remember(target.address, target.version, epoch=None)
        logger.info(
            f"Routing target {self.target_id} currently {target.address or '<empty>'} "
            f"(version {target.version})"
        )
        return True

    async def reconcile(
        self, desired: ResolvedPrimary, *, verify: bool = False
    ) -> ReconcileOutcome:
        """Make the target point at ``desired.address``.

        Without ``verify``, a target already published for this epoch is
        trusted and nothing is read or written.
        """
        st = self._state
        if (
            not verify
            and st.last_applied_epoch == desired.epoch
            and st.last_applied_address == desired.address
        ):
            return ReconcileOutcome.NOOP

        async with self._lock:
            return await self._reconcile(desired)

    async def _reconcile(self, desired: ResolvedPrimary) -> ReconcileOutcome:
        self._state.last_attempt_at = self._clock()
        previous: Optional[RedisAddress] = None
        attempts = 0

        async def attempt(n: int) -> ReconcileOutcome:
            nonlocal previous, attempts
            attempts = n
            target = await self.store.read(self.target_id)
            if target.address == desired.address:
                self._remember(target.address, target.version, desired.epoch)
                return ReconcileOutcome.NOOP
            previous = target.address
            result = await self.store.apply(self.target_id, desired.address, target.version)
            if isinstance(result, Applied):
                self._remember(desired.address, result.new_version, desired.epoch)
                return ReconcileOutcome.APPLIED
            if isinstance(result, Conflict):
                raise ApplyConflict(
                    f"{self.target_id}: version {target.version} is stale "
                    f"(now {result.current_version})"
                )
            raise TargetNotFound(self.target_id)

        async def on_conflict(n: int, exc: Exception) -> None:
            await self._bus.publish(
                ControllerEvent(
                    kind=EventKind.APPLY_CONFLICTED,
                    new_address=desired.address,
                    epoch=desired.epoch,
                    attempts=n,
                    reason=str(exc),
                )
            )

        try:
            outcome = await retry_async(
                attempt, self.retry_policy, on_retry=on_conflict, sleep=self._sleep
            )
        except ApplyExhausted as exc:
            return await self._failed(
                desired, exc.attempts, f"retry budget exhausted: {exc.last_error}"
            )
        except TargetNotFound as exc:
            return await self._failed(desired, attempts, f"not_found: {exc}")
        except StoreUnavailable as exc:
            return await self._failed(desired, attempts, f"store_unavailable: {exc}")

        self._state.pending_retries = 0
        if outcome is ReconcileOutcome.APPLIED:
            await self._bus.publish(
                ControllerEvent(
                    kind=EventKind.APPLY_SUCCEEDED,
                    old_address=previous,
                    new_address=desired.address,
                    epoch=desired.epoch,
                    attempts=attempts,
                )
            )
        return outcome

    async def _failed(
        self, desired: ResolvedPrimary, attempts: int, reason: str
    ) -> ReconcileOutcome:
        self._state.pending_retries += 1
        await self._bus.publish(
            ControllerEvent(
                kind=EventKind.APPLY_FAILED,
                new_address=desired.address,
                epoch=desired.epoch,
                attempts=attempts,
                reason=reason,
            )
        )
        return ReconcileOutcome.FAILED

    def _remember(
        self, address: Optional[RedisAddress], version: str, epoch: Optional[int]
    ) -> None:
        st = self._state
        st.last_applied_address = address
        st.last_applied_version = version
        st.last_applied_epoch = epoch
        st.initialized = True
