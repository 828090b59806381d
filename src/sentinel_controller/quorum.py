"""
Quorum resolution with debounce.

The resolver state is one of three immutable variants::

    NoPrimary -> Candidate(addr, since) -> Stable(addr, epoch)

``tally`` and ``step`` are pure functions of their inputs (time is passed in),
so vote sequences can be replayed deterministically. ``QuorumResolver`` keeps
the current state and reports transitions on the event bus.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from loguru import logger

from .models import QuorumSnapshot, RedisAddress, ResolvedPrimary
from .observability.events import ControllerEvent, EventBus, EventKind


class IndeterminateReason(str, Enum):
    """Why a snapshot produced no agreed primary."""

    INSUFFICIENT_REACHABLE = "insufficient_reachable"  # monitors are down
    NO_MAJORITY = "no_majority"  # monitors disagree


@dataclass(frozen=True)
class NoPrimary:
    pass


@dataclass(frozen=True)
class Stable:
    address: RedisAddress
    epoch: int

    def as_resolved(self) -> ResolvedPrimary:
        return ResolvedPrimary(address=self.address, epoch=self.epoch)


@dataclass(frozen=True)
class Candidate:
    address: RedisAddress
    since: float
    previous: Optional[Stable] = None


ResolverState = Union[NoPrimary, Candidate, Stable]


@dataclass(frozen=True)
class Verdict:
    """Outcome of counting one snapshot's votes."""

    quorum: int
    reachable: int
    leader: Optional[RedisAddress] = None  # address holding quorum, if any
    votes: int = 0
    reason: Optional[IndeterminateReason] = None
    warming_up: bool = False

    @property
    def indeterminate(self) -> bool:
        return self.leader is None


@dataclass(frozen=True)
class Transition:
    state: ResolverState
    verdict: Verdict
    promoted: Optional[ResolvedPrimary] = None

    @property
    def resolved(self) -> Optional[ResolvedPrimary]:
        return resolved_of(self.state)


def tally(snapshot: QuorumSnapshot) -> Verdict:
    """Find the address reported by at least ``quorum`` reachable sentinels."""
    quorum = snapshot.quorum
    reachable = snapshot.reachable
    if reachable < quorum:
        return Verdict(
            quorum=quorum,
            reachable=reachable,
            reason=IndeterminateReason.INSUFFICIENT_REACHABLE,
            warming_up=reachable + snapshot.pending >= quorum,
        )
    views = snapshot.views()
    if views and views[0].votes >= quorum:
        top = views[0]
        return Verdict(quorum=quorum, reachable=reachable, leader=top.address, votes=top.votes)
    return Verdict(
        quorum=quorum,
        reachable=reachable,
        votes=views[0].votes if views else 0,
        reason=IndeterminateReason.NO_MAJORITY,
    )


def resolved_of(state: ResolverState) -> Optional[ResolvedPrimary]:
    """Primary currently in force: the Stable one, or the one a Candidate may replace."""
    if isinstance(state, Stable):
        return state.as_resolved()
    if isinstance(state, Candidate) and state.previous is not None:
        return state.previous.as_resolved()
    return None


def eligible_at(state: ResolverState, debounce: float) -> Optional[float]:
    """When a pending candidate may be promoted, if one is pending."""
    if isinstance(state, Candidate):
        return state.since + debounce
    return None


def _fallback(state: Candidate) -> ResolverState:
    return state.previous if state.previous is not None else NoPrimary()


def _maybe_promote(
    candidate: Candidate, verdict: Verdict, now: float, debounce: float
) -> Transition:
    if now - candidate.since < debounce:
        return Transition(state=candidate, verdict=verdict)
    epoch = (candidate.previous.epoch if candidate.previous is not None else 0) + 1
    stable = Stable(address=candidate.address, epoch=epoch)
    return Transition(state=stable, verdict=verdict, promoted=stable.as_resolved())


def step(state: ResolverState, verdict: Verdict, now: float, debounce: float) -> Transition:
    """Advance the resolver state by one tallied snapshot."""
    leader = verdict.leader

    if leader is None:
        # Ambiguous input never clears a known-good primary
        if isinstance(state, Candidate):
            return Transition(state=_fallback(state), verdict=verdict)
        return Transition(state=state, verdict=verdict)

    if isinstance(state, Stable):
        if leader == state.address:
            return Transition(state=state, verdict=verdict)
        return _maybe_promote(Candidate(leader, now, previous=state), verdict, now, debounce)

    if isinstance(state, Candidate):
        if leader == state.address:
            return _maybe_promote(state, verdict, now, debounce)
        if state.previous is not None and leader == state.previous.address:
            return Transition(state=state.previous, verdict=verdict)
        return _maybe_promote(
            Candidate(leader, now, previous=state.previous), verdict, now, debounce
        )

    return _maybe_promote(Candidate(leader, now), verdict, now, debounce)


class QuorumResolver:
    """Stateful wrapper around ``step`` that publishes quorum and primary events."""

    def __init__(self, debounce_window: float, bus: Optional[EventBus] = None):
        if debounce_window < 0:
            raise ValueError("debounce_window must be >= 0")
        self.debounce_window = debounce_window
        self._bus = bus or EventBus()
        self._state: ResolverState = NoPrimary()
        self._quorum_lost: Optional[bool] = None
        self._last_verdict: Optional[Verdict] = None

    @property
    def state(self) -> ResolverState:
        return self._state

    @property
    def current(self) -> Optional[ResolvedPrimary]:
        return resolved_of(self._state)

    @property
    def quorum_lost(self) -> bool:
        return bool(self._quorum_lost)

    @property
    def last_verdict(self) -> Optional[Verdict]:
        return self._last_verdict

    def eligible_at(self) -> Optional[float]:
        return eligible_at(self._state, self.debounce_window)

    async def resolve(self, snapshot: QuorumSnapshot, now: float) -> Transition:
        verdict = tally(snapshot)
        before = self.current
        transition = step(self._state, verdict, now, self.debounce_window)
        self._state = transition.state
        self._last_verdict = verdict

        await self._report_quorum(verdict)

        if isinstance(transition.state, Candidate) and transition.promoted is None:
            logger.debug(
                f"Candidate primary {transition.state.address} "
                f"({verdict.votes}/{verdict.quorum} votes), pending debounce"
            )

        if transition.promoted is not None:
            await self._bus.publish(
                ControllerEvent(
                    kind=EventKind.PRIMARY_CHANGED,
                    old_address=before.address if before else None,
                    new_address=transition.promoted.address,
                    epoch=transition.promoted.epoch,
                )
            )
        return transition

    async def _report_quorum(self, verdict: Verdict) -> None:
        if verdict.indeterminate:
            if self._quorum_lost or verdict.warming_up:
                return
            self._quorum_lost = True
            current = self.current
            await self._bus.publish(
                ControllerEvent(
                    kind=EventKind.QUORUM_LOST,
                    old_address=current.address if current else None,
                    reason=verdict.reason.value if verdict.reason else None,
                )
            )
        elif self._quorum_lost is not False:
            was_lost = self._quorum_lost
            self._quorum_lost = False
            if was_lost:
                await self._bus.publish(
                    ControllerEvent(kind=EventKind.QUORUM_REGAINED, new_address=verdict.leader)
                )
