"""
Data model shared by the sentinel, quorum and reconciliation components.

All records are frozen dataclasses so snapshots can be handed between the
connection tasks and the control loop without copying.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .errors import ConfigurationError


@dataclass(frozen=True, order=True)
class RedisAddress:
    """Host/port pair of a Redis server or sentinel."""

    host: str
    port: int

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    @classmethod
    def parse(cls, value: str) -> "RedisAddress":
        """Parse ``host:port`` (IPv6 hosts in brackets)."""
        raw = value.strip()
        host, sep, port = raw.rpartition(":")
        if not sep or not host or not port:
            raise ConfigurationError(f"Invalid address {value!r}, expected host:port")
        if host.startswith("[") and host.endswith("]"):
            host = host[1:-1]
        try:
            port_num = int(port)
        except ValueError:
            raise ConfigurationError(f"Invalid port in address {value!r}") from None
        if not 0 < port_num < 65536:
            raise ConfigurationError(f"Port out of range in address {value!r}")
        return cls(host=host, port=port_num)


class SentinelHealth(str, Enum):
    """Connection health of one sentinel."""

    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class SentinelEndpoint:
    """Read-only snapshot of one sentinel connection's state.

    Attributes:
        endpoint_id: ``host:port`` of the sentinel
        health: Current connection health
        reported_primary: Last primary address the sentinel reported (None if
            it never answered or does not know the deployment)
        last_seen: Monotonic timestamp of the last successful query/notification
        consecutive_failures: Failures since the last success
    """

    endpoint_id: str
    health: SentinelHealth = SentinelHealth.RECONNECTING
    reported_primary: Optional[RedisAddress] = None
    last_seen: Optional[float] = None
    consecutive_failures: int = 0

    @property
    def reachable(self) -> bool:
        return self.health is SentinelHealth.CONNECTED


@dataclass(frozen=True)
class SentinelReport:
    """Update published by a connection into the registry's slot."""

    endpoint_id: str
    reported_primary: Optional[RedisAddress]
    timestamp: float


@dataclass(frozen=True)
class PrimaryView:
    """One address and the sentinels currently reporting it."""

    address: RedisAddress
    reported_by: frozenset[str]
    observed_at: float

    @property
    def votes(self) -> int:
        return len(self.reported_by)


@dataclass(frozen=True)
class ResolvedPrimary:
    """Primary accepted by quorum; ``epoch`` bumps on every accepted change."""

    address: RedisAddress
    epoch: int


@dataclass(frozen=True)
class RoutingTarget:
    """Externally owned routing record; ``version`` is opaque to the controller."""

    address: Optional[RedisAddress]
    version: str


@dataclass
class ReconciliationState:
    """Process-lifetime memory of what the engine last published."""

    last_applied_address: Optional[RedisAddress] = None
    last_applied_version: Optional[str] = None
    last_applied_epoch: Optional[int] = None
    last_attempt_at: Optional[float] = None
    pending_retries: int = 0
    initialized: bool = False


@dataclass(frozen=True)
class QuorumSnapshot:
    """What the registry hands to the resolver on each pass."""

    configured: int
    reports: dict[str, Optional[RedisAddress]] = field(default_factory=dict)
    taken_at: float = 0.0
    pending: int = 0  # endpoints not heard from yet

    @property
    def quorum(self) -> int:
        return quorum_size(self.configured)

    @property
    def reachable(self) -> int:
        return len(self.reports)

    def views(self) -> list[PrimaryView]:
        """Group reachable reports by address, most votes first."""
        grouped: dict[RedisAddress, set[str]] = {}
        for endpoint_id, address in self.reports.items():
            if address is None:
                continue
            grouped.setdefault(address, set()).add(endpoint_id)
        views = [
            PrimaryView(address=addr, reported_by=frozenset(ids), observed_at=self.taken_at)
            for addr, ids in grouped.items()
        ]
        views.sort(key=lambda v: (-v.votes, v.address))
        return views


def quorum_size(configured: int) -> int:
    """Majority of the configured sentinel count: floor(N/2) + 1."""
    if configured <= 0:
        raise ConfigurationError("At least one sentinel must be configured")
    return configured // 2 + 1
