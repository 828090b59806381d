"""
Routing-target store interface and an in-memory implementation.

A store is the sole source of truth for what is currently published. Writes
are compare-and-swap on an opaque version token.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from ..errors import StoreUnavailable, TargetNotFound
from ..models import RedisAddress, RoutingTarget


@dataclass(frozen=True)
class Applied:
    new_version: str


@dataclass(frozen=True)
class Conflict:
    current_version: Optional[str] = None


@dataclass(frozen=True)
class NotFound:
    pass


ApplyResult = Union[Applied, Conflict, NotFound]


class RoutingTargetStore(Protocol):
    """Read current state / apply desired state with a version check."""

    async def read(self, target_id: str) -> RoutingTarget:
        """Current target. Raises TargetNotFound or StoreUnavailable."""
        ...

    async def apply(
        self, target_id: str, address: RedisAddress, expected_version: str
    ) -> ApplyResult:
        """Publish ``address`` if the version is still ``expected_version``.

        Raises StoreUnavailable when the store cannot be reached.
        """
        ...


class InMemoryRoutingTargetStore:
    """Versioned in-process store.

    Useful for dry runs and tests. ``external_write`` simulates another
    writer changing the target underneath the controller.
    """

    def __init__(self) -> None:
        self._targets: dict[str, RoutingTarget] = {}
        self._versions = itertools.count(1)
        self._lock = asyncio.Lock()
        self.reads = 0
        self.applies = 0
        self.available = True

    def create(self, target_id: str, address: Optional[RedisAddress] = None) -> RoutingTarget:
        target = RoutingTarget(address=address, version=str(next(self._versions)))
        self._targets[target_id] = target
        return target

    def get(self, target_id: str) -> Optional[RoutingTarget]:
        return self._targets.get(target_id)

    def external_write(self, target_id: str, address: Optional[RedisAddress]) -> RoutingTarget:
        """Unconditional write by someone else; bumps the version."""
        return self.create(target_id, address)

    async def read(self, target_id: str) -> RoutingTarget:
        self.reads += 1
        self._check_available()
        target = self._targets.get(target_id)
        if target is None:
            raise TargetNotFound(target_id)
        return target

    async def apply(
        self, target_id: str, address: RedisAddress, expected_version: str
    ) -> ApplyResult:
        self.applies += 1
        self._check_available()
        async with self._lock:
            current = self._targets.get(target_id)
            if current is None:
                return NotFound()
            if current.version != expected_version:
                return Conflict(current_version=current.version)
            updated = self.create(target_id, address)
            return Applied(new_version=updated.version)

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailable("in-memory store marked unavailable")
