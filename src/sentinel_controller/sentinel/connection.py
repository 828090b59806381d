"""
One failure-isolated connection to a single sentinel.

Each connection runs two tasks: a poller issuing
``SENTINEL get-master-addr-by-name`` every poll interval (or after a backoff
delay while failing) and a listener subscribed to ``+switch-master``. Both
publish into the registry's slot for this endpoint and never raise into it.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Any, Callable, Optional, Protocol

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..errors import InvalidSentinelResponse, SentinelUnreachable
from ..models import RedisAddress, SentinelEndpoint, SentinelHealth, SentinelReport
from ..policy import RetryPolicy

SWITCH_MASTER_CHANNEL = "+switch-master"

# Errors that mean "this sentinel is not answering right now"
CONNECTION_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class ReportSink(Protocol):
    """What a connection publishes into (implemented by SentinelRegistry)."""

    def publish(self, report: SentinelReport) -> None: ...

    async def update_endpoint(
        self,
        endpoint: SentinelEndpoint,
        previous: Optional[SentinelHealth] = None,
        reason: Optional[str] = None,
    ) -> None: ...


ClientFactory = Callable[[RedisAddress], Any]


def redis_client_factory(
    *,
    username: Optional[str] = None,
    password: Optional[str] = None,
    socket_timeout: float = 1.0,
) -> ClientFactory:
    """Build ``redis.asyncio.Redis`` clients for sentinels."""

    def factory(address: RedisAddress) -> Redis:
        return Redis(
            host=address.host,
            port=address.port,
            username=username,
            password=password,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=True,
        )

    return factory


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def parse_master_reply(endpoint_id: str, reply: Any) -> Optional[RedisAddress]:
    """Parse a ``get-master-addr-by-name`` reply.

    Returns None when the sentinel does not know the deployment (nil reply).
    Raises InvalidSentinelResponse for anything other than ``[host, port]``.
    """
    if reply is None:
        return None
    if not isinstance(reply, (list, tuple)) or len(reply) != 2:
        raise InvalidSentinelResponse(endpoint_id, "response did not have exactly 2 elements")
    host = _text(reply[0])
    try:
        port = int(_text(reply[1]))
    except ValueError:
        raise InvalidSentinelResponse(endpoint_id, f"port is invalid: {reply[1]!r}") from None
    return RedisAddress(host=host, port=port)


def parse_switch_master(
    endpoint_id: str, payload: Any, master_name: str
) -> Optional[RedisAddress]:
    """Parse a ``+switch-master`` payload.

    Format: ``<name> <old-host> <old-port> <new-host> <new-port>``. Returns
    None for notifications about other deployments.
    """
    segments = _text(payload).split()
    if len(segments) < 5:
        raise InvalidSentinelResponse(endpoint_id, f"invalid switch-master event: {segments}")
    if segments[0] != master_name:
        return None
    try:
        port = int(segments[4])
    except ValueError:
        raise InvalidSentinelResponse(
            endpoint_id, f"invalid port in switch-master event: {segments[4]!r}"
        ) from None
    return RedisAddress(host=segments[3], port=port)


class SentinelConnection:
    """Connection to one sentinel with reconnect/backoff and health tracking.

    Health goes ``Connected -> Reconnecting`` on the first failure,
    ``Reconnecting -> Unreachable`` once ``unreachable_after`` consecutive
    failures are reached, and back to ``Connected`` on the first success.
    """

    def __init__(
        self,
        address: RedisAddress,
        master_name: str,
        sink: ReportSink,
        *,
        client_factory: ClientFactory,
        poll_interval: float = 1.0,
        backoff: Optional[RetryPolicy] = None,
        unreachable_after: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.address = address
        self.endpoint_id = str(address)
        self.master_name = master_name
        self._sink = sink
        self._client_factory = client_factory
        self._poll_interval = poll_interval
        self._backoff = backoff or RetryPolicy(
            initial_backoff_ms=250, max_backoff_ms=10_000, jitter=True
        )
        self._unreachable_after = max(1, unreachable_after)
        self._clock = clock

        self._endpoint = SentinelEndpoint(endpoint_id=self.endpoint_id)
        self._client: Any = None
        self._tasks: list[asyncio.Task] = []
        self._query_lock = asyncio.Lock()
        self._last_query_ok = False

    @property
    def snapshot(self) -> SentinelEndpoint:
        return self._endpoint

    # ---------- lifecycle ----------

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._poll_loop(), name=f"sentinel-poll-{self.endpoint_id}"),
            asyncio.create_task(self._listen_loop(), name=f"sentinel-listen-{self.endpoint_id}"),
        ]

    async def stop(self, grace: float = 1.0) -> None:
        for t in self._tasks:
            t.cancel()
        if self._tasks:
            await asyncio.wait(self._tasks, timeout=grace)
        self._tasks = []
        await self._drop_client()

    # ---------- queries ----------

    async def query_once(self) -> bool:
        """Ask the sentinel for the primary once; True on success.

        A caller arriving while a query is in flight waits for that query and
        shares its result, so one outage is counted once.
        """
        if self._query_lock.locked():
            async with self._query_lock:
                return self._last_query_ok
        async with self._query_lock:
            self._last_query_ok = await self._query()
            return self._last_query_ok

    async def _query(self) -> bool:
        try:
            client = self._ensure_client()
            reply = await client.execute_command(
                "SENTINEL", "get-master-addr-by-name", self.master_name
            )
            address = parse_master_reply(self.endpoint_id, reply)
        except InvalidSentinelResponse as exc:
            await self._record_failure(exc)
            return False
        except CONNECTION_ERRORS as exc:
            await self._drop_client()
            await self._record_failure(SentinelUnreachable(self.endpoint_id, str(exc)))
            return False
        except Exception as exc:
            logger.warning(f"Unexpected error querying sentinel {self.endpoint_id}: {exc!r}")
            await self._drop_client()
            reason = f"{type(exc).__name__}: {exc}"
            await self._record_failure(SentinelUnreachable(self.endpoint_id, reason))
            return False
        await self._record_success(address)
        return True

    async def handle_notification(self, payload: Any) -> None:
        """Handle one ``+switch-master`` payload."""
        try:
            address = parse_switch_master(self.endpoint_id, payload, self.master_name)
        except InvalidSentinelResponse as exc:
            logger.warning(f"Ignoring notification from {self.endpoint_id}: {exc}")
            return
        if address is None:
            logger.debug(f"Sentinel {self.endpoint_id}: switch-master for another deployment")
            return
        logger.info(f"Sentinel {self.endpoint_id} announced new primary {address}")
        await self._record_success(address)

    # ---------- loops ----------

    async def _poll_loop(self) -> None:
        while True:
            ok = await self.query_once()
            if ok:
                delay = self._poll_interval
            else:
                delay = self._backoff.next_backoff(self._endpoint.consecutive_failures)
            await asyncio.sleep(delay)

    async def _listen_loop(self) -> None:
        failures = 0
        while True:
            try:
                await self._listen()
                failures = 0
            except CONNECTION_ERRORS as exc:
                failures += 1
                logger.debug(f"Sentinel {self.endpoint_id} subscription failed: {exc}")
            except Exception as exc:
                failures += 1
                logger.warning(f"Sentinel {self.endpoint_id} subscription error: {exc!r}")
            await asyncio.sleep(self._backoff.next_backoff(max(1, failures)))

    async def _listen(self) -> None:
        client = self._ensure_client()
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(SWITCH_MASTER_CHANNEL)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self.handle_notification(message.get("data"))
        finally:
            await pubsub.aclose()

    # ---------- state ----------

    def _ensure_client(self) -> Any:
        if self._client is None:
            self._client = self._client_factory(self.address)
        return self._client

    async def _drop_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.aclose()
        except CONNECTION_ERRORS as exc:
            logger.debug(f"Error closing sentinel client {self.endpoint_id}: {exc}")

    async def _record_success(self, address: Optional[RedisAddress]) -> None:
        now = self._clock()
        previous = self._endpoint.health
        self._endpoint = replace(
            self._endpoint,
            health=SentinelHealth.CONNECTED,
            reported_primary=address,
            last_seen=now,
            consecutive_failures=0,
        )
        self._sink.publish(
            SentinelReport(endpoint_id=self.endpoint_id, reported_primary=address, timestamp=now)
        )
        await self._sink.update_endpoint(self._endpoint, previous)

    async def _record_failure(self, exc: Exception) -> None:
        previous = self._endpoint.health
        failures = self._endpoint.consecutive_failures + 1
        health = (
            SentinelHealth.UNREACHABLE
            if failures >= self._unreachable_after
            else SentinelHealth.RECONNECTING
        )
        self._endpoint = replace(
            self._endpoint,
            health=health,
            reported_primary=None,
            consecutive_failures=failures,
        )
        logger.debug(f"Sentinel {self.endpoint_id} failure #{failures}: {exc}")
        await self._sink.update_endpoint(self._endpoint, previous, reason=str(exc))
