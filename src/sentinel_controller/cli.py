from __future__ import annotations

import asyncio
import json
import signal
import sys
from typing import Optional

import typer
from loguru import logger
from prometheus_client import start_http_server

from .config import ControllerSettings, get_settings
from .controller import SentinelController
from .errors import ConfigurationError
from .models import quorum_size
from .observability import EventBus, log_event, record_event
from .quorum import tally
from .reconcile.kubernetes import KubernetesEndpointsStore
from .sentinel.connection import redis_client_factory
from .sentinel.registry import SentinelRegistry

app = typer.Typer(
    help="Keep a Kubernetes service pointed at the Redis primary elected by sentinels"
)


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level)


def _load_settings() -> ControllerSettings:
    try:
        return get_settings()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(code=2)


def build_store(settings: ControllerSettings) -> KubernetesEndpointsStore:
    if settings.kube_api_url:
        return KubernetesEndpointsStore(
            settings.kube_api_url,
            token=settings.kube_token,
            verify=settings.kube_verify,
            port_name=settings.kube_port_name,
        )
    return KubernetesEndpointsStore.in_cluster(port_name=settings.kube_port_name)


async def _serve(settings: ControllerSettings) -> None:
    bus = EventBus()
    bus.subscribe(log_event)
    bus.subscribe(record_event)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows

    async with build_store(settings) as store:
        async with SentinelController.from_settings(settings, store, bus=bus) as controller:
            closed = asyncio.create_task(controller.wait_closed())
            stopped = asyncio.create_task(stop.wait())
            await asyncio.wait({closed, stopped}, return_when=asyncio.FIRST_COMPLETED)
            for t in (closed, stopped):
                t.cancel()
            logger.info("Shutting down")


@app.command()
def run(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
    metrics_port: Optional[int] = typer.Option(
        None, "--metrics-port", help="Override METRICS_PORT"
    ),
):
    """Run the controller until SIGINT/SIGTERM."""
    settings = _load_settings()
    _configure_logging(log_level or settings.log_level)
    try:
        settings.validate_for_run()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(code=2)

    port = metrics_port if metrics_port is not None else settings.metrics_port
    if port:
        start_http_server(port)
        logger.info(f"Prometheus metrics available at http://0.0.0.0:{port}/metrics")

    asyncio.run(_serve(settings))


async def _resolve(settings: ControllerSettings) -> dict:
    registry = SentinelRegistry(
        settings.sentinel_addresses,
        settings.master_name,
        client_factory=redis_client_factory(
            username=settings.sentinel_username,
            password=settings.sentinel_password,
            socket_timeout=settings.socket_timeout,
        ),
        unreachable_after=1,
    )
    try:
        await registry.refresh()
    finally:
        await registry.stop()
    snapshot = registry.snapshot()
    verdict = tally(snapshot)
    return {
        "master_name": settings.master_name,
        "quorum": quorum_size(snapshot.configured),
        "sentinels": {
            ep.endpoint_id: {
                "health": ep.health.value,
                "primary": str(ep.reported_primary) if ep.reported_primary else None,
            }
            for ep in registry.endpoints()
        },
        "primary": str(verdict.leader) if verdict.leader else None,
        "votes": verdict.votes,
        "indeterminate_reason": verdict.reason.value if verdict.reason else None,
    }


@app.command()
def resolve():
    """Query every sentinel once and print the quorum verdict (no debounce, no writes)."""
    settings = _load_settings()
    _configure_logging(settings.log_level)
    try:
        result = asyncio.run(_resolve(settings))
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(code=2)
    typer.echo(json.dumps(result, indent=2))
    if result["primary"] is None:
        raise typer.Exit(code=1)


async def _show_target(settings: ControllerSettings) -> dict:
    async with build_store(settings) as store:
        target = await store.read(settings.target_id)
    return {
        "target_id": settings.target_id,
        "address": str(target.address) if target.address else None,
        "version": target.version,
    }


@app.command("show-target")
def show_target():
    """Print the currently published routing target."""
    settings = _load_settings()
    _configure_logging(settings.log_level)
    try:
        result = asyncio.run(_show_target(settings))
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(code=2)
    except Exception as e:
        logger.error(f"Failed to read routing target: {e}")
        raise typer.Exit(code=1)
    typer.echo(json.dumps(result, indent=2))


if __name__ == "__main__":
    app()
