"""
Kubernetes ``Endpoints`` routing-target store.

The routing target is the Endpoints object backing a selector-less Service,
identified as ``namespace/name``. Writes are PUTs carrying the
``metadata.resourceVersion`` that was read; the API server answers 409 when it
is stale. Host names are resolved to IP addresses before publishing, since
Endpoints only accept IPs; the original ``host:port`` is kept in an annotation.
"""

from __future__ import annotations

import asyncio
import copy
import ipaddress
import socket
from pathlib import Path
from typing import Any, Optional, Union

import httpx
from loguru import logger

from ..errors import ConfigurationError, StoreUnavailable, TargetNotFound
from ..models import RedisAddress, RoutingTarget
from .store import Applied, ApplyResult, Conflict, NotFound

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
IN_CLUSTER_API_URL = "https://kubernetes.default.svc"
ADDRESS_ANNOTATION = "sentinel-controller/primary"


def split_target_id(target_id: str) -> tuple[str, str]:
    namespace, sep, name = target_id.partition("/")
    if not sep or not namespace or not name or "/" in name:
        raise ConfigurationError(f"Invalid target id {target_id!r}, expected namespace/name")
    return namespace, name


async def resolve_host(host: str) -> str:
    """Return ``host`` if it is an IP address, else its first resolved address."""
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        pass
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except socket.gaierror as exc:
        raise StoreUnavailable(f"Failed to resolve {host}: {exc}") from exc
    if not infos:
        raise StoreUnavailable(f"Failed to resolve {host}: no addresses")
    return infos[0][4][0]


class KubernetesEndpointsStore:
    """Routing-target store backed by the Kubernetes API server."""

    def __init__(
        self,
        api_url: str = IN_CLUSTER_API_URL,
        *,
        token: Optional[str] = None,
        verify: Union[str, bool] = True,
        port_name: str = "redis",
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.port_name = port_name
        self._token = token
        self._verify = verify
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._last_seen: dict[str, dict[str, Any]] = {}

    @classmethod
    def in_cluster(cls, **kwargs: Any) -> "KubernetesEndpointsStore":
        """Use the pod's service-account token and CA bundle."""
        token_file = SERVICE_ACCOUNT_DIR / "token"
        ca_file = SERVICE_ACCOUNT_DIR / "ca.crt"
        if not token_file.exists():
            raise ConfigurationError(f"Service account token not found at {token_file}")
        kwargs.setdefault("token", token_file.read_text().strip())
        kwargs.setdefault("verify", str(ca_file) if ca_file.exists() else True)
        return cls(IN_CLUSTER_API_URL, **kwargs)

    # ---------- lifecycle ----------

    async def start(self) -> None:
        if self._client is not None:
            return
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        self._client = httpx.AsyncClient(
            base_url=self.api_url, headers=headers, verify=self._verify, timeout=self._timeout
        )
        self._owns_client = True
        logger.debug(f"Kubernetes store started ({self.api_url})")

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "KubernetesEndpointsStore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ---------- store interface ----------

    async def read(self, target_id: str) -> RoutingTarget:
        resp = await self._request("GET", self._path(target_id))
        if resp.status_code == 404:
            raise TargetNotFound(target_id)
        if resp.status_code >= 300:
            raise StoreUnavailable(f"GET {target_id}: HTTP {resp.status_code}: {resp.text[:200]}")
        body = self._json(resp, f"GET {target_id}")
        try:
            address = await self._published_address(body)
            version = str(body["metadata"]["resourceVersion"])
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise StoreUnavailable(f"GET {target_id}: malformed Endpoints: {exc!r}") from exc
        self._last_seen[target_id] = body
        return RoutingTarget(address=address, version=version)

    async def apply(
        self, target_id: str, address: RedisAddress, expected_version: str
    ) -> ApplyResult:
        ip = await resolve_host(address.host)
        body = self._desired_body(target_id, address, ip, expected_version)
        resp = await self._request("PUT", self._path(target_id), json=body)
        if resp.status_code == 409:
            return Conflict()
        if resp.status_code == 404:
            return NotFound()
        if resp.status_code >= 300:
            raise StoreUnavailable(f"PUT {target_id}: HTTP {resp.status_code}: {resp.text[:200]}")
        updated = self._json(resp, f"PUT {target_id}")
        try:
            new_version = str(updated["metadata"]["resourceVersion"])
        except (KeyError, TypeError) as exc:
            raise StoreUnavailable(f"PUT {target_id}: reply without resourceVersion") from exc
        self._last_seen[target_id] = updated
        return Applied(new_version=new_version)

    # ---------- helpers ----------

    def _path(self, target_id: str) -> str:
        namespace, name = split_target_id(target_id)
        return f"/api/v1/namespaces/{namespace}/endpoints/{name}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._client is None:
            await self.start()
        assert self._client is not None
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise StoreUnavailable(f"{method} {path}: {type(exc).__name__}: {exc}") from exc

    @staticmethod
    def _json(resp: httpx.Response, what: str) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError as exc:
            raise StoreUnavailable(f"{what}: response is not JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise StoreUnavailable(f"{what}: unexpected response body {type(body).__name__}")
        return body

    def _desired_body(
        self, target_id: str, address: RedisAddress, ip: str, expected_version: str
    ) -> dict[str, Any]:
        namespace, name = split_target_id(target_id)
        seen = self._last_seen.get(target_id)
        if seen and str(seen.get("metadata", {}).get("resourceVersion")) == expected_version:
            body = copy.deepcopy(seen)
        else:
            body = {"apiVersion": "v1", "kind": "Endpoints", "metadata": {}}
        meta = body.setdefault("metadata", {})
        meta.update({"name": name, "namespace": namespace, "resourceVersion": expected_version})
        meta.setdefault("annotations", {})[ADDRESS_ANNOTATION] = str(address)
        body["subsets"] = [
            {
                "addresses": [{"ip": ip}],
                "ports": [{"name": self.port_name, "port": address.port, "protocol": "TCP"}],
            }
        ]
        return body

    async def _published_address(self, body: dict[str, Any]) -> Optional[RedisAddress]:
        subsets = body.get("subsets") or []
        if not subsets:
            return None
        subset = subsets[0]
        addresses = subset.get("addresses") or []
        ports = subset.get("ports") or []
        if not addresses or not ports:
            return None
        port = next((p for p in ports if p.get("name") == self.port_name), ports[0])
        published = RedisAddress(host=addresses[0]["ip"], port=int(port["port"]))

        annotated = body.get("metadata", {}).get("annotations", {}).get(ADDRESS_ANNOTATION)
        if not annotated:
            return published
        try:
            claimed = RedisAddress.parse(annotated)
            if claimed.port == published.port:
                if await resolve_host(claimed.host) == published.host:
                    return claimed
        except (ConfigurationError, StoreUnavailable) as exc:
            logger.debug(f"Ignoring annotation {annotated!r}: {exc}")
        return published
