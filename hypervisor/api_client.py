import asyncio
import logging
from typing import Optional, Dict, Any, List
from dataclasses import dataclass

import httpx

from .config import HypervisorConfig

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
BYTES_PER_GB = 1024 * 1024 * 1024


class HypervisorError(Exception):
    def __init__(self, status_code: int, message: str, response: Optional[Dict] = None):
        self.status_code = status_code
        self.message = message
        self.response = response
        super().__init__(f"Hypervisor Error {status_code}: {message}")


@dataclass(frozen=True)
class ResourceUsage:
    instance_id: int
    instance_type: str
    name: Optional[str]
    node: Optional[str]
    cores: int
    memory_mb: int
    disk_gb: int
    tags: str = ""
    template: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ResourceUsage":
        return cls(
            instance_id=int(data.get("vmid", 0)),
            instance_type=data.get("type", "qemu"),
            name=data.get("name"),
            node=data.get("node"),
            cores=int(data.get("maxcpu") or 0),
            memory_mb=round((data.get("maxmem") or 0) / BYTES_PER_MB),
            disk_gb=round((data.get("maxdisk") or 0) / BYTES_PER_GB),
            tags=data.get("tags") or "",
            template=bool(data.get("template"))
        )

    def owned_by(self, tenant_id: str) -> bool:
        return owner_tag(tenant_id) in self.tags.replace(",", ";").split(";")


def owner_tag(tenant_id: str) -> str:
    return f"owner-{tenant_id}"


class HypervisorClient:
    """Client for the hypervisor control API.

    Instances are bound to one immutable ``HypervisorConfig``. A config
    change produces a new client (see ``provider.ClientProvider``), so a
    request in flight always finishes against the settings it started with.
    Every request carries its own timeout.
    """

    def __init__(self, config: HypervisorConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            async with self._lock:
                if self._client is None or self._client.is_closed:
                    limits = httpx.Limits(max_connections=self.config.max_connections)
                    self._client = httpx.AsyncClient(
                        base_url=self.config.host or "",
                        headers={"Authorization": self.config.auth_header},
                        timeout=httpx.Timeout(self.config.timeout),
                        limits=limits,
                        verify=self.config.verify_ssl,
                        transport=self._transport
                    )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict] = None,
        params: Optional[Dict] = None
    ) -> Any:
        if not self.config.is_configured:
            raise HypervisorError(0, "Hypervisor connection is not configured")

        client = await self._get_client()
        url = f"{self.config.api_prefix}{path}"

        try:
            response = await client.request(method, url, json=json, params=params)
        except httpx.TimeoutException as e:
            logger.warning(f"Hypervisor request timeout: {method} {url}")
            raise HypervisorError(0, f"Request timeout: {str(e)}") from e
        except httpx.HTTPError as e:
            logger.warning(f"Hypervisor connection error: {method} {url}: {e}")
            raise HypervisorError(0, f"Connection error: {str(e)}") from e

        if response.status_code >= 400:
            try:
                error_data = response.json() if response.content else {}
            except ValueError:
                error_data = {}
            message = error_data.get("errors") or error_data.get("message") or response.text or response.reason_phrase
            raise HypervisorError(response.status_code, str(message), error_data)

        if not response.content:
            return None
        return response.json().get("data")

    def _instance_path(self, node: str, instance_type: str, instance_id: int) -> str:
        return f"/nodes/{node}/{instance_type}/{instance_id}"

    async def get_nodes(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/nodes") or []

    async def get_next_id(self) -> int:
        return int(await self._request("GET", "/cluster/nextid"))

    async def list_resources(self) -> List[ResourceUsage]:
        data = await self._request("GET", "/cluster/resources", params={"type": "vm"}) or []
        return [ResourceUsage.from_api(item) for item in data]

    async def list_resources_for_tenant(self, tenant_id: str) -> List[ResourceUsage]:
        resources = await self.list_resources()
        return [r for r in resources if not r.template and r.owned_by(tenant_id)]

    async def clone_template(
        self,
        node: str,
        instance_type: str,
        template_id: int,
        new_id: int,
        payload: Dict[str, Any]
    ) -> Optional[str]:
        body = {"newid": new_id, **payload}
        return await self._request(
            "POST",
            f"{self._instance_path(node, instance_type, template_id)}/clone",
            json=body
        )

    async def apply_config(
        self,
        node: str,
        instance_type: str,
        instance_id: int,
        payload: Dict[str, Any],
        method: str = "POST"
    ) -> Any:
        return await self._request(
            method,
            f"{self._instance_path(node, instance_type, instance_id)}/config",
            json=payload
        )

    async def stop_instance(self, node: str, instance_type: str, instance_id: int) -> Optional[str]:
        return await self._request(
            "POST",
            f"{self._instance_path(node, instance_type, instance_id)}/status/stop"
        )

    async def delete_instance(self, node: str, instance_type: str, instance_id: int) -> Optional[str]:
        return await self._request(
            "DELETE",
            self._instance_path(node, instance_type, instance_id)
        )


async def test_connection(
    host: str,
    token_id: str,
    token_secret: str,
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, Any]:
    """Connectivity pre-flight against a candidate configuration. Never raises."""
    config = HypervisorConfig(
        host=host,
        token_id=token_id,
        token_secret=token_secret,
        timeout=timeout
    )
    client = HypervisorClient(config, transport=transport)
    try:
        nodes = await client.get_nodes()
        node_count = len(nodes)
        return {
            "success": True,
            "message": f"Connected successfully! Found {node_count} node(s).",
            "node_count": node_count
        }
    except HypervisorError as e:
        return {"success": False, "message": f"Connection failed: {e.message}", "node_count": None}
    except Exception as e:
        logger.error(f"Unexpected error testing hypervisor connection: {e}")
        return {"success": False, "message": f"Connection failed: {str(e)}", "node_count": None}
    finally:
        await client.close()
