import logging
import random
from dataclasses import dataclass, field
from typing import List

from .api_client import HypervisorError, ResourceUsage
from .provider import ClientProvider

logger = logging.getLogger(__name__)

DEMO_ID_RANGE = (200, 1199)

MOCK_RESOURCES = [
    {"vmid": 100, "name": "demo-mock-vm", "node": "pve-01", "maxcpu": 4, "maxmem": 8589934592, "type": "qemu",
     "tags": "owner-demo"},
    {"vmid": 101, "name": "db-server-mock", "node": "pve-01", "maxcpu": 2, "maxmem": 4294967296, "type": "qemu",
     "tags": "owner-demo"},
    {"vmid": 102, "name": "web-worker-mock", "node": "pve-02", "maxcpu": 8, "maxmem": 17179869184, "type": "qemu"},
    {"vmid": 9000, "name": "ubuntu-22.04-template", "node": "pve-01", "maxcpu": 2, "maxmem": 2147483648,
     "template": 1, "type": "qemu"},
    {"vmid": 9001, "name": "alpine-lxc-template", "node": "pve-01", "maxcpu": 1, "maxmem": 536870912,
     "template": 1, "type": "lxc"},
]


@dataclass
class ResourceListing:
    resources: List[ResourceUsage] = field(default_factory=list)
    degraded: bool = False


@dataclass
class AllocatedId:
    instance_id: int
    degraded: bool = False


class RealResourceSource:
    """Reads from the hypervisor and lets failures propagate."""

    def __init__(self, provider: ClientProvider):
        self.provider = provider

    async def list_resources(self) -> ResourceListing:
        resources = await self.provider.get_client().list_resources()
        return ResourceListing(resources=resources)

    async def list_tenant_resources(self, tenant_id: str) -> ResourceListing:
        resources = await self.provider.get_client().list_resources_for_tenant(tenant_id)
        return ResourceListing(resources=resources)

    async def next_id(self) -> AllocatedId:
        return AllocatedId(instance_id=await self.provider.get_client().get_next_id())


class DegradedMockSource(RealResourceSource):
    """Demo-mode source: substitutes placeholder data when the hypervisor is unreachable.

    Substituted results are flagged ``degraded`` and logged so they can be
    told apart from real data.
    """

    async def list_resources(self) -> ResourceListing:
        try:
            return await super().list_resources()
        except HypervisorError as e:
            logger.warning(f"Failed to fetch resources ({e.message}). Returning MOCK data for demo.")
            return ResourceListing(
                resources=[ResourceUsage.from_api(item) for item in MOCK_RESOURCES],
                degraded=True
            )

    async def list_tenant_resources(self, tenant_id: str) -> ResourceListing:
        try:
            return await super().list_tenant_resources(tenant_id)
        except HypervisorError as e:
            logger.warning(f"Failed to fetch resources for {tenant_id} ({e.message}). Returning MOCK data for demo.")
            # mock instances are owned by the "demo" tenant
            resources = [
                r for r in (ResourceUsage.from_api(item) for item in MOCK_RESOURCES)
                if not r.template and r.owned_by(tenant_id)
            ]
            return ResourceListing(resources=resources, degraded=True)

    async def next_id(self) -> AllocatedId:
        try:
            return await super().next_id()
        except HypervisorError as e:
            instance_id = random.randint(*DEMO_ID_RANGE)
            logger.warning(f"Failed to get next instance id ({e.message}). Using MOCK id {instance_id}.")
            return AllocatedId(instance_id=instance_id, degraded=True)


def build_resource_source(provider: ClientProvider, demo_mode: bool) -> RealResourceSource:
    if demo_mode:
        logger.warning("Demo mode enabled: hypervisor failures will be masked with placeholder data")
        return DegradedMockSource(provider)
    return RealResourceSource(provider)


_resource_source = None


def get_resource_source() -> RealResourceSource:
    global _resource_source
    if _resource_source is None:
        from .config import service_config
        from .provider import get_client_provider
        _resource_source = build_resource_source(get_client_provider(), service_config.demo_mode)
    return _resource_source
