from .api_client import HypervisorClient, HypervisorError, ResourceUsage, owner_tag
from .config import hypervisor_config, service_config, HypervisorConfig, ServiceConfig
from .provider import ClientProvider, get_client_provider, close_client_provider
from .sources import (
    RealResourceSource,
    DegradedMockSource,
    build_resource_source,
    get_resource_source,
)

__all__ = [
    "HypervisorClient",
    "HypervisorError",
    "ResourceUsage",
    "owner_tag",
    "hypervisor_config",
    "service_config",
    "HypervisorConfig",
    "ServiceConfig",
    "ClientProvider",
    "get_client_provider",
    "close_client_provider",
    "RealResourceSource",
    "DegradedMockSource",
    "build_resource_source",
    "get_resource_source",
]
