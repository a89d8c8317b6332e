import asyncio
import logging
import threading
from typing import Callable, List, Optional

from .api_client import HypervisorClient
from .config import HypervisorConfig, hypervisor_config

logger = logging.getLogger(__name__)

ClientFactory = Callable[[HypervisorConfig], HypervisorClient]


class ClientProvider:
    """Hands out the client for the current hypervisor configuration.

    Callers fetch a client per operation instead of holding one. Swapping
    the configuration builds a new client; the previous one is left intact
    for requests already using it and is closed on ``aclose``.
    """

    def __init__(self, config: HypervisorConfig = None, factory: ClientFactory = None):
        self._config = config or hypervisor_config
        self._factory = factory or HypervisorClient
        self._client: Optional[HypervisorClient] = None
        self._retired: List[HypervisorClient] = []
        self._lock = threading.Lock()

    @property
    def config(self) -> HypervisorConfig:
        return self._config

    def is_configured(self) -> bool:
        return self._config.is_configured

    def get_client(self) -> HypervisorClient:
        with self._lock:
            if self._client is None or self._client.config is not self._config:
                if self._client is not None:
                    self._retired.append(self._client)
                self._client = self._factory(self._config)
            return self._client

    def update_config(self, config: HypervisorConfig):
        with self._lock:
            self._config = config
        logger.info(f"Hypervisor configuration updated (host: {config.host})")

    async def aclose(self):
        with self._lock:
            clients = self._retired + ([self._client] if self._client else [])
            self._retired = []
            self._client = None
        await asyncio.gather(*(c.close() for c in clients), return_exceptions=True)


_provider_instance: Optional[ClientProvider] = None


def get_client_provider() -> ClientProvider:
    global _provider_instance
    if _provider_instance is None:
        _provider_instance = ClientProvider()
    return _provider_instance


async def close_client_provider():
    global _provider_instance
    if _provider_instance:
        await _provider_instance.aclose()
        _provider_instance = None
