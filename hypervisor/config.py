import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class HypervisorConfig:
    host: Optional[str] = os.getenv("HYPERVISOR_API_URL") or None
    token_id: Optional[str] = os.getenv("HYPERVISOR_TOKEN_ID") or None
    token_secret: Optional[str] = os.getenv("HYPERVISOR_TOKEN_SECRET") or None
    api_prefix: str = "/api2/json"

    verify_ssl: bool = _env_bool("HYPERVISOR_VERIFY_SSL", "false")
    timeout: float = float(os.getenv("HYPERVISOR_TIMEOUT", "30.0"))
    test_timeout: float = float(os.getenv("HYPERVISOR_TEST_TIMEOUT", "10.0"))
    max_connections: int = int(os.getenv("HYPERVISOR_MAX_CONNECTIONS", "50"))

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.token_id and self.token_secret)

    @property
    def auth_header(self) -> str:
        return f"PVEAPIToken={self.token_id}={self.token_secret}"


@dataclass(frozen=True)
class ServiceConfig:
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    demo_mode: bool = _env_bool("DEMO_MODE", "false")

    sweep_enabled: bool = _env_bool("BILLING_SWEEP_ENABLED", "true")
    sweep_interval: float = float(os.getenv("BILLING_SWEEP_INTERVAL", "3600"))
    sweep_archive_enabled: bool = _env_bool("BILLING_SWEEP_ARCHIVE", "false")


hypervisor_config = HypervisorConfig()
service_config = ServiceConfig()
