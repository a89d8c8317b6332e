import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import quote

from hypervisor.api_client import HypervisorError, owner_tag
from hypervisor.provider import ClientProvider
from hypervisor.sources import RealResourceSource
from models.schemas import Credentials, InstanceType
from services.errors import ProvisioningError, ProvisioningErrorKind

logger = logging.getLogger(__name__)

CONFIG_RETRY_DELAYS = (3.0, 5.0, 8.0, 12.0, 15.0)
STOP_SETTLE_DELAY = 2.0
FALLBACK_CLONE_TASK = "UPID:clone:task"

Sleep = Callable[[float], Awaitable[Any]]


def config_retry_delay(attempt: int) -> float:
    """Wait before config attempt ``attempt`` (1-based)."""
    if attempt < 1 or attempt > len(CONFIG_RETRY_DELAYS):
        raise ValueError(f"attempt must be between 1 and {len(CONFIG_RETRY_DELAYS)}")
    return CONFIG_RETRY_DELAYS[attempt - 1]


@dataclass(frozen=True)
class InstanceVariant:
    instance_type: InstanceType
    label: str
    name_field: str
    config_method: str
    password_field: str
    ssh_keys_field: str
    user_field: Optional[str] = None

    def clone_payload(self, name: str) -> Dict[str, Any]:
        return {self.name_field: name, "full": 1}

    def config_payload(self, cores: int, memory_mb: int, tags: str, credentials: Credentials) -> Dict[str, Any]:
        payload = {"cores": cores, "memory": memory_mb, "tags": tags}
        if self.user_field and credentials.user:
            payload[self.user_field] = credentials.user
        if credentials.password:
            payload[self.password_field] = credentials.password
        if credentials.ssh_keys:
            payload[self.ssh_keys_field] = quote(credentials.ssh_keys, safe="")
        return payload


VARIANTS = {
    InstanceType.VM: InstanceVariant(
        instance_type=InstanceType.VM,
        label="VM",
        name_field="name",
        config_method="POST",
        user_field="ciuser",
        password_field="cipassword",
        ssh_keys_field="sshkeys"
    ),
    InstanceType.CONTAINER: InstanceVariant(
        instance_type=InstanceType.CONTAINER,
        label="CT",
        name_field="hostname",
        config_method="PUT",
        password_field="password",
        ssh_keys_field="ssh-public-keys"
    ),
}


@dataclass
class ProvisionResult:
    instance_id: int
    task: str
    config_warning: bool = False
    config_attempts: int = 0
    degraded_id: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "task": self.task,
            "config_warning": self.config_warning,
            "config_attempts": self.config_attempts,
            "degraded_id": self.degraded_id
        }


class ProvisioningService:
    """Clones templates into new instances and applies their configuration.

    The clone runs asynchronously on the hypervisor, so the configuration
    is retried on a fixed schedule. Exhausting the schedule leaves a usable
    but unconfigured instance and is reported as ``config_warning``.
    """

    def __init__(
        self,
        provider: ClientProvider,
        resource_source: RealResourceSource,
        sleep: Sleep = asyncio.sleep
    ):
        self.provider = provider
        self.resource_source = resource_source
        self.sleep = sleep

    async def _allocate_id(self):
        try:
            return await self.resource_source.next_id()
        except HypervisorError as e:
            raise ProvisioningError(
                ProvisioningErrorKind.NEXT_ID_UNAVAILABLE,
                f"Could not allocate an instance id: {e.message}"
            ) from e

    async def _apply_config(
        self,
        variant: InstanceVariant,
        node: str,
        instance_id: int,
        payload: Dict[str, Any]
    ) -> int:
        """Returns the successful attempt number, or 0 when every attempt failed."""
        for attempt in range(1, len(CONFIG_RETRY_DELAYS) + 1):
            await self.sleep(config_retry_delay(attempt))
            try:
                # fetched per attempt so a config swap applies to the next try
                client = self.provider.get_client()
                await client.apply_config(
                    node,
                    variant.instance_type.value,
                    instance_id,
                    payload,
                    method=variant.config_method
                )
                logger.info(f"Config applied to {variant.label} {instance_id} on attempt {attempt}")
                return attempt
            except HypervisorError as e:
                logger.warning(f"Config apply attempt {attempt} failed for {variant.label} {instance_id}: {e.message}")
        return 0

    async def provision(
        self,
        tenant_id: str,
        node: str,
        template_id: int,
        name: str,
        instance_type: InstanceType,
        cores: int,
        memory_mb: int,
        credentials: Optional[Credentials] = None
    ) -> ProvisionResult:
        variant = VARIANTS[InstanceType(instance_type)]
        credentials = credentials or Credentials()

        allocated = await self._allocate_id()
        instance_id = allocated.instance_id

        try:
            task = await self.provider.get_client().clone_template(
                node,
                variant.instance_type.value,
                template_id,
                instance_id,
                variant.clone_payload(name)
            )
        except HypervisorError as e:
            logger.error(f"Error creating {variant.label} from template {template_id}: {e.message}")
            raise ProvisioningError(
                ProvisioningErrorKind.CLONE_FAILED,
                f"Clone of template {template_id} failed: {e.message}",
                {"template_id": template_id, "instance_id": instance_id}
            ) from e

        logger.info(f"Clone task started: {task} for {variant.label} {instance_id}")

        payload = variant.config_payload(cores, memory_mb, owner_tag(tenant_id), credentials)
        attempt = await self._apply_config(variant, node, instance_id, payload)
        if not attempt:
            logger.error(
                f"Failed to apply config with tags to {variant.label} {instance_id} "
                f"after {len(CONFIG_RETRY_DELAYS)} attempts"
            )

        return ProvisionResult(
            instance_id=instance_id,
            task=task or FALLBACK_CLONE_TASK,
            config_warning=not attempt,
            config_attempts=attempt or len(CONFIG_RETRY_DELAYS),
            degraded_id=allocated.degraded
        )

    async def deprovision(self, node: str, instance_id: int, instance_type: InstanceType) -> str:
        variant = VARIANTS[InstanceType(instance_type)]
        client = self.provider.get_client()

        try:
            await client.stop_instance(node, variant.instance_type.value, instance_id)
            await self.sleep(STOP_SETTLE_DELAY)
        except HypervisorError:
            logger.warning(f"Could not stop {variant.label} {instance_id} before deletion (might already be stopped)")

        try:
            task = await client.delete_instance(node, variant.instance_type.value, instance_id)
        except HypervisorError as e:
            logger.error(f"Error deleting {variant.label} {instance_id}: {e.message}")
            raise
        return task or f"UPID:{node}:delete:{instance_id}"
