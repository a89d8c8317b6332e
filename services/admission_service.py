import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Any

from sqlalchemy.orm import Session

from hypervisor.sources import RealResourceSource
from models.schemas import AdmissionRequest, BillingMode, TenantContext
from services.errors import AdmissionError, AdmissionErrorKind
from services.money import format_amount
from services.price_service import PriceService
from services.wallet_service import WalletService

logger = logging.getLogger(__name__)


@dataclass
class TenantUsage:
    instances: int = 0
    cpu: int = 0
    memory: int = 0
    disk: int = 0
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instances": self.instances,
            "cpu": self.cpu,
            "memory": self.memory,
            "disk": self.disk,
            "degraded": self.degraded
        }


@dataclass
class AdmissionDecision:
    required_credits: Decimal
    hourly_cost: Decimal
    monthly_cost: Decimal
    billing_mode: BillingMode
    usage: TenantUsage = field(default_factory=TenantUsage)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "admitted": True,
            "required_credits": format_amount(self.required_credits),
            "hourly_cost": format_amount(self.hourly_cost),
            "monthly_cost": format_amount(self.monthly_cost),
            "billing_mode": self.billing_mode.value,
            "usage": self.usage.to_dict()
        }


class AdmissionService:
    """Gates instance creation on node allow-list, tenant quota and credit.

    Checks run in order and stop at the first denial. Disk usage is
    aggregated and reported but does not gate admission.
    """

    def __init__(
        self,
        mysql_session: Session,
        resource_source: RealResourceSource,
        price_service: PriceService = None,
        wallet_service: WalletService = None
    ):
        self.resource_source = resource_source
        self.price_service = price_service or PriceService(mysql_session)
        self.wallet_service = wallet_service or WalletService(mysql_session)

    async def current_usage(self, tenant_id: str) -> TenantUsage:
        listing = await self.resource_source.list_tenant_resources(tenant_id)
        usage = TenantUsage(degraded=listing.degraded)
        for resource in listing.resources:
            usage.instances += 1
            usage.cpu += resource.cores
            usage.memory += resource.memory_mb
            usage.disk += resource.disk_gb
        return usage

    def _check_node(self, tenant: TenantContext, request: AdmissionRequest):
        if tenant.allowed_nodes and request.node not in tenant.allowed_nodes:
            raise AdmissionError(
                AdmissionErrorKind.NODE_NOT_ALLOWED,
                f'You are not allowed to deploy on node "{request.node}". '
                f"Allowed nodes: {', '.join(tenant.allowed_nodes)}",
                {"node": request.node, "allowed_nodes": tenant.allowed_nodes}
            )

    def _check_quota(self, tenant: TenantContext, request: AdmissionRequest, usage: TenantUsage):
        if usage.instances + 1 > tenant.max_instances:
            raise AdmissionError(
                AdmissionErrorKind.INSTANCE_QUOTA_EXCEEDED,
                f"Instance quota reached ({usage.instances}/{tenant.max_instances}). "
                "Delete an existing instance or request a quota increase.",
                {"current": usage.instances, "limit": tenant.max_instances}
            )
        if usage.cpu + request.cores > tenant.max_cpu:
            raise AdmissionError(
                AdmissionErrorKind.CPU_QUOTA_EXCEEDED,
                f"CPU quota exceeded. Available: {tenant.max_cpu - usage.cpu} cores, "
                f"requested: {request.cores}. (Limit: {tenant.max_cpu} cores)",
                {"current": usage.cpu, "requested": request.cores, "limit": tenant.max_cpu}
            )
        if usage.memory + request.memory_mb > tenant.max_memory:
            raise AdmissionError(
                AdmissionErrorKind.MEMORY_QUOTA_EXCEEDED,
                f"Memory quota exceeded. Available: {tenant.max_memory - usage.memory} MB, "
                f"requested: {request.memory_mb} MB. (Limit: {tenant.max_memory} MB)",
                {"current": usage.memory, "requested": request.memory_mb, "limit": tenant.max_memory}
            )

    async def admit(self, tenant: TenantContext, request: AdmissionRequest) -> AdmissionDecision:
        self._check_node(tenant, request)

        usage = await self.current_usage(tenant.tenant_id)
        if usage.degraded:
            logger.warning(f"Admission for {tenant.tenant_id} evaluated against placeholder usage data")
        self._check_quota(tenant, request, usage)

        hourly = self.price_service.hourly_cost(request.cores, request.memory_mb, request.disk_gb)
        monthly = self.price_service.monthly_cost(request.cores, request.memory_mb, request.disk_gb)
        billing_mode = BillingMode(request.billing_mode)
        required = monthly if billing_mode == BillingMode.RESERVED else hourly

        if not self.wallet_service.has_sufficient_credits(tenant.tenant_id, required):
            balance = self.wallet_service.get_balance(tenant.tenant_id)
            raise AdmissionError(
                AdmissionErrorKind.INSUFFICIENT_CREDITS,
                f"Insufficient credits. Balance: {Decimal(balance.balance):.2f}, "
                f"Required: {required:.2f}. Contact an administrator to obtain credits.",
                {"balance": format_amount(balance.balance), "required": format_amount(required)}
            )

        logger.info(
            f"Admitted {billing_mode.value} request of {tenant.tenant_id} on {request.node} "
            f"({request.cores} cores, {request.memory_mb} MB, {request.disk_gb} GB)"
        )
        return AdmissionDecision(
            required_credits=required,
            hourly_cost=hourly,
            monthly_cost=monthly,
            billing_mode=billing_mode,
            usage=usage
        )
