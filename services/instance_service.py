import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from hypervisor.provider import ClientProvider
from hypervisor.sources import RealResourceSource
from models.schemas import (
    AdmissionRequest,
    BillingMode,
    InstanceCreateRequest,
    InstanceType,
)
from services.admission_service import AdmissionService
from services.errors import LedgerError
from services.money import format_amount
from services.price_service import PriceService
from services.provisioning_service import ProvisioningService
from services.usage_service import UsageService
from services.wallet_service import WalletService

logger = logging.getLogger(__name__)


class InstanceService:
    def __init__(
        self,
        mysql_session: Session,
        provider: ClientProvider,
        resource_source: RealResourceSource,
        provisioning_service: ProvisioningService = None
    ):
        self.price_service = PriceService(mysql_session)
        self.wallet_service = WalletService(mysql_session)
        self.usage_service = UsageService(mysql_session, price_service=self.price_service)
        self.admission_service = AdmissionService(
            mysql_session,
            resource_source,
            price_service=self.price_service,
            wallet_service=self.wallet_service
        )
        self.provisioning_service = provisioning_service or ProvisioningService(provider, resource_source)

    async def create_instance(self, request: InstanceCreateRequest) -> Dict[str, Any]:
        tenant = request.tenant
        decision = await self.admission_service.admit(
            tenant,
            AdmissionRequest(
                node=request.node,
                cores=request.cores,
                memory_mb=request.memory_mb,
                disk_gb=request.disk_gb,
                billing_mode=request.billing_mode
            )
        )

        provisioned = await self.provisioning_service.provision(
            tenant_id=tenant.tenant_id,
            node=request.node,
            template_id=request.template_id,
            name=request.name,
            instance_type=request.instance_type,
            cores=request.cores,
            memory_mb=request.memory_mb,
            credentials=request.credentials
        )

        result = provisioned.to_dict()
        result["billing_mode"] = decision.billing_mode.value
        result["billing_warning"] = None

        record = self.usage_service.start_tracking(
            tenant.tenant_id,
            provisioned.instance_id,
            request.node,
            request.instance_type,
            request.name,
            request.cores,
            request.memory_mb,
            request.disk_gb,
            decision.billing_mode
        )
        result["usage_record_id"] = record.id

        if decision.billing_mode == BillingMode.RESERVED:
            # admission only checked the balance; it can have moved since
            try:
                charge = self.wallet_service.debit(
                    tenant.tenant_id,
                    decision.monthly_cost,
                    f"Monthly reservation: {request.name}",
                    {"instance_id": provisioned.instance_id, "billing_mode": decision.billing_mode.value}
                )
                result["charged"] = format_amount(-charge["transaction"].amount)
            except LedgerError as e:
                logger.error(
                    f"Reserved charge for instance {provisioned.instance_id} of {tenant.tenant_id} failed: {e.message}"
                )
                result["billing_warning"] = e.to_dict()

        if provisioned.config_warning:
            logger.warning(
                f"Instance {provisioned.instance_id} of {tenant.tenant_id} created without its configuration"
            )
        return result

    async def delete_instance(
        self,
        tenant_id: str,
        node: str,
        instance_id: int,
        instance_type: InstanceType = InstanceType.VM
    ) -> Dict[str, Any]:
        task = await self.provisioning_service.deprovision(node, instance_id, instance_type)
        stopped = self.usage_service.stop_tracking(tenant_id, instance_id)

        usage = None
        if stopped:
            usage = {
                "record_id": stopped["record"].id,
                "hours_used": format_amount(stopped["hours_used"]),
                "final_cost": format_amount(stopped["final_cost"])
            }
        return {"success": True, "task": task, "usage": usage}
