from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional
import logging
import uuid

from sqlalchemy.orm import Session

from models.mysql_models import UsageRecord
from models.schemas import BillingMode, InstanceType
from services.money import quantize_rate, format_amount
from services.price_service import PriceService

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = Decimal("3600")


def hours_between(start: datetime, end: datetime) -> Decimal:
    delta = end - start
    return Decimal(str(delta.total_seconds())) / SECONDS_PER_HOUR


class UsageService:
    """Tracks the billing parameters of each running instance."""

    def __init__(
        self,
        mysql_session: Session,
        price_service: Optional[PriceService] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.mysql_session = mysql_session
        self.price_service = price_service or PriceService(mysql_session)
        self.clock = clock or datetime.utcnow

    def _find_active(self, tenant_id: str, instance_id: int) -> Optional[UsageRecord]:
        return self.mysql_session.query(UsageRecord).filter(
            UsageRecord.tenant_id == tenant_id,
            UsageRecord.instance_id == instance_id,
            UsageRecord.is_active.is_(True)
        ).order_by(UsageRecord.started_at.desc()).first()

    def start_tracking(
        self,
        tenant_id: str,
        instance_id: int,
        node: str,
        instance_type: InstanceType,
        instance_name: Optional[str],
        cores: int,
        memory_mb: int,
        disk_gb: int,
        billing_mode: BillingMode = BillingMode.PAYG
    ) -> UsageRecord:
        hourly_rate = quantize_rate(self.price_service.hourly_cost(cores, memory_mb, disk_gb))
        monthly_rate = None
        if billing_mode == BillingMode.RESERVED:
            monthly_rate = quantize_rate(self.price_service.monthly_cost(cores, memory_mb, disk_gb))

        now = self.clock()
        try:
            # the prior record and the new one change in one commit, so a sweep
            # never sees two active records for the instance
            replaced = self.mysql_session.query(UsageRecord).filter(
                UsageRecord.tenant_id == tenant_id,
                UsageRecord.instance_id == instance_id,
                UsageRecord.is_active.is_(True)
            ).update(
                {UsageRecord.is_active: False, UsageRecord.stopped_at: now},
                synchronize_session="fetch"
            )

            record = UsageRecord(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                instance_id=instance_id,
                node=node,
                instance_type=InstanceType(instance_type).value,
                instance_name=instance_name,
                billing_mode=BillingMode(billing_mode).value,
                cores=cores,
                memory_mb=memory_mb,
                disk_gb=disk_gb,
                hourly_rate=hourly_rate,
                monthly_rate=monthly_rate,
                started_at=now,
                last_billed_at=None,
                is_active=True
            )
            self.mysql_session.add(record)
            self.mysql_session.commit()
        except Exception:
            self.mysql_session.rollback()
            raise

        if replaced:
            logger.info(f"Replaced {replaced} active usage record(s) for instance {instance_id}")
        logger.info(
            f"Started {record.billing_mode} usage tracking for instance {instance_id} "
            f"of {tenant_id} at {format_amount(hourly_rate)}/h"
        )
        return record

    def stop_tracking(self, tenant_id: str, instance_id: int) -> Optional[dict]:
        record = self._find_active(tenant_id, instance_id)
        if not record:
            logger.warning(f"No active usage record found for instance {instance_id} of {tenant_id}")
            return None

        now = self.clock()
        hours_used = hours_between(record.started_at, now)

        # informational only, PAYG time is charged by the billing sweep
        final_cost = Decimal("0")
        if record.billing_mode == BillingMode.PAYG.value:
            final_cost = hours_used * Decimal(record.hourly_rate)

        record.is_active = False
        record.stopped_at = now
        self.mysql_session.commit()

        logger.info(
            f"Stopped usage tracking for instance {instance_id} of {tenant_id} "
            f"after {hours_used:.2f}h"
        )
        return {"record": record, "hours_used": hours_used, "final_cost": final_cost}

    def active_usage(self, tenant_id: str) -> List[UsageRecord]:
        return self.mysql_session.query(UsageRecord).filter(
            UsageRecord.tenant_id == tenant_id,
            UsageRecord.is_active.is_(True)
        ).order_by(UsageRecord.started_at.desc()).all()

    def history(self, tenant_id: str, limit: int = 50) -> List[UsageRecord]:
        return self.mysql_session.query(UsageRecord).filter(
            UsageRecord.tenant_id == tenant_id
        ).order_by(UsageRecord.started_at.desc()).limit(limit).all()

    def active_payg_records(self) -> List[UsageRecord]:
        return self.mysql_session.query(UsageRecord).filter(
            UsageRecord.is_active.is_(True),
            UsageRecord.billing_mode == BillingMode.PAYG.value
        ).order_by(UsageRecord.started_at).all()

    @staticmethod
    def record_to_dict(record: UsageRecord) -> dict:
        return {
            "id": record.id,
            "tenant_id": record.tenant_id,
            "instance_id": record.instance_id,
            "node": record.node,
            "instance_type": record.instance_type,
            "instance_name": record.instance_name,
            "billing_mode": record.billing_mode,
            "cores": record.cores,
            "memory_mb": record.memory_mb,
            "disk_gb": record.disk_gb,
            "hourly_rate": format_amount(record.hourly_rate),
            "monthly_rate": format_amount(record.monthly_rate),
            "started_at": record.started_at,
            "last_billed_at": record.last_billed_at,
            "stopped_at": record.stopped_at,
            "is_active": record.is_active
        }
