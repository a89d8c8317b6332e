import logging
from decimal import Decimal
from typing import List, Optional
import uuid

from sqlalchemy.orm import Session

from models.mysql_models import PricingTier
from models.schemas import PricingTierRequest
from services.money import to_decimal, quantize_rate, format_amount

logger = logging.getLogger(__name__)

FALLBACK_TIER = {
    "name": "Standard",
    "description": "Default pricing tier",
    "cpu_hourly": Decimal("0.01"),
    "memory_hourly": Decimal("0.005"),
    "disk_hourly": Decimal("0.001"),
    "cpu_monthly": Decimal("5.0"),
    "memory_monthly": Decimal("2.5"),
    "disk_monthly": Decimal("0.5"),
    "is_default": True,
    "is_active": True,
}

HOURS_PER_MONTH = 24 * 30
MB_PER_GB = Decimal("1024")


class PriceService:
    """Pricing catalog: rate tables and the cost arithmetic built on them.

    Every cost query resolves the catalog's default tier first, so pricing
    changes take effect for the next admission or usage record without a
    restart.
    """

    def __init__(self, mysql_session: Session):
        self.mysql_session = mysql_session

    def resolve_default_tier(self) -> PricingTier:
        tier = self.mysql_session.query(PricingTier).filter(
            PricingTier.is_default.is_(True),
            PricingTier.is_active.is_(True)
        ).order_by(PricingTier.created_at).first()

        if not tier:
            tier = self.mysql_session.query(PricingTier).filter(
                PricingTier.is_active.is_(True)
            ).order_by(PricingTier.created_at).first()

        if not tier:
            logger.info("No active pricing tier found, creating fallback tier")
            tier = PricingTier(id=str(uuid.uuid4()), **FALLBACK_TIER)
            self.mysql_session.add(tier)
            self.mysql_session.commit()

        return tier

    def _breakdown(self, cores: int, memory_mb: int, disk_gb: int, monthly: bool) -> dict:
        tier = self.resolve_default_tier()
        memory_gb = to_decimal(memory_mb) / MB_PER_GB

        if monthly:
            cpu_rate, memory_rate, disk_rate = tier.cpu_monthly, tier.memory_monthly, tier.disk_monthly
        else:
            cpu_rate, memory_rate, disk_rate = tier.cpu_hourly, tier.memory_hourly, tier.disk_hourly

        return {
            "cpu": to_decimal(cores) * to_decimal(cpu_rate),
            "memory": memory_gb * to_decimal(memory_rate),
            "disk": to_decimal(disk_gb) * to_decimal(disk_rate)
        }

    def hourly_cost(self, cores: int, memory_mb: int, disk_gb: int) -> Decimal:
        return sum(self._breakdown(cores, memory_mb, disk_gb, monthly=False).values(), Decimal("0"))

    def monthly_cost(self, cores: int, memory_mb: int, disk_gb: int) -> Decimal:
        return sum(self._breakdown(cores, memory_mb, disk_gb, monthly=True).values(), Decimal("0"))

    def estimate(self, cores: int, memory_mb: int, disk_gb: int) -> dict:
        hourly = self._breakdown(cores, memory_mb, disk_gb, monthly=False)
        monthly = self._breakdown(cores, memory_mb, disk_gb, monthly=True)
        hourly_total = sum(hourly.values(), Decimal("0"))
        monthly_total = sum(monthly.values(), Decimal("0"))
        payg_monthly = hourly_total * HOURS_PER_MONTH

        if hourly_total == 0:
            savings = Decimal("0")
        else:
            savings = (payg_monthly - monthly_total) / payg_monthly * 100

        return {
            "hourly": {"total": hourly_total, "breakdown": hourly},
            "monthly": {"total": monthly_total, "breakdown": monthly},
            "payg_estimated_monthly": payg_monthly,
            "savings": savings
        }

    def list_tiers(self) -> List[PricingTier]:
        return self.mysql_session.query(PricingTier).filter(
            PricingTier.is_active.is_(True)
        ).order_by(PricingTier.created_at.desc()).all()

    def get_tier(self, tier_id: str) -> Optional[PricingTier]:
        return self.mysql_session.query(PricingTier).filter(
            PricingTier.id == tier_id
        ).first()

    def upsert_tier(self, data: PricingTierRequest) -> Optional[PricingTier]:
        values = data.model_dump(exclude={"id"})
        for field in ("cpu_hourly", "memory_hourly", "disk_hourly",
                      "cpu_monthly", "memory_monthly", "disk_monthly"):
            values[field] = quantize_rate(values[field])

        if data.id:
            tier = self.get_tier(data.id)
            if not tier:
                return None
            for key, value in values.items():
                setattr(tier, key, value)
        else:
            tier = PricingTier(id=str(uuid.uuid4()), **values)
            self.mysql_session.add(tier)

        if tier.is_default:
            self.mysql_session.query(PricingTier).filter(
                PricingTier.id != tier.id,
                PricingTier.is_default.is_(True)
            ).update({PricingTier.is_default: False}, synchronize_session=False)

        self.mysql_session.commit()
        logger.info(f"Pricing tier {tier.name} ({tier.id}) saved")
        return tier

    def deactivate_tier(self, tier_id: str) -> Optional[PricingTier]:
        tier = self.get_tier(tier_id)
        if not tier:
            return None

        tier.is_active = False
        tier.is_default = False
        self.mysql_session.commit()
        logger.info(f"Pricing tier {tier.name} ({tier.id}) deactivated")
        return tier

    @staticmethod
    def tier_to_dict(tier: PricingTier) -> dict:
        return {
            "id": tier.id,
            "name": tier.name,
            "description": tier.description,
            "cpu_hourly": format_amount(tier.cpu_hourly),
            "memory_hourly": format_amount(tier.memory_hourly),
            "disk_hourly": format_amount(tier.disk_hourly),
            "cpu_monthly": format_amount(tier.cpu_monthly),
            "memory_monthly": format_amount(tier.memory_monthly),
            "disk_monthly": format_amount(tier.disk_monthly),
            "is_default": tier.is_default,
            "is_active": tier.is_active
        }

    @staticmethod
    def estimate_to_dict(estimate: dict) -> dict:
        def line(section: dict) -> dict:
            return {
                "total": format_amount(section["total"]),
                "breakdown": {k: format_amount(v) for k, v in section["breakdown"].items()}
            }

        return {
            "hourly": line(estimate["hourly"]),
            "monthly": line(estimate["monthly"]),
            "payg_estimated_monthly": format_amount(estimate["payg_estimated_monthly"]),
            "savings": format_amount(estimate["savings"].quantize(Decimal("0.01")))
        }
