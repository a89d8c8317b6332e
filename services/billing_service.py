from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
import logging
import math
import threading
import uuid

from sqlalchemy.orm import Session

from models.mysql_models import UsageRecord
from services.errors import LedgerError
from services.money import format_amount
from services.usage_service import UsageService, hours_between
from services.wallet_service import WalletService

logger = logging.getLogger(__name__)


class RemediationHook(ABC):
    """Receives usage records whose hourly charge could not be collected."""

    @abstractmethod
    def flag_unpaid(self, record: UsageRecord, reason: str):
        ...


class LogRemediation(RemediationHook):
    def flag_unpaid(self, record: UsageRecord, reason: str):
        logger.warning(
            f"Unpaid usage for instance {record.instance_id} of {record.tenant_id} "
            f"(record {record.id}): {reason}"
        )


@dataclass
class ChargeResult:
    record_id: str
    tenant_id: str
    instance_id: int
    success: bool
    hours: int = 0
    amount: Optional[Decimal] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "record_id": self.record_id,
            "tenant_id": self.tenant_id,
            "instance_id": self.instance_id,
            "success": self.success,
            "hours": self.hours
        }
        if self.success:
            result["charged"] = format_amount(self.amount)
        else:
            result["error"] = self.error
        return result


@dataclass
class SweepResult:
    sweep_id: str
    started_at: datetime
    results: List[ChargeResult] = field(default_factory=list)
    finished_at: Optional[datetime] = None

    @property
    def processed_count(self) -> int:
        return len([r for r in self.results if r.success])

    @property
    def failed_count(self) -> int:
        return len([r for r in self.results if not r.success])

    @property
    def total_charged(self) -> Decimal:
        return sum((r.amount for r in self.results if r.success), Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sweep_id": self.sweep_id,
            "started_at": self.started_at.isoformat() + "Z",
            "finished_at": self.finished_at.isoformat() + "Z" if self.finished_at else None,
            "processed": self.processed_count,
            "failed": self.failed_count,
            "total_charged": format_amount(self.total_charged),
            "results": [r.to_dict() for r in self.results]
        }


class BillingService:
    """Hourly pay-as-you-go billing.

    Each sweep charges every active PAYG record for the whole hours since
    it was last billed, then moves ``last_billed_at`` to the sweep time, so
    the fractional remainder is not carried forward. The debit and the
    ``last_billed_at`` update commit together. A failed charge leaves the
    record untouched for the next sweep and is passed to the remediation
    hook; it never stops the sweep.
    """

    SWEEP_COLLECTION = "billing_sweeps"

    _sweep_lock = threading.Lock()

    def __init__(
        self,
        mysql_session: Session,
        wallet_service: WalletService = None,
        usage_service: UsageService = None,
        remediation: RemediationHook = None,
        archive=None,
        clock: Callable[[], datetime] = None
    ):
        self.mysql_session = mysql_session
        self.wallet_service = wallet_service or WalletService(mysql_session)
        self.usage_service = usage_service or UsageService(mysql_session)
        self.remediation = remediation or LogRemediation()
        self.archive = archive
        self.clock = clock or datetime.utcnow

    def _generate_sweep_id(self, now: datetime) -> str:
        return f"sweep_{now.strftime('%Y_%m_%d_%H%M')}_{uuid.uuid4().hex[:6]}"

    def _charge(self, snapshot: Dict[str, Any], now: datetime) -> Optional[ChargeResult]:
        record = self.mysql_session.get(UsageRecord, snapshot["id"])
        if record is None or not record.is_active or record.last_billed_at != snapshot["last_billed_at"]:
            # stopped or billed elsewhere since the snapshot was taken
            return None

        reference = snapshot["last_billed_at"] or snapshot["started_at"]
        elapsed = hours_between(reference, now)
        if elapsed < 1:
            return None

        hours = math.floor(elapsed)
        amount = hours * Decimal(snapshot["hourly_rate"])
        name = snapshot["instance_name"] or f"VM {snapshot['instance_id']}"
        result = ChargeResult(
            record_id=snapshot["id"],
            tenant_id=snapshot["tenant_id"],
            instance_id=snapshot["instance_id"],
            success=False,
            hours=hours
        )

        if amount <= 0:
            # free tier rates: nothing to collect, just move the billing point
            record.last_billed_at = now
            self.mysql_session.commit()
            result.success = True
            result.amount = Decimal("0")
            return result

        with self.wallet_service.tenant_lock(snapshot["tenant_id"]):
            try:
                self.wallet_service.debit(
                    snapshot["tenant_id"],
                    amount,
                    f"Hourly usage: {name} ({hours}h)",
                    {
                        "instance_id": snapshot["instance_id"],
                        "hours_to_charge": hours,
                        "record_id": snapshot["id"]
                    },
                    commit=False
                )
                record.last_billed_at = now
                self.mysql_session.commit()
            except LedgerError as e:
                result.error = e.message
                return result

        result.success = True
        result.amount = amount
        return result

    def _flag_unpaid(self, record_id: str, reason: str):
        try:
            record = self.mysql_session.get(UsageRecord, record_id)
            if record is not None:
                self.remediation.flag_unpaid(record, reason)
        except Exception as e:
            self.mysql_session.rollback()
            logger.error(f"Remediation hook failed for usage record {record_id}: {e}")

    def _charge_safely(self, snapshot: Dict[str, Any], now: datetime) -> Optional[ChargeResult]:
        """Charges one record; any failure is recorded in the result, never raised."""
        try:
            result = self._charge(snapshot, now)
        except Exception as e:
            self.mysql_session.rollback()
            logger.error(f"Error billing usage record {snapshot['id']}: {e}")
            result = ChargeResult(
                record_id=snapshot["id"],
                tenant_id=snapshot["tenant_id"],
                instance_id=snapshot["instance_id"],
                success=False,
                error=str(e)
            )

        if result is not None and not result.success:
            self._flag_unpaid(snapshot["id"], result.error)
        return result

    def run_sweep(self) -> SweepResult:
        with self._sweep_lock:
            now = self.clock()
            sweep = SweepResult(sweep_id=self._generate_sweep_id(now), started_at=now)

            snapshot = [
                {
                    "id": r.id,
                    "tenant_id": r.tenant_id,
                    "instance_id": r.instance_id,
                    "instance_name": r.instance_name,
                    "hourly_rate": r.hourly_rate,
                    "started_at": r.started_at,
                    "last_billed_at": r.last_billed_at
                }
                for r in self.usage_service.active_payg_records()
            ]
            logger.info(f"Billing sweep {sweep.sweep_id} started with {len(snapshot)} active PAYG record(s)")

            for item in snapshot:
                result = self._charge_safely(item, now)
                if result is not None:
                    sweep.results.append(result)

            sweep.finished_at = self.clock()

        logger.info(
            f"Billing sweep {sweep.sweep_id} finished: {sweep.processed_count} charged, "
            f"{sweep.failed_count} failed, total {format_amount(sweep.total_charged)}"
        )
        self._archive(sweep)
        return sweep

    def _archive(self, sweep: SweepResult):
        if self.archive is None:
            return
        try:
            self.archive.insert_one(sweep.to_dict())
        except Exception as e:
            logger.error(f"Failed to archive billing sweep {sweep.sweep_id}: {e}")

    def get_sweeps(self, limit: int = 20) -> List[dict]:
        if self.archive is None:
            return []
        sweeps = list(self.archive.find().sort("started_at", -1).limit(limit))
        for sweep in sweeps:
            sweep.pop("_id", None)
        return sweeps
