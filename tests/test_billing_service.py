from datetime import timedelta
from decimal import Decimal
import uuid

import pytest

from models.mysql_models import Transaction, UsageRecord
from services.billing_service import BillingService, RemediationHook
from services.wallet_service import WalletService


class RecordingRemediation(RemediationHook):
    def __init__(self):
        self.flagged = []

    def flag_unpaid(self, record, reason):
        self.flagged.append((record.tenant_id, record.instance_id, reason))


class FakeArchive:
    def __init__(self):
        self.documents = []

    def insert_one(self, document):
        self.documents.append(dict(document))


def add_record(session, tenant_id, instance_id, started_at, hourly_rate="0.10", billing_mode="PAYG", **kwargs):
    record = UsageRecord(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        instance_id=instance_id,
        node="pve-01",
        instance_type="qemu",
        instance_name=f"vm-{instance_id}",
        billing_mode=billing_mode,
        cores=1,
        memory_mb=1024,
        disk_gb=10,
        hourly_rate=Decimal(hourly_rate),
        started_at=started_at,
        is_active=True,
        **kwargs
    )
    session.add(record)
    session.commit()
    return record


def billing(session, clock, remediation=None, archive=None):
    return BillingService(session, remediation=remediation or RecordingRemediation(), archive=archive, clock=clock)


def test_charges_whole_hours_and_forgives_remainder(session, clock):
    WalletService(session).credit("acme", 10, "Initial")
    record = add_record(session, "acme", 101, clock.now - timedelta(hours=3, minutes=24))

    sweep = billing(session, clock).run_sweep()
    session.refresh(record)

    assert sweep.processed_count == 1
    assert sweep.total_charged == Decimal("0.30")
    assert sweep.results[0].hours == 3
    assert record.last_billed_at == clock.now
    assert Decimal(WalletService(session).get_balance("acme").balance) == Decimal("9.7")

    debit = session.query(Transaction).filter(Transaction.type == "DEBIT").one()
    assert Decimal(debit.amount) == Decimal("-0.3")
    assert debit.meta["hours_to_charge"] == 3
    assert debit.meta["instance_id"] == 101


def test_second_sweep_at_same_time_charges_nothing(session, clock):
    WalletService(session).credit("acme", 10, "Initial")
    add_record(session, "acme", 101, clock.now - timedelta(hours=5))
    service = billing(session, clock)

    service.run_sweep()
    again = service.run_sweep()

    assert again.results == []
    assert session.query(Transaction).filter(Transaction.type == "DEBIT").count() == 1
    assert Decimal(WalletService(session).get_balance("acme").balance) == Decimal("9.5")


def test_bills_from_last_billed_at(session, clock):
    WalletService(session).credit("acme", 10, "Initial")
    add_record(
        session, "acme", 101, clock.now - timedelta(hours=30),
        last_billed_at=clock.now - timedelta(hours=2, minutes=59)
    )

    sweep = billing(session, clock).run_sweep()

    assert sweep.results[0].hours == 2
    assert sweep.total_charged == Decimal("0.2")


def test_records_under_one_hour_are_skipped(session, clock):
    WalletService(session).credit("acme", 10, "Initial")
    record = add_record(session, "acme", 101, clock.now - timedelta(minutes=59))

    sweep = billing(session, clock).run_sweep()
    session.refresh(record)

    assert sweep.results == []
    assert record.last_billed_at is None


def test_reserved_and_stopped_records_are_not_swept(session, clock):
    WalletService(session).credit("acme", 10, "Initial")
    add_record(session, "acme", 101, clock.now - timedelta(hours=5), billing_mode="RESERVED")
    stopped = add_record(session, "acme", 102, clock.now - timedelta(hours=5))
    stopped.is_active = False
    session.commit()

    sweep = billing(session, clock).run_sweep()

    assert sweep.results == []


def test_failed_charge_does_not_stop_sweep(session, clock):
    WalletService(session).credit("acme", 10, "Initial")
    WalletService(session).credit("poor", "0.05", "Initial")
    poor = add_record(session, "poor", 201, clock.now - timedelta(hours=2))
    rich = add_record(session, "acme", 101, clock.now - timedelta(hours=2))
    ghost = add_record(session, "ghost", 301, clock.now - timedelta(hours=2))
    remediation = RecordingRemediation()

    sweep = billing(session, clock, remediation=remediation).run_sweep()
    session.refresh(poor)
    session.refresh(rich)
    session.refresh(ghost)

    assert sweep.processed_count == 1
    assert sweep.failed_count == 2
    assert rich.last_billed_at == clock.now
    assert poor.last_billed_at is None
    assert ghost.last_billed_at is None
    assert Decimal(WalletService(session).get_balance("poor").balance) == Decimal("0.05")
    assert sorted(t for t, _, _ in remediation.flagged) == ["ghost", "poor"]


def test_zero_rate_advances_billing_point(session, clock):
    record = add_record(session, "acme", 101, clock.now - timedelta(hours=4), hourly_rate="0")

    sweep = billing(session, clock).run_sweep()
    session.refresh(record)

    assert sweep.processed_count == 1
    assert record.last_billed_at == clock.now
    assert session.query(Transaction).count() == 0


def test_sweep_is_archived(session, clock):
    WalletService(session).credit("acme", 10, "Initial")
    add_record(session, "acme", 101, clock.now - timedelta(hours=2))
    archive = FakeArchive()

    sweep = billing(session, clock, archive=archive).run_sweep()

    assert len(archive.documents) == 1
    document = archive.documents[0]
    assert document["sweep_id"] == sweep.sweep_id
    assert document["processed"] == 1
    assert document["total_charged"] == "0.2"


def test_archive_failure_is_not_fatal(session, clock):
    class BrokenArchive:
        def insert_one(self, document):
            raise RuntimeError("mongo down")

    sweep = billing(session, clock, archive=BrokenArchive()).run_sweep()

    assert sweep.processed_count == 0
    assert billing(session, clock).get_sweeps() == []


def test_failing_remediation_hook_does_not_stop_sweep(session, clock):
    class NotifierDown(RemediationHook):
        def flag_unpaid(self, record, reason):
            raise RuntimeError("notifier down")

    WalletService(session).credit("rich", 10, "Initial")
    poor = add_record(session, "poor", 201, clock.now - timedelta(hours=2))
    rich = add_record(session, "rich", 101, clock.now - timedelta(hours=2))

    sweep = billing(session, clock, remediation=NotifierDown()).run_sweep()
    session.refresh(poor)
    session.refresh(rich)

    assert sweep.processed_count == 1
    assert sweep.failed_count == 1
    assert rich.last_billed_at == clock.now
    assert poor.last_billed_at is None
    assert Decimal(WalletService(session).get_balance("rich").balance) == Decimal("9.8")


def test_unexpected_error_is_recorded_per_record(session, clock):
    WalletService(session).credit("acme", 10, "Initial")
    WalletService(session).credit("globex", 10, "Initial")
    broken = add_record(session, "globex", 201, clock.now - timedelta(hours=2))
    healthy = add_record(session, "acme", 101, clock.now - timedelta(hours=2))
    remediation = RecordingRemediation()
    service = billing(session, clock, remediation=remediation)
    debit = service.wallet_service.debit

    def flaky_debit(tenant_id, *args, **kwargs):
        if tenant_id == "globex":
            raise RuntimeError("lost connection")
        return debit(tenant_id, *args, **kwargs)

    service.wallet_service.debit = flaky_debit
    sweep = service.run_sweep()
    session.refresh(broken)
    session.refresh(healthy)

    failed = [r for r in sweep.results if not r.success]
    assert [r.tenant_id for r in failed] == ["globex"]
    assert failed[0].error == "lost connection"
    assert healthy.last_billed_at == clock.now
    assert broken.last_billed_at is None
    assert remediation.flagged == [("globex", 201, "lost connection")]


def test_remediation_hook_must_implement_flag_unpaid():
    with pytest.raises(TypeError):
        RemediationHook()
