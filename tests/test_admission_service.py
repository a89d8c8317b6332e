from decimal import Decimal

import pytest

from conftest import FakeResourceSource, tenant_resource
from models.schemas import AdmissionRequest, BillingMode, TenantContext
from services.admission_service import AdmissionService
from services.errors import AdmissionError, AdmissionErrorKind
from services.wallet_service import WalletService


def tenant(**overrides):
    values = {"tenant_id": "acme", "max_cpu": 4, "max_memory": 8192, "max_instances": 3, "max_disk": 100}
    values.update(overrides)
    return TenantContext(**values)


def admission(session, *resources, degraded=False):
    return AdmissionService(session, FakeResourceSource(list(resources), degraded=degraded))


async def test_cpu_quota_counts_existing_instances(session, make_tier):
    make_tier()
    service = admission(session, tenant_resource("acme", 101, cores=3))

    with pytest.raises(AdmissionError) as exc:
        await service.admit(tenant(), AdmissionRequest(node="pve-01", cores=2))
    assert exc.value.kind == AdmissionErrorKind.CPU_QUOTA_EXCEEDED
    assert "Available: 1 cores" in exc.value.message

    decision = await service.admit(tenant(), AdmissionRequest(node="pve-01", cores=1))
    assert decision.usage.cpu == 3


async def test_other_tenants_resources_are_ignored(session, make_tier):
    make_tier()
    service = admission(session, tenant_resource("globex", 101, cores=4))

    decision = await service.admit(tenant(), AdmissionRequest(node="pve-01", cores=4))

    assert decision.usage.instances == 0


async def test_disk_never_blocks_admission(session, make_tier):
    make_tier()
    service = admission(session, tenant_resource("acme", 101, cores=1, disk_gb=500))

    decision = await service.admit(tenant(max_disk=100), AdmissionRequest(node="pve-01", disk_gb=500))

    assert decision.usage.disk == 500


async def test_node_not_allowed_checked_first(session, make_tier):
    make_tier()
    service = admission(session, *[tenant_resource("acme", i, cores=4) for i in (101, 102, 103)])

    with pytest.raises(AdmissionError) as exc:
        await service.admit(tenant(allowed_nodes=["pve-02"]), AdmissionRequest(node="pve-01"))

    assert exc.value.kind == AdmissionErrorKind.NODE_NOT_ALLOWED
    assert exc.value.details["allowed_nodes"] == ["pve-02"]


async def test_instance_quota(session, make_tier):
    make_tier()
    service = admission(session, *[tenant_resource("acme", i, cores=1) for i in (101, 102, 103)])

    with pytest.raises(AdmissionError) as exc:
        await service.admit(tenant(max_cpu=64), AdmissionRequest(node="pve-01"))

    assert exc.value.kind == AdmissionErrorKind.INSTANCE_QUOTA_EXCEEDED


async def test_memory_quota(session, make_tier):
    make_tier()
    service = admission(session, tenant_resource("acme", 101, memory_mb=8000))

    with pytest.raises(AdmissionError) as exc:
        await service.admit(tenant(), AdmissionRequest(node="pve-01", memory_mb=512))

    assert exc.value.kind == AdmissionErrorKind.MEMORY_QUOTA_EXCEEDED
    assert exc.value.details == {"current": 8000, "requested": 512, "limit": 8192}


async def test_payg_requires_one_hour_of_credit(session, make_tier):
    make_tier(cpu_hourly="0.5", cpu_monthly="100")
    WalletService(session).credit("acme", "0.99", "Initial")
    service = admission(session)

    with pytest.raises(AdmissionError) as exc:
        await service.admit(tenant(), AdmissionRequest(node="pve-01", cores=2))
    assert exc.value.kind == AdmissionErrorKind.INSUFFICIENT_CREDITS
    assert exc.value.details == {"balance": "0.99", "required": "1"}

    WalletService(session).credit("acme", "0.01", "Top up")
    decision = await service.admit(tenant(), AdmissionRequest(node="pve-01", cores=2))
    assert decision.required_credits == Decimal("1")


async def test_reserved_requires_full_month(session, make_tier):
    make_tier(cpu_hourly="0.5", cpu_monthly="30")
    WalletService(session).credit("acme", 59, "Initial")
    service = admission(session)

    with pytest.raises(AdmissionError) as exc:
        await service.admit(
            tenant(), AdmissionRequest(node="pve-01", cores=2, billing_mode=BillingMode.RESERVED)
        )

    assert exc.value.kind == AdmissionErrorKind.INSUFFICIENT_CREDITS
    assert "Required: 60.00" in exc.value.message


async def test_degraded_usage_is_reported(session, make_tier):
    make_tier()
    service = admission(session, degraded=True)

    decision = await service.admit(tenant(), AdmissionRequest(node="pve-01"))

    assert decision.usage.degraded
    assert decision.to_dict()["usage"]["degraded"] is True
