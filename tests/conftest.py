import os

# set before importing modules that build the engine or read service config
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("BILLING_SWEEP_ENABLED", "false")
os.environ.setdefault("BILLING_SWEEP_ARCHIVE", "false")
os.environ.setdefault("DEMO_MODE", "false")

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from hypervisor.api_client import HypervisorError, ResourceUsage
from hypervisor.sources import AllocatedId, ResourceListing
from models.mysql_models import Base, PricingTier


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session(engine):
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_tier(session):
    def _make(**rates):
        values = {
            "cpu_hourly": Decimal("0"),
            "memory_hourly": Decimal("0"),
            "disk_hourly": Decimal("0"),
            "cpu_monthly": Decimal("0"),
            "memory_monthly": Decimal("0"),
            "disk_monthly": Decimal("0"),
        }
        values.update({k: Decimal(str(v)) for k, v in rates.items()})
        tier = PricingTier(
            id=f"tier-{len(session.query(PricingTier).all()) + 1}",
            name="Test",
            is_default=True,
            is_active=True,
            created_at=datetime(2024, 1, 1),
            **values
        )
        session.add(tier)
        session.commit()
        return tier
    return _make


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def clock():
    return FakeClock(datetime(2024, 6, 1, 12, 0, 0))


class FakeResourceSource:
    """Resource source with canned tenant usage."""

    def __init__(self, resources=None, next_id=150, degraded=False, fail_next_id=False):
        self.resources = resources or []
        self._next_id = next_id
        self.degraded = degraded
        self.fail_next_id = fail_next_id

    async def list_resources(self):
        return ResourceListing(resources=list(self.resources), degraded=self.degraded)

    async def list_tenant_resources(self, tenant_id):
        return ResourceListing(
            resources=[r for r in self.resources if r.owned_by(tenant_id)],
            degraded=self.degraded
        )

    async def next_id(self):
        if self.fail_next_id:
            raise HypervisorError(0, "Connection error: unreachable")
        return AllocatedId(instance_id=self._next_id, degraded=self.degraded)


def tenant_resource(tenant_id, instance_id, cores=1, memory_mb=1024, disk_gb=10):
    return ResourceUsage(
        instance_id=instance_id,
        instance_type="qemu",
        name=f"vm-{instance_id}",
        node="pve-01",
        cores=cores,
        memory_mb=memory_mb,
        disk_gb=disk_gb,
        tags=f"owner-{tenant_id}"
    )


class FakeHypervisorClient:
    """Records calls; ``config_failures`` config attempts fail before one succeeds."""

    def __init__(self, config_failures=0, clone_error=None, stop_error=None, delete_error=None):
        self.config_failures = config_failures
        self.clone_error = clone_error
        self.stop_error = stop_error
        self.delete_error = delete_error
        self.calls = []

    async def clone_template(self, node, instance_type, template_id, new_id, payload):
        self.calls.append(("clone", node, instance_type, template_id, new_id, payload))
        if self.clone_error:
            raise self.clone_error
        return f"UPID:{node}:clone:{new_id}"

    async def apply_config(self, node, instance_type, instance_id, payload, method="POST"):
        self.calls.append(("config", node, instance_type, instance_id, payload, method))
        if self.config_failures:
            self.config_failures -= 1
            raise HypervisorError(500, "VM is locked (clone)")
        return None

    async def stop_instance(self, node, instance_type, instance_id):
        self.calls.append(("stop", node, instance_type, instance_id))
        if self.stop_error:
            raise self.stop_error
        return f"UPID:{node}:stop:{instance_id}"

    async def delete_instance(self, node, instance_type, instance_id):
        self.calls.append(("delete", node, instance_type, instance_id))
        if self.delete_error:
            raise self.delete_error
        return f"UPID:{node}:delete-task:{instance_id}"

    def calls_of(self, kind):
        return [c for c in self.calls if c[0] == kind]


class FakeProvider:
    def __init__(self, client):
        self.client = client

    def get_client(self):
        return self.client


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture()
def recording_sleep():
    return RecordingSleep()


@pytest.fixture()
def file_engine(tmp_path):
    """File-backed engine: every session gets its own connection."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30}
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()
