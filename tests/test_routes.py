import pytest
from fastapi.testclient import TestClient

from app import app
from conftest import FakeHypervisorClient, FakeProvider, FakeResourceSource, tenant_resource
from db.config import get_mysql_session
from hypervisor.provider import get_client_provider
from hypervisor.sources import get_resource_source
from routes.billing_routes import get_sweep_archive
from routes.instance_routes import get_instance_service
from services.instance_service import InstanceService
from services.provisioning_service import ProvisioningService


@pytest.fixture()
def hypervisor():
    return FakeHypervisorClient()


@pytest.fixture()
def source():
    return FakeResourceSource(next_id=150)


@pytest.fixture()
def client(session, hypervisor, source, recording_sleep):
    def override_session():
        yield session

    def override_instance_service():
        provider = FakeProvider(hypervisor)
        return InstanceService(
            session,
            provider,
            source,
            provisioning_service=ProvisioningService(provider, source, sleep=recording_sleep)
        )

    app.dependency_overrides[get_mysql_session] = override_session
    app.dependency_overrides[get_resource_source] = lambda: source
    app.dependency_overrides[get_client_provider] = lambda: FakeProvider(hypervisor)
    app.dependency_overrides[get_instance_service] = override_instance_service
    app.dependency_overrides[get_sweep_archive] = lambda: None
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/").json() == {"status": "healthy", "service": "computecloud"}
    assert client.get("/health").json() == {"status": "ok"}


def test_default_price_and_estimate(client):
    tier = client.get("/api/v1/prices/default").json()
    assert tier["name"] == "Standard"
    assert tier["cpu_hourly"] == "0.01"

    estimate = client.get("/api/v1/prices/estimate", params={"cores": 1, "memory": 1024, "disk": 0}).json()
    assert estimate["hourly"]["total"] == "0.015"
    assert estimate["monthly"]["total"] == "7.5"


def test_unknown_tier_is_404(client):
    assert client.get("/api/v1/prices/nope").status_code == 404


def test_wallet_flow(client):
    response = client.post("/api/v1/wallets/acme/credit", json={"amount": 25, "admin_id": "root"})
    assert response.status_code == 200
    body = response.json()
    assert body["balance"] == "25"
    assert body["transaction"]["type"] == "CREDIT"
    assert body["transaction"]["description"] == "Credit allocation by admin"
    assert body["transaction"]["metadata"] == {"admin_id": "root"}

    response = client.post("/api/v1/wallets/acme/debit", json={"amount": "5.5", "description": "Manual"})
    assert response.json()["balance"] == "19.5"

    transactions = client.get("/api/v1/wallets/acme/transactions").json()
    assert [t["amount"] for t in transactions] == ["-5.5", "25"]

    summary = client.get("/api/v1/wallets/acme/summary").json()
    assert summary["balance"] == "19.5"
    assert summary["estimated_remaining_hours"] is None


def test_ledger_errors_map_to_status(client):
    response = client.post("/api/v1/wallets/ghost/debit", json={"amount": 1, "description": "x"})
    assert response.status_code == 404
    assert response.json()["error"] == "NoBalance"

    client.post("/api/v1/wallets/acme/credit", json={"amount": 1})
    response = client.post("/api/v1/wallets/acme/debit", json={"amount": 2, "description": "x"})
    assert response.status_code == 400
    assert response.json()["error"] == "InsufficientCredits"

    response = client.post("/api/v1/wallets/acme/credit", json={"amount": -1})
    assert response.status_code == 400
    assert response.json()["error"] == "InvalidAmount"


def test_usage_tracking_endpoints(client):
    response = client.post("/api/v1/usage/start", json={
        "tenant_id": "acme", "instance_id": 101, "node": "pve-01", "cores": 1, "memory_mb": 1024
    })
    assert response.status_code == 201
    assert response.json()["hourly_rate"] == "0.015"

    assert len(client.get("/api/v1/usage/acme/active").json()) == 1

    response = client.post("/api/v1/usage/acme/101/stop")
    assert response.status_code == 200
    assert response.json()["record"]["is_active"] is False

    assert client.post("/api/v1/usage/acme/101/stop").status_code == 404
    assert len(client.get("/api/v1/usage/acme/history").json()) == 1


def test_sweep_endpoint(client):
    response = client.post("/api/v1/billing/sweep")
    assert response.status_code == 200
    assert response.json()["processed"] == 0
    assert client.get("/api/v1/billing/sweeps").json() == []


def test_admission_denials(client, source):
    source.resources = [tenant_resource("acme", 101, cores=3)]
    tenant = {"tenant_id": "acme", "allowed_nodes": ["pve-02"]}

    response = client.post("/api/v1/instances/admit", json={"tenant": tenant, "request": {"node": "pve-01"}})
    assert response.status_code == 403
    assert response.json()["error"] == "NodeNotAllowed"

    tenant["allowed_nodes"] = []
    response = client.post("/api/v1/instances/admit", json={"tenant": tenant, "request": {"node": "pve-01", "cores": 2}})
    assert response.status_code == 400
    assert response.json()["error"] == "CpuQuotaExceeded"


def test_create_and_delete_instance(client, hypervisor):
    client.post("/api/v1/wallets/acme/credit", json={"amount": 10})

    response = client.post("/api/v1/instances/", json={
        "tenant": {"tenant_id": "acme"},
        "node": "pve-01",
        "template_id": 9000,
        "name": "web",
        "cores": 1,
        "memory_mb": 1024,
        "disk_gb": 10
    })
    assert response.status_code == 201
    assert response.json()["instance_id"] == 150

    response = client.delete("/api/v1/instances/150", params={"tenant_id": "acme", "node": "pve-01", "type": "qemu"})
    assert response.status_code == 200
    assert response.json()["usage"] is not None
    assert [c[0] for c in hypervisor.calls] == ["clone", "config", "stop", "delete"]


def test_clone_failure_is_bad_gateway(client, hypervisor):
    from hypervisor.api_client import HypervisorError

    hypervisor.clone_error = HypervisorError(500, "template locked")
    client.post("/api/v1/wallets/acme/credit", json={"amount": 10})

    response = client.post("/api/v1/instances/", json={
        "tenant": {"tenant_id": "acme"}, "node": "pve-01", "template_id": 9000, "name": "web"
    })

    assert response.status_code == 502
    assert response.json()["error"] == "CloneFailed"


@pytest.mark.parametrize("amount", ["abc", "NaN", "Infinity"])
def test_malformed_amount_is_bad_request(client, amount):
    response = client.post("/api/v1/wallets/acme/credit", json={"amount": amount})

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidAmount"
