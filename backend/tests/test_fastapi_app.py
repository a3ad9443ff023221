import httpx
import pytest
from fakes import FakeControlPlane, FakeHealthChecker, FakeRouter, RecordingSleep

import fastapi_app
from config import RolloutOptions, Settings
from kube_types import Service, Slot
from rollout_controller import RolloutController

pytestmark = pytest.mark.anyio

MEMBERS = Service(name="memberservices-service", namespace="member-services")
PAYMENTS = Service(name="payments-service", namespace="payments")


@pytest.fixture
def router():
    return FakeRouter()


@pytest.fixture
def app_client(monkeypatch, router):
    controller = RolloutController(
        FakeControlPlane(),
        router,
        health_checker=FakeHealthChecker(),
        options=RolloutOptions(),
        sleep=RecordingSleep(),
    )
    monkeypatch.setattr(fastapi_app, "controller", controller)
    monkeypatch.setattr(fastapi_app, "settings", Settings(FLEET_SERVICES=[MEMBERS, PAYMENTS], FLEET_FILE=None))
    transport = httpx.ASGITransport(app=fastapi_app.app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


async def test_health_reports_controller(app_client):
    async with app_client as client:
        response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "controller": True}


async def test_fleet_lists_services_in_order(app_client):
    async with app_client as client:
        response = await client.get("/api/fleet")
    assert [s["name"] for s in response.json()] == [MEMBERS.name, PAYMENTS.name]


async def test_active_color(app_client, router):
    router.selectors[PAYMENTS.key] = Slot.GREEN
    async with app_client as client:
        response = await client.get("/api/services/payments/payments-service/active")
    assert response.json()["active"] == "green"


async def test_active_color_router_down_is_503(app_client, router):
    router.fail_get = True
    async with app_client as client:
        response = await client.get("/api/services/payments/payments-service/active")
    assert response.status_code == 503


async def test_single_rollout(app_client, router):
    payload = {"service": {"name": "payments-service", "namespace": "payments"}, "image_ref": "registry/payments:v2"}
    async with app_client as client:
        response = await client.post("/api/rollouts", json=payload)

    body = response.json()
    assert response.status_code == 200
    assert body["state"] == "Completed"
    assert body["to_color"] == "blue"
    assert router.selectors[PAYMENTS.key] is Slot.BLUE


async def test_fleet_rollout_subset(app_client):
    payload = {"images": {PAYMENTS.name: "registry/payments:v2"}, "services": [PAYMENTS.name]}
    async with app_client as client:
        response = await client.post("/api/fleet/rollouts", json=payload)

    body = response.json()
    assert body["exit_code"] == 0
    assert [r["service"] for r in body["results"]] == [PAYMENTS.name]


async def test_fleet_rollout_rejects_unknown_and_missing_images(app_client):
    async with app_client as client:
        unknown = await client.post("/api/fleet/rollouts", json={"images": {}, "services": ["nope"]})
        missing = await client.post("/api/fleet/rollouts", json={"images": {MEMBERS.name: "m:v1"}})
    assert unknown.status_code == 400
    assert missing.status_code == 400
    assert PAYMENTS.name in missing.json()["detail"]


async def test_rollout_without_controller_is_503(app_client, monkeypatch):
    monkeypatch.setattr(fastapi_app, "controller", None)
    async with app_client as client:
        response = await client.post("/api/rollouts", json={"service": {"name": "x"}, "image_ref": "x:1"})
    assert response.status_code == 503
