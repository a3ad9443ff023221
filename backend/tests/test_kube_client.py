import asyncio
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from kube_client import KubeClient
from kube_types import Service, Slot
from rollout_errors import ControlPlaneError, DeployTimeout

pytestmark = pytest.mark.anyio

SERVICE = Service(name="payments-service", namespace="payments", port=8080)


def _not_found():
    return ApiException(status=404, reason="Not Found")


def _status(available=True, ready=1, updated=1, generation=2, observed=2, replicas=1):
    return SimpleNamespace(
        metadata=SimpleNamespace(generation=generation),
        spec=SimpleNamespace(replicas=replicas),
        status=SimpleNamespace(
            observed_generation=observed,
            ready_replicas=ready,
            updated_replicas=updated,
            conditions=[SimpleNamespace(type="Available", status="True" if available else "False")],
        ),
    )


def _deployment(name, labels, image="registry/payments:v1"):
    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(name=name, namespace="payments", labels=labels, resource_version="7"),
        spec=client.V1DeploymentSpec(
            replicas=3,
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(
                    containers=[
                        client.V1Container(name="payments", image=image),
                        client.V1Container(name="envoy", image="envoy:1.29"),
                    ]
                ),
            ),
        ),
        status=client.V1DeploymentStatus(ready_replicas=3),
    )


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _client(apps=None, core=None, service_exists=True, **kwargs):
    apps = apps or MagicMock()
    core = core or MagicMock()
    if not service_exists:
        core.read_namespaced_service.side_effect = _not_found()
    clock = Clock()

    async def sleep(seconds):
        clock.now += seconds

    kube = KubeClient(
        apps_v1=apps,
        core_v1=core,
        deploy_ready_timeout=kwargs.pop("deploy_ready_timeout", 30),
        poll_interval=kwargs.pop("poll_interval", 5),
        sleep=sleep,
        clock=clock,
        **kwargs,
    )
    return kube, apps, core


async def test_creates_new_slot_from_live_sibling():
    apps = MagicMock()
    sibling = _deployment("payments-service-blue", {"app": "payments-service", "version": "blue", "tier": "api"})

    def read(name, namespace):
        if name == "payments-service-blue":
            return sibling
        raise _not_found()

    apps.read_namespaced_deployment.side_effect = read
    apps.read_namespaced_deployment_status.return_value = _status()
    kube, apps, core = _client(apps=apps, service_exists=False)

    await kube.ensure_slot_deployed(SERVICE, Slot.GREEN, "registry/payments:v2")

    body = apps.create_namespaced_deployment.call_args.kwargs["body"]
    assert body["metadata"]["name"] == "payments-service-green"
    assert body["metadata"]["labels"] == {"app": "payments-service", "version": "green", "tier": "api"}
    assert "resourceVersion" not in body["metadata"]
    assert "status" not in body
    assert body["spec"]["replicas"] == 1
    assert body["spec"]["selector"] == {"matchLabels": {"app": "payments-service", "version": "green"}}
    assert body["spec"]["template"]["metadata"]["labels"]["version"] == "green"
    images = [c["image"] for c in body["spec"]["template"]["spec"]["containers"]]
    assert images == ["registry/payments:v2", "registry/payments:v2"]

    service_body = core.create_namespaced_service.call_args.kwargs["body"]
    assert service_body["metadata"]["name"] == "payments-service-green"
    assert service_body["spec"]["selector"] == {"app": "payments-service", "version": "green"}
    assert service_body["spec"]["ports"] == [{"port": 8080, "targetPort": 8080}]


async def test_creates_from_manifest_template_with_named_container(tmp_path):
    template = tmp_path / "deployment.yaml"
    template.write_text(
        "apiVersion: apps/v1\n"
        "kind: Deployment\n"
        "metadata:\n"
        "  name: payments-service\n"
        "spec:\n"
        "  template:\n"
        "    metadata:\n"
        "      labels:\n"
        "        app: payments-service\n"
        "    spec:\n"
        "      containers:\n"
        "        - name: payments\n"
        "          image: placeholder\n"
        "        - name: envoy\n"
        "          image: envoy:1.29\n",
        encoding="utf-8",
    )
    service = Service(name="payments-service", namespace="payments", container="payments", manifest=str(template))
    apps = MagicMock()
    apps.read_namespaced_deployment.side_effect = _not_found()
    apps.read_namespaced_deployment_status.return_value = _status()
    kube, apps, core = _client(apps=apps)

    await kube.ensure_slot_deployed(service, Slot.BLUE, "registry/payments:v1")

    body = apps.create_namespaced_deployment.call_args.kwargs["body"]
    containers = body["spec"]["template"]["spec"]["containers"]
    assert containers[0]["image"] == "registry/payments:v1"
    assert containers[1]["image"] == "envoy:1.29"
    assert body["metadata"]["name"] == "payments-service-blue"
    core.create_namespaced_service.assert_not_called()


async def test_minimal_manifest_when_nothing_to_copy():
    kube, _, _ = _client()
    body = kube.build_slot_manifest(SERVICE, Slot.BLUE, "registry/payments:v1", {})
    assert body["spec"]["template"]["spec"]["containers"] == [
        {"name": "payments-service", "ports": [{"containerPort": 8080}], "image": "registry/payments:v1"}
    ]


async def test_existing_slot_is_patched_with_new_image():
    apps = MagicMock()
    apps.read_namespaced_deployment.return_value = _deployment(
        "payments-service-green", {"app": "payments-service", "version": "green"}
    )
    apps.read_namespaced_deployment_status.return_value = _status()
    kube, apps, core = _client(apps=apps)

    await kube.ensure_slot_deployed(SERVICE, Slot.GREEN, "registry/payments:v3")

    apps.create_namespaced_deployment.assert_not_called()
    patch = apps.patch_namespaced_deployment.call_args.kwargs["body"]
    assert patch["spec"]["replicas"] == 1
    assert patch["spec"]["template"]["spec"]["containers"] == [
        {"name": "payments", "image": "registry/payments:v3"},
        {"name": "envoy", "image": "registry/payments:v3"},
    ]


async def test_waits_until_available():
    apps = MagicMock()
    apps.read_namespaced_deployment.return_value = _deployment("payments-service-green", {"app": "payments-service"})
    apps.read_namespaced_deployment_status.side_effect = [
        _status(observed=1),
        _status(available=False, ready=0),
        _status(),
    ]
    kube, apps, core = _client(apps=apps)

    await kube.ensure_slot_deployed(SERVICE, Slot.GREEN, "registry/payments:v2")

    assert apps.read_namespaced_deployment_status.call_count == 3


async def test_deploy_timeout_when_never_available():
    apps = MagicMock()
    apps.read_namespaced_deployment.return_value = _deployment("payments-service-green", {"app": "payments-service"})
    apps.read_namespaced_deployment_status.return_value = _status(available=False, ready=0)
    kube, apps, core = _client(apps=apps, deploy_ready_timeout=12, poll_interval=5)

    with pytest.raises(DeployTimeout):
        await kube.ensure_slot_deployed(SERVICE, Slot.GREEN, "registry/payments:v2")
    assert apps.read_namespaced_deployment_status.call_count == 4


async def test_api_errors_surface_as_control_plane_errors():
    apps = MagicMock()
    apps.read_namespaced_deployment.side_effect = ApiException(status=403, reason="Forbidden")
    kube, apps, core = _client(apps=apps)

    with pytest.raises(ControlPlaneError):
        await kube.ensure_slot_deployed(SERVICE, Slot.GREEN, "registry/payments:v2")


async def test_scale_to_zero_patches_scale_subresource():
    kube, apps, core = _client()

    await kube.scale_slot_to_zero(SERVICE, Slot.BLUE)

    apps.patch_namespaced_deployment_scale.assert_called_once_with(
        name="payments-service-blue", namespace="payments", body={"spec": {"replicas": 0}}
    )


async def test_delete_tolerates_already_gone():
    apps = MagicMock()
    apps.delete_namespaced_deployment.side_effect = _not_found()
    core = MagicMock()
    core.delete_namespaced_service.side_effect = _not_found()
    kube, apps, core = _client(apps=apps, core=core)

    await kube.delete_slot(SERVICE, Slot.BLUE)

    apps.delete_namespaced_deployment.assert_called_once()
    core.delete_namespaced_service.assert_called_once_with(name="payments-service-blue", namespace="payments")


async def test_delete_failure_is_an_error():
    apps = MagicMock()
    apps.delete_namespaced_deployment.side_effect = ApiException(status=500, reason="Internal")
    kube, apps, core = _client(apps=apps)

    with pytest.raises(ControlPlaneError):
        await kube.delete_slot(SERVICE, Slot.BLUE)


async def test_slot_url_and_image():
    apps = MagicMock()
    apps.read_namespaced_deployment.return_value = _deployment("payments-service-blue", {"app": "payments-service"})
    kube, apps, core = _client(apps=apps)

    assert kube.slot_url(SERVICE, Slot.BLUE) == "http://payments-service-blue.payments.svc.cluster.local:8080/health"
    assert await kube.get_slot_image(SERVICE, Slot.BLUE) == "registry/payments:v1"

    apps.read_namespaced_deployment.side_effect = _not_found()
    assert await kube.get_slot_image(SERVICE, Slot.GREEN) is None


async def test_timeout_lets_in_flight_create_land_before_delete():
    order = []
    release = threading.Event()
    apps = MagicMock()
    apps.read_namespaced_deployment.side_effect = _not_found()

    def create(namespace, body):
        release.wait(5)
        order.append("create")

    apps.create_namespaced_deployment.side_effect = create
    apps.delete_namespaced_deployment.side_effect = lambda **kwargs: order.append("delete")
    kube, apps, core = _client(apps=apps)

    async def release_later():
        await asyncio.sleep(0.05)
        release.set()

    releaser = asyncio.ensure_future(release_later())
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(kube.ensure_slot_deployed(SERVICE, Slot.GREEN, "registry/payments:v2"), timeout=0.01)
    await kube.delete_slot(SERVICE, Slot.GREEN)
    await releaser

    assert order == ["create", "delete"]
