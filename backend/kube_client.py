"""
Kubernetes client for deployment slot operations.
"""
import asyncio
import copy
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as TransportError

from adapters import ClusterControlPlaneClient
from kube_types import Service, Slot, opposite, slot_name
from rollout_errors import ControlPlaneError, DeployTimeout

logger = logging.getLogger(__name__)

KUBE_ERRORS = (ApiException, TransportError)


def load_kube(in_cluster: bool = True, context: Optional[str] = None) -> None:
    """Load in-cluster or kubeconfig credentials."""
    try:
        if in_cluster:
            config.load_incluster_config()
        elif context:
            config.load_kube_config(context=context)
        else:
            config.load_kube_config()
    except Exception as e:
        logger.error(f"❌ Failed to load Kubernetes configuration: {e}")
        raise


def is_not_found(error: Exception) -> bool:
    return isinstance(error, ApiException) and error.status == 404


class KubeClient(ClusterControlPlaneClient):
    """Manages the two Deployments (and their probe Services) backing a service's slots."""

    def __init__(
        self,
        in_cluster: bool = True,
        context: Optional[str] = None,
        selector_label: str = "version",
        deploy_ready_timeout: float = 600.0,
        poll_interval: float = 5.0,
        apps_v1: Optional[client.AppsV1Api] = None,
        core_v1: Optional[client.CoreV1Api] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize Kubernetes client.

        Args:
            in_cluster: Whether running inside cluster
            context: Kubernetes context name (optional)
            selector_label: Pod label that distinguishes the two slots
            deploy_ready_timeout: Seconds to wait for a slot to become available
            poll_interval: Seconds between availability polls
            apps_v1, core_v1: Pre-built API objects; credentials are loaded only when omitted
        """
        if apps_v1 is None or core_v1 is None:
            load_kube(in_cluster, context)
        self.apps_v1 = apps_v1 or client.AppsV1Api()
        self.v1 = core_v1 or client.CoreV1Api()
        self.selector_label = selector_label
        self.deploy_ready_timeout = deploy_ready_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self._serializer = client.ApiClient()
        logger.info("✅ Kubernetes control plane client initialized")

    # ------------------------------------------------------------------
    # Manifests
    # ------------------------------------------------------------------
    def slot_labels(self, service: Service, slot: Slot) -> Dict[str, str]:
        return {"app": service.name, self.selector_label: slot.value}

    def _read_deployment(self, namespace: str, name: str):
        try:
            return self.apps_v1.read_namespaced_deployment(name=name, namespace=namespace)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise

    def _base_manifest(self, service: Service, slot: Slot) -> Dict[str, Any]:
        sibling = self._read_deployment(service.namespace, slot_name(service, opposite(slot)))
        if sibling is not None:
            logger.info(f"Building {slot_name(service, slot)} from live {sibling.metadata.name}")
            return self._serializer.sanitize_for_serialization(sibling)
        if service.manifest:
            logger.info(f"Building {slot_name(service, slot)} from template {service.manifest}")
            return yaml.safe_load(Path(service.manifest).read_text(encoding="utf-8")) or {}
        return {}

    def build_slot_manifest(self, service: Service, slot: Slot, image_ref: str, base: Dict[str, Any]) -> Dict[str, Any]:
        """Shape ``base`` into the Deployment for ``slot`` running ``image_ref``."""
        body = copy.deepcopy(base)
        name = slot_name(service, slot)
        labels = self.slot_labels(service, slot)

        meta_labels = dict((body.get("metadata") or {}).get("labels") or {})
        meta_labels.update(labels)
        body["apiVersion"] = "apps/v1"
        body["kind"] = "Deployment"
        body["metadata"] = {"name": name, "namespace": service.namespace, "labels": meta_labels}
        body.pop("status", None)

        spec = body.setdefault("spec", {})
        spec["replicas"] = service.replicas
        spec["selector"] = {"matchLabels": dict(labels)}
        template = spec.setdefault("template", {})
        template_meta = template.setdefault("metadata", {})
        pod_labels = dict(template_meta.get("labels") or {})
        pod_labels.update(labels)
        template_meta["labels"] = pod_labels

        pod_spec = template.setdefault("spec", {})
        containers: List[Dict[str, Any]] = pod_spec.setdefault("containers", [])
        if not containers:
            containers.append({
                "name": service.container or service.name,
                "ports": [{"containerPort": service.port}],
            })
        for container in containers:
            if service.container is None or container.get("name") == service.container:
                container["image"] = image_ref
        return body

    def _image_patch(self, service: Service, existing, image_ref: str) -> Dict[str, Any]:
        names = [c.name for c in existing.spec.template.spec.containers]
        if service.container is not None:
            names = [n for n in names if n == service.container]
        return {
            "spec": {
                "replicas": service.replicas,
                "template": {"spec": {"containers": [{"name": n, "image": image_ref} for n in names]}},
            }
        }

    def _ensure_slot_service(self, service: Service, slot: Slot) -> None:
        name = slot_name(service, slot)
        try:
            self.v1.read_namespaced_service(name=name, namespace=service.namespace)
            return
        except ApiException as e:
            if not is_not_found(e):
                raise
        labels = self.slot_labels(service, slot)
        body = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": name, "namespace": service.namespace, "labels": labels},
            "spec": {
                "type": "ClusterIP",
                "selector": labels,
                "ports": [{"port": service.port, "targetPort": service.port}],
            },
        }
        self.v1.create_namespaced_service(namespace=service.namespace, body=body)
        logger.info(f"✅ Created probe service {name} in {service.namespace}")

    def _apply_slot(self, service: Service, slot: Slot, image_ref: str) -> None:
        name = slot_name(service, slot)
        existing = self._read_deployment(service.namespace, name)
        if existing is None:
            body = self.build_slot_manifest(service, slot, image_ref, self._base_manifest(service, slot))
            self.apps_v1.create_namespaced_deployment(namespace=service.namespace, body=body)
            logger.info(f"✅ Created deployment {name} with image {image_ref}")
        else:
            self.apps_v1.patch_namespaced_deployment(
                name=name,
                namespace=service.namespace,
                body=self._image_patch(service, existing, image_ref),
            )
            logger.info(f"✅ Updated deployment {name} to image {image_ref}")
        self._ensure_slot_service(service, slot)

    # ------------------------------------------------------------------
    # Rollout status
    # ------------------------------------------------------------------
    def is_available(self, namespace: str, name: str) -> bool:
        deployment = self.apps_v1.read_namespaced_deployment_status(name=name, namespace=namespace)
        desired = deployment.spec.replicas if deployment.spec.replicas is not None else 1
        status = deployment.status
        if (status.observed_generation or 0) < (deployment.metadata.generation or 0):
            return False
        available = any(c.type == "Available" and c.status == "True" for c in (status.conditions or []))
        ready = status.ready_replicas or 0
        updated = status.updated_replicas or 0
        return available and ready >= desired and updated >= desired

    async def _wait_available(self, service: Service, name: str) -> None:
        deadline = self._clock() + self.deploy_ready_timeout
        while True:
            try:
                if await asyncio.to_thread(self.is_available, service.namespace, name):
                    logger.info(f"✅ Deployment {name} is available")
                    return
            except KUBE_ERRORS as e:
                raise ControlPlaneError(f"Failed to read status of {name}: {e}", service=service.name) from e
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise DeployTimeout(
                    f"Deployment {name} not available after {self.deploy_ready_timeout:.0f}s",
                    service=service.name,
                )
            logger.info(f"⏳ Waiting for deployment {name} to become available...")
            await self._sleep(min(self.poll_interval, remaining))

    # ------------------------------------------------------------------
    # ClusterControlPlaneClient
    # ------------------------------------------------------------------
    async def ensure_slot_deployed(self, service: Service, slot: Slot, image_ref: str) -> None:
        name = slot_name(service, slot)
        logger.info(f"🚀 Deploying {image_ref} to {name} in namespace {service.namespace}")
        apply = asyncio.ensure_future(asyncio.to_thread(self._apply_slot, service, slot, image_ref))
        try:
            await asyncio.shield(apply)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; let the write land
            # so a follow-up delete_slot sees it.
            logger.warning(f"⚠️ Cancelled while applying {name}; waiting for the in-flight write")
            await asyncio.gather(apply, return_exceptions=True)
            raise
        except KUBE_ERRORS as e:
            logger.error(f"❌ Failed to apply deployment {name}: {e}")
            raise ControlPlaneError(f"Failed to apply deployment {name}: {e}", service=service.name) from e
        await self._wait_available(service, name)

    async def scale_slot_to_zero(self, service: Service, slot: Slot) -> None:
        name = slot_name(service, slot)
        try:
            await asyncio.to_thread(
                self.apps_v1.patch_namespaced_deployment_scale,
                name=name,
                namespace=service.namespace,
                body={"spec": {"replicas": 0}},
            )
        except KUBE_ERRORS as e:
            logger.error(f"❌ Failed to scale {name} to zero: {e}")
            raise ControlPlaneError(f"Failed to scale {name} to zero: {e}", service=service.name) from e
        logger.info(f"✅ Scaled {name} to zero replicas")

    def _delete(self, service: Service, slot: Slot) -> None:
        name = slot_name(service, slot)
        try:
            self.apps_v1.delete_namespaced_deployment(
                name=name, namespace=service.namespace, propagation_policy="Background"
            )
        except ApiException as e:
            if not is_not_found(e):
                raise
            logger.info(f"Deployment {name} already gone")
        try:
            self.v1.delete_namespaced_service(name=name, namespace=service.namespace)
        except ApiException as e:
            if not is_not_found(e):
                raise

    async def delete_slot(self, service: Service, slot: Slot) -> None:
        name = slot_name(service, slot)
        try:
            await asyncio.to_thread(self._delete, service, slot)
        except KUBE_ERRORS as e:
            logger.error(f"❌ Failed to delete {name}: {e}")
            raise ControlPlaneError(f"Failed to delete {name}: {e}", service=service.name) from e
        logger.info(f"✅ Deleted slot {name} from {service.namespace}")

    def slot_url(self, service: Service, slot: Slot) -> str:
        path = service.health_check_path if service.health_check_path.startswith("/") else f"/{service.health_check_path}"
        return f"http://{slot_name(service, slot)}.{service.namespace}.svc.cluster.local:{service.port}{path}"

    async def get_slot_image(self, service: Service, slot: Slot) -> Optional[str]:
        name = slot_name(service, slot)
        try:
            deployment = await asyncio.to_thread(self._read_deployment, service.namespace, name)
        except KUBE_ERRORS as e:
            raise ControlPlaneError(f"Failed to read deployment {name}: {e}", service=service.name) from e
        if deployment is None:
            return None
        for container in deployment.spec.template.spec.containers:
            if service.container is None or container.name == service.container:
                return container.image
        return None
