"""
Traffic router backed by a Kubernetes Service selector.

The live slot is the value of one selector label on the router Service; a
switch is a single patch of that label.
"""
import asyncio
import logging
from typing import Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from adapters import TrafficRouterClient
from kube_client import KUBE_ERRORS, is_not_found, load_kube
from kube_types import Service, Slot, parse_slot
from rollout_errors import RouterUnreachable, SwitchWriteFailure

logger = logging.getLogger(__name__)


class KubeServiceRouter(TrafficRouterClient):

    def __init__(
        self,
        in_cluster: bool = True,
        context: Optional[str] = None,
        selector_label: str = "version",
        core_v1: Optional[client.CoreV1Api] = None,
    ):
        if core_v1 is None:
            load_kube(in_cluster, context)
        self.v1 = core_v1 or client.CoreV1Api()
        self.selector_label = selector_label

    def _read_service(self, service: Service):
        try:
            return self.v1.read_namespaced_service(name=service.name, namespace=service.namespace)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise

    async def get_selector(self, service: Service) -> Optional[Slot]:
        try:
            svc = await asyncio.to_thread(self._read_service, service)
        except KUBE_ERRORS as e:
            raise RouterUnreachable(f"Failed to read service {service.key}: {e}", service=service.name) from e
        if svc is None:
            logger.info(f"Router service {service.key} does not exist yet")
            return None
        value = (svc.spec.selector or {}).get(self.selector_label)
        slot = parse_slot(value)
        if value and slot is None:
            logger.warning(f"⚠️ Unrecognized {self.selector_label}={value!r} on {service.key}, treating as none")
        return slot

    async def set_selector(self, service: Service, slot: Slot) -> None:
        body = {"spec": {"selector": {self.selector_label: slot.value}}}
        try:
            await asyncio.to_thread(
                self.v1.patch_namespaced_service,
                name=service.name,
                namespace=service.namespace,
                body=body,
            )
        except KUBE_ERRORS as e:
            logger.error(f"❌ Failed to switch {service.key} to {slot.value}: {e}")
            raise SwitchWriteFailure(f"Failed to switch {service.key} to {slot.value}: {e}", service=service.name) from e
        logger.info(f"✅ Traffic switched for {service.key} to {slot.value}")

    async def public_url(self, service: Service) -> str:
        if service.public_url:
            return service.public_url
        path = service.health_check_path if service.health_check_path.startswith("/") else f"/{service.health_check_path}"
        try:
            svc = await asyncio.to_thread(self._read_service, service)
        except KUBE_ERRORS as e:
            raise RouterUnreachable(f"Failed to read service {service.key}: {e}", service=service.name) from e

        port = service.port
        if svc is not None:
            ports = svc.spec.ports or []
            if ports:
                port = ports[0].port
            ingress = (svc.status.load_balancer.ingress or []) if svc.status and svc.status.load_balancer else []
            if ingress:
                host = ingress[0].ip or ingress[0].hostname
                if host:
                    suffix = "" if port == 80 else f":{port}"
                    return f"http://{host}{suffix}{path}"
        return f"http://{service.name}.{service.namespace}.svc.cluster.local:{port}{path}"
