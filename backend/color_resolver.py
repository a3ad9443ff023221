"""
Resolve which slot is currently live for a service.
"""
import logging
from typing import Optional

from adapters import TrafficRouterClient
from kube_types import Service, Slot
from rollout_errors import RouterUnreachable

logger = logging.getLogger(__name__)


class ColorResolver:
    """Reads the live color from the traffic router. Never mutates anything."""

    def __init__(self, router: TrafficRouterClient):
        self.router = router

    async def resolve_active(self, service: Service) -> Optional[Slot]:
        """
        Return the live slot, or None when no rollout has happened yet.

        Raises:
            RouterUnreachable: the router could not be read. Callers must not
                assume a default color in that case.
        """
        try:
            active = await self.router.get_selector(service)
        except RouterUnreachable:
            raise
        except Exception as e:
            logger.error(f"❌ Failed to read router selector for {service.key}: {e}")
            raise RouterUnreachable(f"Router unreachable for {service.key}: {e}", service=service.name) from e

        logger.info(f"Active color for {service.key}: {active.value if active else 'none'}")
        return active
