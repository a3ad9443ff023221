"""
Adapters between the rollout core and the outside world.

The two abstract clients are the only interfaces the state machine consumes;
any orchestrator or L4/L7 router that implements them can be plugged in.
The report adapters turn results into plain dicts for the CLI and HTTP API.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from kube_types import FleetReport, RolloutResult, Service, Slot


class ClusterControlPlaneClient(ABC):
    """Creates, scales and deletes deployment slots."""

    @abstractmethod
    async def ensure_slot_deployed(self, service: Service, slot: Slot, image_ref: str) -> None:
        """Create or update the slot and block until it is available."""

    @abstractmethod
    async def scale_slot_to_zero(self, service: Service, slot: Slot) -> None:
        ...

    @abstractmethod
    async def delete_slot(self, service: Service, slot: Slot) -> None:
        """Remove the slot. Must treat an already-deleted slot as success."""

    @abstractmethod
    def slot_url(self, service: Service, slot: Slot) -> str:
        """Health check URL reaching the slot directly, bypassing the router."""

    @abstractmethod
    async def get_slot_image(self, service: Service, slot: Slot) -> Optional[str]:
        ...


class TrafficRouterClient(ABC):
    """Holds the selector that decides which slot receives live traffic."""

    @abstractmethod
    async def get_selector(self, service: Service) -> Optional[Slot]:
        ...

    @abstractmethod
    async def set_selector(self, service: Service, slot: Slot) -> None:
        """Point live traffic at ``slot`` in a single write."""

    @abstractmethod
    async def public_url(self, service: Service) -> str:
        """Health check URL reaching the service through the router."""


def _error_dict(error: Optional[Exception]) -> Optional[Dict[str, Any]]:
    if error is None:
        return None
    to_dict = getattr(error, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return {"reason": type(error).__name__, "message": str(error), "service": None}


def result_to_dict(result: RolloutResult) -> Dict[str, Any]:
    return {
        "service": result.service.name,
        "namespace": result.service.namespace,
        "state": result.state.value,
        "from_color": result.from_color.value if result.from_color else None,
        "to_color": result.to_color.value if result.to_color else None,
        "succeeded": result.succeeded,
        "degraded": result.degraded,
        "skipped": result.skipped,
        "error": _error_dict(result.error),
        "cleanup_error": _error_dict(result.cleanup_error),
        "started_at": result.started_at.isoformat() if result.started_at else None,
        "finished_at": result.finished_at.isoformat() if result.finished_at else None,
        "history": [{"state": state.value, "at": at.isoformat()} for state, at in result.history],
    }


def report_to_dict(report: FleetReport) -> Dict[str, Any]:
    return {
        "policy": report.policy.value,
        "succeeded": report.succeeded,
        "exit_code": report.exit_code,
        "results": [result_to_dict(r) for r in report.results.values()],
    }
