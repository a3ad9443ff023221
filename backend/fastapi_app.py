# fastapi_app.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from adapters import report_to_dict, result_to_dict
from config import settings, setup_logging
from fleet_runner import FleetRunner
from kube_types import FleetPolicy, Service
from rollout_controller import build_controller
from rollout_errors import RouterUnreachable

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Try to initialize the rollout controller, but don't fail if Kubernetes is not available
try:
    controller = build_controller(settings)
    logger.info("✅ Rollout controller initialized")
except Exception as e:
    logger.warning(f"⚠️ Rollout controller initialization failed: {e}. Rollout endpoints will return 503.")
    controller = None

# -----------------------------------------------------------------------------
# FastAPI app + CORS
# -----------------------------------------------------------------------------
app = FastAPI(title="Blue-Green Rollout Orchestrator", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
class RolloutRequest(BaseModel):
    service: Service
    image_ref: str = Field(..., min_length=1, description="Image to deploy to the inactive slot")


class FleetRolloutRequest(BaseModel):
    images: Dict[str, str] = Field(..., description="Image reference per service name")
    services: List[str] = Field(default_factory=list, description="Subset of the configured fleet, in fleet order")
    policy: Optional[FleetPolicy] = None
    skip_unchanged: bool = False

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _controller():
    if controller is None:
        raise HTTPException(503, "Rollout controller not available (Kubernetes not configured)")
    return controller


def _fleet() -> List[Service]:
    try:
        return settings.fleet()
    except Exception as e:
        logger.error(f"❌ Failed to load fleet configuration: {e}")
        raise HTTPException(500, f"Invalid fleet configuration: {e}")

# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "healthy"}


@app.get("/api/health")
async def api_health():
    return {"status": "healthy", "controller": controller is not None}


@app.get("/api/fleet")
async def api_fleet() -> List[Dict[str, Any]]:
    """Configured services in rollout order."""
    return [
        {"name": s.name, "namespace": s.namespace, "health_check_path": s.health_check_path}
        for s in _fleet()
    ]


@app.get("/api/services/{namespace}/{name}/active")
async def api_active_color(namespace: str, name: str):
    """Live color of a service as recorded by the router."""
    ctl = _controller()
    service = next((s for s in _fleet() if s.name == name and s.namespace == namespace), None)
    service = service or Service(name=name, namespace=namespace)
    try:
        active = await ctl.color_resolver.resolve_active(service)
    except RouterUnreachable as e:
        raise HTTPException(503, str(e))
    return {"service": name, "namespace": namespace, "active": active.value if active else None}

# -----------------------------------------------------------------------------
# Rollout endpoints
# -----------------------------------------------------------------------------
@app.post("/api/rollouts")
async def api_rollout(body: RolloutRequest):
    """Run one blue-green rollout to completion and return its result."""
    ctl = _controller()
    logger.info(f"🚀 Rollout requested: {body.service.key} -> {body.image_ref}")
    result = await ctl.rollout(body.service, body.image_ref)
    return result_to_dict(result)


@app.post("/api/fleet/rollouts")
async def api_fleet_rollout(body: FleetRolloutRequest):
    """Roll out the configured fleet (or a subset of it)."""
    ctl = _controller()
    fleet = _fleet()
    if body.services:
        unknown = sorted(set(body.services) - {s.name for s in fleet})
        if unknown:
            raise HTTPException(400, f"Unknown services: {', '.join(unknown)}")
        fleet = [s for s in fleet if s.name in set(body.services)]
    if not fleet:
        raise HTTPException(400, "No services to roll out")

    runner = FleetRunner(ctl, max_concurrency=settings.FLEET_MAX_CONCURRENCY, skip_unchanged=body.skip_unchanged)
    try:
        report = await runner.run_fleet(fleet, body.images, body.policy or settings.FLEET_POLICY)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return report_to_dict(report)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.HTTP_PORT)
