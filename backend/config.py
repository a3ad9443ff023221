"""
Configuration settings for the blue-green rollout orchestrator.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import Field, TypeAdapter
from pydantic_settings import BaseSettings

from kube_types import FleetPolicy, Service


@dataclass(frozen=True)
class RolloutOptions:
    """Tunables for a single rollout, in seconds where applicable."""
    pre_switch_attempts: int = 30
    pre_switch_interval: float = 10.0
    post_switch_attempts: int = 12
    post_switch_interval: float = 5.0
    health_check_timeout: float = 5.0
    deploy_ready_timeout: float = 600.0
    scale_down_grace_period: float = 30.0
    rollout_timeout: Optional[float] = None
    cleanup_on_deploy_failure: bool = True
    verify_rollback: bool = False

    @property
    def pre_switch_budget(self) -> float:
        """Global budget for everything before the traffic switch."""
        if self.rollout_timeout is not None:
            return self.rollout_timeout
        health_window = self.pre_switch_attempts * (self.pre_switch_interval + self.health_check_timeout)
        return self.deploy_ready_timeout + health_window


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Application
    APP_NAME: str = Field(default="bluegreen-orchestrator", description="Application name")
    APP_ENV: str = Field(default="dev", description="Environment: dev|staging|prod")
    HTTP_PORT: int = Field(default=8002, description="Service port")
    LOG_LEVEL: str = Field(default="info", description="Log level: info|debug|warning")

    # Kubernetes Configuration
    K8S_CONTEXT: Optional[str] = Field(default=None, description="Kubernetes context")
    K8S_IN_CLUSTER: bool = Field(default=False, description="Running in cluster")
    SELECTOR_LABEL: str = Field(default="version", description="Router selector label holding the live slot")

    # Health gating
    PRE_SWITCH_HEALTH_ATTEMPTS: int = Field(default=30, ge=1)
    PRE_SWITCH_HEALTH_INTERVAL: float = Field(default=10.0, ge=0)
    POST_SWITCH_HEALTH_ATTEMPTS: int = Field(default=12, ge=1)
    POST_SWITCH_HEALTH_INTERVAL: float = Field(default=5.0, ge=0)
    HEALTH_CHECK_TIMEOUT: float = Field(default=5.0, gt=0, description="Per-probe timeout")

    # Control plane
    DEPLOY_READY_TIMEOUT: float = Field(default=600.0, gt=0)
    DEPLOY_POLL_INTERVAL: float = Field(default=5.0, gt=0)
    SCALE_DOWN_GRACE_PERIOD: float = Field(default=30.0, ge=0)
    ROLLOUT_TIMEOUT: Optional[float] = Field(default=None, gt=0, description="Budget for the pre-switch phase")
    CLEANUP_ON_DEPLOY_FAILURE: bool = Field(default=True)
    VERIFY_ROLLBACK: bool = Field(default=False, description="Re-check health after a rollback")

    # Fleet
    FLEET_POLICY: FleetPolicy = Field(default=FleetPolicy.FAIL_FAST)
    FLEET_MAX_CONCURRENCY: int = Field(default=1, ge=1)
    FLEET_SERVICES: List[Service] = Field(default_factory=list, description="JSON list of services")
    FLEET_FILE: Optional[str] = Field(default=None, description="YAML/JSON fleet definition")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    def rollout_options(self) -> RolloutOptions:
        return RolloutOptions(
            pre_switch_attempts=self.PRE_SWITCH_HEALTH_ATTEMPTS,
            pre_switch_interval=self.PRE_SWITCH_HEALTH_INTERVAL,
            post_switch_attempts=self.POST_SWITCH_HEALTH_ATTEMPTS,
            post_switch_interval=self.POST_SWITCH_HEALTH_INTERVAL,
            health_check_timeout=self.HEALTH_CHECK_TIMEOUT,
            deploy_ready_timeout=self.DEPLOY_READY_TIMEOUT,
            scale_down_grace_period=self.SCALE_DOWN_GRACE_PERIOD,
            rollout_timeout=self.ROLLOUT_TIMEOUT,
            cleanup_on_deploy_failure=self.CLEANUP_ON_DEPLOY_FAILURE,
            verify_rollback=self.VERIFY_ROLLBACK,
        )

    def fleet(self) -> List[Service]:
        """Configured services in fleet order. A fleet file takes precedence over FLEET_SERVICES."""
        if self.FLEET_FILE:
            return load_fleet(self.FLEET_FILE)
        return list(self.FLEET_SERVICES)


_SERVICES = TypeAdapter(List[Service])


def load_fleet(path: str) -> List[Service]:
    """
    Load an ordered service list from a YAML or JSON file.

    Accepts either a bare list or a mapping with a ``services`` key.
    """
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or []
    if isinstance(data, dict):
        data = data.get("services", [])
    return _SERVICES.validate_python(data)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Global settings instance
settings = Settings()
