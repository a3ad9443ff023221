"""
Type definitions for blue-green rollouts.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple


class Slot(str, Enum):
    """One of the two deployment slots of a service."""
    BLUE = "blue"
    GREEN = "green"


class FleetPolicy(str, Enum):
    FAIL_FAST = "fail_fast"
    CONTINUE_ON_ERROR = "continue_on_error"


class RolloutState(str, Enum):
    IDLE = "Idle"
    RESOLVE_ACTIVE = "ResolveActive"
    DEPLOYING_INACTIVE = "DeployingInactive"
    HEALTH_CHECKING_NEW = "HealthCheckingNew"
    SWITCHING_TRAFFIC = "SwitchingTraffic"
    POST_SWITCH_HEALTH_CHECK = "PostSwitchHealthCheck"
    CLEANING_UP_OLD = "CleaningUpOld"
    COMPLETED = "Completed"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"

    @property
    def terminal(self) -> bool:
        return self in (RolloutState.COMPLETED, RolloutState.FAILED, RolloutState.ROLLED_BACK)


@dataclass(frozen=True)
class Service:
    """A deployable unit behind the traffic router."""
    name: str
    namespace: str = "default"
    health_check_path: str = "/health"
    port: int = 80
    container: Optional[str] = None  # None replaces the image of every container
    replicas: int = 1
    public_url: Optional[str] = None
    manifest: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def slot_name(service: Service, slot: Slot) -> str:
    """Name of the Deployment (and slot Service) backing ``slot``."""
    return f"{service.name}-{slot.value}"


def opposite(color: Optional[Slot]) -> Slot:
    """Target slot for a rollout. The bootstrap case (no live color) deploys to blue."""
    if color is Slot.BLUE:
        return Slot.GREEN
    return Slot.BLUE


def parse_slot(value: Optional[str]) -> Optional[Slot]:
    """Map a router selector value to a slot; anything else reads as no live color."""
    if not value:
        return None
    try:
        return Slot(value.strip().lower())
    except ValueError:
        return None


@dataclass
class HealthCheckResult:
    """Outcome of a (possibly multi-attempt) health check."""
    attempted_at: datetime
    success: bool
    latency: float
    attempts: int = 1
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class RolloutResult:
    service: Service
    state: RolloutState
    from_color: Optional[Slot]
    to_color: Optional[Slot]
    error: Optional[Exception] = None
    degraded: bool = False
    skipped: bool = False
    cleanup_error: Optional[Exception] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    history: List[Tuple[RolloutState, datetime]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is RolloutState.COMPLETED


@dataclass
class RolloutAttempt:
    """In-memory record of one rollout. Never persisted; the router is the system of record."""
    service: Service
    image_ref: str
    from_color: Optional[Slot] = None
    to_color: Optional[Slot] = None
    state: RolloutState = RolloutState.IDLE
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    last_error: Optional[Exception] = None
    cleanup_error: Optional[Exception] = None
    degraded: bool = False
    skipped: bool = False
    history: List[Tuple[RolloutState, datetime]] = field(default_factory=list)

    def __post_init__(self):
        self.history.append((self.state, self.started_at))

    def transition(self, state: RolloutState) -> None:
        self.state = state
        now = utc_now()
        self.history.append((state, now))
        if state.terminal:
            self.finished_at = now

    def fail(self, error: Exception, state: RolloutState = RolloutState.FAILED) -> None:
        self.last_error = error
        self.transition(state)

    def result(self) -> RolloutResult:
        return RolloutResult(
            service=self.service,
            state=self.state,
            from_color=self.from_color,
            to_color=self.to_color,
            error=self.last_error,
            degraded=self.degraded,
            skipped=self.skipped,
            cleanup_error=self.cleanup_error,
            started_at=self.started_at,
            finished_at=self.finished_at,
            history=list(self.history),
        )


@dataclass
class FleetReport:
    """Per-service outcomes of one fleet run, in fleet order."""
    policy: FleetPolicy
    results: Dict[str, RolloutResult] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return all(r.succeeded for r in self.results.values())

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1
