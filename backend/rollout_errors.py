"""
Error taxonomy for blue-green rollouts.

Every terminal rollout state carries one of these as its triggering error.
"""
from typing import Optional


class RolloutError(Exception):
    """Base class for rollout failures."""

    reason = "RolloutError"

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.service = service

    def to_dict(self):
        return {"reason": self.reason, "message": self.message, "service": self.service}


class RouterUnreachable(RolloutError):
    """The traffic router could not be read. No mutation was attempted."""
    reason = "RouterUnreachable"


class ControlPlaneError(RolloutError):
    """The cluster control plane rejected or failed a request."""
    reason = "ControlPlaneError"


class DeployTimeout(ControlPlaneError):
    """The new slot never became available."""
    reason = "DeployTimeout"


class PreSwitchHealthFailure(RolloutError):
    reason = "PreSwitchHealthFailure"


class SwitchWriteFailure(RolloutError):
    """A selector write failed; router state needs operator attention."""
    reason = "SwitchWriteFailure"


class PostSwitchHealthFailure(RolloutError):
    reason = "PostSwitchHealthFailure"


class CleanupFailure(RolloutError):
    """The old slot could not be decommissioned. Non-fatal."""
    reason = "CleanupFailure"


class RolloutTimeout(RolloutError):
    reason = "RolloutTimeout"


class RolloutCancelled(RolloutError):
    reason = "RolloutCancelled"
