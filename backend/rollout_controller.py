"""
Blue-green rollout state machine.

One call to ``RolloutController.rollout`` drives a single service from its
live slot to the opposite slot:

    Idle -> ResolveActive -> DeployingInactive -> HealthCheckingNew
         -> SwitchingTraffic -> PostSwitchHealthCheck -> CleaningUpOld -> Completed

Failures before the switch abandon the new slot and leave traffic alone.
A failed post-switch check reverts the selector to the previous color
(RolledBack). The traffic router is the only system of record; nothing here
is persisted, so an interrupted rollout is recovered by simply re-running it.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Type

from adapters import ClusterControlPlaneClient, TrafficRouterClient
from color_resolver import ColorResolver
from config import RolloutOptions
from health_checker import HealthChecker
from kube_types import RolloutAttempt, RolloutResult, RolloutState, Service, Slot, opposite, slot_name
from rollout_errors import (
    CleanupFailure,
    ControlPlaneError,
    PostSwitchHealthFailure,
    PreSwitchHealthFailure,
    RolloutCancelled,
    RolloutError,
    RolloutTimeout,
    RouterUnreachable,
    SwitchWriteFailure,
)

logger = logging.getLogger(__name__)


def _wrap(error: Exception, kind: Type[RolloutError], service: Service, message: str) -> RolloutError:
    if isinstance(error, RolloutError):
        return error
    wrapped = kind(f"{message}: {error}", service=service.name)
    wrapped.__cause__ = error
    return wrapped


class RolloutController:
    """Drives blue-green rollouts for individual services."""

    def __init__(
        self,
        control_plane: ClusterControlPlaneClient,
        router: TrafficRouterClient,
        health_checker: Optional[HealthChecker] = None,
        options: Optional[RolloutOptions] = None,
        color_resolver: Optional[ColorResolver] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.control_plane = control_plane
        self.router = router
        self.health_checker = health_checker or HealthChecker()
        self.options = options or RolloutOptions()
        self.color_resolver = color_resolver or ColorResolver(router)
        self._sleep = sleep
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, service: Service) -> asyncio.Lock:
        # One in-flight attempt per service; resolve and switch must never interleave.
        return self._locks.setdefault(service.key, asyncio.Lock())

    async def _live_image(self, service: Service, active: Slot) -> Optional[str]:
        try:
            return await self.control_plane.get_slot_image(service, active)
        except Exception as e:
            logger.warning(f"⚠️ Could not read live image of {service.key}, rolling out anyway: {e}")
            return None

    async def rollout(self, service: Service, image_ref: str, skip_unchanged: bool = False) -> RolloutResult:
        """
        Roll ``service`` out to ``image_ref`` on the inactive slot.

        With ``skip_unchanged`` a service whose live slot already runs
        ``image_ref`` completes without any writes.
        """
        attempt = RolloutAttempt(service=service, image_ref=image_ref)
        logger.info(f"🔄 Processing {service.name} in namespace {service.namespace} (image {image_ref})")

        async with self._lock_for(service):
            public_url = await self._prepare_within_budget(attempt, skip_unchanged)
            if not attempt.state.terminal:
                await self._run_uninterruptible(attempt, self._switch_and_verify(attempt, public_url))

        return self._finish(attempt)

    # ------------------------------------------------------------------
    # Pre-switch phase: abandonable, bounded by the rollout budget
    # ------------------------------------------------------------------
    async def _prepare_within_budget(self, attempt: RolloutAttempt, skip_unchanged: bool) -> Optional[str]:
        budget = self.options.pre_switch_budget
        try:
            return await asyncio.wait_for(self._prepare(attempt, skip_unchanged), timeout=budget)
        except asyncio.TimeoutError:
            error = RolloutTimeout(
                f"Rollout of {attempt.service.key} exceeded {budget:.0f}s before switching traffic",
                service=attempt.service.name,
            )
            logger.error(f"❌ {error}")
            await self._abandon(attempt, error)
            return None
        except asyncio.CancelledError:
            error = RolloutCancelled(f"Rollout of {attempt.service.key} cancelled", service=attempt.service.name)
            logger.warning(f"⚠️ {error} during {attempt.state.value}")
            await self._abandon(attempt, error)
            raise

    async def _abandon(self, attempt: RolloutAttempt, error: RolloutError) -> None:
        if attempt.state in (RolloutState.DEPLOYING_INACTIVE, RolloutState.HEALTH_CHECKING_NEW):
            await self._discard_new_slot(attempt)
        if not attempt.state.terminal:
            attempt.fail(error)

    async def _discard_new_slot(self, attempt: RolloutAttempt) -> None:
        name = slot_name(attempt.service, attempt.to_color)
        try:
            await self.control_plane.delete_slot(attempt.service, attempt.to_color)
            logger.info(f"Removed abandoned slot {name}")
        except Exception as e:
            logger.warning(f"⚠️ Could not remove abandoned slot {name}: {e}")

    async def _prepare(self, attempt: RolloutAttempt, skip_unchanged: bool) -> Optional[str]:
        service = attempt.service
        options = self.options

        attempt.transition(RolloutState.RESOLVE_ACTIVE)
        try:
            attempt.from_color = await self.color_resolver.resolve_active(service)
            public_url = await self.router.public_url(service)
        except Exception as e:
            error = _wrap(e, RouterUnreachable, service, f"Router unreachable for {service.key}")
            logger.error(f"❌ {error}")
            attempt.fail(error)
            return None

        if skip_unchanged and attempt.from_color is not None:
            if await self._live_image(service, attempt.from_color) == attempt.image_ref:
                logger.info(f"{service.name} already runs {attempt.image_ref} on {attempt.from_color.value}, skipping")
                attempt.to_color = attempt.from_color
                attempt.skipped = True
                attempt.transition(RolloutState.COMPLETED)
                return None

        attempt.to_color = opposite(attempt.from_color)
        active = attempt.from_color.value if attempt.from_color else "none"
        logger.info(f"Active: {active}, Deploying to: {attempt.to_color.value}")

        attempt.transition(RolloutState.DEPLOYING_INACTIVE)
        try:
            await self.control_plane.ensure_slot_deployed(service, attempt.to_color, attempt.image_ref)
        except Exception as e:
            error = _wrap(e, ControlPlaneError, service, f"Deployment failed for {service.key}")
            logger.error(f"❌ Deployment failed for {service.name}: {error}")
            if options.cleanup_on_deploy_failure:
                await self._discard_new_slot(attempt)
            attempt.fail(error)
            return None

        attempt.transition(RolloutState.HEALTH_CHECKING_NEW)
        url = self.control_plane.slot_url(service, attempt.to_color)
        result = await self.health_checker.check(
            url,
            max_attempts=options.pre_switch_attempts,
            interval=options.pre_switch_interval,
            timeout_per_attempt=options.health_check_timeout,
        )
        if not result.success:
            error = PreSwitchHealthFailure(
                f"{slot_name(service, attempt.to_color)} unhealthy after {result.attempts} attempts: {result.error}",
                service=service.name,
            )
            logger.error(f"❌ Health check failed for {service.name}, cleaning up...")
            await self._discard_new_slot(attempt)
            attempt.fail(error)
            return None

        return public_url

    # ------------------------------------------------------------------
    # Switch phase: runs to a terminal state even if cancelled
    # ------------------------------------------------------------------
    async def _run_uninterruptible(self, attempt: RolloutAttempt, coro) -> None:
        task = asyncio.ensure_future(coro)
        cancelled = False
        while not task.done():
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if task.done():
                    break
                cancelled = True
                logger.warning(
                    f"⚠️ Cancellation of {attempt.service.key} deferred until {attempt.state.value} resolves"
                )
        task.result()
        if cancelled:
            logger.warning(f"Rollout of {attempt.service.key} finished as {attempt.state.value} before cancelling")
            raise asyncio.CancelledError()

    async def _switch_and_verify(self, attempt: RolloutAttempt, public_url: str) -> None:
        service = attempt.service
        options = self.options

        attempt.transition(RolloutState.SWITCHING_TRAFFIC)
        logger.info(f"Switching traffic for {service.name} to {attempt.to_color.value} environment...")
        try:
            await self.router.set_selector(service, attempt.to_color)
        except Exception as e:
            error = _wrap(e, SwitchWriteFailure, service, f"Selector write failed for {service.key}")
            logger.error(
                f"❌ {error}. {slot_name(service, attempt.to_color)} stays deployed; operator intervention required"
            )
            attempt.fail(error)
            return

        attempt.transition(RolloutState.POST_SWITCH_HEALTH_CHECK)
        result = await self.health_checker.check(
            public_url,
            max_attempts=options.post_switch_attempts,
            interval=options.post_switch_interval,
            timeout_per_attempt=options.health_check_timeout,
        )
        if not result.success:
            error = PostSwitchHealthFailure(
                f"{service.key} unhealthy through the router after switching to {attempt.to_color.value}: "
                f"{result.error}",
                service=service.name,
            )
            logger.error(f"❌ Post-switch health check failed for {service.name}")
            await self._roll_back(attempt, error, public_url)
            return

        if attempt.from_color is not None:
            attempt.transition(RolloutState.CLEANING_UP_OLD)
            await self._clean_up_old(attempt)
        attempt.transition(RolloutState.COMPLETED)

    async def _roll_back(self, attempt: RolloutAttempt, error: RolloutError, public_url: str) -> None:
        service = attempt.service
        if attempt.from_color is None:
            attempt.degraded = True
            logger.error(
                f"❌ No previous color to roll back to for {service.key}; "
                f"traffic remains on {attempt.to_color.value}, operator action required"
            )
            attempt.fail(error)
            return

        logger.warning(f"Rolling back {service.name} to {attempt.from_color.value}...")
        try:
            await self.router.set_selector(service, attempt.from_color)
        except Exception as e:
            rollback_error = SwitchWriteFailure(
                f"Rollback of {service.key} to {attempt.from_color.value} failed after {error.reason}: {e}",
                service=service.name,
            )
            rollback_error.__cause__ = e
            attempt.degraded = True
            logger.error(f"❌ {rollback_error}; operator intervention required")
            attempt.fail(rollback_error)
            return

        if self.options.verify_rollback:
            check = await self.health_checker.check(
                public_url,
                max_attempts=self.options.post_switch_attempts,
                interval=self.options.post_switch_interval,
                timeout_per_attempt=self.options.health_check_timeout,
            )
            if not check.success:
                attempt.degraded = True
                logger.error(f"❌ {service.key} still unhealthy after rolling back to {attempt.from_color.value}")

        logger.warning(
            f"❌ Rollback completed for {service.name}; "
            f"{slot_name(service, attempt.to_color)} left deployed for inspection"
        )
        attempt.fail(error, state=RolloutState.ROLLED_BACK)

    async def _clean_up_old(self, attempt: RolloutAttempt) -> None:
        service = attempt.service
        old = attempt.from_color
        name = slot_name(service, old)
        logger.info(f"Cleaning up old {service.name} deployment ({old.value})...")
        try:
            await self.control_plane.scale_slot_to_zero(service, old)
            logger.info(f"⏳ Waiting {self.options.scale_down_grace_period:.0f}s for graceful shutdown of {name}")
            await self._sleep(self.options.scale_down_grace_period)
            await self.control_plane.delete_slot(service, old)
        except Exception as e:
            error = CleanupFailure(f"Failed to decommission {name}: {e}", service=service.name)
            error.__cause__ = e
            attempt.cleanup_error = error
            logger.error(f"❌ {error}; left as an orphan to reconcile out of band")
            return
        logger.info(f"✅ Cleaned up old {service.name} deployment")

    def _finish(self, attempt: RolloutAttempt) -> RolloutResult:
        if attempt.state is RolloutState.COMPLETED:
            logger.info(f"✅ Blue-green deployment completed for {attempt.service.name} (live: {attempt.to_color.value})")
        else:
            logger.error(
                f"❌ Rollout of {attempt.service.name} ended {attempt.state.value}: {attempt.last_error}"
            )
        return attempt.result()


def build_controller(settings) -> RolloutController:
    """Wire a controller against the cluster described by ``settings``."""
    from kube_client import KubeClient
    from traffic_router import KubeServiceRouter

    control_plane = KubeClient(
        in_cluster=settings.K8S_IN_CLUSTER,
        context=settings.K8S_CONTEXT,
        selector_label=settings.SELECTOR_LABEL,
        deploy_ready_timeout=settings.DEPLOY_READY_TIMEOUT,
        poll_interval=settings.DEPLOY_POLL_INTERVAL,
    )
    router = KubeServiceRouter(
        in_cluster=settings.K8S_IN_CLUSTER,
        context=settings.K8S_CONTEXT,
        selector_label=settings.SELECTOR_LABEL,
    )
    return RolloutController(control_plane, router, options=settings.rollout_options())
