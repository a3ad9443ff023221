"""
Fleet runner: roll out an ordered list of services.
"""
import asyncio
import logging
from typing import Dict, List, Mapping, Optional

from kube_types import FleetPolicy, FleetReport, RolloutResult, Service
from rollout_controller import RolloutController

logger = logging.getLogger(__name__)


class FleetRunner:
    """
    Invokes a RolloutController per service in fleet order.

    Order matters: later services may rely on earlier ones being live, so
    results and scheduling always follow the configured list.
    """

    def __init__(self, controller: RolloutController, max_concurrency: int = 1, skip_unchanged: bool = False):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.controller = controller
        self.max_concurrency = max_concurrency
        self.skip_unchanged = skip_unchanged

    async def _rollout_one(self, service: Service, image_ref: str) -> RolloutResult:
        return await self.controller.rollout(service, image_ref, skip_unchanged=self.skip_unchanged)

    async def run_fleet(
        self,
        services: List[Service],
        images: Mapping[str, str],
        policy: FleetPolicy = FleetPolicy.FAIL_FAST,
    ) -> FleetReport:
        """
        Roll out every service to its image.

        Args:
            services: Ordered fleet
            images: Image reference per service name
            policy: Stop at the first failure, or attempt every service

        Returns:
            FleetReport with one entry per attempted service, in fleet order
        """
        names = [s.name for s in services]
        if len(set(names)) != len(names):
            raise ValueError("Service names must be unique within a fleet")
        missing = [s.name for s in services if not images.get(s.name)]
        if missing:
            raise ValueError(f"No image reference for: {', '.join(missing)}")

        logger.info(f"🚀 Starting blue-green deployment of {len(services)} services ({policy.value})")
        if self.max_concurrency == 1:
            report = await self._run_sequential(services, images, policy)
        else:
            report = await self._run_concurrent(services, images, policy)

        if report.succeeded:
            logger.info("🎉 Blue-green deployment completed successfully for all services!")
        else:
            failed = [name for name, r in report.results.items() if not r.succeeded]
            logger.error(f"❌ Fleet rollout failed for: {', '.join(failed)}")
        return report

    async def _run_sequential(self, services, images, policy) -> FleetReport:
        report = FleetReport(policy=policy)
        for service in services:
            result = await self._rollout_one(service, images[service.name])
            report.results[service.name] = result
            if not result.succeeded and policy is FleetPolicy.FAIL_FAST:
                logger.error(f"❌ {service.name} ended {result.state.value}; stopping fleet")
                break
        return report

    async def _run_concurrent(self, services, images, policy) -> FleetReport:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        stop = asyncio.Event()
        outcomes: Dict[str, Optional[RolloutResult]] = {}

        async def run(service: Service) -> None:
            async with semaphore:
                if stop.is_set():
                    return
                result = await self._rollout_one(service, images[service.name])
                outcomes[service.name] = result
                if not result.succeeded and policy is FleetPolicy.FAIL_FAST:
                    stop.set()

        await asyncio.gather(*(run(s) for s in services))

        report = FleetReport(policy=policy)
        for service in services:
            if service.name in outcomes:
                report.results[service.name] = outcomes[service.name]
        return report
