"""
HTTP health checking with bounded retries.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

import requests

from kube_types import HealthCheckResult, utc_now

logger = logging.getLogger(__name__)


class HealthChecker:
    """
    Polls an HTTP(S) endpoint until it answers 2xx or the attempts run out.

    Probes run in worker threads, one per concurrent rollout. Without an
    explicit ``session`` each probe goes through ``requests.get``, which
    opens its own session, so no connection pool is shared across threads.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session = session
        self._sleep = sleep

    def _probe(self, url: str, timeout: float) -> HealthCheckResult:
        attempted_at = utc_now()
        started = time.monotonic()
        try:
            get = self.session.get if self.session is not None else requests.get
            response = get(url, timeout=timeout)
        except requests.RequestException as e:
            return HealthCheckResult(
                attempted_at=attempted_at,
                success=False,
                latency=time.monotonic() - started,
                error=str(e),
            )
        latency = time.monotonic() - started
        success = 200 <= response.status_code < 300
        return HealthCheckResult(
            attempted_at=attempted_at,
            success=success,
            latency=latency,
            status_code=response.status_code,
            error=None if success else f"HTTP {response.status_code}",
        )

    async def check(
        self,
        url: str,
        max_attempts: int,
        interval: float,
        timeout_per_attempt: float,
    ) -> HealthCheckResult:
        """
        Probe ``url`` up to ``max_attempts`` times.

        Args:
            url: Endpoint to GET
            max_attempts: Upper bound on probes
            interval: Seconds to wait between probes
            timeout_per_attempt: Timeout applied to each probe

        Returns:
            The first successful result, or the last failure
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        result = None
        for attempt in range(1, max_attempts + 1):
            result = await asyncio.to_thread(self._probe, url, timeout_per_attempt)
            result.attempts = attempt
            if result.success:
                logger.info(f"✅ Health check passed for {url} (attempt {attempt}, {result.latency:.3f}s)")
                return result
            logger.info(f"⏳ Attempt {attempt}/{max_attempts}: {url} not healthy yet ({result.error})")
            if attempt < max_attempts:
                await self._sleep(interval)

        logger.warning(f"❌ Health check failed for {url} after {max_attempts} attempts")
        return result
