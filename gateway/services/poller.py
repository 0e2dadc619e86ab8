"""
Job Poller - Bounded fixed-interval polling of an asynchronous provider job.
"""

import asyncio
from collections.abc import Awaitable, Callable

from gateway.models.domain import JobStatus, PollResult
from gateway.observability.logging import get_logger
from gateway.observability.metrics import metrics

logger = get_logger(__name__)

StatusFetcher = Callable[[str], Awaitable[JobStatus]]


class JobPoller:
    """
    Polls a job until it completes, fails or the attempt budget runs out.

    Usage:
        poller = JobPoller(provider.get_status, interval=2.0, max_attempts=60)
        result = await poller.run(job_id)
        if result.timed_out:
            ...

    Errors raised by the status fetcher propagate to the caller.
    """

    def __init__(
        self,
        fetch_status: StatusFetcher,
        interval: float,
        max_attempts: int,
        provider: str = "provider",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be positive: {max_attempts}")
        self.fetch_status = fetch_status
        self.interval = interval
        self.max_attempts = max_attempts
        self.provider = provider
        self._sleep = sleep

    async def run(self, job_id: str) -> PollResult:
        for attempt in range(1, self.max_attempts + 1):
            status = await self.fetch_status(job_id)
            metrics.record_poll_attempt(self.provider)

            if status.state == "completed":
                logger.info(
                    "provider_job_completed", provider=self.provider, job_id=job_id, attempts=attempt
                )
                return PollResult(success=True, attempts=attempt, output=status.output)

            if status.state == "failed":
                logger.warning(
                    "provider_job_failed",
                    provider=self.provider,
                    job_id=job_id,
                    attempts=attempt,
                    error=status.error,
                )
                return PollResult(
                    success=False,
                    attempts=attempt,
                    error=status.error or "Generation failed",
                )

            logger.debug(
                "provider_job_pending", provider=self.provider, job_id=job_id, attempt=attempt
            )
            await self._sleep(self.interval)

        logger.warning(
            "provider_job_timed_out",
            provider=self.provider,
            job_id=job_id,
            attempts=self.max_attempts,
            waited_seconds=self.interval * self.max_attempts,
        )
        return PollResult(
            success=False,
            attempts=self.max_attempts,
            error="Generation timed out",
            timed_out=True,
        )
