import asyncio
import logging
from typing import Awaitable, Callable, Optional

from checkmate.facades.replicate import (
    EmptyOutputError,
    JobFailedError,
    JobTimeoutError,
    ReplicateFacade,
    UnrecognizedStatusError,
)
from checkmate.schemas.prediction import JobSpec, JobStatus, PredictionJob
from checkmate.services.retry import RetryPolicy

log = logging.getLogger(__name__)

MAX_POLL_ATTEMPTS = 60
POLL_INTERVAL_SECONDS = 3.0


class PredictionPoller:
    """
    Drives one prediction to a terminal state.

    Worst-case wait is ``max_attempts * poll_interval``. Transport-level
    retries happen inside each submit/poll call and do not count as attempts.
    """

    def __init__(
        self,
        facade: ReplicateFacade,
        max_attempts: int = MAX_POLL_ATTEMPTS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.facade = facade
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep

    async def submit(
        self, job_spec: JobSpec, api_token: Optional[str] = None
    ) -> PredictionJob:
        return await self.retry_policy.run(
            lambda: self.facade.submit(job_spec, api_token=api_token)
        )

    async def poll(self, job_id: str, api_token: Optional[str] = None) -> PredictionJob:
        return await self.retry_policy.run(
            lambda: self.facade.poll(job_id, api_token=api_token)
        )

    async def wait(self, job_id: str, api_token: Optional[str] = None) -> str:
        for attempt in range(1, self.max_attempts + 1):
            job = await self.poll(job_id, api_token=api_token)

            if job.status == JobStatus.SUCCEEDED:
                if not job.output:
                    raise EmptyOutputError("Generation completed but no output received")
                log.info(f"Prediction {job_id} succeeded after {attempt} polls")
                return job.output[0]
            if job.status == JobStatus.FAILED:
                raise JobFailedError(job.error_message or "Image generation failed")
            if job.status not in (JobStatus.QUEUED, JobStatus.PROCESSING):
                raise UnrecognizedStatusError(f"Unknown prediction status: {job.status}")

            log.debug(f"Prediction {job_id} is {job.status} (poll {attempt}/{self.max_attempts})")
            if attempt < self.max_attempts:
                await self.sleep(self.poll_interval)

        raise JobTimeoutError("Generation timeout - please try again")

    async def submit_and_await(
        self, job_spec: JobSpec, api_token: Optional[str] = None
    ) -> str:
        job = await self.submit(job_spec, api_token=api_token)
        return await self.wait(job.id, api_token=api_token)


def make_prediction_poller(
    facade: ReplicateFacade,
    max_attempts: int,
    poll_interval: float,
    retry_policy: RetryPolicy,
) -> PredictionPoller:
    return PredictionPoller(
        facade=facade,
        max_attempts=max_attempts,
        poll_interval=poll_interval,
        retry_policy=retry_policy,
    )
