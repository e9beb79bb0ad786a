"""Polling loop for prediction jobs."""

import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from config.retry_policies import (
    DEFAULT_POLLING_POLICY,
    JobFailed,
    PollTimeout,
    PollingPolicy,
    TransientError
)
from models.prediction_request import PredictionJob, PredictionStatus, StageKind
from workflows.cancellation import CancellationToken, interruptible_sleep


Sleeper = Callable[[float, CancellationToken], Awaitable[None]]
LoggerLike = Union[logging.Logger, logging.LoggerAdapter]


class PredictionGateway(Protocol):
    """What the pipeline needs from the Prediction Service."""

    async def start(self, stage_kind: StageKind, payload: Any) -> str:
        ...

    async def fetch(self, job_id: str) -> PredictionJob:
        ...


class Poller:
    """Fetches a job until it is terminal or the attempt budget is spent."""

    def __init__(
        self,
        gateway: PredictionGateway,
        sleeper: Optional[Sleeper] = None,
        logger: Optional[LoggerLike] = None
    ):
        self.gateway = gateway
        self.sleeper = sleeper or interruptible_sleep
        self.logger = logger or logging.getLogger(__name__)

    async def poll_until_done(
        self,
        job_id: str,
        policy: PollingPolicy = DEFAULT_POLLING_POLICY,
        cancellation: Optional[CancellationToken] = None
    ) -> PredictionJob:
        """Poll a prediction job to a terminal state.

        Args:
            job_id: Prediction identifier
            policy: Interval, attempt budget and backoff
            cancellation: Batch cancellation signal

        Returns:
            PredictionJob: The succeeded job

        Raises:
            JobFailed: The service reported the job as failed
            PollTimeout: The attempt budget ran out
            Cancelled: Cancellation was observed
        """
        cancellation = cancellation or CancellationToken()

        for attempt in range(1, policy.max_attempts + 1):
            cancellation.raise_if_cancelled()

            try:
                job = await self.gateway.fetch(job_id)
            except TransientError as e:
                self.logger.warning(
                    f"Poll attempt {attempt}/{policy.max_attempts} for {job_id} failed: {e}"
                )
            else:
                if job.status == PredictionStatus.SUCCEEDED:
                    self.logger.info(f"Prediction {job_id} succeeded after {attempt} attempt(s)")
                    return job
                if job.status == PredictionStatus.FAILED:
                    self.logger.warning(f"Prediction {job_id} failed: {job.error}")
                    raise JobFailed(job_id, job.error)
                self.logger.debug(
                    f"Prediction {job_id} is {job.status.value} (attempt {attempt}/{policy.max_attempts})"
                )

            await self.sleeper(policy.delay_for(attempt), cancellation)

        cancellation.raise_if_cancelled()
        self.logger.error(f"Prediction {job_id} timed out after {policy.max_attempts} attempts")
        raise PollTimeout(job_id, policy.max_attempts)
