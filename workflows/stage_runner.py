"""Runs one pipeline stage (prompt analysis or video generation) for one item."""

import logging
from typing import Any, Optional, Union

from config.retry_policies import (
    DEFAULT_POLLING_POLICY,
    Cancelled,
    InvalidOutputError,
    JobFailed,
    PollTimeout,
    PollingPolicy,
    SubmissionError
)
from config.settings import DEFAULT_PROMPT_SUFFIX
from models.core_models import BatchItem, FailureCode, StageOutcome
from models.prediction_request import (
    StageKind,
    PromptAnalysisPayload,
    VideoGenerationPayload
)
from workflows.cancellation import CancellationToken
from workflows.poller import LoggerLike, Poller, PredictionGateway


def first_or_scalar(output: Any) -> str:
    """Normalize a prediction output to a single non-empty string.

    The service may return either a scalar or a sequence; for a sequence the
    first element is used whatever its length.

    Raises:
        InvalidOutputError: If there is no usable value
    """
    if isinstance(output, (list, tuple)):
        if not output:
            raise InvalidOutputError("Prediction returned an empty output")
        output = output[0]

    if not isinstance(output, str) or not output.strip():
        raise InvalidOutputError(f"Prediction returned no usable output: {output!r}")

    return output.strip()


def build_video_prompt(analysis: str, suffix: str = DEFAULT_PROMPT_SUFFIX) -> str:
    """Append the motion-only constraint to a prompt analysis result."""
    analysis = analysis.strip()
    if analysis and analysis[-1] not in ".!?":
        analysis += "."
    return f"{analysis} {suffix}".strip()


class StageRunner:
    """Starts, polls and interprets one stage's prediction for one item.

    ``run_stage`` never raises for stage-level failures: every error path is
    returned as a failed StageOutcome.
    """

    def __init__(
        self,
        gateway: PredictionGateway,
        poller: Optional[Poller] = None,
        prompt_policy: PollingPolicy = DEFAULT_POLLING_POLICY,
        video_policy: PollingPolicy = DEFAULT_POLLING_POLICY,
        prompt_suffix: str = DEFAULT_PROMPT_SUFFIX,
        logger: Optional[LoggerLike] = None
    ):
        self.gateway = gateway
        self.logger = logger or logging.getLogger(__name__)
        self.poller = poller or Poller(gateway, logger=self.logger)
        self.prompt_policy = prompt_policy
        self.video_policy = video_policy
        self.prompt_suffix = prompt_suffix

    def policy_for(self, stage_kind: StageKind) -> PollingPolicy:
        if stage_kind == StageKind.PROMPT_ANALYSIS:
            return self.prompt_policy
        return self.video_policy

    @staticmethod
    def build_payload(
        item: BatchItem,
        stage_kind: StageKind
    ) -> Union[PromptAnalysisPayload, VideoGenerationPayload]:
        if stage_kind == StageKind.PROMPT_ANALYSIS:
            return PromptAnalysisPayload(image_url=item.image_url)
        return VideoGenerationPayload(
            image_url=item.image_url,
            prompt=item.generated_prompt or "",
            reference_images=list(item.reference_images)
        )

    async def run_stage(
        self,
        item: BatchItem,
        stage_kind: StageKind,
        cancellation: Optional[CancellationToken] = None
    ) -> StageOutcome:
        """Run one stage for one item.

        Args:
            item: Item being processed; its job id field is set once the job starts
            stage_kind: Stage to run
            cancellation: Batch cancellation signal

        Returns:
            StageOutcome: Completed with the generated prompt / video URL, or failed
        """
        cancellation = cancellation or CancellationToken()
        job_id: Optional[str] = None

        try:
            cancellation.raise_if_cancelled()
            payload = self.build_payload(item, stage_kind)

            try:
                job_id = await self.gateway.start(stage_kind, payload)
            except SubmissionError as e:
                self.logger.error(f"Item {item.item_id}: {stage_kind.value} submission rejected: {e}")
                return StageOutcome.failed(FailureCode.SUBMISSION_ERROR, str(e))

            item.set_job_id(stage_kind, job_id)
            self.logger.info(f"Item {item.item_id}: {stage_kind.value} job {job_id} started")

            job = await self.poller.poll_until_done(job_id, self.policy_for(stage_kind), cancellation)
            value = first_or_scalar(job.output)
            if stage_kind == StageKind.PROMPT_ANALYSIS:
                value = build_video_prompt(value, self.prompt_suffix)

            # A result that arrives after cancellation is discarded
            cancellation.raise_if_cancelled()
            return StageOutcome.completed(value, job_id=job_id)

        except JobFailed as e:
            return StageOutcome.failed(FailureCode.JOB_FAILED, str(e), job_id=job_id)
        except PollTimeout as e:
            return StageOutcome.failed(FailureCode.POLL_TIMEOUT, str(e), job_id=job_id)
        except Cancelled as e:
            self.logger.info(f"Item {item.item_id}: {stage_kind.value} cancelled")
            return StageOutcome.failed(FailureCode.CANCELLED, e.reason, job_id=job_id)
        except InvalidOutputError as e:
            self.logger.error(f"Item {item.item_id}: {stage_kind.value} output unusable: {e}")
            return StageOutcome.failed(FailureCode.INVALID_OUTPUT, str(e), job_id=job_id)
        except Exception as e:
            self.logger.exception(f"Item {item.item_id}: unexpected error in {stage_kind.value}")
            return StageOutcome.failed(FailureCode.INTERNAL_ERROR, f"Unexpected error: {e}", job_id=job_id)
