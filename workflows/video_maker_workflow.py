"""Durable two-phase batch workflow: the batch orchestrator run on Temporal."""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Type

from temporalio import workflow
from temporalio.exceptions import ActivityError, ApplicationError

with workflow.unsafe.imports_passed_through():
    from activities.prediction_activities import fetch_prediction, start_prediction
    from config.retry_policies import (
        PREDICTION_ERROR_TYPES,
        SubmissionError,
        TransientError,
        ValidationError,
        get_retry_policy
    )
    from models.core_models import BatchItem, BatchResult, BatchWorkflowInput
    from models.prediction_request import PredictionJob, StageKind
    from workflows.batch_orchestrator import BatchOrchestrator
    from workflows.cancellation import CancellationToken
    from workflows.poller import Poller
    from workflows.stage_runner import StageRunner


def prediction_error_from(error: ActivityError, default: Type[Exception]) -> Exception:
    """Map a failed prediction activity back to the pipeline's error taxonomy."""
    cause = getattr(error, "cause", None)
    if isinstance(cause, ApplicationError):
        error_type = PREDICTION_ERROR_TYPES.get(cause.type or "", default)
        return error_type(cause.message)
    return default(str(cause or error))


class TemporalPredictionGateway:
    """Prediction gateway whose calls run as Temporal activities."""

    def __init__(
        self,
        start_timeout: timedelta = timedelta(seconds=60),
        fetch_timeout: timedelta = timedelta(seconds=30)
    ):
        self.start_timeout = start_timeout
        self.fetch_timeout = fetch_timeout

    async def start(self, stage_kind: StageKind, payload: Any) -> str:
        try:
            return await workflow.execute_activity(
                start_prediction,
                args=[StageKind(stage_kind).value, payload.model_dump()],
                start_to_close_timeout=self.start_timeout,
                retry_policy=get_retry_policy("start_prediction")
            )
        except ActivityError as e:
            raise prediction_error_from(e, SubmissionError)

    async def fetch(self, job_id: str) -> PredictionJob:
        try:
            data = await workflow.execute_activity(
                fetch_prediction,
                job_id,
                start_to_close_timeout=self.fetch_timeout,
                retry_policy=get_retry_policy("fetch_prediction")
            )
        except ActivityError as e:
            raise prediction_error_from(e, TransientError)
        return PredictionJob.model_validate(data)


async def workflow_sleep(seconds: float, cancellation: CancellationToken) -> None:
    """Durable timer that a cancel_batch signal cuts short."""
    if seconds <= 0 or cancellation.is_cancelled:
        return
    try:
        await workflow.wait_condition(lambda: cancellation.is_cancelled, timeout=seconds)
    except asyncio.TimeoutError:
        pass


@workflow.defn
class VideoMakerWorkflow:
    """Runs one batch: prompt analysis for every image, then video generation."""

    def __init__(self):
        self.batch_id: str = ""
        self.items: List[BatchItem] = []
        self.cancellation = CancellationToken()
        self.started_at: Optional[datetime] = None
        self.result: Optional[BatchResult] = None

    @workflow.run
    async def run(self, workflow_input: BatchWorkflowInput) -> BatchResult:
        """Main workflow execution.

        Args:
            workflow_input: Batch request plus polling and batch settings

        Returns:
            BatchResult: Final state of every item

        Raises:
            ApplicationError: ValidationError if the batch is rejected
        """
        gateway = TemporalPredictionGateway(
            start_timeout=timedelta(seconds=workflow_input.start_timeout_seconds),
            fetch_timeout=timedelta(seconds=workflow_input.fetch_timeout_seconds)
        )
        runner = StageRunner(
            gateway,
            poller=Poller(gateway, sleeper=workflow_sleep, logger=workflow.logger),
            prompt_policy=workflow_input.prompt_polling.to_policy(),
            video_policy=workflow_input.video_polling.to_policy(),
            prompt_suffix=workflow_input.prompt_suffix,
            logger=workflow.logger
        )
        orchestrator = BatchOrchestrator(
            runner,
            max_batch_size=workflow_input.max_batch_size,
            max_concurrency=workflow_input.max_concurrency,
            clock=workflow.now,
            logger=workflow.logger
        )

        request = workflow_input.batch
        try:
            self.batch_id, self.items = orchestrator.prepare(
                request.image_urls,
                batch_id=request.batch_id or workflow.info().workflow_id,
                reference_images=request.reference_images
            )
        except ValidationError as e:
            workflow.logger.error(f"Batch rejected: {e}")
            raise ApplicationError(str(e), type="ValidationError", non_retryable=True)

        self.started_at = workflow.now()
        self.result = await orchestrator.execute(
            self.batch_id,
            self.items,
            cancellation=self.cancellation
        )
        return self.result

    @workflow.signal
    def cancel_batch(self, reason: str = "Batch cancelled") -> None:
        """Signal to cancel the batch cooperatively."""
        workflow.logger.info(f"Cancellation requested for batch {self.batch_id}: {reason}")
        self.cancellation.cancel(reason)

    @workflow.query
    def get_progress(self) -> Dict[str, Any]:
        """Query per-stage counts and per-item status of the batch."""
        if self.result is not None:
            return self.result.to_summary()
        snapshot = BatchResult.from_items(
            self.batch_id,
            self.items,
            running=True,
            cancelled=self.cancellation.is_cancelled,
            started_at=self.started_at
        )
        return snapshot.to_summary()

    @workflow.query
    def get_result(self) -> Optional[BatchResult]:
        """Query the final result, None while the batch is running."""
        return self.result
