"""Core data models for batch items, stage state and batch results."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, List, Set
from pydantic import BaseModel, Field, field_validator
from datetime import datetime

from config.retry_policies import PollingPolicy, create_polling_policy
from config.settings import DEFAULT_PROMPT_SUFFIX, AppConfig, PollingConfig

from .prediction_request import StageKind


class StageStatus(str, Enum):
    """Lifecycle of one stage of one batch item."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_settled(self) -> bool:
        return self in (StageStatus.COMPLETED, StageStatus.FAILED)


class BatchStatus(str, Enum):
    """Overall status of a batch run."""
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureCode(str, Enum):
    """Machine-readable cause recorded when a stage fails."""
    SUBMISSION_ERROR = "SubmissionError"
    JOB_FAILED = "JobFailed"
    POLL_TIMEOUT = "PollTimeout"
    CANCELLED = "Cancelled"
    INVALID_OUTPUT = "InvalidOutput"
    INTERNAL_ERROR = "InternalError"


# Pending -> Failed is only reachable through cancellation
ALLOWED_TRANSITIONS: Dict[StageStatus, Set[StageStatus]] = {
    StageStatus.PENDING: {StageStatus.PROCESSING, StageStatus.FAILED},
    StageStatus.PROCESSING: {StageStatus.COMPLETED, StageStatus.FAILED},
    StageStatus.COMPLETED: set(),
    StageStatus.FAILED: set(),
}


class InvalidTransitionError(ValueError):
    """A stage transition outside the transition table was attempted."""
    pass


class BatchItem(BaseModel):
    """One uploaded image's journey through prompt analysis and video generation."""

    index: int = Field(..., description="Position of the image in the batch", ge=0)
    item_id: str = Field(..., description="Stable identifier, <batch_id>-<index>")
    image_url: str = Field(..., description="Public URL of the source image", min_length=1)
    reference_images: List[str] = Field(default_factory=list, description="Extra images for video generation")

    prompt_stage: StageStatus = Field(default=StageStatus.PENDING, description="Prompt analysis lifecycle")
    video_stage: StageStatus = Field(default=StageStatus.PENDING, description="Video generation lifecycle")

    prompt_job_id: Optional[str] = Field(default=None, description="Prediction id of the prompt analysis job")
    video_job_id: Optional[str] = Field(default=None, description="Prediction id of the video generation job")

    generated_prompt: Optional[str] = Field(default=None, description="Prompt produced by phase 1")
    result_url: Optional[str] = Field(default=None, description="URL of the generated video")

    failure_code: Optional[FailureCode] = Field(default=None, description="Kind of the last stage failure")
    failure_reason: Optional[str] = Field(default=None, description="Human-readable cause of the last failure")

    updated_at: Optional[datetime] = Field(default=None, description="Time of the last transition")

    def stage_status(self, stage: StageKind) -> StageStatus:
        if stage == StageKind.PROMPT_ANALYSIS:
            return self.prompt_stage
        return self.video_stage

    def set_job_id(self, stage: StageKind, job_id: str) -> None:
        if stage == StageKind.PROMPT_ANALYSIS:
            self.prompt_job_id = job_id
        else:
            self.video_job_id = job_id

    @property
    def video_eligible(self) -> bool:
        """Whether the video stage may leave Pending."""
        return self.prompt_stage == StageStatus.COMPLETED and bool(self.generated_prompt)

    @property
    def video_skipped(self) -> bool:
        """Video stage will never run because prompt analysis did not complete."""
        return self.prompt_stage == StageStatus.FAILED and self.video_stage == StageStatus.PENDING

    def transition(
        self,
        stage: StageKind,
        new_status: StageStatus,
        *,
        at: Optional[datetime] = None,
        value: Optional[str] = None,
        failure_code: Optional[FailureCode] = None,
        failure_reason: Optional[str] = None
    ) -> None:
        """Move one stage to a new status, enforcing the transition table.

        Args:
            stage: Stage being transitioned
            new_status: Target status
            at: Timestamp of the transition
            value: Generated prompt or result URL, required for Completed
            failure_code: Kind of failure, required for Failed
            failure_reason: Human-readable failure cause

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        current = self.stage_status(stage)
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Item {self.item_id}: {stage.value} cannot move from {current.value} to {new_status.value}"
            )

        if (current == StageStatus.PENDING and new_status == StageStatus.FAILED
                and failure_code != FailureCode.CANCELLED):
            raise InvalidTransitionError(
                f"Item {self.item_id}: {stage.value} can only fail from pending when cancelled"
            )

        if stage == StageKind.VIDEO_GENERATION and not self.video_eligible:
            raise InvalidTransitionError(
                f"Item {self.item_id}: video generation requires a completed prompt"
            )

        if new_status == StageStatus.COMPLETED and not value:
            raise InvalidTransitionError(
                f"Item {self.item_id}: {stage.value} cannot complete without a result"
            )

        if new_status == StageStatus.FAILED and failure_code is None:
            raise InvalidTransitionError(
                f"Item {self.item_id}: {stage.value} cannot fail without a failure code"
            )

        if stage == StageKind.PROMPT_ANALYSIS:
            self.prompt_stage = new_status
            if new_status == StageStatus.COMPLETED:
                self.generated_prompt = value
        else:
            self.video_stage = new_status
            if new_status == StageStatus.COMPLETED:
                self.result_url = value

        if new_status == StageStatus.FAILED:
            self.failure_code = failure_code
            self.failure_reason = failure_reason or failure_code.value

        if at is not None:
            self.updated_at = at

    def snapshot(self) -> "BatchItem":
        """Read-only copy handed to observers."""
        return self.model_copy(deep=True)


@dataclass(frozen=True)
class StageOutcome:
    """Result of running one stage for one item."""
    succeeded: bool
    value: Optional[str] = None
    job_id: Optional[str] = None
    failure_code: Optional[FailureCode] = None
    reason: Optional[str] = None

    @classmethod
    def completed(cls, value: str, job_id: Optional[str] = None) -> "StageOutcome":
        return cls(succeeded=True, value=value, job_id=job_id)

    @classmethod
    def failed(
        cls,
        failure_code: FailureCode,
        reason: str,
        job_id: Optional[str] = None
    ) -> "StageOutcome":
        return cls(succeeded=False, failure_code=failure_code, reason=reason, job_id=job_id)


class ItemStatusEvent(BaseModel):
    """Status change of one item's stage, delivered to observers."""

    batch_id: str = Field(..., description="Batch the item belongs to")
    index: int = Field(..., description="Position of the item in the batch")
    stage: StageKind = Field(..., description="Stage that changed")
    status: StageStatus = Field(..., description="New status of the stage")
    item: BatchItem = Field(..., description="Snapshot of the item after the change")
    occurred_at: datetime = Field(..., description="Time of the change")


class StageCounts(BaseModel):
    """Per-status item counts for one stage."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


class BatchProgress(BaseModel):
    """Aggregated progress of a batch across both stages."""

    prompts: StageCounts = Field(default_factory=StageCounts)
    videos: StageCounts = Field(default_factory=StageCounts)
    percent: int = Field(default=0, ge=0, le=100, description="Settled stages over all stages")

    @classmethod
    def from_items(cls, items: List[BatchItem]) -> "BatchProgress":
        prompts = StageCounts(total=len(items))
        videos = StageCounts(total=len(items))
        settled = 0
        for item in items:
            for counts, status in ((prompts, item.prompt_stage), (videos, item.video_stage)):
                setattr(counts, status.value, getattr(counts, status.value) + 1)
                if status.is_settled:
                    settled += 1
            if item.video_skipped:
                settled += 1

        percent = int(settled * 100 / (2 * len(items))) if items else 0
        return cls(prompts=prompts, videos=videos, percent=percent)


class BatchResult(BaseModel):
    """Snapshot of a batch: every item's final (or current) state, in input order."""

    batch_id: str = Field(..., description="Batch identifier")
    status: BatchStatus = Field(..., description="Overall batch status")
    items: List[BatchItem] = Field(default_factory=list, description="Items in input order")
    progress: BatchProgress = Field(default_factory=BatchProgress, description="Aggregated counts")
    cancelled: bool = Field(default=False, description="Whether cancellation was requested")
    started_at: Optional[datetime] = Field(default=None, description="Batch start time")
    completed_at: Optional[datetime] = Field(default=None, description="Batch completion time")

    @classmethod
    def from_items(
        cls,
        batch_id: str,
        items: List[BatchItem],
        *,
        running: bool = False,
        cancelled: bool = False,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None
    ) -> "BatchResult":
        snapshots = [item.snapshot() for item in items]
        return cls(
            batch_id=batch_id,
            status=cls._derive_status(snapshots, running=running, cancelled=cancelled),
            items=snapshots,
            progress=BatchProgress.from_items(snapshots),
            cancelled=cancelled,
            started_at=started_at,
            completed_at=completed_at
        )

    @staticmethod
    def _derive_status(items: List[BatchItem], *, running: bool, cancelled: bool) -> BatchStatus:
        if running:
            return BatchStatus.RUNNING
        if cancelled:
            return BatchStatus.CANCELLED
        videos_done = sum(1 for item in items if item.video_stage == StageStatus.COMPLETED)
        if items and videos_done == len(items):
            return BatchStatus.COMPLETED
        if videos_done:
            return BatchStatus.PARTIALLY_COMPLETED
        return BatchStatus.FAILED

    @property
    def is_finished(self) -> bool:
        return self.status != BatchStatus.RUNNING

    def to_summary(self) -> Dict[str, Any]:
        """Compact per-item view: index, both stage statuses and result."""
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "percent": self.progress.percent,
            "prompts": self.progress.prompts.model_dump(),
            "videos": self.progress.videos.model_dump(),
            "items": [
                {
                    "index": item.index,
                    "prompt": item.prompt_stage.value,
                    "video": item.video_stage.value,
                    "result_url": item.result_url,
                    "failure_reason": item.failure_reason
                }
                for item in self.items
            ]
        }


class BatchRequest(BaseModel):
    """Input for starting a batch over HTTP or as a Temporal workflow."""

    image_urls: List[str] = Field(..., description="Source image URLs in processing order", min_length=1)
    reference_images: List[str] = Field(default_factory=list, description="Reference images for video generation")
    batch_id: Optional[str] = Field(default=None, description="Caller-chosen batch identifier")

    @field_validator("image_urls")
    @classmethod
    def validate_image_urls(cls, value: List[str]) -> List[str]:
        if any(not url or not url.strip() for url in value):
            raise ValueError("Image URLs cannot be empty")
        return [url.strip() for url in value]


class PollingSettings(BaseModel):
    """Serializable polling budget, carried into the durable workflow."""

    interval_seconds: float = Field(default=3.0, description="Delay between fetches", ge=0)
    max_attempts: int = Field(default=120, description="Fetch budget per job", ge=1)
    backoff_coefficient: float = Field(default=1.0, description="Delay multiplier per attempt", ge=1.0)
    max_interval_seconds: Optional[float] = Field(default=None, description="Cap on the delay")

    @classmethod
    def from_polling_config(cls, polling: PollingConfig) -> "PollingSettings":
        return cls(
            interval_seconds=polling.interval,
            max_attempts=polling.max_attempts,
            backoff_coefficient=polling.backoff_coefficient,
            max_interval_seconds=polling.max_interval
        )

    def to_policy(self) -> PollingPolicy:
        return create_polling_policy(
            interval_seconds=self.interval_seconds,
            max_attempts=self.max_attempts,
            backoff_coefficient=self.backoff_coefficient,
            maximum_interval_seconds=self.max_interval_seconds
        )


class BatchWorkflowInput(BaseModel):
    """Input of VideoMakerWorkflow: the batch plus every setting the run depends on.

    Settings are resolved by the submitter so that workflow replay never
    reads the environment.
    """

    batch: BatchRequest = Field(..., description="Images to process")
    prompt_polling: PollingSettings = Field(default_factory=PollingSettings)
    video_polling: PollingSettings = Field(default_factory=PollingSettings)
    max_batch_size: int = Field(default=10, ge=1)
    max_concurrency: int = Field(default=1, ge=1)
    prompt_suffix: str = Field(default=DEFAULT_PROMPT_SUFFIX, description="Motion-only constraint")
    start_timeout_seconds: int = Field(default=60, ge=1, description="start_prediction timeout")
    fetch_timeout_seconds: int = Field(default=30, ge=1, description="fetch_prediction timeout")

    @classmethod
    def from_config(cls, batch: BatchRequest, app_config: AppConfig) -> "BatchWorkflowInput":
        return cls(
            batch=batch,
            prompt_polling=PollingSettings.from_polling_config(app_config.prompt_polling),
            video_polling=PollingSettings.from_polling_config(app_config.video_polling),
            max_batch_size=app_config.batch.max_batch_size,
            max_concurrency=app_config.batch.max_concurrency,
            prompt_suffix=app_config.batch.prompt_suffix,
            start_timeout_seconds=app_config.temporal.start_prediction_timeout,
            fetch_timeout_seconds=app_config.temporal.fetch_prediction_timeout
        )
