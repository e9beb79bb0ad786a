"""Prediction job models at the Prediction Service boundary."""

from enum import Enum
from typing import Optional, Any, Dict, List
from pydantic import BaseModel, Field, field_validator


class StageKind(str, Enum):
    """Kind of prediction job a stage submits."""
    PROMPT_ANALYSIS = "prompt_analysis"
    VIDEO_GENERATION = "video_generation"


class PredictionStatus(str, Enum):
    """Status of a prediction job as reported by the service."""
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PredictionStatus.SUCCEEDED, PredictionStatus.FAILED)


# Wire spellings that map onto the four statuses above
STATUS_ALIASES: Dict[str, PredictionStatus] = {
    "queued": PredictionStatus.QUEUED,
    "starting": PredictionStatus.QUEUED,
    "started": PredictionStatus.QUEUED,
    "processing": PredictionStatus.PROCESSING,
    "succeeded": PredictionStatus.SUCCEEDED,
    "failed": PredictionStatus.FAILED,
    "canceled": PredictionStatus.FAILED,
    "cancelled": PredictionStatus.FAILED,
}


class PredictionJob(BaseModel):
    """Snapshot of an external prediction job. Observed, never mutated."""

    id: str = Field(..., description="Identifier assigned by the Prediction Service")
    status: PredictionStatus = Field(..., description="Current job status")
    output: Optional[Any] = Field(default=None, description="Stage-specific payload, scalar or sequence")
    error: Optional[str] = Field(default=None, description="Error reported by the service when failed")

    model_config = {"frozen": True}

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> Any:
        """Accept the service's wire aliases (starting, canceled, ...)."""
        if isinstance(value, str):
            normalized = STATUS_ALIASES.get(value.strip().lower())
            if normalized is None:
                raise ValueError(f"Unrecognized prediction status: {value}")
            return normalized
        return value

    @field_validator("error", mode="before")
    @classmethod
    def stringify_error(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class PromptAnalysisPayload(BaseModel):
    """Input for a prompt analysis job."""

    image_url: str = Field(..., description="Public URL of the source image", min_length=1)


class VideoGenerationPayload(BaseModel):
    """Input for a video generation job."""

    image_url: str = Field(..., description="Public URL of the source image", min_length=1)
    prompt: str = Field(..., description="Motion prompt produced by prompt analysis", min_length=1)
    reference_images: List[str] = Field(default_factory=list, description="Optional reference image URLs")


def payload_model_for(stage_kind: StageKind) -> type:
    """Return the payload model accepted by a stage kind."""
    if stage_kind == StageKind.PROMPT_ANALYSIS:
        return PromptAnalysisPayload
    return VideoGenerationPayload
