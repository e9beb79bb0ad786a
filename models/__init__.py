"""Data models for the video maker pipeline."""

from .prediction_request import (
    StageKind,
    PredictionStatus,
    PredictionJob,
    PromptAnalysisPayload,
    VideoGenerationPayload
)
from .core_models import (
    StageStatus,
    BatchStatus,
    FailureCode,
    InvalidTransitionError,
    BatchItem,
    StageOutcome,
    ItemStatusEvent,
    StageCounts,
    BatchProgress,
    BatchResult,
    BatchRequest,
    PollingSettings,
    BatchWorkflowInput
)

__all__ = [
    "StageKind",
    "PredictionStatus",
    "PredictionJob",
    "PromptAnalysisPayload",
    "VideoGenerationPayload",
    "StageStatus",
    "BatchStatus",
    "FailureCode",
    "InvalidTransitionError",
    "BatchItem",
    "StageOutcome",
    "ItemStatusEvent",
    "StageCounts",
    "BatchProgress",
    "BatchResult",
    "BatchRequest",
    "PollingSettings",
    "BatchWorkflowInput"
]
