"""Prediction Service activities for Temporal workflows."""

from typing import Any, Dict

from temporalio import activity
from temporalio.exceptions import ApplicationError

from config.retry_policies import SubmissionError, TransientError
from config.settings import get_config
from models.prediction_request import StageKind
from utils.prediction_client import create_prediction_client


@activity.defn
async def start_prediction(stage_kind: str, payload: Dict[str, Any]) -> str:
    """Submit a prediction job for one stage.

    Args:
        stage_kind: ``prompt_analysis`` or ``video_generation``
        payload: Stage payload (image_url, prompt, reference_images)

    Returns:
        str: Job identifier
    """
    activity.logger.info(f"Starting {stage_kind} prediction for {payload.get('image_url')}")

    try:
        kind = StageKind(stage_kind)
    except ValueError:
        raise ApplicationError(
            f"Unknown stage kind: {stage_kind}",
            type="SubmissionError",
            non_retryable=True
        )

    try:
        async with create_prediction_client(get_config().prediction) as client:
            job_id = await client.start(kind, payload)
    except SubmissionError as e:
        activity.logger.error(f"Submission rejected for {stage_kind}: {e}")
        raise ApplicationError(str(e), type="SubmissionError", non_retryable=True)

    activity.logger.info(f"{stage_kind} prediction started: {job_id}")
    return job_id


@activity.defn
async def fetch_prediction(job_id: str) -> Dict[str, Any]:
    """Fetch one snapshot of a prediction job.

    Returns:
        Dict with id, status, output and error
    """
    try:
        async with create_prediction_client(get_config().prediction) as client:
            job = await client.fetch(job_id)
    except TransientError as e:
        activity.logger.warning(f"Fetch failed for {job_id}: {e}")
        raise ApplicationError(str(e), type="TransientError", non_retryable=True)

    activity.logger.debug(f"Prediction {job_id} is {job.status.value}")
    return job.model_dump(mode="json")
