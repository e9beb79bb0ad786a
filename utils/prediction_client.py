#!/usr/bin/env python3
"""
Prediction Client

Thin request/response wrapper around the external Prediction Service. It
starts prompt analysis and video generation jobs and fetches job snapshots.
Two transports are provided:

- PredictionClient talks to the application's gateway endpoints
  (start-prompt-analysis, start-video-generation, get-prediction).
- ReplicatePredictionClient talks to the predictions API directly.
"""

import logging
from typing import Dict, Any, Optional, Tuple, Union

import httpx
from pydantic import BaseModel, ValidationError as PydanticValidationError

from config.retry_policies import SubmissionError, TransientError
from config.settings import PredictionServiceConfig, REPLICATE_API_BASE_URL
from models.prediction_request import (
    StageKind,
    PredictionJob,
    PromptAnalysisPayload,
    VideoGenerationPayload,
    payload_model_for
)


logger = logging.getLogger(__name__)

USER_AGENT = "Video-Maker-Worker/1.0"

StagePayload = Union[PromptAnalysisPayload, VideoGenerationPayload, Dict[str, Any]]


class PredictionClient:
    """Client for the application's prediction gateway endpoints."""

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self._http_client = http_client
        self._owns_http_client = http_client is None

    async def __aenter__(self) -> "PredictionClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    def get_http_client(self) -> httpx.AsyncClient:
        """Get or create the underlying HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._http_client

    async def close(self):
        """Close the HTTP client if this instance created it."""
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT
        }
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _build_start_request(self, stage_kind: StageKind, payload: BaseModel) -> Tuple[str, Dict[str, Any]]:
        """Return the path and JSON body that start a job of the given kind."""
        if stage_kind == StageKind.PROMPT_ANALYSIS:
            return "start-prompt-analysis", {"imageUrl": payload.image_url}

        body: Dict[str, Any] = {
            "imageUrl": payload.image_url,
            "prompt": payload.prompt
        }
        if payload.reference_images:
            body["referenceImages"] = list(payload.reference_images)
        return "start-video-generation", body

    def _build_fetch_request(self, job_id: str) -> Tuple[str, Dict[str, str]]:
        """Return the path and query parameters that fetch a job."""
        return "get-prediction", {"id": job_id}

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text
        if isinstance(data, dict):
            return str(data.get("detail") or data.get("error") or data)
        return str(data)

    async def start(self, stage_kind: StageKind, payload: StagePayload) -> str:
        """Submit one asynchronous prediction job.

        Args:
            stage_kind: Which stage the job belongs to
            payload: Stage-specific input

        Returns:
            str: Job identifier assigned by the Prediction Service

        Raises:
            SubmissionError: If the service rejects or cannot accept the request
        """
        stage_kind = StageKind(stage_kind)
        try:
            payload = payload_model_for(stage_kind).model_validate(
                payload.model_dump() if isinstance(payload, BaseModel) else payload
            )
        except PydanticValidationError as e:
            raise SubmissionError(f"Invalid {stage_kind.value} payload: {e}")

        path, body = self._build_start_request(stage_kind, payload)
        logger.info(f"Starting {stage_kind.value} prediction for {payload.image_url}")

        try:
            response = await self.get_http_client().post(
                self._url(path),
                json=body,
                headers=self._headers()
            )
        except httpx.HTTPError as e:
            logger.error(f"Prediction service unreachable while starting {stage_kind.value}: {e}")
            raise SubmissionError(f"Prediction service unreachable: {e}")

        if response.status_code >= 400:
            detail = self._error_detail(response)
            logger.error(f"Failed to start {stage_kind.value} ({response.status_code}): {detail}")
            raise SubmissionError(
                f"Failed to start {stage_kind.value}: {response.status_code} - {detail}",
                status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError:
            raise SubmissionError(f"Invalid response starting {stage_kind.value}: {response.text}")

        job_id = data.get("id") if isinstance(data, dict) else None
        if not job_id:
            raise SubmissionError(f"No job ID returned when starting {stage_kind.value}")

        logger.info(f"{stage_kind.value} prediction started. Job ID: {job_id}")
        return str(job_id)

    async def fetch(self, job_id: str) -> PredictionJob:
        """Fetch the current snapshot of a job.

        Args:
            job_id: Identifier returned by start()

        Returns:
            PredictionJob: Current status, output and error

        Raises:
            TransientError: On network/service errors or unreadable responses
        """
        path, params = self._build_fetch_request(job_id)

        try:
            response = await self.get_http_client().get(
                self._url(path),
                params=params,
                headers=self._headers()
            )
        except httpx.HTTPError as e:
            raise TransientError(f"Network error fetching prediction {job_id}: {e}")

        if response.status_code >= 400:
            raise TransientError(
                f"Status check failed for {job_id}: {response.status_code} - {self._error_detail(response)}"
            )

        try:
            data = response.json()
        except ValueError:
            raise TransientError(f"Invalid JSON fetching prediction {job_id}")

        if not isinstance(data, dict):
            raise TransientError(f"Unexpected response fetching prediction {job_id}: {data!r}")

        try:
            return PredictionJob(
                id=str(data.get("id") or job_id),
                status=data.get("status"),
                output=data.get("output"),
                error=data.get("error")
            )
        except PydanticValidationError as e:
            raise TransientError(f"Unreadable prediction {job_id}: {e}")


class ReplicatePredictionClient(PredictionClient):
    """Client that talks to the predictions API directly."""

    def __init__(
        self,
        base_url: str = REPLICATE_API_BASE_URL,
        api_token: Optional[str] = None,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
        prompt_model_version: str = PredictionServiceConfig.prompt_model_version,
        video_model_version: str = PredictionServiceConfig.video_model_version,
        video_duration: int = PredictionServiceConfig.video_duration
    ):
        super().__init__(base_url, api_token=api_token, timeout=timeout, http_client=http_client)
        self.prompt_model_version = prompt_model_version
        self.video_model_version = video_model_version
        self.video_duration = video_duration

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT
        }
        if self.api_token:
            headers["Authorization"] = f"Token {self.api_token}"
        return headers

    def _build_start_request(self, stage_kind: StageKind, payload: BaseModel) -> Tuple[str, Dict[str, Any]]:
        if stage_kind == StageKind.PROMPT_ANALYSIS:
            return "predictions", {
                "version": self.prompt_model_version,
                "input": {"image": payload.image_url}
            }

        model_input: Dict[str, Any] = {
            "image": payload.image_url,
            "prompt": payload.prompt,
            "duration": self.video_duration
        }
        if payload.reference_images:
            model_input["reference_images"] = list(payload.reference_images)
        return "predictions", {
            "version": self.video_model_version,
            "input": model_input
        }

    def _build_fetch_request(self, job_id: str) -> Tuple[str, Dict[str, str]]:
        return f"predictions/{job_id}", {}


def create_prediction_client(
    prediction_config: PredictionServiceConfig,
    http_client: Optional[httpx.AsyncClient] = None
) -> PredictionClient:
    """Build the client for the configured backend."""
    if prediction_config.backend == "replicate":
        return ReplicatePredictionClient(
            base_url=prediction_config.base_url,
            api_token=prediction_config.api_token,
            timeout=prediction_config.request_timeout,
            http_client=http_client,
            prompt_model_version=prediction_config.prompt_model_version,
            video_model_version=prediction_config.video_model_version,
            video_duration=prediction_config.video_duration
        )
    if prediction_config.backend != "gateway":
        raise ValueError(f"Unknown prediction backend: {prediction_config.backend}")
    return PredictionClient(
        base_url=prediction_config.base_url,
        api_token=prediction_config.api_token,
        timeout=prediction_config.request_timeout,
        http_client=http_client
    )
