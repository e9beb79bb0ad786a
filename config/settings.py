"""Configuration settings for the video maker pipeline."""

from typing import Dict, Any, Optional, List
from dataclasses import dataclass
from pathlib import Path
import logging
import os
import sys

from .retry_policies import PollingPolicy, create_polling_policy


REPLICATE_API_BASE_URL = "https://api.replicate.com/v1"

DEFAULT_PROMPT_SUFFIX = (
    "Animate this image with a smooth, subtle camera motion only. "
    "Do not add, remove or change any objects, and do not alter the geometry, "
    "layout or proportions of anything in the scene. "
    "Keep the camera movement within the bounds of the original image."
)


@dataclass
class PredictionServiceConfig:
    """Prediction Service connection settings."""
    # "gateway" talks to the application's proxy endpoints,
    # "replicate" talks to the prediction API directly
    backend: str = "gateway"
    base_url: str = "http://localhost:3000/api"
    api_token: Optional[str] = None
    request_timeout: float = 30.0  # seconds

    # Models used by the replicate backend
    prompt_model_version: str = (
        "methexis-inc/img2prompt:"
        "50adaf2d3ad20a6f911a8a9e3ccf777b263b8599fbd2c8fc26e8888f8a0edbb5f"
    )
    video_model_version: str = "kwaivgi/kling-v2.5-turbo-pro"
    video_duration: int = 5  # seconds


@dataclass
class PollingConfig:
    """Polling budget for one stage."""
    interval: float = 3.0  # seconds
    max_attempts: int = 120
    backoff_coefficient: float = 1.0
    max_interval: Optional[float] = None  # seconds

    def to_policy(self) -> PollingPolicy:
        return create_polling_policy(
            interval_seconds=self.interval,
            max_attempts=self.max_attempts,
            backoff_coefficient=self.backoff_coefficient,
            maximum_interval_seconds=self.max_interval
        )


@dataclass
class BatchConfig:
    """Batch orchestration settings."""
    max_batch_size: int = 10
    max_concurrency: int = 1
    prompt_suffix: str = DEFAULT_PROMPT_SUFFIX


@dataclass
class TemporalConfig:
    """Temporal server configuration."""
    host: str = "localhost:7233"
    namespace: str = "default"
    task_queue: str = "video-maker-queue"

    # Workflow timeout (in hours)
    batch_workflow_timeout: int = 6

    # Activity timeouts (in seconds)
    start_prediction_timeout: int = 60
    fetch_prediction_timeout: int = 30

    # Worker limits
    max_concurrent_activities: int = 10
    max_concurrent_workflow_tasks: int = 100


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file_path: Optional[str] = None


@dataclass
class ApiServerConfig:
    """HTTP API server configuration."""
    host: str = "0.0.0.0"
    port: int = 8000


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


class AppConfig:
    """Main application configuration."""

    def __init__(self):
        self.prediction = PredictionServiceConfig()
        self.prompt_polling = PollingConfig()
        self.video_polling = PollingConfig()
        self.batch = BatchConfig()
        self.temporal = TemporalConfig()
        self.logging = LoggingConfig()
        self.api_server = ApiServerConfig()

        # Load from environment variables
        self._load_from_env()

    def _load_from_env(self):
        """Load configuration from environment variables."""
        # Prediction service configuration
        self.prediction.backend = os.getenv("PREDICTION_BACKEND", self.prediction.backend).lower()
        default_base_url = (
            REPLICATE_API_BASE_URL if self.prediction.backend == "replicate" else self.prediction.base_url
        )
        self.prediction.base_url = os.getenv("PREDICTION_API_BASE_URL", default_base_url)
        self.prediction.api_token = os.getenv("REPLICATE_API_TOKEN")
        self.prediction.request_timeout = _env_float("PREDICTION_REQUEST_TIMEOUT", self.prediction.request_timeout)
        self.prediction.prompt_model_version = os.getenv(
            "IMG2PROMPT_MODEL_VERSION", self.prediction.prompt_model_version
        )
        self.prediction.video_model_version = os.getenv(
            "KLING_MODEL_VERSION", self.prediction.video_model_version
        )
        self.prediction.video_duration = _env_int("VIDEO_DURATION", self.prediction.video_duration)

        # Polling configuration
        backoff = _env_float("POLL_BACKOFF_COEFFICIENT", 1.0)
        max_interval = _env_float("POLL_MAX_INTERVAL", None)
        self.prompt_polling.interval = _env_float("PROMPT_POLL_INTERVAL", self.prompt_polling.interval)
        self.prompt_polling.max_attempts = _env_int("PROMPT_POLL_MAX_ATTEMPTS", self.prompt_polling.max_attempts)
        self.video_polling.interval = _env_float("VIDEO_POLL_INTERVAL", self.video_polling.interval)
        self.video_polling.max_attempts = _env_int("VIDEO_POLL_MAX_ATTEMPTS", self.video_polling.max_attempts)
        for polling in (self.prompt_polling, self.video_polling):
            polling.backoff_coefficient = backoff
            polling.max_interval = max_interval

        # Batch configuration
        self.batch.max_batch_size = _env_int("MAX_BATCH_SIZE", self.batch.max_batch_size)
        self.batch.max_concurrency = _env_int("BATCH_MAX_CONCURRENCY", self.batch.max_concurrency)
        self.batch.prompt_suffix = os.getenv("VIDEO_PROMPT_SUFFIX", self.batch.prompt_suffix)

        # Temporal configuration
        self.temporal.host = os.getenv("TEMPORAL_HOST", self.temporal.host)
        self.temporal.namespace = os.getenv("TEMPORAL_NAMESPACE", self.temporal.namespace)
        self.temporal.task_queue = os.getenv("TEMPORAL_TASK_QUEUE", self.temporal.task_queue)

        # Logging configuration
        self.logging.level = os.getenv("LOG_LEVEL", self.logging.level)
        self.logging.file_path = os.getenv("LOG_FILE_PATH")

        # API server configuration
        self.api_server.host = os.getenv("API_HOST", self.api_server.host)
        self.api_server.port = _env_int("API_PORT", self.api_server.port)

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if self.prediction.backend not in ("gateway", "replicate"):
            errors.append(f"Unknown PREDICTION_BACKEND: {self.prediction.backend}")

        if self.prediction.backend == "replicate" and not self.prediction.api_token:
            errors.append("REPLICATE_API_TOKEN environment variable is required for the replicate backend")

        for name, polling in (("PROMPT", self.prompt_polling), ("VIDEO", self.video_polling)):
            if polling.max_attempts < 1:
                errors.append(f"{name}_POLL_MAX_ATTEMPTS must be at least 1")
            if polling.interval < 0:
                errors.append(f"{name}_POLL_INTERVAL cannot be negative")
            if polling.max_interval is not None and polling.max_interval < polling.interval:
                errors.append(f"POLL_MAX_INTERVAL cannot be shorter than {name}_POLL_INTERVAL")

        if self.prompt_polling.backoff_coefficient < 1.0:
            errors.append("POLL_BACKOFF_COEFFICIENT must be at least 1.0")

        if self.batch.max_batch_size < 1:
            errors.append("MAX_BATCH_SIZE must be at least 1")

        if self.batch.max_concurrency < 1:
            errors.append("BATCH_MAX_CONCURRENCY must be at least 1")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary (excluding sensitive data)."""
        return {
            "prediction": {
                "backend": self.prediction.backend,
                "base_url": self.prediction.base_url,
                "request_timeout": self.prediction.request_timeout,
                "prompt_model_version": self.prediction.prompt_model_version,
                "video_model_version": self.prediction.video_model_version,
                "video_duration": self.prediction.video_duration
            },
            "polling": {
                "prompt": {
                    "interval": self.prompt_polling.interval,
                    "max_attempts": self.prompt_polling.max_attempts
                },
                "video": {
                    "interval": self.video_polling.interval,
                    "max_attempts": self.video_polling.max_attempts
                }
            },
            "batch": {
                "max_batch_size": self.batch.max_batch_size,
                "max_concurrency": self.batch.max_concurrency
            },
            "temporal": {
                "host": self.temporal.host,
                "namespace": self.temporal.namespace,
                "task_queue": self.temporal.task_queue
            }
        }


def setup_logging(logging_config: Optional[LoggingConfig] = None) -> None:
    """Configure root logging for entry points (API server, worker, CLI)."""
    logging_config = logging_config or get_config().logging

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if logging_config.file_path:
        Path(logging_config.file_path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logging_config.file_path))

    logging.basicConfig(
        level=getattr(logging, logging_config.level.upper(), logging.INFO),
        format=logging_config.format,
        handlers=handlers,
        force=True
    )


# Global configuration instance
config = AppConfig()


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    return config


def reload_config() -> AppConfig:
    """Reload configuration from environment variables."""
    global config
    config = AppConfig()
    return config
