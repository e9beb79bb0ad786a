"""Retry policies and error taxonomy for the video maker pipeline.

This module defines the Temporal retry policies used by the prediction
activities, the polling policy used by the Poller, and the exceptions that
classify every failure the pipeline can observe.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional
import logging

from temporalio.common import RetryPolicy

logger = logging.getLogger(__name__)


# Custom exceptions for retry handling
class RetryableError(Exception):
    """Base class for retryable errors."""
    pass


class NonRetryableError(Exception):
    """Base class for non-retryable errors."""
    pass


class TransientError(RetryableError):
    """A single fetch of a prediction failed (network or service hiccup).

    The Poller counts it as one failed attempt and keeps polling.
    """
    pass


class SubmissionError(NonRetryableError):
    """The Prediction Service rejected job creation (payload, auth, quota)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class JobFailed(NonRetryableError):
    """The Prediction Service reported the job itself as failed."""

    def __init__(self, job_id: str, error: Optional[str] = None):
        self.job_id = job_id
        self.error = error or "Prediction failed without an error message"
        super().__init__(f"Prediction {job_id} failed: {self.error}")


class PollTimeout(NonRetryableError):
    """The attempt budget ran out before the job reached a terminal state."""

    def __init__(self, job_id: str, attempts: int):
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(
            f"Prediction {job_id} did not finish after {attempts} poll attempts"
        )


class Cancelled(NonRetryableError):
    """Batch cancellation was observed mid-stage."""

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or "Batch cancelled"
        super().__init__(self.reason)


class ValidationError(NonRetryableError):
    """Empty or over-limit batch, or malformed input at the batch boundary."""
    pass


class InvalidOutputError(NonRetryableError):
    """A succeeded prediction carried no usable output."""
    pass


# Error types that cross the Temporal activity boundary by name
PREDICTION_ERROR_TYPES: Dict[str, type] = {
    "SubmissionError": SubmissionError,
    "TransientError": TransientError,
}


# Submitting a prediction is not retried: a rejection is final for the stage
PREDICTION_SUBMIT_RETRY_POLICY = RetryPolicy(
    initial_interval=timedelta(seconds=1),
    backoff_coefficient=2.0,
    maximum_attempts=1,
    non_retryable_error_types=["SubmissionError"]
)

# The Poller owns the attempt budget, so a single fetch is never retried here
PREDICTION_FETCH_RETRY_POLICY = RetryPolicy(
    initial_interval=timedelta(seconds=1),
    backoff_coefficient=1.0,
    maximum_attempts=1,
    non_retryable_error_types=["TransientError"]
)

ACTIVITY_RETRY_POLICIES: Dict[str, RetryPolicy] = {
    "start_prediction": PREDICTION_SUBMIT_RETRY_POLICY,
    "fetch_prediction": PREDICTION_FETCH_RETRY_POLICY,
}


def get_retry_policy(activity_name: str) -> RetryPolicy:
    """Get retry policy for a specific activity.

    Args:
        activity_name: Name of the activity

    Returns:
        RetryPolicy for the activity

    Raises:
        KeyError: If no policy is registered for the activity
    """
    policy = ACTIVITY_RETRY_POLICIES[activity_name]
    logger.debug(f"Using retry policy for {activity_name}: {policy}")
    return policy


@dataclass(frozen=True)
class PollingPolicy:
    """Interval and attempt budget for polling one prediction job.

    The delay before attempt n+1 is ``interval * backoff_coefficient ** (n - 1)``
    capped at ``maximum_interval``. With the default coefficient of 1.0 the
    interval is fixed.
    """
    interval: timedelta = timedelta(seconds=3)
    max_attempts: int = 120
    backoff_coefficient: float = 1.0
    maximum_interval: Optional[timedelta] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.interval < timedelta(0):
            raise ValueError("interval cannot be negative")
        if self.backoff_coefficient < 1.0:
            raise ValueError("backoff_coefficient must be >= 1.0")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given 1-based attempt."""
        delay = self.interval.total_seconds() * (self.backoff_coefficient ** (attempt - 1))
        if self.maximum_interval is not None:
            delay = min(delay, self.maximum_interval.total_seconds())
        return delay

    @property
    def max_total_wait(self) -> float:
        """Upper bound on the time spent sleeping across the whole budget."""
        return sum(self.delay_for(n) for n in range(1, self.max_attempts + 1))


def create_polling_policy(
    interval_seconds: float = 3.0,
    max_attempts: int = 120,
    backoff_coefficient: float = 1.0,
    maximum_interval_seconds: Optional[float] = None
) -> PollingPolicy:
    """Create a polling policy from plain numbers.

    Args:
        interval_seconds: Wait between attempts in seconds
        max_attempts: Maximum number of fetches before giving up
        backoff_coefficient: Multiplier applied to the wait after each attempt
        maximum_interval_seconds: Cap on a single wait, if any

    Returns:
        PollingPolicy instance
    """
    return PollingPolicy(
        interval=timedelta(seconds=interval_seconds),
        max_attempts=max_attempts,
        backoff_coefficient=backoff_coefficient,
        maximum_interval=(
            timedelta(seconds=maximum_interval_seconds)
            if maximum_interval_seconds is not None else None
        )
    )


DEFAULT_POLLING_POLICY = PollingPolicy()
