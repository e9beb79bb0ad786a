"""Shared fixtures: a scripted Prediction Service and pipeline builders."""

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from config.retry_policies import create_polling_policy
from models.prediction_request import PredictionJob, StageKind
from workflows.batch_orchestrator import BatchOrchestrator
from workflows.poller import Poller
from workflows.stage_runner import StageRunner


DEFAULT_PROMPT = "A red fox sitting in fresh snow"
DEFAULT_VIDEO_URL = "https://cdn.example.com/videos/result.mp4"


class FakePredictionGateway:
    """In-memory Prediction Service.

    Jobs succeed on the first fetch unless a script is registered for the
    (stage, image_url) pair. A script is a list of fetch responses: dicts with
    status/output/error, or exceptions to raise. The last entry repeats.
    """

    def __init__(self):
        self.start_calls: List[Tuple[StageKind, Any]] = []
        self.fetch_calls: List[str] = []
        self.scripts: Dict[Tuple[StageKind, str], List[Any]] = {}
        self.start_errors: Dict[Tuple[StageKind, str], Exception] = {}
        self.on_start: Optional[Callable[[StageKind, Any], None]] = None
        self.on_fetch: Optional[Callable[[str], None]] = None
        self._jobs: Dict[str, Tuple[StageKind, str]] = {}
        self._cursor: Dict[str, int] = {}

    def script(self, stage_kind: StageKind, image_url: str, *responses: Any) -> None:
        self.scripts[(stage_kind, image_url)] = list(responses)

    def fail_start(self, stage_kind: StageKind, image_url: str, error: Exception) -> None:
        self.start_errors[(stage_kind, image_url)] = error

    def started(self, stage_kind: StageKind) -> List[str]:
        """Image URLs for which a job of the given stage was started."""
        return [payload.image_url for kind, payload in self.start_calls if kind == stage_kind]

    async def start(self, stage_kind: StageKind, payload: Any) -> str:
        self.start_calls.append((stage_kind, payload))
        if self.on_start:
            self.on_start(stage_kind, payload)

        key = (stage_kind, payload.image_url)
        if key in self.start_errors:
            raise self.start_errors[key]

        job_id = f"{stage_kind.value}-{len(self.start_calls)}"
        self._jobs[job_id] = key
        return job_id

    async def fetch(self, job_id: str) -> PredictionJob:
        self.fetch_calls.append(job_id)
        if self.on_fetch:
            self.on_fetch(job_id)

        stage_kind, image_url = self._jobs[job_id]
        script = self.scripts.get((stage_kind, image_url))
        if script is None:
            output = [DEFAULT_PROMPT] if stage_kind == StageKind.PROMPT_ANALYSIS else DEFAULT_VIDEO_URL
            return PredictionJob(id=job_id, status="succeeded", output=output)

        position = self._cursor.get(job_id, 0)
        self._cursor[job_id] = position + 1
        response = script[min(position, len(script) - 1)]
        if isinstance(response, Exception):
            raise response
        return PredictionJob(id=job_id, **response)


class RecordingSleeper:
    """Poller sleeper that records delays and only yields to the event loop."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float, cancellation) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def gateway():
    return FakePredictionGateway()


@pytest.fixture
def sleeper():
    return RecordingSleeper()


@pytest.fixture
def fast_policy():
    return create_polling_policy(interval_seconds=0.01, max_attempts=3)


@pytest.fixture
def make_runner(gateway, sleeper, fast_policy):
    def factory(**kwargs) -> StageRunner:
        kwargs.setdefault("prompt_policy", fast_policy)
        kwargs.setdefault("video_policy", fast_policy)
        return StageRunner(gateway, poller=Poller(gateway, sleeper=sleeper), **kwargs)
    return factory


@pytest.fixture
def make_orchestrator(make_runner):
    def factory(**kwargs) -> BatchOrchestrator:
        runner_kwargs = {
            key: kwargs.pop(key)
            for key in ("prompt_policy", "video_policy", "prompt_suffix")
            if key in kwargs
        }
        kwargs.setdefault("id_factory", lambda: "batch-test")
        return BatchOrchestrator(make_runner(**runner_kwargs), **kwargs)
    return factory
