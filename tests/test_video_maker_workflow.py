#!/usr/bin/env python3
"""
Tests for VideoMakerWorkflow on a time-skipping Temporal test server.

The prediction activities are replaced by in-memory activities registered
under the same names, so the workflow code runs unchanged.
"""

import asyncio
import sys
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, Set, Tuple

import pytest
import pytest_asyncio
from temporalio import activity
from temporalio.client import WorkflowFailureError
from temporalio.contrib.pydantic import pydantic_data_converter
from temporalio.exceptions import ApplicationError
from temporalio.testing import WorkflowEnvironment
from temporalio.worker import Worker

sys.path.insert(0, str(Path(__file__).parent.parent))

from models.core_models import (
    BatchRequest,
    BatchStatus,
    BatchWorkflowInput,
    FailureCode,
    PollingSettings,
    StageStatus
)
from models.prediction_request import StageKind
from workflows.video_maker_workflow import VideoMakerWorkflow


IMAGES = ["https://img.example.com/1.png", "https://img.example.com/2.png"]
DEFAULT_PROMPT = "A red fox sitting in fresh snow"
DEFAULT_VIDEO_URL = "https://cdn.example.com/videos/result.mp4"

PROMPT = StageKind.PROMPT_ANALYSIS.value
VIDEO = StageKind.VIDEO_GENERATION.value


class ScriptedPredictionService:
    """Prediction activities backed by per-(stage, image) behaviour sets."""

    def __init__(self):
        self.started = []
        self.fetches: Dict[str, int] = defaultdict(int)
        self.jobs: Dict[str, Tuple[str, str]] = {}
        self.fetched = asyncio.Event()
        self.rejected: Set[Tuple[str, str]] = set()
        self.failing: Set[Tuple[str, str]] = set()
        self.stuck: Set[Tuple[str, str]] = set()
        self.flaky: Set[Tuple[str, str]] = set()

    def fetch_count(self, stage_kind: str, image_url: str) -> int:
        return sum(
            count for job_id, count in self.fetches.items()
            if self.jobs[job_id] == (stage_kind, image_url)
        )

    @activity.defn(name="start_prediction")
    async def start_prediction(self, stage_kind: str, payload: Dict[str, Any]) -> str:
        key = (stage_kind, payload["image_url"])
        if key in self.rejected:
            raise ApplicationError("quota exceeded", type="SubmissionError", non_retryable=True)

        self.started.append((stage_kind, payload))
        job_id = f"{stage_kind}-{len(self.started)}"
        self.jobs[job_id] = key
        return job_id

    @activity.defn(name="fetch_prediction")
    async def fetch_prediction(self, job_id: str) -> Dict[str, Any]:
        self.fetches[job_id] += 1
        self.fetched.set()
        key = self.jobs[job_id]

        if key in self.flaky and self.fetches[job_id] == 1:
            raise ApplicationError("502 Bad Gateway", type="TransientError", non_retryable=True)
        if key in self.failing:
            return {"id": job_id, "status": "failed", "output": None, "error": "NSFW content detected"}
        if key in self.stuck:
            return {"id": job_id, "status": "processing", "output": None, "error": None}

        output = [DEFAULT_PROMPT] if key[0] == PROMPT else DEFAULT_VIDEO_URL
        return {"id": job_id, "status": "succeeded", "output": output, "error": None}


def workflow_input(images, interval_seconds=1.0, max_attempts=3, **kwargs) -> BatchWorkflowInput:
    polling = PollingSettings(interval_seconds=interval_seconds, max_attempts=max_attempts)
    return BatchWorkflowInput(
        batch=BatchRequest(image_urls=images),
        prompt_polling=polling,
        video_polling=polling,
        **kwargs
    )


@pytest_asyncio.fixture
async def env():
    try:
        environment = await WorkflowEnvironment.start_time_skipping(data_converter=pydantic_data_converter)
    except Exception as e:
        pytest.skip(f"Temporal test server unavailable: {e}")
    async with environment:
        yield environment


@pytest.fixture
def service():
    return ScriptedPredictionService()


@pytest.fixture
def task_queue():
    return f"video-maker-test-{uuid.uuid4().hex[:8]}"


def make_worker(env, service, task_queue) -> Worker:
    return Worker(
        env.client,
        task_queue=task_queue,
        workflows=[VideoMakerWorkflow],
        activities=[service.start_prediction, service.fetch_prediction]
    )


class TestVideoMakerWorkflow:
    """Test cases for VideoMakerWorkflow."""

    @pytest.mark.asyncio
    async def test_failed_prompt_skips_video(self, env, service, task_queue):
        service.failing.add((PROMPT, IMAGES[0]))

        async with make_worker(env, service, task_queue):
            handle = await env.client.start_workflow(
                VideoMakerWorkflow.run,
                workflow_input(IMAGES),
                id="video-maker-scenario-2",
                task_queue=task_queue
            )
            result = await handle.result()
            progress = await handle.query(VideoMakerWorkflow.get_progress)

        states = [(item.prompt_stage, item.video_stage) for item in result.items]
        assert states == [
            (StageStatus.FAILED, StageStatus.PENDING),
            (StageStatus.COMPLETED, StageStatus.COMPLETED)
        ]
        assert result.batch_id == "video-maker-scenario-2"
        assert result.status == BatchStatus.PARTIALLY_COMPLETED
        assert result.items[0].failure_code == FailureCode.JOB_FAILED
        assert "NSFW" in result.items[0].failure_reason
        assert result.items[1].item_id == "video-maker-scenario-2-1"
        assert result.items[1].result_url == DEFAULT_VIDEO_URL
        assert [kind for kind, _ in service.started] == [PROMPT, PROMPT, VIDEO]
        assert service.started[2][1]["prompt"].startswith(DEFAULT_PROMPT)

        assert progress == result.to_summary()
        assert progress["items"][0] == {
            "index": 0,
            "prompt": "failed",
            "video": "pending",
            "result_url": None,
            "failure_reason": result.items[0].failure_reason
        }

    @pytest.mark.asyncio
    async def test_never_terminal_job_times_out(self, env, service, task_queue):
        service.stuck.add((PROMPT, IMAGES[0]))

        async with make_worker(env, service, task_queue):
            result = await env.client.execute_workflow(
                VideoMakerWorkflow.run,
                workflow_input(IMAGES[:1], interval_seconds=30, max_attempts=3),
                id=f"video-maker-{uuid.uuid4().hex[:8]}",
                task_queue=task_queue
            )

        item = result.items[0]
        assert item.prompt_stage == StageStatus.FAILED
        assert item.video_stage == StageStatus.PENDING
        assert item.failure_code == FailureCode.POLL_TIMEOUT
        assert service.fetch_count(PROMPT, IMAGES[0]) == 3
        assert result.status == BatchStatus.FAILED

    @pytest.mark.asyncio
    async def test_activity_errors_map_to_stage_failures(self, env, service, task_queue):
        service.rejected.add((PROMPT, IMAGES[0]))
        service.flaky.add((PROMPT, IMAGES[1]))

        async with make_worker(env, service, task_queue):
            result = await env.client.execute_workflow(
                VideoMakerWorkflow.run,
                workflow_input(IMAGES),
                id=f"video-maker-{uuid.uuid4().hex[:8]}",
                task_queue=task_queue
            )

        rejected, flaky = result.items
        assert rejected.failure_code == FailureCode.SUBMISSION_ERROR
        assert rejected.failure_reason == "quota exceeded"
        assert rejected.prompt_job_id is None
        assert flaky.video_stage == StageStatus.COMPLETED
        assert service.fetch_count(PROMPT, IMAGES[1]) == 2

    @pytest.mark.asyncio
    async def test_cancel_signal_interrupts_polling(self, env, service, task_queue):
        service.stuck.add((PROMPT, IMAGES[0]))

        async with make_worker(env, service, task_queue):
            handle = await env.client.start_workflow(
                VideoMakerWorkflow.run,
                workflow_input(IMAGES, interval_seconds=60, max_attempts=100),
                id=f"video-maker-{uuid.uuid4().hex[:8]}",
                task_queue=task_queue
            )
            await asyncio.wait_for(service.fetched.wait(), timeout=30)

            progress = await handle.query(VideoMakerWorkflow.get_progress)
            assert progress["status"] == "running"
            assert progress["prompts"]["processing"] == 1
            assert [item["prompt"] for item in progress["items"]] == ["processing", "pending"]
            assert await handle.query(VideoMakerWorkflow.get_result) is None

            await handle.signal(VideoMakerWorkflow.cancel_batch, "wrong images")
            result = await handle.result()

        assert result.status == BatchStatus.CANCELLED
        for item in result.items:
            assert item.prompt_stage == StageStatus.FAILED
            assert item.failure_code == FailureCode.CANCELLED
            assert item.failure_reason == "wrong images"
            assert item.video_stage == StageStatus.PENDING
        assert len(service.started) == 1

    @pytest.mark.asyncio
    async def test_oversized_batch_is_rejected(self, env, service, task_queue):
        async with make_worker(env, service, task_queue):
            with pytest.raises(WorkflowFailureError) as exc_info:
                await env.client.execute_workflow(
                    VideoMakerWorkflow.run,
                    workflow_input(IMAGES, max_batch_size=1),
                    id=f"video-maker-{uuid.uuid4().hex[:8]}",
                    task_queue=task_queue
                )

        cause = exc_info.value.cause
        assert isinstance(cause, ApplicationError)
        assert cause.type == "ValidationError"
        assert service.started == []
