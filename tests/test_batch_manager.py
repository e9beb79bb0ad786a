#!/usr/bin/env python3
"""
Tests for the in-process BatchManager.
"""

import asyncio
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from config.retry_policies import ValidationError
from config.settings import AppConfig
from models.core_models import BatchStatus, StageStatus
from models.prediction_request import StageKind
from workflows.batch_manager import BatchManager


IMAGES = ["https://img.example.com/1.png", "https://img.example.com/2.png"]


@pytest.fixture
def manager(make_orchestrator):
    return BatchManager(make_orchestrator(id_factory=None))


class TestBatchManager:
    """Test cases for BatchManager."""

    @pytest.mark.asyncio
    async def test_start_and_wait(self, manager):
        events = []
        manager.on_item_status_changed(events.append)

        handle = manager.start_batch(IMAGES, batch_id="b-1")
        assert handle.batch_id == "b-1"
        assert manager.get_batch("b-1").status == BatchStatus.RUNNING

        result = await manager.wait("b-1")

        assert result.status == BatchStatus.COMPLETED
        assert manager.get_batch("b-1") is result
        assert len(events) == 8
        assert handle.done

    @pytest.mark.asyncio
    async def test_generated_batch_ids_are_unique(self, manager):
        first = manager.start_batch(IMAGES[:1])
        second = manager.start_batch(IMAGES[:1])

        assert first.batch_id != second.batch_id
        assert first.batch_id.startswith("batch_")
        await asyncio.gather(manager.wait(first.batch_id), manager.wait(second.batch_id))
        assert set(manager.list_batches()) == {first.batch_id, second.batch_id}

    @pytest.mark.asyncio
    async def test_validation_happens_before_start(self, manager, gateway):
        with pytest.raises(ValidationError):
            manager.start_batch([])
        assert manager.list_batches() == []
        assert gateway.start_calls == []

    @pytest.mark.asyncio
    async def test_duplicate_batch_id(self, manager):
        manager.start_batch(IMAGES, batch_id="dup")
        with pytest.raises(ValidationError):
            manager.start_batch(IMAGES, batch_id="dup")
        await manager.wait("dup")

    @pytest.mark.asyncio
    async def test_cancel_running_batch(self, manager, gateway):
        gateway.script(StageKind.PROMPT_ANALYSIS, IMAGES[0], {"status": "processing"})
        handle = manager.start_batch(IMAGES, batch_id="slow")
        await asyncio.sleep(0)

        assert manager.cancel_batch(handle, reason="changed my mind")
        assert manager.cancel_batch("slow")
        result = await manager.wait("slow")

        assert result.status == BatchStatus.CANCELLED
        for item in result.items:
            assert item.prompt_stage == StageStatus.FAILED
            assert item.failure_reason == "changed my mind"

    @pytest.mark.asyncio
    async def test_cancel_unknown_or_finished(self, manager):
        assert manager.cancel_batch("missing") is False

        manager.start_batch(IMAGES, batch_id="done")
        result = await manager.wait("done")
        assert manager.cancel_batch("done") is True
        assert manager.get_batch("done").status == result.status == BatchStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_clear_batch(self, manager, gateway):
        gateway.script(StageKind.PROMPT_ANALYSIS, IMAGES[0], {"status": "processing"})
        manager.start_batch(IMAGES, batch_id="c-1")

        with pytest.raises(ValidationError):
            manager.clear_batch("c-1")

        manager.cancel_batch("c-1")
        await manager.wait("c-1")

        assert manager.clear_batch("c-1") is True
        assert manager.get_batch("c-1") is None
        assert manager.clear_batch("c-1") is False

    @pytest.mark.asyncio
    async def test_wait_unknown_batch(self, manager):
        with pytest.raises(KeyError):
            await manager.wait("nope")

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_batches(self, manager, gateway):
        gateway.script(StageKind.PROMPT_ANALYSIS, IMAGES[0], {"status": "processing"})
        manager.start_batch(IMAGES, batch_id="s-1")

        await manager.shutdown()

        assert manager.get_batch("s-1").status == BatchStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_from_config(self):
        app_config = AppConfig()
        app_config.batch.max_batch_size = 2
        app_config.prompt_polling.max_attempts = 5
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))

        manager = BatchManager.from_config(app_config, http_client=http_client)

        assert manager.orchestrator.max_batch_size == 2
        assert manager.orchestrator.stage_runner.prompt_policy.max_attempts == 5
        with pytest.raises(ValidationError):
            manager.start_batch(IMAGES + IMAGES)

        await manager.shutdown()
        await http_client.aclose()
