#!/usr/bin/env python3
"""
Test Progress Query Interface

Tests for reading batch progress through direct Temporal queries and the
REST API endpoints.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from utils.progress_client import ProgressQueryClient, ProgressQueryResult


def http_session(status, payload):
    """Build an aiohttp-like session whose get() yields a single response."""
    response = AsyncMock()
    response.status = status
    response.json.return_value = payload

    session = MagicMock()
    session.get.return_value.__aenter__.return_value = response
    return session


class TestProgressQueryClient:
    """Test cases for ProgressQueryClient."""

    @pytest.fixture
    def client(self):
        """Create a test client."""
        return ProgressQueryClient(
            temporal_host="localhost:7233",
            namespace="test",
            api_base_url="http://localhost:8000/"
        )

    @pytest.fixture
    def summary(self):
        return {
            "batch_id": "video-maker-123",
            "status": "running",
            "percent": 50,
            "prompts": {"total": 2, "completed": 2, "failed": 0, "pending": 0, "processing": 0},
            "videos": {"total": 2, "completed": 0, "failed": 0, "pending": 1, "processing": 1},
            "items": []
        }

    def test_base_url_is_normalized(self, client):
        assert client.api_base_url == "http://localhost:8000"

    @pytest.mark.asyncio
    async def test_query_progress_direct_success(self, client, summary):
        mock_handle = AsyncMock()
        mock_handle.query.return_value = summary
        mock_client = Mock()
        mock_client.get_workflow_handle.return_value = mock_handle

        with patch.object(client, 'get_temporal_client', AsyncMock(return_value=mock_client)):
            result = await client.query_progress_direct("video-maker-123")

        assert result.success is True
        assert result.progress == summary
        assert result.source == "temporal"
        mock_handle.query.assert_awaited_once_with("get_progress")

    @pytest.mark.asyncio
    async def test_query_progress_direct_failure(self, client):
        mock_client = Mock()
        mock_client.get_workflow_handle.side_effect = Exception("Workflow not found")

        with patch.object(client, 'get_temporal_client', AsyncMock(return_value=mock_client)):
            result = await client.query_progress_direct("video-maker-123")

        assert result.success is False
        assert result.error == "Workflow not found"
        assert result.progress is None

    @pytest.mark.asyncio
    async def test_query_progress_api_success(self, client, summary):
        session = http_session(200, {
            "workflow_id": "video-maker-123",
            "progress": summary,
            "timestamp": "2026-01-01T00:00:00"
        })

        with patch.object(client, 'get_http_session', AsyncMock(return_value=session)):
            result = await client.query_progress_api("video-maker-123")

        assert result.success is True
        assert result.progress == summary
        assert result.timestamp == "2026-01-01T00:00:00"
        assert result.source == "api"
        session.get.assert_called_once_with("http://localhost:8000/workflows/video-maker-123/progress")

    @pytest.mark.asyncio
    async def test_query_progress_api_failure(self, client):
        session = http_session(404, {"detail": "Workflow video-maker-123 not found"})

        with patch.object(client, 'get_http_session', AsyncMock(return_value=session)):
            result = await client.query_progress_api("video-maker-123")

        assert result.success is False
        assert result.error == "Workflow video-maker-123 not found"
        assert result.progress is None

    @pytest.mark.asyncio
    async def test_query_batch_api_reduces_to_summary(self, client):
        session = http_session(200, {
            "batch_id": "batch_1",
            "status": "partially_completed",
            "progress": {"percent": 100, "prompts": {"total": 2}, "videos": {"total": 1}},
            "items": [
                {"index": 0, "prompt_stage": "completed", "video_stage": "completed",
                 "result_url": "https://cdn/0.mp4", "failure_reason": None},
                {"index": 1, "prompt_stage": "failed", "video_stage": "pending",
                 "result_url": None, "failure_reason": "no prompt"}
            ]
        })

        with patch.object(client, 'get_http_session', AsyncMock(return_value=session)):
            result = await client.query_batch_api("batch_1")

        assert result.success is True
        assert result.is_finished
        assert result.progress["percent"] == 100
        assert result.progress["items"][1] == {
            "index": 1,
            "prompt": "failed",
            "video": "pending",
            "result_url": None,
            "failure_reason": "no prompt"
        }

    @pytest.mark.asyncio
    async def test_query_progress_with_fallback(self, client, summary):
        direct = ProgressQueryResult(workflow_id="wf", success=False, error="unreachable", source="temporal")
        api = ProgressQueryResult(workflow_id="wf", success=True, progress=summary, source="api")

        with patch.object(client, 'query_progress_direct', AsyncMock(return_value=direct)), \
             patch.object(client, 'query_progress_api', AsyncMock(return_value=api)) as api_query:
            result = await client.query_progress_with_fallback("wf")

        assert result is api
        api_query.assert_awaited_once_with("wf")

    @pytest.mark.asyncio
    async def test_query_multiple_workflows(self, client, summary):
        async def fake_query(workflow_id):
            return ProgressQueryResult(workflow_id=workflow_id, success=True, progress=summary, source="api")

        with patch.object(client, 'query_progress_api', side_effect=fake_query):
            results = await client.query_multiple_workflows(["a", "b", "c"], use_api=True)

        assert [result.workflow_id for result in results] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_monitor_progress_stops_when_finished(self, client, summary):
        finished = dict(summary, status="completed", percent=100)
        results = [
            ProgressQueryResult(workflow_id="wf", success=True, progress=summary, source="api"),
            ProgressQueryResult(workflow_id="wf", success=True, progress=finished, source="api"),
        ]

        with patch.object(client, 'query_progress_api', AsyncMock(side_effect=results)), \
             patch("utils.progress_client.asyncio.sleep", AsyncMock()) as sleep:
            history = await client.monitor_progress("wf", interval=0.5, max_iterations=10, use_api=True)

        assert len(history) == 2
        assert history[-1].is_finished
        sleep.assert_awaited_once_with(0.5)

    def test_format_progress_result(self, client, summary):
        ok = ProgressQueryResult(workflow_id="wf", success=True, progress=summary)
        failed = ProgressQueryResult(workflow_id="wf", success=False, error="boom")
        empty = ProgressQueryResult(workflow_id="wf", success=True)

        assert client.format_progress_result(ok) == "🔄 wf: 50% - running - prompts 2/2, videos 0/2"
        assert "Error - boom" in client.format_progress_result(failed)
        assert "No progress data" in client.format_progress_result(empty)

    @pytest.mark.asyncio
    async def test_close_releases_session(self, client):
        session = AsyncMock()
        client._http_session = session

        async with client:
            pass

        session.close.assert_awaited_once()
        assert client._http_session is None
