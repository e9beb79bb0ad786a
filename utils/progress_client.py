#!/usr/bin/env python3
"""
Progress Query Client

A utility client for reading batch progress from Temporal directly (the
get_progress query of VideoMakerWorkflow) and via the REST API endpoints.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Any, Optional, List
from dataclasses import dataclass

import aiohttp
from temporalio.client import Client
from temporalio.contrib.pydantic import pydantic_data_converter

from config.settings import get_config


logger = logging.getLogger(__name__)

FINISHED_STATUSES = ("completed", "partially_completed", "failed", "cancelled")


@dataclass
class ProgressQueryResult:
    """Result of a progress query."""
    workflow_id: str
    success: bool
    progress: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    timestamp: Optional[str] = None
    source: str = "unknown"  # 'temporal' or 'api'

    @property
    def is_finished(self) -> bool:
        return bool(self.success and self.progress and self.progress.get("status") in FINISHED_STATUSES)


class ProgressQueryClient:
    """Client for querying batch progress."""

    def __init__(
        self,
        temporal_host: Optional[str] = None,
        namespace: Optional[str] = None,
        api_base_url: Optional[str] = None
    ):
        app_config = get_config()
        self.temporal_host = temporal_host or app_config.temporal.host
        self.namespace = namespace or app_config.temporal.namespace
        self.api_base_url = (api_base_url or f"http://localhost:{app_config.api_server.port}").rstrip("/")
        self._temporal_client: Optional[Client] = None
        self._http_session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "ProgressQueryClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    async def get_temporal_client(self) -> Client:
        """Get or create Temporal client."""
        if self._temporal_client is None:
            self._temporal_client = await Client.connect(
                self.temporal_host,
                namespace=self.namespace,
                data_converter=pydantic_data_converter
            )
        return self._temporal_client

    async def get_http_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        return self._http_session

    async def query_progress_direct(self, workflow_id: str) -> ProgressQueryResult:
        """Query progress directly from Temporal."""
        try:
            client = await self.get_temporal_client()
            workflow_handle = client.get_workflow_handle(workflow_id)
            progress_result = await workflow_handle.query("get_progress")

            return ProgressQueryResult(
                workflow_id=workflow_id,
                success=True,
                progress=progress_result,
                timestamp=datetime.now().isoformat(),
                source="temporal"
            )

        except Exception as e:
            logger.error(f"Failed to query progress directly for {workflow_id}: {e}")
            return ProgressQueryResult(
                workflow_id=workflow_id,
                success=False,
                error=str(e),
                timestamp=datetime.now().isoformat(),
                source="temporal"
            )

    async def _get_json(self, workflow_id: str, url: str, key: Optional[str]) -> ProgressQueryResult:
        try:
            session = await self.get_http_session()
            async with session.get(url) as response:
                data = await response.json(content_type=None)
                if response.status == 200:
                    return ProgressQueryResult(
                        workflow_id=workflow_id,
                        success=True,
                        progress=data.get(key) if key else data,
                        timestamp=data.get("timestamp") or datetime.now().isoformat(),
                        source="api"
                    )
                return ProgressQueryResult(
                    workflow_id=workflow_id,
                    success=False,
                    error=(data or {}).get("detail", f"HTTP {response.status}"),
                    timestamp=datetime.now().isoformat(),
                    source="api"
                )

        except Exception as e:
            logger.error(f"Failed to query progress via API for {workflow_id}: {e}")
            return ProgressQueryResult(
                workflow_id=workflow_id,
                success=False,
                error=str(e),
                timestamp=datetime.now().isoformat(),
                source="api"
            )

    async def query_progress_api(self, workflow_id: str) -> ProgressQueryResult:
        """Query a durable batch's progress via REST API."""
        url = f"{self.api_base_url}/workflows/{workflow_id}/progress"
        return await self._get_json(workflow_id, url, "progress")

    async def query_batch_api(self, batch_id: str) -> ProgressQueryResult:
        """Query an in-process batch via REST API, reduced to the progress summary."""
        url = f"{self.api_base_url}/batches/{batch_id}"
        result = await self._get_json(batch_id, url, None)
        if result.success and result.progress:
            batch = result.progress
            progress = batch.get("progress") or {}
            result.progress = {
                "batch_id": batch.get("batch_id", batch_id),
                "status": batch.get("status"),
                "percent": progress.get("percent", 0),
                "prompts": progress.get("prompts"),
                "videos": progress.get("videos"),
                "items": [
                    {
                        "index": item.get("index"),
                        "prompt": item.get("prompt_stage"),
                        "video": item.get("video_stage"),
                        "result_url": item.get("result_url"),
                        "failure_reason": item.get("failure_reason")
                    }
                    for item in batch.get("items", [])
                ]
            }
        return result

    async def query_progress_with_fallback(self, workflow_id: str) -> ProgressQueryResult:
        """Query progress with fallback from direct to API."""
        result = await self.query_progress_direct(workflow_id)

        if result.success:
            return result

        logger.info(f"Direct query failed for {workflow_id}, trying API fallback")
        return await self.query_progress_api(workflow_id)

    async def query_multiple_workflows(
        self,
        workflow_ids: List[str],
        use_api: bool = False
    ) -> List[ProgressQueryResult]:
        """Query progress for multiple workflows concurrently."""
        if use_api:
            tasks = [self.query_progress_api(wf_id) for wf_id in workflow_ids]
        else:
            tasks = [self.query_progress_with_fallback(wf_id) for wf_id in workflow_ids]

        return await asyncio.gather(*tasks)

    async def monitor_progress(
        self,
        workflow_id: str,
        interval: float = 5.0,
        max_iterations: int = 100,
        use_api: bool = False
    ) -> List[ProgressQueryResult]:
        """Monitor batch progress over time.

        Args:
            workflow_id: Workflow to monitor
            interval: Seconds between queries
            max_iterations: Maximum number of queries
            use_api: Whether to use API instead of direct queries

        Returns:
            List of progress results over time
        """
        results = []

        for i in range(max_iterations):
            if use_api:
                result = await self.query_progress_api(workflow_id)
            else:
                result = await self.query_progress_with_fallback(workflow_id)

            results.append(result)

            if result.is_finished:
                logger.info(f"Batch {workflow_id} finished with status: {result.progress.get('status')}")
                break

            if i < max_iterations - 1:
                await asyncio.sleep(interval)

        return results

    def format_progress_result(self, result: ProgressQueryResult) -> str:
        """Format progress result for display."""
        if not result.success:
            return f"❌ {result.workflow_id}: Error - {result.error}"

        if not result.progress:
            return f"⚠️  {result.workflow_id}: No progress data available"

        progress = result.progress
        percent = progress.get("percent", 0)
        status = progress.get("status", "unknown")

        status_emoji = {
            "running": "🔄",
            "completed": "✅",
            "partially_completed": "🟡",
            "failed": "❌",
            "cancelled": "🚫"
        }.get(status, "❓")

        prompts = progress.get("prompts") or {}
        videos = progress.get("videos") or {}
        counts = (
            f"prompts {prompts.get('completed', 0)}/{prompts.get('total', 0)}, "
            f"videos {videos.get('completed', 0)}/{videos.get('total', 0)}"
        )
        return f"{status_emoji} {result.workflow_id}: {percent}% - {status} - {counts}"

    async def close(self):
        """Close all connections."""
        # Temporal Python client has no close method
        self._temporal_client = None

        if self._http_session:
            await self._http_session.close()
            self._http_session = None
