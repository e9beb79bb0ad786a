"""Starts, queries and signals VideoMakerWorkflow executions."""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from temporalio.client import Client, WorkflowHandle
from temporalio.contrib.pydantic import pydantic_data_converter

from config.retry_policies import ValidationError
from config.settings import AppConfig, get_config
from models.core_models import BatchRequest, BatchResult, BatchWorkflowInput
from workflows.video_maker_workflow import VideoMakerWorkflow


logger = logging.getLogger(__name__)


class TemporalUnavailableError(Exception):
    """The Temporal server could not be reached."""
    pass


class TemporalBatchClient:
    """Client side of the durable batch API."""

    def __init__(self, app_config: Optional[AppConfig] = None):
        self.config = app_config or get_config()
        self._client: Optional[Client] = None

    async def get_client(self) -> Client:
        """Get or create Temporal client."""
        if self._client is None:
            temporal = self.config.temporal
            try:
                self._client = await Client.connect(
                    temporal.host,
                    namespace=temporal.namespace,
                    data_converter=pydantic_data_converter
                )
            except Exception as e:
                logger.error(f"Failed to connect to Temporal server at {temporal.host}: {e}")
                raise TemporalUnavailableError(f"Temporal server connection failed: {e}")
            logger.info(f"Connected to Temporal server at {temporal.host}")
        return self._client

    async def get_handle(self, workflow_id: str) -> WorkflowHandle:
        client = await self.get_client()
        return client.get_workflow_handle_for(VideoMakerWorkflow.run, workflow_id)

    async def start_batch_workflow(self, request: BatchRequest) -> str:
        """Start a durable batch and return its workflow ID.

        Raises:
            ValidationError: If the batch exceeds the configured size
        """
        max_batch_size = self.config.batch.max_batch_size
        if len(request.image_urls) > max_batch_size:
            raise ValidationError(
                f"A batch accepts at most {max_batch_size} images, got {len(request.image_urls)}"
            )

        client = await self.get_client()
        workflow_id = request.batch_id or f"video-maker-{uuid.uuid4().hex[:12]}"
        await client.start_workflow(
            VideoMakerWorkflow.run,
            BatchWorkflowInput.from_config(request, self.config),
            id=workflow_id,
            task_queue=self.config.temporal.task_queue,
            execution_timeout=timedelta(hours=self.config.temporal.batch_workflow_timeout)
        )
        logger.info(f"Started VideoMakerWorkflow {workflow_id} with {len(request.image_urls)} image(s)")
        return workflow_id

    async def get_progress(self, workflow_id: str) -> Dict[str, Any]:
        handle = await self.get_handle(workflow_id)
        return await handle.query(VideoMakerWorkflow.get_progress)

    async def cancel_batch(self, workflow_id: str, reason: str = "Batch cancelled") -> None:
        handle = await self.get_handle(workflow_id)
        await handle.signal(VideoMakerWorkflow.cancel_batch, reason)
        logger.info(f"Sent cancel_batch signal to workflow {workflow_id}")

    async def wait_for_result(self, workflow_id: str) -> BatchResult:
        handle = await self.get_handle(workflow_id)
        return await handle.result()
