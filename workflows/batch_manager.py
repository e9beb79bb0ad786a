"""In-process batch API: start, observe, cancel, snapshot and clear batches."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Union

import httpx

from config.retry_policies import ValidationError
from config.settings import AppConfig, get_config
from models.core_models import BatchItem, BatchResult
from utils.prediction_client import PredictionClient, create_prediction_client
from workflows.batch_orchestrator import BatchOrchestrator, StatusCallback
from workflows.cancellation import CancellationToken
from workflows.stage_runner import StageRunner


logger = logging.getLogger(__name__)


@dataclass
class BatchHandle:
    """Caller-side reference to a running batch."""
    batch_id: str
    items: List[BatchItem]
    cancellation: CancellationToken
    started_at: datetime
    task: Optional["asyncio.Task[BatchResult]"] = None
    result: Optional[BatchResult] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.result is not None


class BatchManager:
    """Runs batches as asyncio tasks on top of a BatchOrchestrator.

    Each ``start_batch`` call gets its own items and cancellation token, so
    concurrent or repeated batches share no state.
    """

    def __init__(
        self,
        orchestrator: BatchOrchestrator,
        prediction_client: Optional[PredictionClient] = None
    ):
        self.orchestrator = orchestrator
        self._prediction_client = prediction_client
        self._batches: Dict[str, BatchHandle] = {}

    @classmethod
    def from_config(
        cls,
        app_config: Optional[AppConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> "BatchManager":
        """Wire client, stage runner and orchestrator from configuration."""
        app_config = app_config or get_config()
        client = create_prediction_client(app_config.prediction, http_client=http_client)
        runner = StageRunner(
            client,
            prompt_policy=app_config.prompt_polling.to_policy(),
            video_policy=app_config.video_polling.to_policy(),
            prompt_suffix=app_config.batch.prompt_suffix
        )
        orchestrator = BatchOrchestrator(
            runner,
            max_batch_size=app_config.batch.max_batch_size,
            max_concurrency=app_config.batch.max_concurrency
        )
        return cls(orchestrator, prediction_client=client)

    def on_item_status_changed(self, callback: StatusCallback) -> Callable[[], None]:
        """Subscribe to status events of every batch; returns an unsubscribe callable."""
        return self.orchestrator.on_item_status_changed(callback)

    def start_batch(
        self,
        image_urls: Sequence[str],
        batch_id: Optional[str] = None,
        reference_images: Optional[Sequence[str]] = None
    ) -> BatchHandle:
        """Validate the input and start the batch in the background.

        Must be called from a running event loop.

        Raises:
            ValidationError: If the input is rejected or the batch id is taken
        """
        if batch_id and batch_id in self._batches:
            raise ValidationError(f"Batch {batch_id} already exists")

        batch_id, items = self.orchestrator.prepare(
            image_urls,
            batch_id=batch_id,
            reference_images=reference_images
        )
        handle = BatchHandle(
            batch_id=batch_id,
            items=items,
            cancellation=CancellationToken(),
            started_at=self.orchestrator.clock()
        )
        self._batches[batch_id] = handle
        handle.task = asyncio.create_task(self._run(handle))

        logger.info(f"Batch {batch_id} started with {len(items)} image(s)")
        return handle

    async def _run(self, handle: BatchHandle) -> BatchResult:
        try:
            result = await self.orchestrator.execute(
                handle.batch_id,
                handle.items,
                cancellation=handle.cancellation
            )
        except Exception:
            logger.exception(f"Batch {handle.batch_id} aborted unexpectedly")
            raise
        handle.result = result
        return result

    def _resolve(self, batch: Union[str, BatchHandle]) -> Optional[BatchHandle]:
        batch_id = batch.batch_id if isinstance(batch, BatchHandle) else batch
        return self._batches.get(batch_id)

    def cancel_batch(self, batch: Union[str, BatchHandle], reason: str = "Batch cancelled") -> bool:
        """Request cooperative cancellation.

        Idempotent; cancelling a finished batch has no effect.

        Returns:
            bool: False if the batch is unknown
        """
        handle = self._resolve(batch)
        if handle is None:
            return False
        if not handle.done and not handle.cancellation.is_cancelled:
            logger.info(f"Cancelling batch {handle.batch_id}: {reason}")
            handle.cancellation.cancel(reason)
        return True

    def get_batch(self, batch_id: str) -> Optional[BatchResult]:
        """Current snapshot of a batch, or None if unknown."""
        handle = self._batches.get(batch_id)
        if handle is None:
            return None
        if handle.result is not None:
            return handle.result
        return BatchResult.from_items(
            handle.batch_id,
            handle.items,
            running=True,
            cancelled=handle.cancellation.is_cancelled,
            started_at=handle.started_at
        )

    def list_batches(self) -> List[str]:
        return list(self._batches)

    def clear_batch(self, batch_id: str) -> bool:
        """Discard a finished batch and its items.

        Raises:
            ValidationError: If the batch is still running
        """
        handle = self._batches.get(batch_id)
        if handle is None:
            return False
        if not handle.done:
            raise ValidationError(f"Batch {batch_id} is still running; cancel it first")
        del self._batches[batch_id]
        logger.info(f"Batch {batch_id} cleared")
        return True

    async def wait(self, batch_id: str) -> BatchResult:
        """Wait for a batch to finish and return its result.

        Raises:
            KeyError: If the batch is unknown
        """
        handle = self._batches[batch_id]
        if handle.result is not None:
            return handle.result
        return await handle.task

    async def shutdown(self) -> None:
        """Cancel running batches, wait for them and release the HTTP client."""
        running = [handle for handle in self._batches.values() if not handle.done]
        for handle in running:
            handle.cancellation.cancel("Server shutting down")
        if running:
            await asyncio.gather(*(handle.task for handle in running), return_exceptions=True)
        if self._prediction_client is not None:
            await self._prediction_client.close()
