"""Two-phase batch orchestration: prompt analysis for every item, then video generation."""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from config.retry_policies import ValidationError
from models.core_models import (
    BatchItem,
    BatchResult,
    FailureCode,
    ItemStatusEvent,
    StageStatus
)
from models.prediction_request import StageKind
from workflows.cancellation import CancellationToken
from workflows.poller import LoggerLike
from workflows.stage_runner import StageRunner


StatusCallback = Callable[[ItemStatusEvent], None]
Clock = Callable[[], datetime]

DEFAULT_MAX_BATCH_SIZE = 10


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_batch_id() -> str:
    return f"batch_{uuid.uuid4().hex[:12]}"


class BatchOrchestrator:
    """Owns the per-item state machine across a whole batch.

    Phase 1 runs prompt analysis for every item; phase 2 starts only after
    that and runs video generation for items whose prompt completed. One
    item's failure never stops its siblings and the batch itself never
    fails: ``run_batch`` only raises ValidationError, before any job starts.
    """

    def __init__(
        self,
        stage_runner: StageRunner,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        max_concurrency: int = 1,
        clock: Optional[Clock] = None,
        id_factory: Optional[Callable[[], str]] = None,
        logger: Optional[LoggerLike] = None
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.stage_runner = stage_runner
        self.max_batch_size = max_batch_size
        self.max_concurrency = max_concurrency
        self.clock = clock or utc_now
        self.id_factory = id_factory or new_batch_id
        self.logger = logger or logging.getLogger(__name__)
        self._observers: List[StatusCallback] = []

    def on_item_status_changed(self, callback: StatusCallback) -> Callable[[], None]:
        """Subscribe to status events of every batch run by this orchestrator.

        Returns:
            Callable that removes the subscription
        """
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    def prepare(
        self,
        image_urls: Sequence[str],
        batch_id: Optional[str] = None,
        reference_images: Optional[Sequence[str]] = None
    ) -> Tuple[str, List[BatchItem]]:
        """Validate the input and create one Pending item per image, in order.

        Raises:
            ValidationError: Empty batch, too many images or a blank URL
        """
        if image_urls is None or isinstance(image_urls, str):
            raise ValidationError("image_urls must be a sequence of URLs")

        image_urls = list(image_urls)
        if not image_urls:
            raise ValidationError("A batch needs at least one image")
        if len(image_urls) > self.max_batch_size:
            raise ValidationError(
                f"A batch accepts at most {self.max_batch_size} images, got {len(image_urls)}"
            )
        for position, url in enumerate(image_urls):
            if not isinstance(url, str) or not url.strip():
                raise ValidationError(f"Image URL at position {position} is empty")

        batch_id = batch_id or self.id_factory()
        references = [ref.strip() for ref in (reference_images or []) if ref and ref.strip()]
        items = [
            BatchItem(
                index=index,
                item_id=f"{batch_id}-{index}",
                image_url=url.strip(),
                reference_images=list(references)
            )
            for index, url in enumerate(image_urls)
        ]
        return batch_id, items

    async def run_batch(
        self,
        image_urls: Sequence[str],
        batch_id: Optional[str] = None,
        reference_images: Optional[Sequence[str]] = None,
        cancellation: Optional[CancellationToken] = None,
        observer: Optional[StatusCallback] = None
    ) -> BatchResult:
        """Run both phases for a batch of image URLs.

        Args:
            image_urls: Source images, processed in this order
            batch_id: Optional caller-chosen identifier
            reference_images: Extra images forwarded to video generation
            cancellation: Cooperative cancellation signal
            observer: Callback for this run's status events only

        Returns:
            BatchResult: Final state of every item, in input order

        Raises:
            ValidationError: If the input is rejected (no job is started)
        """
        batch_id, items = self.prepare(image_urls, batch_id=batch_id, reference_images=reference_images)
        return await self.execute(batch_id, items, cancellation=cancellation, observer=observer)

    async def execute(
        self,
        batch_id: str,
        items: List[BatchItem],
        cancellation: Optional[CancellationToken] = None,
        observer: Optional[StatusCallback] = None
    ) -> BatchResult:
        """Run both phases over items created by ``prepare``."""
        cancellation = cancellation or CancellationToken()
        started_at = self.clock()
        self.logger.info(f"Starting batch {batch_id} with {len(items)} item(s)")

        await self._run_phase(batch_id, items, StageKind.PROMPT_ANALYSIS, cancellation, observer)

        eligible = [item for item in items if item.video_eligible]
        skipped = len(items) - len(eligible)
        if skipped:
            self.logger.info(f"Batch {batch_id}: {skipped} item(s) skip video generation")
        await self._run_phase(batch_id, eligible, StageKind.VIDEO_GENERATION, cancellation, observer)

        if cancellation.is_cancelled:
            self._settle_cancelled(batch_id, items, cancellation, observer)

        result = BatchResult.from_items(
            batch_id,
            items,
            cancelled=cancellation.is_cancelled,
            started_at=started_at,
            completed_at=self.clock()
        )
        self.logger.info(
            f"Batch {batch_id} finished: {result.status.value}, "
            f"{result.progress.videos.completed}/{len(items)} video(s) completed"
        )
        return result

    async def _run_phase(
        self,
        batch_id: str,
        items: List[BatchItem],
        stage_kind: StageKind,
        cancellation: CancellationToken,
        observer: Optional[StatusCallback]
    ) -> None:
        if not items:
            return

        self.logger.info(f"Batch {batch_id}: {stage_kind.value} phase for {len(items)} item(s)")

        if self.max_concurrency == 1:
            for item in items:
                if cancellation.is_cancelled:
                    break
                await self._run_item_stage(batch_id, item, stage_kind, cancellation, observer)
            return

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_with_semaphore(item: BatchItem) -> None:
            async with semaphore:
                if cancellation.is_cancelled:
                    return
                await self._run_item_stage(batch_id, item, stage_kind, cancellation, observer)

        await asyncio.gather(*(run_with_semaphore(item) for item in items))

    async def _run_item_stage(
        self,
        batch_id: str,
        item: BatchItem,
        stage_kind: StageKind,
        cancellation: CancellationToken,
        observer: Optional[StatusCallback]
    ) -> None:
        item.transition(stage_kind, StageStatus.PROCESSING, at=self.clock())
        self._emit(batch_id, item, stage_kind, observer)

        outcome = await self.stage_runner.run_stage(item, stage_kind, cancellation)

        if outcome.succeeded:
            item.transition(stage_kind, StageStatus.COMPLETED, at=self.clock(), value=outcome.value)
        else:
            item.transition(
                stage_kind,
                StageStatus.FAILED,
                at=self.clock(),
                failure_code=outcome.failure_code,
                failure_reason=outcome.reason
            )
            self.logger.warning(
                f"Item {item.item_id}: {stage_kind.value} failed ({outcome.failure_code.value}): {outcome.reason}"
            )
        self._emit(batch_id, item, stage_kind, observer)

    def _settle_cancelled(
        self,
        batch_id: str,
        items: List[BatchItem],
        cancellation: CancellationToken,
        observer: Optional[StatusCallback]
    ) -> None:
        """Fail every stage that never started because the batch was cancelled."""
        reason = cancellation.reason or "Batch cancelled"
        for item in items:
            if item.prompt_stage == StageStatus.PENDING:
                item.transition(
                    StageKind.PROMPT_ANALYSIS,
                    StageStatus.FAILED,
                    at=self.clock(),
                    failure_code=FailureCode.CANCELLED,
                    failure_reason=reason
                )
                self._emit(batch_id, item, StageKind.PROMPT_ANALYSIS, observer)
            elif item.video_stage == StageStatus.PENDING and item.video_eligible:
                item.transition(
                    StageKind.VIDEO_GENERATION,
                    StageStatus.FAILED,
                    at=self.clock(),
                    failure_code=FailureCode.CANCELLED,
                    failure_reason=reason
                )
                self._emit(batch_id, item, StageKind.VIDEO_GENERATION, observer)

    def _emit(
        self,
        batch_id: str,
        item: BatchItem,
        stage_kind: StageKind,
        observer: Optional[StatusCallback]
    ) -> None:
        event = ItemStatusEvent(
            batch_id=batch_id,
            index=item.index,
            stage=stage_kind,
            status=item.stage_status(stage_kind),
            item=item.snapshot(),
            occurred_at=self.clock()
        )
        callbacks = list(self._observers)
        if observer is not None:
            callbacks.append(observer)

        for callback in callbacks:
            try:
                callback(event.model_copy(deep=True))
            except Exception:
                self.logger.exception(f"Status observer failed for batch {batch_id}")
