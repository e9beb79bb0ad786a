#!/usr/bin/env python3
"""
Temporal Worker Service

Hosts VideoMakerWorkflow and the prediction activities on the configured
task queue, with graceful shutdown on SIGINT/SIGTERM.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from temporalio.client import Client
from temporalio.contrib.pydantic import pydantic_data_converter
from temporalio.worker import Worker

from activities.prediction_activities import start_prediction, fetch_prediction
from config.settings import AppConfig, get_config, setup_logging
from workflows.video_maker_workflow import VideoMakerWorkflow


logger = logging.getLogger(__name__)


class TemporalWorkerService:
    """Temporal Worker Service with lifecycle management."""

    def __init__(self, app_config: Optional[AppConfig] = None):
        self.config = app_config or get_config()
        self.client: Optional[Client] = None
        self.worker: Optional[Worker] = None
        self.shutdown_event = asyncio.Event()
        self._running = False

    def install_signal_handlers(self):
        """Stop the worker on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._on_signal, signum)
            except NotImplementedError:
                # Windows event loops do not support signal handlers
                pass

    def _on_signal(self, signum: int):
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.shutdown_event.set()

    async def initialize(self):
        """Connect to Temporal and build the worker."""
        temporal = self.config.temporal
        logger.info(f"Connecting to Temporal server at {temporal.host}")

        try:
            self.client = await Client.connect(
                temporal.host,
                namespace=temporal.namespace,
                data_converter=pydantic_data_converter
            )
        except Exception as e:
            logger.error(f"Failed to connect to Temporal server: {e}")
            raise

        self.worker = Worker(
            self.client,
            task_queue=temporal.task_queue,
            workflows=[VideoMakerWorkflow],
            activities=[start_prediction, fetch_prediction],
            max_concurrent_activities=temporal.max_concurrent_activities,
            max_concurrent_workflow_tasks=temporal.max_concurrent_workflow_tasks
        )

        logger.info("Worker initialized:")
        logger.info(f"  Task Queue: {temporal.task_queue}")
        logger.info(f"  Prediction backend: {self.config.prediction.backend} ({self.config.prediction.base_url})")
        logger.info(f"  Max Concurrent Activities: {temporal.max_concurrent_activities}")

    async def start(self):
        """Run the worker until shutdown is requested."""
        if not self.worker:
            raise RuntimeError("Worker not initialized. Call initialize() first.")

        if self._running:
            logger.warning("Worker is already running")
            return

        self._running = True
        logger.info("Starting Temporal Worker Service...")

        try:
            async with self.worker:
                logger.info("Worker is ready to process batches")
                await self.shutdown_event.wait()
                logger.info("Shutdown signal received, stopping worker...")
        finally:
            self._running = False
            logger.info("Temporal Worker Service stopped")

    def shutdown(self):
        """Request a graceful shutdown."""
        self.shutdown_event.set()


async def main(args: argparse.Namespace) -> int:
    app_config = get_config()
    if args.task_queue:
        app_config.temporal.task_queue = args.task_queue

    setup_logging(app_config.logging)

    errors = app_config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        return 1

    service = TemporalWorkerService(app_config)
    service.install_signal_handlers()

    try:
        await service.initialize()
        await service.start()
    except Exception as e:
        logger.error(f"Worker service error: {e}")
        return 1
    return 0


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Temporal worker for the video maker pipeline",
        epilog=(
            "Configuration is read from the environment: TEMPORAL_HOST, TEMPORAL_NAMESPACE, "
            "TEMPORAL_TASK_QUEUE, PREDICTION_BACKEND, PREDICTION_API_BASE_URL, REPLICATE_API_TOKEN, ..."
        )
    )
    parser.add_argument("--task-queue", help="Override TEMPORAL_TASK_QUEUE")
    parser.add_argument("--version", action="version", version="Video Maker Worker v1.0.0")
    return parser.parse_args(argv)


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main(parse_args())))
    except KeyboardInterrupt:
        print("\nShutdown complete.")
