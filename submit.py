#!/usr/bin/env python3
"""
Video Maker command line

Run a batch in-process, submit it to Temporal, and check, watch or cancel
durable batches.

Examples:
    python submit.py run https://example.com/a.png https://example.com/b.png
    python submit.py submit https://example.com/a.png --batch-id my-batch --wait
    python submit.py status my-batch
    python submit.py watch my-batch --interval 5
    python submit.py cancel my-batch --reason "wrong images"
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from config.retry_policies import ValidationError
from config.settings import get_config, setup_logging
from models.core_models import BatchRequest, ItemStatusEvent
from utils.progress_client import ProgressQueryClient
from utils.temporal_client import TemporalBatchClient, TemporalUnavailableError
from workflows.batch_manager import BatchManager


logger = logging.getLogger(__name__)


def print_event(event: ItemStatusEvent) -> None:
    """Print one status change as it happens."""
    item = event.item
    line = f"[{event.index}] {event.stage.value}: {event.status.value}"
    if event.status.value == "failed" and item.failure_reason:
        line += f" ({item.failure_reason})"
    if event.status.value == "completed" and item.result_url and event.stage.value == "video_generation":
        line += f" -> {item.result_url}"
    print(line, flush=True)


async def run_local(args: argparse.Namespace) -> int:
    """Run a batch in this process and print its result."""
    manager = BatchManager.from_config()
    manager.on_item_status_changed(print_event)

    try:
        handle = manager.start_batch(args.images, batch_id=args.batch_id, reference_images=args.reference)
    except ValidationError as e:
        print(f"Batch rejected: {e}", file=sys.stderr)
        await manager.shutdown()
        return 2

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, manager.cancel_batch, handle.batch_id, "Interrupted by user")
    except NotImplementedError:
        pass

    try:
        result = await manager.wait(handle.batch_id)
    finally:
        await manager.shutdown()

    print(json.dumps(result.to_summary(), indent=2))
    return 0 if result.status.value == "completed" else 1


async def submit_workflow(args: argparse.Namespace) -> int:
    """Start a durable batch on Temporal."""
    client = TemporalBatchClient()
    request = BatchRequest(
        image_urls=args.images,
        reference_images=args.reference or [],
        batch_id=args.batch_id
    )

    workflow_id = await client.start_batch_workflow(request)
    print(f"Submitted batch {workflow_id}")

    if not args.wait:
        return 0

    result = await client.wait_for_result(workflow_id)
    print(json.dumps(result.to_summary(), indent=2))
    return 0 if result.status.value == "completed" else 1


async def show_status(args: argparse.Namespace) -> int:
    async with ProgressQueryClient(api_base_url=args.api_url) as client:
        if args.local:
            result = await client.query_batch_api(args.batch_id)
        elif args.api:
            result = await client.query_progress_api(args.batch_id)
        else:
            result = await client.query_progress_with_fallback(args.batch_id)

        print(client.format_progress_result(result))
        if result.success and args.verbose:
            print(json.dumps(result.progress, indent=2))
        return 0 if result.success else 1


async def watch(args: argparse.Namespace) -> int:
    async with ProgressQueryClient(api_base_url=args.api_url) as client:
        results = await client.monitor_progress(
            args.batch_id,
            interval=args.interval,
            max_iterations=args.max_iterations,
            use_api=args.api
        )
        for i, result in enumerate(results):
            print(f"[{i + 1:2d}] {client.format_progress_result(result)}")
        return 0 if results and results[-1].is_finished else 1


async def cancel(args: argparse.Namespace) -> int:
    client = TemporalBatchClient()
    await client.cancel_batch(args.batch_id, args.reason)
    print(f"Cancellation requested for batch {args.batch_id}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Video Maker batch command line")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text, handler in (
        ("run", "Run a batch in this process", run_local),
        ("submit", "Submit a batch to Temporal", submit_workflow),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("images", nargs="+", help="Image URLs, processed in order")
        command.add_argument("--batch-id", help="Batch identifier (default: generated)")
        command.add_argument("--reference", action="append", help="Reference image URL (repeatable)")
        command.set_defaults(handler=handler)
    subparsers.choices["submit"].add_argument("--wait", action="store_true", help="Wait for the result")

    status = subparsers.add_parser("status", help="Show progress of a batch")
    status.add_argument("batch_id")
    status.add_argument("--api", action="store_true", help="Query the REST API instead of Temporal")
    status.add_argument("--local", action="store_true", help="Batch runs in the API server process")
    status.add_argument("--api-url", help="REST API base URL")
    status.add_argument("-v", "--verbose", action="store_true", help="Print per-item details")
    status.set_defaults(handler=show_status)

    watch_parser = subparsers.add_parser("watch", help="Poll a durable batch until it finishes")
    watch_parser.add_argument("batch_id")
    watch_parser.add_argument("--interval", type=float, default=5.0, help="Seconds between queries")
    watch_parser.add_argument("--max-iterations", type=int, default=720)
    watch_parser.add_argument("--api", action="store_true", help="Query the REST API instead of Temporal")
    watch_parser.add_argument("--api-url", help="REST API base URL")
    watch_parser.set_defaults(handler=watch)

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a durable batch")
    cancel_parser.add_argument("batch_id")
    cancel_parser.add_argument("--reason", default="Batch cancelled")
    cancel_parser.set_defaults(handler=cancel)

    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    app_config = get_config()
    if args.log_level:
        app_config.logging.level = args.log_level
    setup_logging(app_config.logging)

    try:
        return await args.handler(args)
    except (ValidationError, TemporalUnavailableError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
