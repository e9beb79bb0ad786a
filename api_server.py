#!/usr/bin/env python3
"""
FastAPI Server for Video Maker Batches

This module exposes the batch API over HTTP:

- In-process batches run by the BatchManager (/batches)
- Durable batches run as VideoMakerWorkflow on Temporal (/workflows)
- Health check
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from temporalio.service import RPCError, RPCStatusCode

from config.retry_policies import ValidationError
from config.settings import get_config, setup_logging
from models.core_models import BatchRequest, BatchResult
from utils.temporal_client import TemporalBatchClient, TemporalUnavailableError
from workflows.batch_manager import BatchManager


logger = logging.getLogger(__name__)


class BatchStartResponse(BaseModel):
    """Response to a batch submission."""
    batch_id: str = Field(..., description="Batch identifier")
    status: str = Field(..., description="Batch status right after submission")
    item_count: int = Field(..., description="Number of items created")
    workflow_id: Optional[str] = Field(None, description="Temporal workflow ID, for durable batches")
    timestamp: datetime = Field(default_factory=datetime.now, description="Response timestamp")


class CancelRequest(BaseModel):
    """Optional body of a cancel request."""
    reason: str = Field(default="Batch cancelled", description="Reason recorded on cancelled stages")


# Initialize FastAPI app
app = FastAPI(
    title="Video Maker Batch API",
    description="Two-phase image-to-video batch processing: prompt analysis, then video generation",
    version="1.0.0"
)

batch_manager: Optional[BatchManager] = None
temporal_batch_client: Optional[TemporalBatchClient] = None


def get_batch_manager() -> BatchManager:
    global batch_manager
    if batch_manager is None:
        batch_manager = BatchManager.from_config()
    return batch_manager


def get_temporal_batch_client() -> TemporalBatchClient:
    global temporal_batch_client
    if temporal_batch_client is None:
        temporal_batch_client = TemporalBatchClient()
    return temporal_batch_client


@app.on_event("shutdown")
async def shutdown_event():
    """Cancel in-process batches and release the HTTP client."""
    logger.info("Shutting down Video Maker Batch API server")
    if batch_manager is not None:
        await batch_manager.shutdown()


@app.exception_handler(TemporalUnavailableError)
async def temporal_unavailable_handler(request: Request, exc: TemporalUnavailableError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def _temporal_error(workflow_id: str, error: RPCError) -> HTTPException:
    if error.status == RPCStatusCode.NOT_FOUND:
        return HTTPException(status_code=404, detail=f"Workflow {workflow_id} not found")
    logger.error(f"Temporal request for {workflow_id} failed: {error}")
    return HTTPException(status_code=502, detail=f"Temporal request failed: {error.message}")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    app_config = get_config()
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "prediction_backend": app_config.prediction.backend,
        "task_queue": app_config.temporal.task_queue
    }


@app.post("/batches", response_model=BatchStartResponse, status_code=202)
async def start_batch(request: BatchRequest, manager: BatchManager = Depends(get_batch_manager)):
    """Start an in-process batch.

    Returns immediately; progress is read with GET /batches/{batch_id}.
    """
    try:
        handle = manager.start_batch(
            request.image_urls,
            batch_id=request.batch_id,
            reference_images=request.reference_images
        )
    except ValidationError as e:
        logger.warning(f"Batch rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    return BatchStartResponse(
        batch_id=handle.batch_id,
        status="running",
        item_count=len(handle.items)
    )


@app.get("/batches/{batch_id}", response_model=BatchResult)
async def get_batch(batch_id: str, manager: BatchManager = Depends(get_batch_manager)):
    """Current snapshot of an in-process batch."""
    result = manager.get_batch(batch_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")
    return result


@app.post("/batches/{batch_id}/cancel")
async def cancel_batch(
    batch_id: str,
    body: Optional[CancelRequest] = None,
    manager: BatchManager = Depends(get_batch_manager)
):
    """Request cooperative cancellation of an in-process batch."""
    reason = body.reason if body else "Batch cancelled"
    if not manager.cancel_batch(batch_id, reason):
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")
    return {
        "success": True,
        "message": f"Cancellation requested for batch {batch_id}",
        "timestamp": datetime.now().isoformat()
    }


@app.delete("/batches/{batch_id}")
async def clear_batch(batch_id: str, manager: BatchManager = Depends(get_batch_manager)):
    """Discard a finished batch."""
    try:
        cleared = manager.clear_batch(batch_id)
    except ValidationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not cleared:
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")
    return {"success": True, "message": f"Batch {batch_id} cleared"}


@app.post("/workflows/batches", response_model=BatchStartResponse, status_code=202)
async def start_batch_workflow(
    request: BatchRequest,
    temporal: TemporalBatchClient = Depends(get_temporal_batch_client)
):
    """Start a durable batch as a VideoMakerWorkflow."""
    try:
        workflow_id = await temporal.start_batch_workflow(request)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RPCError as e:
        if e.status == RPCStatusCode.ALREADY_EXISTS:
            raise HTTPException(status_code=409, detail=f"Workflow {request.batch_id} already exists")
        raise _temporal_error(request.batch_id or "", e)

    return BatchStartResponse(
        batch_id=workflow_id,
        status="running",
        item_count=len(request.image_urls),
        workflow_id=workflow_id
    )


@app.get("/workflows/{workflow_id}/progress")
async def get_workflow_progress(
    workflow_id: str,
    temporal: TemporalBatchClient = Depends(get_temporal_batch_client)
):
    """Per-stage counts and per-item status of a durable batch."""
    try:
        progress = await temporal.get_progress(workflow_id)
    except RPCError as e:
        raise _temporal_error(workflow_id, e)

    return {
        "workflow_id": workflow_id,
        "progress": progress,
        "timestamp": datetime.now().isoformat()
    }


@app.post("/workflows/{workflow_id}/cancel")
async def cancel_batch_workflow(
    workflow_id: str,
    body: Optional[CancelRequest] = None,
    temporal: TemporalBatchClient = Depends(get_temporal_batch_client)
):
    """Send the cancel_batch signal to a durable batch."""
    reason = body.reason if body else "Batch cancelled"
    try:
        await temporal.cancel_batch(workflow_id, reason)
    except RPCError as e:
        raise _temporal_error(workflow_id, e)

    return {
        "success": True,
        "message": f"Cancellation signal sent to workflow {workflow_id}",
        "timestamp": datetime.now().isoformat()
    }


if __name__ == "__main__":
    import argparse

    app_config = get_config()

    parser = argparse.ArgumentParser(description="Video Maker Batch API Server")
    parser.add_argument("--host", default=app_config.api_server.host, help="Host to bind to")
    parser.add_argument("--port", type=int, default=app_config.api_server.port, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    args = parser.parse_args()

    setup_logging(app_config.logging)

    errors = app_config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise SystemExit(1)

    logger.info(f"Starting server on {args.host}:{args.port}")
    logger.info(f"Prediction backend: {app_config.prediction.backend} ({app_config.prediction.base_url})")
    logger.info(f"Temporal server: {app_config.temporal.host}")

    uvicorn.run(
        "api_server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=app_config.logging.level.lower()
    )
