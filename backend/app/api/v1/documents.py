"""
Document Pipeline API Router

  POST /api/v1/documents/upload                      run the ingestion pipeline
  GET  /api/v1/documents/upload-progress/{token}     SSE progress stream
  GET  /api/v1/documents                             list an owner's records
  GET  /api/v1/documents/{document_id}               fetch one record
  POST /api/v1/documents/{document_id}/reprocess     re-enrich a stored document
  POST /api/v1/documents/reprocess                   batch re-enrichment by URL
  POST /api/v1/documents/improve-categories          keyword sweep of generic records

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Size guard on Content-Length, then on the read body  │
  │ 2. IngestionOrchestrator.ingest() — staging, enrichment,│
  │    normalization, persistence, cleanup                  │
  │ 3. 201 with the record; 202 when enrichment degraded    │
  └─────────────────────────────────────────────────────────┘

SSE stream (GET /upload-progress/{upload_token}):
  The client connects before calling POST /upload with the same
  upload_token form field and receives one pipeline_progress event per
  stage: { stage, percent, message }. The stream closes on done/failed.

Pipeline errors are not caught here; the handlers in app.main map them
to the structured ErrorResponse envelope.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import AsyncGenerator, Optional
from uuid import UUID

from fastapi import APIRouter, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, StreamingResponse

from app.api.deps import Coordinator, Metadata, Orchestrator
from app.core.config import settings
from app.schemas.documents import (
    BatchReprocessRequest,
    BatchReprocessResult,
    CategoryImprovementReport,
    DocumentRecord,
    EnsembleResult,
    ErrorResponse,
    PipelineErrors,
    ProgressEvent,
    ReprocessRequest,
)
from app.services.ingestion import IngestionRequest, PipelineStage

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)


# ---------------------------------------------------------------------------
# In-memory SSE progress store
# Key: upload_token, Value: asyncio.Queue of ProgressEvent dicts
# Single-process only; a multi-instance deployment needs a shared pub/sub.
# ---------------------------------------------------------------------------

_PROGRESS_QUEUES: dict[str, asyncio.Queue] = {}
_UPLOAD_TOKEN_TTL = 300  # 5 minutes
_TERMINAL_STAGES = (PipelineStage.DONE.value, PipelineStage.FAILED.value)


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=DocumentRecord,
    status_code=status.HTTP_201_CREATED,
    summary="Upload and enrich a document",
    description=(
        "Stages the file, enriches it, converts it to PDF where possible and "
        "stores it. Returns 201 with the record, or 202 when enrichment was "
        "unavailable and default metadata was stored."
    ),
    responses={
        201: {"model": DocumentRecord, "description": "Document stored and enriched"},
        202: {"model": DocumentRecord, "description": "Document stored with default metadata"},
        400: {"model": ErrorResponse, "description": "Empty file or missing owner"},
        413: {"model": ErrorResponse, "description": "File exceeds the upload limit"},
        500: {"model": ErrorResponse, "description": "Staging or persistence failed"},
    },
)
async def upload_document(
    request:      Request,
    orchestrator: Orchestrator,
    file:         UploadFile    = File(..., description="Document file (PDF, DOCX, image or text)"),
    owner_id:     str           = Form(..., description="Owner the document is stored under"),
    display_name: Optional[str] = Form(None, max_length=255),
    upload_token: Optional[str] = Form(None, description="Token of an open upload-progress stream"),
) -> JSONResponse:
    limit = settings.max_upload_bytes

    # Guard: reject oversized requests before reading the body
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit + 4096:  # +4KB form overhead
        return _too_large(int(content_length), limit)

    data = await file.read()
    if len(data) > limit:
        return _too_large(len(data), limit)

    def on_progress(event: ProgressEvent) -> None:
        if upload_token:
            publish_progress(upload_token, event.model_dump(mode="json"))

    try:
        outcome = await orchestrator.ingest(
            IngestionRequest(
                owner_id=owner_id,
                filename=file.filename or "",
                data=data,
                mime_type=file.content_type or "",
                display_name=display_name,
            ),
            on_progress=on_progress,
        )
    except Exception as exc:
        if upload_token:
            publish_progress(
                upload_token,
                ProgressEvent(stage=PipelineStage.FAILED.value, message=str(exc)).model_dump(mode="json"),
            )
        raise

    record = outcome.record
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED if outcome.degraded else status.HTTP_201_CREATED,
        content=record.model_dump(mode="json"),
        headers={
            "X-Document-ID": str(record.id),
            "Location":      f"/api/v1/documents/{record.id}",
        },
    )


def _too_large(size_bytes: int, limit: int) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        content=PipelineErrors.file_too_large(size_bytes, limit).model_dump(mode="json"),
    )


# ---------------------------------------------------------------------------
# GET /documents/upload-progress/{upload_token}  — SSE stream
# ---------------------------------------------------------------------------

@router.get(
    "/upload-progress/{upload_token}",
    summary="Stream pipeline progress via Server-Sent Events",
    description=(
        "Connect via EventSource before calling POST /upload with the same "
        "upload_token. Stream auto-closes when the pipeline finishes or after 5 minutes."
    ),
    response_class=StreamingResponse,
)
async def stream_upload_progress(upload_token: str, request: Request) -> StreamingResponse:
    queue: asyncio.Queue = asyncio.Queue(maxsize=100)
    _PROGRESS_QUEUES[upload_token] = queue

    async def event_generator() -> AsyncGenerator[str, None]:
        start = time.monotonic()
        try:
            yield _sse_event(
                "connected",
                {"message": "Progress stream connected", "token": upload_token},
            )

            while True:
                if await request.is_disconnected():
                    logger.debug("SSE client disconnected | token=%s", upload_token)
                    break

                if time.monotonic() - start > _UPLOAD_TOKEN_TTL:
                    yield _sse_event("timeout", {"message": "Progress stream expired"})
                    break

                try:
                    event: dict = await asyncio.wait_for(queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    # Keepalive comment so proxies do not close the connection
                    yield ": keepalive\n\n"
                    continue

                yield _sse_event(event.get("event", "pipeline_progress"), event)

                if event.get("stage") in _TERMINAL_STAGES:
                    yield _sse_event("done", {"message": "Pipeline finished", "stage": event["stage"]})
                    break

        finally:
            _PROGRESS_QUEUES.pop(upload_token, None)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control":     "no-cache",
            "Connection":        "keep-alive",
            "X-Accel-Buffering": "no",  # disable nginx buffering for SSE
        },
    )


# ---------------------------------------------------------------------------
# GET /documents  — list an owner's documents
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=list[DocumentRecord],
    summary="List an owner's documents",
)
async def list_documents(
    metadata: Metadata,
    owner_id: str = Query(..., min_length=1),
) -> list[DocumentRecord]:
    return await metadata.list_for_owner(owner_id)


# ---------------------------------------------------------------------------
# POST /documents/reprocess  — batch by URL
# ---------------------------------------------------------------------------

@router.post(
    "/reprocess",
    response_model=BatchReprocessResult,
    summary="Re-enrich a batch of documents by URL",
    description=(
        "Sends the URLs to the batch endpoint in one call; if that fails, "
        "each URL is downloaded and enriched in turn."
    ),
    responses={
        400: {"model": ErrorResponse},
    },
)
async def reprocess_batch(body: BatchReprocessRequest, coordinator: Coordinator) -> BatchReprocessResult:
    return await coordinator.reprocess_batch(body.urls, body.mode)


# ---------------------------------------------------------------------------
# POST /documents/improve-categories
# ---------------------------------------------------------------------------

@router.post(
    "/improve-categories",
    response_model=CategoryImprovementReport,
    summary="Re-classify an owner's generically categorized documents",
)
async def improve_categories(
    coordinator: Coordinator,
    owner_id: str = Query(..., min_length=1),
) -> CategoryImprovementReport:
    return await coordinator.improve_categories(owner_id)


# ---------------------------------------------------------------------------
# GET /documents/{document_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    response_model=DocumentRecord,
    summary="Fetch one document record",
    responses={
        404: {"model": ErrorResponse},
    },
)
async def get_document(document_id: UUID, metadata: Metadata) -> DocumentRecord:
    record = await metadata.get(document_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=PipelineErrors.document_not_found(document_id).model_dump(),
        )
    return record


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/reprocess
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/reprocess",
    response_model=EnsembleResult,
    summary="Re-enrich a stored document on one or both engines",
    responses={
        400: {"model": ErrorResponse, "description": "Mode needs an engine that is not configured"},
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def reprocess_document(
    document_id: UUID,
    coordinator: Coordinator,
    body: ReprocessRequest | None = None,
) -> EnsembleResult:
    body = body or ReprocessRequest()
    if body.use_stored_text:
        return await coordinator.reprocess_text(document_id, body.mode)
    return await coordinator.reprocess(document_id, body.mode)


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------

def _sse_event(event_name: str, data: dict) -> str:
    """Format a Server-Sent Event with event name and JSON data."""
    return f"event: {event_name}\ndata: {json.dumps(data)}\n\n"


def publish_progress(upload_token: str, event: dict) -> None:
    """Push a progress event to the SSE queue for the given upload token."""
    queue = _PROGRESS_QUEUES.get(upload_token)
    if queue is not None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.debug("SSE queue full for token=%s, dropping event", upload_token)
