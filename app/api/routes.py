from __future__ import annotations

import asyncio
import logging
import threading
from typing import Optional, Union

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse

from app.core.config import Settings, get_settings
from app.dependencies import get_pipeline
from app.schemas import ErrorResponse, ProcessedImageResponse
from backdrop import (
    PipelineCancelledError,
    PipelineError,
    PipelineFailure,
    PipelineOrchestrator,
    PipelineResult,
    PipelineTimeoutError,
)

logger = logging.getLogger(__name__)

api_router = APIRouter(prefix="/api/v1", tags=["images"])

DISCONNECT_POLL_SECONDS = 0.5

ERROR_STATUS_CODES = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "codec": 422,
    "matte_service": status.HTTP_502_BAD_GATEWAY,
    "timeout": status.HTTP_504_GATEWAY_TIMEOUT,
    "cancelled": 499,
}


def _parse_blur_amount(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    try:
        amount = float(value)
    except ValueError:
        return None
    # Zero and NaN fall back to the configured default.
    if not amount or amount != amount:
        return None
    return amount


def _failure_response(failure: PipelineFailure) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(failure.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    body = ErrorResponse(
        error=failure.message,
        kind=failure.kind,
        stage=failure.stage,
        upstream_status=failure.upstream_status,
        reason=failure.reason,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _run_with_deadline(
    request: Request,
    pipeline: PipelineOrchestrator,
    timeout: float,
    data: bytes,
    mime_type: Optional[str],
    filename: Optional[str],
    blur_amount: Optional[float],
) -> PipelineResult:
    """Run the pipeline off the event loop, bounded by ``timeout`` and client disconnects."""

    cancel_event = threading.Event()
    task = asyncio.ensure_future(
        asyncio.to_thread(
            pipeline.process_image,
            data,
            mime_type,
            filename,
            blur_amount,
            cancel_event,
        )
    )
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    try:
        while not task.done():
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PipelineTimeoutError(f"Processing exceeded {timeout:g}s")
            await asyncio.wait({task}, timeout=min(DISCONNECT_POLL_SECONDS, remaining))
            if not task.done() and await request.is_disconnected():
                raise PipelineCancelledError("Client disconnected")
    except PipelineError as exc:
        # The worker thread cannot be interrupted; stop it at the next stage boundary.
        cancel_event.set()
        logger.warning("Abandoning pipeline run: %s", exc.message)
        return PipelineResult(
            status="failed",
            error=PipelineFailure(kind=exc.kind, message=exc.message, stage="request"),
        )
    return task.result()


@api_router.post(
    "/process-image",
    response_model=ProcessedImageResponse,
    response_model_by_alias=True,
    name="process_image",
)
async def process_image(
    request: Request,
    image: Optional[UploadFile] = File(None),
    blur_amount: Optional[str] = Form(None, alias="blurAmount"),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
    settings: Settings = Depends(get_settings),
) -> Union[ProcessedImageResponse, JSONResponse]:
    data = b""
    mime_type: Optional[str] = None
    filename: Optional[str] = None
    if image is not None:
        data = await image.read()
        mime_type = image.content_type
        filename = image.filename
        await image.close()

    logger.info("Processing upload %s (%s, %d bytes)", filename, mime_type, len(data))
    outcome = await _run_with_deadline(
        request,
        pipeline,
        settings.request_timeout_seconds,
        data,
        mime_type,
        filename,
        _parse_blur_amount(blur_amount),
    )
    if outcome.error is not None:
        return _failure_response(outcome.error)

    result = outcome.result
    return ProcessedImageResponse(
        original=result.original,
        no_background=result.no_background,
        blurred_background=result.blurred_background,
        combined=result.combined,
        width=result.width,
        height=result.height,
    )
