"""API route definitions."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from detectx.api.dependencies import (
    get_coordinator,
    get_pool,
    get_result_store,
    get_settings_from_request,
    get_upload_authorizer,
    verify_api_key,
)
from detectx.api.schemas import (
    ClassificationRecordResponse,
    ErrorResponse,
    EventOutcome,
    HealthResponse,
    ProcessEventsResponse,
    UploadRequest,
    UploadResponse,
)
from detectx.errors import InvariantViolation, MalformedEvent, TransientUpstreamError
from detectx.models import ContentFingerprint
from detectx.pipeline.coordinator import IdempotencyCoordinator  # noqa: TC001
from detectx.pipeline.events import parse_s3_notification
from detectx.pipeline.pool import ProcessingPool  # noqa: TC001
from detectx.pipeline.result_store import ResultStore  # noqa: TC001
from detectx.uploads import UploadAuthorizer  # noqa: TC001

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_BUSY = "Too many concurrent requests, try again later"


@router.post(
    "/uploads",
    response_model=UploadResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Issue a pre-signed upload URL",
)
async def create_upload(
    body: UploadRequest,
    authorizer: Annotated[UploadAuthorizer, Depends(get_upload_authorizer)],
) -> UploadResponse:
    """Return a time-limited PUT URL for uploading one image."""
    try:
        url = authorizer.presign(body.filename)
    except TransientUpstreamError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return UploadResponse(put_presigned_url=url)


@router.post(
    "/events",
    response_model=ProcessEventsResponse,
    responses={
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ProcessEventsResponse},
    },
    summary="Process a storage event notification",
)
async def process_events(
    payload: Annotated[dict[str, Any], Body()],
    coordinator: Annotated[IdempotencyCoordinator, Depends(get_coordinator)],
    pool: Annotated[ProcessingPool, Depends(get_pool)],
) -> JSONResponse | ProcessEventsResponse:
    """Classify every uploaded object in the notification.

    Responds 503 when any record needs redelivery; the other records are
    already persisted and will be cache hits when the notification is retried.
    """
    try:
        events = parse_s3_notification(payload)
    except MalformedEvent as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    outcomes = []
    for event in events:
        try:
            outcomes.append(await pool.run(coordinator.process, event))
        except TimeoutError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_BUSY) from exc
        except InvariantViolation as exc:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    response = ProcessEventsResponse(outcomes=[EventOutcome.model_validate(o.to_dict()) for o in outcomes])
    if any(outcome.retryable for outcome in outcomes):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json", by_alias=True),
        )
    return response


@router.get(
    "/results/{fingerprint}",
    response_model=ClassificationRecordResponse,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Look up the stored result for a content fingerprint",
)
async def get_result(
    fingerprint: str,
    store: Annotated[ResultStore, Depends(get_result_store)],
    pool: Annotated[ProcessingPool, Depends(get_pool)],
) -> ClassificationRecordResponse:
    """Return the classification record stored for ``fingerprint``."""
    try:
        record = await pool.run(store.lookup, ContentFingerprint(fingerprint))
    except TimeoutError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_BUSY) from exc
    except TransientUpstreamError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No result for {fingerprint}")
    return ClassificationRecordResponse(
        fingerprint=record.fingerprint,
        source_locator=record.source_locator,
        is_match=record.is_match,
        created_at=record.created_at,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_settings_from_request(request)
    pool = get_pool(request)
    registry = request.app.state.client_registry
    return HealthResponse(
        status="ok",
        target_label=settings.target_label,
        clients_loaded=registry.loaded_services(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )
