"""Request dependencies: API key authentication and app-state accessors."""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from detectx.config import Settings  # noqa: TC001
from detectx.pipeline.coordinator import IdempotencyCoordinator  # noqa: TC001
from detectx.pipeline.pool import ProcessingPool  # noqa: TC001
from detectx.pipeline.result_store import ResultStore  # noqa: TC001
from detectx.uploads import UploadAuthorizer  # noqa: TC001

_bearer_scheme = HTTPBearer(auto_error=False)


def get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_pool(request: Request) -> ProcessingPool:
    pool: ProcessingPool = request.app.state.processing_pool
    return pool


def _require(request: Request, name: str, what: str) -> object:
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{what} is not configured",
        )
    return component


def get_coordinator(request: Request) -> IdempotencyCoordinator:
    coordinator: IdempotencyCoordinator = _require(request, "coordinator", "Event processing")  # type: ignore[assignment]
    return coordinator


def get_result_store(request: Request) -> ResultStore:
    store: ResultStore = _require(request, "result_store", "Result store")  # type: ignore[assignment]
    return store


def get_upload_authorizer(request: Request) -> UploadAuthorizer:
    authorizer: UploadAuthorizer = _require(request, "upload_authorizer", "Upload bucket")  # type: ignore[assignment]
    return authorizer


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against DETECTX_API_KEY, when one is configured."""
    settings = get_settings_from_request(request)
    if settings.api_key is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), settings.api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
