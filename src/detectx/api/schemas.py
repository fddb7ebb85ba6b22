"""Pydantic request/response schemas for the DetectX API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class UploadRequest(BaseModel):
    """Request for a pre-signed upload URL."""

    filename: str | None = Field(default=None, max_length=1024)


class UploadResponse(BaseModel):
    """A time-limited, PUT-only upload URL."""

    model_config = ConfigDict(populate_by_name=True)

    put_presigned_url: str = Field(alias="putPresignedUrl")


class EventOutcome(BaseModel):
    """Processing outcome for one upload event."""

    model_config = ConfigDict(populate_by_name=True)

    status: str = Field(description="'classified', 'cache_hit', 'converged', 'skipped', 'failed' or 'retry'")
    bucket: str
    key: str
    fingerprint: str | None = None
    retryable: bool
    source_locator: str | None = Field(default=None, alias="sourceLocator")
    is_match: bool | None = Field(default=None, alias="isMatch")
    error: str | None = None


class ProcessEventsResponse(BaseModel):
    """Outcomes for every record of a storage notification."""

    outcomes: list[EventOutcome]


class ClassificationRecordResponse(BaseModel):
    """A stored classification record."""

    model_config = ConfigDict(populate_by_name=True)

    fingerprint: str
    source_locator: str = Field(alias="sourceLocator")
    is_match: bool = Field(alias="isMatch")
    created_at: datetime = Field(alias="createdAt")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    target_label: str
    clients_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
