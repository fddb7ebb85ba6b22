"""Core data model: fingerprints, classification records and insert outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import NewType
from urllib.parse import quote

ContentFingerprint = NewType("ContentFingerprint", str)


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ClassificationRecord:
    """The persisted, write-once answer for one content fingerprint."""

    fingerprint: ContentFingerprint
    source_locator: str
    is_match: bool
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class InsertedNew:
    """The conditional insert created the record."""

    record: ClassificationRecord


@dataclass(frozen=True)
class AlreadyExists:
    """A record for the fingerprint was already stored; it is returned unchanged."""

    existing: ClassificationRecord


InsertOutcome = InsertedNew | AlreadyExists


@dataclass(frozen=True)
class UploadEvent:
    """One object-created notification for a newly stored object."""

    bucket: str
    key: str
    event_id: str | None = None
    event_time: datetime | None = None

    @property
    def source_locator(self) -> str:
        return f"https://{self.bucket}.s3.amazonaws.com/{quote(self.key)}"


@dataclass(frozen=True)
class ProcessingResult:
    """What the pipeline reports for an event."""

    source_locator: str
    is_match: bool

    def to_dict(self) -> dict[str, object]:
        return {"sourceLocator": self.source_locator, "isMatch": self.is_match}
