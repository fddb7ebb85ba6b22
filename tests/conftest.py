"""Shared fakes and fixtures for the DetectX test suite."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import boto3
import pytest

from detectx.errors import InvariantViolation, NotFound
from detectx.models import ClassificationRecord, ContentFingerprint, InsertOutcome, UploadEvent
from detectx.pipeline.coordinator import IdempotencyCoordinator
from detectx.pipeline.result_store import InMemoryResultStore

if TYPE_CHECKING:
    from botocore.client import BaseClient

BUCKET = "uploads"


class FakeResolver:
    """Resolves fingerprints from a fixed key -> fingerprint table."""

    def __init__(self, fingerprints: dict[str, str] | None = None) -> None:
        self.fingerprints = dict(fingerprints or {})
        self.error: Exception | None = None
        self.calls: list[tuple[str, str]] = []

    def resolve(self, bucket: str, key: str) -> ContentFingerprint:
        self.calls.append((bucket, key))
        if self.error is not None:
            raise self.error
        try:
            return ContentFingerprint(self.fingerprints[key])
        except KeyError:
            raise NotFound(f"s3://{bucket}/{key} does not exist", service_name="s3") from None


class FakeClassifier:
    """Labels images from a fixed key -> label-names table and counts calls."""

    target_label = "Cat"

    def __init__(self, labels: dict[str, list[str]] | None = None) -> None:
        self.labels = dict(labels or {})
        self.error: Exception | None = None
        self.errors_by_key: dict[str, Exception] = {}
        self.barrier: threading.Barrier | None = None
        self._lock = threading.Lock()
        self.calls: list[str] = []

    def classify(self, bucket: str, key: str) -> bool:
        with self._lock:
            self.calls.append(key)
        if self.barrier is not None:
            self.barrier.wait(timeout=5)
        if key in self.errors_by_key:
            raise self.errors_by_key[key]
        if self.error is not None:
            raise self.error
        return any(name.casefold() == self.target_label.casefold() for name in self.labels.get(key, []))


class RacingStore(InMemoryResultStore):
    """Simulates a concurrent worker winning the insert just before ours."""

    def __init__(self, competing_match: bool) -> None:
        super().__init__()
        self.competing_match = competing_match

    def try_insert(self, record: ClassificationRecord) -> InsertOutcome:
        super().try_insert(
            ClassificationRecord(
                fingerprint=record.fingerprint,
                source_locator="https://uploads.s3.amazonaws.com/other-worker.jpg",
                is_match=self.competing_match,
            )
        )
        return super().try_insert(record)


class BrokenStore(InMemoryResultStore):
    """Reports an impossible conflict for selected fingerprints."""

    def __init__(self, *broken: str) -> None:
        super().__init__()
        self.broken = set(broken)

    def try_insert(self, record: ClassificationRecord) -> InsertOutcome:
        if record.fingerprint in self.broken:
            raise InvariantViolation("Insert conflicted but no record is stored", service_name="dynamodb")
        return super().try_insert(record)


def upload(key: str, bucket: str = BUCKET) -> UploadEvent:
    return UploadEvent(bucket=bucket, key=key)


def s3_notification(*keys: str, bucket: str = BUCKET, event_name: str = "ObjectCreated:Put") -> dict:
    return {
        "Records": [
            {
                "eventVersion": "2.1",
                "eventSource": "aws:s3",
                "eventName": event_name,
                "eventTime": "2024-05-01T12:00:00.000Z",
                "s3": {
                    "bucket": {"name": bucket, "arn": f"arn:aws:s3:::{bucket}"},
                    "object": {"key": key, "size": 1024, "eTag": "ignored", "sequencer": "0055AED6DCD90281E5"},
                },
            }
            for key in keys
        ]
    }


def make_client(service: str) -> BaseClient:
    return boto3.client(
        service,
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture()
def resolver() -> FakeResolver:
    return FakeResolver(
        {
            "cat1.jpg": "abc123",
            "dog1.jpg": "def456",
            "dog-copy.jpg": "def456",
            "notes.txt": "fff000",
        }
    )


@pytest.fixture()
def classifier() -> FakeClassifier:
    return FakeClassifier(
        {
            "cat1.jpg": ["Cat", "Pet", "Animal"],
            "dog1.jpg": ["Dog", "Pet"],
            "dog-copy.jpg": ["Dog", "Pet"],
        }
    )


@pytest.fixture()
def store() -> InMemoryResultStore:
    return InMemoryResultStore()


@pytest.fixture()
def coordinator(
    resolver: FakeResolver, store: InMemoryResultStore, classifier: FakeClassifier
) -> IdempotencyCoordinator:
    return IdempotencyCoordinator(resolver=resolver, store=store, classifier=classifier)
