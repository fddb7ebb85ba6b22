"""Storage event notification parsing.

Accepts the three shapes the worker sees in practice:

* an S3 event notification (``{"Records": [{"s3": ...}]}``),
* an SQS message whose body is such a notification,
* an SQS batch (``{"Records": [{"eventSource": "aws:sqs", ...}]}``).

Object keys arrive URL-encoded (``+`` for spaces) and are decoded here.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib.parse import unquote_plus

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from detectx.errors import MalformedEvent
from detectx.models import UploadEvent

logger = logging.getLogger(__name__)

SQS_EVENT_SOURCE = "aws:sqs"
TEST_EVENT = "s3:TestEvent"


class _Bucket(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)


class _Object(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: str = Field(min_length=1)
    sequencer: str | None = None


class _S3Entity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    bucket: _Bucket
    object: _Object


class S3EventRecord(BaseModel):
    """One record of an S3 event notification."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    event_name: str = Field(default="ObjectCreated:Put", alias="eventName")
    event_time: datetime | None = Field(default=None, alias="eventTime")
    s3: _S3Entity

    def to_upload_event(self, event_id: str | None = None) -> UploadEvent:
        return UploadEvent(
            bucket=self.s3.bucket.name,
            key=unquote_plus(self.s3.object.key),
            event_id=event_id or self.s3.object.sequencer,
            event_time=self.event_time,
        )


@dataclass(frozen=True)
class QueuedMessage:
    """An SQS message whose body should carry an S3 notification."""

    message_id: str
    body: str

    def upload_events(self) -> list[UploadEvent]:
        return parse_sqs_body(self.body, self.message_id)


def _records(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, dict):
        raise MalformedEvent(f"Expected a JSON object, got {type(payload).__name__}")
    records = payload.get("Records")
    if records is None:
        return []
    if not isinstance(records, list):
        raise MalformedEvent("'Records' must be a list")
    return records


def parse_s3_notification(payload: Any, event_id: str | None = None) -> list[UploadEvent]:
    """Extract object-created upload events from an S3 notification.

    Test events and non-creation events yield nothing.
    """
    if isinstance(payload, dict) and payload.get("Event") == TEST_EVENT:
        logger.debug("Ignoring %s", TEST_EVENT)
        return []

    events: list[UploadEvent] = []
    for raw in _records(payload):
        try:
            record = S3EventRecord.model_validate(raw)
        except ValidationError as exc:
            raise MalformedEvent(f"Invalid S3 event record: {exc.error_count()} error(s)") from exc
        if not record.event_name.startswith("ObjectCreated"):
            logger.debug("Ignoring %s for %s", record.event_name, record.s3.object.key)
            continue
        events.append(record.to_upload_event(event_id))
    return events


def parse_sqs_body(body: str, message_id: str | None = None) -> list[UploadEvent]:
    """Decode an SQS message body that wraps an S3 notification."""
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise MalformedEvent("SQS message body is not valid JSON") from exc
    return parse_s3_notification(payload, event_id=message_id)


def is_sqs_batch(payload: Any) -> bool:
    """Return True if the payload is an SQS batch delivered to a function."""
    records = payload.get("Records") if isinstance(payload, dict) else None
    return bool(records) and isinstance(records, list) and all(
        isinstance(r, dict) and r.get("eventSource") == SQS_EVENT_SOURCE for r in records
    )


def parse_sqs_batch(payload: dict[str, Any]) -> list[QueuedMessage]:
    """Split an SQS batch into messages, keeping message ids for partial failures."""
    messages: list[QueuedMessage] = []
    for raw in _records(payload):
        message_id = raw.get("messageId")
        body = raw.get("body")
        if not message_id or not isinstance(body, str):
            raise MalformedEvent("SQS record is missing 'messageId' or 'body'")
        messages.append(QueuedMessage(message_id=message_id, body=body))
    return messages
