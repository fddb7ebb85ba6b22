"""Result store: write-once classification records keyed by content fingerprint.

All mutation goes through ``try_insert``, a single atomic conditional write.
It either creates the record or hands back the one already stored, so the
lookup-then-write race between duplicate events never overwrites an answer.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from detectx.errors import InvariantViolation, TransientUpstreamError, client_error_code
from detectx.models import (
    AlreadyExists,
    ClassificationRecord,
    ContentFingerprint,
    InsertedNew,
    InsertOutcome,
)

if TYPE_CHECKING:
    from botocore.client import BaseClient

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ResultStore(Protocol):
    """Protocol for the shared fingerprint -> record mapping."""

    def lookup(self, fingerprint: ContentFingerprint) -> ClassificationRecord | None:
        """Return the stored record, or None if the fingerprint is unknown."""
        ...

    def try_insert(self, record: ClassificationRecord) -> InsertOutcome:
        """Create the record only if none exists for its fingerprint."""
        ...


# ---------------------------------------------------------------------------
# DynamoDB implementation
# ---------------------------------------------------------------------------

KEY_ATTRIBUTE = "Fingerprint"
_CONDITION_FAILED = "ConditionalCheckFailedException"


def record_to_item(record: ClassificationRecord) -> dict[str, dict[str, Any]]:
    return {
        KEY_ATTRIBUTE: {"S": record.fingerprint},
        "SourceLocator": {"S": record.source_locator},
        "IsMatch": {"BOOL": record.is_match},
        "CreatedAt": {"S": record.created_at.isoformat()},
    }


def item_to_record(item: dict[str, dict[str, Any]]) -> ClassificationRecord:
    """Decode a stored item; a record missing any attribute is a broken invariant."""
    try:
        return ClassificationRecord(
            fingerprint=ContentFingerprint(item[KEY_ATTRIBUTE]["S"]),
            source_locator=item["SourceLocator"]["S"],
            is_match=item["IsMatch"]["BOOL"],
            created_at=datetime.fromisoformat(item["CreatedAt"]["S"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise InvariantViolation(f"Partially written record: {item!r}", service_name="dynamodb") from exc


class DynamoResultStore:
    """Result store backed by a DynamoDB table with ``Fingerprint`` as hash key."""

    def __init__(self, client: BaseClient, table_name: str) -> None:
        self._client = client
        self._table_name = table_name

    def lookup(self, fingerprint: ContentFingerprint) -> ClassificationRecord | None:
        try:
            response = self._client.get_item(
                TableName=self._table_name,
                Key={KEY_ATTRIBUTE: {"S": fingerprint}},
                ConsistentRead=True,
            )
        except (ClientError, BotoCoreError) as exc:
            raise TransientUpstreamError(f"GetItem failed: {_describe(exc)}", service_name="dynamodb") from exc

        item = response.get("Item")
        return item_to_record(item) if item else None

    def try_insert(self, record: ClassificationRecord) -> InsertOutcome:
        try:
            self._client.put_item(
                TableName=self._table_name,
                Item=record_to_item(record),
                ConditionExpression="attribute_not_exists(#fp)",
                ExpressionAttributeNames={"#fp": KEY_ATTRIBUTE},
                ReturnValuesOnConditionCheckFailure="ALL_OLD",
            )
        except ClientError as exc:
            if client_error_code(exc) != _CONDITION_FAILED:
                raise TransientUpstreamError(f"PutItem failed: {_describe(exc)}", service_name="dynamodb") from exc
            return AlreadyExists(self._winning_record(record.fingerprint, exc.response.get("Item")))
        except BotoCoreError as exc:
            raise TransientUpstreamError(f"PutItem failed: {_describe(exc)}", service_name="dynamodb") from exc

        return InsertedNew(record)

    def _winning_record(
        self, fingerprint: ContentFingerprint, old_item: dict[str, dict[str, Any]] | None
    ) -> ClassificationRecord:
        if old_item:
            return item_to_record(old_item)
        existing = self.lookup(fingerprint)
        if existing is None:
            raise InvariantViolation(
                f"Conditional insert for {fingerprint} conflicted but no record is stored",
                service_name="dynamodb",
            )
        return existing


def _describe(exc: Exception) -> str:
    return client_error_code(exc) or str(exc)


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryResultStore:
    """Process-local result store with the same conditional-insert semantics.

    Used for local runs and tests; the lock stands in for the atomicity the
    table provides.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[ContentFingerprint, ClassificationRecord] = {}

    def lookup(self, fingerprint: ContentFingerprint) -> ClassificationRecord | None:
        with self._lock:
            return self._records.get(fingerprint)

    def try_insert(self, record: ClassificationRecord) -> InsertOutcome:
        with self._lock:
            existing = self._records.get(record.fingerprint)
            if existing is not None:
                return AlreadyExists(existing)
            self._records[record.fingerprint] = record
            return InsertedNew(record)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
