"""Idempotency coordinator: one classification per distinct content fingerprint.

Per event:

    RESOLVING_FINGERPRINT -> CHECKING_CACHE -> CACHE_HIT
                                            -> CLASSIFYING -> PERSISTING -> DONE
    (any step)            -> FAILED

Events are delivered at least once and may run concurrently with duplicates,
so the coordinator keeps no state of its own. The conditional insert in the
result store is the only synchronization point: when two workers race on a
new fingerprint both may classify, but only one record is stored and the
loser returns the stored answer instead of its own.

Leaf errors are never retried here. ``TransientUpstreamError`` is reported as
retryable and the event source redelivers; ``NotFound`` and
``MalformedContent`` are terminal and acknowledged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from detectx.errors import (
    DetectXError,
    InvariantViolation,
    MalformedContent,
    NotFound,
    TransientUpstreamError,
)
from detectx.models import (
    AlreadyExists,
    ClassificationRecord,
    ContentFingerprint,
    InsertedNew,
    ProcessingResult,
    UploadEvent,
)

if TYPE_CHECKING:
    from detectx.pipeline.classifier import LabelClassifier
    from detectx.pipeline.fingerprint import FingerprintResolver
    from detectx.pipeline.result_store import ResultStore

logger = logging.getLogger(__name__)


class ProcessingState(StrEnum):
    RESOLVING_FINGERPRINT = "resolving_fingerprint"
    CHECKING_CACHE = "checking_cache"
    CACHE_HIT = "cache_hit"
    CLASSIFYING = "classifying"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


class OutcomeStatus(StrEnum):
    CLASSIFIED = "classified"
    CACHE_HIT = "cache_hit"
    CONVERGED = "converged"
    SKIPPED = "skipped"
    FAILED = "failed"
    RETRY = "retry"


@dataclass(frozen=True)
class ProcessingOutcome:
    """Result of running one upload event through the coordinator."""

    event: UploadEvent
    status: OutcomeStatus
    fingerprint: ContentFingerprint | None = None
    result: ProcessingResult | None = None
    error: DetectXError | None = None

    @property
    def retryable(self) -> bool:
        """True when the event source should redeliver the event."""
        return self.status is OutcomeStatus.RETRY

    @property
    def acknowledged(self) -> bool:
        return not self.retryable

    def to_dict(self) -> dict[str, object]:
        doc: dict[str, object] = {
            "status": str(self.status),
            "bucket": self.event.bucket,
            "key": self.event.key,
            "fingerprint": self.fingerprint,
            "retryable": self.retryable,
        }
        if self.result is not None:
            doc.update(self.result.to_dict())
        if self.error is not None:
            doc["error"] = str(self.error)
        return doc


class IdempotencyCoordinator:
    """Runs the resolve -> lookup -> classify -> conditional insert sequence."""

    def __init__(
        self,
        resolver: FingerprintResolver,
        store: ResultStore,
        classifier: LabelClassifier,
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._classifier = classifier

    def process(self, event: UploadEvent) -> ProcessingOutcome:
        """Process one upload event.

        Raises:
            InvariantViolation: If the store reports a state that cannot happen.
        """
        fingerprint: ContentFingerprint | None = None
        try:
            self._enter(event, ProcessingState.RESOLVING_FINGERPRINT)
            fingerprint = self._resolver.resolve(event.bucket, event.key)

            self._enter(event, ProcessingState.CHECKING_CACHE, fingerprint)
            cached = self._store.lookup(fingerprint)
            if cached is not None:
                self._enter(event, ProcessingState.CACHE_HIT, fingerprint)
                return self._from_record(event, OutcomeStatus.CACHE_HIT, cached)

            self._enter(event, ProcessingState.CLASSIFYING, fingerprint)
            is_match = self._classifier.classify(event.bucket, event.key)

            self._enter(event, ProcessingState.PERSISTING, fingerprint)
            record = ClassificationRecord(
                fingerprint=fingerprint,
                source_locator=event.source_locator,
                is_match=is_match,
            )
            outcome = self._store.try_insert(record)
        except NotFound as exc:
            logger.info("Object s3://%s/%s vanished before processing: %s", event.bucket, event.key, exc)
            return self._failed(event, OutcomeStatus.SKIPPED, fingerprint, exc)
        except MalformedContent as exc:
            logger.warning("Cannot classify s3://%s/%s: %s", event.bucket, event.key, exc)
            return self._failed(event, OutcomeStatus.FAILED, fingerprint, exc)
        except TransientUpstreamError as exc:
            logger.warning("Retryable failure for s3://%s/%s: %s", event.bucket, event.key, exc)
            return self._failed(event, OutcomeStatus.RETRY, fingerprint, exc)
        except InvariantViolation:
            self._enter(event, ProcessingState.FAILED, fingerprint)
            logger.exception("Invariant violated while processing s3://%s/%s", event.bucket, event.key)
            raise

        if isinstance(outcome, InsertedNew):
            self._enter(event, ProcessingState.DONE, fingerprint)
            logger.info(
                "Stored %s for %s (%s=%s)",
                fingerprint,
                record.source_locator,
                self._classifier.target_label,
                is_match,
            )
            return self._from_record(event, OutcomeStatus.CLASSIFIED, outcome.record)

        if isinstance(outcome, AlreadyExists):
            self._enter(event, ProcessingState.DONE, fingerprint)
            if outcome.existing.is_match != is_match:
                logger.warning(
                    "Discarding local result %s for %s; stored result is %s",
                    is_match,
                    fingerprint,
                    outcome.existing.is_match,
                )
            else:
                logger.info("Lost insert race for %s; adopting stored record", fingerprint)
            return self._from_record(event, OutcomeStatus.CONVERGED, outcome.existing)

        raise InvariantViolation(f"Unexpected insert outcome {outcome!r}")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _enter(event: UploadEvent, state: ProcessingState, fingerprint: ContentFingerprint | None = None) -> None:
        logger.debug("s3://%s/%s [%s] -> %s", event.bucket, event.key, fingerprint or "-", state)

    @staticmethod
    def _from_record(
        event: UploadEvent, status: OutcomeStatus, record: ClassificationRecord
    ) -> ProcessingOutcome:
        return ProcessingOutcome(
            event=event,
            status=status,
            fingerprint=record.fingerprint,
            result=ProcessingResult(source_locator=event.source_locator, is_match=record.is_match),
        )

    def _failed(
        self,
        event: UploadEvent,
        status: OutcomeStatus,
        fingerprint: ContentFingerprint | None,
        error: DetectXError,
    ) -> ProcessingOutcome:
        self._enter(event, ProcessingState.FAILED, fingerprint)
        return ProcessingOutcome(event=event, status=status, fingerprint=fingerprint, error=error)
