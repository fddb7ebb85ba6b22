"""Function entry point for storage notifications.

Accepts either a direct S3 notification or an SQS batch of them.

* S3 notification: every record is processed; if any record is retryable the
  invocation raises ``TransientUpstreamError`` so the event source redelivers.
  Records that already completed become cache hits on redelivery.
  A payload that cannot be parsed is logged and dropped.
* SQS batch: returns a partial batch response listing only the messages that
  should be redelivered. A message whose processing hits an invariant
  violation is reported too, so only that message is retried.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import TYPE_CHECKING, Any

from detectx.clients import ClientRegistry, build_coordinator
from detectx.config import get_settings
from detectx.errors import InvariantViolation, MalformedEvent, TransientUpstreamError
from detectx.pipeline.events import is_sqs_batch, parse_s3_notification, parse_sqs_batch

if TYPE_CHECKING:
    from detectx.pipeline.coordinator import IdempotencyCoordinator, ProcessingOutcome

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_coordinator() -> IdempotencyCoordinator:
    """Build the coordinator once per process and reuse it across invocations."""
    settings = get_settings()
    logging.getLogger("detectx").setLevel(settings.log_level)
    return build_coordinator(settings, ClientRegistry(settings))


def process_notification(coordinator: IdempotencyCoordinator, payload: Any) -> list[ProcessingOutcome]:
    """Run every upload event in an S3 notification through the coordinator."""
    return [coordinator.process(event) for event in parse_s3_notification(payload)]


def process_sqs_batch(coordinator: IdempotencyCoordinator, payload: dict[str, Any]) -> dict[str, Any]:
    """Process an SQS batch and return the partial batch failure response."""
    failures: list[dict[str, str]] = []
    for message in parse_sqs_batch(payload):
        try:
            events = message.upload_events()
        except MalformedEvent as exc:
            logger.warning("Dropping message %s: %s", message.message_id, exc)
            continue
        try:
            outcomes = [coordinator.process(event) for event in events]
        except InvariantViolation:
            logger.error("Returning message %s after an invariant violation", message.message_id)
            failures.append({"itemIdentifier": message.message_id})
            continue
        if any(outcome.retryable for outcome in outcomes):
            failures.append({"itemIdentifier": message.message_id})
    if failures:
        logger.info("Returning %d message(s) for redelivery", len(failures))
    return {"batchItemFailures": failures}


def handle(payload: Any, coordinator: IdempotencyCoordinator) -> Any:
    if is_sqs_batch(payload):
        return process_sqs_batch(coordinator, payload)

    try:
        outcomes = process_notification(coordinator, payload)
    except MalformedEvent as exc:
        logger.warning("Dropping malformed notification: %s", exc)
        return []

    retryable = [outcome for outcome in outcomes if outcome.retryable]
    if retryable:
        raise TransientUpstreamError(
            f"{len(retryable)} of {len(outcomes)} record(s) need redelivery: "
            + "; ".join(str(outcome.error) for outcome in retryable)
        )
    return [outcome.to_dict() for outcome in outcomes]


def handler(event: Any, context: object = None) -> Any:
    """Lambda handler."""
    return handle(event, get_coordinator())
