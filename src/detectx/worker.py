"""SQS polling worker for storage notifications routed through a queue.

Each received message is run through the coordinator. Messages are deleted
once every upload event they carry is acknowledged (success, cache hit, or a
terminal failure). Messages with a retryable outcome, or one that hit an
invariant violation, are left in the queue; the visibility timeout makes them
available again and the queue's redrive policy eventually dead-letters them.

Usage:
    DETECTX_QUEUE_URL=... DETECTX_RESULTS_TABLE_NAME=... detectx-worker
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError

from detectx.clients import ClientRegistry, Service, build_coordinator
from detectx.config import get_settings
from detectx.errors import ConfigurationError, InvariantViolation, MalformedEvent
from detectx.pipeline.events import parse_sqs_body

if TYPE_CHECKING:
    from botocore.client import BaseClient

    from detectx.config import Settings
    from detectx.pipeline.coordinator import IdempotencyCoordinator

logger = logging.getLogger(__name__)


class QueueWorker:
    """Receives notification messages from one queue and processes them."""

    def __init__(
        self,
        client: BaseClient,
        coordinator: IdempotencyCoordinator,
        queue_url: str,
        wait_seconds: int = 20,
        batch_size: int = 10,
    ) -> None:
        self._client = client
        self._coordinator = coordinator
        self._queue_url = queue_url
        self._wait_seconds = wait_seconds
        self._batch_size = batch_size

    def process_message(self, message: dict[str, Any]) -> bool:
        """Process one message and delete it if acknowledged.

        Returns True if the message was deleted.
        """
        message_id = message.get("MessageId", "?")
        try:
            events = parse_sqs_body(message.get("Body", ""), message_id)
        except MalformedEvent as exc:
            logger.warning("Dropping message %s: %s", message_id, exc)
            events = []

        try:
            outcomes = [self._coordinator.process(event) for event in events]
        except InvariantViolation:
            logger.error("Leaving message %s for redelivery after an invariant violation", message_id)
            return False

        if any(outcome.retryable for outcome in outcomes):
            logger.info("Leaving message %s for redelivery", message_id)
            return False

        self._client.delete_message(QueueUrl=self._queue_url, ReceiptHandle=message["ReceiptHandle"])
        for outcome in outcomes:
            logger.info("Processed s3://%s/%s: %s", outcome.event.bucket, outcome.event.key, outcome.status)
        return True

    def receive_and_process_once(self) -> int:
        """Receive one batch and process it. Returns the number of messages received."""
        response = self._client.receive_message(
            QueueUrl=self._queue_url,
            MaxNumberOfMessages=self._batch_size,
            WaitTimeSeconds=self._wait_seconds,
        )
        messages = response.get("Messages") or []
        for message in messages:
            self.process_message(message)
        return len(messages)

    def run(self) -> None:
        """Poll until interrupted."""
        logger.info("Polling %s", self._queue_url)
        while True:
            try:
                self.receive_and_process_once()
            except KeyboardInterrupt:
                logger.info("Worker interrupted")
                break
            except (ClientError, BotoCoreError) as exc:
                logger.error("Queue call failed: %s", exc)


def build_worker(settings: Settings, registry: ClientRegistry) -> QueueWorker:
    if not settings.queue_url:
        raise ConfigurationError("DETECTX_QUEUE_URL is required for the queue worker")
    return QueueWorker(
        client=registry.get(Service.SQS),
        coordinator=build_coordinator(settings, registry),
        queue_url=settings.queue_url,
        wait_seconds=settings.queue_wait_seconds,
        batch_size=settings.queue_batch_size,
    )


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    registry = ClientRegistry(settings)
    try:
        worker = build_worker(settings, registry)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        raise SystemExit(2) from exc

    try:
        worker.run()
    finally:
        registry.shutdown()


if __name__ == "__main__":
    sys.exit(main())
