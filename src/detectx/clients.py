"""Process-scoped AWS clients and coordinator wiring.

Clients are created lazily, once per worker process, and shared by reference
with every component that needs them. Each service gets its own timeout
profile; botocore's own retries are disabled so a failed attempt surfaces as
``TransientUpstreamError`` and the event source owns redelivery.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import boto3
from botocore.config import Config

from detectx.errors import ConfigurationError
from detectx.pipeline.classifier import RekognitionClassifier
from detectx.pipeline.coordinator import IdempotencyCoordinator
from detectx.pipeline.fingerprint import S3FingerprintResolver
from detectx.pipeline.result_store import DynamoResultStore, InMemoryResultStore
from detectx.uploads import UploadAuthorizer

if TYPE_CHECKING:
    from botocore.client import BaseClient

    from detectx.config import Settings
    from detectx.pipeline.result_store import ResultStore

logger = logging.getLogger(__name__)


class Service(StrEnum):
    S3 = "s3"
    DYNAMODB = "dynamodb"
    REKOGNITION = "rekognition"
    SQS = "sqs"


@dataclass(frozen=True)
class TimeoutProfile:
    """Connect/read timeouts (seconds) for a single remote call attempt."""

    connect: float
    read: float


def timeout_profiles(settings: Settings) -> dict[Service, TimeoutProfile]:
    return {
        Service.S3: TimeoutProfile(connect=settings.metadata_timeout, read=settings.metadata_timeout),
        Service.DYNAMODB: TimeoutProfile(connect=settings.store_timeout, read=settings.store_timeout),
        Service.REKOGNITION: TimeoutProfile(connect=settings.metadata_timeout, read=settings.classify_timeout),
        # Long polling holds the connection for up to queue_wait_seconds.
        Service.SQS: TimeoutProfile(connect=settings.metadata_timeout, read=settings.queue_wait_seconds + 10.0),
    }


class ClientRegistry:
    """Creates and caches one boto3 client per service."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._lock = threading.Lock()
        self._clients: dict[Service, BaseClient] = {}
        self._profiles = timeout_profiles(settings)

    def get(self, service: Service) -> BaseClient:
        """Return the cached client for ``service``, creating it on first use."""
        with self._lock:
            cached = self._clients.get(service)
            if cached is not None:
                return cached

        client = self._create(service)

        with self._lock:
            # Another thread may have created it while we were building ours.
            existing = self._clients.get(service)
            if existing is not None:
                return existing
            self._clients[service] = client
            logger.info("Created %s client (region=%s)", service, self._settings.aws_region)
            return client

    def loaded_services(self) -> list[str]:
        with self._lock:
            return [str(service) for service in self._clients]

    def shutdown(self) -> None:
        """Close and drop all cached clients."""
        with self._lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()
            logger.info("All AWS clients closed")

    # -- Internal -----------------------------------------------------------

    def _create(self, service: Service) -> BaseClient:
        profile = self._profiles[service]
        config = Config(
            region_name=self._settings.aws_region,
            connect_timeout=profile.connect,
            read_timeout=profile.read,
            retries={"max_attempts": 1, "mode": "standard"},
        )
        return boto3.client(
            str(service),
            config=config,
            endpoint_url=self._settings.aws_endpoint_url,
        )


def build_result_store(settings: Settings, registry: ClientRegistry) -> ResultStore:
    if settings.result_store == "memory":
        logger.warning("Using the in-memory result store; records are not shared between processes")
        return InMemoryResultStore()
    if not settings.results_table_name:
        raise ConfigurationError("DETECTX_RESULTS_TABLE_NAME is required")
    return DynamoResultStore(registry.get(Service.DYNAMODB), settings.results_table_name)


def build_coordinator(
    settings: Settings,
    registry: ClientRegistry,
    store: ResultStore | None = None,
) -> IdempotencyCoordinator:
    """Wire the coordinator from settings and shared clients."""
    return IdempotencyCoordinator(
        resolver=S3FingerprintResolver(registry.get(Service.S3)),
        store=store if store is not None else build_result_store(settings, registry),
        classifier=RekognitionClassifier(
            registry.get(Service.REKOGNITION),
            target_label=settings.target_label,
            max_labels=settings.max_labels,
        ),
    )


def build_upload_authorizer(settings: Settings, registry: ClientRegistry) -> UploadAuthorizer:
    if not settings.bucket_name:
        raise ConfigurationError("DETECTX_BUCKET_NAME is required to issue upload URLs")
    return UploadAuthorizer(registry.get(Service.S3), settings.bucket_name, expires_in=settings.upload_url_expires)
