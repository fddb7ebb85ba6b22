"""Label classification via an external labeling service (Rekognition).

The service returns at most ``max_labels`` candidate labels ranked by its own
confidence. An image matches when any returned label name equals the target
category, compared case-insensitively. No confidence threshold is applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from detectx.errors import MalformedContent, NotFound, TransientUpstreamError, client_error_code

if TYPE_CHECKING:
    from collections.abc import Iterable

    from botocore.client import BaseClient

logger = logging.getLogger(__name__)

_MALFORMED_CODES = frozenset(
    {"InvalidImageFormatException", "ImageTooLargeException", "InvalidParameterException"}
)
_MISSING_CODES = frozenset({"InvalidS3ObjectException"})


@dataclass(frozen=True)
class DetectedLabel:
    """A single label returned by the labeling service."""

    name: str
    confidence: float


class LabelClassifier(Protocol):
    """Protocol for deciding whether a stored image contains the target category."""

    @property
    def target_label(self) -> str:
        """Return the category this classifier looks for."""
        ...

    def classify(self, bucket: str, key: str) -> bool:
        """Classify the object at ``bucket``/``key``.

        Raises:
            MalformedContent: If the object is not a decodable image.
            TransientUpstreamError: If the labeling call fails or times out.
        """
        ...


def matches_target(labels: Iterable[DetectedLabel], target: str) -> bool:
    """Case-insensitive exact match of ``target`` against the label names."""
    wanted = target.casefold()
    return any(label.name.casefold() == wanted for label in labels)


def parse_labels(response: dict[str, Any]) -> list[DetectedLabel]:
    return [
        DetectedLabel(name=raw.get("Name", ""), confidence=float(raw.get("Confidence", 0.0)))
        for raw in response.get("Labels") or []
    ]


class RekognitionClassifier:
    """Classifies images in place with Rekognition ``DetectLabels``."""

    def __init__(self, client: BaseClient, target_label: str = "Cat", max_labels: int = 10) -> None:
        self._client = client
        self._target_label = target_label
        self._max_labels = max_labels

    @property
    def target_label(self) -> str:
        return self._target_label

    def detect_labels(self, bucket: str, key: str) -> list[DetectedLabel]:
        """Run one bounded labeling call and return the ranked labels."""
        try:
            response = self._client.detect_labels(
                Image={"S3Object": {"Bucket": bucket, "Name": key}},
                MaxLabels=self._max_labels,
            )
        except ClientError as exc:
            code = client_error_code(exc)
            if code in _MALFORMED_CODES:
                raise MalformedContent(f"s3://{bucket}/{key} is not a usable image ({code})", "rekognition") from exc
            if code in _MISSING_CODES:
                raise NotFound(f"s3://{bucket}/{key} cannot be read ({code})", "rekognition") from exc
            raise TransientUpstreamError(f"DetectLabels failed: {code}", "rekognition") from exc
        except BotoCoreError as exc:
            raise TransientUpstreamError(f"DetectLabels failed: {exc}", "rekognition") from exc
        return parse_labels(response)

    def classify(self, bucket: str, key: str) -> bool:
        labels = self.detect_labels(bucket, key)
        is_match = matches_target(labels, self._target_label)
        logger.debug(
            "Labels for s3://%s/%s: %s (match=%s)",
            bucket,
            key,
            ", ".join(label.name for label in labels),
            is_match,
        )
        return is_match
