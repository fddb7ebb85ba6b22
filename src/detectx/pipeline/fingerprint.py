"""Content fingerprint resolution from object storage metadata.

The fingerprint is read from metadata S3 already keeps for the object, so
identical bytes at two different keys resolve to the same fingerprint
without downloading either object.

Every object is fingerprinted by its ETag, including objects that also carry
an additional checksum, so all objects share one fingerprint namespace.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from detectx.errors import InvariantViolation, NotFound, TransientUpstreamError, client_error_code
from detectx.models import ContentFingerprint

if TYPE_CHECKING:
    from botocore.client import BaseClient

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "NotFound", "404"})


class FingerprintResolver(Protocol):
    """Protocol for deriving a content fingerprint from a stored object."""

    def resolve(self, bucket: str, key: str) -> ContentFingerprint:
        """Return the fingerprint of the object at ``bucket``/``key``.

        Raises:
            NotFound: If the object no longer exists.
            TransientUpstreamError: If the metadata lookup fails.
        """
        ...


class S3FingerprintResolver:
    """Resolves fingerprints with a single ``GetObjectAttributes`` call."""

    def __init__(self, client: BaseClient) -> None:
        self._client = client

    def resolve(self, bucket: str, key: str) -> ContentFingerprint:
        try:
            response = self._client.get_object_attributes(
                Bucket=bucket,
                Key=key,
                ObjectAttributes=["ETag"],
            )
        except ClientError as exc:
            code = client_error_code(exc)
            if code in _NOT_FOUND_CODES:
                raise NotFound(f"s3://{bucket}/{key} does not exist", service_name="s3") from exc
            raise TransientUpstreamError(f"GetObjectAttributes failed: {code}", service_name="s3") from exc
        except BotoCoreError as exc:
            raise TransientUpstreamError(f"GetObjectAttributes failed: {exc}", service_name="s3") from exc

        etag = (response.get("ETag") or "").strip('"')
        if not etag:
            raise InvariantViolation(f"s3://{bucket}/{key} has no ETag", service_name="s3")
        logger.debug("Resolved s3://%s/%s to %s", bucket, key, etag)
        return ContentFingerprint(etag)
