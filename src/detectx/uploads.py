"""Pre-signed upload URLs for new images.

Uploads go straight to the watched bucket. A SHA-256 checksum is requested
so the stored object carries a content checksum alongside its ETag.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from botocore.exceptions import BotoCoreError, ClientError

from detectx.errors import TransientUpstreamError

if TYPE_CHECKING:
    from botocore.client import BaseClient

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "unknown"


class UploadAuthorizer:
    """Issues time-limited PUT URLs scoped to one object key."""

    def __init__(self, client: BaseClient, bucket: str, expires_in: int = 3600) -> None:
        self._client = client
        self._bucket = bucket
        self._expires_in = expires_in

    def presign(self, filename: str | None) -> str:
        key = filename or DEFAULT_FILENAME
        try:
            url: str = self._client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self._bucket, "Key": key, "ChecksumAlgorithm": "SHA256"},
                ExpiresIn=self._expires_in,
            )
        except (ClientError, BotoCoreError) as exc:
            raise TransientUpstreamError(f"Could not presign upload for {key}: {exc}", service_name="s3") from exc
        logger.info("Generated upload URL for s3://%s/%s", self._bucket, key)
        return url
