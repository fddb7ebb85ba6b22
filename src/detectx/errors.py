"""Exception hierarchy for DetectX.

Leaf components translate upstream failures into these types at their
boundary; only the coordinator decides what a failure means for the event.

    DetectXError
    +-- NotFound                (locator no longer valid, terminal)
    +-- MalformedContent        (object is not a decodable image, terminal)
    +-- MalformedEvent          (notification payload cannot be parsed, terminal)
    +-- TransientUpstreamError  (remote call failed or timed out, retryable)
    +-- InvariantViolation      (should never happen, fatal to the invocation)
    +-- ConfigurationError      (missing or invalid settings)
"""

from __future__ import annotations


class DetectXError(Exception):
    """Base exception for all DetectX errors.

    ``service_name`` identifies the upstream service involved (``s3``,
    ``dynamodb``, ``rekognition``) and is prefixed in ``str()`` output.
    """

    retryable: bool = False

    def __init__(self, message: str = "An unexpected error occurred", service_name: str | None = None) -> None:
        self._message = message
        self._service_name = service_name
        super().__init__(message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def service_name(self) -> str | None:
        return self._service_name

    def __str__(self) -> str:
        if self._service_name:
            return f"[{self._service_name}] {self._message}"
        return self._message


class NotFound(DetectXError):
    """The referenced object no longer exists."""


class MalformedContent(DetectXError):
    """The stored object cannot be decoded as an image by the labeling service."""


class MalformedEvent(DetectXError):
    """An inbound notification does not have the expected shape."""


class TransientUpstreamError(DetectXError):
    """A remote call failed for infrastructure reasons (timeout, throttling, 5xx)."""

    retryable = True


class InvariantViolation(DetectXError):
    """An internal consistency guarantee was broken."""


class ConfigurationError(DetectXError):
    """A required setting is missing."""


def client_error_code(exc: Exception) -> str:
    """Return the AWS error code carried by a botocore ``ClientError``."""
    response = getattr(exc, "response", None) or {}
    return str(response.get("Error", {}).get("Code", ""))
