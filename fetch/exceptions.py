"""
Fetch error hierarchy.

Transport failures (network, timeout, non-2xx) are retried per policy and
surface only after retries are exhausted. Payload failures (malformed JSON,
unusable buffers) get a single fallback attempt before surfacing.
"""

from typing import Optional


class FetchError(Exception):
    """Base class for outbound fetch failures."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class TransportError(FetchError):
    """Network failure, timeout or non-2xx response.

    Attributes:
        status_code: HTTP status when a response was received, None for
                     connection-level failures.
        attempts: How many requests were made before giving up.
    """

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        attempts: int = 0,
    ):
        super().__init__(message, url)
        self.status_code = status_code
        self.attempts = attempts


class PayloadError(FetchError):
    """Upstream returned a body that could not be parsed as the requested kind."""
