"""
Centralized error classification for fetch retry decisions.

Provides consistent classification of errors to determine whether a failed
fetch should be retried (transient) or surfaced immediately (permanent).
The fetch client's default retry predicate is built on these helpers so
every caller shares the same policy.
"""

import logging

import httpx

from fetch.exceptions import FetchError, PayloadError, TransportError

TRANSIENT = 'transient'
PERMANENT = 'permanent'

# HTTP status codes that indicate transient (retry-able) errors
# 408: Request timeout - upstream was slow, try again
# 429: Rate limited - retry after backoff
# 5xx: Server errors - usually temporary
TRANSIENT_CODES = frozenset({408, 429, 500, 502, 503, 504})

# HTTP status codes that indicate permanent (non-retry-able) errors
# 400: Bad request
# 401: Unauthorized - file server auth config issue
# 403: Forbidden - permission issue
# 404: Not found - asset doesn't exist on this server
# 405: Method not allowed
# 410: Gone - asset permanently removed
PERMANENT_CODES = frozenset({400, 401, 403, 404, 405, 410})

logger = logging.getLogger('flatsync.fetch.errors')


def classify_http_error(status_code: int) -> str:
    """
    Classify an HTTP status code as transient or permanent.

    Args:
        status_code: HTTP response status code

    Returns:
        TRANSIENT for retry-able statuses, PERMANENT otherwise
    """
    if status_code in TRANSIENT_CODES:
        logger.debug(f"HTTP {status_code} classified as transient")
        return TRANSIENT

    if status_code in PERMANENT_CODES:
        logger.debug(f"HTTP {status_code} classified as permanent")
        return PERMANENT

    if 400 <= status_code < 500:
        # Unknown 4xx = permanent (client error, unlikely to change)
        logger.debug(f"HTTP {status_code} (unknown 4xx) classified as permanent")
        return PERMANENT

    if status_code >= 500:
        # Unknown 5xx = transient (server error, may recover)
        logger.debug(f"HTTP {status_code} (unknown 5xx) classified as transient")
        return TRANSIENT

    # 1xx/3xx reaching error handling means the exchange itself was odd
    logger.debug(f"HTTP {status_code} (unexpected) classified as permanent")
    return PERMANENT


def classify_exception(exc: Exception) -> str:
    """
    Classify an exception raised while fetching.

    Handles:
    - TransportError with a status: classified by status code
    - TransportError without a status: network-level failure, transient
    - PayloadError: permanent (its single fallback happens elsewhere)
    - httpx transport exceptions and OS network errors: transient
    - Anything else: permanent

    Args:
        exc: The exception to classify

    Returns:
        TRANSIENT or PERMANENT
    """
    if isinstance(exc, PayloadError):
        logger.debug(f"Payload error classified as permanent: {exc}")
        return PERMANENT

    if isinstance(exc, TransportError):
        if exc.status_code is not None:
            return classify_http_error(exc.status_code)
        logger.debug(f"Network-level transport error classified as transient: {exc}")
        return TRANSIENT

    if isinstance(exc, httpx.HTTPStatusError):
        return classify_http_error(exc.response.status_code)

    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError, OSError)):
        logger.debug(f"Network error classified as transient: {type(exc).__name__}")
        return TRANSIENT

    if isinstance(exc, FetchError):
        return PERMANENT

    logger.debug(f"Unknown exception classified as permanent: {type(exc).__name__}")
    return PERMANENT


def is_retryable(exc: Exception) -> bool:
    """Default retry predicate: network failures and 5xx/408/429."""
    return classify_exception(exc) == TRANSIENT
