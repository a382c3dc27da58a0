"""
Fetch module for FlatSync.

Provides the resilient, cache-aware HTTP client used to pull metadata,
caption, chapter and placeholder-hash payloads from file servers.
"""

from fetch.exceptions import FetchError, TransportError, PayloadError
from fetch.errors import classify_exception, classify_http_error, is_retryable
from fetch.backoff import calculate_delay
from fetch.cache import ResponseCache, coerce_payload, encode_payload
from fetch.client import (
    FetchClient,
    FetchResult,
    PayloadClass,
    Provenance,
    ResponseKind,
    RetryPolicy,
)

__all__ = [
    'FetchError',
    'TransportError',
    'PayloadError',
    'classify_exception',
    'classify_http_error',
    'is_retryable',
    'calculate_delay',
    'ResponseCache',
    'coerce_payload',
    'encode_payload',
    'FetchClient',
    'FetchResult',
    'PayloadClass',
    'Provenance',
    'ResponseKind',
    'RetryPolicy',
]
