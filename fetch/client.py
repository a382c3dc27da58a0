"""
Resilient, cache-aware HTTP client for file server payloads.

FetchClient wraps a pooled httpx.Client with:
- Conditional requests (If-None-Match / If-Modified-Since) from cached validators
- 304 handling that re-types the cached payload to the requested kind
- Exponential backoff with full jitter between retry attempts
- A single fallback fetch over a plain one-shot request when a body can't be parsed
- Write-back of fresh payloads with a per-payload-class TTL

Every retry and cache hit/miss/store is logged at debug level, counted in
FetchClient.stats and delivered to the optional on_event callback.

Example:
    >>> client = FetchClient(cache=ResponseCache(data_dir), timeout=5.0)
    >>> result = client.fetch("http://fs1/movies/Heat/metadata.json")
    >>> result.provenance
    <Provenance.FRESH: 'fresh'>
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import httpx

from fetch.backoff import calculate_delay
from fetch.cache import ResponseCache, coerce_payload
from fetch.errors import is_retryable
from fetch.exceptions import PayloadError, TransportError
from shared.log import create_logger

log_trace, log_debug, log_info, log_warn, log_error = create_logger("Fetch")


def default_should_retry(exc: Exception) -> bool:
    """Retry network failures and 5xx/408/429; give up on other 4xx."""
    return is_retryable(exc)


class ResponseKind(str, Enum):
    JSON = 'json'
    TEXT = 'text'
    BUFFER = 'buffer'
    STREAM = 'stream'


class Provenance(str, Enum):
    FRESH = 'fresh'
    CACHE = 'cache'


class PayloadClass(str, Enum):
    """Selects the cache TTL applied when a fresh payload is written back."""
    DEFAULT = 'default'
    HASH = 'hash'


@dataclass
class FetchResult:
    """Outcome of a successful fetch.

    For ResponseKind.STREAM the payload is an open httpx.Response the caller
    must close; streams are never cached.
    """
    payload: Any
    headers: dict[str, str]
    provenance: Provenance
    status_code: int = 200


@dataclass
class RetryPolicy:
    """Retry configuration.

    Attributes:
        limit: Retries after the first attempt (total attempts = limit + 1)
        base_delay: Backoff base in seconds
        max_delay: Backoff cap in seconds
        should_retry: Predicate deciding whether an error is worth retrying
    """
    limit: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    should_retry: Optional[Callable[[Exception], bool]] = None

    def __post_init__(self):
        if self.should_retry is None:
            self.should_retry = default_should_retry


class FetchClient:
    """
    Cached, retried HTTP GETs against file servers.

    Safe to share between worker threads: httpx.Client is thread-safe and
    the stats counters are guarded by a lock.

    Args:
        cache: ResponseCache, or None to disable caching (always-miss)
        timeout: Default per-request timeout in seconds
        retry_policy: Default RetryPolicy for fetch() calls
        http_client: Pre-built httpx.Client (tests inject one with a mock transport)
        sleep: Sleep function used between retries
        on_event: Optional callback(event, url, details) for diagnostics
        hash_ttl: TTL for PayloadClass.HASH payloads
        default_ttl: TTL for everything else
    """

    def __init__(
        self,
        cache: Optional[ResponseCache] = None,
        timeout: float = 5.0,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_event: Optional[Callable[[str, str, dict], None]] = None,
        hash_ttl: int = ResponseCache.HASH_TTL,
        default_ttl: int = ResponseCache.DEFAULT_TTL,
    ):
        self.cache = cache
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(follow_redirects=True)
        self._sleep = sleep
        self._on_event = on_event
        self._ttls = {
            PayloadClass.DEFAULT: default_ttl,
            PayloadClass.HASH: hash_ttl,
        }
        self._stats_lock = threading.Lock()
        self.stats = {
            'requests': 0,
            'retries': 0,
            'cache_hits': 0,
            'cache_misses': 0,
            'cache_stores': 0,
            'fallbacks': 0,
            'failures': 0,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch(
        self,
        url: str,
        timeout: Optional[float] = None,
        response_kind: ResponseKind = ResponseKind.JSON,
        retry_policy: Optional[RetryPolicy] = None,
        payload_class: PayloadClass = PayloadClass.DEFAULT,
    ) -> FetchResult:
        """
        Fetch a URL with caching and retries.

        Args:
            url: Absolute URL
            timeout: Per-request timeout (defaults to the client timeout)
            response_kind: json, text, buffer or stream
            retry_policy: Overrides the client's default policy
            payload_class: Which TTL to use on write-back

        Returns:
            FetchResult with payload, response headers and provenance

        Raises:
            TransportError: After retries are exhausted or on a non-retryable status
            PayloadError: When the body can't be parsed even after the fallback fetch
        """
        kind = ResponseKind(response_kind)
        policy = retry_policy or self.retry_policy
        timeout = timeout if timeout is not None else self.timeout

        for retry_count in range(policy.limit + 1):
            try:
                if kind is ResponseKind.STREAM:
                    return self._open_stream(url, timeout)
                return self._attempt(url, kind, timeout, payload_class)
            except PayloadError as e:
                log_warn(f"Unparseable {kind.value} payload from {url}, trying fallback fetch: {e}")
                return self._fallback(url, kind, timeout, payload_class)
            except TransportError as e:
                e.attempts = retry_count + 1
                if retry_count >= policy.limit or not policy.should_retry(e):
                    self._count('failures')
                    log_debug(f"Giving up on {url} after {e.attempts} attempt(s): {e}")
                    raise
                delay = calculate_delay(retry_count, policy.base_delay, policy.max_delay)
                self._count('retries')
                self._emit('retry', url, attempt=retry_count + 1, delay=delay, error=str(e))
                log_debug(
                    f"Retrying {url} (attempt {retry_count + 1}/{policy.limit}) "
                    f"after {delay:.2f}s: {e}"
                )
                self._sleep(delay)

        # range() always yields at least once, so the loop either returns or raises
        raise AssertionError("unreachable")

    def fetch_json(self, url: str, **kwargs) -> Any:
        return self.fetch(url, response_kind=ResponseKind.JSON, **kwargs).payload

    def fetch_text(self, url: str, **kwargs) -> str:
        return self.fetch(url, response_kind=ResponseKind.TEXT, **kwargs).payload

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _attempt(self, url: str, kind: ResponseKind, timeout: float, payload_class: PayloadClass) -> FetchResult:
        cached = self._lookup(url)
        headers = {}
        if cached is not None:
            if cached.get('etag'):
                headers['If-None-Match'] = cached['etag']
            if cached.get('lastModified'):
                headers['If-Modified-Since'] = cached['lastModified']

        response = self._request(url, timeout, headers)

        if response.status_code == 304:
            payload = coerce_payload(cached['data'], kind.value) if cached is not None else None
            if payload is not None:
                self._count('cache_hits')
                self._emit('cache_hit', url)
                log_trace(f"304 for {url}, serving cached {kind.value}")
                return FetchResult(payload, dict(response.headers), Provenance.CACHE, 304)

            # Cached shape unusable: same as never having cached it
            self._count('cache_misses')
            self._emit('cache_miss', url, reason='unusable cached payload')
            log_debug(f"Cached payload for {url} could not be re-typed to {kind.value}, refetching")
            response = self._request(url, timeout, {})
            if response.status_code == 304:
                raise TransportError(f"Unconditional request to {url} returned 304", url, 304)

        if not 200 <= response.status_code < 300:
            raise TransportError(f"HTTP {response.status_code} for {url}", url, response.status_code)

        payload = self._parse(response, kind, url)
        self._store(url, payload, response.headers, payload_class)
        return FetchResult(payload, dict(response.headers), Provenance.FRESH, response.status_code)

    def _request(self, url: str, timeout: float, headers: dict) -> httpx.Response:
        self._count('requests')
        try:
            return self._client.get(url, headers=headers, timeout=timeout)
        except httpx.TimeoutException as e:
            raise TransportError(f"Timeout fetching {url}: {e}", url) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Network error fetching {url}: {e}", url) from e

    def _open_stream(self, url: str, timeout: float) -> FetchResult:
        self._count('requests')
        request = self._client.build_request('GET', url, timeout=timeout)
        try:
            response = self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise TransportError(f"Timeout opening stream {url}: {e}", url) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Network error opening stream {url}: {e}", url) from e

        if not 200 <= response.status_code < 300:
            response.close()
            raise TransportError(f"HTTP {response.status_code} for {url}", url, response.status_code)
        return FetchResult(response, dict(response.headers), Provenance.FRESH, response.status_code)

    def _parse(self, response: httpx.Response, kind: ResponseKind, url: str) -> Any:
        if kind is ResponseKind.JSON:
            try:
                return response.json()
            except ValueError as e:
                raise PayloadError(f"Malformed JSON from {url}: {e}", url) from e
        if kind is ResponseKind.TEXT:
            return response.text
        if kind is ResponseKind.BUFFER:
            if not response.content:
                raise PayloadError(f"Empty buffer from {url}", url)
            return response.content
        raise ValueError(f"Unsupported response kind: {kind}")

    def _fallback(self, url: str, kind: ResponseKind, timeout: float, payload_class: PayloadClass) -> FetchResult:
        """One unconditional fetch outside the pooled client."""
        self._count('fallbacks')
        self._count('requests')
        self._emit('fallback', url)
        try:
            response = httpx.get(url, timeout=timeout, follow_redirects=True)
        except httpx.HTTPError as e:
            self._count('failures')
            raise TransportError(f"Fallback fetch of {url} failed: {e}", url) from e

        if not 200 <= response.status_code < 300:
            self._count('failures')
            raise TransportError(f"Fallback fetch of {url} returned HTTP {response.status_code}",
                                 url, response.status_code)

        try:
            payload = self._parse(response, kind, url)
        except PayloadError:
            self._count('failures')
            log_error(f"Fallback fetch of {url} still returned an unparseable {kind.value} payload")
            raise

        self._store(url, payload, response.headers, payload_class)
        return FetchResult(payload, dict(response.headers), Provenance.FRESH, response.status_code)

    def _lookup(self, url: str) -> Optional[dict]:
        if self.cache is None:
            return None
        entry = self.cache.get(url)
        if entry is None:
            self._count('cache_misses')
            self._emit('cache_miss', url)
        return entry

    def _store(self, url: str, payload: Any, headers: httpx.Headers, payload_class: PayloadClass) -> None:
        if self.cache is None:
            return
        ttl = self._ttls[payload_class]
        stored = self.cache.set(
            url,
            payload,
            etag=headers.get('etag'),
            last_modified=headers.get('last-modified'),
            ttl=ttl,
        )
        if stored:
            self._count('cache_stores')
            self._emit('cache_store', url, ttl=ttl)

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    def _emit(self, event: str, url: str, **details) -> None:
        if self._on_event is not None:
            self._on_event(event, url, details)
