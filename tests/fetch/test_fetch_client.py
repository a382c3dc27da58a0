"""
Tests for fetch.client - cached, retried HTTP fetches.

Uses respx to mock httpx requests so no live file server is required.
Retry sleeps are replaced with a recorder so tests run instantly.
"""

import httpx
import pytest
import respx

from fetch.client import FetchClient, PayloadClass, Provenance, ResponseKind, RetryPolicy
from fetch.exceptions import PayloadError, TransportError

# ---------------------------------------------------------------------------
# Shared test data
# ---------------------------------------------------------------------------

URL = "http://alpha.test/movies/Heat/metadata.json"
METADATA = {"id": 949, "title": "Heat"}


def make_client(cache=None, limit=3, sleeps=None, events=None):
    sleeps = sleeps if sleeps is not None else []
    return FetchClient(
        cache=cache,
        retry_policy=RetryPolicy(limit=limit, base_delay=0.5, max_delay=2.0),
        sleep=sleeps.append,
        on_event=(lambda event, url, details: events.append((event, details))) if events is not None else None,
    )


# ---------------------------------------------------------------------------
# Fresh fetches
# ---------------------------------------------------------------------------

class TestFreshFetch:
    """Tests for plain successful fetches."""

    @respx.mock
    def test_json_fetch(self):
        respx.get(URL).mock(return_value=httpx.Response(200, json=METADATA))
        client = make_client()

        result = client.fetch(URL)

        assert result.payload == METADATA
        assert result.provenance is Provenance.FRESH
        assert result.status_code == 200
        assert client.stats["requests"] == 1

    @respx.mock
    def test_text_and_buffer_kinds(self):
        respx.get("http://alpha.test/a.blurhash").mock(return_value=httpx.Response(200, text="LEHV6n"))
        respx.get("http://alpha.test/a.bin").mock(return_value=httpx.Response(200, content=b"\x00\xff"))
        client = make_client()

        assert client.fetch_text("http://alpha.test/a.blurhash") == "LEHV6n"
        assert client.fetch("http://alpha.test/a.bin", response_kind=ResponseKind.BUFFER).payload == b"\x00\xff"

    @respx.mock
    def test_fresh_payload_written_to_cache(self, tmp_path):
        from fetch.cache import ResponseCache

        respx.get(URL).mock(return_value=httpx.Response(200, json=METADATA, headers={"ETag": '"v1"'}))
        cache = ResponseCache(str(tmp_path))
        client = make_client(cache=cache)

        client.fetch(URL)

        entry = cache.get(URL)
        assert entry["data"] == METADATA
        assert entry["etag"] == '"v1"'
        assert client.stats["cache_stores"] == 1
        cache.close()

    @respx.mock
    def test_hash_payload_uses_hash_ttl(self):
        """PayloadClass.HASH writes back with the long TTL."""
        from unittest.mock import MagicMock

        respx.get(URL).mock(return_value=httpx.Response(200, text="LEHV6n"))
        cache = MagicMock()
        cache.get.return_value = None
        cache.set.return_value = True
        client = FetchClient(cache=cache, hash_ttl=1234, default_ttl=60)

        client.fetch(URL, response_kind=ResponseKind.TEXT, payload_class=PayloadClass.HASH)

        assert cache.set.call_args.kwargs["ttl"] == 1234


# ---------------------------------------------------------------------------
# Conditional requests
# ---------------------------------------------------------------------------

class TestConditionalFetch:
    """Tests for validator headers and 304 handling."""

    @respx.mock
    def test_304_serves_cached_payload(self, tmp_path):
        from fetch.cache import ResponseCache

        route = respx.get(URL)
        route.side_effect = [
            httpx.Response(200, json=METADATA, headers={"ETag": '"v1"', "Last-Modified": "Mon, 01 Jan 2024 00:00:00 GMT"}),
            httpx.Response(304),
        ]
        cache = ResponseCache(str(tmp_path))
        client = make_client(cache=cache)

        client.fetch(URL)
        second = client.fetch(URL)

        assert second.payload == METADATA
        assert second.provenance is Provenance.CACHE
        request = route.calls[1].request
        assert request.headers["If-None-Match"] == '"v1"'
        assert request.headers["If-Modified-Since"] == "Mon, 01 Jan 2024 00:00:00 GMT"
        assert client.stats["cache_hits"] == 1
        cache.close()

    @respx.mock
    def test_304_rebuilds_binary_payload(self, tmp_path):
        """A cached buffer comes back as the same bytes after a 304."""
        from fetch.cache import ResponseCache

        raw = b"\x89PNG\r\n\x1a\n\x00"
        route = respx.get(URL)
        route.side_effect = [
            httpx.Response(200, content=raw, headers={"ETag": '"img"'}),
            httpx.Response(304),
        ]
        cache = ResponseCache(str(tmp_path))
        client = make_client(cache=cache)

        client.fetch(URL, response_kind=ResponseKind.BUFFER)
        second = client.fetch(URL, response_kind=ResponseKind.BUFFER)

        assert second.payload == raw
        assert second.provenance is Provenance.CACHE
        cache.close()

    @respx.mock
    def test_unusable_cached_payload_refetches(self, tmp_path):
        """A 304 whose cached shape can't be re-typed triggers one plain request."""
        from fetch.cache import ResponseCache

        cache = ResponseCache(str(tmp_path))
        cache.set(URL, "not json", etag='"v1"')
        route = respx.get(URL)
        route.side_effect = [httpx.Response(304), httpx.Response(200, json=METADATA)]
        client = make_client(cache=cache)

        result = client.fetch(URL)

        assert result.payload == METADATA
        assert result.provenance is Provenance.FRESH
        assert route.call_count == 2
        assert "If-None-Match" not in route.calls[1].request.headers
        cache.close()

    @respx.mock
    def test_no_cache_sends_no_validators(self):
        route = respx.get(URL).mock(return_value=httpx.Response(200, json=METADATA))
        client = make_client()

        client.fetch(URL)

        assert "If-None-Match" not in route.calls[0].request.headers


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------

class TestRetries:
    """Tests for the retry loop."""

    @respx.mock
    def test_503_gives_up_after_limit_plus_one_attempts(self):
        route = respx.get(URL).mock(return_value=httpx.Response(503))
        sleeps = []
        client = make_client(limit=3, sleeps=sleeps)

        with pytest.raises(TransportError) as exc_info:
            client.fetch(URL)

        assert route.call_count == 4
        assert exc_info.value.status_code == 503
        assert exc_info.value.attempts == 4
        assert len(sleeps) == 3
        assert client.stats["retries"] == 3
        assert client.stats["failures"] == 1

    @respx.mock
    def test_retry_delays_use_capped_backoff(self):
        respx.get(URL).mock(return_value=httpx.Response(500))
        sleeps = []
        client = make_client(limit=4, sleeps=sleeps)

        with pytest.raises(TransportError):
            client.fetch(URL)

        assert all(0.0 <= d <= 2.0 for d in sleeps)

    @respx.mock
    def test_recovers_after_transient_failure(self):
        route = respx.get(URL)
        route.side_effect = [httpx.Response(502), httpx.ConnectError("refused"), httpx.Response(200, json=METADATA)]
        events = []
        client = make_client(events=events)

        result = client.fetch(URL)

        assert result.payload == METADATA
        assert route.call_count == 3
        assert [e for e, _ in events].count("retry") == 2

    @respx.mock
    def test_404_is_not_retried(self):
        route = respx.get(URL).mock(return_value=httpx.Response(404))
        sleeps = []
        client = make_client(sleeps=sleeps)

        with pytest.raises(TransportError) as exc_info:
            client.fetch(URL)

        assert route.call_count == 1
        assert exc_info.value.status_code == 404
        assert sleeps == []

    @respx.mock
    def test_timeout_is_retried(self):
        route = respx.get(URL)
        route.side_effect = [httpx.ReadTimeout("slow"), httpx.Response(200, json=METADATA)]
        client = make_client()

        assert client.fetch_json(URL) == METADATA
        assert route.call_count == 2

    @respx.mock
    def test_zero_limit_means_single_attempt(self):
        route = respx.get(URL).mock(return_value=httpx.Response(503))
        client = make_client(limit=0)

        with pytest.raises(TransportError):
            client.fetch(URL)

        assert route.call_count == 1

    @respx.mock
    def test_custom_retry_predicate(self):
        """A per-call policy can refuse to retry anything."""
        route = respx.get(URL).mock(return_value=httpx.Response(503))
        client = make_client()

        with pytest.raises(TransportError):
            client.fetch(URL, retry_policy=RetryPolicy(limit=5, should_retry=lambda exc: False))

        assert route.call_count == 1


# ---------------------------------------------------------------------------
# Payload fallback
# ---------------------------------------------------------------------------

class TestPayloadFallback:
    """Tests for the single fallback fetch on unparseable bodies."""

    @respx.mock
    def test_malformed_json_recovered_by_fallback(self):
        route = respx.get(URL)
        route.side_effect = [httpx.Response(200, content=b"{truncated"), httpx.Response(200, json=METADATA)]
        client = make_client()

        result = client.fetch(URL)

        assert result.payload == METADATA
        assert route.call_count == 2
        assert client.stats["fallbacks"] == 1

    @respx.mock
    def test_fallback_attempted_once_then_surfaced(self):
        route = respx.get(URL).mock(return_value=httpx.Response(200, content=b"<html>"))
        client = make_client()

        with pytest.raises(PayloadError):
            client.fetch(URL)

        assert route.call_count == 2
        assert client.stats["fallbacks"] == 1
        assert client.stats["failures"] == 1

    @respx.mock
    def test_empty_buffer_is_payload_error(self):
        respx.get(URL).mock(return_value=httpx.Response(200, content=b""))
        client = make_client()

        with pytest.raises(PayloadError):
            client.fetch(URL, response_kind=ResponseKind.BUFFER)


# ---------------------------------------------------------------------------
# Streams
# ---------------------------------------------------------------------------

class TestStreams:
    """Tests for streamed responses."""

    @respx.mock
    def test_stream_is_never_cached(self, tmp_path):
        from fetch.cache import ResponseCache

        respx.get(URL).mock(return_value=httpx.Response(200, content=b"chunk" * 10))
        cache = ResponseCache(str(tmp_path))
        client = make_client(cache=cache)

        result = client.fetch(URL, response_kind=ResponseKind.STREAM)
        try:
            assert b"".join(result.payload.iter_bytes()) == b"chunk" * 10
        finally:
            result.payload.close()

        assert cache.get_stats()["count"] == 0
        cache.close()

    @respx.mock
    def test_stream_error_status_raises(self):
        respx.get(URL).mock(return_value=httpx.Response(404))
        client = make_client()

        with pytest.raises(TransportError):
            client.fetch(URL, response_kind=ResponseKind.STREAM)


class TestLifecycle:
    """Tests for client ownership."""

    def test_injected_client_not_closed(self):
        from unittest.mock import MagicMock

        http_client = MagicMock(spec=httpx.Client)
        with FetchClient(http_client=http_client):
            pass
        http_client.close.assert_not_called()
