"""
Disk-backed response cache for file server fetches.

Provides a ResponseCache class that stores fetched payloads on disk using
diskcache with TTL-based expiration, together with the HTTP validators
(ETag / Last-Modified) needed for conditional re-requests.

Key design decisions:
- SQLite-backed storage via diskcache, shared by concurrent sync runs
- Entries are stored as JSON envelopes {data, etag, lastModified, timestamp}
  so any other writer speaking the same format can share the cache
- Binary payloads are serialized as {"type": "Buffer", "data": [ints]} and
  reconstructed on read; unrecognized shapes are treated as a miss
- 1-hour TTL by default, 7 days for placeholder-hash payloads

Example:
    >>> from fetch.cache import ResponseCache
    >>> cache = ResponseCache("/path/to/data_dir")
    >>> cache.set("http://fs1/movie/metadata.json", {"id": 1}, etag='"abc"')
    >>> entry = cache.get("http://fs1/movie/metadata.json")
    >>> entry["etag"]
    '"abc"'
"""

import base64
import binascii
import json
import logging
import os
import time
from typing import Any, Dict, Iterable, List, Optional

from diskcache import Cache

logger = logging.getLogger('flatsync.fetch.cache')


def encode_payload(data: Any) -> Any:
    """Convert a payload into a JSON-serializable value.

    bytes become a {"type": "Buffer", "data": [...]} envelope; everything
    else is assumed to already be JSON-compatible (dict, list, str, number).
    """
    if isinstance(data, (bytes, bytearray, memoryview)):
        return {'type': 'Buffer', 'data': list(bytes(data))}
    return data


def _buffer_from(data: Any) -> Optional[bytes]:
    """Reconstruct bytes from any of the wire shapes a buffer may arrive in."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)

    if isinstance(data, str):
        return data.encode('utf-8')

    if isinstance(data, list):
        if all(isinstance(b, int) and 0 <= b <= 255 for b in data):
            return bytes(data)
        return None

    if isinstance(data, dict):
        shape = data.get('type')
        inner = data.get('data')
        if shape == 'base64' and isinstance(inner, str):
            try:
                return base64.b64decode(inner, validate=True)
            except (binascii.Error, ValueError):
                return None
        if isinstance(data.get('base64'), str):
            try:
                return base64.b64decode(data['base64'], validate=True)
            except (binascii.Error, ValueError):
                return None
        if inner is not None:
            # {type: "Buffer", data: [...]} or a nested {data: {...}} wrapper
            return _buffer_from(inner)

    return None


def coerce_payload(data: Any, kind: str) -> Any:
    """
    Re-type a cached payload to the requested response kind.

    Args:
        data: Payload as read back from the cache envelope
        kind: One of "json", "text", "buffer"

    Returns:
        The payload in the requested shape, or None when the cached shape
        can't be reconstructed (callers treat None as a cache miss).
    """
    if data is None:
        return None

    if kind == 'buffer':
        return _buffer_from(data)

    if kind == 'text':
        if isinstance(data, str):
            return data
        if isinstance(data, dict) and data.get('type') in ('Buffer', 'base64'):
            raw = _buffer_from(data)
            if raw is None:
                return None
            try:
                return raw.decode('utf-8')
            except UnicodeDecodeError:
                return None
        try:
            return json.dumps(data)
        except (TypeError, ValueError):
            return None

    if kind == 'json':
        if isinstance(data, dict) and data.get('type') in ('Buffer', 'base64'):
            raw = _buffer_from(data)
            if raw is None:
                return None
            data = raw.decode('utf-8', errors='replace')
        if isinstance(data, str):
            try:
                return json.loads(data)
            except ValueError:
                return None
        return data

    return None


class ResponseCache:
    """
    Disk-backed cache for fetched payloads and their HTTP validators.

    Uses diskcache.Cache for SQLite-backed storage with TTL support.
    Values are stored as JSON text so a read always goes through the same
    serialization another process sharing the cache would use.

    Args:
        data_dir: Base directory for cache storage (cache/ subdirectory created)
        default_ttl: TTL in seconds for regular payloads (default: 3600 = 1 hour)
        size_limit: Maximum cache size in bytes (default: 256MB)

    Example:
        >>> cache = ResponseCache("/data/flatsync", default_ttl=1800)
        >>> cache.set_many([("http://a/1", {"x": 1}, None, None)])
        >>> cache.get_many(["http://a/1", "http://a/2"])
        {'http://a/1': {...}, 'http://a/2': None}
    """

    DEFAULT_TTL = 3600

    # Placeholder hashes almost never change once computed
    HASH_TTL = 7 * 24 * 3600

    DEFAULT_SIZE_LIMIT = 256 * 1024 * 1024

    def __init__(
        self,
        data_dir: str,
        default_ttl: int = DEFAULT_TTL,
        size_limit: int = DEFAULT_SIZE_LIMIT,
    ) -> None:
        self._data_dir = data_dir
        self._default_ttl = default_ttl
        self._size_limit = size_limit

        cache_dir = os.path.join(data_dir, 'cache')
        os.makedirs(cache_dir, exist_ok=True)

        self._cache = Cache(cache_dir, size_limit=size_limit)
        self._cache.stats(enable=True)

        self._hits = 0
        self._misses = 0
        self._stores = 0

        logger.debug(f"ResponseCache initialized at {cache_dir} (TTL: {default_ttl}s, limit: {size_limit} bytes)")

    def _make_key(self, url: str) -> str:
        """Generate cache key for a URL."""
        return f"fetch:{url}"

    def _decode(self, url: str, raw: Any) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        try:
            entry = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except ValueError as e:
            logger.warning(f"Discarding unreadable cache entry for {url}: {e}")
            return None
        if not isinstance(entry, dict) or 'data' not in entry:
            logger.warning(f"Discarding malformed cache entry for {url}")
            return None
        return entry

    def get(self, url: str) -> Optional[Dict[str, Any]]:
        """
        Get the cached envelope for a URL.

        Args:
            url: Absolute URL that was fetched

        Returns:
            Dict with keys data, etag, lastModified, timestamp, or None on miss
        """
        try:
            raw = self._cache.get(self._make_key(url))
        except Exception as e:
            logger.warning(f"Cache read failed for {url}, treating as miss: {e}")
            raw = None

        entry = self._decode(url, raw)
        if entry is not None:
            self._hits += 1
            logger.debug(f"Cache hit for {url}")
        else:
            self._misses += 1
            logger.debug(f"Cache miss for {url}")
        return entry

    def set(
        self,
        url: str,
        data: Any,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        ttl: Optional[int] = None,
    ) -> bool:
        """
        Store a payload and its validators.

        Args:
            url: Absolute URL that was fetched
            data: Payload (dict/list/str/bytes)
            etag: ETag response header, if any
            last_modified: Last-Modified response header, if any
            ttl: Expiry in seconds (defaults to the cache's default TTL)

        Returns:
            True if stored, False if the payload couldn't be serialized or
            the backend rejected the write
        """
        expire = ttl if ttl is not None else self._default_ttl
        envelope = {
            'data': encode_payload(data),
            'etag': etag,
            'lastModified': last_modified,
            'timestamp': time.time(),
        }
        try:
            self._cache.set(self._make_key(url), json.dumps(envelope), expire=expire)
        except (TypeError, ValueError) as e:
            logger.warning(f"Payload for {url} is not cacheable: {e}")
            return False
        except Exception as e:
            logger.warning(f"Cache write failed for {url}: {e}")
            return False

        self._stores += 1
        logger.debug(f"Cached {url} (TTL: {expire}s)")
        return True

    def get_many(self, urls: Iterable[str]) -> Dict[str, Optional[Dict[str, Any]]]:
        """Batched get; returns a dict of url -> envelope (None for misses)."""
        return {url: self.get(url) for url in urls}

    def set_many(self, entries: List[tuple], ttl: Optional[int] = None) -> int:
        """
        Batched set inside a single diskcache transaction.

        Args:
            entries: List of (url, data, etag, last_modified) tuples
            ttl: Expiry applied to every entry

        Returns:
            Number of entries stored
        """
        stored = 0
        with self._cache.transact():
            for url, data, etag, last_modified in entries:
                if self.set(url, data, etag=etag, last_modified=last_modified, ttl=ttl):
                    stored += 1
        return stored

    def delete(self, url: str) -> bool:
        """Remove a single entry. Returns True if an entry existed."""
        return bool(self._cache.delete(self._make_key(url)))

    def clear(self) -> None:
        """Clear all cached data and reset session statistics."""
        self._cache.clear()
        self._hits = 0
        self._misses = 0
        self._stores = 0
        logger.info("Response cache cleared")

    def get_stats(self) -> Dict[str, Any]:
        """
        Get cache hit/miss statistics.

        Returns:
            Dict with keys:
            - hits: Number of cache hits this session
            - misses: Number of cache misses this session
            - stores: Number of entries written this session
            - hit_rate: Hit rate as percentage (0-100)
            - size: Current cache size in bytes
            - count: Number of cached entries
        """
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0.0

        try:
            size = self._cache.volume()
        except Exception:
            size = 0

        try:
            count = len(self._cache)
        except Exception:
            count = 0

        return {
            'hits': self._hits,
            'misses': self._misses,
            'stores': self._stores,
            'hit_rate': hit_rate,
            'size': size,
            'count': count,
        }

    def close(self) -> None:
        """Close the cache connection."""
        self._cache.close()
        logger.debug("Response cache closed")

    def __repr__(self) -> str:
        stats = self.get_stats()
        return (
            f"ResponseCache(data_dir={self._data_dir!r}, "
            f"ttl={self._default_ttl}, "
            f"items={stats['count']}, "
            f"hit_rate={stats['hit_rate']:.1f}%)"
        )
