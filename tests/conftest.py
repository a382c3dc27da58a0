"""
Shared pytest fixtures for FlatSync tests.

Provides reusable fixtures for:
- Server descriptors and a validated FlatSyncConfig
- Raw server inventories (alpha: highest precedence, beta: second)
- Normalized snapshots and the availability index built from them
- An in-memory record store
- A mock fetch client serving canned payloads by URL

The mock fetcher uses unittest.mock so synchronizer and orchestrator tests
never touch the network; fetch client tests use respx instead.
"""

import copy

import pytest
from unittest.mock import MagicMock


# =============================================================================
# Servers and configuration
# =============================================================================

@pytest.fixture
def alpha_server():
    from validation.config import ServerDescriptor
    return ServerDescriptor(id="alpha", priority=1, base_url="http://alpha.test")


@pytest.fixture
def beta_server():
    from validation.config import ServerDescriptor
    return ServerDescriptor(id="beta", priority=2, base_url="http://beta.test/")


@pytest.fixture
def servers(alpha_server, beta_server):
    return [alpha_server, beta_server]


@pytest.fixture
def config(servers, tmp_path):
    """
    Validated FlatSyncConfig with both servers and a tmp data_dir.

    Usage:
        def test_x(config):
            assert config.active_servers[0].id == "alpha"
    """
    from validation.config import FlatSyncConfig
    return FlatSyncConfig(servers=servers, data_dir=str(tmp_path), max_workers=2)


# =============================================================================
# Raw inventories
# =============================================================================

@pytest.fixture
def alpha_raw():
    """
    alpha advertises Heat (video, poster, metadata, English captions,
    dimensions/duration, poster hash) and Dark with one season and two
    episodes. Season 1 has no metadata file of its own.
    """
    return {
        'movies': {
            'version': 3,
            'Heat': {
                'urls': {
                    'metadata': '/movies/Heat/metadata.json',
                    'mp4': '/movies/Heat/Heat.mp4',
                    'poster': '/movies/Heat/poster.jpg',
                    'posterBlurhash': '/movies/Heat/poster.blurhash',
                    'subtitles': {
                        'English': {
                            'url': '/movies/Heat/Heat.en.srt',
                            'srcLang': 'en',
                            'lastModified': '2024-01-01T00:00:00Z',
                        },
                    },
                    'mediaLastModified': '2024-01-02T00:00:00Z',
                },
                'dimensions': {'1080p': '1920x1080'},
                'length': {'1080p': 10260000},
            },
        },
        'tv': {
            'Dark': {
                'metadata': '/tv/Dark/metadata.json',
                'poster': '/tv/Dark/poster.jpg',
                'seasons': {
                    'Season 1': {
                        'season_poster': '/tv/Dark/Season 1/poster.jpg',
                        'dimensions': {'S01E01.mp4': '1920x1080'},
                        'lengths': {'S01E01.mp4': 3060000},
                        'episodes': {
                            'S01E01.mp4': {
                                'videoURL': '/tv/Dark/Season 1/S01E01.mp4',
                                'thumbnail': '/tv/Dark/Season 1/S01E01.jpg',
                            },
                            'S01E02.mp4': {
                                'videoURL': '/tv/Dark/Season 1/S01E02.mp4',
                            },
                        },
                    },
                },
            },
        },
    }


@pytest.fixture
def beta_raw():
    """
    beta also has Heat (its own video, a backdrop alpha lacks, French
    captions, HDR info) plus Ronin, which only beta has.
    """
    return {
        'movies': {
            'Heat': {
                'urls': {
                    'mp4': '/media/Heat.mp4',
                    'backdrop': '/media/Heat/backdrop.jpg',
                    'subtitles': {
                        'French': {'url': '/media/Heat.fr.srt', 'srcLang': 'fr'},
                        'English': {'url': '/media/Heat.en.srt', 'srcLang': 'en'},
                    },
                },
                'dimensions': '3840x2160',
                'hdr': 'HDR10',
            },
            'Ronin': {
                'urls': {'mp4': '/media/Ronin.mp4', 'poster': '/media/Ronin/poster.jpg'},
            },
        },
        'tv': {},
    }


@pytest.fixture
def alpha_snapshot(alpha_raw):
    from snapshot.ingest import parse_server_snapshot
    return parse_server_snapshot("alpha", alpha_raw)


@pytest.fixture
def beta_snapshot(beta_raw):
    from snapshot.ingest import parse_server_snapshot
    return parse_server_snapshot("beta", beta_raw)


@pytest.fixture
def snapshots(alpha_snapshot, beta_snapshot):
    return [alpha_snapshot, beta_snapshot]


@pytest.fixture
def index(snapshots, servers):
    from sync.availability import FieldAvailabilityIndex
    return FieldAvailabilityIndex.build(snapshots, servers)


# =============================================================================
# Store and fetcher
# =============================================================================

@pytest.fixture
def memory_store():
    from store.memory import InMemoryRecordStore
    return InMemoryRecordStore()


@pytest.fixture
def payloads():
    """URL -> payload served by mock_fetcher. Tests may add or replace entries."""
    return {
        'http://alpha.test/movies/Heat/metadata.json': {
            'id': 949,
            'title': 'Heat',
            'overview': 'A group of professional bank robbers...',
            'last_updated': '2024-01-01T00:00:00Z',
        },
        'http://alpha.test/movies/Heat/poster.blurhash': 'LEHV6nWB2yk8pyo0adR*.7kCMdnj\n',
        'http://alpha.test/tv/Dark/metadata.json': {
            'id': 70523,
            'name': 'Dark',
            'overview': 'A missing child sets four families on a frantic hunt.',
            'number_of_seasons': 1,
            'number_of_episodes': 2,
            'seasons': [
                {
                    'season_number': 1,
                    'name': 'Season One',
                    'overview': 'Winden, 2019.',
                    'episodes': [{'episode_number': 1}, {'episode_number': 2}],
                },
            ],
        },
    }


@pytest.fixture
def mock_fetcher(payloads):
    """
    Mock FetchClient.

    fetch_json(url) returns a copy of payloads[url]; fetch(url) wraps it in a
    FetchResult. Unknown URLs raise TransportError(404).
    """
    from fetch.client import FetchResult, Provenance
    from fetch.exceptions import TransportError

    def lookup(url):
        if url not in payloads:
            raise TransportError(f"HTTP 404 for {url}", url, 404)
        return copy.deepcopy(payloads[url])

    fetcher = MagicMock()
    fetcher.fetch_json.side_effect = lambda url, **kwargs: lookup(url)
    fetcher.fetch.side_effect = lambda url, **kwargs: FetchResult(lookup(url), {}, Provenance.FRESH)
    return fetcher
