"""
Server snapshot ingestion.

Turns a file server's raw movie / TV inventory JSON into a normalized
ServerSnapshot. Raw entries are validated with pydantic; entries that fail
validation (or whose episode numbers can't be resolved from the file name)
are logged, recorded in ServerSnapshot.rejected and skipped.

Normalization done here so synchronizers never see upstream quirks:
- "maybe keyed" dimensions/length values are unwrapped to a single value
- episode dimensions/lengths keyed by file name at season level are
  attached to the episode they describe
- file size is read from either size or additionalMetadata.size
- timestamps are converted to ISO-8601 UTC strings

Raw shape (per server):
    {
      "movies": {"<title>": {"urls": {...}, "dimensions": ..., "length": ..., ...}},
      "tv": {"<show>": {"poster": ..., "seasons": {"Season 1": {"episodes": {...}}}}}
    }
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fetch.client import FetchClient, RetryPolicy
from shared.log import create_logger
from snapshot.models import (
    CaptionOffer,
    FieldGroup,
    FieldSlot,
    MediaKind,
    ServerSnapshot,
    TitleKey,
    TitleOffer,
)
from validation.config import ServerDescriptor

_, log_debug, log_info, log_warn, log_error = create_logger("Snapshot")

SNAPSHOT_VERSION_KEY = 'version'

EPISODE_FILENAME_PATTERNS = [
    re.compile(r'S(\d+)E(\d+)', re.IGNORECASE),             # 'S01E01 - Title.mp4', '1923 - S01E01.mp4'
    re.compile(r'^(\d+)\s*-', re.IGNORECASE),                # '01 - Title.mp4'
]
SEASON_KEY_PATTERN = re.compile(r'(\d+)')


# =============================================================================
# Value normalization
# =============================================================================

def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an upstream timestamp into an aware UTC datetime.

    Accepts datetimes, epoch seconds or milliseconds, and ISO-8601 strings
    (including a trailing 'Z'). Returns None for anything unparseable.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def normalize_timestamp(value: Any) -> Optional[str]:
    parsed = parse_timestamp(value)
    return parsed.isoformat() if parsed is not None else None


def unwrap_keyed(value: Any) -> Any:
    """Return the first entry of a keyed mapping, or the value itself.

    Upstream reports dimensions/length either directly or keyed by quality
    or file name ({"1080p": "1920x1080"}).
    """
    if isinstance(value, dict):
        if not value:
            return None
        return next(iter(value.values()))
    return value


def parse_episode_number(file_name: str) -> Optional[tuple[Optional[int], int]]:
    """
    Extract (season, episode) from an episode file name.

    Returns:
        (season, episode) for SxxEyy names, (None, episode) for
        "NN - Title" names, None when nothing matches
    """
    match = EPISODE_FILENAME_PATTERNS[0].search(file_name)
    if match:
        return int(match.group(1)), int(match.group(2))
    match = EPISODE_FILENAME_PATTERNS[1].search(file_name)
    if match:
        return None, int(match.group(1))
    return None


def parse_season_number(season_key: str) -> Optional[int]:
    match = SEASON_KEY_PATTERN.search(season_key)
    return int(match.group(1)) if match else None


# =============================================================================
# Raw upstream models
# =============================================================================

class _Raw(BaseModel):
    model_config = ConfigDict(extra='ignore')


class RawSubtitle(_Raw):
    url: str = Field(min_length=1)
    srcLang: Optional[str] = None
    lastModified: Optional[Any] = None


class RawMovieUrls(_Raw):
    metadata: Optional[str] = None
    mp4: Optional[str] = None
    poster: Optional[str] = None
    backdrop: Optional[str] = None
    logo: Optional[str] = None
    chapters: Optional[str] = None
    posterBlurhash: Optional[str] = None
    backdropBlurhash: Optional[str] = None
    subtitles: dict[str, RawSubtitle] = Field(default_factory=dict)
    mediaLastModified: Optional[Any] = None


class RawMovie(_Raw):
    urls: RawMovieUrls = Field(default_factory=RawMovieUrls)
    dimensions: Optional[Any] = None
    length: Optional[Any] = None
    hdr: Optional[Any] = None
    mediaQuality: Optional[dict[str, Any]] = None
    additionalMetadata: Optional[dict[str, Any]] = None

    @field_validator('dimensions', 'length', mode='before')
    @classmethod
    def unwrap_keyed_value(cls, v):
        return unwrap_keyed(v)


class RawEpisode(_Raw):
    videoURL: Optional[str] = None
    metadata: Optional[str] = None
    thumbnail: Optional[str] = None
    thumbnailBlurhash: Optional[str] = None
    chapters: Optional[str] = None
    subtitles: dict[str, RawSubtitle] = Field(default_factory=dict)
    hdr: Optional[Any] = None
    mediaQuality: Optional[dict[str, Any]] = None
    size: Optional[Any] = None
    mediaLastModified: Optional[Any] = None
    additionalMetadata: Optional[dict[str, Any]] = None


class RawSeason(_Raw):
    metadata: Optional[str] = None
    season_poster: Optional[str] = None
    seasonPosterBlurhash: Optional[str] = None
    dimensions: dict[str, Any] = Field(default_factory=dict)
    lengths: dict[str, Any] = Field(default_factory=dict)
    episodes: dict[str, RawEpisode] = Field(default_factory=dict)


class RawShow(_Raw):
    metadata: Optional[str] = None
    poster: Optional[str] = None
    backdrop: Optional[str] = None
    logo: Optional[str] = None
    posterBlurhash: Optional[str] = None
    backdropBlurhash: Optional[str] = None
    seasons: dict[str, RawSeason] = Field(default_factory=dict)


# =============================================================================
# Offer construction
# =============================================================================

def _put(assets: dict, group: FieldGroup, value: Optional[str], qualifier: Optional[str] = None) -> None:
    if value:
        assets[FieldSlot(group, qualifier)] = value


def _captions(subtitles: dict[str, RawSubtitle]) -> dict[str, CaptionOffer]:
    return {
        lang: CaptionOffer(
            lang=lang,
            url=sub.url,
            src_lang=sub.srcLang,
            last_modified=normalize_timestamp(sub.lastModified) or sub.lastModified,
        )
        for lang, sub in subtitles.items()
    }


def _video_info(
    dimensions: Any,
    duration: Any,
    hdr: Any,
    media_quality: Optional[dict],
    size: Any,
    media_last_modified: Any,
) -> dict[str, Any]:
    info = {}
    if dimensions not in (None, ''):
        info['dimensions'] = dimensions
    if duration not in (None, ''):
        info['duration'] = duration
    if hdr is not None:
        info['hdr'] = hdr
    if media_quality:
        info['mediaQuality'] = media_quality
    if size is not None:
        info['size'] = size
    stamp = normalize_timestamp(media_last_modified)
    if stamp is not None:
        info['mediaLastModified'] = stamp
    return info


def _movie_offer(title: str, raw: RawMovie) -> TitleOffer:
    offer = TitleOffer(kind=MediaKind.MOVIE, key=TitleKey(title))
    urls = raw.urls
    _put(offer.assets, FieldGroup.METADATA, urls.metadata)
    _put(offer.assets, FieldGroup.VIDEO_URL, urls.mp4)
    _put(offer.assets, FieldGroup.POSTER, urls.poster)
    _put(offer.assets, FieldGroup.BACKDROP, urls.backdrop)
    _put(offer.assets, FieldGroup.LOGO, urls.logo)
    _put(offer.assets, FieldGroup.CHAPTERS, urls.chapters)
    _put(offer.assets, FieldGroup.BLURHASH, urls.posterBlurhash, 'poster')
    _put(offer.assets, FieldGroup.BLURHASH, urls.backdropBlurhash, 'backdrop')
    offer.captions = _captions(urls.subtitles)
    size = (raw.additionalMetadata or {}).get('size')
    offer.video_info = _video_info(
        raw.dimensions, raw.length, raw.hdr, raw.mediaQuality, size, urls.mediaLastModified
    )
    return offer


def _show_offer(title: str, raw: RawShow) -> TitleOffer:
    offer = TitleOffer(kind=MediaKind.SHOW, key=TitleKey(title))
    _put(offer.assets, FieldGroup.METADATA, raw.metadata)
    _put(offer.assets, FieldGroup.POSTER, raw.poster)
    _put(offer.assets, FieldGroup.BACKDROP, raw.backdrop)
    _put(offer.assets, FieldGroup.LOGO, raw.logo)
    _put(offer.assets, FieldGroup.BLURHASH, raw.posterBlurhash, 'poster')
    _put(offer.assets, FieldGroup.BLURHASH, raw.backdropBlurhash, 'backdrop')
    return offer


def _season_offer(key: TitleKey, raw: RawSeason) -> TitleOffer:
    offer = TitleOffer(kind=MediaKind.SEASON, key=key)
    _put(offer.assets, FieldGroup.METADATA, raw.metadata)
    _put(offer.assets, FieldGroup.POSTER, raw.season_poster)
    _put(offer.assets, FieldGroup.BLURHASH, raw.seasonPosterBlurhash, 'poster')
    return offer


def _episode_offer(key: TitleKey, file_name: str, raw: RawEpisode, season: RawSeason) -> TitleOffer:
    offer = TitleOffer(kind=MediaKind.EPISODE, key=key, file_name=file_name)
    _put(offer.assets, FieldGroup.METADATA, raw.metadata)
    _put(offer.assets, FieldGroup.VIDEO_URL, raw.videoURL)
    _put(offer.assets, FieldGroup.THUMBNAIL, raw.thumbnail)
    _put(offer.assets, FieldGroup.CHAPTERS, raw.chapters)
    _put(offer.assets, FieldGroup.BLURHASH, raw.thumbnailBlurhash, 'thumbnail')
    offer.captions = _captions(raw.subtitles)
    size = raw.size if raw.size is not None else (raw.additionalMetadata or {}).get('size')
    offer.video_info = _video_info(
        unwrap_keyed(season.dimensions.get(file_name)),
        unwrap_keyed(season.lengths.get(file_name)),
        raw.hdr,
        raw.mediaQuality,
        size,
        raw.mediaLastModified,
    )
    return offer


def _describe(err: ValidationError) -> str:
    return '; '.join(
        f"{'.'.join(str(p) for p in e['loc']) or 'entry'}: {e['msg']}" for e in err.errors()
    )


def _ingest_tv(snapshot: ServerSnapshot, tv: dict[str, Any]) -> None:
    for show_title, raw_show in tv.items():
        try:
            show = RawShow.model_validate(raw_show)
        except ValidationError as e:
            snapshot.rejected.append(f"show '{show_title}': {_describe(e)}")
            log_warn(f"Skipping show '{show_title}' from {snapshot.server_id}: {_describe(e)}")
            continue

        snapshot.add(_show_offer(show_title, show))

        for season_key, season in show.seasons.items():
            season_number = parse_season_number(season_key)
            if season_number is None:
                snapshot.rejected.append(f"show '{show_title}': unrecognized season key '{season_key}'")
                log_warn(f"Skipping '{show_title}' {season_key!r} from {snapshot.server_id}: no season number")
                continue

            snapshot.add(_season_offer(TitleKey(show_title, season_number), season))

            for file_name, episode in season.episodes.items():
                parsed = parse_episode_number(file_name)
                if parsed is None:
                    snapshot.rejected.append(
                        f"show '{show_title}' season {season_number}: "
                        f"no episode number in '{file_name}'"
                    )
                    log_warn(f"Skipping '{file_name}' from {snapshot.server_id}: no episode number")
                    continue
                file_season, episode_number = parsed
                if file_season is not None and file_season != season_number:
                    log_debug(
                        f"'{file_name}' names season {file_season} but is listed under "
                        f"season {season_number}; using {season_number}"
                    )
                key = TitleKey(show_title, season_number, episode_number)
                if snapshot.get(MediaKind.EPISODE, key) is not None:
                    snapshot.rejected.append(f"{key.label}: duplicate episode file '{file_name}'")
                    log_warn(f"Duplicate episode {key.label} on {snapshot.server_id}, keeping first file")
                    continue
                snapshot.add(_episode_offer(key, file_name, episode, season))


def parse_server_snapshot(server_id: str, raw: dict[str, Any]) -> ServerSnapshot:
    """
    Normalize one server's raw inventory.

    Args:
        server_id: Id of the server the inventory came from
        raw: Dict with optional "movies" and "tv" mappings

    Returns:
        ServerSnapshot with one TitleOffer per movie, show, season and episode
    """
    snapshot = ServerSnapshot(server_id=server_id)

    movies = {k: v for k, v in (raw.get('movies') or {}).items() if k != SNAPSHOT_VERSION_KEY}
    tv = {k: v for k, v in (raw.get('tv') or {}).items() if k != SNAPSHOT_VERSION_KEY}

    for title, raw_movie in movies.items():
        try:
            movie = RawMovie.model_validate(raw_movie)
        except ValidationError as e:
            snapshot.rejected.append(f"movie '{title}': {_describe(e)}")
            log_warn(f"Skipping movie '{title}' from {server_id}: {_describe(e)}")
            continue
        snapshot.add(_movie_offer(title, movie))

    _ingest_tv(snapshot, tv)

    counts = snapshot.counts()
    log_info(
        f"Snapshot {server_id}: {counts['movie']} movies, {counts['show']} shows, "
        f"{counts['season']} seasons, {counts['episode']} episodes"
        + (f", {len(snapshot.rejected)} rejected" if snapshot.rejected else "")
    )
    return snapshot


def load_snapshot_file(server_id: str, path: str) -> ServerSnapshot:
    """Load a raw inventory from a JSON file and normalize it."""
    with open(path, 'r', encoding='utf-8') as f:
        raw = json.load(f)
    return parse_server_snapshot(server_id, raw)


def fetch_server_snapshot(
    server: ServerDescriptor,
    client: FetchClient,
    timeout: float = 30.0,
    retry_policy: Optional[RetryPolicy] = None,
) -> ServerSnapshot:
    """
    Fetch a server's movie and TV inventories and normalize them.

    Uses the long bulk timeout; both payloads go through the response cache
    so an unchanged inventory costs a 304.

    Raises:
        FetchError: If either inventory can't be fetched
    """
    raw = {}
    for section, endpoint in (('movies', server.movies_endpoint), ('tv', server.tv_endpoint)):
        url = server.resolve_url(endpoint)
        payload = client.fetch_json(url, timeout=timeout, retry_policy=retry_policy)
        if not isinstance(payload, dict):
            log_warn(f"{server.id} {section} inventory is not an object, ignoring")
            payload = {}
        version = payload.get(SNAPSHOT_VERSION_KEY)
        if version is not None:
            log_debug(f"{server.id} {section} inventory version {version}")
        raw[section] = payload
    return parse_server_snapshot(server.id, raw)
