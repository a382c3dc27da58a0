"""Audit checks for canonical records that did not fully converge."""
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from snapshot.models import KIND_ORDER, MediaKind, ServerSnapshot, TitleKey

# Report section names, as consumed by dashboards
CATEGORY = {
    MediaKind.MOVIE: 'movies',
    MediaKind.SHOW: 'tvShows',
    MediaKind.SEASON: 'seasons',
    MediaKind.EPISODE: 'episodes',
}

MISSING_REASON = 'Present in file server but missing from database'

_GAP_PREFIX = 'Episode gap'


@dataclass
class MediaIssue:
    """One record with at least one audit finding.

    Attributes:
        kind: Media kind of the record
        key: Record identity
        issues: Human-readable findings, e.g. 'Missing poster'
        video_source: Server the record's video URL came from, if any
        season_count: Seasons found (shows only)
        episode_count: Episodes found (shows and seasons only)
    """
    kind: MediaKind
    key: TitleKey
    issues: list[str] = field(default_factory=list)
    video_source: Optional[str] = None
    season_count: Optional[int] = None
    episode_count: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {'title': self.key.title, 'issues': list(self.issues)}
        if self.key.season is not None:
            data['showTitle'] = self.key.title
            data['seasonNumber'] = self.key.season
        if self.key.episode is not None:
            data['episodeNumber'] = self.key.episode
        if self.video_source:
            data['videoSource'] = self.video_source
        if self.season_count is not None:
            data['seasonCount'] = self.season_count
        if self.episode_count is not None:
            data['episodeCount'] = self.episode_count
        return data


@dataclass
class MissingItem:
    """A title a server advertises that has no canonical record."""
    kind: MediaKind
    key: TitleKey
    server_id: str
    file_name: Optional[str] = None
    reason: str = MISSING_REASON

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {'serverId': self.server_id, 'reason': self.reason}
        if self.key.season is None:
            data['title'] = self.key.title
        else:
            data['showTitle'] = self.key.title
            data['seasonNumber'] = self.key.season
        if self.key.episode is not None:
            data['episodeNumber'] = self.key.episode
        if self.file_name:
            data['filename'] = self.file_name
        return data


@dataclass
class ServerIssues:
    """Failure counts attributed to one server."""
    missing_video_urls: int = 0
    missing_thumbnails: int = 0
    missing_posters: int = 0
    failed_content_count: int = 0
    issues_by_category: dict[str, list[dict[str, Any]]] = field(
        default_factory=lambda: {name: [] for name in CATEGORY.values()}
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            'missingVideoUrls': self.missing_video_urls,
            'missingThumbnails': self.missing_thumbnails,
            'missingPosters': self.missing_posters,
            'failedContentCount': self.failed_content_count,
            'issuesByCategory': {k: list(v) for k, v in self.issues_by_category.items()},
        }


def _norm(title: Optional[str]) -> str:
    return (title or '').strip().lower()


def _paired_check(issues: list[str], record: dict, value: str, source: str, label: str) -> None:
    """Report a value and its source server together when both are absent."""
    has_value = bool(record.get(value))
    has_source = bool(record.get(source))
    if not has_value and not has_source:
        issues.append(f'Missing {label} and source server')
    elif not has_value:
        issues.append(f'Missing {label}')
    elif not has_source:
        issues.append(f'Missing {label} source server')


def _metadata(record: dict) -> dict:
    metadata = record.get('metadata')
    return metadata if isinstance(metadata, dict) else {}


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


# =============================================================================
# Per-record checks
# =============================================================================

def check_movie(record: dict[str, Any]) -> list[str]:
    issues = []
    if not record.get('videoURL'):
        issues.append('Missing videoURL')
    if not record.get('title'):
        issues.append('Missing title')
    if not record.get('posterURL'):
        issues.append('Missing poster')
    if not record.get('posterSource'):
        issues.append('Missing poster source server')
    if not record.get('posterBlurhash'):
        issues.append('Missing poster blurhash')
    _paired_check(issues, record, 'logoURL', 'logoSource', 'logo')
    if not record.get('backdropURL'):
        issues.append('Missing backdrop')
    if not record.get('backdropSource'):
        issues.append('Missing backdrop source server')
    _paired_check(issues, record, 'metadata', 'metadataSource', 'metadata')
    if not record.get('duration'):
        issues.append('Missing duration of media')
    if not record.get('dimensions'):
        issues.append('Missing dimensions of media')
    if not record.get('originalTitle'):
        issues.append('Missing originalTitle')
    if record.get('title') and not _metadata(record).get('overview'):
        issues.append('Missing overview')
    return issues


def check_show(record: dict[str, Any], season_count: int, episode_count: int) -> list[str]:
    """
    Field checks plus season/episode counts against the show's metadata.

    number_of_seasons and number_of_episodes come from the metadata document;
    a show whose metadata doesn't declare them is only checked for having
    at least one season.
    """
    issues = []
    if not record.get('title'):
        issues.append('Missing title')
    if not record.get('posterURL'):
        issues.append('Missing poster')
    if not record.get('posterSource'):
        issues.append('Missing poster source server')
    if not record.get('posterBlurhash'):
        issues.append('Missing poster blurhash')
    _paired_check(issues, record, 'logoURL', 'logoSource', 'logo')
    _paired_check(issues, record, 'metadata', 'metadataSource', 'metadata')
    if not record.get('originalTitle'):
        issues.append('Missing originalTitle')

    metadata = _metadata(record)
    if record.get('title') and not metadata.get('overview'):
        issues.append('Missing overview')

    expected_seasons = _as_int(metadata.get('number_of_seasons'))
    if season_count == 0:
        issues.append('No seasons found')
    elif expected_seasons > 0 and season_count < expected_seasons:
        issues.append(f'Missing seasons ({season_count}/{expected_seasons})')

    expected_episodes = _as_int(metadata.get('number_of_episodes'))
    if episode_count == 0 and expected_episodes > 0:
        issues.append('No episodes found')
    elif expected_episodes > 0 and episode_count < expected_episodes:
        issues.append(f'Missing episodes ({episode_count}/{expected_episodes})')
    return issues


def check_season(record: dict[str, Any], episode_count: int) -> list[str]:
    issues = []
    if record.get('seasonNumber') is None:
        issues.append('Missing seasonNumber')
    if not record.get('posterURL'):
        issues.append('Missing poster')
    if not record.get('posterSource'):
        issues.append('Missing poster source server')
    if not record.get('posterBlurhash'):
        issues.append('Missing poster blurhash')
    if not record.get('metadata'):
        issues.append('Missing metadata')
    if not record.get('metadataSource'):
        issues.append('Missing metadata source server')

    expected = _as_int(_metadata(record).get('episode_count'))
    if episode_count == 0 and expected > 0:
        issues.append('No episodes found')
    elif expected > 0 and episode_count < expected:
        issues.append(f'Missing episodes ({episode_count}/{expected})')
    return issues


def check_episode(record: dict[str, Any]) -> list[str]:
    issues = []
    if record.get('episodeNumber') is None:
        issues.append('Missing episodeNumber')
    if not record.get('videoURL'):
        issues.append('Missing videoURL')
    if not record.get('thumbnail'):
        issues.append('Missing thumbnail')
    if not record.get('thumbnailBlurhash'):
        issues.append('Missing thumbnail blurhash')
    if not record.get('title'):
        issues.append('Missing title')
    if not record.get('showTitle'):
        issues.append('Missing showTitle')
    _paired_check(issues, record, 'metadata', 'metadataSource', 'metadata')
    if not record.get('duration'):
        issues.append('Missing duration or length of media')
    if not record.get('dimensions'):
        issues.append('Missing dimensions of media')
    return issues


# =============================================================================
# Whole-store checks
# =============================================================================

def _record_key(kind: MediaKind, record: dict[str, Any]) -> TitleKey:
    if kind in (MediaKind.MOVIE, MediaKind.SHOW):
        return TitleKey(record.get('originalTitle') or record.get('title') or 'Unknown Title')
    show = record.get('showTitle') or 'Unknown Show'
    if kind is MediaKind.SEASON:
        return TitleKey(show, record.get('seasonNumber'))
    return TitleKey(show, record.get('seasonNumber'), record.get('episodeNumber'))


def find_incomplete_records(records: dict[MediaKind, list[dict[str, Any]]]) -> dict[MediaKind, list[MediaIssue]]:
    """
    Run the per-kind checks over every canonical record.

    Seasons and episodes are related to their show by showTitle
    (case-insensitive); episodes to their season by season number.

    Returns:
        Per kind, the records with at least one issue
    """
    movies = records.get(MediaKind.MOVIE, [])
    shows = records.get(MediaKind.SHOW, [])
    seasons = records.get(MediaKind.SEASON, [])
    episodes = records.get(MediaKind.EPISODE, [])

    seasons_per_show: Counter = Counter(_norm(s.get('showTitle')) for s in seasons if s.get('showTitle'))
    episodes_per_show: Counter = Counter(_norm(e.get('showTitle')) for e in episodes if e.get('showTitle'))
    episodes_per_season: Counter = Counter(
        (_norm(e.get('showTitle')), e.get('seasonNumber'))
        for e in episodes
        if e.get('showTitle') and e.get('seasonNumber') is not None
    )

    result: dict[MediaKind, list[MediaIssue]] = {kind: [] for kind in KIND_ORDER}

    for movie in movies:
        issues = check_movie(movie)
        if issues:
            result[MediaKind.MOVIE].append(MediaIssue(
                MediaKind.MOVIE, _record_key(MediaKind.MOVIE, movie), issues,
                video_source=movie.get('videoSource'),
            ))

    for show in shows:
        names = {_norm(show.get('title')), _norm(show.get('originalTitle'))} - {''}
        season_count = max((seasons_per_show[n] for n in names), default=0)
        episode_count = max((episodes_per_show[n] for n in names), default=0)
        issues = check_show(show, season_count, episode_count)
        if issues:
            result[MediaKind.SHOW].append(MediaIssue(
                MediaKind.SHOW, _record_key(MediaKind.SHOW, show), issues,
                season_count=season_count, episode_count=episode_count,
            ))

    for season in seasons:
        episode_count = episodes_per_season[(_norm(season.get('showTitle')), season.get('seasonNumber'))]
        issues = check_season(season, episode_count)
        if issues:
            result[MediaKind.SEASON].append(MediaIssue(
                MediaKind.SEASON, _record_key(MediaKind.SEASON, season), issues,
                episode_count=episode_count,
            ))

    for episode in episodes:
        issues = check_episode(episode)
        if issues:
            result[MediaKind.EPISODE].append(MediaIssue(
                MediaKind.EPISODE, _record_key(MediaKind.EPISODE, episode), issues,
                video_source=episode.get('videoSource'),
            ))

    return result


def find_episode_gaps(episodes: Iterable[dict[str, Any]]) -> dict[TitleKey, list[str]]:
    """
    Find holes in episode numbering within each season.

    Episodes 1, 2, 4, 5 of a season produce one finding:
    'Episode gap: missing episodes 3-3'.

    Returns:
        Season key (showTitle, seasonNumber) -> gap findings, in ascending order
    """
    by_season: dict[TitleKey, set[int]] = defaultdict(set)
    for episode in episodes:
        show = episode.get('showTitle')
        season = episode.get('seasonNumber')
        number = episode.get('episodeNumber')
        if not show or season is None or not isinstance(number, int):
            continue
        by_season[TitleKey(show, season)].add(number)

    gaps: dict[TitleKey, list[str]] = {}
    for key, numbers in by_season.items():
        if len(numbers) < 2:
            continue
        ordered = sorted(numbers)
        findings = [
            f'{_GAP_PREFIX}: missing episodes {prev + 1}-{cur - 1}'
            for prev, cur in zip(ordered, ordered[1:])
            if cur - prev > 1
        ]
        if findings:
            gaps[key] = findings
    return gaps


def find_missing_content(
    snapshots: Iterable[ServerSnapshot],
    records: dict[MediaKind, list[dict[str, Any]]],
) -> dict[MediaKind, list[MissingItem]]:
    """
    List titles advertised by a server that have no canonical record.

    Titles match case-insensitively; movies and shows match on either
    title or originalTitle.
    """
    known: dict[MediaKind, set] = {kind: set() for kind in KIND_ORDER}
    for kind in (MediaKind.MOVIE, MediaKind.SHOW):
        for record in records.get(kind, []):
            for name in (record.get('title'), record.get('originalTitle')):
                if name:
                    known[kind].add((_norm(name),))
    for record in records.get(MediaKind.SEASON, []):
        if record.get('showTitle') and record.get('seasonNumber') is not None:
            known[MediaKind.SEASON].add((_norm(record['showTitle']), record['seasonNumber']))
    for record in records.get(MediaKind.EPISODE, []):
        if record.get('showTitle') and record.get('seasonNumber') is not None \
                and record.get('episodeNumber') is not None:
            known[MediaKind.EPISODE].add(
                (_norm(record['showTitle']), record['seasonNumber'], record['episodeNumber'])
            )

    missing: dict[MediaKind, list[MissingItem]] = {kind: [] for kind in KIND_ORDER}
    for snapshot in snapshots:
        for kind in KIND_ORDER:
            for offer in snapshot.offers(kind):
                key = offer.key
                lookup = tuple(v for v in (_norm(key.title), key.season, key.episode) if v is not None)
                if lookup not in known[kind]:
                    missing[kind].append(MissingItem(kind, key, snapshot.server_id, offer.file_name))
    return missing


# (kind, value field, source field, ServerIssues counter, counts as failed content)
_ATTRIBUTED_FIELDS = (
    (MediaKind.MOVIE, 'videoURL', 'videoSource', 'missing_video_urls', True),
    (MediaKind.MOVIE, 'posterURL', 'posterSource', 'missing_posters', False),
    (MediaKind.SHOW, 'posterURL', 'posterSource', 'missing_posters', False),
    (MediaKind.SEASON, 'posterURL', 'posterSource', 'missing_posters', False),
    (MediaKind.EPISODE, 'videoURL', 'videoSource', 'missing_video_urls', True),
    (MediaKind.EPISODE, 'thumbnail', 'thumbnailSource', 'missing_thumbnails', False),
)

_ISSUE_LABEL = {
    'videoURL': 'Missing videoURL',
    'posterURL': 'Missing poster',
    'thumbnail': 'Missing thumbnail',
}


def attribute_server_failures(
    server_ids: Iterable[str],
    records: dict[MediaKind, list[dict[str, Any]]],
) -> dict[str, ServerIssues]:
    """
    Count missing video URLs, thumbnails and posters per responsible server.

    A missing field is blamed on the field's own source if recorded, else
    the record's video source, else the server that first discovered it.
    Records with no attributable server are not counted.
    """
    report = {server_id: ServerIssues() for server_id in server_ids}

    for kind, value_field, source_field, counter, failed in _ATTRIBUTED_FIELDS:
        for record in records.get(kind, []):
            if record.get(value_field):
                continue
            server_id = (
                record.get(source_field)
                or record.get('videoSource')
                or record.get('initialDiscoveryServer')
            )
            if not server_id:
                continue
            issues = report.setdefault(server_id, ServerIssues())
            setattr(issues, counter, getattr(issues, counter) + 1)
            if failed:
                issues.failed_content_count += 1
            entry = MediaIssue(kind, _record_key(kind, record)).to_dict()
            entry.pop('issues')
            entry['issue'] = _ISSUE_LABEL[value_field]
            issues.issues_by_category[CATEGORY[kind]].append(entry)

    return report


def _by_frequency(counts: dict[str, int]) -> dict[str, int]:
    return dict(sorted(counts.items(), key=lambda kv: kv[1], reverse=True))


def summarize_issues(issues: dict[MediaKind, list[MediaIssue]]) -> dict[str, Any]:
    """
    Group findings by type, by category and by pattern, most frequent first.

    topIssues buckets:
        missingFields      - 'Missing <field>' findings
        missingMetadata    - 'Missing overview'
        relationshipIssues - missing seasons/episodes, 'No seasons found'
        gapIssues          - episode numbering gaps
    """
    top = {'missingFields': 0, 'missingMetadata': 0, 'relationshipIssues': 0, 'gapIssues': 0}
    total: Counter = Counter()
    by_category: dict[str, Counter] = {name: Counter() for name in CATEGORY.values()}
    by_pattern: dict[str, Counter] = {
        'missingFields': Counter(),
        'missingSeasons': Counter(),
        'missingEpisodes': Counter(),
        'episodeGaps': Counter(),
    }

    for kind, entries in issues.items():
        category = by_category[CATEGORY[kind]]
        for entry in entries:
            for issue in entry.issues:
                category[issue] += 1
                total[issue] += 1

                if issue.startswith('Missing '):
                    if 'seasons' in issue or 'episodes' in issue:
                        top['relationshipIssues'] += 1
                        if 'seasons' in issue:
                            by_pattern['missingSeasons'][issue] += 1
                        if 'episodes' in issue:
                            by_pattern['missingEpisodes'][issue] += 1
                    elif issue == 'Missing overview':
                        top['missingMetadata'] += 1
                    else:
                        top['missingFields'] += 1
                        by_pattern['missingFields'][issue] += 1
                elif issue.startswith(_GAP_PREFIX):
                    top['gapIssues'] += 1
                    by_pattern['episodeGaps'][issue] += 1
                elif issue in ('No seasons found', 'No episodes found'):
                    top['relationshipIssues'] += 1

    return {
        'topIssues': top,
        'total': _by_frequency(total),
        'byCategory': {name: _by_frequency(c) for name, c in by_category.items()},
        'byPattern': {name: _by_frequency(c) for name, c in by_pattern.items()},
    }
