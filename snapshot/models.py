"""
Data model shared by ingestion, the availability index, the record store
and the synchronizers.

Field slots are a closed set of FieldGroup identifiers plus an optional
qualifier (caption language, video-info sub-field, placeholder-hash
target), so priority lookups never depend on free-form dotted paths.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional


class MediaKind(str, Enum):
    MOVIE = 'movie'
    SHOW = 'show'
    SEASON = 'season'
    EPISODE = 'episode'


# Parents first: a season can only be bootstrapped once its show exists
KIND_ORDER = (MediaKind.MOVIE, MediaKind.SHOW, MediaKind.SEASON, MediaKind.EPISODE)


class FieldGroup(str, Enum):
    METADATA = 'metadata'
    VIDEO_URL = 'videoUrl'
    POSTER = 'poster'
    BACKDROP = 'backdrop'
    LOGO = 'logo'
    THUMBNAIL = 'thumbnail'
    CHAPTERS = 'chapters'
    CAPTIONS = 'captions'
    VIDEO_INFO = 'videoInfo'
    BLURHASH = 'blurhash'


# Technical sub-fields, in the order they are written to the record
VIDEO_INFO_FIELDS = ('dimensions', 'duration', 'hdr', 'mediaQuality', 'size', 'mediaLastModified')

# Placeholder-hash qualifier -> canonical record field
BLURHASH_FIELDS = {
    'poster': 'posterBlurhash',
    'backdrop': 'backdropBlurhash',
    'thumbnail': 'thumbnailBlurhash',
}


@dataclass(frozen=True, order=True)
class FieldSlot:
    """One independently arbitrated field: a group plus optional qualifier."""
    group: FieldGroup
    qualifier: Optional[str] = None

    def __str__(self) -> str:
        if self.qualifier is None:
            return self.group.value
        return f"{self.group.value}.{self.qualifier}"


@dataclass(frozen=True, order=True)
class TitleKey:
    """Stable identity of a canonical record.

    Movies and shows are keyed by original title; seasons add the season
    number; episodes add season and episode numbers.
    """
    title: str
    season: Optional[int] = None
    episode: Optional[int] = None

    @property
    def label(self) -> str:
        if self.season is None:
            return self.title
        if self.episode is None:
            return f"{self.title} S{self.season:02d}"
        return f"{self.title} S{self.season:02d}E{self.episode:02d}"

    def show_key(self) -> 'TitleKey':
        return TitleKey(self.title)

    def season_key(self) -> 'TitleKey':
        return TitleKey(self.title, self.season)

    def as_filter(self) -> dict[str, Any]:
        """Document fields that identify this key in the record store."""
        if self.season is None:
            return {'originalTitle': self.title}
        if self.episode is None:
            return {'showTitle': self.title, 'seasonNumber': self.season}
        return {'showTitle': self.title, 'seasonNumber': self.season, 'episodeNumber': self.episode}


@dataclass
class CaptionOffer:
    """One subtitle track as advertised by a server."""
    lang: str
    url: str
    src_lang: Optional[str] = None
    last_modified: Optional[str] = None


@dataclass
class TitleOffer:
    """Everything one server advertises for one title.

    Attributes:
        kind: Media kind of the title
        key: Record identity
        assets: Single-URL slots (metadata, video URL, artwork, chapters,
                placeholder hashes) -> server-relative path
        captions: Language name -> CaptionOffer, in declaration order
        video_info: Present technical sub-fields, already normalized
        file_name: Episode file name as advertised (episodes only)
    """
    kind: MediaKind
    key: TitleKey
    assets: dict[FieldSlot, str] = field(default_factory=dict)
    captions: dict[str, CaptionOffer] = field(default_factory=dict)
    video_info: dict[str, Any] = field(default_factory=dict)
    file_name: Optional[str] = None

    def slots(self) -> Iterator[FieldSlot]:
        """Yield every slot this offer advertises, in a stable order."""
        yield from self.assets
        for lang in self.captions:
            yield FieldSlot(FieldGroup.CAPTIONS, lang)
        for name in VIDEO_INFO_FIELDS:
            if name in self.video_info:
                yield FieldSlot(FieldGroup.VIDEO_INFO, name)

    def asset(self, group: FieldGroup, qualifier: Optional[str] = None) -> Optional[str]:
        return self.assets.get(FieldSlot(group, qualifier))

    def has_group(self, group: FieldGroup) -> bool:
        if group is FieldGroup.CAPTIONS:
            return bool(self.captions)
        if group is FieldGroup.VIDEO_INFO:
            return bool(self.video_info)
        return any(slot.group is group for slot in self.assets)


@dataclass
class ServerSnapshot:
    """One server's advertised inventory, normalized.

    Attributes:
        server_id: Server the inventory belongs to
        titles: Per kind, TitleKey -> TitleOffer (insertion order preserved)
        rejected: Human-readable reasons for entries dropped at ingestion
    """
    server_id: str
    titles: dict[MediaKind, dict[TitleKey, TitleOffer]] = field(
        default_factory=lambda: {kind: {} for kind in KIND_ORDER}
    )
    rejected: list[str] = field(default_factory=list)

    def add(self, offer: TitleOffer) -> None:
        self.titles.setdefault(offer.kind, {})[offer.key] = offer

    def offers(self, kind: MediaKind) -> list[TitleOffer]:
        return list(self.titles.get(kind, {}).values())

    def get(self, kind: MediaKind, key: TitleKey) -> Optional[TitleOffer]:
        return self.titles.get(kind, {}).get(key)

    def counts(self) -> dict[str, int]:
        return {kind.value: len(self.titles.get(kind, {})) for kind in KIND_ORDER}

    def __len__(self) -> int:
        return sum(len(v) for v in self.titles.values())
