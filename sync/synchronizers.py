"""
Field synchronizers.

One synchronizer per field group. Every synchronizer follows the same
template (FieldSynchronizer.sync):

    1. skip if the offer doesn't carry the group
    2. keep only the slots this server wins in the availability index
    3. resolve server-relative paths to absolute URLs
    4. compare against the canonical record; unchanged fields produce no write
    5. build a partial update of the changed fields (value + source)
    6. drop locked fields, and the source of any dropped value
    7. stop if nothing survives
    8. upsert the patch keyed by the record's TitleKey
    9. report the group name

Synchronizers are stateless; the per-run state (server, index, store,
fetch client, caption preferences) travels in a SyncContext.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from fetch.client import FetchClient, PayloadClass, ResponseKind
from fetch.exceptions import PayloadError
from shared.log import create_logger
from snapshot.ingest import parse_timestamp
from snapshot.models import (
    BLURHASH_FIELDS,
    VIDEO_INFO_FIELDS,
    FieldGroup,
    FieldSlot,
    MediaKind,
    TitleOffer,
)
from store.base import RecordStore
from sync.arbiter import may_write, winning_slots
from sync.availability import FieldAvailabilityIndex
from sync.errors import ResolutionError
from sync.locks import LockSet
from validation.config import ServerDescriptor

log_trace, log_debug, log_info, log_warn, log_error = create_logger("Sync")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class SyncContext:
    """Everything a synchronizer needs for one server's run."""
    server: ServerDescriptor
    index: FieldAvailabilityIndex
    store: RecordStore
    fetcher: FetchClient
    metadata_timeout: float = 5.0
    primary_caption_language: str = 'English'
    primary_caption_code: str = 'en'
    caption_order: str = 'declaration'

    def resolve(self, path: str) -> str:
        try:
            return self.server.resolve_url(path, add_prefix=True)
        except ValueError as e:
            raise ResolutionError(str(e)) from e


@dataclass
class FieldWrite:
    """One value field to write, with the source field that records provenance.

    source_value defaults to the running server's id.
    """
    field: str
    value: Any
    source_field: Optional[str] = None
    source_value: Optional[str] = None


class FieldSynchronizer(ABC):
    """Template for a single field group."""

    group: FieldGroup
    kinds: tuple[MediaKind, ...] = ()

    @property
    def name(self) -> str:
        return self.group.value

    def applies(self, offer: TitleOffer) -> bool:
        return offer.kind in self.kinds and offer.has_group(self.group)

    def candidate_slots(self, offer: TitleOffer) -> list[FieldSlot]:
        return [slot for slot in offer.slots() if slot.group is self.group]

    def winning_slots(self, ctx: SyncContext, offer: TitleOffer) -> list[FieldSlot]:
        return winning_slots(ctx.index, offer.kind, offer.key, self.candidate_slots(offer), ctx.server.id)

    @abstractmethod
    def collect_writes(
        self,
        ctx: SyncContext,
        offer: TitleOffer,
        record: dict[str, Any],
        winners: list[FieldSlot],
        locks: LockSet,
    ) -> list[FieldWrite]:
        """Return writes for fields whose stored value or source differs."""

    def sync(self, ctx: SyncContext, offer: TitleOffer, record: dict[str, Any]) -> Optional[dict[str, Any]]:
        """
        Run the template for one title.

        Args:
            ctx: Run context
            offer: What the running server advertises for the title
            record: Current canonical record (may be empty for a fresh placeholder)

        Returns:
            The patch that was written, or None when nothing changed
        """
        if not self.applies(offer):
            return None

        winners = self.winning_slots(ctx, offer)
        if not winners:
            log_trace(f"{offer.key.label}: {ctx.server.id} wins no {self.name} slot")
            return None

        locks = LockSet.from_record(record)
        writes = self.collect_writes(ctx, offer, record, winners, locks)
        if not writes:
            return None

        patch = {}
        for write in writes:
            if locks.is_locked(write.field):
                log_debug(f"{offer.key.label}: {write.field} is locked, not updating")
                continue
            patch[write.field] = write.value
            if write.source_field and not locks.is_locked(write.source_field):
                patch[write.source_field] = write.source_value or ctx.server.id

        if not patch:
            return None

        patch = self.write(ctx, offer, patch)
        if patch:
            log_info(f"{offer.kind.value.capitalize()}: updated {self.name} for {offer.key.label} from {ctx.server.id}")
        return patch

    def write(self, ctx: SyncContext, offer: TitleOffer, patch: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Persist the patch; returns what was actually written."""
        ctx.store.upsert_patch(offer.kind, offer.key, patch)
        return patch


# =============================================================================
# Single-URL groups
# =============================================================================

class UrlFieldSynchronizer(FieldSynchronizer):
    """Groups whose value is one resolved URL: video, artwork, thumbnail, chapters."""

    def __init__(self, group: FieldGroup, value_field: str, source_field: str, kinds: tuple[MediaKind, ...]):
        self.group = group
        self.value_field = value_field
        self.source_field = source_field
        self.kinds = kinds

    def collect_writes(self, ctx, offer, record, winners, locks):
        url = ctx.resolve(offer.asset(self.group))
        if record.get(self.value_field) == url and record.get(self.source_field) == ctx.server.id:
            return []
        return [FieldWrite(self.value_field, url, self.source_field)]


# =============================================================================
# Metadata
# =============================================================================

class MetadataSynchronizer(FieldSynchronizer):
    """
    Fetches the metadata document and stores it whole.

    Written when the source differs, the upstream last_updated is newer, or
    the documents differ. Seasons without their own metadata file take their
    entry from the show's metadata "seasons" list, arbitrated on the show's
    metadata slot.
    """

    group = FieldGroup.METADATA
    kinds = (MediaKind.MOVIE, MediaKind.SHOW, MediaKind.SEASON, MediaKind.EPISODE)
    _slot = FieldSlot(FieldGroup.METADATA)

    def _derived(self, offer: TitleOffer) -> bool:
        return offer.kind is MediaKind.SEASON and offer.asset(FieldGroup.METADATA) is None

    def applies(self, offer):
        return offer.kind in self.kinds and (self._derived(offer) or offer.has_group(self.group))

    def winning_slots(self, ctx, offer):
        if self._derived(offer):
            show_key = offer.key.show_key()
            return [self._slot] if may_write(ctx.index, MediaKind.SHOW, show_key, self._slot, ctx.server.id) else []
        return super().winning_slots(ctx, offer)

    def _fetch(self, ctx: SyncContext, offer: TitleOffer) -> Optional[dict]:
        if self._derived(offer):
            show = ctx.store.find_by_key(MediaKind.SHOW, offer.key.show_key()) or {}
            for entry in (show.get('metadata') or {}).get('seasons') or []:
                if isinstance(entry, dict) and entry.get('season_number') == offer.key.season:
                    return {k: v for k, v in entry.items() if k != 'episodes'}
            log_debug(f"No season metadata for {offer.key.label} in show metadata")
            return None

        url = ctx.resolve(offer.asset(FieldGroup.METADATA))
        metadata = ctx.fetcher.fetch_json(url, timeout=ctx.metadata_timeout)
        if not isinstance(metadata, dict):
            raise PayloadError(f"Metadata at {url} is not an object", url)
        return metadata

    def collect_writes(self, ctx, offer, record, winners, locks):
        metadata = self._fetch(ctx, offer)
        if metadata is None:
            return []

        existing = record.get('metadata') or {}
        same_source = record.get('metadataSource') == ctx.server.id
        new_stamp = parse_timestamp(metadata.get('last_updated')) or _EPOCH
        old_stamp = parse_timestamp(existing.get('last_updated')) or _EPOCH

        if same_source and new_stamp <= old_stamp and metadata == existing:
            return []

        log_trace(
            f"{offer.key.label}: metadata change "
            f"(source {'same' if same_source else 'differs'}, newer={new_stamp > old_stamp})"
        )
        writes = [FieldWrite('metadata', metadata, 'metadataSource')]
        if offer.kind in (MediaKind.SEASON, MediaKind.EPISODE) and metadata.get('name'):
            if record.get('title') != metadata['name']:
                writes.append(FieldWrite('title', metadata['name']))
        return writes


# =============================================================================
# Captions
# =============================================================================

def sort_captions(
    captions: dict[str, dict[str, Any]],
    primary_language: str = 'English',
    primary_code: str = 'en',
    order: str = 'declaration',
    declared: Optional[Sequence[str]] = None,
) -> dict[str, dict[str, Any]]:
    """
    Deterministically order a caption map.

    The primary language (matched by name, case-insensitively, or by srcLang
    code) sorts first. The rest sort by language name when
    order == 'alphabetical'; otherwise they follow `declared`, the languages
    in winning-server precedence then that server's declaration order.
    Languages missing from `declared` go last by name. Without `declared`
    the map's own order is kept.
    """
    primary_language = primary_language.lower()
    primary_code = primary_code.lower()

    def is_primary(lang: str, entry: dict) -> bool:
        return primary_language in lang.lower() or (entry.get('srcLang') or '').lower() == primary_code

    items = list(captions.items())
    if order == 'alphabetical':
        items.sort(key=lambda kv: (not is_primary(*kv), kv[0].lower()))
    elif declared is not None:
        position = {lang: i for i, lang in enumerate(declared)}
        last = len(position)
        items.sort(key=lambda kv: (not is_primary(*kv), position.get(kv[0], last), kv[0].lower()))
    else:
        # Stable sort keeps the map's order within each bucket
        items.sort(key=lambda kv: not is_primary(*kv))
    return dict(items)


class CaptionSynchronizer(FieldSynchronizer):
    """
    Per-language arbitration merged into one captionURLs map.

    Servers winning different languages of the same title write the same
    map, so the merge and reordering happen against the stored record under
    the store's record lock rather than against the copy read at the start
    of the title.
    """

    group = FieldGroup.CAPTIONS
    kinds = (MediaKind.MOVIE, MediaKind.EPISODE)

    def collect_writes(self, ctx, offer, record, winners, locks):
        existing = record.get('captionURLs') or {}
        changed = {}

        for slot in winners:
            lang = slot.qualifier
            if locks.is_locked(f"captionURLs.{lang}"):
                log_debug(f"{offer.key.label}: caption '{lang}' is locked")
                continue
            caption = offer.captions[lang]
            entry = {
                'srcLang': caption.src_lang,
                'url': ctx.resolve(caption.url),
                'lastModified': caption.last_modified,
                'sourceServerId': ctx.server.id,
            }
            current = existing.get(lang) or {}
            if (current.get('url') != entry['url']
                    or current.get('lastModified') != entry['lastModified']
                    or current.get('sourceServerId') != entry['sourceServerId']):
                changed[lang] = entry

        if not changed:
            return []
        return [FieldWrite('captionURLs', changed, 'captionSource')]

    def write(self, ctx, offer, patch):
        entries = patch['captionURLs']
        with_source = 'captionSource' in patch
        # Index slots are inserted winner first, in that server's declaration order
        declared = [
            slot.qualifier for slot in ctx.index.slots_for(offer.kind, offer.key)
            if slot.group is FieldGroup.CAPTIONS
        ]

        def merge(current: dict[str, Any]) -> dict[str, Any]:
            merged = dict(current.get('captionURLs') or {})
            merged.update(entries)
            ordered = sort_captions(
                merged,
                ctx.primary_caption_language,
                ctx.primary_caption_code,
                ctx.caption_order,
                declared,
            )
            merged_patch = {'captionURLs': ordered}
            if with_source:
                merged_patch['captionSource'] = next(iter(ordered.values())).get('sourceServerId')
            return merged_patch

        return ctx.store.update_with(offer.kind, offer.key, merge)


# =============================================================================
# Technical video info
# =============================================================================

class VideoInfoSynchronizer(FieldSynchronizer):
    """
    Merges whichever technical sub-fields this server wins.

    Provenance is tracked per sub-field in the videoInfoSource map, so a
    server supplying only duration doesn't take over dimensions.
    """

    group = FieldGroup.VIDEO_INFO
    kinds = (MediaKind.MOVIE, MediaKind.EPISODE)

    def _changed(self, name: str, old: Any, new: Any) -> bool:
        if name == 'mediaLastModified':
            new_stamp = parse_timestamp(new)
            old_stamp = parse_timestamp(old)
            return new_stamp is not None and (old_stamp is None or new_stamp > old_stamp)
        return old != new

    def collect_writes(self, ctx, offer, record, winners, locks):
        sources = record.get('videoInfoSource')
        if not isinstance(sources, dict):
            sources = {}

        writes = []
        won = {slot.qualifier for slot in winners}
        for name in VIDEO_INFO_FIELDS:
            if name not in won:
                continue
            new = offer.video_info[name]
            source_differs = sources.get(name) != ctx.server.id
            if source_differs or self._changed(name, record.get(name), new):
                writes.append(FieldWrite(name, new, f"videoInfoSource.{name}"))
        return writes


# =============================================================================
# Placeholder hashes
# =============================================================================

class BlurhashSynchronizer(FieldSynchronizer):
    """Fetches placeholder-hash text for poster, backdrop and thumbnail targets."""

    group = FieldGroup.BLURHASH
    kinds = (MediaKind.MOVIE, MediaKind.SHOW, MediaKind.SEASON, MediaKind.EPISODE)

    def collect_writes(self, ctx, offer, record, winners, locks):
        writes = []
        for slot in winners:
            field_name = BLURHASH_FIELDS[slot.qualifier]
            source_field = f"{field_name}Source"
            if locks.is_locked(field_name):
                continue
            url = ctx.resolve(offer.assets[slot])
            text = ctx.fetcher.fetch(
                url,
                timeout=ctx.metadata_timeout,
                response_kind=ResponseKind.TEXT,
                payload_class=PayloadClass.HASH,
            ).payload
            value = (text or '').strip()
            if not value:
                raise PayloadError(f"Empty placeholder hash at {url}", url)
            if record.get(field_name) == value and record.get(source_field) == ctx.server.id:
                continue
            writes.append(FieldWrite(field_name, value, source_field))
        return writes


def default_synchronizers() -> list[FieldSynchronizer]:
    """All field groups, in the order they run for each title."""
    both = (MediaKind.MOVIE, MediaKind.EPISODE)
    return [
        MetadataSynchronizer(),
        UrlFieldSynchronizer(FieldGroup.VIDEO_URL, 'videoURL', 'videoSource', both),
        UrlFieldSynchronizer(FieldGroup.POSTER, 'posterURL', 'posterSource',
                             (MediaKind.MOVIE, MediaKind.SHOW, MediaKind.SEASON)),
        UrlFieldSynchronizer(FieldGroup.BACKDROP, 'backdropURL', 'backdropSource',
                             (MediaKind.MOVIE, MediaKind.SHOW)),
        UrlFieldSynchronizer(FieldGroup.LOGO, 'logoURL', 'logoSource',
                             (MediaKind.MOVIE, MediaKind.SHOW)),
        UrlFieldSynchronizer(FieldGroup.THUMBNAIL, 'thumbnail', 'thumbnailSource', (MediaKind.EPISODE,)),
        UrlFieldSynchronizer(FieldGroup.CHAPTERS, 'chapterURL', 'chapterSource', both),
        CaptionSynchronizer(),
        VideoInfoSynchronizer(),
        BlurhashSynchronizer(),
    ]
