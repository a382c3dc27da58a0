"""Snapshot package: normalized per-server inventories and their data model."""
from snapshot.models import (
    BLURHASH_FIELDS,
    KIND_ORDER,
    VIDEO_INFO_FIELDS,
    CaptionOffer,
    FieldGroup,
    FieldSlot,
    MediaKind,
    ServerSnapshot,
    TitleKey,
    TitleOffer,
)
from snapshot.ingest import (
    fetch_server_snapshot,
    load_snapshot_file,
    parse_server_snapshot,
    parse_timestamp,
)

__all__ = [
    'BLURHASH_FIELDS',
    'KIND_ORDER',
    'VIDEO_INFO_FIELDS',
    'CaptionOffer',
    'FieldGroup',
    'FieldSlot',
    'MediaKind',
    'ServerSnapshot',
    'TitleKey',
    'TitleOffer',
    'fetch_server_snapshot',
    'load_snapshot_file',
    'parse_server_snapshot',
    'parse_timestamp',
]
