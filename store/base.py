"""
Record store adapter interface.

The canonical store holds one document per movie, show, season and
episode. The sync engine only ever:
- looks a record up by its TitleKey
- applies partial "$set"-style patches keyed by TitleKey
- applies a patch computed from the current record under the record lock
  (for map fields whose siblings other writers may touch)
- bulk inserts minimal placeholders for titles not yet known

Patches may use dotted keys ("videoInfoSource.duration") to set a nested
value without rewriting its siblings, so concurrent runs writing different
sub-fields of the same map interleave safely.
"""

import copy
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterator, Optional

from snapshot.models import MediaKind, TitleKey


class PersistenceError(Exception):
    """Raised when the backing store rejects a read or write."""


def apply_patch(document: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """
    Apply a $set-style patch to a document in place.

    Dotted keys create intermediate dicts as needed. Values are deep-copied
    so callers can't mutate stored state through the patch afterwards.

    Returns:
        The same document, for chaining
    """
    for path, value in patch.items():
        parts = path.split('.')
        target = document
        for part in parts[:-1]:
            nested = target.get(part)
            if not isinstance(nested, dict):
                nested = {}
                target[part] = nested
            target = nested
        target[parts[-1]] = copy.deepcopy(value)
    return document


def key_of(kind: MediaKind, document: dict[str, Any]) -> TitleKey:
    """Rebuild the TitleKey a stored document is filed under."""
    if kind in (MediaKind.MOVIE, MediaKind.SHOW):
        return TitleKey(document.get('originalTitle') or document.get('title'))
    if kind is MediaKind.SEASON:
        return TitleKey(document['showTitle'], document['seasonNumber'])
    return TitleKey(document['showTitle'], document['seasonNumber'], document['episodeNumber'])


class RecordStore(ABC):
    """Abstract upsert-by-key document store, one collection per MediaKind."""

    @abstractmethod
    def find_by_key(self, kind: MediaKind, key: TitleKey) -> Optional[dict[str, Any]]:
        """Return a copy of the stored record, or None if absent."""

    @abstractmethod
    def upsert_patch(self, kind: MediaKind, key: TitleKey, patch: dict[str, Any]) -> None:
        """Apply a partial update, creating the record if it doesn't exist.

        Raises:
            PersistenceError: If the write fails
        """

    @abstractmethod
    def update_with(
        self,
        kind: MediaKind,
        key: TitleKey,
        build_patch: Callable[[dict[str, Any]], Optional[dict[str, Any]]],
    ) -> Optional[dict[str, Any]]:
        """Atomically compute a patch from the current record and apply it.

        build_patch receives a copy of the stored document ({} when absent)
        and returns the patch to apply, or None to leave the record alone.
        It runs while the record is locked and must not call back into the
        store.

        Returns:
            The applied patch, or None
        """

    @abstractmethod
    def bulk_insert_placeholders(self, kind: MediaKind, records: list[dict[str, Any]]) -> int:
        """Insert records whose key isn't present yet.

        Duplicate keys are skipped, never fatal.

        Returns:
            Number of records actually inserted
        """

    @abstractmethod
    def iter_records(self, kind: MediaKind) -> Iterator[dict[str, Any]]:
        """Yield copies of every record of a kind."""

    def exists(self, kind: MediaKind, key: TitleKey) -> bool:
        return self.find_by_key(kind, key) is not None

    def count(self, kind: MediaKind) -> int:
        return sum(1 for _ in self.iter_records(kind))

    def close(self) -> None:
        """Release resources held by the store."""
