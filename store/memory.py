"""In-process record store, used by tests and dry runs."""

import copy
import threading
from typing import Any, Iterator, Optional

from shared.log import create_logger
from snapshot.models import KIND_ORDER, MediaKind, TitleKey
from store.base import RecordStore, apply_patch, key_of

_, log_debug, _, log_warn, _ = create_logger("Store")


class InMemoryRecordStore(RecordStore):
    """
    Dict-backed RecordStore.

    All operations take a single lock, so patches from concurrent worker
    threads are applied atomically. write_count and insert_count let tests
    assert that a run performed no writes.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[MediaKind, dict[TitleKey, dict[str, Any]]] = {kind: {} for kind in KIND_ORDER}
        self.write_count = 0
        self.insert_count = 0

    def find_by_key(self, kind: MediaKind, key: TitleKey) -> Optional[dict[str, Any]]:
        with self._lock:
            record = self._records[kind].get(key)
            return copy.deepcopy(record) if record is not None else None

    def upsert_patch(self, kind: MediaKind, key: TitleKey, patch: dict[str, Any]) -> None:
        with self._lock:
            record = self._records[kind].get(key)
            if record is None:
                record = dict(key.as_filter())
                self._records[kind][key] = record
            apply_patch(record, patch)
            self.write_count += 1
        log_debug(f"Patched {kind.value} {key.label}: {sorted(patch)}")

    def update_with(self, kind: MediaKind, key: TitleKey, build_patch) -> Optional[dict[str, Any]]:
        with self._lock:
            record = self._records[kind].get(key)
            patch = build_patch(copy.deepcopy(record) if record is not None else {})
            if not patch:
                return None
            if record is None:
                record = dict(key.as_filter())
                self._records[kind][key] = record
            apply_patch(record, patch)
            self.write_count += 1
        log_debug(f"Patched {kind.value} {key.label}: {sorted(patch)}")
        return patch

    def bulk_insert_placeholders(self, kind: MediaKind, records: list[dict[str, Any]]) -> int:
        inserted = 0
        with self._lock:
            for record in records:
                key = key_of(kind, record)
                if key in self._records[kind]:
                    log_warn(f"Placeholder for {kind.value} {key.label} already exists, skipping")
                    continue
                self._records[kind][key] = copy.deepcopy(record)
                inserted += 1
            self.insert_count += inserted
        return inserted

    def iter_records(self, kind: MediaKind) -> Iterator[dict[str, Any]]:
        with self._lock:
            snapshot = [copy.deepcopy(r) for r in self._records[kind].values()]
        yield from snapshot

    def seed(self, kind: MediaKind, record: dict[str, Any]) -> None:
        """Insert or replace a record directly (test setup helper)."""
        with self._lock:
            self._records[kind][key_of(kind, record)] = copy.deepcopy(record)
