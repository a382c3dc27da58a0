"""
SQLite-backed JSON document store.

Each record is a JSON document in a single `records` table keyed by
(kind, key). Patches run inside BEGIN IMMEDIATE so the read-modify-write
of one record is atomic across threads and processes sharing the file.
"""

import json
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from shared.log import create_logger
from snapshot.models import MediaKind, TitleKey
from store.base import PersistenceError, RecordStore, apply_patch, key_of

_, log_debug, log_info, log_warn, log_error = create_logger("Store")


def _encode_key(key: TitleKey) -> str:
    return json.dumps([key.title, key.season, key.episode])


class SQLiteRecordStore(RecordStore):
    """
    RecordStore persisted to data_dir/records.db.

    Args:
        data_dir: Directory holding the database file
        timeout: Seconds to wait on a locked database before failing
    """

    DB_FILE = 'records.db'

    def __init__(self, data_dir: str, timeout: float = 30.0):
        os.makedirs(data_dir, exist_ok=True)
        self.db_path = os.path.join(data_dir, self.DB_FILE)
        self._timeout = timeout
        with self._get_connection() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS records (
                    kind TEXT NOT NULL,
                    key TEXT NOT NULL,
                    doc TEXT NOT NULL,
                    PRIMARY KEY (kind, key)
                )
            ''')
        log_debug(f"SQLite record store at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=self._timeout, isolation_level=None)
        try:
            yield conn
        except sqlite3.Error as e:
            raise PersistenceError(f"Record store operation failed: {e}") from e
        finally:
            conn.close()

    def find_by_key(self, kind: MediaKind, key: TitleKey) -> Optional[dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                'SELECT doc FROM records WHERE kind = ? AND key = ?',
                (kind.value, _encode_key(key)),
            ).fetchone()
        return json.loads(row[0]) if row else None

    def upsert_patch(self, kind: MediaKind, key: TitleKey, patch: dict[str, Any]) -> None:
        self.update_with(kind, key, lambda current: patch)

    def update_with(self, kind: MediaKind, key: TitleKey, build_patch) -> Optional[dict[str, Any]]:
        encoded = _encode_key(key)
        with self._get_connection() as conn:
            conn.execute('BEGIN IMMEDIATE')
            try:
                row = conn.execute(
                    'SELECT doc FROM records WHERE kind = ? AND key = ?',
                    (kind.value, encoded),
                ).fetchone()
                patch = build_patch(json.loads(row[0]) if row else {})
                if not patch:
                    conn.execute('ROLLBACK')
                    return None
                document = json.loads(row[0]) if row else dict(key.as_filter())
                apply_patch(document, patch)
                conn.execute(
                    'INSERT OR REPLACE INTO records (kind, key, doc) VALUES (?, ?, ?)',
                    (kind.value, encoded, json.dumps(document)),
                )
                conn.execute('COMMIT')
            except Exception:
                conn.execute('ROLLBACK')
                raise
        log_debug(f"Patched {kind.value} {key.label}: {sorted(patch)}")
        return patch

    def bulk_insert_placeholders(self, kind: MediaKind, records: list[dict[str, Any]]) -> int:
        rows = [(kind.value, _encode_key(key_of(kind, r)), json.dumps(r)) for r in records]
        with self._get_connection() as conn:
            before = conn.total_changes
            # Unordered best-effort insert: existing keys are left untouched
            conn.executemany(
                'INSERT OR IGNORE INTO records (kind, key, doc) VALUES (?, ?, ?)',
                rows,
            )
            inserted = conn.total_changes - before
        if inserted < len(rows):
            log_warn(f"{len(rows) - inserted} {kind.value} placeholder(s) already existed, skipped")
        return inserted

    def iter_records(self, kind: MediaKind) -> Iterator[dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                'SELECT doc FROM records WHERE kind = ? ORDER BY key',
                (kind.value,),
            ).fetchall()
        for (doc,) in rows:
            yield json.loads(doc)

    def count(self, kind: MediaKind) -> int:
        with self._get_connection() as conn:
            (n,) = conn.execute('SELECT COUNT(*) FROM records WHERE kind = ?', (kind.value,)).fetchone()
        return n
