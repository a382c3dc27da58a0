"""
Sync run history.

Stores the most recent sync runs in a circular buffer persisted to
sync_history.json. The verification engine reads it to report average
processing time per media kind.
"""

import json
import os
import threading
from collections import deque
from dataclasses import dataclass, asdict, field
from typing import Optional, List, Dict

from shared.log import create_logger

_, log_debug, log_info, _, log_error = create_logger("SyncHistory")


@dataclass
class KindStats:
    """Per media kind counters for one run."""
    processed: int = 0
    updated: int = 0
    created: int = 0
    errors: int = 0
    seconds: float = 0.0


@dataclass
class SyncHistoryEntry:
    """One completed sync run."""
    server_id: str
    started_at: float
    finished_at: float
    completed: bool = True
    cancelled: bool = False
    kinds: Dict[str, KindStats] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    @classmethod
    def from_dict(cls, data: dict) -> 'SyncHistoryEntry':
        kinds = {k: KindStats(**v) for k, v in (data.get('kinds') or {}).items()}
        return cls(
            server_id=data['server_id'],
            started_at=data['started_at'],
            finished_at=data['finished_at'],
            completed=data.get('completed', True),
            cancelled=data.get('cancelled', False),
            kinds=kinds,
            errors=list(data.get('errors') or []),
        )


class SyncHistoryLog:
    """
    Manages sync history with circular buffer persistence.

    Args:
        data_dir: Directory for sync_history.json persistence
        max_entries: Runs kept (oldest dropped first)

    Usage:
        history = SyncHistoryLog(data_dir)
        history.append(entry)
        recent = history.recent(10)
    """

    STATE_FILE = 'sync_history.json'
    MAX_ENTRIES = 50

    def __init__(self, data_dir: str, max_entries: int = MAX_ENTRIES):
        self.data_dir = data_dir
        self.state_path = os.path.join(data_dir, self.STATE_FILE)
        self._history: deque = deque(maxlen=max_entries)
        # Concurrent server runs append from their own threads
        self._lock = threading.Lock()

        self._load_state()

    def append(self, entry: SyncHistoryEntry) -> None:
        with self._lock:
            self._history.append(entry)
            self._save_state()
        log_debug(f"Recorded sync run for {entry.server_id} ({entry.duration:.1f}s)")

    def recent(self, limit: Optional[int] = None) -> List[SyncHistoryEntry]:
        """Most recent entries, oldest to newest."""
        with self._lock:
            entries = list(self._history)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def __len__(self) -> int:
        return len(self._history)

    def _load_state(self) -> None:
        """Load history from disk."""
        if not os.path.exists(self.state_path):
            log_debug(f"No state file found at {self.state_path}, starting fresh")
            return

        try:
            with open(self.state_path, 'r') as f:
                data = json.load(f)

            for entry_dict in data:
                self._history.append(SyncHistoryEntry.from_dict(entry_dict))

            log_debug(f"Loaded {len(self._history)} sync history entries from disk")

        except (json.JSONDecodeError, TypeError, KeyError) as e:
            log_error(f"Failed to load sync history, starting fresh: {e}")
            self._history.clear()

    def _save_state(self) -> None:
        """Save history to disk with atomic write."""
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            data = [asdict(entry) for entry in self._history]

            # Atomic write: tmp file + os.replace
            tmp_path = self.state_path + '.tmp'

            with open(tmp_path, 'w') as f:
                json.dump(data, f, indent=2)

            os.replace(tmp_path, self.state_path)

        except Exception as e:
            log_error(f"Failed to save sync history: {e}")
