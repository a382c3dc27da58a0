"""
Sync package for FlatSync.

Provides the field availability index, the priority arbiter, operator
locks, the field synchronizers, the title bootstrapper, the sync
orchestrator and the persisted run history.
"""

from sync.availability import FieldAvailabilityIndex
from sync.arbiter import may_write, winning_slots
from sync.locks import LockSet
from sync.errors import ResolutionError, RunAbortedError, SyncError
from sync.synchronizers import (
    FieldSynchronizer,
    SyncContext,
    default_synchronizers,
    sort_captions,
)
from sync.bootstrap import BootstrapResult, TitleBootstrapper
from sync.history import KindStats, SyncHistoryEntry, SyncHistoryLog
from sync.orchestrator import RunState, SyncOrchestrator, SyncRunResult, TitleSyncResult

__all__ = [
    'FieldAvailabilityIndex',
    'may_write',
    'winning_slots',
    'LockSet',
    'ResolutionError',
    'RunAbortedError',
    'SyncError',
    'FieldSynchronizer',
    'SyncContext',
    'default_synchronizers',
    'sort_captions',
    'BootstrapResult',
    'TitleBootstrapper',
    'KindStats',
    'SyncHistoryEntry',
    'SyncHistoryLog',
    'RunState',
    'SyncOrchestrator',
    'SyncRunResult',
    'TitleSyncResult',
]
