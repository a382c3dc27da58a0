"""
Store package for FlatSync.

Provides the record store adapter interface over the canonical movie, show,
season and episode collections, with in-memory and SQLite implementations.
"""

from store.base import PersistenceError, RecordStore, apply_patch, key_of
from store.memory import InMemoryRecordStore
from store.sqlite import SQLiteRecordStore

__all__ = [
    'PersistenceError',
    'RecordStore',
    'apply_patch',
    'key_of',
    'InMemoryRecordStore',
    'SQLiteRecordStore',
]
