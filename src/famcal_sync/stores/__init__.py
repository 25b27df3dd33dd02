"""Storage interfaces and SQLAlchemy implementations."""

from .base import ConflictStore, EventStore, SyncPreferenceStore, SyncRunLogStore
from .sql import SqlConflictStore, SqlEventStore, SqlSyncPreferenceStore, SqlSyncRunLogStore

__all__ = [
    'ConflictStore',
    'EventStore',
    'SyncPreferenceStore',
    'SyncRunLogStore',
    'SqlConflictStore',
    'SqlEventStore',
    'SqlSyncPreferenceStore',
    'SqlSyncRunLogStore',
]
