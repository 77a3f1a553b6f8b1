# Storage module - Local SQLite cache and data models
from .local_db import LocalDatabase
from .models import (
    ActingIdentity,
    CachedProject,
    CompletionStatus,
    DailyLog,
    Entry,
    LogicalTimestamp,
    SyncQueueItem,
    SyncStatus,
)

__all__ = [
    'LocalDatabase',
    'ActingIdentity',
    'CachedProject',
    'CompletionStatus',
    'DailyLog',
    'Entry',
    'LogicalTimestamp',
    'SyncQueueItem',
    'SyncStatus',
]
