# Sync module - ordering, retry and conflict resolution for queued mutations
from .backoff import RetryPolicy
from .clock import HybridLogicalClock
from .conflict import Resolution, resolve
from .sync_queue import SyncQueue

__all__ = [
    'RetryPolicy',
    'HybridLogicalClock',
    'Resolution',
    'resolve',
    'SyncQueue',
]
