"""Services module"""

from .completion_service import CompletionAggregator, compute_daily_log
from .diagnostics import DiagnosticsService
from .firestore_log_store import FirestoreLogStore

__all__ = [
    'CompletionAggregator',
    'compute_daily_log',
    'DiagnosticsService',
    'FirestoreLogStore',
]
