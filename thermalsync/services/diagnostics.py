"""Diagnostics service - track sync counters"""

import logging
from datetime import datetime

from ..storage.models import SyncOutcome

logger = logging.getLogger(__name__)


class DiagnosticsService:
    """Lightweight counters for sync monitoring"""

    def __init__(self):
        """Initialize diagnostics tracker"""
        self.start_time = datetime.now()
        self.counters = {
            'drains': 0,
            'items_processed': 0,
            'conflicts': 0,
            'aggregations': 0,
            'aggregation_errors': 0,
        }
        for outcome in SyncOutcome:
            self.counters[outcome.value] = 0
        self.last_drain_at = None
        self.online = False

    def record_drain(self):
        """Record a completed drain cycle"""
        self.counters['drains'] += 1
        self.last_drain_at = datetime.now()

    def record_outcome(self, outcome: SyncOutcome):
        """Record the outcome of one processed queue item"""
        self.counters['items_processed'] += 1
        self.counters[outcome.value] += 1

    def record_conflict(self):
        self.counters['conflicts'] += 1

    def record_aggregation(self, ok: bool = True):
        self.counters['aggregations'] += 1
        if not ok:
            self.counters['aggregation_errors'] += 1

    def set_online(self, online: bool):
        """Update connectivity status"""
        self.online = online

    def get_uptime_seconds(self) -> int:
        """Get uptime in seconds"""
        return int((datetime.now() - self.start_time).total_seconds())

    def get_failure_rate(self) -> float:
        """Percentage of processed items that did not reach a final outcome"""
        processed = self.counters['items_processed']
        if processed == 0:
            return 0.0
        failed = (
            self.counters[SyncOutcome.RETRY_SCHEDULED.value]
            + self.counters[SyncOutcome.DEAD_LETTERED.value]
            + self.counters[SyncOutcome.EXHAUSTED.value]
        )
        return (failed / processed) * 100

    def get_summary(self) -> dict:
        """Snapshot of all counters"""
        return {
            'uptime_seconds': self.get_uptime_seconds(),
            'online': self.online,
            'last_drain_at': self.last_drain_at.isoformat() if self.last_drain_at else None,
            'failure_rate': round(self.get_failure_rate(), 2),
            **self.counters,
        }
