"""
Completion aggregator - recomputes a day's rollup from its full entry set.
Recomputation is always from scratch so out-of-order arrival and corrections
converge to the same document.
"""

import asyncio
import logging
import math
from typing import Callable, Iterable, Optional

from ..storage.models import (
    HOURS_PER_DAY,
    CompletionStatus,
    DailyLog,
    Entry,
    version_key,
)
from ..sync.clock import now_ms

logger = logging.getLogger(__name__)


def completion_status_for(completed_hours: int, validated_hours: int) -> CompletionStatus:
    """Completion state as a pure function of the two counters."""
    if completed_hours <= 0:
        return CompletionStatus.NOT_STARTED
    if completed_hours < HOURS_PER_DAY:
        return CompletionStatus.INCOMPLETE
    if validated_hours >= HOURS_PER_DAY:
        return CompletionStatus.VALIDATED
    return CompletionStatus.COMPLETE


def _latest_per_hour(entries: Iterable[Entry]) -> list[Entry]:
    by_hour: dict[str, Entry] = {}
    for entry in entries:
        current = by_hour.get(entry.hour_id)
        if current is None or (
            version_key(entry.updated_at, entry.content_hash())
            > version_key(current.updated_at, current.content_hash())
        ):
            by_hour[entry.hour_id] = entry
    return [by_hour[h] for h in sorted(by_hour)]


def _is_number(value) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def compute_daily_metrics(entries: list[Entry]) -> dict:
    """Per numeric field avg/min/max/count plus day-level counters."""
    if not entries:
        return {}

    values: dict[str, list[float]] = {}
    for entry in entries:
        for key, value in entry.readings.items():
            if _is_number(value):
                values.setdefault(key, []).append(value)

    metrics: dict = {}
    for key in sorted(values):
        series = values[key]
        # fsum is exactly rounded, so the mean does not depend on entry order
        metrics[f"{key}_avg"] = math.fsum(series) / len(series)
        metrics[f"{key}_min"] = min(series)
        metrics[f"{key}_max"] = max(series)
        metrics[f"{key}_count"] = len(series)

    metrics['totalReadings'] = len(entries)
    metrics['hoursWithData'] = len(entries)
    metrics['completionPercentage'] = min(100.0, len(entries) / HOURS_PER_DAY * 100)

    recorded = sorted(e.recorded_at for e in entries if e.recorded_at is not None)
    if len(recorded) > 1:
        metrics['timeSpanMinutes'] = (recorded[-1] - recorded[0]) // 60000

    return metrics


def compute_daily_log(
    project_id: str,
    date_key: str,
    entries: Iterable[Entry],
    updated_at: Optional[int] = None,
) -> DailyLog:
    """Build the DailyLog for a day. Pure: identical input gives identical output."""
    day_entries = _latest_per_hour(
        e for e in entries if e.project_id == project_id and e.date_key == date_key
    )

    completed_hours = len(day_entries)
    validated_hours = sum(1 for e in day_entries if e.validated)

    timestamps = sorted(
        e.recorded_at if e.recorded_at is not None else e.created_at.wall_ms
        for e in day_entries
    )

    return DailyLog(
        projectId=project_id,
        dateKey=date_key,
        completionStatus=completion_status_for(completed_hours, validated_hours),
        totalEntries=completed_hours,
        completedHours=completed_hours,
        validatedHours=validated_hours,
        firstEntryAt=timestamps[0] if timestamps else None,
        lastEntryAt=timestamps[-1] if timestamps else None,
        dailyMetrics=compute_daily_metrics(day_entries),
        operatorIds=sorted({e.operator_id for e in day_entries if e.operator_id}),
        updatedAt=updated_at,
    )


class CompletionAggregator:
    """Reads a day's entries from the remote store and rewrites its rollup.

    Recomputes of the same day are serialized: each one starts after its own
    entry write, so the last to finish has seen every write before it.
    """

    def __init__(self, store, wall_clock: Callable[[], int] = now_ms):
        self.store = store
        self._wall_clock = wall_clock
        self._day_locks: dict[tuple[str, str], asyncio.Lock] = {}

    async def recompute(self, project_id: str, date_key: str) -> DailyLog:
        lock = self._day_locks.setdefault((project_id, date_key), asyncio.Lock())
        async with lock:
            entries = await self.store.list_entries(project_id, date_key)
            log = compute_daily_log(project_id, date_key, entries, updated_at=self._wall_clock())
            await self.store.write_daily_log(log)
        logger.info(
            f"Daily log {project_id}/{date_key}: {log.completion_status.value} "
            f"({log.completed_hours} hours, {log.validated_hours} validated)"
        )
        return log
