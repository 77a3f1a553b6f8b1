"""
Reconciliation engine - drains the sync queue against the remote log store.
Local-first: mutations are staged locally and applied opportunistically, on a
timer, on connectivity regain and on explicit flush.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from .. import config
from ..errors import (
    PermanentValidationError,
    StorageWriteError,
    classify_remote_error,
)
from ..services.completion_service import CompletionAggregator
from ..services.diagnostics import DiagnosticsService
from ..storage.local_db import LocalDatabase
from ..storage.models import (
    ConflictResolved,
    DailyNotes,
    Entry,
    SyncItemState,
    SyncOutcome,
    SyncQueueItem,
    SyncTargetKind,
)
from .clock import HybridLogicalClock
from .conflict import Resolution, is_tie, resolve, writes_remote
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)

# Outcomes after which later items for the same key may proceed
_KEY_CONTINUES = {
    SyncOutcome.APPLIED,
    SyncOutcome.ALREADY_APPLIED,
    SyncOutcome.SUPERSEDED,
    SyncOutcome.DEAD_LETTERED,
}


class ItemResult(BaseModel):
    item_id: str = Field(alias="itemId")
    target_key: str = Field(alias="targetKey")
    outcome: SyncOutcome
    attempts: int
    error: Optional[str] = None

    class Config:
        populate_by_name = True


class DrainReport(BaseModel):
    results: list[ItemResult] = Field(default_factory=list)
    remaining: int = 0

    def count(self, outcome: SyncOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)


class ReconciliationEngine:
    """
    Applies queued mutations with last-write-wins on logical timestamps.

    Per item:
    - no remote document: create it
    - local strictly newer: overwrite
    - remote newer, or same version and content: keep remote, item succeeds
    - same version, different content: greater content hash wins, audit logged
    Successful entry writes trigger a full recompute of the day's rollup.
    """

    def __init__(
        self,
        queue: SyncQueue,
        store,
        aggregator: CompletionAggregator,
        db: LocalDatabase,
        clock: HybridLogicalClock,
        diagnostics: Optional[DiagnosticsService] = None,
        batch_size: int = config.SYNC_BATCH_SIZE,
        time_budget_s: float = config.SYNC_BATCH_TIME_BUDGET_S,
        max_concurrency: int = config.SYNC_MAX_CONCURRENCY,
        interval_s: float = config.SYNC_INTERVAL_S,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.store = store
        self.aggregator = aggregator
        self.db = db
        self.clock = clock
        self.diagnostics = diagnostics or DiagnosticsService()
        self.batch_size = batch_size
        self.time_budget_s = time_budget_s
        self.max_concurrency = max_concurrency
        self.interval_s = interval_s
        self._monotonic = monotonic
        self._drain_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._running = False
        self.online = True

    # =========================================================================
    # LOOP
    # =========================================================================

    async def start(self):
        """Run drain cycles until stopped."""
        self._running = True
        logger.info("ReconciliationEngine started")

        while self._running:
            if self.online:
                try:
                    await self.drain()
                except Exception as e:
                    logger.error(f"Drain cycle failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def stop(self):
        """Stop the drain loop after the current cycle."""
        self._running = False
        self._wake.set()
        logger.info("ReconciliationEngine stopped")

    def notify_connectivity(self, online: bool):
        """Connectivity changed. Regaining it triggers an immediate drain."""
        was_online = self.online
        self.online = online
        self.diagnostics.set_online(online)
        if online and not was_online:
            logger.info("Connectivity regained, draining sync queue")
            self._wake.set()
        elif not online and was_online:
            logger.info("Connectivity lost, sync paused")

    def request_drain(self):
        """Wake the loop for an opportunistic drain. Never suspends."""
        self._wake.set()

    async def flush(self) -> DrainReport:
        """Drain immediately (explicit user flush)."""
        logger.info("Flush requested")
        return await self.drain()

    # =========================================================================
    # DRAIN
    # =========================================================================

    async def drain(self) -> DrainReport:
        """One bounded drain cycle: at most batch_size items or time_budget_s."""
        async with self._drain_lock:
            started = self._monotonic()
            report = DrainReport()
            heads = list(self.queue.drainable())
            if not heads:
                report.remaining = self.queue.pending_count()
                return report

            logger.info(f"Draining sync queue ({len(heads)} target keys ready)")
            semaphore = asyncio.Semaphore(max(1, self.max_concurrency))
            claimed = 0
            aborted = False

            def budget_left() -> bool:
                return (
                    not aborted
                    and claimed < self.batch_size
                    and self._monotonic() - started < self.time_budget_s
                )

            async def drain_key(head: SyncQueueItem):
                nonlocal claimed, aborted
                async with semaphore:
                    item = head
                    while item is not None and budget_left():
                        claimed += 1
                        try:
                            result = await self.process_item(item)
                        except Exception:
                            aborted = True
                            raise
                        report.results.append(result)
                        if result.outcome not in _KEY_CONTINUES:
                            return
                        item = self.queue.peek_next(item.target_key)
                        if item is not None and item.next_attempt_at > self.clock.wall_ms():
                            return

            # Every key task settles before the lock is released
            outcomes = await asyncio.gather(
                *(drain_key(head) for head in heads), return_exceptions=True
            )
            errors = [o for o in outcomes if isinstance(o, BaseException)]
            if errors:
                logger.error(
                    f"Drain aborted after {len(report.results)} items: {errors[0]}"
                )
                raise errors[0]

            report.remaining = self.queue.pending_count()
            self.diagnostics.record_drain()
            logger.info(
                f"Drain finished: {len(report.results)} processed, "
                f"{report.count(SyncOutcome.APPLIED)} applied, "
                f"{report.count(SyncOutcome.SUPERSEDED)} superseded, "
                f"{report.count(SyncOutcome.RETRY_SCHEDULED)} retrying, "
                f"{report.remaining} remaining"
            )
            return report

    async def process_item(self, item: SyncQueueItem) -> ItemResult:
        """Reconcile one item and record its outcome in the queue."""
        attempts = item.attempt_count + 1
        error_text = None

        try:
            if item.target_kind == SyncTargetKind.ENTRY:
                outcome = await self._reconcile_entry(item)
            else:
                outcome = await self._reconcile_notes(item)
        except StorageWriteError:
            raise
        except Exception as e:
            error = classify_remote_error(e)
            error_text = str(error)
            if error.retryable:
                updated = self.queue.mark_failed(item.id, error)
                if updated is not None and updated.state == SyncItemState.EXHAUSTED:
                    outcome = SyncOutcome.EXHAUSTED
                else:
                    outcome = SyncOutcome.RETRY_SCHEDULED
            else:
                self.queue.dead_letter(item.id, error)
                outcome = SyncOutcome.DEAD_LETTERED

        self.diagnostics.record_outcome(outcome)
        return ItemResult(
            itemId=item.id,
            targetKey=item.target_key,
            outcome=outcome,
            attempts=attempts,
            error=error_text,
        )

    # =========================================================================
    # ENTRIES
    # =========================================================================

    async def _reconcile_entry(self, item: SyncQueueItem) -> SyncOutcome:
        try:
            local = Entry.model_validate(item.payload)
        except ValidationError as e:
            raise PermanentValidationError(f"Malformed entry payload: {e}") from e

        remote = await self.store.get_entry(local.project_id, local.date_key, local.hour_id)
        if remote is not None:
            self.clock.observe(remote.updated_at)

        local_hash = local.content_hash()
        remote_hash = remote.content_hash() if remote is not None else None
        resolution = resolve(
            local.updated_at,
            local_hash,
            remote.updated_at if remote is not None else None,
            remote_hash,
        )
        if is_tie(resolution):
            self._record_conflict(item, resolution, local_hash, remote_hash)

        if writes_remote(resolution):
            await self.store.put_entry(local)
            outcome = SyncOutcome.APPLIED
            winner = local
        elif resolution == Resolution.ALREADY_APPLIED:
            outcome = SyncOutcome.ALREADY_APPLIED
            winner = remote
        else:
            outcome = SyncOutcome.SUPERSEDED
            winner = remote

        self.db.cache_entry_if_newer(winner)

        # A replay may follow a write whose rollup never happened
        if outcome in (SyncOutcome.APPLIED, SyncOutcome.ALREADY_APPLIED):
            await self._aggregate(local.project_id, local.date_key)

        self.queue.mark_succeeded(item.id)
        if outcome == SyncOutcome.SUPERSEDED:
            logger.info(f"Discarded stale mutation for {item.target_key}, remote is newer")
        else:
            logger.debug(f"{outcome.value}: {item.target_key}")
        return outcome

    # =========================================================================
    # DAILY NOTES
    # =========================================================================

    async def _reconcile_notes(self, item: SyncQueueItem) -> SyncOutcome:
        try:
            local = DailyNotes.model_validate(item.payload)
        except ValidationError as e:
            raise PermanentValidationError(f"Malformed notes payload: {e}") from e

        remote = await self.store.get_daily_notes(local.project_id, local.date_key)
        if remote is not None:
            self.clock.observe(remote.notes_updated_at)

        local_hash = local.content_hash()
        remote_hash = remote.content_hash() if remote is not None else None
        resolution = resolve(
            local.notes_updated_at,
            local_hash,
            remote.notes_updated_at if remote is not None else None,
            remote_hash,
        )
        if is_tie(resolution):
            self._record_conflict(item, resolution, local_hash, remote_hash)

        if writes_remote(resolution):
            await self.store.put_daily_notes(local)
            outcome = SyncOutcome.APPLIED
        elif resolution == Resolution.ALREADY_APPLIED:
            outcome = SyncOutcome.ALREADY_APPLIED
        else:
            outcome = SyncOutcome.SUPERSEDED

        if outcome in (SyncOutcome.APPLIED, SyncOutcome.ALREADY_APPLIED):
            await self._aggregate(local.project_id, local.date_key)

        self.queue.mark_succeeded(item.id)
        return outcome

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _aggregate(self, project_id: str, date_key: str):
        try:
            await self.aggregator.recompute(project_id, date_key)
        except Exception:
            self.diagnostics.record_aggregation(ok=False)
            raise
        self.diagnostics.record_aggregation()

    def _record_conflict(
        self, item: SyncQueueItem, resolution: Resolution, local_hash: str, remote_hash: str
    ):
        winner = "local" if resolution == Resolution.TIE_LOCAL_WINS else "remote"
        record = ConflictResolved(
            itemId=item.id,
            targetKey=item.target_key,
            winner=winner,
            localHash=local_hash,
            remoteHash=remote_hash,
            timestamp=item.payload_version,
            resolvedAt=self.clock.wall_ms(),
        )
        self.db.insert_conflict(record)
        self.diagnostics.record_conflict()
        logger.warning(
            f"Concurrent edit on {item.target_key} at {item.payload_version.order_key()}: "
            f"{winner} version wins by content hash"
        )
