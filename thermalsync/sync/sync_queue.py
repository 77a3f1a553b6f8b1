"""
Sync Queue - durable, ordered staging of mutations for the remote log store.
Every item is persisted to the local cache before enqueue() returns.
"""

import logging
import uuid
from typing import Callable, Iterator, Optional, Union

from .. import config
from ..errors import PermanentValidationError, QuotaExceededError, ThermalSyncError
from ..storage.local_db import LocalDatabase
from ..storage.models import (
    Entry,
    FailedItemSummary,
    LogicalTimestamp,
    SyncItemState,
    SyncOperation,
    SyncQueueItem,
    SyncStatus,
    SyncTargetKind,
    is_valid_hour_id,
    parse_date_key,
)
from .backoff import RetryPolicy
from .clock import now_ms

logger = logging.getLogger(__name__)


class SyncQueue:
    """
    Pending mutations in enqueue order.

    Items for the same target key are handed out strictly in order; items for
    different keys are independent and may be drained concurrently.
    """

    def __init__(
        self,
        db: LocalDatabase,
        policy: Optional[RetryPolicy] = None,
        wall_clock: Callable[[], int] = now_ms,
        delayed_after_attempts: int = config.SYNC_DELAYED_AFTER_ATTEMPTS,
    ):
        self.db = db
        self.policy = policy or RetryPolicy()
        self._wall_clock = wall_clock
        self.delayed_after_attempts = delayed_after_attempts

    def enqueue(
        self,
        target_kind: SyncTargetKind,
        project_id: str,
        date_key: str,
        hour_id: Optional[str],
        operation: SyncOperation,
        payload: dict,
        payload_version: LogicalTimestamp,
        entry: Optional[Entry] = None,
    ) -> SyncQueueItem:
        """Append a mutation. Raises StorageWriteError if it cannot be persisted."""
        if not project_id:
            raise PermanentValidationError("Mutation target has no projectId")
        if parse_date_key(date_key) is None:
            raise PermanentValidationError(f"Invalid dateKey: {date_key}")
        if target_kind == SyncTargetKind.ENTRY:
            if hour_id is None or not is_valid_hour_id(hour_id):
                raise PermanentValidationError(f"Invalid hourId: {hour_id}. Must be 00-23.")
        elif hour_id is not None:
            raise PermanentValidationError("DailyLog mutations must not carry an hourId")

        item = SyncQueueItem(
            id=uuid.uuid4().hex,
            targetKind=target_kind,
            projectId=project_id,
            dateKey=date_key,
            hourId=hour_id,
            operation=operation,
            payload=payload,
            payloadVersion=payload_version,
            enqueuedAt=self._wall_clock(),
        )
        item.sequence = self.db.stage_mutation(item, entry)
        logger.debug(f"Enqueued {operation.value} for {item.target_key} (item {item.id})")
        return item

    def peek_next(self, target_key: str) -> Optional[SyncQueueItem]:
        """Oldest pending item for a target key, regardless of its retry time."""
        return self.db.get_oldest_pending(target_key)

    def get(self, item_id: str) -> Optional[SyncQueueItem]:
        return self.db.get_queue_item(item_id)

    def mark_succeeded(self, item_id: str) -> bool:
        """Remove a confirmed item. Returns False if it was already gone."""
        removed = self.db.delete_queue_item(item_id)
        if not removed:
            logger.debug(f"Item {item_id} already removed")
        return removed

    def mark_failed(
        self, item_id: str, error: Union[ThermalSyncError, str]
    ) -> Optional[SyncQueueItem]:
        """Count a failed attempt and schedule the next one with backoff.

        Once the retry budget is spent the item becomes EXHAUSTED: it stays in
        the queue and is reported by status() until requeued or superseded.
        """
        item = self.db.get_queue_item(item_id)
        if item is None:
            logger.debug(f"Cannot mark missing item {item_id} as failed")
            return None

        now = self._wall_clock()
        attempt = item.attempt_count + 1
        quota = isinstance(error, QuotaExceededError)
        state = SyncItemState.EXHAUSTED if self.policy.is_exhausted(attempt) else SyncItemState.PENDING
        next_at = self.policy.next_attempt_at(now, attempt, quota=quota)

        self.db.record_queue_failure(item_id, attempt, str(error), now, next_at, state)

        item.attempt_count = attempt
        item.last_error = str(error)
        item.next_attempt_at = next_at
        item.state = state

        if state == SyncItemState.EXHAUSTED:
            logger.error(f"Item {item_id} for {item.target_key} exhausted after {attempt} attempts: {error}")
        else:
            logger.warning(
                f"Attempt {attempt} for {item.target_key} failed ({error}); "
                f"retry in {(next_at - now) / 1000:.1f}s"
            )
        return item

    def dead_letter(self, item_id: str, error: Union[ThermalSyncError, str]) -> Optional[SyncQueueItem]:
        """Take an item out of retry rotation after a permanent failure."""
        item = self.db.get_queue_item(item_id)
        if item is None:
            return None

        now = self._wall_clock()
        item.attempt_count += 1
        item.last_error = str(error)
        item.state = SyncItemState.DEAD_LETTER
        self.db.record_queue_failure(
            item_id, item.attempt_count, item.last_error, now, item.next_attempt_at, item.state
        )
        logger.error(f"Dead-lettered {item.target_key} (item {item_id}): {error}")
        return item

    def requeue(self, item_id: str) -> bool:
        """Re-arm a dead-lettered or exhausted item for immediate retry."""
        item = self.db.get_queue_item(item_id)
        if item is None or item.state == SyncItemState.PENDING:
            return False
        logger.info(f"Requeued {item.target_key} (item {item_id})")
        return self.db.reset_queue_item(item_id)

    def drainable(self, now: Optional[int] = None) -> Iterator[SyncQueueItem]:
        """Yield the head item of every target key whose retry time has passed.

        Works on a snapshot taken at call time, so the sequence is finite; call
        again for the next cycle. A key whose head item is backing off yields
        nothing, keeping later items for that key behind it.
        """
        now = self._wall_clock() if now is None else now
        snapshot = self.db.get_queue_items(SyncItemState.PENDING)
        seen = set()
        for item in snapshot:
            if item.target_key in seen:
                continue
            seen.add(item.target_key)
            if item.next_attempt_at <= now:
                yield item

    def pending_count(self) -> int:
        return self.db.get_queue_stats()['counts'][SyncItemState.PENDING.value]

    def status(self) -> SyncStatus:
        stats = self.db.get_queue_stats()
        counts = stats['counts']
        now = self._wall_clock()

        oldest_age = None
        if stats['oldest_pending_at'] is not None:
            oldest_age = max(0.0, (now - stats['oldest_pending_at']) / 1000)

        failed = [
            FailedItemSummary(
                itemId=item.id,
                targetKey=item.target_key,
                state=item.state,
                attemptCount=item.attempt_count,
                lastError=item.last_error,
            )
            for state in (SyncItemState.DEAD_LETTER, SyncItemState.EXHAUSTED)
            for item in self.db.get_queue_items(state)
        ]

        return SyncStatus(
            pendingCount=counts[SyncItemState.PENDING.value],
            oldestPendingAgeS=oldest_age,
            lastError=stats['last_error'],
            syncDelayed=stats['max_pending_attempts'] >= self.delayed_after_attempts,
            deadLetterCount=counts[SyncItemState.DEAD_LETTER.value],
            exhaustedCount=counts[SyncItemState.EXHAUSTED.value],
            failedItems=failed,
        )
