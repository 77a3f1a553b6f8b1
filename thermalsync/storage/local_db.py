"""
Local SQLite cache for the field client.
Holds cached entries, the durable sync queue, cached project metadata,
the conflict audit log and the device's logical clock.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from ..errors import StorageWriteError
from .models import (
    CachedProject,
    ConflictResolved,
    Entry,
    LogicalTimestamp,
    SyncItemState,
    SyncQueueItem,
    version_key,
)

logger = logging.getLogger(__name__)


class LocalDatabase:
    """SQLite database manager for local device storage."""

    def __init__(self, db_path: str = "data/thermalsync.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _get_connection(self, write: bool = False):
        """Context manager for database connections.

        Write connections surface any SQLite failure as StorageWriteError so
        callers never report unstaged data as saved.
        """
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        except sqlite3.Error as e:
            raise StorageWriteError(f"Cannot open local cache {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA synchronous=FULL")
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            if write:
                raise StorageWriteError(f"Local cache write failed: {e}") from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self):
        """Initialize database schema."""
        with self._get_connection(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")

            # Last known version of every entry this device has seen
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS cached_entries (
                    project_id TEXT NOT NULL,
                    date_key TEXT NOT NULL,
                    hour_id TEXT NOT NULL,
                    document TEXT NOT NULL,
                    updated_wall INTEGER NOT NULL,
                    updated_counter INTEGER NOT NULL,
                    content_hash TEXT NOT NULL,
                    PRIMARY KEY (project_id, date_key, hour_id)
                )
            """)

            # Pending mutations, sequence preserves enqueue order
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sync_queue (
                    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    target_key TEXT NOT NULL,
                    target_kind TEXT NOT NULL,
                    project_id TEXT NOT NULL,
                    date_key TEXT NOT NULL,
                    hour_id TEXT,
                    operation TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    payload_version TEXT NOT NULL,
                    enqueued_at INTEGER NOT NULL,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    last_failed_at INTEGER,
                    next_attempt_at INTEGER NOT NULL DEFAULT 0,
                    state TEXT NOT NULL DEFAULT 'pending'
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_queue_target
                ON sync_queue(target_key, state, sequence)
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS cached_projects (
                    project_id TEXT PRIMARY KEY,
                    document TEXT NOT NULL,
                    refreshed_at INTEGER NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS conflict_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_id TEXT NOT NULL,
                    target_key TEXT NOT NULL,
                    winner TEXT NOT NULL,
                    local_hash TEXT NOT NULL,
                    remote_hash TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    resolved_at INTEGER NOT NULL
                )
            """)

            # Hybrid logical clock state (single row)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS device_clock (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    wall_ms INTEGER NOT NULL,
                    counter INTEGER NOT NULL
                )
            """)
            cursor.execute("""
                INSERT OR IGNORE INTO device_clock (id, wall_ms, counter)
                VALUES (1, 0, 0)
            """)

    # =========================================================================
    # CACHED ENTRIES
    # =========================================================================

    @staticmethod
    def _write_cached_entry(cursor, entry: Entry) -> None:
        cursor.execute("""
            INSERT OR REPLACE INTO cached_entries
            (project_id, date_key, hour_id, document, updated_wall, updated_counter, content_hash)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.project_id,
            entry.date_key,
            entry.hour_id,
            json.dumps(entry.to_document()),
            entry.updated_at.wall_ms,
            entry.updated_at.counter,
            entry.content_hash(),
        ))

    def get_cached_entry(self, project_id: str, date_key: str, hour_id: str) -> Optional[Entry]:
        """Get the cached entry for one hour."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT document FROM cached_entries
                WHERE project_id = ? AND date_key = ? AND hour_id = ?
            """, (project_id, date_key, hour_id))
            row = cursor.fetchone()

            if row is None:
                return None
            return Entry.model_validate(json.loads(row['document']))

    def get_cached_entries_for_day(self, project_id: str, date_key: str) -> list[Entry]:
        """Get all cached entries of a day ordered by hour."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT document FROM cached_entries
                WHERE project_id = ? AND date_key = ?
                ORDER BY hour_id ASC
            """, (project_id, date_key))

            return [
                Entry.model_validate(json.loads(row['document']))
                for row in cursor.fetchall()
            ]

    def cache_entry_if_newer(self, entry: Entry) -> bool:
        """Store an entry unless the cache already holds a newer version.

        Returns True when the cache was updated.
        """
        incoming = version_key(entry.updated_at, entry.content_hash())
        with self._get_connection(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT updated_wall, updated_counter, content_hash FROM cached_entries
                WHERE project_id = ? AND date_key = ? AND hour_id = ?
            """, (entry.project_id, entry.date_key, entry.hour_id))
            row = cursor.fetchone()

            if row is not None:
                current = (row['updated_wall'], row['updated_counter'], row['content_hash'])
                if current >= incoming:
                    return False

            self._write_cached_entry(cursor, entry)
            return True

    # =========================================================================
    # SYNC QUEUE
    # =========================================================================

    def stage_mutation(self, item: SyncQueueItem, entry: Optional[Entry] = None) -> int:
        """Atomically cache an entry (optional) and append a queue item.

        Failed items for the same target are superseded by the new mutation.
        Returns the item's queue sequence number.
        """
        with self._get_connection(write=True) as conn:
            cursor = conn.cursor()

            if entry is not None:
                self._write_cached_entry(cursor, entry)

            cursor.execute("""
                DELETE FROM sync_queue
                WHERE target_key = ? AND state IN (?, ?)
            """, (item.target_key, SyncItemState.DEAD_LETTER.value, SyncItemState.EXHAUSTED.value))
            if cursor.rowcount:
                logger.info(f"Superseded {cursor.rowcount} failed item(s) for {item.target_key}")

            cursor.execute("""
                INSERT INTO sync_queue
                (id, target_key, target_kind, project_id, date_key, hour_id, operation,
                 payload, payload_version, enqueued_at, attempt_count, last_error,
                 next_attempt_at, state)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                item.id,
                item.target_key,
                item.target_kind.value,
                item.project_id,
                item.date_key,
                item.hour_id,
                item.operation.value,
                json.dumps(item.payload),
                json.dumps(item.payload_version.model_dump(by_alias=True)),
                item.enqueued_at,
                item.attempt_count,
                item.last_error,
                item.next_attempt_at,
                item.state.value,
            ))
            return cursor.lastrowid

    @staticmethod
    def _row_to_item(row) -> SyncQueueItem:
        return SyncQueueItem(
            id=row['id'],
            targetKind=row['target_kind'],
            projectId=row['project_id'],
            dateKey=row['date_key'],
            hourId=row['hour_id'],
            operation=row['operation'],
            payload=json.loads(row['payload']),
            payloadVersion=LogicalTimestamp.model_validate(json.loads(row['payload_version'])),
            enqueuedAt=row['enqueued_at'],
            sequence=row['sequence'],
            attemptCount=row['attempt_count'],
            lastError=row['last_error'],
            nextAttemptAt=row['next_attempt_at'],
            state=row['state'],
        )

    def get_queue_item(self, item_id: str) -> Optional[SyncQueueItem]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM sync_queue WHERE id = ?", (item_id,))
            row = cursor.fetchone()
            return self._row_to_item(row) if row else None

    def get_queue_items(self, state: Optional[SyncItemState] = None) -> list[SyncQueueItem]:
        """Get queue items in enqueue order, optionally filtered by state."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            if state is None:
                cursor.execute("SELECT * FROM sync_queue ORDER BY sequence ASC")
            else:
                cursor.execute("""
                    SELECT * FROM sync_queue
                    WHERE state = ?
                    ORDER BY sequence ASC
                """, (state.value,))
            return [self._row_to_item(row) for row in cursor.fetchall()]

    def get_oldest_pending(self, target_key: str) -> Optional[SyncQueueItem]:
        """Get the oldest pending item for a target key."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT * FROM sync_queue
                WHERE target_key = ? AND state = ?
                ORDER BY sequence ASC
                LIMIT 1
            """, (target_key, SyncItemState.PENDING.value))
            row = cursor.fetchone()
            return self._row_to_item(row) if row else None

    def delete_queue_item(self, item_id: str) -> bool:
        with self._get_connection(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))
            return cursor.rowcount > 0

    def record_queue_failure(
        self,
        item_id: str,
        attempt_count: int,
        last_error: str,
        failed_at: int,
        next_attempt_at: int,
        state: SyncItemState,
    ) -> bool:
        """Persist the outcome of a failed attempt."""
        with self._get_connection(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute("""
                UPDATE sync_queue
                SET attempt_count = ?, last_error = ?, last_failed_at = ?,
                    next_attempt_at = ?, state = ?
                WHERE id = ?
            """, (attempt_count, last_error, failed_at, next_attempt_at, state.value, item_id))
            return cursor.rowcount > 0

    def reset_queue_item(self, item_id: str) -> bool:
        """Re-arm a failed item for immediate retry."""
        with self._get_connection(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute("""
                UPDATE sync_queue
                SET attempt_count = 0, next_attempt_at = 0, state = ?
                WHERE id = ?
            """, (SyncItemState.PENDING.value, item_id))
            return cursor.rowcount > 0

    def get_queue_stats(self) -> dict:
        """Counts per state, oldest pending enqueue time and the latest error."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT state, COUNT(*) AS n, MIN(enqueued_at) AS oldest,
                       MAX(attempt_count) AS max_attempts
                FROM sync_queue
                GROUP BY state
            """)
            stats = {
                'counts': {s.value: 0 for s in SyncItemState},
                'oldest_pending_at': None,
                'max_pending_attempts': 0,
                'last_error': None,
            }
            for row in cursor.fetchall():
                stats['counts'][row['state']] = row['n']
                if row['state'] == SyncItemState.PENDING.value:
                    stats['oldest_pending_at'] = row['oldest']
                    stats['max_pending_attempts'] = row['max_attempts'] or 0

            cursor.execute("""
                SELECT last_error FROM sync_queue
                WHERE last_error IS NOT NULL
                ORDER BY last_failed_at DESC, sequence DESC
                LIMIT 1
            """)
            row = cursor.fetchone()
            if row is not None:
                stats['last_error'] = row['last_error']
            return stats

    # =========================================================================
    # CACHED PROJECTS
    # =========================================================================

    def save_cached_project(self, project: CachedProject) -> None:
        with self._get_connection(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT OR REPLACE INTO cached_projects (project_id, document, refreshed_at)
                VALUES (?, ?, ?)
            """, (
                project.project_id,
                json.dumps(project.model_dump(by_alias=True, mode="json")),
                project.refreshed_at,
            ))

    def get_cached_project(self, project_id: str) -> Optional[CachedProject]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT document FROM cached_projects WHERE project_id = ?", (project_id,)
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return CachedProject.model_validate(json.loads(row['document']))

    # =========================================================================
    # CONFLICT LOG
    # =========================================================================

    def insert_conflict(self, record: ConflictResolved) -> None:
        with self._get_connection(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO conflict_log
                (item_id, target_key, winner, local_hash, remote_hash, timestamp, resolved_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                record.item_id,
                record.target_key,
                record.winner,
                record.local_hash,
                record.remote_hash,
                json.dumps(record.timestamp.model_dump(by_alias=True)),
                record.resolved_at,
            ))

    def get_conflicts(self, limit: int = 100) -> list[ConflictResolved]:
        """Get the most recent conflict records, newest first."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT * FROM conflict_log
                ORDER BY id DESC
                LIMIT ?
            """, (limit,))
            return [
                ConflictResolved(
                    itemId=row['item_id'],
                    targetKey=row['target_key'],
                    winner=row['winner'],
                    localHash=row['local_hash'],
                    remoteHash=row['remote_hash'],
                    timestamp=LogicalTimestamp.model_validate(json.loads(row['timestamp'])),
                    resolvedAt=row['resolved_at'],
                )
                for row in cursor.fetchall()
            ]

    # =========================================================================
    # DEVICE CLOCK
    # =========================================================================

    def get_clock_state(self) -> tuple[int, int]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT wall_ms, counter FROM device_clock WHERE id = 1")
            row = cursor.fetchone()
            if row is None:
                return (0, 0)
            return (row['wall_ms'], row['counter'])

    def save_clock_state(self, wall_ms: int, counter: int) -> None:
        with self._get_connection(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute("""
                UPDATE device_clock
                SET wall_ms = ?, counter = ?
                WHERE id = 1
            """, (wall_ms, counter))
