"""
Thermal log service - the operations exposed to the form and dashboard layers.

Writes are optimistic: they land in the local cache and the sync queue in one
transaction and return immediately. Reads prefer the remote store and fall
back to the local cache when it cannot be reached.
"""

import logging
from typing import Optional

from ..errors import (
    PermanentValidationError,
    PermissionDeniedError,
    QuotaExceededError,
    TransientNetworkError,
)
from ..services.completion_service import compute_daily_log
from ..storage.local_db import LocalDatabase
from ..storage.models import (
    ActingIdentity,
    CachedProject,
    ConflictResolved,
    DailyLog,
    DailyNotes,
    Entry,
    ReadingValue,
    SubmitResult,
    SyncOperation,
    SyncStatus,
    SyncTargetKind,
    is_valid_hour_id,
    parse_date_key,
)
from ..sync.clock import HybridLogicalClock
from ..sync.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

_OFFLINE_ERRORS = (TransientNetworkError, QuotaExceededError)


class ThermalLogService:
    """Operator and dashboard facing operations over the sync core."""

    def __init__(
        self,
        db: LocalDatabase,
        queue: SyncQueue,
        clock: HybridLogicalClock,
        store=None,
        engine=None,
    ):
        self.db = db
        self.queue = queue
        self.clock = clock
        self.store = store
        self.engine = engine

    # =========================================================================
    # WRITES
    # =========================================================================

    @staticmethod
    def _check_key(project_id: str, date_key: str, hour_id: Optional[str] = None):
        if not project_id:
            raise PermanentValidationError("projectId is required")
        if parse_date_key(date_key) is None:
            raise PermanentValidationError(f"Invalid dateKey: {date_key}. Must be a real YYYYMMDD date.")
        if hour_id is not None and not is_valid_hour_id(hour_id):
            raise PermanentValidationError(f"Invalid hourId: {hour_id}. Must be 00-23.")

    def _stage_entry(self, entry: Entry, operation: SyncOperation) -> SubmitResult:
        item = self.queue.enqueue(
            SyncTargetKind.ENTRY,
            entry.project_id,
            entry.date_key,
            entry.hour_id,
            operation,
            entry.to_document(),
            entry.updated_at,
            entry=entry,
        )
        if self.engine is not None:
            self.engine.request_drain()
        return SubmitResult(accepted=True, queued=True, itemId=item.id)

    def submit_entry(
        self,
        project_id: str,
        date_key: str,
        hour_id: str,
        readings: dict[str, ReadingValue],
        client_timestamp: int,
        identity: ActingIdentity,
        observations: str = "",
    ) -> SubmitResult:
        """Record an hour's readings.

        Raises PermanentValidationError when the readings do not fit the
        project's template and StorageWriteError when they cannot be staged.
        Resubmitting identical content is accepted without queueing anything.
        """
        self._check_key(project_id, date_key, hour_id)

        project = self.db.get_cached_project(project_id)
        if project is None or project.template is None:
            raise PermanentValidationError(
                f"No log template cached for project {project_id}; refresh the project first"
            )
        project.template.validate_readings(readings)

        existing = self.db.get_cached_entry(project_id, date_key, hour_id)
        if (
            existing is not None
            and existing.readings == readings
            and existing.observations == observations
            and existing.recorded_at == client_timestamp
            and existing.operator_id == identity.operator_id
        ):
            logger.debug(f"Unchanged resubmission for {existing.target_key}")
            return SubmitResult(accepted=True, queued=False)

        version = self.clock.tick()
        # Changed readings need a fresh validation
        entry = Entry(
            projectId=project_id,
            dateKey=date_key,
            hourId=hour_id,
            readings=readings,
            observations=observations,
            operatorId=identity.operator_id,
            validated=False,
            recordedAt=client_timestamp,
            createdAt=existing.created_at if existing is not None else version,
            updatedAt=version,
        )
        operation = SyncOperation.UPDATE if existing is not None else SyncOperation.CREATE
        result = self._stage_entry(entry, operation)
        logger.info(f"Entry {entry.target_key} saved locally ({operation.value})")
        return result

    def set_entry_validation(
        self,
        project_id: str,
        date_key: str,
        hour_id: str,
        identity: ActingIdentity,
        validated: bool = True,
    ) -> SubmitResult:
        """Validate or un-validate a cached entry."""
        if not identity.may_validate:
            raise PermissionDeniedError(f"{identity.operator_id} may not validate entries")
        self._check_key(project_id, date_key, hour_id)

        existing = self.db.get_cached_entry(project_id, date_key, hour_id)
        if existing is None:
            raise PermanentValidationError(
                f"Entry {project_id}/{date_key}/{hour_id} is not available locally"
            )
        if existing.validated == validated:
            return SubmitResult(accepted=True, queued=False)

        version = self.clock.tick()
        entry = existing.model_copy(update={
            'validated': validated,
            'validated_by': identity.operator_id if validated else None,
            'validated_at': version.wall_ms if validated else None,
            'updated_at': version,
        })
        result = self._stage_entry(entry, SyncOperation.UPDATE)
        logger.info(f"Entry {entry.target_key} {'validated' if validated else 'un-validated'} by {identity.operator_id}")
        return result

    def validate_entry(self, project_id: str, date_key: str, hour_id: str, identity: ActingIdentity) -> SubmitResult:
        return self.set_entry_validation(project_id, date_key, hour_id, identity, validated=True)

    def unvalidate_entry(self, project_id: str, date_key: str, hour_id: str, identity: ActingIdentity) -> SubmitResult:
        return self.set_entry_validation(project_id, date_key, hour_id, identity, validated=False)

    def update_daily_notes(
        self, project_id: str, date_key: str, notes: str, identity: ActingIdentity
    ) -> SubmitResult:
        """Stage the free-text notes of a day. Aggregate fields are never authored here."""
        self._check_key(project_id, date_key)

        version = self.clock.tick()
        payload = DailyNotes(
            projectId=project_id,
            dateKey=date_key,
            notes=notes,
            notesUpdatedAt=version,
        )
        item = self.queue.enqueue(
            SyncTargetKind.DAILY_LOG,
            project_id,
            date_key,
            None,
            SyncOperation.UPDATE,
            payload.to_document(),
            version,
        )
        if self.engine is not None:
            self.engine.request_drain()
        logger.info(f"Notes for {project_id}/{date_key} saved locally by {identity.operator_id}")
        return SubmitResult(accepted=True, queued=True, itemId=item.id)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_entries_for_day(self, project_id: str, date_key: str) -> list[Entry]:
        """Entries of a day ordered by hour, for history views and export."""
        self._check_key(project_id, date_key)
        if self.store is None:
            return self.db.get_cached_entries_for_day(project_id, date_key)
        try:
            return await self.store.list_entries(project_id, date_key)
        except _OFFLINE_ERRORS as e:
            logger.warning(f"Remote unavailable ({e}); serving cached entries for {project_id}/{date_key}")
            return self.db.get_cached_entries_for_day(project_id, date_key)

    async def get_daily_log(self, project_id: str, date_key: str) -> DailyLog:
        """The stored rollup of a day.

        A day without a stored rollup is reported as derived from whatever
        entries exist, which for an untouched day is NOT_STARTED.
        """
        self._check_key(project_id, date_key)
        if self.store is not None:
            try:
                log = await self.store.get_daily_log(project_id, date_key)
                if log is not None:
                    return log
                entries = await self.store.list_entries(project_id, date_key)
                return compute_daily_log(project_id, date_key, entries)
            except _OFFLINE_ERRORS as e:
                logger.warning(f"Remote unavailable ({e}); deriving {project_id}/{date_key} from cache")

        entries = self.db.get_cached_entries_for_day(project_id, date_key)
        return compute_daily_log(project_id, date_key, entries)

    def get_sync_status(self) -> SyncStatus:
        return self.queue.status()

    def requeue_failed(self, item_id: str) -> bool:
        """Retry a dead-lettered or exhausted item after the operator fixed it."""
        requeued = self.queue.requeue(item_id)
        if requeued and self.engine is not None:
            self.engine.request_drain()
        return requeued

    def get_conflicts(self, limit: int = 100) -> list[ConflictResolved]:
        """Recent equal-timestamp tie-breaks, newest first."""
        return self.db.get_conflicts(limit)

    # =========================================================================
    # CACHE REFRESH
    # =========================================================================

    def get_cached_project(self, project_id: str) -> Optional[CachedProject]:
        return self.db.get_cached_project(project_id)

    async def refresh_project(self, project_id: str) -> Optional[CachedProject]:
        """Pull project metadata and its template schema into the local cache."""
        if self.store is None:
            return self.db.get_cached_project(project_id)
        try:
            project = await self.store.get_project(project_id)
        except _OFFLINE_ERRORS as e:
            logger.warning(f"Could not refresh project {project_id}: {e}")
            return self.db.get_cached_project(project_id)

        if project is None:
            logger.warning(f"Project {project_id} not found remotely")
            return self.db.get_cached_project(project_id)

        project.refreshed_at = self.clock.wall_ms()
        self.db.save_cached_project(project)
        logger.info(f"Cached project {project_id} (template {project.template.template_id if project.template else 'none'})")
        return project

    async def refresh_day(self, project_id: str, date_key: str) -> int:
        """Pull a day's remote entries into the local cache for pre-fill.

        Returns the number of cached entries that were updated.
        """
        self._check_key(project_id, date_key)
        if self.store is None:
            return 0
        entries = await self.store.list_entries(project_id, date_key)
        updated = 0
        for entry in entries:
            self.clock.observe(entry.updated_at)
            if self.db.cache_entry_if_newer(entry):
                updated += 1
        logger.debug(f"Refreshed {updated} cached entries for {project_id}/{date_key}")
        return updated

    async def flush(self):
        """Drain the queue now. Returns the drain report, or None without an engine."""
        if self.engine is None:
            return None
        return await self.engine.flush()
