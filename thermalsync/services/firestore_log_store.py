"""Remote log store - the authoritative Firestore document hierarchy"""

import asyncio
import logging
import os
from typing import Optional

import firebase_admin
from firebase_admin import credentials
from google.cloud import firestore
from google.cloud.firestore_v1 import AsyncClient

from .. import config
from ..errors import ThermalSyncError, classify_remote_error
from ..storage.models import (
    CachedProject,
    DailyLog,
    DailyNotes,
    Entry,
    TemplateSchema,
    is_valid_hour_id,
)
from .legacy import adapt_entry_document

logger = logging.getLogger(__name__)

_NOTES_FIELDS = ['projectId', 'dateKey', 'notes', 'notesUpdatedAt']


def connect(
    credentials_path: str = config.FIREBASE_CREDENTIALS_PATH,
    project_id: str = config.FIREBASE_PROJECT_ID,
) -> AsyncClient:
    """Create an async Firestore client from the service account file."""
    if not os.path.exists(credentials_path):
        raise FileNotFoundError(f"Firebase credentials not found at {credentials_path}")
    if not os.access(credentials_path, os.R_OK):
        raise PermissionError("No read permission for Firebase credentials")

    logger.info(f"Loading Firebase credentials from: {credentials_path}")
    cred = credentials.Certificate(credentials_path)
    if not firebase_admin._apps:
        firebase_admin.initialize_app(cred)

    client = firestore.AsyncClient(project=project_id, credentials=cred.get_credential())
    logger.info(f"Connected to Firestore project {project_id}")
    return client


class FirestoreLogStore:
    """
    Reads and writes entries and daily logs under
    projects/{projectId}/logs/{dateKey}/entries/{hourId}.

    Every call carries a timeout; a timeout surfaces as TransientNetworkError
    without assuming the write failed remotely.
    """

    def __init__(self, client: AsyncClient, timeout_s: float = config.REMOTE_TIMEOUT_S):
        self.firestore = client
        self.timeout_s = timeout_s

    async def _call(self, awaitable, what: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_s)
        except ThermalSyncError:
            raise
        except Exception as e:
            error = classify_remote_error(e)
            logger.debug(f"{what} failed: {error!r}")
            raise error from e

    # =========================================================================
    # PATHS
    # =========================================================================

    def _project_ref(self, project_id: str):
        return self.firestore.collection('projects').document(project_id)

    def _log_ref(self, project_id: str, date_key: str):
        return self._project_ref(project_id).collection('logs').document(date_key)

    def _entries_ref(self, project_id: str, date_key: str):
        return self._log_ref(project_id, date_key).collection('entries')

    def _entry_ref(self, project_id: str, date_key: str, hour_id: str):
        if not is_valid_hour_id(hour_id):
            raise ValueError(f"Invalid hourId: {hour_id}. Must be 00-23.")
        return self._entries_ref(project_id, date_key).document(hour_id)

    # =========================================================================
    # ENTRIES
    # =========================================================================

    async def get_entry(self, project_id: str, date_key: str, hour_id: str) -> Optional[Entry]:
        snapshot = await self._call(
            self._entry_ref(project_id, date_key, hour_id).get(),
            f"get entry {project_id}/{date_key}/{hour_id}",
        )
        if not snapshot.exists:
            return None
        try:
            return adapt_entry_document(snapshot.to_dict(), project_id, date_key, hour_id)
        except ValueError as e:
            # Treated as absent so the next valid write replaces it
            logger.warning(f"Unreadable entry {project_id}/{date_key}/{hour_id}: {e}")
            return None

    async def put_entry(self, entry: Entry) -> None:
        """Replace the stored entry with this version."""
        await self._call(
            self._entry_ref(entry.project_id, entry.date_key, entry.hour_id).set(entry.to_document()),
            f"put entry {entry.target_key}",
        )
        logger.debug(f"Wrote entry {entry.target_key}")

    async def list_entries(self, project_id: str, date_key: str) -> list[Entry]:
        """All entries of a day ordered by hour. Unreadable documents are skipped."""
        snapshots = await self._call(
            self._entries_ref(project_id, date_key).get(),
            f"list entries {project_id}/{date_key}",
        )

        entries = []
        for snapshot in snapshots:
            if not is_valid_hour_id(snapshot.id):
                logger.warning(f"Ignoring entry document with invalid id {project_id}/{date_key}/{snapshot.id}")
                continue
            try:
                entries.append(adapt_entry_document(snapshot.to_dict(), project_id, date_key, snapshot.id))
            except ValueError as e:
                logger.warning(f"Skipping unreadable entry {project_id}/{date_key}/{snapshot.id}: {e}")

        entries.sort(key=lambda e: e.hour_id)
        return entries

    # =========================================================================
    # DAILY LOGS
    # =========================================================================

    async def get_daily_log(self, project_id: str, date_key: str) -> Optional[DailyLog]:
        snapshot = await self._call(
            self._log_ref(project_id, date_key).get(),
            f"get daily log {project_id}/{date_key}",
        )
        if not snapshot.exists:
            return None
        data = snapshot.to_dict()
        data['projectId'] = project_id
        data['dateKey'] = date_key
        return DailyLog.model_validate(data)

    async def write_daily_log(self, log: DailyLog) -> None:
        """Write the aggregate fields, each replaced wholesale, leaving notes alone."""
        document = log.aggregate_document()
        await self._call(
            self._log_ref(log.project_id, log.date_key).set(document, merge=list(document.keys())),
            f"write daily log {log.target_key}",
        )
        logger.debug(f"Wrote daily log {log.target_key} ({log.completion_status.value})")

    async def get_daily_notes(self, project_id: str, date_key: str) -> Optional[DailyNotes]:
        snapshot = await self._call(
            self._log_ref(project_id, date_key).get(),
            f"get daily notes {project_id}/{date_key}",
        )
        if not snapshot.exists:
            return None
        data = snapshot.to_dict()
        if data.get('notesUpdatedAt') is None:
            return None
        return DailyNotes(
            projectId=project_id,
            dateKey=date_key,
            notes=data.get('notes') or "",
            notesUpdatedAt=data['notesUpdatedAt'],
        )

    async def put_daily_notes(self, notes: DailyNotes) -> None:
        await self._call(
            self._log_ref(notes.project_id, notes.date_key).set(notes.to_document(), merge=_NOTES_FIELDS),
            f"put daily notes {notes.project_id}/{notes.date_key}",
        )

    # =========================================================================
    # PROJECTS
    # =========================================================================

    async def get_project(self, project_id: str) -> Optional[CachedProject]:
        snapshot = await self._call(self._project_ref(project_id).get(), f"get project {project_id}")
        if not snapshot.exists:
            return None

        data = snapshot.to_dict()
        template = None
        if data.get('templateId'):
            template = TemplateSchema(
                templateId=data['templateId'],
                version=data.get('templateVersion') or 1,
                fields=data.get('templateFields') or [],
            )

        return CachedProject(
            projectId=project_id,
            name=data.get('projectName') or data.get('name') or "",
            facility=data.get('facility') or data.get('location'),
            template=template,
        )
