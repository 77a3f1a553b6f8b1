"""
Tests for the remote log store and the legacy document adapter
"""

import asyncio
from datetime import datetime, timezone

import pytest
from google.api_core import exceptions as gexc

from thermalsync.errors import (
    PermanentValidationError,
    QuotaExceededError,
    TransientNetworkError,
    classify_remote_error,
)
from thermalsync.services.legacy import adapt_entry_document
from thermalsync.storage.models import DailyNotes, LogicalTimestamp
from tests.conftest import DATE_KEY, PROJECT_ID, START_MS, make_entry

ENTRIES = f"projects/{PROJECT_ID}/logs/{DATE_KEY}/entries"


# =======================
# LEGACY ADAPTER
# =======================

class TestLegacyAdapter:
    """Test lifting flat legacy fields into the readings map."""

    def test_flat_fields_become_readings(self):
        recorded = datetime(2024, 1, 15, 5, 2, tzinfo=timezone.utc)
        data = {
            "inletReading": 412.5,
            "exhaustTemperature": 1510,
            "totalizer": None,
            "createdBy": "op-legacy",
            "timestamp": recorded,
            "validated": True,
        }
        entry = adapt_entry_document(data, PROJECT_ID, DATE_KEY, "05")
        assert entry.readings == {"inletReading": 412.5, "exhaustTemperature": 1510}
        assert entry.operator_id == "op-legacy"
        assert entry.recorded_at == int(recorded.timestamp() * 1000)
        assert entry.validated is True
        assert entry.updated_at.order_key() == (0, 0)

    def test_current_documents_pass_through(self):
        original = make_entry("07", {"exhaustTemp": 880.0}, observations="normal")
        entry = adapt_entry_document(original.to_document(), PROJECT_ID, DATE_KEY, "07")
        assert entry == original

    def test_document_path_is_authoritative(self):
        doc = make_entry("07").to_document()
        doc["hourId"] = "08"
        doc["projectId"] = "someone-else"
        entry = adapt_entry_document(doc, PROJECT_ID, DATE_KEY, "07")
        assert entry.hour_id == "07"
        assert entry.project_id == PROJECT_ID

    def test_numeric_timestamps(self):
        entry = adapt_entry_document({"readings": {}, "updatedAt": START_MS}, PROJECT_ID, DATE_KEY, "01")
        assert entry.updated_at.wall_ms == START_MS
        assert entry.created_at.wall_ms == START_MS


# =======================
# ERROR CLASSIFICATION
# =======================

class TestClassifyRemoteError:
    """Test mapping of client exceptions onto the sync taxonomy."""

    @pytest.mark.parametrize("exc,expected", [
        (gexc.ServiceUnavailable("down"), TransientNetworkError),
        (gexc.DeadlineExceeded("slow"), TransientNetworkError),
        (asyncio.TimeoutError(), TransientNetworkError),
        (ConnectionResetError(), TransientNetworkError),
        (gexc.ResourceExhausted("quota"), QuotaExceededError),
        (gexc.TooManyRequests("429"), QuotaExceededError),
        (gexc.InvalidArgument("bad"), PermanentValidationError),
        (gexc.PermissionDenied("rules"), PermanentValidationError),
        (ValueError("bad hour"), PermanentValidationError),
        (RuntimeError("?"), TransientNetworkError),
    ])
    def test_classification(self, exc, expected):
        assert isinstance(classify_remote_error(exc), expected)

    def test_sync_errors_pass_through(self):
        error = QuotaExceededError("slow down")
        assert classify_remote_error(error) is error


# =======================
# STORE
# =======================

class TestFirestoreLogStore:
    """Test document paths, reads and merge writes."""

    def test_entry_round_trip_path(self, store, remote):
        entry = make_entry("05")

        async def run():
            await store.put_entry(entry)
            return await store.get_entry(PROJECT_ID, DATE_KEY, "05")

        assert asyncio.run(run()) == entry
        assert f"{ENTRIES}/05" in remote.docs

    def test_missing_entry(self, store):
        assert asyncio.run(store.get_entry(PROJECT_ID, DATE_KEY, "05")) is None

    def test_list_entries_skips_bad_documents(self, store, remote):
        remote.docs[f"{ENTRIES}/03"] = make_entry("03").to_document()
        remote.docs[f"{ENTRIES}/01"] = {"inletReading": 300, "updatedAt": START_MS}
        remote.docs[f"{ENTRIES}/summary"] = {"readings": {}}
        remote.docs[f"{ENTRIES}/04"] = {"readings": {"x": [1, 2]}, "updatedAt": START_MS}

        entries = asyncio.run(store.list_entries(PROJECT_ID, DATE_KEY))
        assert [e.hour_id for e in entries] == ["01", "03"]
        assert entries[0].readings == {"inletReading": 300}

    def test_unreadable_entry_reads_as_absent(self, store, remote):
        remote.docs[f"{ENTRIES}/04"] = {"readings": {"x": [1, 2]}}
        assert asyncio.run(store.get_entry(PROJECT_ID, DATE_KEY, "04")) is None

    def test_remote_failures_are_classified(self, store, remote):
        remote.fail(gexc.ServiceUnavailable("down"), op="get")
        with pytest.raises(TransientNetworkError):
            asyncio.run(store.get_entry(PROJECT_ID, DATE_KEY, "05"))

    def test_timeout(self, remote):
        from thermalsync.services.firestore_log_store import FirestoreLogStore

        class Hanging:
            async def get(self):
                await asyncio.sleep(10)

        store = FirestoreLogStore(remote, timeout_s=0.01)
        with pytest.raises(TransientNetworkError, match="timed out"):
            asyncio.run(store._call(Hanging().get(), "hang"))

    def test_notes_and_aggregate_fields_are_disjoint(self, store, remote):
        notes = DailyNotes(
            projectId=PROJECT_ID,
            dateKey=DATE_KEY,
            notes="stack test at 14:00",
            notesUpdatedAt=LogicalTimestamp(wallMs=START_MS, deviceId="dev-a"),
        )

        async def run():
            await store.put_daily_notes(notes)
            await store.put_entry(make_entry("02"))
            from thermalsync.services.completion_service import compute_daily_log
            await store.write_daily_log(
                compute_daily_log(PROJECT_ID, DATE_KEY, await store.list_entries(PROJECT_ID, DATE_KEY), updated_at=1)
            )
            return await store.get_daily_log(PROJECT_ID, DATE_KEY), await store.get_daily_notes(PROJECT_ID, DATE_KEY)

        log, stored_notes = asyncio.run(run())
        assert log.completed_hours == 1
        assert log.notes == "stack test at 14:00"
        assert stored_notes == notes

    def test_daily_notes_absent_without_version(self, store, remote):
        remote.docs[f"projects/{PROJECT_ID}/logs/{DATE_KEY}"] = {"completedHours": 2}
        assert asyncio.run(store.get_daily_notes(PROJECT_ID, DATE_KEY)) is None

    def test_get_project_with_template(self, store, remote):
        remote.docs[f"projects/{PROJECT_ID}"] = {
            "projectName": "Tank Farm 3",
            "location": "Midland",
            "templateId": "thermal-hourly",
            "templateVersion": 3,
            "templateFields": [{"key": "exhaustTemp", "type": "number", "min": 0, "max": 2000}],
        }
        project = asyncio.run(store.get_project(PROJECT_ID))
        assert project.name == "Tank Farm 3"
        assert project.facility == "Midland"
        assert project.template.version == 3
        assert project.template.fields[0].key == "exhaustTemp"

    def test_get_missing_project(self, store):
        assert asyncio.run(store.get_project("nope")) is None
