"""
Pytest configuration and fixtures for ThermalSync tests

Provides a temporary local cache, a manual wall clock and an in-memory
stand-in for the async Firestore client with fault injection.
"""
import copy
import random

import pytest

from thermalsync.core.log_service import ThermalLogService
from thermalsync.services.completion_service import CompletionAggregator
from thermalsync.services.firestore_log_store import FirestoreLogStore
from thermalsync.storage.local_db import LocalDatabase
from thermalsync.storage.models import (
    ActingIdentity,
    CachedProject,
    Entry,
    LogicalTimestamp,
    TemplateField,
    TemplateSchema,
)
from thermalsync.sync.backoff import RetryPolicy
from thermalsync.sync.clock import HybridLogicalClock
from thermalsync.sync.sync_queue import SyncQueue
from thermalsync.sync.sync_service import ReconciliationEngine

PROJECT_ID = "proj-a"
DATE_KEY = "20240115"
START_MS = 1_705_300_000_000


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "scenario: End-to-end sync scenarios over the in-memory remote"
    )


# =======================
# CLOCK
# =======================

class ManualClock:
    """Wall clock in epoch milliseconds that only moves when told to"""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


# =======================
# IN-MEMORY FIRESTORE
# =======================

class FakeSnapshot:
    def __init__(self, doc_id, data):
        self.id = doc_id
        self._data = data
        self.exists = data is not None

    def to_dict(self):
        return copy.deepcopy(self._data)


class FakeDocumentReference:
    def __init__(self, remote, path):
        self._remote = remote
        self.path = path
        self.id = path.rsplit("/", 1)[-1]

    def collection(self, name):
        return FakeCollectionReference(self._remote, f"{self.path}/{name}")

    async def get(self):
        self._remote.check("get", self.path)
        return FakeSnapshot(self.id, copy.deepcopy(self._remote.docs.get(self.path)))

    async def set(self, data, merge=False):
        self._remote.check("set", self.path)
        data = copy.deepcopy(data)
        if merge and self.path in self._remote.docs:
            current = self._remote.docs[self.path]
            fields = data.keys() if merge is True else merge
            for field in fields:
                if field in data:
                    current[field] = data[field]
        elif merge and merge is not True:
            self._remote.docs[self.path] = {f: data[f] for f in merge if f in data}
        else:
            self._remote.docs[self.path] = data
        self._remote.writes.append(self.path)
        self._remote.check("set", self.path, after=True)


class FakeCollectionReference:
    def __init__(self, remote, path):
        self._remote = remote
        self.path = path

    def document(self, doc_id):
        return FakeDocumentReference(self._remote, f"{self.path}/{doc_id}")

    async def get(self):
        self._remote.check("list", self.path)
        prefix = self.path + "/"
        return [
            FakeSnapshot(path[len(prefix):], copy.deepcopy(data))
            for path, data in sorted(self._remote.docs.items())
            if path.startswith(prefix) and "/" not in path[len(prefix):]
        ]


class FakeFirestore:
    """Just enough of firestore.AsyncClient for the log store.

    fail() queues an exception for the next matching call. With after=True
    the write is applied first and the exception raised afterwards, like a
    response lost on the way back.
    """

    def __init__(self):
        self.docs = {}
        self.writes = []
        self._faults = []

    def collection(self, name):
        return FakeCollectionReference(self, name)

    def fail(self, exc, op=None, path_suffix="", times=1, after=False):
        self._faults.append({
            'exc': exc, 'op': op, 'suffix': path_suffix, 'times': times, 'after': after,
        })

    def check(self, op, path, after=False):
        for fault in self._faults:
            if fault['after'] != after or fault['times'] <= 0:
                continue
            if fault['op'] not in (None, op) or not path.endswith(fault['suffix']):
                continue
            fault['times'] -= 1
            raise fault['exc']

    def writes_to(self, suffix):
        return sum(1 for p in self.writes if p.endswith(suffix))


# =======================
# HELPERS
# =======================

def make_template() -> TemplateSchema:
    return TemplateSchema(
        templateId="thermal-hourly",
        version=2,
        fields=[
            TemplateField(key="inletReading", type="number", min=0, max=5000),
            TemplateField(key="exhaustTemp", type="number", min=0, max=2000, required=True),
            TemplateField(key="totalizer", type="number", min=0),
            TemplateField(key="comment", type="text"),
        ],
    )


def make_entry(
    hour_id: str,
    readings: dict = None,
    wall_ms: int = START_MS,
    counter: int = 0,
    device_id: str = "dev-b",
    project_id: str = PROJECT_ID,
    date_key: str = DATE_KEY,
    **kwargs,
) -> Entry:
    ts = LogicalTimestamp(wallMs=wall_ms, counter=counter, deviceId=device_id)
    return Entry(
        projectId=project_id,
        dateKey=date_key,
        hourId=hour_id,
        readings=readings if readings is not None else {"exhaustTemp": 900.0},
        operatorId=kwargs.pop("operator_id", "op-1"),
        recordedAt=kwargs.pop("recorded_at", wall_ms),
        createdAt=ts,
        updatedAt=ts,
        **kwargs,
    )


def build_stack(tmp_path, remote, name="device", device_id="dev-a", wall=None, **engine_kwargs):
    """Independent client stack (own cache, clock and queue) over a shared remote"""
    wall = wall or ManualClock()
    db = LocalDatabase(str(tmp_path / name / "cache.db"))
    clock = HybridLogicalClock(db, device_id=device_id, wall_clock=wall)
    queue = SyncQueue(db, policy=RetryPolicy(jitter=0.0), wall_clock=wall)
    store = FirestoreLogStore(remote, timeout_s=5)
    aggregator = CompletionAggregator(store, wall_clock=wall)
    engine = ReconciliationEngine(queue, store, aggregator, db, clock, **engine_kwargs)
    service = ThermalLogService(db, queue, clock, store=store, engine=engine)
    project = CachedProject(projectId=PROJECT_ID, name="Tank Farm 3", template=make_template())
    db.save_cached_project(project)
    return service


# =======================
# FIXTURES
# =======================

@pytest.fixture
def wall():
    return ManualClock()


@pytest.fixture
def db(tmp_path):
    return LocalDatabase(str(tmp_path / "cache.db"))


@pytest.fixture
def clock(db, wall):
    return HybridLogicalClock(db, device_id="dev-a", wall_clock=wall)


@pytest.fixture
def policy():
    return RetryPolicy(jitter=0.0, rng=random.Random(7))


@pytest.fixture
def queue(db, policy, wall):
    return SyncQueue(db, policy=policy, wall_clock=wall)


@pytest.fixture
def remote():
    return FakeFirestore()


@pytest.fixture
def store(remote):
    return FirestoreLogStore(remote, timeout_s=5)


@pytest.fixture
def aggregator(store, wall):
    return CompletionAggregator(store, wall_clock=wall)


@pytest.fixture
def engine(queue, store, aggregator, db, clock):
    return ReconciliationEngine(queue, store, aggregator, db, clock, interval_s=0.05)


@pytest.fixture
def service(db, queue, clock, store, engine):
    return ThermalLogService(db, queue, clock, store=store, engine=engine)


@pytest.fixture
def project(db):
    project = CachedProject(projectId=PROJECT_ID, name="Tank Farm 3", template=make_template())
    db.save_cached_project(project)
    return project


@pytest.fixture
def operator():
    return ActingIdentity(operatorId="op-1")


@pytest.fixture
def supervisor():
    return ActingIdentity(operatorId="sup-1", mayValidate=True)
