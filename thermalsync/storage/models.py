"""
Pydantic models for hourly entries, daily rollups and the local sync state.
Field aliases are the camelCase names used by the Firestore documents.
"""

import hashlib
import json
import re
from datetime import date, datetime
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from ..errors import PermanentValidationError

# =============================================================================
# SYSTEM CONSTANTS
# =============================================================================

HOURS_PER_DAY = 24
HOUR_IDS = tuple(f"{h:02d}" for h in range(HOURS_PER_DAY))

_DATE_KEY_RE = re.compile(r"^\d{8}$")

ReadingValue = Union[int, float, str]


def is_valid_hour_id(hour_id: str) -> bool:
    return hour_id in HOUR_IDS


def parse_date_key(date_key: str) -> Optional[date]:
    """Parse a YYYYMMDD key, returning None unless it is a real calendar date."""
    if not isinstance(date_key, str) or not _DATE_KEY_RE.match(date_key):
        return None
    try:
        return datetime.strptime(date_key, "%Y%m%d").date()
    except ValueError:
        return None


def format_date_key(day: date) -> str:
    return day.strftime("%Y%m%d")


def make_target_key(project_id: str, date_key: str, hour_id: Optional[str] = None) -> str:
    if hour_id is None:
        return f"{project_id}/{date_key}"
    return f"{project_id}/{date_key}/{hour_id}"


def canonical_hash(document: dict) -> str:
    """Stable content hash of a JSON-compatible document."""
    encoded = json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def version_key(timestamp: "LogicalTimestamp", content_hash: str) -> tuple[int, int, str]:
    """Total order used for last-write-wins: logical time, then content hash."""
    return (timestamp.wall_ms, timestamp.counter, content_hash)


# =============================================================================
# ENUMS
# =============================================================================

class CompletionStatus(str, Enum):
    NOT_STARTED = "notStarted"
    INCOMPLETE = "incomplete"
    COMPLETE = "complete"
    VALIDATED = "validated"


class SyncTargetKind(str, Enum):
    ENTRY = "entry"
    DAILY_LOG = "dailyLog"


class SyncOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"


class SyncItemState(str, Enum):
    PENDING = "pending"
    DEAD_LETTER = "deadLetter"
    EXHAUSTED = "exhausted"


class SyncOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "alreadyApplied"
    SUPERSEDED = "superseded"
    RETRY_SCHEDULED = "retryScheduled"
    DEAD_LETTERED = "deadLettered"
    EXHAUSTED = "exhausted"


# =============================================================================
# DATA MODELS
# =============================================================================

class LogicalTimestamp(BaseModel):
    """Hybrid logical timestamp. Ordering uses (wall_ms, counter) only."""

    wall_ms: int = Field(alias="wallMs", ge=0)
    counter: int = Field(default=0, ge=0)
    device_id: str = Field(default="", alias="deviceId")

    class Config:
        populate_by_name = True
        frozen = True

    def order_key(self) -> tuple[int, int]:
        return (self.wall_ms, self.counter)


class ActingIdentity(BaseModel):
    """Identity and capability supplied by the authentication layer."""

    operator_id: str = Field(alias="operatorId", min_length=1)
    may_validate: bool = Field(default=False, alias="mayValidate")

    class Config:
        populate_by_name = True
        frozen = True


class Entry(BaseModel):
    """One hour of readings for one project on one day."""

    project_id: str = Field(alias="projectId", min_length=1)
    date_key: str = Field(alias="dateKey")
    hour_id: str = Field(alias="hourId")
    readings: dict[str, ReadingValue] = Field(default_factory=dict)
    observations: str = ""
    operator_id: str = Field(alias="operatorId")
    validated: bool = False
    validated_by: Optional[str] = Field(default=None, alias="validatedBy")
    validated_at: Optional[int] = Field(default=None, alias="validatedAt")
    recorded_at: Optional[int] = Field(default=None, alias="recordedAt")
    created_at: LogicalTimestamp = Field(alias="createdAt")
    updated_at: LogicalTimestamp = Field(alias="updatedAt")

    class Config:
        populate_by_name = True

    @field_validator("hour_id")
    @classmethod
    def _check_hour_id(cls, v: str) -> str:
        if not is_valid_hour_id(v):
            raise ValueError(f"Invalid hourId: {v}. Must be 00-23.")
        return v

    @field_validator("date_key")
    @classmethod
    def _check_date_key(cls, v: str) -> str:
        if parse_date_key(v) is None:
            raise ValueError(f"Invalid dateKey: {v}. Must be a real YYYYMMDD date.")
        return v

    @property
    def target_key(self) -> str:
        return make_target_key(self.project_id, self.date_key, self.hour_id)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")

    def content_hash(self) -> str:
        return canonical_hash(self.to_document())


class DailyLog(BaseModel):
    """Derived per-day rollup over a project's entries."""

    project_id: str = Field(alias="projectId")
    date_key: str = Field(alias="dateKey")
    completion_status: CompletionStatus = Field(
        default=CompletionStatus.NOT_STARTED, alias="completionStatus"
    )
    total_entries: int = Field(default=0, alias="totalEntries", ge=0)
    completed_hours: int = Field(default=0, alias="completedHours", ge=0, le=HOURS_PER_DAY)
    validated_hours: int = Field(default=0, alias="validatedHours", ge=0, le=HOURS_PER_DAY)
    first_entry_at: Optional[int] = Field(default=None, alias="firstEntryAt")
    last_entry_at: Optional[int] = Field(default=None, alias="lastEntryAt")
    daily_metrics: dict[str, Union[int, float]] = Field(default_factory=dict, alias="dailyMetrics")
    operator_ids: list[str] = Field(default_factory=list, alias="operatorIds")
    notes: Optional[str] = None
    notes_updated_at: Optional[LogicalTimestamp] = Field(default=None, alias="notesUpdatedAt")
    updated_at: Optional[int] = Field(default=None, alias="updatedAt")

    class Config:
        populate_by_name = True

    @property
    def target_key(self) -> str:
        return make_target_key(self.project_id, self.date_key)

    def aggregate_document(self) -> dict:
        """Document fields owned by the aggregator (never the free-text notes)."""
        return self.model_dump(by_alias=True, mode="json", exclude={"notes", "notes_updated_at"})


class DailyNotes(BaseModel):
    """Payload of a DailyLog-targeted mutation: only the free-text notes."""

    project_id: str = Field(alias="projectId", min_length=1)
    date_key: str = Field(alias="dateKey")
    notes: str
    notes_updated_at: LogicalTimestamp = Field(alias="notesUpdatedAt")

    class Config:
        populate_by_name = True

    @field_validator("date_key")
    @classmethod
    def _check_date_key(cls, v: str) -> str:
        if parse_date_key(v) is None:
            raise ValueError(f"Invalid dateKey: {v}. Must be a real YYYYMMDD date.")
        return v

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")

    def content_hash(self) -> str:
        return canonical_hash(self.to_document())


class SyncQueueItem(BaseModel):
    """A durable record of one pending mutation."""

    id: str
    target_kind: SyncTargetKind = Field(alias="targetKind")
    project_id: str = Field(alias="projectId", min_length=1)
    date_key: str = Field(alias="dateKey")
    hour_id: Optional[str] = Field(default=None, alias="hourId")
    operation: SyncOperation
    payload: dict
    payload_version: LogicalTimestamp = Field(alias="payloadVersion")
    enqueued_at: int = Field(alias="enqueuedAt")
    sequence: Optional[int] = None
    attempt_count: int = Field(default=0, alias="attemptCount")
    last_error: Optional[str] = Field(default=None, alias="lastError")
    next_attempt_at: int = Field(default=0, alias="nextAttemptAt")
    state: SyncItemState = SyncItemState.PENDING

    class Config:
        populate_by_name = True

    @property
    def target_key(self) -> str:
        return make_target_key(self.project_id, self.date_key, self.hour_id)


class ConflictResolved(BaseModel):
    """Audit record of an equal-timestamp tie-break. Informational, not a failure."""

    item_id: str = Field(alias="itemId")
    target_key: str = Field(alias="targetKey")
    winner: Literal["local", "remote"]
    local_hash: str = Field(alias="localHash")
    remote_hash: str = Field(alias="remoteHash")
    timestamp: LogicalTimestamp
    resolved_at: int = Field(alias="resolvedAt")

    class Config:
        populate_by_name = True


class TemplateField(BaseModel):
    key: str = Field(min_length=1)
    type: Literal["number", "text"] = "number"
    label: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    required: bool = False


class TemplateSchema(BaseModel):
    """Reading-field schema of the log template assigned to a project."""

    template_id: str = Field(alias="templateId")
    version: int = 1
    fields: list[TemplateField] = Field(default_factory=list)

    class Config:
        populate_by_name = True

    def validate_readings(self, readings: dict) -> None:
        """Raise PermanentValidationError listing every problem with the readings."""
        by_key = {f.key: f for f in self.fields}
        problems = []

        for key, value in readings.items():
            field_def = by_key.get(key)
            if field_def is None:
                problems.append(f"unknown field '{key}'")
                continue
            if field_def.type == "text":
                if not isinstance(value, str):
                    problems.append(f"'{key}' must be text")
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                problems.append(f"'{key}' must be numeric")
                continue
            if value != value or value in (float("inf"), float("-inf")):
                problems.append(f"'{key}' must be a finite number")
                continue
            if field_def.min is not None and value < field_def.min:
                problems.append(f"'{key}'={value} is below minimum {field_def.min}")
            if field_def.max is not None and value > field_def.max:
                problems.append(f"'{key}'={value} is above maximum {field_def.max}")

        for field_def in self.fields:
            if field_def.required and field_def.key not in readings:
                problems.append(f"missing required field '{field_def.key}'")

        if problems:
            raise PermanentValidationError(
                f"Readings rejected by template {self.template_id} v{self.version}: "
                + "; ".join(problems)
            )


class CachedProject(BaseModel):
    """Read-through cache of project metadata for offline form rendering."""

    project_id: str = Field(alias="projectId")
    name: str = ""
    facility: Optional[str] = None
    template: Optional[TemplateSchema] = None
    refreshed_at: int = Field(default=0, alias="refreshedAt")

    class Config:
        populate_by_name = True


class SubmitResult(BaseModel):
    accepted: bool
    queued: bool
    item_id: Optional[str] = Field(default=None, alias="itemId")

    class Config:
        populate_by_name = True


class FailedItemSummary(BaseModel):
    item_id: str = Field(alias="itemId")
    target_key: str = Field(alias="targetKey")
    state: SyncItemState
    attempt_count: int = Field(alias="attemptCount")
    last_error: Optional[str] = Field(default=None, alias="lastError")

    class Config:
        populate_by_name = True


class SyncStatus(BaseModel):
    pending_count: int = Field(alias="pendingCount")
    oldest_pending_age_s: Optional[float] = Field(default=None, alias="oldestPendingAgeS")
    last_error: Optional[str] = Field(default=None, alias="lastError")
    sync_delayed: bool = Field(default=False, alias="syncDelayed")
    dead_letter_count: int = Field(default=0, alias="deadLetterCount")
    exhausted_count: int = Field(default=0, alias="exhaustedCount")
    failed_items: list[FailedItemSummary] = Field(default_factory=list, alias="failedItems")

    class Config:
        populate_by_name = True
