"""Read-boundary adapter for entry documents that predate the readings map"""

import logging
from datetime import datetime
from typing import Any, Optional

from ..storage.models import Entry, LogicalTimestamp

logger = logging.getLogger(__name__)

# Flat reading fields used by thermal log documents before readings were nested
LEGACY_READING_FIELDS = (
    'inletReading',
    'outletReading',
    'toInletReadingH2S',
    'vaporInletFlowRateFPM',
    'vaporInletFlowRateBBL',
    'tankRefillFlowRate',
    'combustionAirFlowRate',
    'vacuumAtTankVaporOutlet',
    'exhaustTemperature',
    'totalizer',
)


def _to_ms(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    return None


def _to_logical(value: Any) -> LogicalTimestamp:
    if isinstance(value, dict):
        return LogicalTimestamp.model_validate(value)
    return LogicalTimestamp(wallMs=_to_ms(value) or 0, counter=0, deviceId="")


def extract_legacy_readings(data: dict) -> dict:
    return {
        field: data[field]
        for field in LEGACY_READING_FIELDS
        if data.get(field) is not None
    }


def adapt_entry_document(data: dict, project_id: str, date_key: str, hour_id: str) -> Entry:
    """Build an Entry from a stored document, current or legacy shaped.

    The document path is authoritative for projectId, dateKey and hourId.
    """
    readings = data.get('readings')
    if not isinstance(readings, dict):
        readings = extract_legacy_readings(data)
        logger.debug(f"Adapted legacy entry {project_id}/{date_key}/{hour_id}")

    recorded_at = _to_ms(data.get('recordedAt'))
    if recorded_at is None:
        recorded_at = _to_ms(data.get('timestamp'))

    updated_at = data.get('updatedAt')
    created_at = data.get('createdAt', updated_at)

    return Entry(
        projectId=project_id,
        dateKey=date_key,
        hourId=hour_id,
        readings=readings,
        observations=data.get('observations') or "",
        operatorId=data.get('operatorId') or data.get('createdBy') or "",
        validated=bool(data.get('validated', False)),
        validatedBy=data.get('validatedBy'),
        validatedAt=_to_ms(data.get('validatedAt')),
        recordedAt=recorded_at,
        createdAt=_to_logical(created_at),
        updatedAt=_to_logical(updated_at),
    )
