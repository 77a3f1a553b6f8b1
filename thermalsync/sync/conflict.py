"""
Deterministic last-write-wins resolution between a local mutation and the
remote document for the same key.

The decision is a pure function of the two versions so any replaying device
reaches the same outcome.
"""

from enum import Enum
from typing import Optional

from ..storage.models import LogicalTimestamp


class Resolution(str, Enum):
    CREATE = "create"              # nothing remote yet
    OVERWRITE = "overwrite"        # local strictly newer
    ALREADY_APPLIED = "alreadyApplied"  # remote holds the same content and version
    STALE = "stale"                # remote newer, local discarded
    TIE_LOCAL_WINS = "tieLocalWins"    # equal time, local hash greater
    TIE_REMOTE_WINS = "tieRemoteWins"  # equal time, remote hash greater


def resolve(
    local_ts: LogicalTimestamp,
    local_hash: str,
    remote_ts: Optional[LogicalTimestamp],
    remote_hash: Optional[str],
) -> Resolution:
    if remote_ts is None or remote_hash is None:
        return Resolution.CREATE

    if local_ts.order_key() > remote_ts.order_key():
        return Resolution.OVERWRITE
    if local_ts.order_key() < remote_ts.order_key():
        return Resolution.STALE

    if local_hash == remote_hash:
        return Resolution.ALREADY_APPLIED
    if local_hash > remote_hash:
        return Resolution.TIE_LOCAL_WINS
    return Resolution.TIE_REMOTE_WINS


def writes_remote(resolution: Resolution) -> bool:
    return resolution in (Resolution.CREATE, Resolution.OVERWRITE, Resolution.TIE_LOCAL_WINS)


def is_tie(resolution: Resolution) -> bool:
    return resolution in (Resolution.TIE_LOCAL_WINS, Resolution.TIE_REMOTE_WINS)
