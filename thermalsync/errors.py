"""Error taxonomy for local staging and remote reconciliation"""

import asyncio
import logging

from google.api_core import exceptions as gexc
from pydantic import ValidationError

logger = logging.getLogger(__name__)


class ThermalSyncError(Exception):
    """Base class for all sync errors."""

    retryable = False


class TransientNetworkError(ThermalSyncError):
    """Connectivity loss, timeout or a temporarily unavailable backend."""

    retryable = True


class QuotaExceededError(ThermalSyncError):
    """The remote store is rate limiting us. Retry with a longer backoff."""

    retryable = True


class PermanentValidationError(ThermalSyncError):
    """Malformed or out-of-range data. Never retried."""


class PermissionDeniedError(PermanentValidationError):
    """The acting identity lacks the capability for this operation."""


class StorageWriteError(ThermalSyncError):
    """Local persistence failed. Fatal to the originating call."""


_TRANSIENT = (
    gexc.ServiceUnavailable,
    gexc.DeadlineExceeded,
    gexc.InternalServerError,
    gexc.Aborted,
    gexc.Cancelled,
    gexc.Unknown,
    gexc.GatewayTimeout,
    gexc.BadGateway,
)

_QUOTA = (
    gexc.ResourceExhausted,
    gexc.TooManyRequests,
)

_PERMANENT = (
    gexc.InvalidArgument,
    gexc.PermissionDenied,
    gexc.Unauthenticated,
    gexc.FailedPrecondition,
    gexc.NotFound,
    gexc.BadRequest,
    ValidationError,
    ValueError,
)


def classify_remote_error(exc: BaseException) -> ThermalSyncError:
    """Map an exception raised by a remote call onto the sync taxonomy.

    Unknown failures are treated as transient so that a queued mutation is
    retried (and eventually surfaced) rather than dropped.
    """
    if isinstance(exc, ThermalSyncError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return TransientNetworkError(f"remote call timed out: {exc!r}")
    if isinstance(exc, _QUOTA):
        return QuotaExceededError(str(exc))
    if isinstance(exc, _TRANSIENT):
        return TransientNetworkError(str(exc))
    if isinstance(exc, _PERMANENT):
        return PermanentValidationError(str(exc))
    if isinstance(exc, (ConnectionError, OSError)):
        return TransientNetworkError(str(exc))

    logger.warning(f"Unclassified remote error treated as transient: {exc!r}")
    return TransientNetworkError(str(exc))
