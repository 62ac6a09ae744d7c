"""Sync session enums."""

from enum import Enum


class SyncService(str, Enum):
    """User-facing sync services."""

    GMAIL = "gmail"
    CALENDAR = "calendar"


class SyncStatus(str, Enum):
    STARTED = "started"
    IMPORTING = "importing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureReason(str, Enum):
    """Reason recorded in a session's error details."""

    RECONNECT_REQUIRED = "reconnect_required"
    TEMPORARY_FAILURE = "temporary_failure"
    PARTIAL_FAILURE = "partial_failure"
    PAYLOAD_ERROR = "payload_error"
    INTERNAL_ERROR = "internal_error"


TERMINAL_SYNC_STATUSES = frozenset(
    {SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED}
)
ACTIVE_SYNC_STATUSES = (
    SyncStatus.STARTED.value,
    SyncStatus.IMPORTING.value,
    SyncStatus.PROCESSING.value,
)

# Allowed status edges. Staying in the same non-terminal status is always allowed.
SYNC_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.STARTED: frozenset(
        {SyncStatus.IMPORTING, SyncStatus.FAILED, SyncStatus.CANCELLED}
    ),
    SyncStatus.IMPORTING: frozenset(
        {SyncStatus.PROCESSING, SyncStatus.FAILED, SyncStatus.CANCELLED}
    ),
    SyncStatus.PROCESSING: frozenset(
        {SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED}
    ),
    SyncStatus.COMPLETED: frozenset(),
    SyncStatus.FAILED: frozenset(),
    SyncStatus.CANCELLED: frozenset(),
}

FAILURE_MESSAGES: dict[FailureReason, str] = {
    FailureReason.RECONNECT_REQUIRED: "Reconnect your account to resume syncing.",
    FailureReason.TEMPORARY_FAILURE: "Temporary failure, will retry on the next sync.",
    FailureReason.PARTIAL_FAILURE: "Some items failed, see details.",
    FailureReason.PAYLOAD_ERROR: "The provider returned data we could not read.",
    FailureReason.INTERNAL_ERROR: "Sync failed due to an internal error.",
}
