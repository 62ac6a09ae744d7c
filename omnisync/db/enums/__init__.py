"""Enum definitions for application constants."""

from omnisync.db.enums.entities import ArtifactType, EntityStatus, InteractionKind
from omnisync.db.enums.integrations import (
    PROVIDER_SERVICE,
    SERVICE_PROVIDER,
    CredentialStatus,
    Provider,
)
from omnisync.db.enums.jobs import OPEN_JOB_STATUSES, PIPELINE_ORDER, JobKind, JobStatus
from omnisync.db.enums.sync import (
    ACTIVE_SYNC_STATUSES,
    FAILURE_MESSAGES,
    SYNC_TRANSITIONS,
    TERMINAL_SYNC_STATUSES,
    FailureReason,
    SyncService,
    SyncStatus,
)

__all__ = [
    "ACTIVE_SYNC_STATUSES",
    "ArtifactType",
    "CredentialStatus",
    "EntityStatus",
    "FAILURE_MESSAGES",
    "FailureReason",
    "InteractionKind",
    "JobKind",
    "JobStatus",
    "OPEN_JOB_STATUSES",
    "PIPELINE_ORDER",
    "PROVIDER_SERVICE",
    "Provider",
    "SERVICE_PROVIDER",
    "SYNC_TRANSITIONS",
    "SyncService",
    "SyncStatus",
    "TERMINAL_SYNC_STATUSES",
]
