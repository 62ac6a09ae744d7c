"""Pydantic schemas for sync triggers and sessions."""

from datetime import datetime
from typing import Any

from pydantic import Field

from omnisync.db.enums import SyncService, SyncStatus
from omnisync.schemas.common import CamelModel


class SyncRequest(CamelModel):
    """Body of ``POST /sync``."""

    service: SyncService
    preferences: dict[str, Any] = Field(default_factory=dict)
    incremental: bool = True
    overlap_hours: int | None = Field(default=None, ge=1, le=72)


class SyncTriggerResponse(CamelModel):
    session_id: str
    batch_id: str
    reused: bool = False


class SyncProgress(CamelModel):
    percentage: float
    current_step: str
    total_items: int
    imported_items: int
    processed_items: int
    failed_items: int


class SyncTimeEstimate(CamelModel):
    remaining_seconds: int | None = None
    eta: datetime | None = None


class SyncTimestamps(CamelModel):
    started_at: datetime
    completed_at: datetime | None = None
    last_update: datetime


class SyncSessionRead(CamelModel):
    """Observer-facing view of a sync session."""

    session_id: str
    user_id: str
    service: SyncService
    batch_id: str
    status: SyncStatus
    progress: SyncProgress
    time_estimate: SyncTimeEstimate
    timestamps: SyncTimestamps
    error_details: dict[str, Any] | None = None
    preferences: dict[str, Any] = Field(default_factory=dict)
