"""Pydantic schemas for background jobs."""

from datetime import datetime
from uuid import UUID

from omnisync.schemas.common import CamelModel


class JobRead(CamelModel):
    """Job response schema."""

    id: UUID
    batch_id: UUID
    kind: str
    status: str
    progress: int | None
    attempts: int
    max_attempts: int
    run_at: datetime
    last_error: str | None
    error_code: str | None
    result: dict | None
    created_at: datetime
    completed_at: datetime | None


class BatchJobSummary(CamelModel):
    id: str
    kind: str
    status: str
    attempts: int
    progress: int | None = None
    last_error: str | None = None
    error_code: str | None = None


class BatchCounts(CamelModel):
    events_processed: int
    failed: int


class BatchStatusRead(CamelModel):
    """Aggregate of the jobs in one batch."""

    batch_id: str
    status: str
    summary: BatchCounts
    jobs: list[BatchJobSummary]
