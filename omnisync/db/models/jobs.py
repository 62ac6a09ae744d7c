"""SQLAlchemy ORM models for background jobs."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from omnisync.db.base import Base
from omnisync.db.enums import JobStatus
from omnisync.db.types import JSONType, utcnow


class Job(Base):
    """
    Background job for one pipeline stage.

    Jobs sharing a ``batch_id`` form one pipeline run. Runners claim queued
    jobs with a conditional update, so a job is only ever run by one runner.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("idx_jobs_queued", "status", "run_at"),
        Index("idx_jobs_batch", "batch_id"),
        Index("idx_jobs_user", "user_id", "created_at"),
        Index("uq_job_idempotency", "idempotency_key", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.QUEUED.value
    )
    progress: Mapped[int | None] = mapped_column(Integer, nullable=True)

    run_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Idempotency key for deduplication of scheduled triggers
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
